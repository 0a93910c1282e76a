"""Main Quart application for the persona chat back end."""
from typing import Optional

import httpx
from pydantic import ValidationError
from quart import Quart, request, jsonify
import structlog

from personachat import config
from personachat.errors import EmptyContent, IngestionFailed, UnsupportedFormat
from personachat.llm_client import MissingAPIKeyError, openai_client
from personachat.logging_setup import configure_logging
from personachat.personas import CamelModel, build_system_prompt, create_persona, get_catalog
from personachat.rag.ingest import IngestPipeline
from personachat.rag.retriever import Retriever
from personachat.rag.store import get_vector_index

configure_logging()

logger = structlog.get_logger()

app = Quart(__name__)
app.config["MAX_CONTENT_LENGTH"] = config.MAX_UPLOAD_BYTES


class ChatRequest(CamelModel):
    message: str
    persona_id: Optional[str] = None
    use_rag: bool = True


def _preview(text: str, limit: int = 200) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def _persona_json(persona) -> dict:
    return persona.model_dump(mode="json", by_alias=True, exclude_none=True)


@app.route("/api/upload", methods=["POST"])
async def upload():
    """Ingest an uploaded TXT or MD file into the shared vector index.

    Expects multipart form data with a 'file' field.

    Returns JSON:
    {
        "success": true,
        "message": "...",
        "chunk_count": 3,
        "total_documents": 12
    }
    """
    files = await request.files
    upload_file = files.get("file")

    if upload_file is None or not upload_file.filename:
        return jsonify({"error": "No file was uploaded"}), 400

    file_name = upload_file.filename
    raw_bytes = upload_file.read()

    logger.info(
        "upload_received",
        file_name=file_name,
        size=len(raw_bytes),
        content_type=upload_file.mimetype,
    )

    pipeline = IngestPipeline(vector_index=get_vector_index())

    try:
        report = await pipeline.ingest_upload(
            file_name, raw_bytes, content_type=upload_file.mimetype
        )

    except (UnsupportedFormat, EmptyContent) as e:
        logger.warning("upload_rejected", file_name=file_name, error=str(e))
        return jsonify({"error": e.message}), 400

    except IngestionFailed as e:
        logger.error(
            "upload_ingestion_failed",
            file_name=file_name,
            inserted=e.inserted,
            batch_size=e.batch_size,
            cause=str(e.__cause__),
        )
        return jsonify({
            "error": "Embedding service unavailable, the file was only partially indexed",
            "inserted": e.inserted,
            "batch_size": e.batch_size,
        }), 502

    except Exception as e:
        logger.error("upload_error", error=str(e), error_type=type(e).__name__)
        return jsonify({"error": "An error occurred while uploading the file"}), 500

    return jsonify({
        "success": True,
        "message": f"File '{file_name}' was uploaded and indexed",
        "chunk_count": report.chunk_count,
        "total_documents": report.total_documents,
    })


@app.route("/api/documents", methods=["GET"])
async def document_stats():
    """Report the size of the shared vector index."""
    return jsonify(get_vector_index().get_stats())


@app.route("/api/documents", methods=["DELETE"])
async def clear_documents():
    """Remove every document from the shared vector index."""
    index = get_vector_index()
    index.clear()
    return jsonify({"document_count": index.count()})


@app.route("/api/chat", methods=["POST"])
async def chat():
    """Handle chat completion requests with optional RAG and persona.

    Expects JSON body:
    {
        "message": "user message text",
        "personaId": "optional-persona-id",  // persona_id also accepted
        "useRag": true  // optional, defaults to true; use_rag also accepted
    }

    Returns JSON:
    {
        "response": "assistant response text",
        "model": "model_name",
        "rag_used": true,
        "documents_found": 3,
        "sources": [...]  // if RAG was used
    }
    """
    data = await request.get_json(silent=True)

    try:
        chat_request = ChatRequest.model_validate(data or {})
    except ValidationError as e:
        logger.warning("invalid_chat_request", error=str(e))
        return jsonify({"error": "Missing 'message' in request body"}), 400

    user_message = chat_request.message.strip()

    if not user_message:
        return jsonify({"error": "Message cannot be empty"}), 400

    if len(user_message) > config.MAX_MESSAGE_LENGTH:
        return jsonify({
            "error": f"Message too long (max {config.MAX_MESSAGE_LENGTH} characters)"
        }), 400

    persona = None
    if chat_request.persona_id:
        persona = get_catalog().get(chat_request.persona_id)
        if persona is None:
            return jsonify({"error": "Persona not found"}), 404

    logger.info(
        "chat_request_received",
        message_length=len(user_message),
        use_rag=chat_request.use_rag,
        persona_id=chat_request.persona_id,
    )

    retriever = Retriever(vector_index=get_vector_index())
    augmentation = await retriever.augment_or_passthrough(
        user_message, chat_request.use_rag, k=config.RETRIEVAL_TOP_K
    )

    messages = [
        {"role": "system", "content": build_system_prompt(persona)},
        {"role": "user", "content": augmentation.augmented_prompt},
    ]

    try:
        reply = await openai_client.chat(messages)

    except (httpx.HTTPError, MissingAPIKeyError, ValueError) as e:
        logger.error("chat_completion_failed", error=str(e), error_type=type(e).__name__)
        return jsonify({
            "error": "An error occurred processing your request. Please try again."
        }), 502

    logger.info(
        "chat_response_sent",
        response_length=len(reply),
        rag_used=augmentation.used,
        documents_found=augmentation.result_count,
    )

    response_data = {
        "response": reply,
        "model": config.CHAT_MODEL,
        "rag_used": augmentation.used,
        "documents_found": augmentation.result_count,
    }

    if augmentation.results:
        response_data["sources"] = [
            {
                "source": result.source,
                "chunk_index": result.metadata.chunk_index,
                "content_preview": _preview(result.text),
                "relevance": round(result.score, 3),
            }
            for result in augmentation.results
        ]

    return jsonify(response_data)


@app.route("/api/personas", methods=["GET"])
async def list_personas():
    """List personas, optionally filtered.

    Query parameters:
        active: "true" to return only active personas
        category: exact category name
        id: return a single persona
    """
    catalog = get_catalog()
    personas = catalog.filter(
        active_only=request.args.get("active") == "true",
        category=request.args.get("category"),
    )

    persona_id = request.args.get("id")
    if persona_id:
        persona = next((p for p in personas if p.id == persona_id), None)
        if persona is None:
            return jsonify({"error": "Persona not found"}), 404
        return jsonify({"persona": _persona_json(persona)})

    return jsonify({
        "personas": [_persona_json(p) for p in personas],
        "categories": catalog.categories,
        "metadata": {**catalog.metadata, "totalPersonas": len(personas)},
    })


@app.route("/api/personas", methods=["POST"])
async def add_persona():
    """Validate a new persona and return it with a generated id.

    The record is echoed back only; the catalog and the data file are
    left unchanged.
    """
    data = await request.get_json(silent=True)

    if not isinstance(data, dict):
        return jsonify({"error": "Request body must be a JSON object"}), 400

    try:
        persona = create_persona(data)
    except ValidationError as e:
        logger.warning("invalid_persona", error=str(e))
        return jsonify({
            "error": "Invalid persona",
            "details": e.errors(include_url=False, include_context=False),
        }), 400
    except ValueError as e:
        logger.warning("invalid_persona", error=str(e))
        return jsonify({"error": str(e)}), 400

    return jsonify({"persona": _persona_json(persona)}), 201


@app.route("/health/ready")
async def health_ready():
    """Readiness probe - check if app can serve requests."""
    checks = {
        "status": "healthy",
        "api_key_configured": openai_client.has_api_key,
        "document_count": get_vector_index().count(),
    }

    if not checks["api_key_configured"]:
        checks["status"] = "unhealthy"
        checks["error"] = "OPENAI_API_KEY is not set"
        return jsonify(checks), 503

    return jsonify(checks), 200


@app.route("/health/live")
async def health_live():
    """Liveness probe - check if app is running."""
    return jsonify({"status": "alive"}), 200


@app.errorhandler(404)
async def not_found(error):
    """Handle 404 errors."""
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(413)
async def too_large(error):
    """Handle oversized uploads."""
    return jsonify({"error": f"File too large (max {config.MAX_UPLOAD_BYTES} bytes)"}), 413


@app.errorhandler(500)
async def internal_error(error):
    """Handle 500 errors."""
    logger.error("internal_server_error", error=str(error))
    return jsonify({"error": "Internal server error"}), 500


if __name__ == "__main__":
    # For development - run under hypercorn in production
    app.run(host="0.0.0.0", port=5000, debug=True)
