"""OpenAI-compatible API client wrapper with error handling."""
import httpx
from typing import List, Dict, Optional
import structlog

from personachat import config

logger = structlog.get_logger()


class MissingAPIKeyError(RuntimeError):
    """Raised when a request is attempted without an API key."""


class OpenAIClient:
    """Async client for the hosted chat-completion and embedding endpoints."""

    def __init__(
        self,
        base_url: str = None,
        api_key: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the API client.

        Args:
            base_url: API base URL (defaults to config.OPENAI_BASE_URL)
            api_key: Bearer credential (defaults to config.OPENAI_API_KEY)
            timeout: Request timeout in seconds (defaults to config.REQUEST_TIMEOUT)
            transport: Optional httpx transport, used to stub the network in tests
        """
        self.base_url = (base_url or config.OPENAI_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else config.OPENAI_API_KEY
        self.timeout = timeout or config.REQUEST_TIMEOUT
        self.transport = transport

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key)

    def _client(self) -> httpx.AsyncClient:
        if not self.api_key:
            raise MissingAPIKeyError("No API key configured (set OPENAI_API_KEY)")
        return httpx.AsyncClient(
            timeout=self.timeout,
            transport=self.transport,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )

    async def chat(
        self,
        messages: List[Dict[str, str]],
        model: str = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Send a chat completion request.

        Args:
            messages: List of message dicts with 'role' and 'content'
            model: Model to use (defaults to config.CHAT_MODEL)
            temperature: Sampling temperature (defaults to config.CHAT_TEMPERATURE)
            max_tokens: Completion length cap (defaults to config.CHAT_MAX_TOKENS)

        Returns:
            Content of the first choice's message

        Raises:
            MissingAPIKeyError: If no API key is configured
            httpx.HTTPError: On transport or API errors
            ValueError: If the response has no message content
        """
        model = model or config.CHAT_MODEL

        payload = {
            "model": model,
            "messages": messages,
            "temperature": config.CHAT_TEMPERATURE if temperature is None else temperature,
            "max_tokens": max_tokens or config.CHAT_MAX_TOKENS,
        }

        try:
            async with self._client() as client:
                logger.info(
                    "chat_completion_request",
                    model=model,
                    message_count=len(messages),
                )

                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=payload,
                )
                response.raise_for_status()

                data = response.json()

        except httpx.ConnectError as e:
            logger.error("api_connection_error", error=str(e), base_url=self.base_url)
            raise
        except httpx.HTTPError as e:
            logger.error(
                "chat_completion_http_error",
                error=str(e),
                status_code=getattr(getattr(e, "response", None), "status_code", None),
            )
            raise

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ValueError(f"Unexpected chat completion response: {e}") from e

        if not content:
            raise ValueError("Empty chat completion returned")

        logger.info(
            "chat_completion_response",
            model=model,
            response_length=len(content),
        )

        return content

    async def embeddings(
        self,
        text: str,
        model: str = None,
    ) -> Dict:
        """Generate an embedding for one input text.

        Args:
            text: Text to embed
            model: Model to use (defaults to config.EMBEDDING_MODEL)

        Returns:
            Raw response dict (OpenAI shape: {'data': [{'embedding': [...]}]})

        Raises:
            MissingAPIKeyError: If no API key is configured
            httpx.HTTPError: On transport or API errors
            ValueError: If the body is not JSON
        """
        model = model or config.EMBEDDING_MODEL

        payload = {
            "model": model,
            "input": text,
        }

        try:
            async with self._client() as client:
                logger.debug(
                    "embedding_request",
                    model=model,
                    text_length=len(text),
                )

                response = await client.post(
                    f"{self.base_url}/embeddings",
                    json=payload,
                )
                response.raise_for_status()

                return response.json()

        except httpx.HTTPError as e:
            logger.error("embedding_http_error", error=str(e))
            raise


# Global client instance
openai_client = OpenAIClient()
