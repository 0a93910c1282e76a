"""Persona catalog and system prompt templating."""
import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel
import structlog

from personachat import config

logger = structlog.get_logger()

DEFAULT_SYSTEM_PROMPT = (
    "You are a friendly and knowledgeable AI assistant. "
    "Answer questions clearly and concisely."
)


class CamelModel(BaseModel):
    """Reads camelCase or snake_case keys; dumps camelCase with by_alias=True."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ResponseStyle(CamelModel):
    tone: str = ""
    vocabulary: str = ""
    approach: str = ""


class SampleResponse(CamelModel):
    question: str
    response: str


class Persona(CamelModel):
    """A character the assistant can speak as."""

    id: str
    name: str
    category: str
    description: str = ""
    personality: str = ""
    speaking_style: str = ""
    background: str = ""
    expertise: List[str] = Field(default_factory=list)
    catch_phrase: str = ""
    response_style: ResponseStyle = Field(default_factory=ResponseStyle)
    sample_responses: List[SampleResponse] = Field(default_factory=list)
    active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PersonaFile(CamelModel):
    personas: List[Persona]
    categories: List[str] = Field(default_factory=list)
    metadata: dict = Field(default_factory=dict)


BUILTIN_PERSONAS = PersonaFile(
    personas=[
        Persona(
            id="albert-einstein",
            name="Albert Einstein",
            category="Scientist",
            description="Theoretical physicist who developed the theory of relativity.",
            personality=(
                "Curious and imaginative. Humble yet confident, a pacifist with "
                "humanitarian values who dislikes authority."
            ),
            speaking_style=(
                "Gentle and playful, explains hard ideas with everyday thought experiments."
            ),
            background=(
                "Born in Ulm in 1879, worked at the Swiss patent office, "
                "received the Nobel Prize in Physics in 1921."
            ),
            expertise=["Physics", "Relativity", "Philosophy of science"],
            catch_phrase="Imagination is more important than knowledge.",
            response_style=ResponseStyle(
                tone="warm and curious",
                vocabulary="plain words, vivid analogies",
                approach="start from a thought experiment, then generalize",
            ),
        ),
        Persona(
            id="marie-curie",
            name="Marie Curie",
            category="Scientist",
            description="Physicist and chemist, pioneer of research on radioactivity.",
            personality="Devoted, persistent and modest, with a deep passion for science.",
            speaking_style="Precise and calm, grounded in evidence and experiment.",
            background=(
                "Born in Warsaw in 1867, first person to win Nobel Prizes in "
                "two scientific fields."
            ),
            expertise=["Chemistry", "Physics", "Radioactivity"],
            catch_phrase="Nothing in life is to be feared, it is only to be understood.",
            response_style=ResponseStyle(
                tone="serious and encouraging",
                vocabulary="scientific but accessible",
                approach="methodical, one step at a time",
            ),
        ),
    ],
    categories=["Scientist"],
    metadata={"version": "1.0.0", "description": "Built-in personas"},
)


class PersonaCatalog:
    """Read-only list of personas with filter and lookup."""

    def __init__(self, data: PersonaFile):
        self.personas = data.personas
        self.categories = data.categories
        self.metadata = data.metadata

    @classmethod
    def load(cls, path: Path = None) -> "PersonaCatalog":
        """Load personas from a JSON file, falling back to the built-in set.

        Args:
            path: JSON file path (default from config)

        Returns:
            PersonaCatalog instance
        """
        path = path or config.PERSONAS_PATH

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = PersonaFile.model_validate(json.load(f))
        except FileNotFoundError:
            logger.warning("persona_file_not_found", path=str(path))
            return cls(BUILTIN_PERSONAS)
        except (json.JSONDecodeError, ValidationError) as e:
            logger.error("persona_file_invalid", path=str(path), error=str(e))
            return cls(BUILTIN_PERSONAS)

        logger.info("personas_loaded", path=str(path), count=len(data.personas))
        return cls(data)

    def filter(
        self, active_only: bool = False, category: Optional[str] = None
    ) -> List[Persona]:
        personas = self.personas
        if active_only:
            personas = [p for p in personas if p.active]
        if category:
            personas = [p for p in personas if p.category == category]
        return personas

    def get(self, persona_id: str) -> Optional[Persona]:
        for persona in self.personas:
            if persona.id == persona_id:
                return persona
        return None


def generate_persona_id(name: str) -> str:
    """Slug a display name into a persona id ("Marie Curie" -> "marie-curie")."""
    slug = re.sub(r"[^\w\s-]", "", name.lower())
    slug = re.sub(r"\s+", "-", slug)
    return re.sub(r"-+", "-", slug).strip("-")


def create_persona(fields: Dict[str, Any]) -> Persona:
    """Build a new persona record from client-supplied fields.

    The id and timestamps are always generated here, whatever the client
    sent. The record is not added to the catalog or written to disk.

    Raises:
        ValidationError: If required fields are missing or mistyped
        ValueError: If the name yields an empty id
    """
    reserved = {"id", "createdAt", "created_at", "updatedAt", "updated_at"}
    data = {key: value for key, value in fields.items() if key not in reserved}

    persona_id = generate_persona_id(str(data.get("name", "")))
    now = datetime.now(timezone.utc)
    persona = Persona.model_validate(
        {**data, "id": persona_id, "createdAt": now, "updatedAt": now}
    )

    if not persona.id:
        raise ValueError("Persona name must contain letters or digits")

    logger.info("persona_created", persona_id=persona.id, category=persona.category)
    return persona


def build_system_prompt(persona: Optional[Persona] = None) -> str:
    """Render the system prompt for a persona.

    Args:
        persona: Persona to role-play, or None for the default assistant

    Returns:
        System prompt text
    """
    if persona is None:
        return DEFAULT_SYSTEM_PROMPT

    lines = [
        f"You are {persona.name}. Stay in character for the whole conversation.",
        "",
        f"Description: {persona.description}",
        f"Personality: {persona.personality}",
        f"Speaking style: {persona.speaking_style}",
        f"Background: {persona.background}",
    ]

    if persona.expertise:
        lines.append(f"Expertise: {', '.join(persona.expertise)}")
    if persona.catch_phrase:
        lines.append(f"Characteristic phrase: {persona.catch_phrase}")

    style = persona.response_style
    lines += [
        "",
        "How to respond:",
        f"- Tone: {style.tone}",
        f"- Vocabulary: {style.vocabulary}",
        f"- Approach: {style.approach}",
    ]

    if persona.sample_responses:
        lines += ["", "Example exchanges:"]
        for sample in persona.sample_responses:
            lines.append(f"Q: {sample.question}")
            lines.append(f"A: {sample.response}")

    lines += [
        "",
        f"Answer in the way {persona.name} would, while staying accurate and helpful.",
    ]

    return "\n".join(lines)


# Singleton instance for convenience
_catalog_instance: Optional[PersonaCatalog] = None


def get_catalog() -> PersonaCatalog:
    """Get the persona catalog, loading it on first use."""
    global _catalog_instance
    if _catalog_instance is None:
        _catalog_instance = PersonaCatalog.load()
    return _catalog_instance
