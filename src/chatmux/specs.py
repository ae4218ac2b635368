"""Static model and provider descriptions."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CodecKind(StrEnum):
    """Closed set of wire protocol families."""

    OPENAI = "openai"
    OPENAI_COMPATIBLE = "openai-compatible"
    CLAUDE = "claude"
    GEMINI = "gemini"
    VERTEXAI = "vertexai"
    OLLAMA = "ollama"


class ModelSpec(BaseModel):
    """Immutable description of one model, keyed by ``provider:name``."""

    model_config = ConfigDict(frozen=True)

    provider: str
    name: str
    max_input_tokens: int
    max_output_tokens: int | None = None
    supports_vision: bool = False

    @property
    def key(self) -> str:
        return f"{self.provider}:{self.name}"

    @field_validator("max_input_tokens")
    @classmethod
    def _positive_window(cls, value: int) -> int:
        if value <= 0:
            msg = "max_input_tokens must be positive"
            raise ValueError(msg)
        return value


class ModelEntry(BaseModel):
    """User-supplied model entry inside a provider config."""

    name: str
    max_input_tokens: int | None = None
    max_output_tokens: int | None = None
    supports_vision: bool | None = None


class ProviderConfig(BaseModel):
    """Connection settings for one provider instance.

    ``name`` is the ``provider`` half of model ids; ``kind`` picks the codec.
    Models left empty are taken from the built-in catalog for ``kind``.
    """

    name: str
    kind: CodecKind
    api_base: str | None = None
    api_key: str | None = None
    project_id: str | None = None
    location: str | None = None
    extra_headers: dict[str, str] = Field(default_factory=dict)
    models: list[ModelEntry] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _no_colon(cls, value: str) -> str:
        if not value or ":" in value:
            msg = f"invalid provider name '{value}'"
            raise ValueError(msg)
        return value
