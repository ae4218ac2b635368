"""Built-in model catalog used when a provider config lists no models."""

from __future__ import annotations

from .specs import CodecKind, ModelEntry

# Default context window for custom entries that do not declare one.
DEFAULT_MAX_INPUT_TOKENS = 8192

_CATALOG: dict[CodecKind, list[ModelEntry]] = {
    CodecKind.OPENAI: [
        ModelEntry(name="gpt-4o", max_input_tokens=128000, max_output_tokens=16384, supports_vision=True),
        ModelEntry(name="gpt-4o-mini", max_input_tokens=128000, max_output_tokens=16384, supports_vision=True),
        ModelEntry(name="gpt-4-turbo", max_input_tokens=128000, max_output_tokens=4096, supports_vision=True),
        ModelEntry(name="gpt-4", max_input_tokens=8192, max_output_tokens=4096, supports_vision=False),
        ModelEntry(name="gpt-3.5-turbo", max_input_tokens=16385, max_output_tokens=4096, supports_vision=False),
    ],
    CodecKind.CLAUDE: [
        ModelEntry(name="claude-3-5-sonnet-20241022", max_input_tokens=200000, max_output_tokens=8192, supports_vision=True),
        ModelEntry(name="claude-3-5-haiku-20241022", max_input_tokens=200000, max_output_tokens=8192, supports_vision=False),
        ModelEntry(name="claude-3-opus-20240229", max_input_tokens=200000, max_output_tokens=4096, supports_vision=True),
        ModelEntry(name="claude-3-haiku-20240307", max_input_tokens=200000, max_output_tokens=4096, supports_vision=True),
    ],
    CodecKind.GEMINI: [
        ModelEntry(name="gemini-1.5-pro", max_input_tokens=2097152, max_output_tokens=8192, supports_vision=True),
        ModelEntry(name="gemini-1.5-flash", max_input_tokens=1048576, max_output_tokens=8192, supports_vision=True),
        ModelEntry(name="gemini-2.0-flash", max_input_tokens=1048576, max_output_tokens=8192, supports_vision=True),
    ],
    CodecKind.VERTEXAI: [
        ModelEntry(name="gemini-1.5-pro", max_input_tokens=2097152, max_output_tokens=8192, supports_vision=True),
        ModelEntry(name="gemini-1.5-flash", max_input_tokens=1048576, max_output_tokens=8192, supports_vision=True),
    ],
    CodecKind.OLLAMA: [],
    CodecKind.OPENAI_COMPATIBLE: [],
}


def catalog_models(kind: CodecKind) -> list[ModelEntry]:
    """Return a copy of the built-in models for a codec family."""
    return [entry.model_copy() for entry in _CATALOG.get(kind, [])]


def lookup(kind: CodecKind, name: str) -> ModelEntry | None:
    """Find a catalog entry by model name."""
    for entry in _CATALOG.get(kind, []):
        if entry.name == name:
            return entry
    return None
