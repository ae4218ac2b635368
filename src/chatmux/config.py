"""Configuration built from a JSON file and ``CHATMUX_*`` environment variables."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .compression import DEFAULT_SUMMARIZE_PROMPT, DEFAULT_SUMMARY_PREFIX
from .roles import Role
from .specs import CodecKind, ModelEntry, ProviderConfig
from .tokens import MIN_COMPRESS_THRESHOLD

logger = logging.getLogger(__name__)

# API key variables consulted per provider family.
_KEY_VARS: dict[CodecKind, str] = {
    CodecKind.OPENAI: "OPENAI_API_KEY",
    CodecKind.CLAUDE: "ANTHROPIC_API_KEY",
    CodecKind.GEMINI: "GEMINI_API_KEY",
    CodecKind.VERTEXAI: "VERTEXAI_ACCESS_TOKEN",
}


def default_config_dir(environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    configured = env.get("CHATMUX_CONFIG_DIR")
    if configured:
        return Path(configured).expanduser()
    return Path(env.get("XDG_CONFIG_HOME", "~/.config")).expanduser() / "chatmux"


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


class ChatConfig(BaseModel):
    """Everything the engine needs; passed explicitly, never read globally."""

    model_config = ConfigDict(validate_assignment=True)

    model: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    stream: bool = True
    compress_threshold: int = 4000
    compress_target: int | None = None
    connect_timeout: float = 10.0
    read_timeout: float = 60.0
    save_session: bool = False
    archive_compressed: bool = True
    sessions_dir: Path = Field(default_factory=lambda: default_config_dir() / "sessions")
    summarize_prompt: str = DEFAULT_SUMMARIZE_PROMPT
    summary_prefix: str = DEFAULT_SUMMARY_PREFIX
    providers: list[ProviderConfig] = Field(default_factory=list)
    roles: list[Role] = Field(default_factory=list)

    @field_validator("compress_threshold")
    @classmethod
    def _threshold_floor(cls, value: int) -> int:
        if value < MIN_COMPRESS_THRESHOLD:
            msg = f"compress_threshold must be >= {MIN_COMPRESS_THRESHOLD}"
            raise ValueError(msg)
        return value

    @field_validator("compress_target")
    @classmethod
    def _positive_target(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            msg = "compress_target must be positive"
            raise ValueError(msg)
        return value

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path) -> ChatConfig:
        """Load a JSON config file."""
        data = json.loads(path.read_text(encoding="utf-8"))
        return cls.model_validate(data)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ChatConfig:
        """Build the config from ``CHATMUX_*`` variables.

        Resolution:
            1. ``CHATMUX_CONFIG`` (or ``<config dir>/config.json`` if present)
               provides the base values.
            2. Individual ``CHATMUX_*`` variables override them.
            3. Providers without an ``api_key`` pick it up from the usual
               vendor variables; with no providers configured at all, one is
               created per vendor variable that is set.
        """
        env = os.environ if environ is None else environ
        data: dict[str, object] = {}

        config_file = env.get("CHATMUX_CONFIG")
        path = Path(config_file).expanduser() if config_file else default_config_dir(env) / "config.json"
        if path.is_file():
            logger.debug("loading config from %s", path)
            data = json.loads(path.read_text(encoding="utf-8"))
        elif config_file:
            msg = f"config file not found: {path}"
            raise FileNotFoundError(msg)

        overrides = {
            "CHATMUX_MODEL": ("model", str),
            "CHATMUX_TEMPERATURE": ("temperature", float),
            "CHATMUX_TOP_P": ("top_p", float),
            "CHATMUX_STREAM": ("stream", _parse_bool),
            "CHATMUX_COMPRESS_THRESHOLD": ("compress_threshold", int),
            "CHATMUX_CONNECT_TIMEOUT": ("connect_timeout", float),
            "CHATMUX_READ_TIMEOUT": ("read_timeout", float),
            "CHATMUX_SAVE_SESSION": ("save_session", _parse_bool),
            "CHATMUX_SESSIONS_DIR": ("sessions_dir", str),
        }
        for var, (field, convert) in overrides.items():
            raw = env.get(var)
            if raw:
                data[field] = convert(raw)
        if "sessions_dir" not in data:
            data["sessions_dir"] = str(default_config_dir(env) / "sessions")

        config = cls.model_validate(data)
        config.providers = _resolve_providers(config.providers, env)
        return config


def _resolve_providers(
    providers: list[ProviderConfig], env: Mapping[str, str]
) -> list[ProviderConfig]:
    if providers:
        resolved = []
        for provider in providers:
            var = _KEY_VARS.get(provider.kind)
            if provider.api_key is None and var and env.get(var):
                provider = provider.model_copy(update={"api_key": env[var]})
            resolved.append(provider)
        return resolved

    detected: list[ProviderConfig] = []
    if env.get("OPENAI_API_KEY"):
        detected.append(
            ProviderConfig(
                name="openai",
                kind=CodecKind.OPENAI,
                api_key=env["OPENAI_API_KEY"],
                api_base=env.get("OPENAI_API_BASE"),
            )
        )
    if env.get("ANTHROPIC_API_KEY"):
        detected.append(
            ProviderConfig(name="claude", kind=CodecKind.CLAUDE, api_key=env["ANTHROPIC_API_KEY"])
        )
    if env.get("GEMINI_API_KEY"):
        detected.append(
            ProviderConfig(name="gemini", kind=CodecKind.GEMINI, api_key=env["GEMINI_API_KEY"])
        )
    if env.get("VERTEXAI_ACCESS_TOKEN") and env.get("VERTEXAI_PROJECT_ID"):
        detected.append(
            ProviderConfig(
                name="vertexai",
                kind=CodecKind.VERTEXAI,
                api_key=env["VERTEXAI_ACCESS_TOKEN"],
                project_id=env["VERTEXAI_PROJECT_ID"],
                location=env.get("VERTEXAI_LOCATION"),
            )
        )
    if env.get("OLLAMA_API_BASE"):
        names = [n.strip() for n in env.get("OLLAMA_MODELS", "").split(",") if n.strip()]
        detected.append(
            ProviderConfig(
                name="ollama",
                kind=CodecKind.OLLAMA,
                api_base=env["OLLAMA_API_BASE"],
                models=[ModelEntry(name=n) for n in names],
            )
        )
    return detected
