"""Provider registry — maps ``provider:model`` ids to model specs and codecs."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from . import catalog
from .codecs import WireCodec, codec_for
from .errors import DuplicateModelError, UnknownModelError
from .specs import ModelEntry, ModelSpec, ProviderConfig

logger = logging.getLogger(__name__)


def _spec_for(provider: ProviderConfig, entry: ModelEntry) -> ModelSpec:
    """Merge a config entry over the catalog defaults for its model name."""
    known = catalog.lookup(provider.kind, entry.name)
    max_input = entry.max_input_tokens or (known.max_input_tokens if known else None)
    max_output = entry.max_output_tokens or (known.max_output_tokens if known else None)
    if entry.supports_vision is not None:
        vision = entry.supports_vision
    else:
        vision = bool(known and known.supports_vision)
    return ModelSpec(
        provider=provider.name,
        name=entry.name,
        max_input_tokens=max_input or catalog.DEFAULT_MAX_INPUT_TOKENS,
        max_output_tokens=max_output,
        supports_vision=vision,
    )


class ProviderRegistry:
    """Registry of models, populated once at start-up.

    Duplicate keys are rejected when registered, not on first use.
    """

    def __init__(self) -> None:
        self._models: dict[str, tuple[ModelSpec, WireCodec]] = {}
        self._providers: dict[str, ProviderConfig] = {}

    # -- registration -------------------------------------------------------

    def register_model(self, spec: ModelSpec, codec: WireCodec) -> None:
        """Register one model bound to a codec instance."""
        if spec.key in self._models:
            raise DuplicateModelError(spec.key)
        self._models[spec.key] = (spec, codec)

    def register(self, provider: ProviderConfig) -> list[ModelSpec]:
        """Register every model of *provider* and return their specs.

        All-or-nothing: on a duplicate key nothing from *provider* is kept.
        """
        codec = codec_for(provider)
        entries = provider.models or catalog.catalog_models(provider.kind)
        specs = [_spec_for(provider, entry) for entry in entries]
        seen: set[str] = set()
        for spec in specs:
            if spec.key in self._models or spec.key in seen:
                raise DuplicateModelError(spec.key)
            seen.add(spec.key)
        for spec in specs:
            self._models[spec.key] = (spec, codec)
        self._providers[provider.name] = provider
        logger.debug("registered provider %s (%s) with %d models", provider.name, provider.kind, len(specs))
        return specs

    @classmethod
    def from_providers(cls, providers: Iterable[ProviderConfig]) -> ProviderRegistry:
        registry = cls()
        for provider in providers:
            registry.register(provider)
        return registry

    # -- lookup -------------------------------------------------------------

    def resolve(self, model_id: str) -> tuple[ModelSpec, WireCodec]:
        """Resolve ``provider:name`` to its spec and codec.

        Raises:
            UnknownModelError: If the id is malformed or not registered.
        """
        if ":" not in model_id:
            raise UnknownModelError(model_id)
        try:
            return self._models[model_id]
        except KeyError:
            raise UnknownModelError(model_id) from None

    def list(self) -> list[ModelSpec]:
        """All registered specs, in registration order."""
        return [spec for spec, _codec in self._models.values()]

    def providers(self) -> list[str]:
        return sorted(self._providers)

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._models

    def __len__(self) -> int:
        return len(self._models)
