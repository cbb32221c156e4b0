"""Embedding model capability and provider registry."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import (
    TYPE_CHECKING,
    Callable,
    Mapping,
    Protocol,
    Sequence,
    runtime_checkable,
)

from vecdex.core.logging import Logger

__all__ = [
    "EmbeddingModel",
    "ProviderFactory",
    "ProviderInitContext",
    "ProviderRegistry",
    "ProviderRegistryError",
    "ProviderNotRegisteredError",
    "OpenAIEmbeddingModel",
    "openai_provider_factory",
    "register_builtin_providers",
    "create_default_provider_registry",
]


@runtime_checkable
class EmbeddingModel(Protocol):
    """Anything that turns text into a fixed-length vector.

    The vector index only ever talks to this capability; it never inspects
    which provider sits behind it.
    """

    @property
    def dimensions(self) -> int:
        """Length of every vector returned by :meth:`embed_text`."""

    async def embed_text(self, text: str) -> Sequence[float]:
        """Embed ``text``; provider failures propagate unchanged."""


@dataclass(frozen=True, slots=True)
class ProviderInitContext:
    """Construction context supplied to provider factories."""

    logger: Logger
    config: Mapping[str, object] | None = None

    def __post_init__(self) -> None:
        config = dict(self.config or {})
        object.__setattr__(self, "config", MappingProxyType(config))


ProviderFactory = Callable[[ProviderInitContext], EmbeddingModel]
"""Factory callable responsible for instantiating embedding models."""


class ProviderRegistryError(RuntimeError):
    """Base error type raised when interacting with the provider registry."""


class ProviderNotRegisteredError(ProviderRegistryError):
    """Raised when a provider lookup fails for the requested key."""


def _provider_key(key: str) -> str:
    normalized = key.strip().lower()
    if not normalized:
        raise ValueError("provider key cannot be empty")
    return normalized


class ProviderRegistry:
    """Case-insensitive provider keys mapped to embedding model factories."""

    def __init__(
        self,
        factories: Mapping[str, ProviderFactory] | None = None,
    ) -> None:
        self._factories: dict[str, ProviderFactory] = {}
        for key, factory in (factories or {}).items():
            self.register(key, factory)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.strip().lower() in self._factories

    @property
    def keys(self) -> tuple[str, ...]:
        return tuple(sorted(self._factories))

    def register(self, key: str, factory: ProviderFactory) -> None:
        name = _provider_key(key)
        if name in self._factories:
            raise ProviderRegistryError(f"Provider {name!r} already registered")
        self._factories[name] = factory

    def create(
        self,
        key: str,
        *,
        logger: Logger,
        config: Mapping[str, object] | None = None,
    ) -> EmbeddingModel:
        """Build the embedding model registered under ``key``.

        Raises:
            ProviderNotRegisteredError: If nothing is registered for ``key``.
            ProviderRegistryError: If the factory returns an object without
                ``dimensions`` and ``embed_text``.
        """

        name = _provider_key(key)
        factory = self._factories.get(name)
        if factory is None:
            raise ProviderNotRegisteredError(
                f"No provider registered under key {name!r}",
            )
        model = factory(ProviderInitContext(logger=logger, config=config))
        if not isinstance(model, EmbeddingModel):
            raise ProviderRegistryError(
                f"Provider {name!r} did not return an embedding model",
            )
        return model


if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from .openai import OpenAIEmbeddingModel, openai_provider_factory

_OPENAI_EXPORTS = frozenset({"OpenAIEmbeddingModel", "openai_provider_factory"})


def __getattr__(name: str) -> object:
    # The openai client is only imported once one of its names is used.
    if name not in _OPENAI_EXPORTS:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    from . import openai as _openai

    return getattr(_openai, name)


def register_builtin_providers(registry: ProviderRegistry) -> ProviderRegistry:
    """Add the OpenAI provider to ``registry`` unless it is already there."""

    if "openai" not in registry:
        from .openai import openai_provider_factory

        registry.register("openai", openai_provider_factory)
    return registry


def create_default_provider_registry() -> ProviderRegistry:
    return register_builtin_providers(ProviderRegistry())
