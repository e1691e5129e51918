"""
Provider adapters.

Adding a provider means adding one adapter class and one registry entry.
"""

from typing import Any, Dict, Type

from ..core.errors import InvalidRequestError
from .base import (
    Done,
    GenerationEvent,
    ProviderAdapter,
    ProviderErrorEvent,
    ProviderRequest,
    TokenChunk,
    UsageReport,
)
from .claude import ClaudeAdapter
from .grok import GrokAdapter

PROVIDER_REGISTRY: Dict[str, Type[ProviderAdapter]] = {
    GrokAdapter.name: GrokAdapter,
    ClaudeAdapter.name: ClaudeAdapter,
}


def create_adapter(name: str, **kwargs: Any) -> ProviderAdapter:
    """Instantiate the adapter registered under ``name``.

    Raises:
        InvalidRequestError: If no adapter is registered for ``name``
    """
    adapter_cls = PROVIDER_REGISTRY.get(name)
    if adapter_cls is None:
        raise InvalidRequestError(
            f"Unknown provider: {name}. Available: {sorted(PROVIDER_REGISTRY)}"
        )
    return adapter_cls(**kwargs)


__all__ = [
    "ClaudeAdapter",
    "Done",
    "GenerationEvent",
    "GrokAdapter",
    "PROVIDER_REGISTRY",
    "ProviderAdapter",
    "ProviderErrorEvent",
    "ProviderRequest",
    "TokenChunk",
    "UsageReport",
    "create_adapter",
]
