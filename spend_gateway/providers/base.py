"""
Provider adapter contract.

Every adapter translates a resolved request into its provider's wire
format and translates the streamed response back into the normalized
event sequence below.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from ..core.errors import ProviderError
from ..core.pricing import PRICING_TABLE, PricingTable, calculate_cost
from ..core.token_counter import TokenUsage


@dataclass(frozen=True)
class ProviderRequest:
    """A generation request with provider, model and knobs resolved."""
    provider: str
    model: str
    prompt: str
    system_prompt: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 4000


@dataclass(frozen=True)
class TokenChunk:
    text: str


@dataclass(frozen=True)
class UsageReport:
    """Token counts reported so far in the current attempt (cumulative)."""
    tokens_in: int
    tokens_out: int

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage(tokens_in=self.tokens_in, tokens_out=self.tokens_out)


@dataclass(frozen=True)
class Done:
    finish_reason: Optional[str] = None


@dataclass(frozen=True)
class ProviderErrorEvent:
    """Upstream failure surfaced in-band."""
    kind: str
    message: str
    retryable: bool = False
    status: Optional[int] = None

    def to_exception(self, provider: Optional[str] = None) -> ProviderError:
        return ProviderError(
            self.message,
            kind=self.kind,
            retryable=self.retryable,
            status=self.status,
            provider=provider,
        )


GenerationEvent = Union[TokenChunk, UsageReport, Done, ProviderErrorEvent]


def classify_status(status: Optional[int]) -> ProviderErrorEvent:
    """Map an HTTP status to a normalized error kind and retryability."""
    if status == 429:
        return ProviderErrorEvent("rate_limited", "Rate limit exceeded", retryable=True, status=status)
    if status in (401, 403):
        return ProviderErrorEvent("auth", "Provider rejected credentials", status=status)
    if status is not None and status >= 500:
        return ProviderErrorEvent("server_error", "Provider server error", retryable=True, status=status)
    return ProviderErrorEvent("bad_request", "Provider rejected the request", status=status)


class ProviderAdapter(ABC):
    """Base class for provider adapters.

    Adapters never retry; retry policy belongs to the orchestrator.
    Closing the iterator returned by ``stream`` releases the upstream
    connection.
    """

    name: str = ""
    default_model: str = ""

    def __init__(self, pricing: PricingTable = PRICING_TABLE):
        self.pricing = pricing

    @abstractmethod
    def build_request(self, request: ProviderRequest) -> Dict[str, Any]:
        """Translate a resolved request into provider call parameters."""

    @abstractmethod
    def stream(self, request: ProviderRequest) -> AsyncIterator[GenerationEvent]:
        """Open the provider call and yield normalized events."""

    def build_messages(self, request: ProviderRequest) -> List[Dict[str, str]]:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})
        return messages

    def ensure_priced(self, model: str) -> None:
        """Raise UnknownPricingError now rather than after tokens are billed."""
        self.pricing.get_pricing(self.name, model)

    def calculate_cost(self, model: str, usage: TokenUsage) -> Decimal:
        return calculate_cost(self.name, model, usage, self.pricing)

    async def aclose(self) -> None:
        """Release client resources held by the adapter."""
