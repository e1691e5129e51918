"""
Gateway orchestrator.

Entry point between callers and providers. Each request moves through

    RECEIVED -> BUDGET_CHECKED -> DISPATCHED -> STREAMING
             -> COMPLETED | CANCELLED | FAILED

and every terminal state writes zero or exactly one ledger entry.

Budget enforcement is a soft limit: spend is read at admission time and
concurrent requests against one scope can jointly overshoot it.
"""

import asyncio
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import AsyncIterator, Callable, Dict, List, Optional

import structlog

from ..config.loader import TASK_TYPES, GatewayConfig, default_gateway_config
from ..providers import PROVIDER_REGISTRY, create_adapter
from ..providers.base import (
    Done,
    GenerationEvent,
    ProviderAdapter,
    ProviderErrorEvent,
    ProviderRequest,
    TokenChunk,
    UsageReport,
)
from ..storage.ledger import UsageLedger
from ..storage.models import UsageEntry, utc_now
from .cache import ResponseCache, make_cache_key
from .cancellation import CancellationToken
from .circuit_breaker import CircuitBreaker
from .errors import BudgetExceededError, CancelledError, InvalidRequestError, ProviderError
from .guardrails import (
    BudgetAction,
    BudgetDecision,
    BudgetPolicyStore,
    ScopeKind,
    check_before_request,
    check_request_estimate,
    most_severe,
    period_start,
)
from .prompts import system_prompt_for
from .token_counter import TokenUsage, estimate_tokens

logger = structlog.get_logger(__name__)

# First attempt plus one retry
MAX_ATTEMPTS = 2


class RequestState(Enum):
    RECEIVED = "received"
    BUDGET_CHECKED = "budget_checked"
    DISPATCHED = "dispatched"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = (RequestState.COMPLETED, RequestState.CANCELLED, RequestState.FAILED)


async def _pull(events: AsyncIterator[GenerationEvent]) -> Optional[GenerationEvent]:
    try:
        return await events.__anext__()
    except StopAsyncIteration:
        return None


@dataclass(frozen=True)
class GenerationOptions:
    """Provider-agnostic knobs. Unset values come from the task route."""
    provider: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


@dataclass(frozen=True)
class GenerationRequest:
    project_id: str
    task_type: str
    prompt: str
    options: GenerationOptions = field(default_factory=GenerationOptions)
    system_prompt: Optional[str] = None
    user_id: Optional[str] = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True)
class GenerationSummary:
    """Out-of-band usage summary delivered once the stream is terminal."""
    state: RequestState
    provider: str
    model: str
    tokens_in: int
    tokens_out: int
    cost: Decimal
    attempts: int
    entry: Optional[UsageEntry] = None
    warning: Optional[BudgetDecision] = None
    error: Optional[Exception] = None

    @property
    def tokens(self) -> int:
        return self.tokens_in + self.tokens_out


@dataclass(frozen=True)
class GenerationResult:
    content: str
    summary: GenerationSummary
    cached: bool = False


def validate_request(request: GenerationRequest) -> None:
    """Check the request shape before anything else happens.

    Raises:
        InvalidRequestError: If a required field is missing or out of range
    """
    if not isinstance(request, GenerationRequest):
        raise InvalidRequestError(f"Expected GenerationRequest, got {type(request).__name__}")
    if not request.project_id or not str(request.project_id).strip():
        raise InvalidRequestError("project_id is required and cannot be empty")
    if request.task_type not in TASK_TYPES:
        raise InvalidRequestError(
            f"task_type must be one of {list(TASK_TYPES)}, got {request.task_type!r}"
        )
    if not request.prompt or not request.prompt.strip():
        raise InvalidRequestError("prompt is required and cannot be empty")

    options = request.options
    if options.temperature is not None and not 0 <= options.temperature <= 2:
        raise InvalidRequestError("temperature must be between 0 and 2")
    if options.max_tokens is not None and options.max_tokens <= 0:
        raise InvalidRequestError("max_tokens must be positive")


class GenerationStream:
    """One in-flight generation.

    Iterate it to receive text chunks. Once iteration ends (or the stream
    is closed or cancelled) ``summary`` holds the final usage and cost.

    Usage:
        stream = gateway.open_stream(request)
        async with stream:
            async for text in stream:
                send(text)
        print(stream.summary.cost)
    """

    def __init__(
        self,
        gateway: "GatewayOrchestrator",
        request: GenerationRequest,
        provider_request: ProviderRequest,
        adapter: ProviderAdapter,
        warning: Optional[BudgetDecision],
        cancel_token: CancellationToken,
    ):
        self.request = request
        self.provider_request = provider_request
        self.warning = warning
        self.state = RequestState.BUDGET_CHECKED
        self._gateway = gateway
        self._adapter = adapter
        self._token = cancel_token
        self._iterator: Optional[AsyncIterator[str]] = None
        self._text_parts: List[str] = []
        self._chunks_sent = 0
        self._attempts = 0
        self._usage_reported = False
        self._attempt_reported = False
        self._prior_usage = TokenUsage()
        self._attempt_usage = TokenUsage()
        self._summary: Optional[GenerationSummary] = None
        self._log = logger.bind(
            request_id=request.request_id,
            project_id=request.project_id,
            provider=provider_request.provider,
            model=provider_request.model,
        )
        cancel_token.on_cancel(self._on_cancel)

    @property
    def summary(self) -> Optional[GenerationSummary]:
        """Final summary, or None while the request is still running."""
        return self._summary

    @property
    def text(self) -> str:
        """Text forwarded to the caller so far."""
        return "".join(self._text_parts)

    @property
    def usage(self) -> TokenUsage:
        return self._prior_usage + self._attempt_usage

    @property
    def cancel_token(self) -> CancellationToken:
        return self._token

    def cancel(self) -> None:
        """Stop forwarding chunks and release the provider stream."""
        self._token.cancel()

    def _on_cancel(self) -> None:
        self._log.info("cancel_requested", chunks_sent=self._chunks_sent)

    def __aiter__(self) -> AsyncIterator[str]:
        if self._iterator is None:
            self._iterator = self._run()
        return self._iterator

    async def __aenter__(self) -> "GenerationStream":
        return self

    async def __aexit__(self, exc_type, exc_value, traceback) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Release the provider connection and settle accounting."""
        if self._iterator is not None:
            await self._iterator.aclose()
        self._finish(RequestState.CANCELLED)

    async def _run(self) -> AsyncIterator[str]:
        try:
            while True:
                self._attempts += 1
                self.state = RequestState.DISPATCHED
                self._log.info("provider_dispatched", attempt=self._attempts)

                failure: Optional[ProviderErrorEvent] = None
                self._attempt_reported = False
                events = self._adapter.stream(self.provider_request)
                try:
                    self.state = RequestState.STREAMING
                    while True:
                        event = await self._next_event(events)
                        if event is None or self._token.is_cancelled:
                            break
                        if isinstance(event, TokenChunk):
                            self._chunks_sent += 1
                            self._text_parts.append(event.text)
                            yield event.text
                            if self._token.is_cancelled:
                                break
                        elif isinstance(event, UsageReport):
                            self._usage_reported = True
                            self._attempt_reported = True
                            self._attempt_usage = event.usage
                        elif isinstance(event, Done):
                            self._finish(RequestState.COMPLETED)
                            return
                        elif isinstance(event, ProviderErrorEvent):
                            failure = event
                            break
                finally:
                    await events.aclose()

                if self._token.is_cancelled:
                    self._finish(RequestState.CANCELLED)
                    return

                if failure is None:
                    failure = ProviderErrorEvent(
                        "incomplete_stream",
                        "Provider stream ended without completion",
                        retryable=True,
                    )

                if failure.retryable and self._chunks_sent == 0 and self._attempts < MAX_ATTEMPTS:
                    self._log.warning(
                        "provider_retry", kind=failure.kind, error=failure.message
                    )
                    # Usage billed by the abandoned attempt still counts
                    self._prior_usage = self.usage
                    self._attempt_usage = TokenUsage()
                    continue

                error = failure.to_exception(self.provider_request.provider)
                self._finish(RequestState.FAILED, error)
                raise error
        except (GeneratorExit, asyncio.CancelledError):
            self._finish(RequestState.CANCELLED)
            raise
        except Exception as e:
            self._finish(RequestState.FAILED, e)
            raise

    async def _next_event(self, events: AsyncIterator[GenerationEvent]) -> Optional[GenerationEvent]:
        """Next provider event, or None once the stream ends or is cancelled.

        The read is raced against the cancellation token so a stalled
        upstream does not delay the cancel.
        """
        if self._token.is_cancelled:
            return None
        pull = asyncio.ensure_future(_pull(events))
        cancelled = asyncio.ensure_future(self._token.wait())
        try:
            await asyncio.wait({pull, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not pull.done():
                pull.cancel()
                # The provider iterator cannot be closed while a read is running
                await asyncio.wait({pull})
        if pull.cancelled():
            return None
        return pull.result()

    def _estimate_usage(self) -> TokenUsage:
        prompt = (self.provider_request.system_prompt or "") + self.provider_request.prompt
        return TokenUsage(tokens_in=estimate_tokens(prompt), tokens_out=estimate_tokens(self.text))

    def _finish(self, state: RequestState, error: Optional[Exception] = None) -> None:
        """Settle accounting for a terminal state. Runs at most once."""
        if self._summary is not None:
            return
        self.state = state

        if state is RequestState.COMPLETED and not self._attempt_reported:
            # Provider finished without reporting usage; bill an estimate
            self._attempt_usage = self._estimate_usage()
            self._usage_reported = True
            self._log.warning(
                "usage_estimated",
                tokens_in=self._attempt_usage.tokens_in,
                tokens_out=self._attempt_usage.tokens_out,
            )
        if state is RequestState.CANCELLED and error is None:
            error = CancelledError("Request was cancelled")

        usage = self.usage
        cost = Decimal("0")
        entry = None
        if self._usage_reported:
            cost = self._adapter.calculate_cost(self.provider_request.model, usage)
            entry = UsageEntry(
                provider=self.provider_request.provider,
                model=self.provider_request.model,
                tokens=usage.total_tokens,
                cost=cost,
                timestamp=self._gateway.clock(),
                project_id=self.request.project_id,
                user_id=self.request.user_id,
                task_type=self.request.task_type,
                tokens_in=usage.tokens_in,
                tokens_out=usage.tokens_out,
                terminal_state=state.value,
                request_id=self.request.request_id,
            )
            self._gateway.ledger.log(entry)

        breaker = self._gateway.breakers.get(self.provider_request.provider)
        if breaker is not None:
            if state is RequestState.COMPLETED:
                breaker.record_success()
            elif state is RequestState.FAILED and isinstance(error, ProviderError):
                breaker.record_failure()

        self._summary = GenerationSummary(
            state=state,
            provider=self.provider_request.provider,
            model=self.provider_request.model,
            tokens_in=usage.tokens_in,
            tokens_out=usage.tokens_out,
            cost=cost,
            attempts=self._attempts,
            entry=entry,
            warning=self.warning,
            error=error,
        )

        if state is RequestState.FAILED:
            self._log.error("generation_failed", error=str(error), logged=entry is not None)
        else:
            self._log.info(
                "generation_" + state.value,
                tokens=usage.total_tokens,
                cost=str(cost),
                logged=entry is not None,
            )


class GatewayOrchestrator:
    """Budget-checks, dispatches and meters generation requests.

    The ledger and policy store are injected so each process or test owns
    its own instances.
    """

    def __init__(
        self,
        ledger: UsageLedger,
        adapters: Dict[str, ProviderAdapter],
        policies: Optional[BudgetPolicyStore] = None,
        config: Optional[GatewayConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        cache: Optional[ResponseCache] = None,
    ):
        self.ledger = ledger
        self.adapters = dict(adapters)
        self.config = config or default_gateway_config()
        self.policies = policies or BudgetPolicyStore(self.config.budget.policy_defaults())
        self.clock = clock
        self.cache = cache
        cb = self.config.circuit_breaker
        self.breakers: Dict[str, CircuitBreaker] = {
            name: CircuitBreaker(
                failure_threshold=cb.failure_threshold,
                success_threshold=cb.success_threshold,
                reset_timeout=cb.reset_timeout,
            )
            for name in self.adapters
        }

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        ledger: Optional[UsageLedger] = None,
        policies: Optional[BudgetPolicyStore] = None,
    ) -> "GatewayOrchestrator":
        """Build an orchestrator with one adapter per registered provider."""
        adapters = {}
        for name in PROVIDER_REGISTRY:
            settings = config.get_provider_settings(name)
            api_key = os.environ.get(settings.api_key_env) if settings.api_key_env else None
            adapters[name] = create_adapter(name, api_key=api_key, timeout=settings.timeout)
        cache = None
        if config.cache.enabled:
            cache = ResponseCache(max_size=config.cache.max_size, ttl=config.cache.ttl)
        return cls(ledger or UsageLedger(), adapters, policies=policies, config=config, cache=cache)

    def resolve(self, request: GenerationRequest) -> ProviderRequest:
        """Fill unset options from the task route."""
        route = self.config.get_route(request.task_type)
        options = request.options
        provider = options.provider or route.provider
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise InvalidRequestError(
                f"Unknown provider: {provider}. Available: {sorted(self.adapters)}"
            )

        if options.model:
            model = options.model
        elif provider == route.provider:
            model = route.model
        else:
            model = adapter.default_model

        return ProviderRequest(
            provider=provider,
            model=model,
            prompt=request.prompt,
            system_prompt=request.system_prompt or system_prompt_for(request.task_type),
            temperature=route.temperature if options.temperature is None else options.temperature,
            max_tokens=options.max_tokens or route.max_tokens,
        )

    def check_budget(self, request: GenerationRequest, provider_request: ProviderRequest) -> BudgetDecision:
        """Evaluate every applicable policy plus the per-request ceiling."""
        now = self.clock()
        decisions = []
        for policy in self.policies.policies_for(request.project_id, request.user_id):
            since = period_start(policy.period_kind, now)
            if policy.scope.kind is ScopeKind.PROJECT:
                spend = self.ledger.get_scope_cost(project_id=policy.scope.id, since=since)
            else:
                spend = self.ledger.get_scope_cost(user_id=policy.scope.id, since=since)
            decisions.append(check_before_request(policy.scope, policy, spend))

        adapter = self.adapters[provider_request.provider]
        estimate = adapter.calculate_cost(
            provider_request.model,
            TokenUsage(
                tokens_in=estimate_tokens((provider_request.system_prompt or "") + provider_request.prompt),
                tokens_out=provider_request.max_tokens,
            ),
        )
        decisions.append(check_request_estimate(estimate, self.config.budget.max_cost_per_request))
        return most_severe(decisions)

    def open_stream(
        self,
        request: GenerationRequest,
        cancel_token: Optional[CancellationToken] = None,
    ) -> GenerationStream:
        """Validate, price-check and budget-check a request, then hand back its stream.

        No provider call happens until the stream is iterated.

        Raises:
            InvalidRequestError: If the request is malformed
            UnknownPricingError: If the resolved model cannot be priced
            BudgetExceededError: If any budget check denies the request
            ProviderError: If the provider's circuit is open
        """
        validate_request(request)
        provider_request = self.resolve(request)
        adapter = self.adapters[provider_request.provider]
        adapter.ensure_priced(provider_request.model)

        decision = self.check_budget(request, provider_request)
        log = logger.bind(request_id=request.request_id, project_id=request.project_id)
        if decision.action is BudgetAction.DENY:
            log.warning("budget_denied", reason=decision.reason)
            raise BudgetExceededError(decision.reason, decision)
        if decision.action is BudgetAction.WARN:
            log.warning(
                "budget_warning",
                reason=decision.reason,
                remaining_fraction=decision.remaining_fraction,
            )

        breaker = self.breakers.get(provider_request.provider)
        if breaker is not None and breaker.is_open():
            log.warning("circuit_open", provider=provider_request.provider)
            raise ProviderError(
                f"Provider {provider_request.provider} is temporarily unavailable",
                kind="circuit_open",
                provider=provider_request.provider,
            )

        return GenerationStream(
            self,
            request,
            provider_request,
            adapter,
            warning=decision if decision.action is BudgetAction.WARN else None,
            cancel_token=cancel_token or CancellationToken(),
        )

    async def generate(
        self,
        request: GenerationRequest,
        cancel_token: Optional[CancellationToken] = None,
    ) -> GenerationResult:
        """Run a request to completion and return the full text.

        With a response cache configured, an identical resolved request
        seen within the TTL is answered from the cache. A cache hit makes
        no provider call and writes no ledger entry.
        """
        cache_key = None
        if self.cache is not None:
            validate_request(request)
            provider_request = self.resolve(request)
            cache_key = make_cache_key(provider_request)
            content = self.cache.get(cache_key)
            if content is not None:
                logger.info(
                    "cache_hit",
                    request_id=request.request_id,
                    project_id=request.project_id,
                    provider=provider_request.provider,
                    model=provider_request.model,
                )
                summary = GenerationSummary(
                    state=RequestState.COMPLETED,
                    provider=provider_request.provider,
                    model=provider_request.model,
                    tokens_in=0,
                    tokens_out=0,
                    cost=Decimal("0"),
                    attempts=0,
                )
                return GenerationResult(content=content, summary=summary, cached=True)

        stream = self.open_stream(request, cancel_token)
        async with stream:
            async for _ in stream:
                pass

        if cache_key is not None and stream.summary.state is RequestState.COMPLETED:
            self.cache.set(cache_key, stream.text)
        return GenerationResult(content=stream.text, summary=stream.summary)

    def provider_health(self) -> Dict[str, Dict[str, object]]:
        return {name: breaker.get_metrics() for name, breaker in self.breakers.items()}

    async def aclose(self) -> None:
        for adapter in self.adapters.values():
            await adapter.aclose()
