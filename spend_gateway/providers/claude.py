"""
Claude adapter.

Anthropic streams Server-Sent Events with these event types:
- message_start: initial metadata, including input token usage
- content_block_delta: text chunk
- message_delta: stop reason and cumulative output token usage
- message_stop: stream complete
"""

import os
from typing import Any, AsyncIterator, Dict, Optional

import anthropic
from anthropic import AsyncAnthropic

from ..core.errors import ProviderError
from .base import (
    Done,
    GenerationEvent,
    ProviderAdapter,
    ProviderErrorEvent,
    ProviderRequest,
    TokenChunk,
    UsageReport,
    classify_status,
)


class ClaudeAdapter(ProviderAdapter):
    """Streams messages from the Anthropic API."""

    name = "claude"
    default_model = "claude-3-5-sonnet-20241022"

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        client: Optional[AsyncAnthropic] = None,
        **kwargs: Any
    ):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> AsyncAnthropic:
        if self._client is None:
            api_key = self.api_key or os.environ.get("ANTHROPIC_API_KEY")
            if not api_key:
                raise ProviderError(
                    "ANTHROPIC_API_KEY is required for the claude provider",
                    kind="auth",
                    provider=self.name,
                )
            self._client = AsyncAnthropic(api_key=api_key, timeout=self.timeout, max_retries=0)
        return self._client

    def build_request(self, request: ProviderRequest) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": [{"role": "user", "content": request.prompt}],
        }
        if request.system_prompt:
            params["system"] = request.system_prompt
        return params

    async def stream(self, request: ProviderRequest) -> AsyncIterator[GenerationEvent]:
        params = self.build_request(request)
        tokens_in = 0
        tokens_out = 0
        stop_reason = None
        try:
            async with self.client.messages.stream(**params) as stream:
                async for event in stream:
                    if event.type == "message_start":
                        usage = getattr(event.message, "usage", None)
                        if usage is not None:
                            tokens_in = usage.input_tokens or 0
                            tokens_out = getattr(usage, "output_tokens", 0) or 0
                            yield UsageReport(tokens_in, tokens_out)

                    elif event.type == "content_block_delta":
                        if getattr(event.delta, "type", None) == "text_delta":
                            yield TokenChunk(event.delta.text)

                    elif event.type == "message_delta":
                        usage = getattr(event, "usage", None)
                        if usage is not None:
                            tokens_out = usage.output_tokens or tokens_out
                            yield UsageReport(tokens_in, tokens_out)
                        stop_reason = getattr(event.delta, "stop_reason", None) or stop_reason
        except ProviderError as e:
            yield ProviderErrorEvent(e.kind, e.message, retryable=e.retryable, status=e.status)
            return
        except anthropic.APITimeoutError as e:
            yield ProviderErrorEvent("timeout", f"Claude request timed out: {e}", retryable=True)
            return
        except anthropic.APIConnectionError as e:
            yield ProviderErrorEvent("connection", f"Claude connection error: {e}", retryable=True)
            return
        except anthropic.APIStatusError as e:
            classified = classify_status(e.status_code)
            yield ProviderErrorEvent(
                classified.kind,
                f"Claude API error ({e.status_code}): {e.message}",
                retryable=classified.retryable,
                status=e.status_code,
            )
            return

        yield Done(stop_reason)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
