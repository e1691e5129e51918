"""
Grok adapter.

X.AI serves an OpenAI-compatible chat completions API, so the official
``openai`` client is pointed at it.
"""

import os
from typing import Any, AsyncIterator, Dict, Optional

import openai
from openai import AsyncOpenAI

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

GROK_BASE_URL = "https://api.x.ai/v1"


class GrokAdapter(ProviderAdapter):
    """Streams chat completions from X.AI."""

    name = "grok"
    default_model = "grok-4-fast-reasoning"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = GROK_BASE_URL,
        timeout: float = 60.0,
        client: Optional[AsyncOpenAI] = None,
        **kwargs: Any
    ):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            api_key = self.api_key or os.environ.get("XAI_API_KEY") or os.environ.get("GROK_API_KEY")
            if not api_key:
                raise ProviderError(
                    "XAI_API_KEY or GROK_API_KEY is required for the grok provider",
                    kind="auth",
                    provider=self.name,
                )
            # Retries are the orchestrator's decision
            self._client = AsyncOpenAI(
                api_key=api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=0,
            )
        return self._client

    def build_request(self, request: ProviderRequest) -> Dict[str, Any]:
        return {
            "model": request.model,
            "messages": self.build_messages(request),
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
        }

    async def stream(self, request: ProviderRequest) -> AsyncIterator[GenerationEvent]:
        params = self.build_request(request)
        finish_reason = None
        response = None
        try:
            response = await self.client.chat.completions.create(**params)
            async for chunk in response:
                if chunk.choices:
                    choice = chunk.choices[0]
                    if choice.delta and choice.delta.content:
                        yield TokenChunk(choice.delta.content)
                    if choice.finish_reason:
                        finish_reason = choice.finish_reason
                if chunk.usage is not None:
                    yield UsageReport(
                        tokens_in=chunk.usage.prompt_tokens or 0,
                        tokens_out=chunk.usage.completion_tokens or 0,
                    )
        except ProviderError as e:
            yield ProviderErrorEvent(e.kind, e.message, retryable=e.retryable, status=e.status)
            return
        except openai.APITimeoutError as e:
            yield ProviderErrorEvent("timeout", f"Grok request timed out: {e}", retryable=True)
            return
        except openai.APIConnectionError as e:
            yield ProviderErrorEvent("connection", f"Grok connection error: {e}", retryable=True)
            return
        except openai.APIStatusError as e:
            classified = classify_status(e.status_code)
            yield ProviderErrorEvent(
                classified.kind,
                f"Grok API error ({e.status_code}): {e.message}",
                retryable=classified.retryable,
                status=e.status_code,
            )
            return
        finally:
            if response is not None:
                await response.close()

        yield Done(finish_reason)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
