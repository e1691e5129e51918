"""
Shared fixtures: a scripted provider adapter and a wired gateway.
"""
from datetime import datetime, timezone

import pytest

from spend_gateway.core.gateway import GatewayOrchestrator
from spend_gateway.providers.base import ProviderAdapter
from spend_gateway.storage.ledger import UsageLedger

FIXED_NOW = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class ScriptedAdapter(ProviderAdapter):
    """Adapter that replays one scripted event list per attempt.

    An item that is an exception instance is raised instead of yielded.
    """

    name = "grok"
    default_model = "grok-2-latest"

    def __init__(self, *scripts, name=None):
        super().__init__()
        if name is not None:
            self.name = name
        self.scripts = list(scripts)
        self.calls = []
        self.closed_streams = 0

    def build_request(self, request):
        return {"model": request.model, "prompt": request.prompt}

    async def stream(self, request):
        self.calls.append(request)
        script = self.scripts[min(len(self.calls), len(self.scripts)) - 1]
        try:
            for item in script:
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            self.closed_streams += 1


@pytest.fixture
def ledger():
    return UsageLedger()


@pytest.fixture
def make_gateway(ledger):
    """Build a gateway around scripted adapters keyed by their name."""
    def _make(*adapters, **kwargs):
        kwargs.setdefault("clock", lambda: FIXED_NOW)
        return GatewayOrchestrator(ledger, {a.name: a for a in adapters}, **kwargs)
    return _make
