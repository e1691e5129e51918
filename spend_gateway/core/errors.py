"""
Error taxonomy for the gateway.

Every error carries a stable ``code`` so callers can tell a budget denial
from a provider failure from a malformed request.
"""

from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base class for all gateway errors."""
    code = "gateway_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def details(self) -> Dict[str, Any]:
        """Extra fields rendered alongside code and message."""
        return {}

    def to_dict(self) -> Dict[str, Any]:
        """Render the error for an API response body."""
        payload = {"code": self.code, "message": self.message}
        payload.update(self.details())
        return payload


class ValidationError(GatewayError, ValueError):
    """Malformed request or usage entry. Never partially applied."""
    code = "validation_error"


class InvalidRequestError(ValidationError):
    """A generation request failed shape validation."""
    code = "invalid_request"


class BudgetExceededError(GatewayError):
    """The budget pre-check denied the request. No side effects occurred."""
    code = "budget_exceeded"

    def __init__(self, message: str, decision: Optional[Any] = None):
        super().__init__(message)
        self.decision = decision

    def details(self) -> Dict[str, Any]:
        if self.decision is None or self.decision.scope is None:
            return {}
        return {"scope": str(self.decision.scope)}


class UnknownPricingError(GatewayError):
    """No rate exists for a provider/model pair."""
    code = "unknown_pricing"

    def __init__(self, provider: str, model: str):
        super().__init__(f"No pricing for {provider}/{model}")
        self.provider = provider
        self.model = model

    def details(self) -> Dict[str, Any]:
        return {"provider": self.provider, "model": self.model}


class ProviderError(GatewayError):
    """Upstream provider failure."""
    code = "provider_error"

    def __init__(
        self,
        message: str,
        kind: str = "unknown",
        retryable: bool = False,
        status: Optional[int] = None,
        provider: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.retryable = retryable
        self.status = status
        self.provider = provider

    def details(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "retryable": self.retryable,
            "status": self.status,
            "provider": self.provider,
        }


class CancelledError(GatewayError):
    """Caller-initiated stop. A terminal reason for accounting, not a failure."""
    code = "cancelled"
