from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

LimitType = Literal["trial", "rate"]


class OrchestrationError(Exception):
    """Base class for errors raised by the orchestration core."""


class RateLimitExceeded(OrchestrationError):
    def __init__(
        self,
        limit_type: LimitType,
        limit_name: str,
        reason: str,
        reset_time: Optional[datetime] = None,
    ) -> None:
        super().__init__(reason)
        self.limit_type = limit_type
        self.limit_name = limit_name
        self.reason = reason
        self.reset_time = reset_time

    def to_payload(self) -> dict:
        payload = {
            "error": self.reason,
            "limitType": self.limit_type,
            "limitName": self.limit_name,
        }
        if self.limit_type == "trial":
            payload["trialLimitReached"] = True
            payload["message"] = "You've reached the free trial limit. Add your own API key in settings to continue."
        else:
            payload["message"] = "Too many requests. Please slow down."
        if self.reset_time is not None:
            payload["resetTime"] = self.reset_time.isoformat()
        return payload


class ClassifierFailure(OrchestrationError):
    """The classifier could not be reached or produced nothing usable."""


class GenerationFailure(OrchestrationError):
    """The answer model failed before the turn finished."""


class PersistenceFailure(OrchestrationError):
    """A non-critical write did not go through."""


class InvalidResumeToken(OrchestrationError):
    pass


class GatewayError(OrchestrationError):
    def __init__(self, message: str, status_code: Optional[int] = None, code: str = "unknown", retryable: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.retryable = retryable


def classify_gateway_status(status_code: Optional[int], detail: str = "") -> GatewayError:
    """Maps an upstream HTTP status to a GatewayError with a stable code."""
    if status_code is None:
        return GatewayError(f"Gateway unreachable: {detail}", None, "network", retryable=True)
    if status_code == 429:
        return GatewayError("Upstream rate limit exceeded", 429, "rate_limited", retryable=True)
    if status_code == 402:
        return GatewayError("Upstream quota exhausted", 402, "quota_exceeded")
    if status_code in (401, 403):
        return GatewayError("Upstream rejected the credentials", status_code, "auth")
    if status_code == 400:
        return GatewayError(f"Upstream rejected the request: {detail}", 400, "bad_request")
    if status_code >= 500:
        return GatewayError("Upstream service error", status_code, "upstream", retryable=True)
    return GatewayError(f"Unexpected upstream status {status_code}", status_code)
