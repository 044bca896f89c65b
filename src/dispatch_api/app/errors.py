"""Error types for the dispatch service.

Two families live here:
- Model* errors are raised by model client adapters (llm.py). They describe
  what went wrong upstream, independent of HTTP.
- Dispatch* errors are raised by the dispatcher and rendered as JSON by the
  FastAPI exception handler in main.py. Each carries its HTTP status code.
"""

from __future__ import annotations

from typing import Any


class ModelError(RuntimeError):
    """Generative backend call failed for an unclassified reason."""


class ModelAuthError(ModelError):
    """Backend rejected our credentials (invalid or missing API key)."""


class ModelRateLimitedError(ModelError):
    """Backend throttled the request or the provider quota is exhausted."""


class ModelUnavailableError(ModelError):
    """Backend unreachable, timed out, or returned a server error."""


class ModelUnsupportedMediaError(ModelError):
    """Adapter cannot attach the given media reference."""


class DispatchError(Exception):
    """Base error rendered as `{error, message, ...}` with `status_code`."""

    status_code = 500
    error = "Workflow execution failed"

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.error, "message": self.message}
        payload.update(self.extra)
        return payload


class ValidationFailed(DispatchError):
    status_code = 400
    error = "Invalid workflow"


class UpstreamAuthFailed(DispatchError):
    status_code = 401
    error = "Invalid API key"


class QuotaExceeded(DispatchError):
    status_code = 402
    error = "Execution limit reached"

    def __init__(self, message: str, *, remaining: int = 0) -> None:
        super().__init__(message, remaining=remaining, requiresUpgrade=True)


class UpstreamRateLimited(DispatchError):
    status_code = 429
    error = "Rate limit exceeded"


class BackendNotConfigured(DispatchError):
    status_code = 503
    error = "AI service not configured"

    def __init__(self, message: str) -> None:
        super().__init__(message, mode="offline")


class UpstreamUnavailable(DispatchError):
    status_code = 503
    error = "AI service unavailable"


class DispatchFailed(DispatchError):
    status_code = 500
    error = "Workflow execution failed"


def dispatch_error_from_model_error(exc: ModelError) -> DispatchError:
    """Map a typed model client error to the user-facing error category."""
    if isinstance(exc, ModelAuthError):
        return UpstreamAuthFailed(str(exc))
    if isinstance(exc, ModelRateLimitedError):
        return UpstreamRateLimited("Please try again in a moment")
    if isinstance(exc, ModelUnavailableError):
        return UpstreamUnavailable(str(exc))
    return DispatchFailed(str(exc))
