"""Error taxonomy for the completion relay.

Every terminal failure surfaced to a caller is a ``RelayError``. Errors carry
the request id of the call that produced them and, where available, the
upstream HTTP status and response body for observability.
"""

from typing import Any

QUOTA_MARKERS = (
    "subscription required",
    "insufficient credits",
    "quota exceeded",
)


class RelayError(Exception):
    """Base class for all relay failures."""

    code = "RELAY_ERROR"

    def __init__(
        self,
        message: str,
        *,
        request_id: str | None = None,
        status: int | None = None,
        body: str | None = None,
        partial_content: str = "",
        attempts: int = 1,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.request_id = request_id
        self.status = status
        self.body = body
        self.partial_content = partial_content
        self.attempts = attempts

    def to_payload(self) -> dict[str, Any]:
        """Error event body surfaced to streaming callers."""
        return {
            "error": {
                "message": self.message,
                "code": self.code,
                "requestId": self.request_id,
            }
        }

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(message={self.message!r}, "
            f"status={self.status!r}, request_id={self.request_id!r})"
        )


class RequestValidationError(RelayError):
    """Inbound request rejected before any network call."""

    code = "INVALID_REQUEST"

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("status", 400)
        super().__init__(message, **kwargs)


class ConfigurationError(RelayError):
    """Relay cannot build an upstream request (e.g. no API key)."""

    code = "CONFIG_ERROR"


class NetworkError(RelayError):
    """No response was received from upstream (connect/read/timeout)."""

    code = "NETWORK_ERROR"


class UpstreamStatusError(RelayError):
    """Upstream answered with a non-2xx HTTP status."""

    code = "UPSTREAM_ERROR"


class QuotaExceeded(RelayError):
    """Caller is out of quota; clients show an upgrade affordance."""

    code = "SUBSCRIPTION_REQUIRED"

    default_message = "Subscription required. Please upgrade to continue chatting."

    def __init__(self, message: str | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("status", 403)
        message = message or self.default_message
        super().__init__(message, **kwargs)


class MalformedUpstream(RelayError):
    """Upstream returned HTML or an unparseable envelope instead of a completion."""

    code = "MALFORMED_UPSTREAM"


class StreamInterrupted(RelayError):
    """Body read failed after content had already been delivered."""

    code = "STREAM_ERROR"


class EmptyCompletion(RelayError):
    """Upstream finished without producing any content."""

    code = "EMPTY_RESPONSE"


class PersistenceError(RelayError):
    """Storage write failed. Logged by the handoff, never raised to callers."""

    code = "PERSISTENCE_ERROR"


def is_quota_message(text: str | None) -> bool:
    """Check whether an upstream error text describes a quota condition."""
    if not text:
        return False
    lower = text.lower()
    return any(marker in lower for marker in QUOTA_MARKERS)
