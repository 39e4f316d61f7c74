from __future__ import annotations

from typing import Optional

from common.transport import RecipientUnknownError, TransportError
from state.credential_store import PersistenceError


class RelayError(RuntimeError):
    """Base error for the notification relay."""


class NotReadyError(RelayError):
    """The transport is not Ready; retry later."""


class RateLimitExceeded(RelayError):
    """Admission refused for the recipient until `reset_at` (epoch seconds)."""

    def __init__(self, message: str, *, reset_at: float) -> None:
        super().__init__(message)
        self.reset_at = reset_at


class TransientSendFailure(RelayError):
    """Every delivery attempt for an item failed with a transport error."""

    def __init__(self, message: str, *, attempts: int, last_error: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class SendFailedError(RelayError):
    """A synchronous send did not complete (retries exhausted or no outcome in time)."""


class CredentialRejected(RelayError):
    """The transport refused the stored credential; a fresh pairing is required."""


__all__ = [
    "CredentialRejected",
    "NotReadyError",
    "PersistenceError",
    "RateLimitExceeded",
    "RecipientUnknownError",
    "RelayError",
    "SendFailedError",
    "TransientSendFailure",
    "TransportError",
]
