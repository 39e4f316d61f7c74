from __future__ import annotations

import logging
import time
from concurrent.futures import Future, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Callable, Optional

from common.messages import (
    LoginLinkContext,
    format_booking_confirmed,
    format_doctor_ready,
    format_login_link,
    format_payment_received,
    format_payment_verified,
)
from common.rate_limiter import FixedWindowRateLimiter
from common.transport import RecipientUnknownError

from .delivery_queue import DeliveryQueue, DeliveryReceipt, QueueItem
from .errors import NotReadyError, RateLimitExceeded, SendFailedError
from .readiness import ReadinessMonitor


logger = logging.getLogger(__name__)

REASON_NOT_READY = "not_ready"
REASON_RATE_LIMITED = "rate_limited"


@dataclass(frozen=True)
class EnqueueResult:
    """Outcome of an admission attempt.

    `handle` resolves to a `DeliveryReceipt` or raises the final delivery error.
    Fire-and-forget callers can ignore it.
    """

    accepted: bool
    reason: Optional[str] = None
    remaining: Optional[int] = None
    reset_at: Optional[float] = None
    handle: Optional["Future[DeliveryReceipt]"] = None


class NotificationDispatcher:
    """
    Entry point for callers that want a notification delivered.

    Admission order: readiness, then the per-recipient rate limit, then the queue.
    Work is refused while the transport is not READY so that long outages do not
    build an unbounded backlog.
    """

    def __init__(
        self,
        monitor: ReadinessMonitor,
        limiter: FixedWindowRateLimiter,
        queue: DeliveryQueue,
        *,
        brand: Optional[str] = None,
        login_valid_minutes: int = 15,
        send_timeout: Optional[float] = 120.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._monitor = monitor
        self._limiter = limiter
        self._queue = queue
        self._brand = brand
        self._login_valid_minutes = login_valid_minutes
        self._send_timeout = send_timeout
        self._clock = clock

    def enqueue(self, recipient_id: str, payload: str, *, verify_recipient: bool = False) -> EnqueueResult:
        if not self._monitor.is_ready:
            logger.info("Refused message for %s: transport is %s", recipient_id, self._monitor.state.value)
            return EnqueueResult(accepted=False, reason=REASON_NOT_READY)

        decision = self._limiter.check(recipient_id)
        if not decision.allowed:
            logger.info("Refused message for %s: rate limited until %.0f", recipient_id, decision.reset_at)
            return EnqueueResult(
                accepted=False,
                reason=REASON_RATE_LIMITED,
                remaining=0,
                reset_at=decision.reset_at,
            )

        item = QueueItem(
            recipient_id=recipient_id,
            payload=payload,
            enqueued_at=self._clock(),
            verify_recipient=verify_recipient,
        )
        handle = self._queue.push(item)
        return EnqueueResult(
            accepted=True,
            remaining=decision.remaining,
            reset_at=decision.reset_at,
            handle=handle,
        )

    def send_and_wait(
        self,
        recipient_id: str,
        payload: str,
        *,
        verify_recipient: bool = True,
        timeout: Optional[float] = None,
    ) -> DeliveryReceipt:
        """Enqueue and block until the item reaches an outcome.

        Raises NotReadyError, RateLimitExceeded, RecipientUnknownError or SendFailedError.
        """
        result = self.enqueue(recipient_id, payload, verify_recipient=verify_recipient)
        if not result.accepted:
            if result.reason == REASON_RATE_LIMITED:
                raise RateLimitExceeded(
                    f"Too many messages for {recipient_id}; try again later",
                    reset_at=result.reset_at or 0.0,
                )
            raise NotReadyError("Messaging transport is not connected")

        if result.handle is None:
            raise SendFailedError(f"No delivery handle for {recipient_id}")
        wait = timeout if timeout is not None else self._send_timeout
        try:
            return result.handle.result(timeout=wait)
        except RecipientUnknownError:
            raise
        except FutureTimeout as exc:
            raise SendFailedError(f"No delivery outcome for {recipient_id} within {wait}s") from exc
        except Exception as exc:
            raise SendFailedError(f"Failed to send message to {recipient_id}") from exc

    # --------------- Notification flows ---------------
    def send_login_link(
        self,
        recipient_id: str,
        url: str,
        display_name: str = "المستخدم",
        *,
        timeout: Optional[float] = None,
    ) -> DeliveryReceipt:
        """Deliver a login link and wait for the outcome; the recipient is verified first."""
        ctx = LoginLinkContext(url=url, display_name=display_name, valid_minutes=self._login_valid_minutes)
        receipt = self.send_and_wait(recipient_id, format_login_link(ctx, **self._brand_kw()), timeout=timeout)
        logger.info("Login link sent to %s", recipient_id)
        return receipt

    def notify_booking_confirmed(self, recipient_id: str, doctor_name: str, booking_id: str) -> EnqueueResult:
        return self.enqueue(recipient_id, format_booking_confirmed(doctor_name, booking_id, **self._brand_kw()))

    def notify_payment_received(self, recipient_id: str) -> EnqueueResult:
        return self.enqueue(recipient_id, format_payment_received(**self._brand_kw()))

    def notify_payment_verified(self, recipient_id: str, doctor_name: str) -> EnqueueResult:
        return self.enqueue(recipient_id, format_payment_verified(doctor_name, **self._brand_kw()))

    def notify_doctor_ready(self, recipient_id: str, doctor_name: str, meet_link: str) -> EnqueueResult:
        return self.enqueue(recipient_id, format_doctor_ready(doctor_name, meet_link, **self._brand_kw()))

    def _brand_kw(self) -> dict:
        return {"brand": self._brand} if self._brand else {}


__all__ = [
    "EnqueueResult",
    "NotificationDispatcher",
    "REASON_NOT_READY",
    "REASON_RATE_LIMITED",
]
