from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Callable, Deque, List, Optional, Tuple

from common.transport import RecipientUnknownError, Transport

from .errors import TransientSendFailure
from .readiness import ConnectionState, ReadinessMonitor


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryReceipt:
    recipient_id: str
    attempts: int
    delivered_at: float


@dataclass
class QueueItem:
    """A pending send. Only `attempt_count` changes after creation."""

    recipient_id: str
    payload: str
    enqueued_at: float
    attempt_count: int = 0
    verify_recipient: bool = False
    future: "Future[DeliveryReceipt]" = field(default_factory=Future, repr=False, compare=False)


def _spawn_daemon(fn: Callable[[], None]) -> None:
    threading.Thread(target=fn, name="delivery-queue", daemon=True).start()


class DeliveryQueue:
    """
    Ordered single-consumer queue of outbound sends, gated by transport readiness.

    - `push` appends to the tail and wakes the consumer if it is idle.
    - One consumer at a time (busy flag under a lock) drains the queue while the
      monitor reports READY. All transport calls happen on that consumer.
    - Each item is retried in place up to `max_attempts`, sleeping
      `attempt_number * backoff_seconds` between attempts. `RecipientUnknownError`
      is final on the first occurrence.
    - Consecutive successful sends are at least `spacing_seconds` apart.
    - If readiness drops, the consumer stops after the attempt in progress; the
      head item keeps its place and its attempt count until the next READY.

    Outcomes resolve the item's future: a `DeliveryReceipt`, `RecipientUnknownError`
    or `TransientSendFailure`. Final failures are also logged once. Nothing is
    persisted; undelivered items live only in memory.
    """

    def __init__(
        self,
        transport: Transport,
        monitor: ReadinessMonitor,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        spacing_seconds: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        spawn: Optional[Callable[[Callable[[], None]], None]] = None,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        self._transport = transport
        self._monitor = monitor
        self._max_attempts = max_attempts
        self._backoff = backoff_seconds
        self._spacing = spacing_seconds
        self._clock = clock
        self._sleep = sleep
        self._spawn = spawn or _spawn_daemon

        self._items: Deque[QueueItem] = deque()
        self._lock = threading.Lock()
        self._busy = False
        self._last_sent_at: Optional[float] = None
        self._delivered = 0
        self._failed = 0

        monitor.subscribe(self._on_state_change)

    # --------------- Read side ---------------
    @property
    def depth(self) -> int:
        return len(self._items)

    @property
    def busy(self) -> bool:
        return self._busy

    def snapshot(self) -> List[Tuple[str, int]]:
        """(recipient_id, attempt_count) per pending item, head first."""
        return [(i.recipient_id, i.attempt_count) for i in list(self._items)]

    def stats(self) -> Tuple[int, int]:
        """(delivered, failed) totals since start."""
        return self._delivered, self._failed

    # --------------- Producer side ---------------
    def push(self, item: QueueItem) -> "Future[DeliveryReceipt]":
        if not item.future.set_running_or_notify_cancel():
            return item.future
        with self._lock:
            self._items.append(item)
        logger.debug("Queued message for %s (depth=%d)", item.recipient_id, self.depth)
        self.kick()
        return item.future

    def kick(self) -> None:
        """Start a consumer unless one is running, the queue is empty, or we are not READY."""
        with self._lock:
            if self._busy or not self._items or not self._monitor.is_ready:
                return
            self._busy = True
        self._spawn(self._consume)

    def drain(self) -> int:
        """Run the consumer loop in the calling thread; returns items delivered."""
        with self._lock:
            if self._busy:
                return 0
            self._busy = True
        return self._consume()

    # --------------- Consumer side ---------------
    def _on_state_change(self, old: ConnectionState, new: ConnectionState) -> None:
        if new is ConnectionState.READY:
            self.kick()
        elif old is ConnectionState.READY:
            logger.info("Delivery paused with %d item(s) pending", self.depth)

    def _consume(self) -> int:
        sent = 0
        try:
            while True:
                with self._lock:
                    if not self._items or not self._monitor.is_ready:
                        self._busy = False
                        return sent
                    item = self._items[0]
                outcome = self._deliver(item)
                if outcome is None:
                    # Readiness dropped between attempts; item stays at the head
                    continue
                with self._lock:
                    self._items.popleft()
                if outcome:
                    sent += 1
        except BaseException:
            with self._lock:
                self._busy = False
            raise

    def _deliver(self, item: QueueItem) -> Optional[bool]:
        """Attempt `item` until delivered (True) or dropped (False); None if paused."""
        last_error: Optional[BaseException] = None
        if item.verify_recipient and item.attempt_count == 0:
            try:
                known = self._transport.is_known_recipient(item.recipient_id)
            except Exception as exc:
                # Inconclusive; the send itself will tell
                known = True
                logger.warning("Recipient lookup for %s failed: %s", item.recipient_id, exc)
            if not known:
                self._fail(item, RecipientUnknownError(f"{item.recipient_id} is not reachable on the transport"))
                return False

        while item.attempt_count < self._max_attempts:
            if item.attempt_count > 0:
                self._sleep(item.attempt_count * self._backoff)
                if not self._monitor.is_ready:
                    return None
            self._wait_spacing()
            try:
                self._transport.send_message(item.recipient_id, item.payload)
            except RecipientUnknownError as exc:
                item.attempt_count += 1
                self._fail(item, exc)
                return False
            except Exception as exc:
                item.attempt_count += 1
                last_error = exc
                logger.warning(
                    "Send to %s failed (attempt %d/%d): %s",
                    item.recipient_id,
                    item.attempt_count,
                    self._max_attempts,
                    exc,
                )
                continue
            item.attempt_count += 1
            self._last_sent_at = self._clock()
            self._delivered += 1
            logger.info("Delivered message to %s (attempt %d)", item.recipient_id, item.attempt_count)
            item.future.set_result(
                DeliveryReceipt(recipient_id=item.recipient_id, attempts=item.attempt_count, delivered_at=time.time())
            )
            return True

        self._fail(
            item,
            TransientSendFailure(
                f"Delivery to {item.recipient_id} failed after {item.attempt_count} attempt(s)",
                attempts=item.attempt_count,
                last_error=last_error,
            ),
        )
        return False

    def _wait_spacing(self) -> None:
        if self._last_sent_at is None or self._spacing <= 0:
            return
        remaining = self._spacing - (self._clock() - self._last_sent_at)
        if remaining > 0:
            self._sleep(remaining)

    def _fail(self, item: QueueItem, error: BaseException) -> None:
        self._failed += 1
        logger.error("Dropping message for %s: %s", item.recipient_id, error)
        item.future.set_exception(error)


__all__ = [
    "DeliveryQueue",
    "DeliveryReceipt",
    "QueueItem",
]
