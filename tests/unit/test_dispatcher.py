from __future__ import annotations

from typing import Callable, List

import pytest

from common.rate_limiter import FixedWindowRateLimiter
from common.transport import RecipientUnknownError, TransportEvent, TransportEventKind
from relay.delivery_queue import DeliveryQueue
from relay.dispatcher import REASON_NOT_READY, REASON_RATE_LIMITED, NotificationDispatcher
from relay.errors import NotReadyError, RateLimitExceeded, SendFailedError, TransientSendFailure
from relay.readiness import ReadinessMonitor

from fakes import FakeClock, FakeScheduler, FakeTransport, MemoryStore, ready_events, run_inline


class Relay:
    def __init__(self, init_events=None, *, spawn=run_inline, max_requests: int = 3) -> None:
        self.transport = FakeTransport(init_events=ready_events() if init_events is None else init_events)
        self.monitor = ReadinessMonitor(
            self.transport,
            MemoryStore(),
            credential_key="k",
            init_timeout=5.0,
            schedule=FakeScheduler(),
        )
        self.monitor.start()
        self.clock = FakeClock(1_000.0)
        self.limiter = FixedWindowRateLimiter(max_requests=max_requests, window_seconds=3600.0, clock=self.clock)
        self.queue = DeliveryQueue(
            self.transport,
            self.monitor,
            clock=self.clock,
            sleep=self.clock.sleep,
            spawn=spawn,
        )
        self.dispatcher = NotificationDispatcher(
            self.monitor,
            self.limiter,
            self.queue,
            brand="Clinic",
            send_timeout=1.0,
            clock=self.clock,
        )


def test_not_ready_is_refused_without_touching_the_limiter():
    relay = Relay(init_events=[TransportEvent(TransportEventKind.PAIRING_CODE, pairing_code="qr")])

    result = relay.dispatcher.enqueue("a", "hello")
    assert result.accepted is False
    assert result.reason == REASON_NOT_READY
    assert result.handle is None
    assert relay.queue.depth == 0
    assert relay.limiter.peek("a") is None


def test_accepted_enqueue_reports_quota_and_delivers():
    relay = Relay()

    result = relay.dispatcher.enqueue("a", "hello")
    assert result.accepted is True
    assert result.reason is None
    assert result.remaining == 2
    assert result.reset_at == 1_000.0 + 3600.0
    assert result.handle.result(timeout=0).recipient_id == "a"
    assert relay.transport.sent == [("a", "hello")]


def test_fourth_message_in_window_is_rate_limited():
    relay = Relay()

    results = [relay.dispatcher.enqueue("a", f"m{i}") for i in range(4)]
    assert [r.accepted for r in results] == [True, True, True, False]
    denied = results[-1]
    assert denied.reason == REASON_RATE_LIMITED
    assert denied.remaining == 0
    assert denied.reset_at == results[0].reset_at
    assert len(relay.transport.sent) == 3

    # Other recipients are unaffected
    assert relay.dispatcher.enqueue("b", "m").accepted is True


def test_send_login_link_waits_for_delivery():
    relay = Relay()

    receipt = relay.dispatcher.send_login_link("249911111111", "https://example.test/login?t=abc", "Amna")
    assert receipt.attempts == 1
    assert relay.transport.lookups == ["249911111111"]
    (recipient, payload), = relay.transport.sent
    assert recipient == "249911111111"
    assert "https://example.test/login?t=abc" in payload
    assert "Amna" in payload
    assert "*Clinic*" in payload


def test_send_login_link_to_unknown_recipient():
    relay = Relay()
    relay.transport.unknown.add("404")

    with pytest.raises(RecipientUnknownError):
        relay.dispatcher.send_login_link("404", "https://example.test/x")
    assert relay.transport.attempts == []


def test_send_and_wait_wraps_exhausted_retries():
    relay = Relay()
    relay.transport.failures["a"] = 5

    with pytest.raises(SendFailedError) as excinfo:
        relay.dispatcher.send_and_wait("a", "hello")
    assert isinstance(excinfo.value.__cause__, TransientSendFailure)
    assert len(relay.transport.attempts) == 3


def test_send_and_wait_times_out_without_an_outcome():
    spawned: List[Callable[[], None]] = []
    relay = Relay(spawn=spawned.append)

    with pytest.raises(SendFailedError):
        relay.dispatcher.send_and_wait("a", "hello", timeout=0.01)
    # The item is still queued; the caller only stopped waiting
    assert relay.queue.depth == 1


def test_send_and_wait_raises_when_not_ready():
    relay = Relay(init_events=[])

    with pytest.raises(NotReadyError):
        relay.dispatcher.send_and_wait("a", "hello")


def test_send_and_wait_raises_when_rate_limited():
    relay = Relay(max_requests=1)
    relay.dispatcher.send_and_wait("a", "one")

    with pytest.raises(RateLimitExceeded) as excinfo:
        relay.dispatcher.send_and_wait("a", "two")
    assert excinfo.value.reset_at == 1_000.0 + 3600.0


def test_template_notifications_are_enqueued():
    relay = Relay(max_requests=10)
    d = relay.dispatcher

    assert d.notify_booking_confirmed("a", "Dr. Salma", "BK-17").accepted
    assert d.notify_payment_received("a").accepted
    assert d.notify_payment_verified("a", "Dr. Salma").accepted
    assert d.notify_doctor_ready("a", "Dr. Salma", "https://meet.example.test/room").accepted

    payloads = [p for _, p in relay.transport.sent]
    assert len(payloads) == 4
    assert "BK-17" in payloads[0]
    assert "https://meet.example.test/room" in payloads[3]
    assert all(p.startswith("🏥 *Clinic*") for p in payloads)
    # Template sends do not look the recipient up first
    assert relay.transport.lookups == []


def test_send_and_wait_without_a_delivery_handle_is_a_send_failure(monkeypatch):
    relay = Relay()
    monkeypatch.setattr(relay.queue, "push", lambda item: None)

    with pytest.raises(SendFailedError):
        relay.dispatcher.send_and_wait("a", "hello")
