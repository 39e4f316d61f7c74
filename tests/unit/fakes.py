from __future__ import annotations

from typing import Callable, Dict, List, Optional, Set, Tuple

from common.transport import RecipientUnknownError, TransportError, TransportEvent, TransportEventKind
from state.credential_store import PersistenceError


class FakeClock:
    """Acts like time.monotonic; `sleep` advances it instead of waiting."""

    def __init__(self, t: float = 0.0) -> None:
        self.t = t
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.t

    def advance(self, dt: float) -> None:
        self.t += dt

    def sleep(self, dt: float) -> None:
        self.sleeps.append(dt)
        self.t += dt


class _Handle:
    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    def __init__(self) -> None:
        self.pending: List[Tuple[float, Callable[[], None], _Handle]] = []

    def __call__(self, delay: float, fn: Callable[[], None]) -> _Handle:
        handle = _Handle()
        self.pending.append((delay, fn, handle))
        return handle

    @property
    def delays(self) -> List[float]:
        return [d for d, _fn, h in self.pending if not h.cancelled]

    def fire_all(self) -> int:
        items, self.pending = self.pending, []
        fired = 0
        for _delay, fn, handle in items:
            if not handle.cancelled:
                fn()
                fired += 1
        return fired


def run_inline(fn: Callable[[], None]) -> None:
    fn()


class MemoryStore:
    def __init__(self, initial: Optional[Dict[str, bytes]] = None) -> None:
        self.data: Dict[str, bytes] = dict(initial or {})
        self.saves: List[bytes] = []
        self.deletes: List[str] = []
        self.fail_load = False
        self.fail_save = False
        self.fail_delete = False

    def load(self, key: str) -> Optional[bytes]:
        if self.fail_load:
            raise PersistenceError("load unavailable")
        return self.data.get(key)

    def save(self, key: str, credential: bytes) -> None:
        if self.fail_save:
            raise PersistenceError("save unavailable")
        self.saves.append(credential)
        self.data[key] = credential

    def delete(self, key: str) -> None:
        if self.fail_delete:
            raise PersistenceError("delete unavailable")
        self.deletes.append(key)
        self.data.pop(key, None)


class FakeTransport:
    def __init__(self, init_events: Optional[List[TransportEvent]] = None) -> None:
        self.init_events: List[TransportEvent] = list(init_events or [])
        self.init_calls: List[Optional[bytes]] = []
        self.init_error: Optional[Exception] = None
        self.on_event = None
        self.attempts: List[Tuple[str, str]] = []
        self.sent: List[Tuple[str, str]] = []
        self.unknown: Set[str] = set()
        self.failures: Dict[str, int] = {}
        self.lookups: List[str] = []
        self.on_send: Optional[Callable[[str, str], None]] = None
        self.shutdown_called = False

    def initialize(self, credential, on_event) -> None:
        self.init_calls.append(credential)
        self.on_event = on_event
        if self.init_error is not None:
            raise self.init_error
        for event in self.init_events:
            on_event(event)

    def emit(self, kind: TransportEventKind, **kwargs) -> None:
        assert self.on_event is not None, "initialize() was not called"
        self.on_event(TransportEvent(kind, **kwargs))

    def send_message(self, recipient_id: str, payload: str) -> None:
        self.attempts.append((recipient_id, payload))
        if self.on_send is not None:
            self.on_send(recipient_id, payload)
        if recipient_id in self.unknown:
            raise RecipientUnknownError(recipient_id)
        left = self.failures.get(recipient_id, 0)
        if left > 0:
            self.failures[recipient_id] = left - 1
            raise TransportError("network hiccup")
        self.sent.append((recipient_id, payload))

    def is_known_recipient(self, recipient_id: str) -> bool:
        self.lookups.append(recipient_id)
        return recipient_id not in self.unknown

    def shutdown(self) -> None:
        self.shutdown_called = True


def ready_events(credential: bytes = b"cred-v1") -> List[TransportEvent]:
    return [
        TransportEvent(TransportEventKind.AUTHENTICATED, credential=credential),
        TransportEvent(TransportEventKind.READY),
    ]
