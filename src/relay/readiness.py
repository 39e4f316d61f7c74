from __future__ import annotations

import logging
import threading
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, List, Optional

from common.transport import AccountInfo, InboundMessage, Transport, TransportEvent, TransportEventKind
from state.credential_store import CredentialStore, PersistenceError

from .errors import CredentialRejected, RelayError


logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CREDENTIAL_PENDING = "credential_pending"
    AUTHENTICATING = "authenticating"
    READY = "ready"


Subscriber = Callable[[ConnectionState, ConnectionState], None]
MessageSubscriber = Callable[[InboundMessage], None]
# schedule(delay_seconds, fn) -> handle with .cancel()
Scheduler = Callable[[float, Callable[[], None]], Any]


def _timer(delay: float, fn: Callable[[], None]) -> threading.Timer:
    t = threading.Timer(delay, fn)
    t.daemon = True
    t.start()
    return t


class _PendingHandle:
    def cancel(self) -> None:
        return None


_PENDING = _PendingHandle()


def _call_with_timeout(fn: Callable[[], None], timeout: float) -> None:
    """Run `fn` on a helper thread; raise TimeoutError if it has not returned in time."""
    done = threading.Event()
    failure: List[BaseException] = []

    def runner() -> None:
        try:
            fn()
        except BaseException as exc:  # re-raised in the calling thread
            failure.append(exc)
        finally:
            done.set()

    threading.Thread(target=runner, name="transport-init", daemon=True).start()
    if not done.wait(timeout):
        raise TimeoutError(f"transport initialization did not finish within {timeout:.0f}s")
    if failure:
        raise failure[0]


class ReadinessMonitor:
    """
    Owns the transport connection lifecycle and the single readiness signal.

    Lifecycle
    - DISCONNECTED -> load the stored credential; found: AUTHENTICATING, else
      CREDENTIAL_PENDING (the transport issues a pairing code). Then initialize the
      transport, bounded by `init_timeout`.
    - CREDENTIAL_PENDING --authenticated--> AUTHENTICATING (credential saved)
    - AUTHENTICATING --ready--> READY (credential saved again; transports may refresh it)
    - AUTHENTICATING/READY --auth_rejected--> DISCONNECTED (credential deleted)
    - READY --pairing_code--> DISCONNECTED -> CREDENTIAL_PENDING (session dropped by the
      transport; the old credential is forgotten)
    - any --disconnected--> DISCONNECTED
    - `stop()` --> DISCONNECTED, with no reconnect and later events ignored
    - DISCONNECTED schedules a reconnect after `reconnect_delay`, without limit.

    Transport events are queued and applied one at a time in arrival order, so an
    event raised while another is being handled is never lost. Transitions are
    published to subscribers as `(old, new)`; inbound chat messages go to
    `on_message` subscribers.

    At most one `initialize` call is in flight. If a timed-out call is still running
    when a reconnect comes due, the reconnect is deferred by another delay.

    Persistence failures are logged and never block a transition. A failed load is
    treated as "no credential".
    """

    def __init__(
        self,
        transport: Transport,
        store: CredentialStore,
        *,
        credential_key: str,
        reconnect_delay: float = 10.0,
        init_timeout: float = 90.0,
        schedule: Optional[Scheduler] = None,
    ) -> None:
        self._transport = transport
        self._store = store
        self._key = credential_key
        self._reconnect_delay = reconnect_delay
        self._init_timeout = init_timeout
        self._schedule = schedule or _timer

        self._state = ConnectionState.DISCONNECTED
        self._credential: Optional[bytes] = None
        self._rejected: Optional[bytes] = None
        self._pairing_code: Optional[str] = None
        self._account: Optional[AccountInfo] = None
        self._last_error: Optional[RelayError] = None
        self._subscribers: List[Subscriber] = []
        self._message_subscribers: List[MessageSubscriber] = []
        self._lock = threading.Lock()
        self._reconnect_handle: Any = None
        self._reconnects = 0
        self._stopped = False
        self._initializing = False

        self._events: Deque[TransportEvent] = deque()
        self._events_lock = threading.Lock()
        self._handling = False

    # --------------- Read side (snapshot reads, never block) ---------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ConnectionState.READY

    @property
    def pairing_code(self) -> Optional[str]:
        if self._state is not ConnectionState.CREDENTIAL_PENDING:
            return None
        return self._pairing_code

    @property
    def credential(self) -> Optional[bytes]:
        return self._credential

    @property
    def account(self) -> Optional[AccountInfo]:
        """The paired account while READY, if the transport reported one."""
        if self._state is not ConnectionState.READY:
            return None
        return self._account

    @property
    def initializing(self) -> bool:
        return self._initializing

    @property
    def last_error(self) -> Optional[RelayError]:
        return self._last_error

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnects

    def subscribe(self, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def on_message(self, callback: MessageSubscriber) -> None:
        with self._lock:
            self._message_subscribers.append(callback)

    # --------------- Lifecycle ---------------
    def start(self) -> None:
        """Connect from DISCONNECTED. Blocks for at most `init_timeout` on the transport."""
        with self._lock:
            self._stopped = False
        self._connect()

    def stop(self) -> None:
        """Cancel a pending reconnect, stop scheduling new ones and drop to DISCONNECTED."""
        with self._lock:
            self._stopped = True
            handle, self._reconnect_handle = self._reconnect_handle, None
        if handle is not None:
            handle.cancel()
        self._pairing_code = None
        self._set_state(ConnectionState.DISCONNECTED)

    def save_credential(self) -> bool:
        """Persist the current credential; returns False if there is none or the save failed."""
        credential = self._credential
        if credential is None:
            return False
        try:
            self._store.save(self._key, credential)
        except PersistenceError as exc:
            logger.warning("Credential save failed, will retry on the next authentication: %s", exc)
            return False
        logger.info("Session credential saved (%d bytes)", len(credential))
        return True

    # --------------- Transport events ---------------
    def handle_event(self, event: TransportEvent) -> None:
        """Event sink handed to the transport. Safe to call from any thread, re-entrantly."""
        with self._events_lock:
            self._events.append(event)
            if self._handling:
                return
            self._handling = True
        while True:
            with self._events_lock:
                if not self._events:
                    self._handling = False
                    return
                current = self._events.popleft()
            try:
                self._apply(current)
            except Exception:
                logger.exception("Failed to handle transport event %s", current.kind.value)

    def _apply(self, event: TransportEvent) -> None:
        kind = event.kind
        if self._stopped:
            logger.debug("Ignoring transport event %s after stop", kind.value)
            return

        if kind is TransportEventKind.MESSAGE:
            if event.message is not None:
                self._publish_message(event.message)
            return

        if kind is TransportEventKind.PAIRING_CODE:
            if self._state is ConnectionState.READY:
                logger.warning("Transport asked for pairing while ready; the session was dropped")
                self._rejected = self._credential
                self._account = None
                self._set_state(ConnectionState.DISCONNECTED)
                self._delete_credential()
            # Whatever credential we held no longer opens a session
            self._credential = None
            self._pairing_code = event.pairing_code
            self._set_state(ConnectionState.CREDENTIAL_PENDING)
            logger.info("Pairing code issued; waiting for a human to pair the device")

        elif kind is TransportEventKind.AUTHENTICATED:
            self._pairing_code = None
            if event.credential is not None:
                self._credential = event.credential
            self._set_state(ConnectionState.AUTHENTICATING)
            self.save_credential()

        elif kind is TransportEventKind.READY:
            self._pairing_code = None
            if event.credential is not None:
                self._credential = event.credential
            self._account = event.account
            self._last_error = None
            self._set_state(ConnectionState.READY)
            self.save_credential()

        elif kind is TransportEventKind.AUTH_REJECTED:
            self._pairing_code = None
            self._rejected = self._credential
            self._credential = None
            self._account = None
            self._last_error = CredentialRejected(event.reason or "credential rejected by transport")
            logger.error("Transport rejected the session credential: %s", event.reason or "no reason given")
            self._set_state(ConnectionState.DISCONNECTED)
            self._delete_credential()
            self._schedule_reconnect()

        elif kind is TransportEventKind.DISCONNECTED:
            self._pairing_code = None
            self._account = None
            logger.warning("Transport disconnected: %s", event.reason or "no reason given")
            self._set_state(ConnectionState.DISCONNECTED)
            self._schedule_reconnect()

    # --------------- Internal ---------------
    def _set_state(self, new: ConnectionState) -> None:
        with self._lock:
            old = self._state
            if old is new:
                return
            self._state = new
            subscribers = list(self._subscribers)
        logger.info("Connection state %s -> %s", old.value, new.value)
        for cb in subscribers:
            try:
                cb(old, new)
            except Exception:
                logger.exception("State subscriber failed on %s -> %s", old.value, new.value)

    def _publish_message(self, message: InboundMessage) -> None:
        with self._lock:
            subscribers = list(self._message_subscribers)
        for cb in subscribers:
            try:
                cb(message)
            except Exception:
                logger.exception("Message subscriber failed for a message from %s", message.sender)

    def _connect(self) -> None:
        with self._lock:
            if self._stopped or self._state is not ConnectionState.DISCONNECTED:
                return
            busy = self._initializing
        if busy:
            logger.warning("Previous transport initialization is still running; deferring reconnect")
            self._schedule_reconnect()
            return

        credential = self._load_credential()
        self._credential = credential
        if credential is not None:
            self._set_state(ConnectionState.AUTHENTICATING)
        else:
            self._set_state(ConnectionState.CREDENTIAL_PENDING)

        with self._lock:
            self._initializing = True
        try:
            _call_with_timeout(lambda: self._initialize(credential), self._init_timeout)
        except Exception as exc:
            logger.error("Transport initialization failed: %s", exc)
            self._initialization_failed()

    def _initialize(self, credential: Optional[bytes]) -> None:
        try:
            self._transport.initialize(credential, self.handle_event)
        finally:
            with self._lock:
                self._initializing = False

    def _initialization_failed(self) -> None:
        self._pairing_code = None
        self._set_state(ConnectionState.DISCONNECTED)
        self._schedule_reconnect()

    def _load_credential(self) -> Optional[bytes]:
        try:
            credential = self._store.load(self._key)
        except PersistenceError as exc:
            logger.warning("Credential load failed, falling back to fresh pairing: %s", exc)
            return None
        if credential is None:
            logger.info("No stored session credential; pairing required")
            return None
        if self._rejected is not None and credential == self._rejected:
            logger.warning("Stored credential was rejected earlier; deleting it instead of reusing it")
            self._delete_credential()
            return None
        logger.info("Restored session credential (%d bytes)", len(credential))
        return credential

    def _delete_credential(self) -> None:
        try:
            self._store.delete(self._key)
        except PersistenceError as exc:
            logger.warning("Credential delete failed: %s", exc)
            return
        logger.info("Invalid session credential deleted")

    def _schedule_reconnect(self) -> None:
        with self._lock:
            if self._stopped or self._reconnect_handle is not None:
                return
            self._reconnect_handle = _PENDING
        handle = self._schedule(self._reconnect_delay, self._reconnect)
        with self._lock:
            if self._reconnect_handle is _PENDING:
                self._reconnect_handle = handle
        logger.info("Reconnect scheduled in %.1fs", self._reconnect_delay)

    def _reconnect(self) -> None:
        with self._lock:
            self._reconnect_handle = None
            self._reconnects += 1
            attempt = self._reconnects
        logger.info("Reconnect attempt %d", attempt)
        self._connect()


__all__ = [
    "ConnectionState",
    "ReadinessMonitor",
]
