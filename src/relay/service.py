from __future__ import annotations

import logging
import signal
import sys
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel

from common.gateway import GatewayClient, GatewayTransport
from common.rate_limiter import FixedWindowRateLimiter
from common.transport import Transport
from state.credential_store import CredentialStore, NoPersistenceStore, S3CredentialStore

from .auto_reply import GreetingResponder
from .config import PERSISTENCE_S3, RelaySettings
from .delivery_queue import DeliveryQueue
from .dispatcher import NotificationDispatcher
from .readiness import ConnectionState, ReadinessMonitor, Scheduler


logger = logging.getLogger(__name__)


class AccountStatus(BaseModel):
    display_name: Optional[str] = None
    phone: Optional[str] = None


class RelayStatus(BaseModel):
    """Snapshot for status endpoints. Reading it never waits on a send."""

    ready: bool
    pending_credential: bool
    queue_depth: int
    state: ConnectionState
    has_pairing_code: bool
    reconnect_attempts: int = 0
    last_error: Optional[str] = None
    account: Optional[AccountStatus] = None


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging on stdout and quieten chatty client libraries."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s"))
    root.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)


def build_store(settings: RelaySettings) -> CredentialStore:
    if settings.persistence == PERSISTENCE_S3:
        if not settings.state_bucket or not settings.fernet_key:
            raise RuntimeError("S3 persistence needs a state bucket and a Fernet key")
        return S3CredentialStore(
            bucket=settings.state_bucket,
            prefix=settings.state_prefix,
            fernet_key=settings.fernet_key,
        )
    return NoPersistenceStore()


def build_transport(settings: RelaySettings) -> GatewayTransport:
    client = GatewayClient(settings.gateway_url, api_key=settings.gateway_token)
    return GatewayTransport(client, settings.session_key, poll_interval=settings.gateway_poll_interval)


class RelayService:
    """
    The relay context: one transport, one readiness monitor, one queue and one
    dispatcher, built once and handed to the HTTP layer.

    `start()` connects in the background so the caller (a web server) is not held
    up by transport initialization. `shutdown()` attempts a final credential save
    bounded by the grace period before releasing the transport.
    """

    def __init__(
        self,
        settings: RelaySettings,
        transport: Transport,
        store: CredentialStore,
        *,
        schedule: Optional[Scheduler] = None,
        sleep: Optional[Callable[[float], None]] = None,
        spawn: Optional[Callable[[Callable[[], None]], None]] = None,
    ) -> None:
        self.settings = settings
        self.transport = transport
        self.store = store
        self.monitor = ReadinessMonitor(
            transport,
            store,
            credential_key=settings.session_key,
            reconnect_delay=settings.reconnect_delay_seconds,
            init_timeout=settings.init_timeout_seconds,
            schedule=schedule,
        )
        self.limiter = FixedWindowRateLimiter(settings.rate_limit, settings.rate_window_seconds)
        queue_kw: Dict[str, Any] = {}
        if sleep is not None:
            queue_kw["sleep"] = sleep
        if spawn is not None:
            queue_kw["spawn"] = spawn
        self.queue = DeliveryQueue(
            transport,
            self.monitor,
            max_attempts=settings.max_attempts,
            backoff_seconds=settings.backoff_seconds,
            spacing_seconds=settings.send_spacing_seconds,
            **queue_kw,
        )
        self.dispatcher = NotificationDispatcher(
            self.monitor,
            self.limiter,
            self.queue,
            brand=settings.brand,
            send_timeout=settings.send_timeout_seconds,
        )
        self.responder: Optional[GreetingResponder] = None
        if settings.auto_reply:
            self.responder = GreetingResponder(self.dispatcher, support_url=settings.support_url)
            self.monitor.on_message(self.responder.handle)
        self._lock = threading.Lock()
        self._closed = False
        self._stopped = threading.Event()

    @classmethod
    def from_settings(cls, settings: RelaySettings) -> "RelayService":
        return cls(settings, build_transport(settings), build_store(settings))

    # --------------- Lifecycle ---------------
    def start(self, *, background: bool = True) -> None:
        logger.info(
            "Starting relay (persistence=%s, session=%s)", self.settings.persistence, self.settings.session_key
        )
        if background:
            threading.Thread(target=self.monitor.start, name="relay-connect", daemon=True).start()
        else:
            self.monitor.start()

    def shutdown(self, grace: Optional[float] = None) -> bool:
        """Best-effort final credential save, then release the transport.

        Returns True if the credential was saved. Safe to call more than once.
        """
        with self._lock:
            if self._closed:
                return False
            self._closed = True

        grace = self.settings.shutdown_grace_seconds if grace is None else grace
        self.monitor.stop()
        saved = False
        if self.monitor.credential is not None:
            executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="relay-final-save")
            future = executor.submit(self.monitor.save_credential)
            try:
                saved = future.result(timeout=grace)
            except FutureTimeout:
                logger.warning("Final credential save did not finish within %.1fs; shutting down anyway", grace)
            finally:
                executor.shutdown(wait=False)
        else:
            logger.info("No session credential to save on shutdown")

        try:
            self.transport.shutdown()
        except Exception as exc:
            logger.warning("Transport shutdown failed: %s", exc)
        self._stopped.set()
        logger.info("Relay stopped (pending messages dropped: %d)", self.queue.depth)
        return saved

    def install_signal_handlers(self) -> None:
        def _handle(signum, _frame) -> None:
            logger.info("%s received, shutting down", signal.Signals(signum).name)
            self.shutdown()

        signal.signal(signal.SIGTERM, _handle)
        signal.signal(signal.SIGINT, _handle)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until `shutdown()` has completed."""
        return self._stopped.wait(timeout)

    # --------------- Read side ---------------
    def get_status(self) -> RelayStatus:
        state = self.monitor.state
        last_error = self.monitor.last_error
        return RelayStatus(
            ready=state is ConnectionState.READY,
            pending_credential=state is ConnectionState.CREDENTIAL_PENDING,
            queue_depth=self.queue.depth,
            state=state,
            has_pairing_code=self.monitor.pairing_code is not None,
            reconnect_attempts=self.monitor.reconnect_attempts,
            last_error=str(last_error) if last_error is not None else None,
            account=self.account_info(),
        )

    def account_info(self) -> Optional[AccountStatus]:
        """The connected account while READY, None otherwise."""
        account = self.monitor.account
        if account is None:
            return None
        return AccountStatus(display_name=account.display_name, phone=account.phone)

    def pairing_code(self) -> Optional[str]:
        """Code to render for a human to pair the device, only while CREDENTIAL_PENDING."""
        return self.monitor.pairing_code


def main() -> int:
    settings = RelaySettings.from_env()
    setup_logging(settings.log_level)
    service = RelayService.from_settings(settings)
    service.install_signal_handlers()
    service.start()
    service.wait()
    return 0


if __name__ == "__main__":
    sys.exit(main())
