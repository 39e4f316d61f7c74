from __future__ import annotations

import base64
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from .transport import (
    AccountInfo,
    EventSink,
    InboundMessage,
    RecipientUnknownError,
    TransportError,
    TransportEvent,
    TransportEventKind,
)


logger = logging.getLogger(__name__)

DEFAULT_GATEWAY_URL = "http://localhost:3000"

# Session states reported by the gateway
STATUS_STARTING = "STARTING"
STATUS_SCAN_QR = "SCAN_QR_CODE"
STATUS_AUTHENTICATED = "AUTHENTICATED"
STATUS_WORKING = "WORKING"
STATUS_FAILED = "FAILED"
STATUS_STOPPED = "STOPPED"


class GatewayError(TransportError):
    """Base error for the messaging gateway client."""


class GatewayApiError(GatewayError):
    """Gateway returned an error payload or unexpected structure."""


def _b64(blob: Optional[bytes]) -> Optional[str]:
    return base64.b64encode(blob).decode("ascii") if blob is not None else None


def _account(me: Any) -> Optional[AccountInfo]:
    if not isinstance(me, dict):
        return None
    wid = me.get("id")
    phone = wid.split("@", 1)[0] if isinstance(wid, str) and wid else None
    name = me.get("pushName")
    return AccountInfo(display_name=name if isinstance(name, str) else None, phone=phone)


def _unb64(text: Any) -> Optional[bytes]:
    if not isinstance(text, str):
        return None
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except Exception:
        return None


class GatewayClient:
    """
    Minimal client for an HTTP messaging gateway that hosts the chat-network session.

    Gateway contract
    - POST /api/sessions/start   {name, credential?}  -> 2xx
    - GET  /api/sessions/{name}                       -> {status, qr?, credential?, reason?, me?}
    - GET  /api/sessions/{name}/messages?after=       -> {messages: [{id, from, body, fromMe?}]}
    - POST /api/sendText         {session, chatId, text} -> 2xx; 422 {code: NUMBER_NOT_EXISTS}
    - GET  /api/contacts/check-exists?session=&phone= -> {numberExists: bool}
    - POST /api/sessions/stop    {name}               -> 2xx

    Notes
    - Credentials travel as base64 strings; the client never interprets them.
    - Idempotent calls retry transient HTTP errors and 429 with backoff. `send_text`
      is attempted once: retrying a send is the delivery queue's decision.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_GATEWAY_URL,
        *,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        max_attempts: int = 4,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)
        self._sleep = sleep
        self._owns_client = client is None
        headers = {"X-Api-Key": api_key} if api_key else None
        self._client = client or httpx.Client(base_url=self._base_url, timeout=timeout, headers=headers)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "GatewayClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def start_session(self, name: str, credential: Optional[bytes] = None) -> None:
        self._request("POST", "/api/sessions/start", json_body={"name": name, "credential": _b64(credential)})

    def session_status(self, name: str) -> Dict[str, Any]:
        data = self._request("GET", f"/api/sessions/{name}")
        if not isinstance(data, dict) or not isinstance(data.get("status"), str):
            raise GatewayApiError("Malformed session status from gateway")
        return data

    def send_text(self, session: str, chat_id: str, text: str) -> Dict[str, Any]:
        return self._request(
            "POST",
            "/api/sendText",
            json_body={"session": session, "chatId": chat_id, "text": text},
            attempts=1,
        )

    def number_exists(self, session: str, phone: str) -> bool:
        data = self._request("GET", "/api/contacts/check-exists", params={"session": session, "phone": phone})
        if not isinstance(data, dict) or "numberExists" not in data:
            raise GatewayApiError("Malformed check-exists response from gateway")
        return bool(data["numberExists"])

    def fetch_messages(self, session: str, after: Optional[str] = None) -> List[Dict[str, Any]]:
        """Inbound messages newer than `after` (all the gateway still holds when None)."""
        params = {"after": after} if after else None
        data = self._request("GET", f"/api/sessions/{session}/messages", params=params)
        messages = data.get("messages") if isinstance(data, dict) else None
        if not isinstance(messages, list):
            raise GatewayApiError("Malformed messages response from gateway")
        return [m for m in messages if isinstance(m, dict)]

    def stop_session(self, name: str) -> None:
        self._request("POST", "/api/sessions/stop", json_body={"name": name})

    # --------------- Internal ---------------
    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        attempts: Optional[int] = None,
    ) -> Dict[str, Any]:
        max_attempts = attempts or self._max_attempts
        attempt = 0
        backoff = 0.5
        last_exc: Optional[Exception] = None
        while attempt < max_attempts:
            try:
                resp = self._client.request(method, path, json=json_body, params=params)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
            else:
                if 200 <= resp.status_code < 300:
                    if not resp.content:
                        return {}
                    try:
                        return resp.json()
                    except Exception as exc:  # JSON decode error
                        raise GatewayApiError("Failed to parse JSON from gateway") from exc

                if resp.status_code == 422 and _error_code(resp) == "NUMBER_NOT_EXISTS":
                    raise RecipientUnknownError("Recipient is not registered on the messaging network")

                if resp.status_code in (429, 500, 502, 503, 504):
                    last_exc = GatewayApiError(f"HTTP {resp.status_code} from gateway")
                    retry_after = _retry_after(resp)
                    delay = retry_after if retry_after is not None else backoff
                    attempt += 1
                    if attempt < max_attempts:
                        self._sleep(min(delay, 10.0))
                        backoff = min(backoff * 2, 8.0)
                    continue

                raise GatewayApiError(f"HTTP {resp.status_code} from gateway: {resp.text[:200]}")

            # Transport error path
            attempt += 1
            if attempt < max_attempts:
                self._sleep(backoff)
                backoff = min(backoff * 2, 8.0)

        if last_exc is not None:
            raise GatewayError(f"{method} {path} failed after {max_attempts} attempt(s)") from last_exc
        raise GatewayError(f"{method} {path} failed (unknown error)")


def _error_code(resp: httpx.Response) -> Optional[str]:
    try:
        body = resp.json()
    except Exception:
        return None
    code = body.get("code") if isinstance(body, dict) else None
    return code if isinstance(code, str) else None


def _retry_after(resp: httpx.Response) -> Optional[float]:
    header = resp.headers.get("Retry-After")
    if header is None:
        return None
    try:
        return float(header)
    except ValueError:
        return None


class GatewayTransport:
    """
    Transport backed by a `GatewayClient`, one gateway session per process.

    `initialize` starts the session (restoring `credential` when given) and then
    polls the session status in the background, turning status changes into
    `TransportEvent`s. While the session is WORKING each poll also fetches inbound
    messages and emits them as MESSAGE events. Polling stops after a terminal status
    (FAILED, STOPPED, or leaving WORKING) or after `max_poll_failures` consecutive poll errors; the
    readiness monitor decides when to call `initialize` again.
    """

    def __init__(
        self,
        client: GatewayClient,
        session_name: str,
        *,
        poll_interval: float = 2.0,
        max_poll_failures: int = 3,
        spawn: Optional[Callable[[Callable[[], None]], None]] = None,
    ) -> None:
        self._client = client
        self._session = session_name
        self._poll_interval = poll_interval
        self._max_poll_failures = max_poll_failures
        self._spawn = spawn or _spawn_daemon
        self._on_event: Optional[EventSink] = None
        self._stop = threading.Event()
        self._generation = 0
        self._last_status: Optional[str] = None
        self._last_qr: Optional[str] = None
        self._poll_failures = 0
        self._last_message_id: Optional[str] = None

    # --------------- Transport ---------------
    def initialize(self, credential: Optional[bytes], on_event: EventSink) -> None:
        self._generation += 1
        self._stop.set()
        self._stop = threading.Event()
        self._on_event = on_event
        self._last_status = None
        self._last_qr = None
        self._poll_failures = 0
        self._client.start_session(self._session, credential)
        generation = self._generation
        self._spawn(lambda: self._poll_loop(generation))

    def send_message(self, recipient_id: str, payload: str) -> None:
        self._client.send_text(self._session, recipient_id, payload)

    def is_known_recipient(self, recipient_id: str) -> bool:
        phone = recipient_id.split("@", 1)[0]
        return self._client.number_exists(self._session, phone)

    def shutdown(self) -> None:
        self._stop.set()
        try:
            self._client.stop_session(self._session)
        except GatewayError as exc:
            logger.warning("Gateway session stop failed: %s", exc)
        finally:
            self._client.close()

    # --------------- Polling ---------------
    def poll_once(self) -> bool:
        """Fetch session status once and emit events; returns False once polling should end."""
        try:
            data = self._client.session_status(self._session)
        except GatewayError as exc:
            self._poll_failures += 1
            logger.warning("Gateway status poll failed (%d/%d): %s", self._poll_failures, self._max_poll_failures, exc)
            if self._poll_failures >= self._max_poll_failures:
                self._emit(TransportEvent(TransportEventKind.DISCONNECTED, reason="gateway unreachable"))
                return False
            return True
        self._poll_failures = 0

        status = data["status"]
        previous = self._last_status
        self._last_status = status
        credential = _unb64(data.get("credential"))
        reason = data.get("reason") if isinstance(data.get("reason"), str) else None

        if status == STATUS_SCAN_QR and previous == STATUS_WORKING:
            # Logged out from the phone; the stored credential is dead
            self._emit(TransportEvent(TransportEventKind.AUTH_REJECTED, reason="session logged out remotely"))
            return False

        if status == STATUS_SCAN_QR:
            qr = data.get("qr")
            if isinstance(qr, str) and qr and qr != self._last_qr:
                self._last_qr = qr
                self._emit(TransportEvent(TransportEventKind.PAIRING_CODE, pairing_code=qr))
            return True

        if status == STATUS_AUTHENTICATED:
            if previous != STATUS_AUTHENTICATED:
                self._emit(TransportEvent(TransportEventKind.AUTHENTICATED, credential=credential))
            return True

        if status == STATUS_WORKING:
            if previous != STATUS_WORKING:
                if previous == STATUS_SCAN_QR:
                    # Pairing completed between two polls
                    self._emit(TransportEvent(TransportEventKind.AUTHENTICATED, credential=credential))
                self._emit(
                    TransportEvent(TransportEventKind.READY, credential=credential, account=_account(data.get("me")))
                )
            self._poll_messages()
            return True

        if status == STATUS_FAILED and reason and "auth" in reason.lower():
            self._emit(TransportEvent(TransportEventKind.AUTH_REJECTED, reason=reason))
            return False

        if status in (STATUS_FAILED, STATUS_STOPPED) or previous == STATUS_WORKING:
            self._emit(TransportEvent(TransportEventKind.DISCONNECTED, reason=reason or status.lower()))
            return False

        return True

    def _poll_messages(self) -> None:
        try:
            messages = self._client.fetch_messages(self._session, self._last_message_id)
        except GatewayError as exc:
            logger.warning("Gateway inbound message poll failed: %s", exc)
            return
        for item in messages:
            msg_id = item.get("id")
            if isinstance(msg_id, str) and msg_id:
                self._last_message_id = msg_id
            sender, body = item.get("from"), item.get("body")
            if item.get("fromMe") or not isinstance(sender, str) or not isinstance(body, str):
                continue
            self._emit(TransportEvent(TransportEventKind.MESSAGE, message=InboundMessage(sender=sender, text=body)))

    def _poll_loop(self, generation: int) -> None:
        stop = self._stop
        while not stop.is_set() and generation == self._generation:
            if not self.poll_once():
                return
            stop.wait(self._poll_interval)

    def _emit(self, event: TransportEvent) -> None:
        if self._on_event is not None:
            self._on_event(event)


def _spawn_daemon(fn: Callable[[], None]) -> None:
    threading.Thread(target=fn, name="gateway-poll", daemon=True).start()


__all__ = [
    "GatewayApiError",
    "GatewayClient",
    "GatewayError",
    "GatewayTransport",
]
