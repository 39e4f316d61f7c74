from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol


class TransportError(RuntimeError):
    """Base error for transport-level failures (network, timeout, remote refusal)."""


class RecipientUnknownError(TransportError):
    """The recipient is not reachable on the messaging network. Never retried."""


class TransportEventKind(str, Enum):
    PAIRING_CODE = "pairing_code"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    DISCONNECTED = "disconnected"
    AUTH_REJECTED = "auth_rejected"
    MESSAGE = "message"


@dataclass(frozen=True)
class AccountInfo:
    """The paired account as reported by the transport once it is ready."""

    display_name: Optional[str] = None
    phone: Optional[str] = None


@dataclass(frozen=True)
class InboundMessage:
    sender: str
    text: str


@dataclass(frozen=True)
class TransportEvent:
    """
    A lifecycle signal or inbound message emitted by a transport.

    Attributes
    - kind: which lifecycle step happened
    - credential: opaque session blob, present on AUTHENTICATED and optionally on READY
      when the transport refreshed it
    - pairing_code: code to show a human for pairing (PAIRING_CODE only)
    - reason: free-form detail for DISCONNECTED / AUTH_REJECTED
    - account: the paired account (READY only, when the transport knows it)
    - message: an inbound chat message (MESSAGE only)
    """

    kind: TransportEventKind
    credential: Optional[bytes] = None
    pairing_code: Optional[str] = None
    reason: Optional[str] = None
    account: Optional[AccountInfo] = None
    message: Optional[InboundMessage] = None


EventSink = Callable[[TransportEvent], None]


class Transport(Protocol):
    """The messaging channel the relay drives. Not safe for interleaved sends."""

    def initialize(self, credential: Optional[bytes], on_event: EventSink) -> None:
        ...

    def send_message(self, recipient_id: str, payload: str) -> None:
        ...

    def is_known_recipient(self, recipient_id: str) -> bool:
        ...

    def shutdown(self) -> None:
        ...


__all__ = [
    "AccountInfo",
    "EventSink",
    "InboundMessage",
    "RecipientUnknownError",
    "Transport",
    "TransportError",
    "TransportEvent",
    "TransportEventKind",
]
