from __future__ import annotations

import base64
from datetime import datetime, timezone

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialEnvelope(BaseModel):
    """
    Persistent wrapper around an opaque session credential, serialized to JSON and
    encrypted at rest.

    Fields
    - key: logical credential key (one per deployment, e.g. "relay-main-session").
    - version: stamp incremented on every save by the writing process; the highest
      version written last is the current copy (last writer wins).
    - updated_at: UTC time of the save, for operators.
    - blob: base64 of the credential bytes. The relay never interprets the bytes.
    """

    key: str
    version: int = Field(default=1, ge=1)
    updated_at: datetime = Field(default_factory=_utcnow)
    blob: str = Field(default="", description="base64-encoded credential bytes")

    @classmethod
    def wrap(cls, key: str, credential: bytes, *, version: int) -> "CredentialEnvelope":
        return cls(key=key, version=version, blob=base64.b64encode(credential).decode("ascii"))

    def unwrap(self) -> bytes:
        return base64.b64decode(self.blob.encode("ascii"), validate=True)
