from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from cryptography.fernet import Fernet, InvalidToken

from .models import CredentialEnvelope


logger = logging.getLogger(__name__)

# Environment variable names for convenience configuration
ENV_BUCKET = "RELAY_STATE_BUCKET"
ENV_PREFIX = "RELAY_STATE_PREFIX"
ENV_FERNET_KEY = "RELAY_FERNET_KEY"

DEFAULT_PREFIX = "sessions/"
DEFAULT_MAX_BYTES = 4 * 1024 * 1024


class PersistenceError(RuntimeError):
    """A credential store operation failed. Callers log it and carry on."""


class CredentialStore(Protocol):
    def load(self, key: str) -> Optional[bytes]:
        ...

    def save(self, key: str, credential: bytes) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class NoPersistenceStore:
    """Store for deployments without remote persistence: every start pairs afresh."""

    def load(self, key: str) -> Optional[bytes]:
        return None

    def save(self, key: str, credential: bytes) -> None:
        return None

    def delete(self, key: str) -> None:
        return None

    def exists(self, key: str) -> bool:
        return False


def _to_fernet(key: str | bytes) -> Fernet:
    """Construct a Fernet instance from a user-provided key.

    The key must be a URL-safe base64-encoded 32-byte key (str or bytes),
    as returned by `cryptography.fernet.Fernet.generate_key()`.
    """
    if isinstance(key, str):
        key_bytes = key.encode("utf-8")
    else:
        key_bytes = key
    return Fernet(key_bytes)


def _dump_envelope_json(envelope: CredentialEnvelope) -> bytes:
    # Deterministic JSON: stable key order, no extra whitespace
    return json.dumps(
        envelope.model_dump(mode="json"), separators=(",", ":"), sort_keys=True
    ).encode("utf-8")


def _load_envelope_json(data: bytes) -> CredentialEnvelope:
    raw = json.loads(data.decode("utf-8"))
    return CredentialEnvelope.model_validate(raw)


def _error_code(exc: ClientError) -> Optional[str]:
    return exc.response.get("Error", {}).get("Code")


@dataclass
class S3Location:
    bucket: str
    prefix: str

    def object_key(self, key: str) -> str:
        return f"{self.prefix}{key}.cred"


class S3CredentialStore:
    """
    S3-backed persistence for session credentials, encrypted at rest using Fernet.

    Usage
    - Provide the S3 bucket, an object prefix and a Fernet key (from env or injected).
    - `load(key)` returns the credential bytes, or None if no object exists.
    - `save(key, credential)` upserts; calling it again with the same or a refreshed
      credential is safe.
    - `delete(key)` removes the object; deleting a missing object succeeds.

    Every S3 or decryption problem surfaces as `PersistenceError`, never as a
    botocore exception.

    Environment variables (optional)
    - `RELAY_STATE_BUCKET`: S3 bucket for credential objects
    - `RELAY_STATE_PREFIX`: object key prefix (default "sessions/")
    - `RELAY_FERNET_KEY`:   urlsafe base64-encoded key for Fernet
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        prefix: str = DEFAULT_PREFIX,
        fernet_key: str | bytes,
        max_bytes: int = DEFAULT_MAX_BYTES,
        region_name: Optional[str] = None,
    ) -> None:
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._loc = S3Location(bucket=bucket, prefix=prefix)
        self._fernet = _to_fernet(fernet_key)
        self._max_bytes = max_bytes
        self._versions: Dict[str, int] = {}
        self._lock = threading.Lock()

    # -------- Construction helpers --------
    @classmethod
    def from_env(cls) -> "S3CredentialStore":
        bucket = os.environ.get(ENV_BUCKET)
        fkey = os.environ.get(ENV_FERNET_KEY)
        prefix = os.environ.get(ENV_PREFIX) or DEFAULT_PREFIX
        if not bucket or not fkey:
            missing = [name for name, val in [(ENV_BUCKET, bucket), (ENV_FERNET_KEY, fkey)] if not val]
            raise RuntimeError(
                f"Missing required environment variables for S3 credential store: {', '.join(missing)}"
            )
        return cls(bucket=bucket, prefix=prefix, fernet_key=fkey)

    # -------- Core operations --------
    def load(self, key: str) -> Optional[bytes]:
        """Read and decrypt the credential for `key`.

        Returns None if the object does not exist.
        Raises PersistenceError on S3 failures, bad tokens or invalid content.
        """
        object_key = self._loc.object_key(key)
        try:
            resp = self._s3.get_object(Bucket=self._loc.bucket, Key=object_key)
            body = resp["Body"].read()
        except ClientError as e:
            if _error_code(e) in ("NoSuchKey", "404"):
                return None
            raise PersistenceError(f"Failed to read s3://{self._loc.bucket}/{object_key}") from e
        except BotoCoreError as e:
            raise PersistenceError(f"Failed to read s3://{self._loc.bucket}/{object_key}") from e

        try:
            decrypted = self._fernet.decrypt(body)
        except InvalidToken as ex:
            raise PersistenceError("Failed to decrypt credential: invalid Fernet token") from ex

        try:
            envelope = _load_envelope_json(decrypted)
            credential = envelope.unwrap()
        except Exception as ex:
            raise PersistenceError("Failed to parse decrypted credential envelope") from ex

        if envelope.key != key:
            raise PersistenceError(f"Credential object holds key {envelope.key!r}, expected {key!r}")

        with self._lock:
            self._versions[key] = max(self._versions.get(key, 0), envelope.version)
        return credential

    def save(self, key: str, credential: bytes) -> None:
        """Encrypt and upsert the credential for `key` with the next version stamp."""
        if len(credential) > self._max_bytes:
            raise PersistenceError(
                f"Credential is {len(credential)} bytes; the store accepts at most {self._max_bytes}"
            )
        with self._lock:
            version = self._versions.get(key, 0) + 1
        envelope = CredentialEnvelope.wrap(key, credential, version=version)
        ciphertext = self._fernet.encrypt(_dump_envelope_json(envelope))

        object_key = self._loc.object_key(key)
        try:
            self._s3.put_object(
                Bucket=self._loc.bucket,
                Key=object_key,
                Body=ciphertext,
                ContentType="application/octet-stream",
            )
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError(f"Failed to write s3://{self._loc.bucket}/{object_key}") from e

        with self._lock:
            self._versions[key] = max(self._versions.get(key, 0), version)

    def delete(self, key: str) -> None:
        object_key = self._loc.object_key(key)
        try:
            self._s3.delete_object(Bucket=self._loc.bucket, Key=object_key)
        except ClientError as e:
            if _error_code(e) in ("NoSuchKey", "404"):
                return
            raise PersistenceError(f"Failed to delete s3://{self._loc.bucket}/{object_key}") from e
        except BotoCoreError as e:
            raise PersistenceError(f"Failed to delete s3://{self._loc.bucket}/{object_key}") from e

    def exists(self, key: str) -> bool:
        """True if an object is stored for `key`. Errors count as absent."""
        try:
            self._s3.head_object(Bucket=self._loc.bucket, Key=self._loc.object_key(key))
        except (ClientError, BotoCoreError):
            return False
        return True

    def version_of(self, key: str) -> int:
        """Highest version stamp this process has read or written for `key` (0 if none)."""
        with self._lock:
            return self._versions.get(key, 0)


__all__ = [
    "CredentialStore",
    "NoPersistenceStore",
    "PersistenceError",
    "S3CredentialStore",
]
