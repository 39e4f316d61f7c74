from __future__ import annotations

import importlib
import json

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError
from cryptography.fernet import Fernet

from state.credential_store import NoPersistenceStore, PersistenceError, S3CredentialStore
from state.models import CredentialEnvelope


FERNET_KEY = Fernet.generate_key()


class _FakeBody:
    def __init__(self, data: bytes) -> None:
        self._data = data

    def read(self) -> bytes:
        return self._data


class _FakeS3:
    def __init__(self) -> None:
        self._store = {}  # (bucket, key) -> bytes
        self.unreachable = False
        self.puts = 0

    def _check(self):
        if self.unreachable:
            raise EndpointConnectionError(endpoint_url="https://s3.example")

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, ContentType: str):
        self._check()
        self.puts += 1
        self._store[(Bucket, Key)] = Body
        return {"ETag": f'"fake-{self.puts}"'}

    def get_object(self, *, Bucket: str, Key: str):
        self._check()
        if (Bucket, Key) not in self._store:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject")
        return {"Body": _FakeBody(self._store[(Bucket, Key)])}

    def head_object(self, *, Bucket: str, Key: str):
        self._check()
        if (Bucket, Key) not in self._store:
            raise ClientError({"Error": {"Code": "404"}}, "HeadObject")
        return {}

    def delete_object(self, *, Bucket: str, Key: str):
        self._check()
        self._store.pop((Bucket, Key), None)
        return {}

    def raw(self, bucket: str, key: str) -> bytes:
        return self._store[(bucket, key)]


def _store(s3: _FakeS3, **kwargs) -> S3CredentialStore:
    return S3CredentialStore(s3=s3, bucket="b", prefix="sessions/", fernet_key=FERNET_KEY, **kwargs)


def test_load_missing_returns_none():
    store = _store(_FakeS3())
    assert store.load("main") is None
    assert store.exists("main") is False


@pytest.mark.parametrize("blob", [b"", b"\x00\xff" * 17, bytes(range(256))])
def test_save_then_load_roundtrip(blob):
    store = _store(_FakeS3())
    store.save("main", blob)
    assert store.load("main") == blob
    assert store.exists("main") is True


def test_near_limit_blob_roundtrips_and_over_limit_is_refused():
    limit = 64 * 1024
    s3 = _FakeS3()
    store = _store(s3, max_bytes=limit)

    blob = bytes(i % 251 for i in range(limit))
    store.save("main", blob)
    assert store.load("main") == blob

    with pytest.raises(PersistenceError):
        store.save("main", blob + b"x")
    # The refused write did not touch the stored copy
    assert store.load("main") == blob


def test_object_is_encrypted_envelope_with_version():
    s3 = _FakeS3()
    store = _store(s3)

    store.save("main", b"secret-session")
    ciphertext = s3.raw("b", "sessions/main.cred")
    assert b"secret-session" not in ciphertext

    envelope = CredentialEnvelope.model_validate(json.loads(Fernet(FERNET_KEY).decrypt(ciphertext)))
    assert envelope.key == "main"
    assert envelope.version == 1
    assert envelope.unwrap() == b"secret-session"


def test_save_is_idempotent_upsert_with_increasing_version():
    s3 = _FakeS3()
    store = _store(s3)

    store.save("main", b"v")
    store.save("main", b"v")
    store.save("main", b"refreshed")
    assert store.load("main") == b"refreshed"
    assert store.version_of("main") == 3


def test_new_process_continues_version_after_load():
    s3 = _FakeS3()
    _store(s3).save("main", b"a")
    _store(s3).load("main")  # unrelated reader

    restarted = _store(s3)
    assert restarted.load("main") == b"a"
    restarted.save("main", b"b")
    assert restarted.version_of("main") == 2


def test_delete_removes_and_tolerates_missing():
    store = _store(_FakeS3())
    store.save("main", b"x")
    store.delete("main")
    assert store.load("main") is None
    store.delete("main")  # no error for a missing record


def test_bad_token_raises_persistence_error():
    s3 = _FakeS3()
    s3.put_object(Bucket="b", Key="sessions/main.cred", Body=b"garbage", ContentType="application/octet-stream")

    with pytest.raises(PersistenceError):
        _store(s3).load("main")


def test_wrong_fernet_key_raises_persistence_error():
    s3 = _FakeS3()
    _store(s3).save("main", b"x")

    other = S3CredentialStore(s3=s3, bucket="b", prefix="sessions/", fernet_key=Fernet.generate_key())
    with pytest.raises(PersistenceError):
        other.load("main")


def test_unreachable_service_raises_persistence_error():
    s3 = _FakeS3()
    store = _store(s3)
    s3.unreachable = True

    with pytest.raises(PersistenceError):
        store.load("main")
    with pytest.raises(PersistenceError):
        store.save("main", b"x")
    with pytest.raises(PersistenceError):
        store.delete("main")
    assert store.exists("main") is False


def test_no_persistence_store_forgets_everything():
    store = NoPersistenceStore()
    store.save("main", b"x")
    assert store.load("main") is None
    store.delete("main")
    assert store.exists("main") is False


def test_from_env_missing_vars_raises(monkeypatch):
    for name in ("RELAY_STATE_BUCKET", "RELAY_FERNET_KEY"):
        monkeypatch.delenv(name, raising=False)

    mod = importlib.import_module("state.credential_store")
    with pytest.raises(RuntimeError):
        mod.S3CredentialStore.from_env()
