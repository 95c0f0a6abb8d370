from __future__ import annotations

import pytest
from botocore.exceptions import ClientError, ConnectTimeoutError
from cryptography.fernet import Fernet

from common.config import ConfigurationError
from state.s3_store import S3SessionStore, StoreUnavailable


class _FakeBody:
    def __init__(self, data: bytes) -> None:
        self._data = data

    def read(self) -> bytes:
        return self._data


class _FakeS3:
    def __init__(self) -> None:
        self._store = {}  # (bucket, key) -> bytes
        self.calls = []
        self.fail_with = None  # exception raised by every call when set

    def _enter(self, op: str) -> None:
        self.calls.append(op)
        if self.fail_with is not None:
            raise self.fail_with

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, ContentType: str):
        self._enter("put_object")
        self._store[(Bucket, Key)] = Body
        return {"ETag": f'"fake-{len(Body)}"'}

    def get_object(self, *, Bucket: str, Key: str):
        self._enter("get_object")
        if (Bucket, Key) not in self._store:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject")
        return {"Body": _FakeBody(self._store[(Bucket, Key)])}

    def delete_object(self, *, Bucket: str, Key: str):
        self._enter("delete_object")
        self._store.pop((Bucket, Key), None)
        return {}

    def head_bucket(self, *, Bucket: str):
        self._enter("head_bucket")
        return {}


@pytest.fixture
def fernet_key() -> bytes:
    return Fernet.generate_key()


@pytest.fixture
def s3() -> _FakeS3:
    return _FakeS3()


def test_extract_missing_returns_none(s3, fernet_key):
    store = S3SessionStore(s3=s3, bucket="b", fernet_key=fernet_key)
    assert store.extract("store-bot") is None


def test_save_then_extract_roundtrip(s3, fernet_key):
    store = S3SessionStore(s3=s3, bucket="b", fernet_key=fernet_key)
    blob = b'{"WABrowserId":"abc","WASecretBundle":"xyz"}'

    store.save("store-bot", blob)

    assert store.extract("store-bot") == blob
    # encrypted at rest under the identity key
    stored = s3._store[("b", "sessions/store-bot.session")]
    assert stored != blob
    assert Fernet(fernet_key).decrypt(stored) == blob


def test_save_overwrites_previous_blob(s3, fernet_key):
    store = S3SessionStore(s3=s3, bucket="b", fernet_key=fernet_key)
    store.save("store-bot", b"one")
    store.save("store-bot", b"two")
    assert store.extract("store-bot") == b"two"


def test_identities_are_isolated(s3, fernet_key):
    store = S3SessionStore(s3=s3, bucket="b", fernet_key=fernet_key, key_prefix="wa/")
    store.save("shop-a", b"a")
    store.save("shop-b", b"b")
    store.delete("shop-a")
    assert store.extract("shop-a") is None
    assert store.extract("shop-b") == b"b"
    assert ("b", "wa/shop-b.session") in s3._store


def test_delete_is_idempotent(s3, fernet_key):
    store = S3SessionStore(s3=s3, bucket="b", fernet_key=fernet_key)
    store.save("store-bot", b"x")
    store.delete("store-bot")
    store.delete("store-bot")
    assert store.extract("store-bot") is None


def test_extract_reads_backend_every_time(s3, fernet_key):
    store = S3SessionStore(s3=s3, bucket="b", fernet_key=fernet_key)
    other_process = S3SessionStore(s3=s3, bucket="b", fernet_key=fernet_key)

    store.save("store-bot", b"old")
    assert store.extract("store-bot") == b"old"
    other_process.save("store-bot", b"new")
    assert store.extract("store-bot") == b"new"
    assert s3.calls.count("get_object") == 2


@pytest.mark.parametrize(
    "error",
    [
        ClientError({"Error": {"Code": "AccessDenied"}}, "GetObject"),
        ConnectTimeoutError(endpoint_url="https://s3.example"),
    ],
)
def test_backend_failures_raise_store_unavailable(s3, fernet_key, error):
    store = S3SessionStore(s3=s3, bucket="b", fernet_key=fernet_key)
    s3.fail_with = error
    with pytest.raises(StoreUnavailable):
        store.extract("store-bot")
    with pytest.raises(StoreUnavailable):
        store.save("store-bot", b"x")
    with pytest.raises(StoreUnavailable):
        store.delete("store-bot")
    with pytest.raises(StoreUnavailable):
        store.check()


def test_undecryptable_blob_raises_store_unavailable(s3, fernet_key):
    s3._store[("b", "sessions/store-bot.session")] = b"garbage"
    store = S3SessionStore(s3=s3, bucket="b", fernet_key=fernet_key)
    with pytest.raises(StoreUnavailable):
        store.extract("store-bot")


def test_from_env_missing_vars_raises(monkeypatch):
    for name in ("SESSION_BUCKET", "SESSION_KEY_PREFIX", "SESSION_FERNET_KEY"):
        monkeypatch.delenv(name, raising=False)
    with pytest.raises(ConfigurationError):
        S3SessionStore.from_env()


def test_from_env_malformed_fernet_key_raises_configuration_error(monkeypatch):
    monkeypatch.setenv("SESSION_BUCKET", "bot-sessions")
    monkeypatch.setenv("SESSION_FERNET_KEY", "not-a-key")
    with pytest.raises(ConfigurationError, match="SESSION_FERNET_KEY"):
        S3SessionStore.from_env()
