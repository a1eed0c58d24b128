from __future__ import annotations

import pytest
from botocore.exceptions import ClientError
from cryptography.fernet import Fernet

from state.authority import ProgressStore
from state.backend import OptimisticLockError
from state.models import ProgressRecord
from state.s3_store import S3RecordBackend


class _FakeBody:
    def __init__(self, data: bytes) -> None:
        self._data = data

    def read(self) -> bytes:
        return self._data


class _FakeS3:
    def __init__(self) -> None:
        self._store = {}  # (bucket, key) -> {Body: bytes, ETag: str}
        self._version = 0

    def _etag(self) -> str:
        self._version += 1
        return f'"fake-{self._version}"'

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, ContentType: str, IfNoneMatch: str | None = None):
        if IfNoneMatch == "*" and (Bucket, Key) in self._store:
            raise ClientError({"Error": {"Code": "PreconditionFailed"}}, "PutObject")
        etag = self._etag()
        self._store[(Bucket, Key)] = {"Body": Body, "ETag": etag}
        return {"ETag": etag}

    def get_object(self, *, Bucket: str, Key: str):
        item = self._store.get((Bucket, Key))
        if not item:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject")
        return {"Body": _FakeBody(item["Body"]), "ETag": item["ETag"]}

    def copy_object(self, *, Bucket: str, Key: str, CopySource, IfMatch: str | None = None, MetadataDirective=None):
        dest_item = self._store.get((Bucket, Key))
        if IfMatch is not None and (not dest_item or dest_item.get("ETag") != IfMatch):
            raise ClientError({"Error": {"Code": "PreconditionFailed"}}, "CopyObject")
        src_item = self._store.get((CopySource["Bucket"], CopySource["Key"]))
        if not src_item:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "CopyObject")
        etag = self._etag()
        self._store[(Bucket, Key)] = {"Body": src_item["Body"], "ETag": etag}
        return {"CopyObjectResult": {"ETag": etag}}

    def delete_object(self, *, Bucket: str, Key: str):
        self._store.pop((Bucket, Key), None)
        return {}

    def keys(self):
        return sorted(k for _, k in self._store)


@pytest.fixture
def fernet_key() -> bytes:
    return Fernet.generate_key()


def _backend(s3, key) -> S3RecordBackend:
    return S3RecordBackend(s3=s3, bucket="b", prefix="progress/", fernet_key=key)


def test_load_missing_returns_none(fernet_key):
    backend = _backend(_FakeS3(), fernet_key)
    assert backend.load("user-1") == (None, None)


def test_save_and_load_roundtrip(fernet_key):
    s3 = _FakeS3()
    backend = _backend(s3, fernet_key)

    src = ProgressRecord(completed_locations=[1, 3], last_completed_location=3, total_locations=3)
    etag = backend.save("user-1", src, if_match=None)
    dst, read_etag = backend.load("user-1")
    assert dst == src
    assert read_etag == etag


def test_object_is_encrypted_and_keyed_by_hash(fernet_key):
    s3 = _FakeS3()
    backend = _backend(s3, fernet_key)
    backend.save("alice@example.com", ProgressRecord.empty(3), if_match=None)

    (key,) = s3.keys()
    assert key.startswith("progress/")
    assert "alice" not in key
    body = s3.get_object(Bucket="b", Key=key)["Body"].read()
    assert b"completed_locations" not in body


def test_create_twice_raises_lock_error(fernet_key):
    backend = _backend(_FakeS3(), fernet_key)
    backend.save("user-1", ProgressRecord.empty(3), if_match=None)
    with pytest.raises(OptimisticLockError):
        backend.save("user-1", ProgressRecord.empty(3), if_match=None)


def test_conditional_update_and_conflict(fernet_key):
    s3 = _FakeS3()
    backend = _backend(s3, fernet_key)
    etag1 = backend.save("user-1", ProgressRecord.empty(3), if_match=None)

    etag2 = backend.save("user-1", ProgressRecord(completed_locations=[1], total_locations=3), if_match=etag1)
    assert etag2 != etag1

    with pytest.raises(OptimisticLockError):
        backend.save("user-1", ProgressRecord(completed_locations=[2], total_locations=3), if_match=etag1)

    record, _ = backend.load("user-1")
    assert record.completed_locations == [1]
    # temporary copy sources are cleaned up
    assert len(s3.keys()) == 1


def test_load_raises_value_error_on_foreign_key(fernet_key):
    s3 = _FakeS3()
    _backend(s3, fernet_key).save("user-1", ProgressRecord.empty(3), if_match=None)

    other = _backend(s3, Fernet.generate_key())
    with pytest.raises(ValueError):
        other.load("user-1")


def test_progress_store_over_s3(fernet_key):
    store = ProgressStore(_backend(_FakeS3(), fernet_key), total_locations=3)
    store.write("user-1", 1)
    store.write("user-1", 1)
    rec = store.write("user-1", 2)
    assert rec.completed_locations == [1, 2]
    assert store.read("user-1") == rec
