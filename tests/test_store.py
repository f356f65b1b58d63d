import io
from pathlib import Path

from botocore.exceptions import ClientError
import pytest

from vaultstore.hasher import get_digest, storage_key
from vaultstore.store import (
    AbstractBlobStore,
    BlobNotFoundError,
    InMemBlobStore,
    LocalFileBlobStore,
)
from vaultstore.store.s3 import S3BlobStore


class FakeS3Client:
    """Just enough of the boto3 s3 client for S3BlobStore."""

    def __init__(self):
        self.objects = {}

    def _missing(self, op):
        return ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, op)

    def put_object(self, Bucket, Key, Body, ContentLength, ContentType=None):
        assert ContentLength == len(Body)
        self.objects[(Bucket, Key)] = (bytes(Body), ContentType)

    def get_object(self, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise self._missing("GetObject")
        data, content_type = self.objects[(Bucket, Key)]
        r = {"Body": io.BytesIO(data), "ContentLength": len(data)}
        if content_type:
            r["ContentType"] = content_type
        return r

    def head_object(self, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject")
        return {}

    def delete_object(self, Bucket, Key):
        self.objects.pop((Bucket, Key), None)

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        client = self

        class Paginator:
            def paginate(self, Bucket):
                keys = sorted(k for b, k in client.objects if b == Bucket)
                # two pages to make sure we walk all of them
                half = len(keys) // 2
                yield {"Contents": [{"Key": k} for k in keys[:half]]}
                yield {"Contents": [{"Key": k} for k in keys[half:]]}
                yield {}

        return Paginator()


@pytest.fixture(params=["mem", "localfile", "s3"])
def blobstore(request, tmp_path: Path):
    if request.param == "mem":
        yield InMemBlobStore()
    elif request.param == "localfile":
        yield LocalFileBlobStore(tmp_path / "blobs")
    else:
        yield S3BlobStore(bucket_name="test-bucket", client=FakeS3Client())


def test_put_get_delete(blobstore: AbstractBlobStore):
    data = b"hello vault"
    key = storage_key(get_digest(data))
    assert not blobstore.has(key)
    blobstore.put(key, data, content_type="text/plain; charset=utf-8")
    assert blobstore.has(key)
    obj = blobstore.get(key)
    assert obj.data == data
    assert obj.content_type == "text/plain; charset=utf-8"
    assert list(blobstore.iter()) == [key]

    # same key again is harmless
    blobstore.put(key, data, content_type="text/plain; charset=utf-8")
    assert blobstore.get(key).data == data

    blobstore.delete(key)
    assert not blobstore.has(key)
    with pytest.raises(BlobNotFoundError):
        blobstore.get(key)
    # deleting twice is fine
    blobstore.delete(key)


def test_missing_is_file_not_found(blobstore: AbstractBlobStore):
    with pytest.raises(FileNotFoundError):
        blobstore.get("blake3/00/00/0000")


def test_no_content_type(blobstore: AbstractBlobStore):
    blobstore.put("blake3/ab/cd/abcd", b"\x00\x01")
    assert blobstore.get("blake3/ab/cd/abcd").content_type is None


def test_iter_and_clear(blobstore: AbstractBlobStore):
    keys = set()
    for i in range(5):
        data = f"blob {i}".encode()
        key = storage_key(get_digest(data))
        blobstore.put(key, data, content_type="text/plain")
        keys.add(key)
    assert set(blobstore.iter()) == keys
    blobstore.clear()
    assert list(blobstore.iter()) == []


def test_localfile_layout(tmp_path: Path):
    store = LocalFileBlobStore(tmp_path)
    store.put("blake3/ab/cd/abcdef", b"data", content_type="image/png")
    p = tmp_path / "blake3" / "ab" / "cd" / "abcdef"
    assert p.read_bytes() == b"data"
    assert (tmp_path / "blake3" / "ab" / "cd" / "abcdef.content-type").exists()
    # keys can't escape the root
    assert store.path("../../etc/passwd") == tmp_path / "etc" / "passwd"


def test_mem_max_size():
    store = InMemBlobStore(max_size=4)
    with pytest.raises(ValueError):
        store.put("k", b"too big")
