from datetime import timedelta, timezone
import io
import threading
import time

import pytest

from vaultstore.catalog import Catalog, FileFilter, Visibility
from vaultstore.errors import (
    ConflictError,
    DuplicateBlobError,
    FileTooLargeError,
    QuotaExceededError,
    ValidationError,
)
from vaultstore.hasher import OCTET_STREAM, get_digest, storage_key
from vaultstore.service import UploadInput, VaultService
from vaultstore.store import InMemBlobStore, StoredObject
from vaultstore.util import utcnow

from .conftest import make_owner


def upload_one(service: VaultService, owner, data: bytes, name="f.txt", **kwargs):
    [r] = service.upload(owner, [UploadInput(name, data, **kwargs)])
    assert r.ok, r.error
    return r


def ref_count(catalog: Catalog, data: bytes):
    with catalog.transaction() as conn:
        blob = catalog.blobs.lookup_by_digest(conn, get_digest(data))
    return None if blob is None else blob.ref_count


def test_dedup_scenario(service: VaultService, catalog: Catalog, store: InMemBlobStore, alice, bob):
    r1 = upload_one(service, alice, b"same bytes", "a.txt")
    r2 = upload_one(service, alice, b"same bytes", "b.txt")
    r3 = upload_one(service, bob, b"same bytes", "c.txt")
    assert r1.is_new and not r2.is_new and not r3.is_new
    assert r1.blob.id == r2.blob.id == r3.blob.id
    assert r3.blob.ref_count == 3
    assert len(store.objects) == 1

    stats = service.storage_stats(alice.id)
    assert stats.original == 20
    assert stats.dedup == 10
    assert stats.savings == 10
    assert stats.savings_percent == 50.0

    assert service.delete(r1.file.id, alice.id) is not None
    assert ref_count(catalog, b"same bytes") == 2
    service.delete(r2.file.id, alice.id)
    service.delete(r3.file.id, bob.id)
    assert ref_count(catalog, b"same bytes") is None
    assert len(store.objects) == 0

    # reupload after purge starts again from one
    r4 = upload_one(service, alice, b"same bytes")
    assert r4.is_new and r4.blob.ref_count == 1
    assert r4.blob.id != r1.blob.id


def test_stats_empty(service: VaultService, alice):
    s = service.storage_stats(alice.id)
    assert (s.original, s.dedup, s.savings, s.savings_percent) == (0, 0, 0, 0.0)


def test_delete_is_idempotent(service: VaultService, catalog: Catalog, alice, bob):
    r = upload_one(service, alice, b"x")
    upload_one(service, alice, b"x")
    assert service.delete(r.file.id, bob.id) is None
    assert service.delete(r.file.id, alice.id) is not None
    assert service.delete(r.file.id, alice.id) is None
    assert ref_count(catalog, b"x") == 1


def test_upload_stream_and_tags(service: VaultService, alice):
    r = upload_one(service, alice, b"", "empty.txt", tags=["b", " a ", ""])
    assert r.file.tags == ["a", "b"]
    r = service.upload(alice, [UploadInput("stream.bin", io.BytesIO(b"\x00\x01\x02"))])[0]
    assert r.ok
    assert r.blob.mime_detected == OCTET_STREAM
    assert r.file.size_bytes_original == 3


def test_quota_boundary(service: VaultService, catalog: Catalog):
    owner = make_owner(catalog, "q@example.com", quota=10)
    upload_one(service, owner, b"12345")
    upload_one(service, owner, b"67890")
    [r] = service.upload(owner, [UploadInput("over", b"!")])
    assert isinstance(r.error, QuotaExceededError)
    assert r.file is None
    assert service.storage_stats(owner.id).original == 10


def test_quota_counts_duplicates(service: VaultService, catalog: Catalog):
    owner = make_owner(catalog, "q@example.com", quota=10)
    results = service.upload(
        owner,
        [UploadInput("1", b"123456"), UploadInput("2", b"123456")],
    )
    assert results[0].ok
    assert isinstance(results[1].error, QuotaExceededError)


def test_unlimited_quota(service: VaultService, catalog: Catalog):
    owner = make_owner(catalog, "u@example.com", quota=0)
    for i in range(5):
        upload_one(service, owner, bytes(1000) + bytes([i]))


def test_partial_batch(service: VaultService, store: InMemBlobStore, alice):
    results = service.upload(
        alice,
        [
            UploadInput("ok1.txt", b"first"),
            UploadInput("huge.bin", b"x" * 2000),
            UploadInput("", b"no name"),
            UploadInput("ok2.txt", b"second"),
        ],
    )
    assert [r.ok for r in results] == [True, False, False, True]
    assert isinstance(results[1].error, FileTooLargeError)
    assert isinstance(results[2].error, ValidationError)
    assert len(store.objects) == 2
    files, total = service.list_files(alice.id)
    assert total == 2


def test_no_size_limit(catalog: Catalog, store: InMemBlobStore):
    service = VaultService(catalog, store, max_upload_bytes=0)
    owner = make_owner(catalog, "big@example.com", quota=0)
    upload_one(service, owner, b"x" * 5000)


def test_unknown_folder_is_refused(service: VaultService, alice, bob):
    folder = service.create_folder(bob.id, "bobs")
    [r] = service.upload(alice, [UploadInput("f", b"f", folder_id=folder.id)])
    assert isinstance(r.error, ValidationError)


def test_concurrent_novel_upload(service: VaultService, catalog: Catalog, store: InMemBlobStore, alice, bob, monkeypatch):
    """Bob's upload of the same bytes commits between alice's lookup and her insert."""
    real_put = store.put
    calls = []

    def racing_put(key, data, content_type=None):
        calls.append(key)
        if len(calls) == 1:
            r = upload_one(service, bob, data, "bob.txt")
            assert r.is_new
        real_put(key, data, content_type)

    monkeypatch.setattr(store, "put", racing_put)
    [r] = service.upload(alice, [UploadInput("alice.txt", b"contended")])
    assert r.ok
    assert not r.is_new
    assert r.blob.ref_count == 2
    with catalog.transaction() as conn:
        assert catalog.blobs.count(conn) == 1
    assert ref_count(catalog, b"contended") == 2
    assert len(store.objects) == 1


def test_claim_gives_up(service: VaultService, catalog: Catalog, alice, monkeypatch):
    def always_duplicate(conn, digest, *args):
        raise DuplicateBlobError(digest)

    monkeypatch.setattr(catalog.blobs, "insert", always_duplicate)
    with pytest.raises(ConflictError):
        service.upload(alice, [UploadInput("f", b"never")])


def test_store_failure_propagates(service: VaultService, store: InMemBlobStore, alice, monkeypatch):
    upload_one(service, alice, b"first")

    def broken_put(*args, **kwargs):
        raise OSError("disk on fire")

    monkeypatch.setattr(store, "put", broken_put)
    with pytest.raises(OSError):
        service.upload(alice, [UploadInput("second", b"second")])
    files, total = service.list_files(alice.id)
    assert total == 1


def test_failed_physical_delete_then_sweep(service: VaultService, catalog: Catalog, store: InMemBlobStore, alice, monkeypatch):
    r = upload_one(service, alice, b"orphan me")
    key = storage_key(r.blob.digest)

    def broken_delete(key):
        raise OSError("store unavailable")

    with monkeypatch.context() as m:
        m.setattr(store, "delete", broken_delete)
        assert service.delete(r.file.id, alice.id) is not None
    assert ref_count(catalog, b"orphan me") is None
    assert store.has(key)

    keep = upload_one(service, alice, b"keep me")
    assert service.sweep_orphans(dry_run=True) == [key]
    assert store.has(key)
    assert service.sweep_orphans() == [key]
    assert not store.has(key)
    assert store.has(storage_key(keep.blob.digest))
    assert service.sweep_orphans() == []


def test_reupload_while_last_copy_is_purged(service: VaultService, catalog: Catalog, store: InMemBlobStore, alice, bob, monkeypatch):
    """Bob uploads the same bytes while alice's delete of the last copy is removing them."""
    r = upload_one(service, alice, b"phoenix", "alice.txt")
    real_delete = store.delete
    racers: list[threading.Thread] = []
    results = []

    def racing_delete(key):
        t = threading.Thread(
            target=lambda: results.append(upload_one(service, bob, b"phoenix", "bob.txt"))
        )
        t.start()
        racers.append(t)
        # bob's upload queues behind the purge transaction
        time.sleep(0.2)
        real_delete(key)

    monkeypatch.setattr(store, "delete", racing_delete)
    assert service.delete(r.file.id, alice.id) is not None
    for t in racers:
        t.join(timeout=60)
    [b] = results
    assert b.is_new
    assert service.download(b.file.id, bob.id).data == b"phoenix"
    assert ref_count(catalog, b"phoenix") == 1
    assert store.has(storage_key(b.blob.digest))


def test_download(service: VaultService, alice, bob):
    r = upload_one(service, alice, b"%PDF-1.5 contents", "doc.pdf")
    d = service.download(r.file.id, alice.id)
    assert d.data == b"%PDF-1.5 contents"
    assert d.content_type == "application/pdf"
    assert d.filename == "doc.pdf"
    assert service.download(r.file.id, bob.id) is None
    service.download(r.file.id, alice.id)
    assert service.get_file(r.file.id, alice.id).file.download_count == 2


def test_content_type_priority(service: VaultService, store: InMemBlobStore, alice):
    r = upload_one(service, alice, b"\x00\x01\x02", "x.bin", declared_type="application/x-thing")
    key = storage_key(r.blob.digest)
    # store reported type wins
    assert service.download(r.file.id, alice.id).content_type == "application/x-thing"
    store.objects[key] = StoredObject(b"\x00\x01\x02", "application/x-from-store")
    assert service.download(r.file.id, alice.id).content_type == "application/x-from-store"
    # then the declared type
    store.objects[key] = StoredObject(b"\x00\x01\x02", None)
    assert service.download(r.file.id, alice.id).content_type == "application/x-thing"
    # then the detected one
    r2 = upload_one(service, alice, b"plain words", "y")
    store.objects[storage_key(r2.blob.digest)] = StoredObject(b"plain words", None)
    assert service.download(r2.file.id, alice.id).content_type == "text/plain; charset=utf-8"


def test_download_counter_failure_is_ignored(service: VaultService, catalog: Catalog, alice, monkeypatch):
    r = upload_one(service, alice, b"count")

    def broken(conn, file_id):
        raise RuntimeError("no counting today")

    monkeypatch.setattr(catalog.files, "increment_download_count", broken)
    assert service.download(r.file.id, alice.id).data == b"count"


def test_share_visibility(service: VaultService, alice, bob):
    r = upload_one(service, alice, b"shared")
    assert service.share(r.file.id, bob.id) is None
    private = service.share(r.file.id, alice.id, Visibility.PRIVATE)
    assert private.token
    assert service.download_shared(private.token).data == b"shared"
    # unlisted
    assert service.list_public()[1] == 0
    assert service.download_public(r.file.id) is None

    public = service.share(r.file.id, alice.id, Visibility.PUBLIC)
    assert public.token != private.token
    assert service.download_shared(private.token) is None
    items, total = service.list_public()
    assert total == 1 and items[0].file.id == r.file.id
    assert service.download_public(r.file.id).data == b"shared"
    assert service.get_share(r.file.id, alice.id).token == public.token

    assert service.revoke_share(r.file.id, alice.id)
    assert not service.revoke_share(r.file.id, alice.id)
    assert service.list_public()[1] == 0
    assert service.download_shared(public.token) is None


def test_share_expiry(service: VaultService, alice):
    r = upload_one(service, alice, b"expiring")
    past = utcnow() - timedelta(minutes=1)
    s = service.share(r.file.id, alice.id, Visibility.PUBLIC, expires_at=past)
    assert service.download_shared(s.token) is None
    assert service.download_public(r.file.id) is None
    assert service.list_public()[1] == 0

    future = utcnow() + timedelta(hours=1)
    s = service.share(r.file.id, alice.id, Visibility.PUBLIC, expires_at=future)
    assert service.download_shared(s.token).data == b"expiring"
    assert service.download_public(r.file.id).data == b"expiring"


def test_share_expiry_with_offsets(service: VaultService, alice):
    r = upload_one(service, alice, b"offsets")
    ahead = timezone(timedelta(hours=5))
    behind = timezone(timedelta(hours=-5))

    expired = (utcnow() - timedelta(minutes=10)).astimezone(ahead)
    s = service.share(r.file.id, alice.id, Visibility.PUBLIC, expires_at=expired)
    assert service.download_shared(s.token) is None
    assert service.download_public(r.file.id) is None
    assert service.list_public()[1] == 0

    live = (utcnow() + timedelta(minutes=10)).astimezone(behind)
    s = service.share(r.file.id, alice.id, Visibility.PUBLIC, expires_at=live)
    assert service.download_shared(s.token).data == b"offsets"
    assert service.list_public()[1] == 1

    stored = service.get_share(r.file.id, alice.id).expires_at
    assert stored.utcoffset() == timedelta(0)
    assert stored == live
    assert service.get_file(r.file.id, alice.id).file.uploaded_at.utcoffset() == timedelta(0)


def test_default_share_ttl(catalog: Catalog, store: InMemBlobStore, alice):
    service = VaultService(
        catalog, store, max_upload_bytes=100, default_share_ttl=timedelta(days=1)
    )
    r = upload_one(service, alice, b"ttl")
    s = service.share(r.file.id, alice.id)
    assert s.expires_at is not None


def test_delete_removes_share(service: VaultService, alice):
    r = upload_one(service, alice, b"bye")
    s = service.share(r.file.id, alice.id, Visibility.PUBLIC)
    service.delete(r.file.id, alice.id)
    assert service.download_shared(s.token) is None
    assert service.download_public(r.file.id) is None


def test_list_files_filter(service: VaultService, alice):
    upload_one(service, alice, b"one", "Holiday.txt", tags=["trip"])
    upload_one(service, alice, b"two", "work.txt")
    items, total = service.list_files(alice.id, FileFilter(search="holi", tags=("trip",)))
    assert total == 1
    assert items[0].file.filename_original == "Holiday.txt"


def test_page_size(catalog: Catalog, store: InMemBlobStore, alice):
    service = VaultService(catalog, store, max_upload_bytes=100, page_size=2)
    for i in range(3):
        upload_one(service, alice, bytes([i]), f"{i}")
    items, total = service.list_files(alice.id)
    assert len(items) == 2 and total == 3
    items, total = service.list_files(alice.id, offset=2)
    assert len(items) == 1


def test_shared_folder(service: VaultService, alice, bob):
    folder = service.create_folder(alice.id, "Photos")
    r = upload_one(service, alice, b"pic", "pic.txt", folder_id=folder.id)
    upload_one(service, alice, b"elsewhere", "other.txt")
    assert service.share_folder(folder.id, bob.id) is None
    share = service.share_folder(folder.id, alice.id)
    opened = service.open_shared_folder(share.token)
    assert opened is not None
    f, items = opened
    assert f.id == folder.id
    assert [i.file.id for i in items] == [r.file.id]
    # a folder token is not a file token
    assert service.download_shared(share.token) is None
    assert service.open_shared_folder("nope") is None


def test_folder_lifecycle(service: VaultService, alice):
    folder = service.create_folder(alice.id, "Docs")
    with pytest.raises(ValidationError):
        service.create_folder(alice.id, "docs")
    with pytest.raises(ValidationError):
        service.create_folder(alice.id, "   ")
    child = service.create_folder(alice.id, "Child", folder.id)
    assert [f.name for f in service.list_folders(alice.id)] == ["Docs"]
    assert [f.id for f in service.list_folders(alice.id, folder.id)] == [child.id]
    assert service.rename_folder(folder.id, alice.id, "Papers").name == "Papers"
    r = upload_one(service, alice, b"doc", folder_id=child.id)
    share = service.share_folder(child.id, alice.id)
    assert service.delete_folder(folder.id, alice.id)
    assert not service.delete_folder(folder.id, alice.id)
    assert service.list_folders(alice.id) == []
    assert service.get_file(r.file.id, alice.id).file.folder_id is None
    assert service.open_shared_folder(share.token) is None
