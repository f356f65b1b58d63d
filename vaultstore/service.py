""" The vault: files, shares and folders on top of a deduplicating blob store.

The catalog (a relational database) says which files exist and which blob each one points at.
The blob store holds the bytes, once per distinct digest.
Every method here keeps the two in step:

- a blob row exists exactly while some live file references it, and `ref_count` is the number of such files;
- bytes are written to the store before the blob row that claims them is committed,
  and deleted after the blob row is gone. So the store may briefly (or, if a delete fails, indefinitely)
  hold bytes that nothing claims. `VaultService.sweep_orphans` cleans those up.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import IO, Optional, Sequence, Union
from uuid import UUID

from .catalog import (
    Blob,
    Catalog,
    FileFilter,
    FileRecord,
    FileWithBlob,
    Folder,
    Owner,
    Share,
    TargetType,
    Visibility,
    new_share_token,
    normalize_name,
)
from .errors import (
    ConflictError,
    DuplicateBlobError,
    FileTooLargeError,
    QuotaExceededError,
    ValidationError,
)
from .hasher import OCTET_STREAM, Fingerprint, fingerprint, read_payload, storage_key
from .store import AbstractBlobStore
from .util import human_size, utcnow

logger = logging.getLogger("vaultstore")


@dataclass
class UploadInput:
    filename: str
    tape: Union[bytes, IO[bytes]]
    declared_type: Optional[str] = None
    """ The media type the client claims for the file, if any. """
    tags: Sequence[str] = ()
    folder_id: Optional[UUID] = None


@dataclass
class UploadResult:
    filename: str
    file: Optional[FileRecord] = None
    blob: Optional[Blob] = None
    is_new: bool = False
    """ True if this upload stored new bytes, false if it deduplicated against an existing blob. """
    error: Optional[ValidationError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class DownloadedFile:
    file: FileRecord
    blob: Blob
    data: bytes
    content_type: str

    @property
    def filename(self) -> str:
        return self.file.filename_original


@dataclass
class StorageStats:
    original: int
    """ Bytes the owner would use with no deduplication. """
    dedup: int
    """ Bytes of the distinct blobs the owner references. """

    @property
    def savings(self) -> int:
        return self.original - self.dedup

    @property
    def savings_percent(self) -> float:
        if self.original <= 0:
            return 0.0
        return self.savings / self.original * 100


@dataclass
class _Prepared:
    item: UploadInput
    data: bytes
    fp: Fingerprint
    name: str


def pick_content_type(stored: Optional[str], file: FileRecord, blob: Blob) -> str:
    """The content type to serve a file with.

    In order of preference: what the store reports, what the client declared, what we detected.
    """
    for t in (stored, file.mime_declared, blob.mime_detected):
        if t:
            return t
    return OCTET_STREAM


class VaultService:
    catalog: Catalog
    store: AbstractBlobStore

    def __init__(
        self,
        catalog: Catalog,
        store: AbstractBlobStore,
        *,
        max_upload_bytes: int = 10 * 2**20,
        page_size: int = 200,
        share_token_bytes: int = 32,
        default_share_ttl: Optional[timedelta] = None,
        claim_attempts: int = 3,
    ):
        self.catalog = catalog
        self.store = store
        self.max_upload_bytes = max_upload_bytes
        self.page_size = page_size
        self.share_token_bytes = share_token_bytes
        self.default_share_ttl = default_share_ttl
        self.claim_attempts = claim_attempts

    # ---- uploads

    def _prepare(self, owner: Owner, item: UploadInput, usage: int) -> _Prepared:
        """Read and fingerprint one upload, raising a ValidationError if it must be refused."""
        name = (item.filename or "").strip()
        if not name:
            raise ValidationError("file name must not be empty")
        limit = self.max_upload_bytes if self.max_upload_bytes > 0 else None
        data = read_payload(item.tape, limit=limit)
        if limit is not None and len(data) > limit:
            raise FileTooLargeError(name, limit)
        fp = fingerprint(data, item.declared_type)
        if owner.quota_bytes > 0 and usage + fp.size > owner.quota_bytes:
            raise QuotaExceededError(name, usage, fp.size, owner.quota_bytes)
        if item.folder_id is not None:
            with self.catalog.transaction() as conn:
                if self.catalog.folders.get(conn, item.folder_id, owner.id) is None:
                    raise ValidationError(f"no folder {item.folder_id}")
        return _Prepared(item=item, data=data, fp=fp, name=name)

    def _insert_file(self, conn, owner: Owner, p: _Prepared, blob: Blob) -> FileRecord:
        return self.catalog.files.insert(
            conn,
            owner_id=owner.id,
            blob_id=blob.id,
            original_name=p.name,
            normalized_name=normalize_name(p.name),
            declared_type=p.item.declared_type,
            size=blob.size_bytes,
            tags=p.item.tags,
            folder_id=p.item.folder_id,
        )

    def _claim(self, owner: Owner, p: _Prepared) -> UploadResult:
        """Take a reference on the blob for these bytes, creating it if needed, and record the file."""
        digest = p.fp.digest
        key = storage_key(digest)
        for attempt in range(self.claim_attempts):
            with self.catalog.transaction() as conn:
                blob = self.catalog.blobs.lookup_by_digest(conn, digest)
                count = None
                if blob is not None:
                    count = self.catalog.blobs.increment_ref(conn, blob.id)
                if count is not None:
                    assert blob is not None
                    blob.ref_count = count
                    file = self._insert_file(conn, owner, p, blob)
                    logger.debug(f"{p.name} deduplicated against blob {digest} (refs: {count})")
                    return UploadResult(p.name, file=file, blob=blob, is_new=False)
            if blob is not None:
                logger.debug(f"blob {digest} was purged during upload of {p.name}, retrying")
                continue

            # bytes go in before the row that claims them.
            self.store.put(key, p.data, content_type=p.fp.media_type)
            try:
                with self.catalog.transaction() as conn:
                    blob = self.catalog.blobs.insert(
                        conn, digest, p.fp.size, p.fp.media_type, key
                    )
                    file = self._insert_file(conn, owner, p, blob)
            except DuplicateBlobError:
                logger.debug(
                    f"lost insert race for blob {digest} (attempt {attempt + 1}), retrying"
                )
                continue
            logger.debug(f"stored new blob {digest} for {p.name} ({human_size(p.fp.size)})")
            return UploadResult(p.name, file=file, blob=blob, is_new=True)
        raise ConflictError(
            f"could not claim blob {digest} after {self.claim_attempts} attempts"
        )

    def upload(self, owner: Owner, inputs: Sequence[UploadInput]) -> list[UploadResult]:
        """Upload a batch of files for the owner.

        Each item succeeds or fails on its own: a refused item (too large, over quota)
        gets a result with `error` set and does not touch the catalog or the store.
        Errors from the catalog or the store are not caught; items that completed before
        the failure stay uploaded.

        The quota is checked against a snapshot of the owner's usage taken at the start
        of the batch plus the items accepted so far, so concurrent batches from the same
        owner may overshoot it together.
        """
        with self.catalog.transaction() as conn:
            usage, _ = self.catalog.files.usage(conn, owner.id)
        results = []
        for item in inputs:
            try:
                p = self._prepare(owner, item, usage)
            except ValidationError as e:
                logger.debug(f"refused upload of {item.filename!r}: {e}")
                results.append(UploadResult(item.filename, error=e))
                continue
            r = self._claim(owner, p)
            usage += p.fp.size
            results.append(r)
        return results

    # ---- deletes

    def _purge_bytes(self, blob: Blob):
        logger.info(f"purging blob {blob.digest} ({human_size(blob.size_bytes)})")
        try:
            self.store.delete(blob.storage_key)
        except Exception:
            logger.warning(
                f"failed to delete bytes at {blob.storage_key}, left as an orphan",
                exc_info=True,
            )

    def delete(self, file_id: UUID, owner_id: UUID) -> Optional[FileRecord]:
        """Soft delete the file and drop its blob reference.

        Returns None if there is no such live file for this owner.
        If that was the last reference, the blob row is removed and its bytes are deleted
        before that commits. An upload of the same content waits on the purge and then
        stores the bytes afresh, so it can never claim a row whose bytes are about to go.
        A failure to delete the bytes is logged and otherwise ignored.
        """
        with self.catalog.transaction() as conn:
            found = self.catalog.files.get(conn, file_id, owner_id)
            if found is None:
                return None
            record = self.catalog.files.mark_deleted(conn, file_id, owner_id)
            if record is None:
                return None
            count = self.catalog.blobs.decrement_ref(conn, found.blob.id)
            if count <= 0:
                self.catalog.blobs.delete(conn, found.blob.id)
                self._purge_bytes(found.blob)

        try:
            with self.catalog.transaction() as conn:
                self.catalog.shares.delete(conn, file_id, TargetType.FILE)
        except Exception:
            logger.warning(f"failed to remove the share of deleted file {file_id}", exc_info=True)
        return record

    # ---- downloads

    def _fetch(self, found: Optional[FileWithBlob]) -> Optional[DownloadedFile]:
        if found is None:
            return None
        obj = self.store.get(found.blob.storage_key)
        try:
            with self.catalog.transaction() as conn:
                self.catalog.files.increment_download_count(conn, found.file.id)
            found.file.download_count += 1
        except Exception:
            logger.warning(
                f"failed to count download of file {found.file.id}", exc_info=True
            )
        return DownloadedFile(
            file=found.file,
            blob=found.blob,
            data=obj.data,
            content_type=pick_content_type(obj.content_type, found.file, found.blob),
        )

    def download(self, file_id: UUID, owner_id: UUID) -> Optional[DownloadedFile]:
        with self.catalog.transaction() as conn:
            found = self.catalog.files.get(conn, file_id, owner_id)
        return self._fetch(found)

    def download_shared(self, token: str) -> Optional[DownloadedFile]:
        """Download by share token. Works for private (unlisted) and public shares alike."""
        with self.catalog.transaction() as conn:
            found = self.catalog.files.get_by_share_token(conn, token, utcnow())
        return self._fetch(found)

    def download_public(self, file_id: UUID) -> Optional[DownloadedFile]:
        """Download a file by id, only if it is publicly listed."""
        with self.catalog.transaction() as conn:
            share = self.catalog.shares.get_by_target(conn, file_id, TargetType.FILE)
            if (
                share is None
                or share.visibility != Visibility.PUBLIC
                or not share.token
            ):
                return None
            found = self.catalog.files.get_by_share_token(conn, share.token, utcnow())
        return self._fetch(found)

    # ---- shares

    def _expiry(self, expires_at: Optional[datetime]) -> Optional[datetime]:
        if expires_at is None and self.default_share_ttl is not None:
            return utcnow() + self.default_share_ttl
        return expires_at

    def share(
        self,
        file_id: UUID,
        owner_id: UUID,
        visibility: Visibility = Visibility.PRIVATE,
        token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Optional[Share]:
        """Create or replace the share for one of the owner's files. A fresh token is issued unless one is given."""
        with self.catalog.transaction() as conn:
            if self.catalog.files.get(conn, file_id, owner_id) is None:
                return None
            return self.catalog.shares.upsert(
                conn,
                file_id,
                TargetType.FILE,
                visibility,
                token or new_share_token(self.share_token_bytes),
                self._expiry(expires_at),
            )

    def share_folder(
        self,
        folder_id: UUID,
        owner_id: UUID,
        visibility: Visibility = Visibility.PRIVATE,
        token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Optional[Share]:
        with self.catalog.transaction() as conn:
            if self.catalog.folders.get(conn, folder_id, owner_id) is None:
                return None
            return self.catalog.shares.upsert(
                conn,
                folder_id,
                TargetType.FOLDER,
                visibility,
                token or new_share_token(self.share_token_bytes),
                self._expiry(expires_at),
            )

    def revoke_share(self, file_id: UUID, owner_id: UUID) -> bool:
        with self.catalog.transaction() as conn:
            if self.catalog.files.get(conn, file_id, owner_id) is None:
                return False
            return self.catalog.shares.delete(conn, file_id, TargetType.FILE)

    def get_share(self, file_id: UUID, owner_id: UUID) -> Optional[Share]:
        with self.catalog.transaction() as conn:
            if self.catalog.files.get(conn, file_id, owner_id) is None:
                return None
            return self.catalog.shares.get_by_target(conn, file_id, TargetType.FILE)

    def open_shared_folder(
        self, token: str
    ) -> Optional[tuple[Folder, list[FileWithBlob]]]:
        """The folder behind a folder share token and the live files directly in it."""
        with self.catalog.transaction() as conn:
            share = self.catalog.shares.get_by_token(conn, token, utcnow())
            if share is None or share.target_type != TargetType.FOLDER:
                return None
            folder = self.catalog.folders.get(conn, share.target_id)
            if folder is None:
                return None
            return folder, self.catalog.files.list_in_folder(conn, folder.id)

    # ---- listings

    def list_files(
        self, owner_id: UUID, filter: Optional[FileFilter] = None, offset: int = 0
    ) -> tuple[list[FileWithBlob], int]:
        with self.catalog.transaction() as conn:
            return self.catalog.files.list_by_owner(
                conn, owner_id, filter, limit=self.page_size, offset=offset
            )

    def list_public(
        self, filter: Optional[FileFilter] = None, offset: int = 0
    ) -> tuple[list[FileWithBlob], int]:
        with self.catalog.transaction() as conn:
            return self.catalog.files.list_public(
                conn, filter, utcnow(), limit=self.page_size, offset=offset
            )

    def get_file(self, file_id: UUID, owner_id: UUID) -> Optional[FileWithBlob]:
        with self.catalog.transaction() as conn:
            return self.catalog.files.get(conn, file_id, owner_id)

    def storage_stats(self, owner_id: UUID) -> StorageStats:
        with self.catalog.transaction() as conn:
            original, dedup = self.catalog.files.usage(conn, owner_id)
        return StorageStats(original=original, dedup=dedup)

    # ---- maintenance

    def sweep_orphans(self, dry_run: bool = False) -> list[str]:
        """Find (and unless dry_run, delete) bytes in the store that no blob row claims.

        Only keys that are orphaned both before and after listing the store are touched,
        so bytes of an upload that is between its store write and its catalog commit survive
        as long as that upload finishes while the store is being listed.
        [todo] a grace period on object age would make this safe against slow uploads too.
        """
        with self.catalog.transaction() as conn:
            before = self.catalog.blobs.storage_keys(conn)
        candidates = [k for k in self.store.iter() if k not in before]
        with self.catalog.transaction() as conn:
            claimed = self.catalog.blobs.storage_keys(conn)
        orphans = sorted(k for k in candidates if k not in claimed)
        if dry_run:
            logger.info(f"found {len(orphans)} orphaned blobs (dry run)")
            return orphans
        for key in orphans:
            self.store.delete(key)
        logger.info(f"swept {len(orphans)} orphaned blobs")
        return orphans

    # ---- folders

    def create_folder(
        self, owner_id: UUID, name: str, parent_id: Optional[UUID] = None
    ) -> Folder:
        with self.catalog.transaction() as conn:
            return self.catalog.folders.create(conn, owner_id, name, parent_id)

    def rename_folder(self, folder_id: UUID, owner_id: UUID, name: str) -> Optional[Folder]:
        with self.catalog.transaction() as conn:
            return self.catalog.folders.rename(conn, folder_id, owner_id, name)

    def delete_folder(self, folder_id: UUID, owner_id: UUID) -> bool:
        with self.catalog.transaction() as conn:
            return self.catalog.folders.delete(conn, folder_id, owner_id)

    def list_folders(self, owner_id: UUID, parent_id: Optional[UUID] = None) -> list[Folder]:
        with self.catalog.transaction() as conn:
            return self.catalog.folders.list_children(conn, owner_id, parent_id)
