from datetime import datetime
import logging
from typing import Iterable, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    Connection,
    ColumnElement,
    Select,
    and_,
    func,
    insert,
    or_,
    select,
    update,
)

from ..util import utcnow
from .filters import FileFilter, clean_tags
from .schema import (
    Blob,
    FileRecord,
    FileWithBlob,
    Owner,
    Share,
    TargetType,
    Visibility,
    blobs,
    file_tags,
    files,
    owners,
    shares,
)

logger = logging.getLogger("vaultstore")

# blob, owner and share columns are labelled so they don't collide with the file's columns.
_BLOB_COLUMNS = [c.label("b_" + c.name) for c in blobs.c]
_OWNER_COLUMNS = [c.label("o_" + c.name) for c in owners.c]
_SHARE_COLUMNS = [c.label("s_" + c.name) for c in shares.c]

_files_with_blobs = files.join(blobs, files.c.blob_id == blobs.c.id)


def share_is_live(now: datetime) -> ColumnElement[bool]:
    """The share has not expired as of ``now``."""
    return or_(shares.c.expires_at.is_(None), shares.c.expires_at > now)


def _is_live():
    return files.c.is_deleted == False  # noqa: E712


class FileCatalog:
    """Logical files. Each live file holds exactly one reference on its blob."""

    table = files

    def _load_tags(self, conn: Connection, file_ids: list[UUID]) -> dict[UUID, list[str]]:
        result: dict[UUID, list[str]] = {i: [] for i in file_ids}
        if not file_ids:
            return result
        q = select(file_tags.c.file_id, file_tags.c.tag).where(
            file_tags.c.file_id.in_(file_ids)
        )
        for file_id, tag in conn.execute(q):
            result[file_id].append(tag)
        return result

    def _hydrate(self, conn: Connection, rows) -> list[FileWithBlob]:
        rows = [r._mapping for r in rows]
        tags = self._load_tags(conn, [r["id"] for r in rows])
        items = []
        for r in rows:
            item = FileWithBlob(
                file=FileRecord.of_row(r, tags[r["id"]]),
                blob=Blob.of_row(r, prefix="b_"),
            )
            if "o_id" in r:
                item.owner = Owner.of_row(r, prefix="o_")
            if "s_id" in r:
                item.share = Share.of_row(r, prefix="s_")
            items.append(item)
        return items

    def _page(
        self,
        conn: Connection,
        q: Select,
        where: list[ColumnElement[bool]],
        limit: int,
        offset: int,
    ) -> tuple[list[FileWithBlob], int]:
        total = conn.execute(
            select(func.count()).select_from(q.where(*where).subquery())
        ).scalar_one()
        page = q.where(*where).order_by(files.c.uploaded_at.desc(), files.c.id)
        if limit > 0:
            page = page.limit(limit)
        if offset > 0:
            page = page.offset(offset)
        return self._hydrate(conn, conn.execute(page)), total

    def insert(
        self,
        conn: Connection,
        owner_id: UUID,
        blob_id: UUID,
        original_name: str,
        normalized_name: str,
        declared_type: Optional[str],
        size: int,
        tags: Iterable[str] = (),
        folder_id: Optional[UUID] = None,
    ) -> FileRecord:
        record = FileRecord(
            id=uuid4(),
            owner_id=owner_id,
            blob_id=blob_id,
            filename_original=original_name,
            filename_normalized=normalized_name,
            mime_declared=declared_type or None,
            size_bytes_original=size,
            uploaded_at=utcnow(),
            folder_id=folder_id,
            tags=clean_tags(tags),
        )
        conn.execute(
            insert(files).values(
                id=record.id,
                owner_id=record.owner_id,
                blob_id=record.blob_id,
                folder_id=record.folder_id,
                filename_original=record.filename_original,
                filename_normalized=record.filename_normalized,
                mime_declared=record.mime_declared,
                size_bytes_original=record.size_bytes_original,
                uploaded_at=record.uploaded_at,
                is_deleted=False,
                download_count=0,
            )
        )
        if record.tags:
            conn.execute(
                insert(file_tags),
                [{"file_id": record.id, "tag": t} for t in record.tags],
            )
        return record

    def list_by_owner(
        self,
        conn: Connection,
        owner_id: UUID,
        filter: Optional[FileFilter] = None,
        limit: int = 200,
        offset: int = 0,
    ) -> tuple[list[FileWithBlob], int]:
        """Live files of the owner, newest first, and the number of matches ignoring the page bound."""
        filter = filter or FileFilter()
        q = select(files, *_BLOB_COLUMNS).select_from(_files_with_blobs)
        where = [files.c.owner_id == owner_id, _is_live(), *filter.where()]
        return self._page(conn, q, where, limit, offset)

    def list_public(
        self,
        conn: Connection,
        filter: Optional[FileFilter] = None,
        now: Optional[datetime] = None,
        limit: int = 200,
        offset: int = 0,
    ) -> tuple[list[FileWithBlob], int]:
        """Live files that have a public share with a token that has not expired."""
        filter = filter or FileFilter()
        now = now or utcnow()
        q = select(files, *_BLOB_COLUMNS, *_OWNER_COLUMNS, *_SHARE_COLUMNS).select_from(
            _files_with_blobs.join(owners, files.c.owner_id == owners.c.id).join(
                shares,
                and_(
                    shares.c.target_type == TargetType.FILE,
                    shares.c.target_id == files.c.id,
                ),
            )
        )
        where = [
            _is_live(),
            shares.c.visibility == Visibility.PUBLIC,
            shares.c.token.is_not(None),
            shares.c.token != "",
            share_is_live(now),
            *filter.where(with_owners=True),
        ]
        return self._page(conn, q, where, limit, offset)

    def get(self, conn: Connection, file_id: UUID, owner_id: UUID) -> Optional[FileWithBlob]:
        q = (
            select(files, *_BLOB_COLUMNS)
            .select_from(_files_with_blobs)
            .where(files.c.id == file_id, files.c.owner_id == owner_id, _is_live())
        )
        items = self._hydrate(conn, conn.execute(q))
        return items[0] if items else None

    def get_by_share_token(
        self, conn: Connection, token: str, now: Optional[datetime] = None
    ) -> Optional[FileWithBlob]:
        """Resolve a file share token regardless of visibility. Ownership is not checked."""
        if not token:
            return None
        now = now or utcnow()
        q = (
            select(files, *_BLOB_COLUMNS, *_SHARE_COLUMNS)
            .select_from(
                _files_with_blobs.join(
                    shares,
                    and_(
                        shares.c.target_type == TargetType.FILE,
                        shares.c.target_id == files.c.id,
                    ),
                )
            )
            .where(shares.c.token == token, share_is_live(now), _is_live())
        )
        items = self._hydrate(conn, conn.execute(q))
        return items[0] if items else None

    def mark_deleted(
        self, conn: Connection, file_id: UUID, owner_id: UUID
    ) -> Optional[FileRecord]:
        """Soft delete. Returns None if the file is missing, not owned or already deleted.

        Exactly one caller can win this for a given file, so it is the point where the
        blob reference gets dropped.
        """
        stmt = (
            update(files)
            .where(files.c.id == file_id, files.c.owner_id == owner_id, _is_live())
            .values(is_deleted=True)
            .returning(*files.c)
        )
        row = conn.execute(stmt).first()
        if row is None:
            return None
        tags = self._load_tags(conn, [file_id])[file_id]
        return FileRecord.of_row(row._mapping, tags)

    def increment_download_count(self, conn: Connection, file_id: UUID) -> Optional[int]:
        stmt = (
            update(files)
            .where(files.c.id == file_id)
            .values(download_count=files.c.download_count + 1)
            .returning(files.c.download_count)
        )
        return conn.execute(stmt).scalar_one_or_none()

    def list_in_folder(self, conn: Connection, folder_id: UUID) -> list[FileWithBlob]:
        q = (
            select(files, *_BLOB_COLUMNS)
            .select_from(_files_with_blobs)
            .where(files.c.folder_id == folder_id, _is_live())
            .order_by(files.c.filename_normalized, files.c.id)
        )
        return self._hydrate(conn, conn.execute(q))

    def usage(self, conn: Connection, owner_id: UUID) -> tuple[int, int]:
        """Returns (original, dedup) bytes used by the owner's live files.

        Dedup usage counts each distinct blob once. The sub-select is distinct on the
        blob id as well as the size so that two different blobs of the same size both count.
        """
        live = [files.c.owner_id == owner_id, _is_live()]
        original = conn.execute(
            select(func.coalesce(func.sum(files.c.size_bytes_original), 0)).where(*live)
        ).scalar_one()
        distinct_blobs = (
            select(blobs.c.id, blobs.c.size_bytes)
            .select_from(_files_with_blobs)
            .where(*live)
            .distinct()
            .subquery()
        )
        dedup = conn.execute(
            select(func.coalesce(func.sum(distinct_blobs.c.size_bytes), 0))
        ).scalar_one()
        return int(original), int(dedup)
