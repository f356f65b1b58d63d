import logging
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Connection, delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError

from ..errors import DuplicateBlobError, ReferenceCountError
from ..util import utcnow
from .schema import Blob, blobs

logger = logging.getLogger("vaultstore")


class BlobCatalog:
    """One row per distinct digest, with the number of live files that point at it.

    Reference counts are only ever changed by single UPDATE statements evaluated by the
    database, never by reading the count into Python and writing it back.
    """

    table = blobs

    def lookup_by_digest(self, conn: Connection, digest: str) -> Optional[Blob]:
        row = conn.execute(select(blobs).where(blobs.c.digest == digest)).first()
        if row is None:
            return None
        return Blob.of_row(row._mapping)

    def get(self, conn: Connection, blob_id: UUID) -> Optional[Blob]:
        row = conn.execute(select(blobs).where(blobs.c.id == blob_id)).first()
        if row is None:
            return None
        return Blob.of_row(row._mapping)

    def insert(
        self,
        conn: Connection,
        digest: str,
        size: int,
        media_type: str,
        storage_key: str,
    ) -> Blob:
        """Insert the row for novel content with a reference count of one.

        Raises:
            DuplicateBlobError: a row for this digest already exists, most likely because a
                concurrent upload of the same content won the race. The enclosing transaction
                is no longer usable and must be rolled back.
        """
        blob = Blob(
            id=uuid4(),
            digest=digest,
            size_bytes=size,
            mime_detected=media_type,
            storage_key=storage_key,
            ref_count=1,
            created_at=utcnow(),
        )
        try:
            conn.execute(
                insert(blobs).values(
                    id=blob.id,
                    digest=blob.digest,
                    size_bytes=blob.size_bytes,
                    mime_detected=blob.mime_detected,
                    storage_key=blob.storage_key,
                    ref_count=blob.ref_count,
                    created_at=blob.created_at,
                )
            )
        except IntegrityError as e:
            raise DuplicateBlobError(digest) from e
        return blob

    def increment_ref(self, conn: Connection, blob_id: UUID) -> Optional[int]:
        """Take one more reference on the blob and return the new count.

        Returns None if the row is gone (it was purged after the caller looked it up).
        """
        stmt = (
            update(blobs)
            .where(blobs.c.id == blob_id)
            .values(ref_count=blobs.c.ref_count + 1)
            .returning(blobs.c.ref_count)
        )
        return conn.execute(stmt).scalar_one_or_none()

    def decrement_ref(self, conn: Connection, blob_id: UUID) -> int:
        """Drop one reference on the blob and return the new count.

        Raises:
            ReferenceCountError: the count is already zero or the row does not exist.
                Every live file holds exactly one reference, so this means the catalog is corrupt.
        """
        stmt = (
            update(blobs)
            .where((blobs.c.id == blob_id) & (blobs.c.ref_count > 0))
            .values(ref_count=blobs.c.ref_count - 1)
            .returning(blobs.c.ref_count)
        )
        count = conn.execute(stmt).scalar_one_or_none()
        if count is None:
            logger.critical(
                f"refusing to decrement reference count of blob {blob_id}: already zero or missing"
            )
            raise ReferenceCountError(f"blob {blob_id} has no references to drop")
        return count

    def delete(self, conn: Connection, blob_id: UUID) -> bool:
        """Remove the catalog row. The caller is responsible for the physical bytes."""
        r = conn.execute(delete(blobs).where(blobs.c.id == blob_id))
        return r.rowcount > 0

    def storage_keys(self, conn: Connection) -> set[str]:
        return set(conn.execute(select(blobs.c.storage_key)).scalars())

    def count(self, conn: Connection) -> int:
        return conn.execute(select(func.count()).select_from(blobs)).scalar_one()
