from datetime import datetime
import secrets
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Connection, delete, select
from sqlalchemy.dialects import postgresql, sqlite

from ..util import utcnow
from .schema import Share, TargetType, Visibility, shares


def new_share_token(nbytes: int = 32) -> str:
    """A fresh unguessable url-safe token carrying ``nbytes`` bytes of randomness."""
    return secrets.token_urlsafe(nbytes)


def _insert_for(conn: Connection):
    if conn.dialect.name == "postgresql":
        return postgresql.insert(shares)
    elif conn.dialect.name == "sqlite":
        return sqlite.insert(shares)
    else:
        raise NotImplementedError(f"share upsert is not supported on {conn.dialect.name}")


class ShareCatalog:
    """At most one share per target. Writing a share replaces the previous one wholesale."""

    table = shares

    def upsert(
        self,
        conn: Connection,
        target_id: UUID,
        target_type: TargetType = TargetType.FILE,
        visibility: Visibility = Visibility.PRIVATE,
        token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Share:
        stmt = _insert_for(conn).values(
            id=uuid4(),
            target_type=target_type,
            target_id=target_id,
            visibility=visibility,
            token=token,
            expires_at=expires_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[shares.c.target_type, shares.c.target_id],
            set_=dict(
                visibility=stmt.excluded.visibility,
                token=stmt.excluded.token,
                expires_at=stmt.excluded.expires_at,
            ),
        ).returning(*shares.c)
        row = conn.execute(stmt).one()
        return Share.of_row(row._mapping)

    def delete(
        self, conn: Connection, target_id: UUID, target_type: TargetType = TargetType.FILE
    ) -> bool:
        r = conn.execute(
            delete(shares).where(
                shares.c.target_type == target_type, shares.c.target_id == target_id
            )
        )
        return r.rowcount > 0

    def get_by_target(
        self, conn: Connection, target_id: UUID, target_type: TargetType = TargetType.FILE
    ) -> Optional[Share]:
        row = conn.execute(
            select(shares).where(
                shares.c.target_type == target_type, shares.c.target_id == target_id
            )
        ).first()
        return None if row is None else Share.of_row(row._mapping)

    def get_by_token(
        self, conn: Connection, token: str, now: Optional[datetime] = None
    ) -> Optional[Share]:
        """Look up a share by its token. Expired shares are not returned."""
        if not token:
            return None
        now = now or utcnow()
        row = conn.execute(
            select(shares).where(
                shares.c.token == token,
                (shares.c.expires_at.is_(None)) | (shares.c.expires_at > now),
            )
        ).first()
        return None if row is None else Share.of_row(row._mapping)
