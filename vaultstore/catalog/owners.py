from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Connection, insert, select, update

from ..util import utcnow
from .schema import Owner, owners


class OwnerCatalog:
    table = owners

    def get(self, conn: Connection, owner_id: UUID) -> Optional[Owner]:
        row = conn.execute(select(owners).where(owners.c.id == owner_id)).first()
        return None if row is None else Owner.of_row(row._mapping)

    def get_by_email(self, conn: Connection, email: str) -> Optional[Owner]:
        email = email.strip().lower()
        row = conn.execute(select(owners).where(owners.c.email == email)).first()
        return None if row is None else Owner.of_row(row._mapping)

    def upsert(
        self,
        conn: Connection,
        email: str,
        name: Optional[str] = None,
        quota_bytes: Optional[int] = None,
        default_quota_bytes: int = 10 * 2**20,
    ) -> Owner:
        """Create the owner with this email, or update the given fields of the existing one.

        Fields left as None are not changed on an existing owner.
        """
        email = email.strip().lower()
        existing = self.get_by_email(conn, email)
        if existing is None:
            owner = Owner(
                id=uuid4(),
                email=email,
                name=name,
                quota_bytes=default_quota_bytes if quota_bytes is None else quota_bytes,
                created_at=utcnow(),
            )
            conn.execute(
                insert(owners).values(
                    id=owner.id,
                    email=owner.email,
                    name=owner.name,
                    quota_bytes=owner.quota_bytes,
                    created_at=owner.created_at,
                )
            )
            return owner
        values = {}
        if name is not None:
            values["name"] = name
        if quota_bytes is not None:
            values["quota_bytes"] = quota_bytes
        if not values:
            return existing
        row = conn.execute(
            update(owners)
            .where(owners.c.id == existing.id)
            .values(**values)
            .returning(*owners.c)
        ).one()
        return Owner.of_row(row._mapping)

    def set_quota(
        self, conn: Connection, owner_id: UUID, quota_bytes: int
    ) -> Optional[Owner]:
        row = conn.execute(
            update(owners)
            .where(owners.c.id == owner_id)
            .values(quota_bytes=quota_bytes)
            .returning(*owners.c)
        ).first()
        return None if row is None else Owner.of_row(row._mapping)
