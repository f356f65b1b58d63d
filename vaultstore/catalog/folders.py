from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Connection, delete, insert, select, update
from sqlalchemy.exc import IntegrityError

from ..errors import FolderConflictError, ValidationError
from ..util import utcnow
from .filters import normalize_name
from .schema import Folder, TargetType, files, folders, shares


def _same_parent(parent_id: Optional[UUID]):
    # NULL parents never collide in a unique index, so root folders are checked here.
    if parent_id is None:
        return folders.c.parent_id.is_(None)
    return folders.c.parent_id == parent_id


class FolderCatalog:
    """Folders let an owner group files and share the group with one token.

    Files are not owned by folders: removing a folder only detaches its files.
    """

    table = folders

    def get(
        self, conn: Connection, folder_id: UUID, owner_id: Optional[UUID] = None
    ) -> Optional[Folder]:
        q = select(folders).where(folders.c.id == folder_id)
        if owner_id is not None:
            q = q.where(folders.c.owner_id == owner_id)
        row = conn.execute(q).first()
        return None if row is None else Folder.of_row(row._mapping)

    def list_children(
        self, conn: Connection, owner_id: UUID, parent_id: Optional[UUID] = None
    ) -> list[Folder]:
        q = (
            select(folders)
            .where(folders.c.owner_id == owner_id, _same_parent(parent_id))
            .order_by(folders.c.name_normalized)
        )
        return [Folder.of_row(r._mapping) for r in conn.execute(q)]

    def _check_name(
        self,
        conn: Connection,
        owner_id: UUID,
        parent_id: Optional[UUID],
        name: str,
        exclude: Optional[UUID] = None,
    ) -> str:
        name = name.strip()
        if not name:
            raise ValidationError("folder name must not be empty")
        normalized = normalize_name(name)
        q = select(folders.c.id).where(
            folders.c.owner_id == owner_id,
            _same_parent(parent_id),
            folders.c.name_normalized == normalized,
        )
        if exclude is not None:
            q = q.where(folders.c.id != exclude)
        if conn.execute(q).first() is not None:
            raise FolderConflictError(f"a folder named {name!r} already exists here")
        return normalized

    def create(
        self,
        conn: Connection,
        owner_id: UUID,
        name: str,
        parent_id: Optional[UUID] = None,
    ) -> Folder:
        if parent_id is not None and self.get(conn, parent_id, owner_id) is None:
            raise ValidationError(f"no folder {parent_id}")
        normalized = self._check_name(conn, owner_id, parent_id, name)
        now = utcnow()
        folder = Folder(
            id=uuid4(),
            owner_id=owner_id,
            parent_id=parent_id,
            name=name.strip(),
            created_at=now,
            updated_at=now,
        )
        try:
            conn.execute(
                insert(folders).values(
                    id=folder.id,
                    owner_id=folder.owner_id,
                    parent_id=folder.parent_id,
                    name=folder.name,
                    name_normalized=normalized,
                    created_at=folder.created_at,
                    updated_at=folder.updated_at,
                )
            )
        except IntegrityError as e:
            raise FolderConflictError(
                f"a folder named {folder.name!r} already exists here"
            ) from e
        return folder

    def rename(
        self, conn: Connection, folder_id: UUID, owner_id: UUID, name: str
    ) -> Optional[Folder]:
        folder = self.get(conn, folder_id, owner_id)
        if folder is None:
            return None
        normalized = self._check_name(
            conn, owner_id, folder.parent_id, name, exclude=folder_id
        )
        row = conn.execute(
            update(folders)
            .where(folders.c.id == folder_id)
            .values(name=name.strip(), name_normalized=normalized, updated_at=utcnow())
            .returning(*folders.c)
        ).one()
        return Folder.of_row(row._mapping)

    def subtree_ids(self, conn: Connection, root_id: UUID) -> list[UUID]:
        """The folder and all of its descendants."""
        tree = (
            select(folders.c.id)
            .where(folders.c.id == root_id)
            .cte("subtree", recursive=True)
        )
        tree = tree.union_all(
            select(folders.c.id).where(folders.c.parent_id == tree.c.id)
        )
        return list(conn.execute(select(tree.c.id)).scalars())

    def delete(self, conn: Connection, folder_id: UUID, owner_id: UUID) -> bool:
        if self.get(conn, folder_id, owner_id) is None:
            return False
        ids = self.subtree_ids(conn, folder_id)
        conn.execute(
            update(files).where(files.c.folder_id.in_(ids)).values(folder_id=None)
        )
        conn.execute(
            delete(shares).where(
                shares.c.target_type == TargetType.FOLDER, shares.c.target_id.in_(ids)
            )
        )
        conn.execute(delete(folders).where(folders.c.id.in_(ids)))
        return True
