from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import ColumnElement, func, or_, select

from .schema import blobs, file_tags, files, owners


def normalize_name(name: str) -> str:
    """The form file and folder names are matched and compared in."""
    return name.strip().casefold()


def clean_tags(tags: Iterable[str]) -> list[str]:
    """Tags as they are stored and matched: stripped, without empties or duplicates, sorted."""
    return sorted({t.strip() for t in tags if t and t.strip()})


def _media_type_clause(column, entry: str) -> ColumnElement[bool]:
    entry = entry.strip().lower()
    if entry.endswith("/*"):
        entry = entry[:-1]
    if entry.endswith("/"):
        return column.startswith(entry, autoescape=True)
    # stored types may carry parameters, eg 'text/plain; charset=utf-8'
    return or_(column == entry, column.startswith(entry + ";", autoescape=True))


@dataclass(frozen=True)
class FileFilter:
    """Structured options for file listings. Every field is optional and they are ANDed.

    `uploader` and `uploader_id` only make sense for listings that join the owners table,
    ie public listings.
    """

    search: Optional[str] = None
    """ Case-insensitive substring of the file name. """
    media_types: tuple[str, ...] = ()
    """ Any of these. Entries ending in '/' or '/*' are prefixes, eg 'image/'. """
    min_size: Optional[int] = None
    max_size: Optional[int] = None
    tags: tuple[str, ...] = ()
    """ The file must carry all of these tags. """
    uploaded_from: Optional[datetime] = None
    uploaded_to: Optional[datetime] = None
    folder_id: Optional[UUID] = None
    uploader: Optional[str] = None
    """ Substring of the owner's name or email. """
    uploader_id: Optional[UUID] = None

    def where(self, with_owners: bool = False) -> list[ColumnElement[bool]]:
        """SQLAlchemy clauses for the filter over ``files`` joined with ``file_blobs``.

        If ``with_owners`` is set, the query also joins ``owners`` and the uploader
        filters are included; otherwise they are ignored.
        """
        clauses: list[ColumnElement[bool]] = []
        if self.search:
            clauses.append(
                files.c.filename_normalized.contains(
                    normalize_name(self.search), autoescape=True
                )
            )
        entries = [m for m in self.media_types if m and m.strip()]
        if entries:
            media_type = func.lower(
                func.coalesce(files.c.mime_declared, blobs.c.mime_detected)
            )
            clauses.append(or_(*[_media_type_clause(media_type, m) for m in entries]))
        if self.min_size is not None:
            clauses.append(files.c.size_bytes_original >= self.min_size)
        if self.max_size is not None:
            clauses.append(files.c.size_bytes_original <= self.max_size)
        for tag in clean_tags(self.tags):
            clauses.append(
                files.c.id.in_(
                    select(file_tags.c.file_id).where(file_tags.c.tag == tag)
                )
            )
        if self.uploaded_from is not None:
            clauses.append(files.c.uploaded_at >= self.uploaded_from)
        if self.uploaded_to is not None:
            clauses.append(files.c.uploaded_at <= self.uploaded_to)
        if self.folder_id is not None:
            clauses.append(files.c.folder_id == self.folder_id)
        if with_owners:
            if self.uploader:
                pattern = self.uploader.strip().lower()
                clauses.append(
                    or_(
                        func.lower(owners.c.name).contains(pattern, autoescape=True),
                        func.lower(owners.c.email).contains(pattern, autoescape=True),
                    )
                )
            if self.uploader_id is not None:
                clauses.append(owners.c.id == self.uploader_id)
        return clauses
