from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)

from ..util import utcnow

metadata = MetaData()


class UtcDateTime(TypeDecorator):
    """Timezone aware datetimes, stored and read back in UTC.

    SQLite keeps no offset, so values are converted to UTC on the way in.
    Naive datetimes are taken to be UTC already.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class TargetType(str, Enum):
    FILE = "FILE"
    FOLDER = "FOLDER"


class Visibility(str, Enum):
    PRIVATE = "PRIVATE"
    PUBLIC = "PUBLIC"


owners = Table(
    "owners",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("email", String(320), nullable=False, unique=True),
    Column("name", String(255), nullable=True),
    Column("quota_bytes", BigInteger, nullable=False),
    Column("created_at", UtcDateTime(), nullable=False, default=utcnow),
)

blobs = Table(
    "file_blobs",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("digest", String(64), nullable=False, unique=True),
    Column("size_bytes", BigInteger, nullable=False),
    Column("mime_detected", String(255), nullable=False),
    Column("storage_key", Text, nullable=False),
    Column("ref_count", Integer, nullable=False, default=1),
    Column("created_at", UtcDateTime(), nullable=False, default=utcnow),
)

folders = Table(
    "folders",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column(
        "owner_id", Uuid, ForeignKey("owners.id", ondelete="CASCADE"), nullable=False
    ),
    Column(
        "parent_id", Uuid, ForeignKey("folders.id", ondelete="CASCADE"), nullable=True
    ),
    Column("name", String(255), nullable=False),
    Column("name_normalized", String(255), nullable=False),
    Column("created_at", UtcDateTime(), nullable=False, default=utcnow),
    Column("updated_at", UtcDateTime(), nullable=False, default=utcnow),
    Index("idx_folders_owner", "owner_id"),
    UniqueConstraint(
        "owner_id", "parent_id", "name_normalized", name="uq_folders_owner_parent_name"
    ),
    Index("idx_folders_parent", "parent_id"),
)

files = Table(
    "files",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column(
        "owner_id", Uuid, ForeignKey("owners.id", ondelete="CASCADE"), nullable=False
    ),
    # soft deleted files let go of their blob so that it can be purged
    Column(
        "blob_id", Uuid, ForeignKey("file_blobs.id", ondelete="SET NULL"), nullable=True
    ),
    Column(
        "folder_id", Uuid, ForeignKey("folders.id", ondelete="SET NULL"), nullable=True
    ),
    Column("filename_original", Text, nullable=False),
    Column("filename_normalized", Text, nullable=False),
    Column("mime_declared", String(255), nullable=True),
    Column("size_bytes_original", BigInteger, nullable=False),
    Column("uploaded_at", UtcDateTime(), nullable=False, default=utcnow),
    Column("is_deleted", Boolean, nullable=False, default=False),
    Column("download_count", BigInteger, nullable=False, default=0),
    Index("idx_files_owner", "owner_id", "is_deleted"),
    Index("idx_files_name", "filename_normalized"),
    Index("idx_files_uploaded_at", "uploaded_at"),
    Index("idx_files_size", "size_bytes_original"),
    Index("idx_files_folder", "folder_id"),
)

file_tags = Table(
    "file_tags",
    metadata,
    Column(
        "file_id",
        Uuid,
        ForeignKey("files.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("tag", String(255), primary_key=True),
    Index("idx_file_tags_tag", "tag"),
)

shares = Table(
    "shares",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column(
        "target_type",
        SqlEnum(TargetType, name="share_target_type", native_enum=False),
        nullable=False,
    ),
    Column("target_id", Uuid, nullable=False),
    Column(
        "visibility",
        SqlEnum(Visibility, name="share_visibility", native_enum=False),
        nullable=False,
        default=Visibility.PRIVATE,
    ),
    Column("token", String(255), nullable=True, unique=True),
    Column("expires_at", UtcDateTime(), nullable=True),
    UniqueConstraint("target_type", "target_id", name="shares_target_unique"),
)


@dataclass
class Owner:
    id: UUID
    email: str
    name: Optional[str]
    quota_bytes: int
    """ Storage ceiling in bytes; zero or less means unlimited. """
    created_at: Optional[datetime] = None

    @classmethod
    def of_row(cls, row: Mapping[str, Any], prefix: str = "") -> "Owner":
        return cls(
            id=row[prefix + "id"],
            email=row[prefix + "email"],
            name=row[prefix + "name"],
            quota_bytes=row[prefix + "quota_bytes"],
            created_at=row[prefix + "created_at"],
        )


@dataclass
class Blob:
    id: UUID
    digest: str
    size_bytes: int
    mime_detected: str
    storage_key: str
    ref_count: int
    created_at: Optional[datetime] = None

    @classmethod
    def of_row(cls, row: Mapping[str, Any], prefix: str = "") -> "Blob":
        return cls(
            id=row[prefix + "id"],
            digest=row[prefix + "digest"],
            size_bytes=row[prefix + "size_bytes"],
            mime_detected=row[prefix + "mime_detected"],
            storage_key=row[prefix + "storage_key"],
            ref_count=row[prefix + "ref_count"],
            created_at=row[prefix + "created_at"],
        )


@dataclass
class FileRecord:
    id: UUID
    owner_id: UUID
    blob_id: Optional[UUID]
    filename_original: str
    filename_normalized: str
    mime_declared: Optional[str]
    size_bytes_original: int
    """ Copied from the blob at upload time. """
    uploaded_at: datetime
    is_deleted: bool = False
    download_count: int = 0
    folder_id: Optional[UUID] = None
    tags: list[str] = field(default_factory=list)

    @classmethod
    def of_row(cls, row: Mapping[str, Any], tags=()) -> "FileRecord":
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            blob_id=row["blob_id"],
            filename_original=row["filename_original"],
            filename_normalized=row["filename_normalized"],
            mime_declared=row["mime_declared"],
            size_bytes_original=row["size_bytes_original"],
            uploaded_at=row["uploaded_at"],
            is_deleted=row["is_deleted"],
            download_count=row["download_count"],
            folder_id=row["folder_id"],
            tags=sorted(tags),
        )


@dataclass
class FileWithBlob:
    file: FileRecord
    blob: Blob
    owner: Optional["Owner"] = None
    """ Only filled in by public listings. """
    share: Optional["Share"] = None
    """ Filled in when the file was found through its share. """


@dataclass
class Share:
    id: UUID
    target_type: TargetType
    target_id: UUID
    visibility: Visibility
    token: Optional[str]
    expires_at: Optional[datetime]

    @classmethod
    def of_row(cls, row: Mapping[str, Any], prefix: str = "") -> "Share":
        return cls(
            id=row[prefix + "id"],
            target_type=TargetType(row[prefix + "target_type"]),
            target_id=row[prefix + "target_id"],
            visibility=Visibility(row[prefix + "visibility"]),
            token=row[prefix + "token"],
            expires_at=row[prefix + "expires_at"],
        )


@dataclass
class Folder:
    id: UUID
    owner_id: UUID
    parent_id: Optional[UUID]
    name: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def of_row(cls, row: Mapping[str, Any]) -> "Folder":
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            parent_id=row["parent_id"],
            name=row["name"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
