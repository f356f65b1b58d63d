from .schema import (
    Blob,
    FileRecord,
    FileWithBlob,
    Folder,
    Owner,
    Share,
    TargetType,
    Visibility,
    metadata,
)
from .filters import FileFilter, normalize_name
from .shares import new_share_token
from .database import Catalog, create_catalog_engine
