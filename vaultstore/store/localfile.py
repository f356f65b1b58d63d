import os
from pathlib import Path
from stat import S_IREAD, S_IRGRP
import tempfile
from typing import Optional

import logging

from .abstract import AbstractBlobStore, BlobNotFoundError, StoredObject

logger = logging.getLogger("vaultstore")

TYPE_SUFFIX = ".content-type"


class LocalFileBlobStore(AbstractBlobStore):
    """Blobs stored as read-only files under a root directory.

    The key's path segments become directories. The content type, if any,
    lives next to the blob in a small sidecar file.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    @property
    def id(self):
        return self.root.resolve().as_uri()

    def path(self, key: str) -> Path:
        """Gets the place where the blob would be stored. Note that this doesn't guarantee existence."""
        parts = [p for p in key.split("/") if p not in ("", ".", "..")]
        if not parts:
            raise ValueError(f"invalid blob key {key!r}")
        return self.root.joinpath(*parts)

    def _type_path(self, key: str) -> Path:
        p = self.path(key)
        return p.with_name(p.name + TYPE_SUFFIX)

    def iter(self):
        """Iterate all of the keys of the blobs that exist on disk."""
        for p in self.root.rglob("*"):
            if p.is_file() and not p.name.endswith(TYPE_SUFFIX) and not p.name.startswith("."):
                yield p.relative_to(self.root).as_posix()

    def has(self, key: str) -> bool:
        return self.path(key).exists()

    def get(self, key: str) -> StoredObject:
        p = self.path(key)
        if not p.exists():
            raise BlobNotFoundError(f"No blob {key}")
        data = p.read_bytes()
        tp = self._type_path(key)
        content_type = tp.read_text(encoding="utf-8").strip() if tp.exists() else None
        return StoredObject(data=data, content_type=content_type or None)

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        p = self.path(key)
        if p.exists():
            # blobs are immutable, same key means same bytes.
            return
        p.parent.mkdir(parents=True, exist_ok=True)
        if content_type:
            self._type_path(key).write_text(content_type, encoding="utf-8")
        fd, tmp = tempfile.mkstemp(dir=p.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            # blobs are read only.
            # ref: https://stackoverflow.com/a/28492823/352201
            os.chmod(tmp, S_IREAD | S_IRGRP)
            os.replace(tmp, p)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        logger.debug(f"Wrote local blob {key}")

    def delete(self, key: str):
        p = self.path(key)
        self._type_path(key).unlink(missing_ok=True)
        if p.exists():
            p.unlink()
            logger.debug(f"Deleted local blob {key}")
