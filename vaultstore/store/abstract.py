from dataclasses import dataclass
from typing import Iterable, Optional

from ..errors import BlobNotFoundError

__all__ = ["AbstractBlobStore", "StoredObject", "BlobNotFoundError"]


@dataclass
class StoredObject:
    data: bytes
    content_type: Optional[str] = None
    """ The content type the store reports for the object, if it keeps one. """


class AbstractBlobStore:
    """Physical storage for blob bytes.

    Keys come from `vaultstore.hasher.storage_key` so they are a pure function of the digest.
    Objects are immutable once written; putting the same key twice must be harmless.
    """

    @property
    def id(self) -> str:
        """Unique resource identifier for the blob store."""
        raise NotImplementedError()

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        raise NotImplementedError()

    def get(self, key: str) -> StoredObject:
        """Fetch the object stored at key.

        Raises:
            BlobNotFoundError: nothing is stored at key.
        """
        raise NotImplementedError()

    def delete(self, key: str) -> None:
        """Delete the object at key. Deleting a missing key is not an error."""
        raise NotImplementedError()

    def has(self, key: str) -> bool:
        raise NotImplementedError()

    def iter(self) -> Iterable[str]:
        """Iterate over every key in the store."""
        raise NotImplementedError()

    def clear(self):
        for key in list(self.iter()):
            self.delete(key)
