from typing import Optional

from ..util import human_size
from .abstract import AbstractBlobStore, BlobNotFoundError, StoredObject


class InMemBlobStore(AbstractBlobStore):
    objects: dict[str, StoredObject]
    max_size: int | None

    def __init__(self, max_size: Optional[int] = None):
        self.max_size = max_size
        self.objects = {}

    @property
    def id(self):
        return f"mem://{id(self):x}"

    def get(self, key: str) -> StoredObject:
        if key not in self.objects:
            raise BlobNotFoundError(f"No blob at {key}")
        return self.objects[key]

    def put(self, key: str, data: bytes, content_type=None) -> None:
        if self.max_size is not None and len(data) > self.max_size:
            raise ValueError(
                f"Adding an in-mem blob with size {human_size(len(data))} is too large (max is set to {human_size(self.max_size)})."
            )
        self.objects[key] = StoredObject(data=bytes(data), content_type=content_type)

    def has(self, key: str) -> bool:
        return key in self.objects

    def delete(self, key: str) -> None:
        if key in self.objects:
            del self.objects[key]

    def iter(self):
        yield from list(self.objects.keys())

    def clear(self):
        self.objects.clear()
