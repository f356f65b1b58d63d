__all__ = [
    "VaultError",
    "ValidationError",
    "FileTooLargeError",
    "QuotaExceededError",
    "FolderConflictError",
    "DuplicateBlobError",
    "ConflictError",
    "ReferenceCountError",
    "BlobNotFoundError",
]


class VaultError(Exception):
    """Base class for errors raised by the vault."""

    pass


class ValidationError(VaultError):
    """The request was understood but refused.

    These are the only errors that are expected to be shown to the owner.
    During a batch upload they are reported per file and the rest of the batch carries on.
    """

    pass


class FileTooLargeError(ValidationError):
    def __init__(self, filename: str, limit: int):
        super().__init__(f"file {filename} exceeds max upload size of {limit} bytes")
        self.filename = filename
        self.limit = limit


class QuotaExceededError(ValidationError):
    def __init__(self, filename: str, usage: int, size: int, quota: int):
        super().__init__(
            f"storage quota exceeded: {filename} needs {size} bytes, {usage} of {quota} bytes used"
        )
        self.filename = filename
        self.usage = usage
        self.size = size
        self.quota = quota


class FolderConflictError(ValidationError):
    pass


class DuplicateBlobError(VaultError):
    """Another request inserted the blob row for this digest first.

    Never shown to callers; the service retries the claim and increments the existing row.
    """

    def __init__(self, digest: str):
        super().__init__(f"blob {digest} already exists")
        self.digest = digest


class ConflictError(VaultError):
    pass


class ReferenceCountError(VaultError, AssertionError):
    """A blob reference count was about to go negative.

    The catalog should make this unreachable, so seeing it means the blob and file tables disagree.
    """

    pass


class BlobNotFoundError(VaultError, FileNotFoundError):
    pass
