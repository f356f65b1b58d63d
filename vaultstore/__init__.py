# SPDX-FileCopyrightText: 2023-present E.W.Ayers <contact@edayers.com>
#
# SPDX-License-Identifier: MIT

from .__about__ import __version__
from .errors import *
from .hasher import Fingerprint, fingerprint, storage_key
from .store import AbstractBlobStore, StoredObject
from .catalog import FileFilter, Blob, FileRecord, FileWithBlob, Share, Owner, Folder
from .service import (
    VaultService,
    UploadInput,
    UploadResult,
    DownloadedFile,
    StorageStats,
)
