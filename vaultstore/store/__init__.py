from .abstract import *
from .localfile import LocalFileBlobStore
from .mem import InMemBlobStore
from .s3 import S3BlobStore
