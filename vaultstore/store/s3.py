from typing import Any, Optional

from botocore.exceptions import ClientError

from .abstract import AbstractBlobStore, BlobNotFoundError, StoredObject

"""
Example client setup:

cfg = Settings.current()

client = boto3.client('s3',
    aws_access_key_id=cfg.aws_access_key_id,
    aws_secret_access_key=cfg.aws_secret_access_key.get_secret_value(),
)

"""

_MISSING = {"404", "NoSuchKey", "NotFound"}


def _is_missing(e: ClientError) -> bool:
    return e.response.get("Error", {}).get("Code") in _MISSING


class S3BlobStore(AbstractBlobStore):
    client: Any

    def __init__(self, bucket_name, client):
        self.client = client
        self.bucket_name = bucket_name

    @property
    def id(self):
        return f"s3://{self.bucket_name}"

    def get(self, key: str) -> StoredObject:
        try:
            obj = self.client.get_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            if _is_missing(e):
                raise BlobNotFoundError(f"No blob {key}") from e
            raise
        with obj["Body"] as body:
            data = body.read()
        return StoredObject(data=data, content_type=obj.get("ContentType"))

    def put(self, key: str, data: bytes, content_type: Optional[str] = None):
        kwargs = {}
        if content_type:
            kwargs["ContentType"] = content_type
        self.client.put_object(
            Bucket=self.bucket_name,
            Key=key,
            Body=data,
            ContentLength=len(data),
            **kwargs,
        )

    def delete(self, key: str):
        self.client.delete_object(Bucket=self.bucket_name, Key=key)

    def has(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            if _is_missing(e):
                return False
            raise
        return True

    def iter(self):
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket_name):
            for obj in page.get("Contents", []):
                yield obj["Key"]
