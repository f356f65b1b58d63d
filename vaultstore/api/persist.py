from pathlib import Path
from typing import Callable, Optional
import logging

from sqlalchemy import make_url

from vaultstore.catalog import Catalog
from vaultstore.service import VaultService
from vaultstore.settings import Settings
from vaultstore.store import AbstractBlobStore, InMemBlobStore, LocalFileBlobStore

logger = logging.getLogger("vaultstore")


def make_blobstore(cfg: Settings, subscriptions: list[Callable[[], None]]) -> AbstractBlobStore:
    if cfg.blobstore_mode == "s3":
        import boto3
        from vaultstore.store.s3 import S3BlobStore

        client = boto3.client(
            "s3",
            endpoint_url=cfg.s3_endpoint_url,
            region_name=cfg.aws_region,
            aws_access_key_id=cfg.aws_access_key_id,
            aws_secret_access_key=(
                cfg.aws_secret_access_key.get_secret_value()
                if cfg.aws_secret_access_key is not None
                else None
            ),
        )
        subscriptions.append(client.close)
        return S3BlobStore(bucket_name=cfg.s3_bucket, client=client)
    elif cfg.blobstore_mode == "memory":
        return InMemBlobStore()
    else:
        return LocalFileBlobStore(cfg.local_data_path / "blobs")


class VaultApiDatabase:
    """Everything the API needs that outlives a request: settings, catalog, blob store and the service over them."""

    settings: Settings
    catalog: Catalog
    blobstore: AbstractBlobStore
    service: VaultService
    subscriptions: list[Callable[[], None]]

    def __init__(self):
        self.subscriptions = []

    @property
    def is_connected(self):
        return hasattr(self, "service")

    def connect(self, settings: Optional[Settings] = None):
        cfg = settings or Settings.current()
        self.settings = cfg
        url = make_url(cfg.database_url)
        if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        self.catalog = Catalog.of_url(cfg.database_url, echo=cfg.echo_sql)
        self.catalog.create_tables()
        self.subscriptions.append(self.catalog.dispose)
        self.blobstore = make_blobstore(cfg, self.subscriptions)
        logger.info(f"Connected to {self.catalog.engine.url!r} with blob store {self.blobstore.id}")
        self.service = VaultService(
            self.catalog,
            self.blobstore,
            max_upload_bytes=cfg.max_upload_bytes,
            page_size=cfg.list_page_size,
            share_token_bytes=cfg.share_token_bytes,
            default_share_ttl=cfg.share_default_ttl,
        )

    def disconnect(self):
        for s in self.subscriptions:
            s()
        self.subscriptions = []

    async def __call__(self):
        # reference: https://fastapi.tiangolo.com/advanced/advanced-dependencies/
        yield self


database = VaultApiDatabase()
