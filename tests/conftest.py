from pathlib import Path

import pytest

from vaultstore.catalog import Catalog, Owner
from vaultstore.service import VaultService
from vaultstore.store import InMemBlobStore


@pytest.fixture()
def catalog(tmp_path: Path):
    c = Catalog.of_url(f"sqlite:///{tmp_path / 'vault.db'}")
    c.create_tables()
    yield c
    c.dispose()


@pytest.fixture()
def store():
    return InMemBlobStore()


@pytest.fixture()
def service(catalog: Catalog, store: InMemBlobStore):
    return VaultService(catalog, store, max_upload_bytes=1024)


def make_owner(catalog: Catalog, email: str, quota: int = 10_000, name=None) -> Owner:
    with catalog.transaction() as conn:
        return catalog.owners.upsert(conn, email, name=name, quota_bytes=quota)


@pytest.fixture()
def alice(catalog: Catalog):
    return make_owner(catalog, "alice@example.com", name="Alice")


@pytest.fixture()
def bob(catalog: Catalog):
    return make_owner(catalog, "bob@example.com", name="Bob")
