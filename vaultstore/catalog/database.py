from contextlib import contextmanager
import logging
from typing import Iterator

from sqlalchemy import Connection, Engine, create_engine, event

from .schema import metadata
from .blobs import BlobCatalog
from .files import FileCatalog
from .folders import FolderCatalog
from .owners import OwnerCatalog
from .shares import ShareCatalog

logger = logging.getLogger("vaultstore")


def _configure_sqlite(engine: Engine):
    """Make pysqlite behave like a real transactional database.

    pysqlite defers BEGIN and ignores foreign keys by default; we want every catalog
    transaction to start with a write lock so that concurrent writers queue on the
    busy timeout instead of deadlocking on a lock upgrade.
    ref: https://docs.sqlalchemy.org/en/20/dialects/sqlite.html#serializable-isolation-savepoints-transactional-ddl
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn: Connection):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_catalog_engine(url: str, echo: bool = False) -> Engine:
    """Create the SQLAlchemy engine for the catalog.

    ``postgresql://`` urls are routed to psycopg 3.
    """
    if url.startswith("postgresql://") or url.startswith("postgres://"):
        url = "postgresql+psycopg://" + url.split("://", 1)[1]
    if url.startswith("sqlite"):
        engine = create_engine(
            url, echo=echo, connect_args={"check_same_thread": False, "timeout": 30}
        )
        _configure_sqlite(engine)
    else:
        engine = create_engine(url, echo=echo, pool_pre_ping=True)
    logger.debug(f"Catalog engine for {engine.url!r}")
    return engine


class Catalog:
    """All of the relational state of the vault.

    Catalog operations take an open connection so that the caller decides what goes in a transaction.
    """

    engine: Engine
    blobs: BlobCatalog
    files: FileCatalog
    shares: ShareCatalog
    owners: OwnerCatalog
    folders: FolderCatalog

    def __init__(self, engine: Engine):
        self.engine = engine
        self.blobs = BlobCatalog()
        self.files = FileCatalog()
        self.shares = ShareCatalog()
        self.owners = OwnerCatalog()
        self.folders = FolderCatalog()

    @classmethod
    def of_url(cls, url: str, echo: bool = False):
        return cls(create_catalog_engine(url, echo=echo))

    def create_tables(self):
        metadata.create_all(self.engine)

    def drop_tables(self):
        metadata.drop_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """A short transaction: committed on exit, rolled back if the block raises."""
        with self.engine.begin() as conn:
            yield conn

    def dispose(self):
        self.engine.dispose()
