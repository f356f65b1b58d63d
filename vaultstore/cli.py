import logging
from typing import Optional

import typer

from vaultstore.__about__ import __version__ as version
from vaultstore.api.authentication import generate_jwt
from vaultstore.api.persist import VaultApiDatabase
from vaultstore.console import console, decorate, logger, setup_logging, user_info, user_warning
from vaultstore.settings import Settings
from vaultstore.util import human_size

app = typer.Typer()
""" Entrypoint for the vault admin CLI. """


def version_callback(value: bool):
    if value:
        typer.echo(version)
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs."),
):
    setup_logging(logging.DEBUG if verbose else logging.INFO)


def connect() -> VaultApiDatabase:
    db = VaultApiDatabase()
    db.connect(Settings.current())
    return db


def _owner_or_exit(db: VaultApiDatabase, email: str):
    with db.catalog.transaction() as conn:
        owner = db.catalog.owners.get_by_email(conn, email)
    if owner is None:
        user_warning(f"no owner with email {email}")
        raise typer.Exit(code=1)
    return owner


@app.command()
def init_db():
    """Create the catalog tables if they don't exist."""
    db = connect()
    try:
        user_info(f"catalog ready at {db.catalog.engine.url!r}")
    finally:
        db.disconnect()


@app.command()
def add_owner(
    email: str,
    name: Optional[str] = typer.Option(None, "--name"),
    quota: Optional[int] = typer.Option(None, "--quota", help="Quota in bytes, 0 for unlimited."),
):
    """Register an owner, or update the name and quota of an existing one."""
    db = connect()
    try:
        with db.catalog.transaction() as conn:
            owner = db.catalog.owners.upsert(
                conn,
                email,
                name=name,
                quota_bytes=quota,
                default_quota_bytes=db.settings.default_quota_bytes,
            )
        user_info(f"owner {owner.email} has id {decorate(str(owner.id), 'green')}")
        print(owner.id)
    finally:
        db.disconnect()


@app.command()
def set_quota(email: str, quota: int):
    """Set an owner's quota in bytes. Zero or less means unlimited."""
    db = connect()
    try:
        owner = _owner_or_exit(db, email)
        with db.catalog.transaction() as conn:
            db.catalog.owners.set_quota(conn, owner.id, quota)
        shown = human_size(quota) if quota > 0 else "unlimited"
        user_info(f"quota of {email} is now {shown}")
    finally:
        db.disconnect()


@app.command()
def stats(email: str):
    """Prints an owner's storage usage and how much deduplication saves them."""
    db = connect()
    try:
        owner = _owner_or_exit(db, email)
        s = db.service.storage_stats(owner.id)
        print(f"owner: {owner.email} ({owner.id})")
        if owner.quota_bytes > 0:
            print(
                f"usage: {human_size(s.original)} out of {human_size(owner.quota_bytes)} ({s.original / owner.quota_bytes * 100:.2f}%)"
            )
        else:
            print(f"usage: {human_size(s.original)}")
        print(f"stored: {human_size(s.dedup)}")
        print(f"saved by deduplication: {human_size(s.savings)} ({s.savings_percent:.1f}%)")
    finally:
        db.disconnect()


@app.command()
def token(email: str):
    """Issue a bearer token for the owner. Prints it on stdout."""
    db = connect()
    try:
        owner = _owner_or_exit(db, email)
        print(generate_jwt(owner.id, db.settings))
    finally:
        db.disconnect()


@app.command()
def sweep(dry_run: bool = typer.Option(False, "--dry-run")):
    """Delete stored bytes that no blob in the catalog claims."""
    db = connect()
    try:
        keys = db.service.sweep_orphans(dry_run=dry_run)
        for k in keys:
            console.print(k)
        verb = "would delete" if dry_run else "deleted"
        user_info(f"{verb} {len(keys)} orphaned blobs")
    finally:
        db.disconnect()


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(3000, "--port"),
):
    """Run the HTTP API with uvicorn."""
    import uvicorn

    logger.info(f"serving on http://{host}:{port}")
    uvicorn.run("vaultstore.api.app:app", host=host, port=port)


if __name__ == "__main__":
    app()
