from datetime import datetime
from typing import Optional
from urllib.parse import quote
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Response, UploadFile
from pydantic import BaseModel

from vaultstore.__about__ import __version__
from vaultstore.catalog import FileFilter, FileWithBlob, Folder, Owner, Share, Visibility
from vaultstore.service import DownloadedFile, UploadInput
from vaultstore.util import human_size, utcnow
from .authentication import get_owner
from .persist import VaultApiDatabase as Db, database

router = APIRouter(prefix="/api")


class FileOut(BaseModel):
    id: UUID
    filename: str
    media_type: str
    declared_type: Optional[str] = None
    size_bytes: int
    digest: str
    uploaded_at: datetime
    download_count: int
    tags: list[str]
    folder_id: Optional[UUID] = None
    uploader: Optional[str] = None
    share_token: Optional[str] = None

    @classmethod
    def of_item(cls, item: FileWithBlob) -> "FileOut":
        uploader = None
        if item.owner is not None:
            uploader = item.owner.name or item.owner.email
        return cls(
            id=item.file.id,
            filename=item.file.filename_original,
            media_type=item.blob.mime_detected,
            declared_type=item.file.mime_declared,
            size_bytes=item.file.size_bytes_original,
            digest=item.blob.digest,
            uploaded_at=item.file.uploaded_at,
            download_count=item.file.download_count,
            tags=item.file.tags,
            folder_id=item.file.folder_id,
            uploader=uploader,
            share_token=item.share.token if item.share is not None else None,
        )


class FileList(BaseModel):
    files: list[FileOut]
    total: int
    offset: int


class UploadItemOut(BaseModel):
    filename: str
    ok: bool
    is_new: bool = False
    file_id: Optional[UUID] = None
    digest: Optional[str] = None
    ref_count: Optional[int] = None
    error: Optional[str] = None


class ShareRequest(BaseModel):
    visibility: Visibility = Visibility.PRIVATE
    expires_at: Optional[datetime] = None


class ShareOut(BaseModel):
    id: UUID
    target_type: str
    target_id: UUID
    visibility: Visibility
    token: Optional[str]
    expires_at: Optional[datetime]

    @classmethod
    def of_share(cls, share: Share) -> "ShareOut":
        return cls(
            id=share.id,
            target_type=share.target_type.value,
            target_id=share.target_id,
            visibility=share.visibility,
            token=share.token,
            expires_at=share.expires_at,
        )


class FolderRequest(BaseModel):
    name: str
    parent_id: Optional[UUID] = None


class FolderRename(BaseModel):
    name: str


class FolderOut(BaseModel):
    id: UUID
    name: str
    parent_id: Optional[UUID]

    @classmethod
    def of_folder(cls, folder: Folder) -> "FolderOut":
        return cls(id=folder.id, name=folder.name, parent_id=folder.parent_id)


def content_disposition(filename: str) -> str:
    """RFC 6266 attachment header with an ASCII fallback and the UTF-8 name."""
    fallback = filename.encode("ascii", "replace").decode("ascii")
    fallback = fallback.replace("\\", "_").replace('"', "_").replace("?", "_")
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


def download_response(d: Optional[DownloadedFile]) -> Response:
    if d is None:
        raise HTTPException(status_code=404, detail="file not found")
    return Response(
        content=d.data,
        media_type=d.content_type,
        headers={
            "Content-Disposition": content_disposition(d.filename),
            "Cache-Control": "no-store",
        },
    )


def file_filter(
    search: Optional[str] = None,
    media_type: list[str] = Query(default=[]),
    min_size: Optional[int] = None,
    max_size: Optional[int] = None,
    tag: list[str] = Query(default=[]),
    uploaded_from: Optional[datetime] = None,
    uploaded_to: Optional[datetime] = None,
    folder_id: Optional[UUID] = None,
    uploader: Optional[str] = None,
    uploader_id: Optional[UUID] = None,
) -> FileFilter:
    return FileFilter(
        search=search,
        media_types=tuple(media_type),
        min_size=min_size,
        max_size=max_size,
        tags=tuple(tag),
        uploaded_from=uploaded_from,
        uploaded_to=uploaded_to,
        folder_id=folder_id,
        uploader=uploader,
        uploader_id=uploader_id,
    )


@router.get("/status")
def handle_get_status():
    """Get the status of the server."""
    return {
        "status": "ok",
        "time": utcnow().isoformat(),
        "version": __version__,
    }


@router.get("/user")
def handle_get_user(owner: Owner = Depends(get_owner), db: Db = Depends(database)):
    """Get the current owner and their usage."""
    stats = db.service.storage_stats(owner.id)
    return {
        "id": owner.id,
        "email": owner.email,
        "name": owner.name,
        "usage": stats.original,
        "quota": owner.quota_bytes,
        "usage_h": human_size(stats.original),
    }


@router.get("/stats")
def handle_get_stats(owner: Owner = Depends(get_owner), db: Db = Depends(database)):
    stats = db.service.storage_stats(owner.id)
    return {
        "original_bytes": stats.original,
        "dedup_bytes": stats.dedup,
        "savings_bytes": stats.savings,
        "savings_percent": stats.savings_percent,
    }


@router.post("/files")
def upload_files(
    files: list[UploadFile] = File(...),
    tags: Optional[str] = Form(default=None),
    folder_id: Optional[UUID] = Form(default=None),
    owner: Owner = Depends(get_owner),
    db: Db = Depends(database),
):
    """Upload one or more files. Tags are comma separated and apply to every file in the batch.

    Refused files are reported per item; the request only fails as a whole if every file was refused.
    """
    tag_list = [t for t in (tags or "").split(",") if t.strip()]
    inputs = [
        UploadInput(
            filename=f.filename or "",
            tape=f.file,
            declared_type=f.content_type,
            tags=tag_list,
            folder_id=folder_id,
        )
        for f in files
    ]
    results = db.service.upload(owner, inputs)
    if results and all(not r.ok for r in results):
        assert results[0].error is not None
        raise results[0].error
    return {
        "results": [
            UploadItemOut(
                filename=r.filename,
                ok=r.ok,
                is_new=r.is_new,
                file_id=r.file.id if r.file else None,
                digest=r.blob.digest if r.blob else None,
                ref_count=r.blob.ref_count if r.blob else None,
                error=str(r.error) if r.error else None,
            )
            for r in results
        ]
    }


@router.get("/files")
def list_files(
    offset: int = 0,
    filter: FileFilter = Depends(file_filter),
    owner: Owner = Depends(get_owner),
    db: Db = Depends(database),
) -> FileList:
    items, total = db.service.list_files(owner.id, filter, offset=offset)
    return FileList(files=[FileOut.of_item(i) for i in items], total=total, offset=offset)


@router.get("/files/{file_id}")
def get_file(file_id: UUID, owner: Owner = Depends(get_owner), db: Db = Depends(database)) -> FileOut:
    item = db.service.get_file(file_id, owner.id)
    if item is None:
        raise HTTPException(status_code=404, detail="file not found")
    return FileOut.of_item(item)


@router.delete("/files/{file_id}")
def delete_file(file_id: UUID, owner: Owner = Depends(get_owner), db: Db = Depends(database)):
    record = db.service.delete(file_id, owner.id)
    if record is None:
        raise HTTPException(status_code=404, detail="file not found")
    return {"deleted": True, "id": record.id}


@router.get("/files/{file_id}/download")
def download_file(file_id: UUID, owner: Owner = Depends(get_owner), db: Db = Depends(database)):
    return download_response(db.service.download(file_id, owner.id))


@router.get("/files/{file_id}/share")
def get_share(file_id: UUID, owner: Owner = Depends(get_owner), db: Db = Depends(database)) -> ShareOut:
    share = db.service.get_share(file_id, owner.id)
    if share is None:
        raise HTTPException(status_code=404, detail="share not found")
    return ShareOut.of_share(share)


@router.put("/files/{file_id}/share")
def put_share(
    file_id: UUID,
    body: ShareRequest,
    owner: Owner = Depends(get_owner),
    db: Db = Depends(database),
) -> ShareOut:
    share = db.service.share(file_id, owner.id, body.visibility, expires_at=body.expires_at)
    if share is None:
        raise HTTPException(status_code=404, detail="file not found")
    return ShareOut.of_share(share)


@router.delete("/files/{file_id}/share")
def delete_share(file_id: UUID, owner: Owner = Depends(get_owner), db: Db = Depends(database)):
    if not db.service.revoke_share(file_id, owner.id):
        raise HTTPException(status_code=404, detail="share not found")
    return {"deleted": True}


@router.get("/public/files")
def list_public_files(
    offset: int = 0,
    filter: FileFilter = Depends(file_filter),
    db: Db = Depends(database),
) -> FileList:
    items, total = db.service.list_public(filter, offset=offset)
    return FileList(files=[FileOut.of_item(i) for i in items], total=total, offset=offset)


@router.get("/public/files/{file_id}/download")
def download_public_file(file_id: UUID, db: Db = Depends(database)):
    return download_response(db.service.download_public(file_id))


@router.get("/shares/{token}/download")
def download_shared_file(token: str, db: Db = Depends(database)):
    return download_response(db.service.download_shared(token))


@router.get("/shares/{token}/folder")
def open_shared_folder(token: str, db: Db = Depends(database)):
    opened = db.service.open_shared_folder(token)
    if opened is None:
        raise HTTPException(status_code=404, detail="folder not found")
    folder, items = opened
    return {
        "folder": FolderOut.of_folder(folder),
        "files": [FileOut.of_item(i) for i in items],
    }


@router.post("/folders")
def create_folder(body: FolderRequest, owner: Owner = Depends(get_owner), db: Db = Depends(database)) -> FolderOut:
    return FolderOut.of_folder(db.service.create_folder(owner.id, body.name, body.parent_id))


@router.get("/folders")
def list_folders(
    parent_id: Optional[UUID] = None,
    owner: Owner = Depends(get_owner),
    db: Db = Depends(database),
) -> list[FolderOut]:
    return [FolderOut.of_folder(f) for f in db.service.list_folders(owner.id, parent_id)]


@router.patch("/folders/{folder_id}")
def rename_folder(
    folder_id: UUID,
    body: FolderRename,
    owner: Owner = Depends(get_owner),
    db: Db = Depends(database),
) -> FolderOut:
    folder = db.service.rename_folder(folder_id, owner.id, body.name)
    if folder is None:
        raise HTTPException(status_code=404, detail="folder not found")
    return FolderOut.of_folder(folder)


@router.delete("/folders/{folder_id}")
def delete_folder(folder_id: UUID, owner: Owner = Depends(get_owner), db: Db = Depends(database)):
    if not db.service.delete_folder(folder_id, owner.id):
        raise HTTPException(status_code=404, detail="folder not found")
    return {"deleted": True}


@router.put("/folders/{folder_id}/share")
def share_folder(
    folder_id: UUID,
    body: ShareRequest,
    owner: Owner = Depends(get_owner),
    db: Db = Depends(database),
) -> ShareOut:
    share = db.service.share_folder(folder_id, owner.id, body.visibility, expires_at=body.expires_at)
    if share is None:
        raise HTTPException(status_code=404, detail="folder not found")
    return ShareOut.of_share(share)
