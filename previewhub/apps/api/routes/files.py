from __future__ import annotations

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import Field

from previewhub.apps.api.deps import get_file_service, rate_limited
from previewhub.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from previewhub.apps.api.response import CamelModel, SuccessEnvelope, success_response
from previewhub.services.files import BulkFileWrite, FileSyncService
from previewhub.services.snapshots import export_snapshot, import_snapshot


router = APIRouter(
    prefix="/projects/{project_id}",
    tags=["files"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(rate_limited)],
)

_SNAPSHOT_MEDIA_TYPE = "application/gzip"


class UpsertFileRequest(CamelModel):
    content: str
    file_type: str | None = None
    expected_version: int | None = Field(default=None, ge=1)


class BulkFileEntry(CamelModel):
    path: str
    content: str | None = None
    file_type: str | None = None
    expected_version: int | None = Field(default=None, ge=1)
    action: Literal["update", "delete"] = "update"


class BulkFilesRequest(CamelModel):
    files: list[BulkFileEntry] = Field(max_length=500)


class FileWriteResponse(CamelModel):
    path: str
    version: int
    content_hash: str | None
    content: str | None = None


class FileResponse(CamelModel):
    path: str
    content: str | None
    content_hash: str | None
    file_type: str
    version: int
    deleted: bool
    updated_at: datetime


class FileListResponse(CamelModel):
    items: list[FileResponse]


class RevisionResponse(CamelModel):
    version: int
    action: str
    content: str | None
    content_hash: str | None
    created_at: datetime


class RevisionListResponse(CamelModel):
    items: list[RevisionResponse]


class BulkOutcomeResponse(CamelModel):
    path: str
    status: str
    version: int | None
    expected_version: int | None
    current_version: int | None


class BulkResultResponse(CamelModel):
    processed: int
    upserted: int
    deleted: int
    results: list[BulkOutcomeResponse]


@router.get("/files", response_model=SuccessEnvelope[FileListResponse] | FileListResponse)
async def list_files(
    project_id: str,
    request: Request,
    files: FileSyncService = Depends(get_file_service),
) -> dict:
    current = await files.list_current(project_id)
    return success_response(request=request, data={"items": [item.to_public() for item in current]})


@router.post("/files:bulk", response_model=SuccessEnvelope[BulkResultResponse] | BulkResultResponse)
async def bulk_upsert_files(
    project_id: str,
    payload: BulkFilesRequest,
    request: Request,
    files: FileSyncService = Depends(get_file_service),
) -> dict:
    result = await files.bulk_upsert(
        project_id,
        [
            BulkFileWrite(
                path=entry.path,
                content=entry.content,
                file_type=entry.file_type,
                expected_version=entry.expected_version,
                action=entry.action,
            )
            for entry in payload.files
        ],
    )
    return success_response(request=request, data=result.to_public())


@router.get(
    "/files/{path:path}",
    response_model=SuccessEnvelope[FileResponse | None] | FileResponse | None,
)
async def get_file(
    project_id: str,
    path: str,
    request: Request,
    include_tombstones: bool = Query(default=True, alias="includeTombstones"),
    files: FileSyncService = Depends(get_file_service),
) -> dict | None:
    view = await files.get(project_id, path, include_tombstones=include_tombstones)
    data = view.to_public() if view is not None else None
    return success_response(request=request, data=data)


@router.put("/files/{path:path}", response_model=SuccessEnvelope[FileWriteResponse] | FileWriteResponse)
async def upsert_file(
    project_id: str,
    path: str,
    payload: UpsertFileRequest,
    request: Request,
    files: FileSyncService = Depends(get_file_service),
) -> dict:
    result = await files.upsert(
        project_id,
        path,
        payload.content,
        file_type=payload.file_type,
        expected_version=payload.expected_version,
    )
    return success_response(request=request, data=result.to_public())


@router.delete("/files/{path:path}", response_model=SuccessEnvelope[FileWriteResponse] | FileWriteResponse)
async def delete_file(
    project_id: str,
    path: str,
    request: Request,
    expected_version: int | None = Query(default=None, alias="expectedVersion", ge=1),
    files: FileSyncService = Depends(get_file_service),
) -> dict:
    result = await files.delete(project_id, path, expected_version=expected_version)
    return success_response(request=request, data=result.to_public())


@router.get("/history/{path:path}", response_model=SuccessEnvelope[RevisionListResponse] | RevisionListResponse)
async def file_history(
    project_id: str,
    path: str,
    request: Request,
    files: FileSyncService = Depends(get_file_service),
) -> dict:
    revisions = await files.history(project_id, path)
    return success_response(request=request, data={"items": [item.to_public() for item in revisions]})


@router.get("/snapshot", response_class=Response)
async def download_snapshot(
    project_id: str,
    files: FileSyncService = Depends(get_file_service),
) -> Response:
    archive = await export_snapshot(files, project_id)
    return Response(
        content=archive,
        media_type=_SNAPSHOT_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{project_id}.tar.gz"'},
    )


@router.post("/snapshot", response_model=SuccessEnvelope[BulkResultResponse] | BulkResultResponse)
async def upload_snapshot(
    project_id: str,
    request: Request,
    files: FileSyncService = Depends(get_file_service),
) -> dict:
    # The body is the raw archive, not JSON.
    archive = await request.body()
    result = await import_snapshot(files, project_id, archive)
    return success_response(request=request, data=result.to_public())
