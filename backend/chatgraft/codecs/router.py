"""Export and import API routes."""

from typing import Literal

from fastapi import APIRouter, Depends, Query, Response, UploadFile

from chatgraft.codecs.models import ImportOptions
from chatgraft.codecs.schemas import ImportPreview, ImportResult
from chatgraft.codecs.service import ExportService, ImportService
from chatgraft.errors import DomainError, http_error

router = APIRouter(tags=["codecs"])


def get_export_service() -> ExportService:
    """Dependency placeholder — overridden at startup."""
    raise RuntimeError("ExportService not configured")


def get_import_service() -> ImportService:
    """Dependency placeholder — overridden at startup."""
    raise RuntimeError("ImportService not configured")


@router.get("/api/conversations/{conversation_id}/export")
async def export_conversation(
    conversation_id: str,
    format: Literal["txt", "jsonl", "librechat", "raw", "zip"] = Query("txt"),
    tree: bool = Query(False),
    service: ExportService = Depends(get_export_service),
) -> Response:
    """Export a conversation as a file download."""
    try:
        artifact = await service.export(conversation_id, format, tree=tree)
    except DomainError as e:
        raise http_error(e) from e
    headers = {"Content-Disposition": f'attachment; filename="{artifact.filename}"'}
    if artifact.warnings:
        headers["X-Export-Warnings"] = str(len(artifact.warnings))
    return Response(content=artifact.content, media_type=artifact.media_type, headers=headers)


@router.post("/api/import/preview")
async def preview_import(
    file: UploadFile,
    service: ImportService = Depends(get_import_service),
) -> ImportPreview:
    """Parse an uploaded file and describe it without creating anything."""
    content = await file.read()
    try:
        return service.preview(content, file.filename or "unknown")
    except DomainError as e:
        raise http_error(e) from e


@router.post("/api/import")
async def import_conversation(
    file: UploadFile,
    model: str | None = Query(None),
    include_files: bool = Query(True),
    include_tool_calls: bool = Query(True),
    service: ImportService = Depends(get_import_service),
) -> ImportResult:
    """Import an uploaded file as a new conversation."""
    content = await file.read()
    options = ImportOptions(model=model, include_files=include_files, include_tool_calls=include_tool_calls)
    try:
        imported = service.parse(content, file.filename or "unknown")
        return await service.import_conversation(imported, options)
    except DomainError as e:
        raise http_error(e) from e
