"""Sync and search API routes."""

from fastapi import APIRouter, Depends, Query

from chatgraft.errors import DomainError, http_error
from chatgraft.sync.schemas import SearchResponse, SyncResponse
from chatgraft.sync.service import SearchService, SyncService

router = APIRouter(prefix="/api/search", tags=["search"])


def get_sync_service() -> SyncService:
    """Dependency placeholder — overridden at startup."""
    raise RuntimeError("SyncService not configured")


def get_search_service() -> SearchService:
    """Dependency placeholder — overridden at startup."""
    raise RuntimeError("SearchService not configured")


@router.post("/sync")
async def sync_conversations(
    use_export: bool | None = Query(None),
    service: SyncService = Depends(get_sync_service),
) -> SyncResponse:
    """Bring the local search cache up to date with the host.

    ``use_export`` forces or disables the bulk data export; by default it is
    used for large backlogs.
    """
    try:
        return await service.sync_all(use_export=use_export)
    except DomainError as e:
        raise http_error(e) from e


@router.post("/sync/cancel")
async def cancel_sync(
    service: SyncService = Depends(get_sync_service),
) -> dict:
    return {"cancelled": service.cancel_running()}


@router.get("")
async def search(
    q: str = Query(..., min_length=1),
    limit: int = Query(50, ge=1, le=200),
    service: SearchService = Depends(get_search_service),
) -> SearchResponse:
    """Full-text search across all cached conversations."""
    return await service.search(q, limit=limit)
