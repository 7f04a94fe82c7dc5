"""Sync and search API schemas."""

from typing import Literal

from pydantic import BaseModel


class SyncResponse(BaseModel):
    total: int
    synced: int
    failed: int
    cancelled: bool
    method: Literal["individual", "export"] = "individual"


class SearchResultItem(BaseModel):
    conversation_id: str
    name: str | None = None
    updated_at: str | None = None
    match_count: int
    message_uuid: str
    snippet: str


class SearchResponse(BaseModel):
    query: str
    results: list[SearchResultItem]
    total: int
