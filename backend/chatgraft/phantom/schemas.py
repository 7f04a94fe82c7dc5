"""Request and response schemas for phantom and conversation endpoints."""

from typing import Any

from pydantic import BaseModel

from chatgraft.models import ROOT_MESSAGE_UUID


class PhantomMessagesResponse(BaseModel):
    conversation_id: str
    messages: list[dict[str, Any]]


class ReplacePhantomsRequest(BaseModel):
    """Host-shaped message records; they replace the stored sequence as a whole."""

    messages: list[dict[str, Any]]


class NavigateRequest(BaseModel):
    from_message_id: str = ROOT_MESSAGE_UUID


class LeafResponse(BaseModel):
    leaf_id: str
    depth: int


class LatestResponse(BaseModel):
    leaf_id: str
    created_at: str | None
