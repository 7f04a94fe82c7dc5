"""Conversation proxy and phantom overlay routes."""

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, UploadFile

from chatgraft.codecs.router import get_import_service
from chatgraft.codecs.schemas import ImportResult
from chatgraft.codecs.service import ImportService
from chatgraft.errors import DomainError, http_error
from chatgraft.host.client import HostClient
from chatgraft.host.conversation import Conversation
from chatgraft.models import from_wire, to_wire
from chatgraft.phantom.schemas import (
    LatestResponse,
    LeafResponse,
    NavigateRequest,
    PhantomMessagesResponse,
    ReplacePhantomsRequest,
)
from chatgraft.phantom.store import PhantomStore

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


def get_host_client() -> HostClient:
    """Dependency placeholder — overridden at startup."""
    raise RuntimeError("HostClient not configured")


def get_phantom_store() -> PhantomStore:
    """Dependency placeholder — overridden at startup."""
    raise RuntimeError("PhantomStore not configured")


@router.get("/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    tree: bool = Query(True),
    client: HostClient = Depends(get_host_client),
) -> dict[str, Any]:
    """Conversation data with phantom messages spliced in."""
    try:
        return await client.get_conversation(conversation_id, tree=tree, apply_interceptors=True)
    except DomainError as e:
        raise http_error(e) from e


@router.post("/{conversation_id}/completion")
async def send_completion(
    conversation_id: str,
    body: dict[str, Any] = Body(...),
    client: HostClient = Depends(get_host_client),
) -> dict:
    """Forward a completion request, re-pointing replies to the phantom tail."""
    try:
        await client.send_completion(conversation_id, body)
    except DomainError as e:
        raise http_error(e) from e
    return {"completed": True}


@router.post("/{conversation_id}/navigate")
async def navigate_to_deepest(
    conversation_id: str,
    request: NavigateRequest,
    client: HostClient = Depends(get_host_client),
) -> LeafResponse:
    """Make the deepest leaf below a message the active branch."""
    try:
        leaf = await Conversation(client, conversation_id).navigate_to_deepest(request.from_message_id)
    except DomainError as e:
        raise http_error(e) from e
    return LeafResponse(leaf_id=leaf.leaf_id, depth=leaf.depth)


@router.post("/{conversation_id}/navigate/latest")
async def navigate_to_latest(
    conversation_id: str,
    client: HostClient = Depends(get_host_client),
) -> LatestResponse:
    """Make the most recently created message the current leaf."""
    try:
        latest = await Conversation(client, conversation_id).navigate_to_latest()
    except DomainError as e:
        raise http_error(e) from e
    if latest is None:
        raise HTTPException(status_code=404, detail="Conversation has no messages")
    return LatestResponse(leaf_id=latest.uuid, created_at=latest.created_at)


@router.get("/{conversation_id}/phantoms")
async def get_phantoms(
    conversation_id: str,
    store: PhantomStore = Depends(get_phantom_store),
) -> PhantomMessagesResponse:
    messages = await store.get(conversation_id) or []
    return PhantomMessagesResponse(
        conversation_id=conversation_id,
        messages=[to_wire(m) for m in messages],
    )


@router.put("/{conversation_id}/phantoms")
async def replace_phantoms(
    conversation_id: str,
    request: ReplacePhantomsRequest,
    store: PhantomStore = Depends(get_phantom_store),
) -> PhantomMessagesResponse:
    try:
        messages = [from_wire(record, conversation_id) for record in request.messages]
    except DomainError as e:
        raise http_error(e) from e
    await store.replace(conversation_id, messages)
    return PhantomMessagesResponse(
        conversation_id=conversation_id,
        messages=[to_wire(m) for m in messages],
    )


@router.delete("/{conversation_id}/phantoms")
async def clear_phantoms(
    conversation_id: str,
    store: PhantomStore = Depends(get_phantom_store),
) -> dict:
    return {"deleted": await store.clear(conversation_id)}


@router.post("/{conversation_id}/phantoms/import")
async def import_phantoms(
    conversation_id: str,
    file: UploadFile,
    service: ImportService = Depends(get_import_service),
) -> ImportResult:
    """Replace a conversation's phantoms with the messages of an uploaded file."""
    content = await file.read()
    try:
        imported = service.parse(content, file.filename or "unknown")
        return await service.replace_phantoms(conversation_id, imported)
    except DomainError as e:
        raise http_error(e) from e
