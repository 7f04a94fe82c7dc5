"""Bookmark routes: named pointers into a conversation's tree."""

from fastapi import APIRouter, Depends

from chatgraft.bookmarks.schemas import (
    BookmarkListResponse,
    BookmarkResponse,
    BookmarkTreeNode,
    BookmarkTreeResponse,
    CreateBookmarkRequest,
)
from chatgraft.bookmarks.store import BookmarkStore
from chatgraft.errors import DomainError, http_error
from chatgraft.host.client import HostClient
from chatgraft.host.conversation import Conversation
from chatgraft.phantom.router import get_host_client
from chatgraft.phantom.schemas import LeafResponse

router = APIRouter(prefix="/api/conversations", tags=["bookmarks"])


def get_bookmark_store() -> BookmarkStore:
    """Dependency placeholder — overridden at startup."""
    raise RuntimeError("BookmarkStore not configured")


@router.get("/{conversation_id}/bookmarks")
async def list_bookmarks(
    conversation_id: str,
    store: BookmarkStore = Depends(get_bookmark_store),
) -> BookmarkListResponse:
    bookmarks = await store.get_all(conversation_id)
    return BookmarkListResponse(
        conversation_id=conversation_id,
        bookmarks=[BookmarkResponse(name=name, leaf_uuid=uuid) for name, uuid in bookmarks.items()],
    )


@router.post("/{conversation_id}/bookmarks", status_code=201)
async def add_bookmark(
    conversation_id: str,
    request: CreateBookmarkRequest,
    store: BookmarkStore = Depends(get_bookmark_store),
) -> BookmarkResponse:
    try:
        await store.add(conversation_id, request.name, request.leaf_uuid)
    except DomainError as e:
        raise http_error(e) from e
    return BookmarkResponse(name=request.name, leaf_uuid=request.leaf_uuid)


@router.delete("/{conversation_id}/bookmarks/{name}")
async def delete_bookmark(
    conversation_id: str,
    name: str,
    store: BookmarkStore = Depends(get_bookmark_store),
) -> dict:
    return {"deleted": await store.delete(conversation_id, name)}


@router.get("/{conversation_id}/bookmarks/tree")
async def bookmark_tree(
    conversation_id: str,
    store: BookmarkStore = Depends(get_bookmark_store),
    client: HostClient = Depends(get_host_client),
) -> BookmarkTreeResponse:
    """Bookmarks nested under their nearest bookmarked ancestor message."""
    bookmarks = await store.get_all(conversation_id)
    try:
        nodes = await Conversation(client, conversation_id).bookmark_tree(bookmarks)
    except DomainError as e:
        raise http_error(e) from e
    return BookmarkTreeResponse(
        conversation_id=conversation_id,
        nodes=[BookmarkTreeNode.from_node(node) for node in nodes],
    )


@router.post("/{conversation_id}/bookmarks/{name}/navigate")
async def navigate_to_bookmark(
    conversation_id: str,
    name: str,
    store: BookmarkStore = Depends(get_bookmark_store),
    client: HostClient = Depends(get_host_client),
) -> LeafResponse:
    """Make the deepest leaf below a bookmarked message the active branch."""
    try:
        leaf_uuid = await store.get(conversation_id, name)
        leaf = await Conversation(client, conversation_id).navigate_to_deepest(leaf_uuid)
    except DomainError as e:
        raise http_error(e) from e
    return LeafResponse(leaf_id=leaf.leaf_id, depth=leaf.depth)
