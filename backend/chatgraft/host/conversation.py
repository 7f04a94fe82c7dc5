"""Stateful accessor for a single host conversation."""

import asyncio
import logging
from datetime import UTC, datetime
from collections.abc import Mapping
from typing import Any

from chatgraft.host.client import HostClient, NetworkError
from chatgraft.models import Message, SandboxFile, from_wire, parse_timestamp, to_completion_request
from chatgraft.tree.paths import (
    BookmarkNode,
    LeafInfo,
    build_bookmark_tree,
    find_deepest_leaf,
    find_latest_message,
)

logger = logging.getLogger(__name__)

DEFAULT_POLL_ATTEMPTS = 30
DEFAULT_POLL_INTERVAL = 3.0


class Conversation:
    """One conversation on the host, with its fetched data cached.

    The cache holds the last response of ``get_data`` and whether it was
    fetched as the full tree. It is refreshed on request, or when a tree
    view is asked for and the cached copy is the flat view.
    """

    def __init__(
        self,
        client: HostClient,
        conversation_id: str | None = None,
        *,
        poll_attempts: int = DEFAULT_POLL_ATTEMPTS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.client = client
        self.conversation_id = conversation_id
        self.poll_attempts = poll_attempts
        self.poll_interval = poll_interval
        self._data: dict[str, Any] | None = None
        self._tree = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create(
        self,
        name: str,
        *,
        model: str | None = None,
        project_uuid: str | None = None,
        paprika_mode: bool = False,
    ) -> str:
        if self.conversation_id:
            raise RuntimeError(f"Conversation {self.conversation_id} already exists")
        self.conversation_id = await self.client.create_conversation(
            name, model=model, project_uuid=project_uuid, paprika_mode=paprika_mode,
        )
        return self.conversation_id

    async def delete(self) -> bool:
        return await self.client.delete_conversation(self._require_id())

    def _require_id(self) -> str:
        if not self.conversation_id:
            raise RuntimeError("Conversation has not been created")
        return self.conversation_id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_data(self, tree: bool = False, force_refresh: bool = False) -> dict[str, Any]:
        if self._data is None or force_refresh or (tree and not self._tree):
            self._data = await self.client.get_conversation(self._require_id(), tree=tree)
            self._tree = tree
        return self._data

    async def get_messages(self, tree: bool = False, force_refresh: bool = False) -> list[Message]:
        data = await self.get_data(tree, force_refresh)
        return [from_wire(m, self.conversation_id) for m in data.get("chat_messages") or []]

    @property
    def name(self) -> str:
        return (self._data or {}).get("name") or ""

    @property
    def project_uuid(self) -> str | None:
        project = (self._data or {}).get("project") or {}
        return project.get("uuid") or (self._data or {}).get("project_uuid")

    @property
    def current_leaf(self) -> str | None:
        return (self._data or {}).get("current_leaf_message_uuid")

    async def code_execution_enabled(self) -> bool:
        data = await self.get_data()
        return (data.get("settings") or {}).get("enabled_monkeys_in_a_barrel") is True

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def find_deepest_leaf(self, from_id: str) -> LeafInfo:
        """Deepest leaf below ``from_id`` in the cached tree."""
        if self._data is None:
            raise RuntimeError("Conversation data has not been fetched")
        messages = [from_wire(m, self.conversation_id) for m in self._data.get("chat_messages") or []]
        return find_deepest_leaf(messages, from_id)

    async def set_active_leaf(self, leaf_id: str) -> None:
        await self.client.set_current_leaf(self._require_id(), leaf_id)

    async def navigate_to_deepest(self, from_id: str) -> LeafInfo:
        """Make the deepest leaf below ``from_id`` the active branch."""
        await self.get_data(tree=True, force_refresh=True)
        leaf = self.find_deepest_leaf(from_id)
        await self.set_active_leaf(leaf.leaf_id)
        return leaf

    async def navigate_to_latest(self) -> Message | None:
        """Make the most recently created message the current leaf.

        Returns that message, or None when the conversation has none.
        """
        latest = find_latest_message(await self.get_messages(tree=True, force_refresh=True))
        if latest is not None:
            await self.set_active_leaf(latest.uuid)
        return latest

    async def bookmark_tree(self, bookmarks: Mapping[str, str]) -> list[BookmarkNode]:
        """Bookmarks (name -> message uuid) nested over this conversation's tree."""
        return build_bookmark_tree(await self.get_messages(tree=True), bookmarks)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def send_and_wait(self, message: Message, **completion_options: Any) -> Message:
        """Send a human turn and return the assistant reply it produced.

        After the completion stream ends, the conversation is re-fetched
        until an assistant message created after the send appears, up to
        ``poll_attempts`` times with ``poll_interval`` seconds in between.
        """
        conversation_id = self._require_id()
        body = to_completion_request(message, **completion_options)
        sent_at = datetime.now(UTC)
        await self.client.send_completion(conversation_id, body)

        for attempt in range(self.poll_attempts):
            if attempt > 0:
                logger.debug(
                    "Reply not visible yet in %s, retrying (%d/%d)",
                    conversation_id, attempt, self.poll_attempts,
                )
                await asyncio.sleep(self.poll_interval)
            messages = await self.get_messages(tree=True, force_refresh=True)
            for candidate in messages:
                created = parse_timestamp(candidate.created_at)
                if candidate.sender == "assistant" and created is not None and created > sent_at:
                    return candidate

        raise NetworkError(
            "send completion",
            f"no assistant reply appeared after {self.poll_attempts} attempts",
        )

    async def upload_to_sandbox(self, data: bytes, file_name: str) -> SandboxFile:
        return await self.client.upload_to_sandbox(self._require_id(), data, file_name)
