"""Named bookmarks per conversation, stored locally."""

import logging
from datetime import UTC, datetime

from chatgraft.db.connection import Database

logger = logging.getLogger(__name__)


class BookmarkStore:
    """Bookmark name -> message uuid, scoped to one conversation.

    Names are unique within a conversation; a bookmark is never renamed or
    re-pointed, only added and deleted.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    async def get_all(self, conversation_id: str) -> dict[str, str]:
        """Bookmarks of a conversation, oldest first."""
        rows = await self._db.fetchall(
            "SELECT name, leaf_uuid FROM bookmarks WHERE conversation_id = ? ORDER BY created_at, rowid",
            (conversation_id,),
        )
        return {row["name"]: row["leaf_uuid"] for row in rows}

    async def get(self, conversation_id: str, name: str) -> str:
        """Message uuid a bookmark points at."""
        row = await self._db.fetchone(
            "SELECT leaf_uuid FROM bookmarks WHERE conversation_id = ? AND name = ?",
            (conversation_id, name),
        )
        if row is None:
            raise BookmarkNotFoundError(name)
        return row["leaf_uuid"]

    async def add(self, conversation_id: str, name: str, leaf_uuid: str) -> None:
        existing = await self._db.fetchone(
            "SELECT 1 FROM bookmarks WHERE conversation_id = ? AND name = ?",
            (conversation_id, name),
        )
        if existing is not None:
            raise DuplicateBookmarkError(name)
        await self._db.execute(
            """INSERT INTO bookmarks (conversation_id, name, leaf_uuid, created_at)
               VALUES (?, ?, ?, ?)""",
            (conversation_id, name, leaf_uuid, datetime.now(UTC).isoformat()),
        )
        logger.info("Bookmarked %s in %s as %r", leaf_uuid, conversation_id, name)

    async def delete(self, conversation_id: str, name: str) -> bool:
        cursor = await self._db.execute(
            "DELETE FROM bookmarks WHERE conversation_id = ? AND name = ?",
            (conversation_id, name),
        )
        return cursor.rowcount > 0


class BookmarkNotFoundError(Exception):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Bookmark not found: {name}")


class DuplicateBookmarkError(Exception):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"A bookmark named {name!r} already exists")
