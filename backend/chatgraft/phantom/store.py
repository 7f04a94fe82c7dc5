"""Local persistence of phantom message sequences, one per conversation."""

import asyncio
import json
import logging
from datetime import UTC, datetime

from chatgraft.db.connection import Database
from chatgraft.models import Message, from_wire, to_wire

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


class PhantomStore:
    """Phantom messages keyed by conversation id.

    A conversation's sequence is only ever replaced as a whole; there is no
    per-message update.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    async def get(self, conversation_id: str) -> list[Message] | None:
        """Stored sequence for a conversation, or None if nothing is stored."""
        row = await self._db.fetchone(
            "SELECT messages FROM phantom_messages WHERE conversation_id = ?",
            (conversation_id,),
        )
        if row is None:
            return None
        return [from_wire(record, conversation_id) for record in json.loads(row["messages"])]

    async def get_with_timeout(
        self,
        conversation_id: str,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> list[Message] | None:
        """Like ``get``, but resolves to None when the read takes too long."""
        try:
            return await asyncio.wait_for(self.get(conversation_id), timeout)
        except TimeoutError:
            logger.warning("Phantom lookup for %s timed out after %.1fs", conversation_id, timeout)
            return None

    async def replace(self, conversation_id: str, messages: list[Message]) -> None:
        payload = json.dumps([to_wire(m) for m in messages])
        await self._db.execute(
            """INSERT INTO phantom_messages (conversation_id, messages, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(conversation_id) DO UPDATE SET
                   messages = excluded.messages,
                   updated_at = excluded.updated_at""",
            (conversation_id, payload, datetime.now(UTC).isoformat()),
        )
        logger.info("Stored %d phantom messages for %s", len(messages), conversation_id)

    async def clear(self, conversation_id: str) -> bool:
        cursor = await self._db.execute(
            "DELETE FROM phantom_messages WHERE conversation_id = ?",
            (conversation_id,),
        )
        return cursor.rowcount > 0
