"""Local text cache of every conversation, and full-text search over it.

SyncService copies conversations whose cached copy is missing or older
than the host's into ``conversation_cache``/``message_cache``; the FTS5
index follows the message table through triggers. Large backlogs are read
from one bulk data export, with per-conversation reads as the fallback.
SearchService queries the index.
"""

import asyncio
import io
import logging
import zipfile
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from chatgraft.db.connection import Database
from chatgraft.host.client import HostClient, NetworkError
from chatgraft.models import MalformedInputError, extract_text, from_wire, parse_timestamp
from chatgraft.sync.schemas import SearchResponse, SearchResultItem, SyncResponse
from chatgraft.utils.json import load_json

logger = logging.getLogger(__name__)

SyncProgress = Callable[[int, int], None]

MAX_DELAY_MS = 1000
BASE_DELAY_MS = 100

EXPORT_THRESHOLD = 300
EXPORT_POLL_INTERVAL = 30.0
EXPORT_MAX_POLLS = 60
EXPORT_CONVERSATIONS_FILE = "conversations.json"


def sync_delay_ms(count: int) -> int:
    """Pause between requests in each half; grows with the amount of work."""
    return min(MAX_DELAY_MS, BASE_DELAY_MS + count)


def read_export_archive(data: bytes) -> list[dict[str, Any]]:
    """Conversation records from a data export archive's ``conversations.json``."""
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            raw = archive.read(EXPORT_CONVERSATIONS_FILE)
    except (zipfile.BadZipFile, KeyError) as e:
        raise MalformedInputError(f"Unreadable data export: {e}") from e
    conversations = load_json(raw, EXPORT_CONVERSATIONS_FILE)
    if not isinstance(conversations, list):
        raise MalformedInputError(f"{EXPORT_CONVERSATIONS_FILE} must hold a list of conversations")
    return [c for c in conversations if isinstance(c, dict)]


class CancelToken:
    """Cooperative cancellation flag, checked between items."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class SyncService:
    def __init__(
        self,
        client: HostClient,
        db: Database,
        *,
        delay_ms: int | None = None,
        export_threshold: int = EXPORT_THRESHOLD,
        export_poll_interval: float = EXPORT_POLL_INTERVAL,
        export_max_polls: int = EXPORT_MAX_POLLS,
    ) -> None:
        self._client = client
        self._db = db
        self._delay_ms = delay_ms
        self._export_threshold = export_threshold
        self._export_poll_interval = export_poll_interval
        self._export_max_polls = export_max_polls
        self._running: CancelToken | None = None

    async def find_stale(self) -> list[dict[str, Any]]:
        """Host conversations whose cached copy is missing, empty, or older."""
        conversations = await self._client.list_conversations()
        rows = await self._db.fetchall("SELECT conversation_id, updated_at FROM conversation_cache")
        cached = {row["conversation_id"]: row["updated_at"] for row in rows}
        counted = await self._db.fetchall(
            "SELECT conversation_id, COUNT(*) AS n FROM message_cache GROUP BY conversation_id"
        )
        with_messages = {row["conversation_id"] for row in counted if row["n"] > 0}

        stale = []
        for conversation in conversations:
            cid = conversation["uuid"]
            if cid not in cached or cid not in with_messages:
                stale.append(conversation)
                continue
            remote = parse_timestamp(conversation.get("updated_at"))
            local = parse_timestamp(cached[cid])
            if remote is not None and (local is None or remote > local):
                stale.append(conversation)
        logger.info("%d of %d conversations need syncing", len(stale), len(conversations))
        return stale

    async def sync_conversation(self, conversation: dict[str, Any]) -> int:
        """Replace the cached copy of one conversation. Returns its message count."""
        data = await self._client.get_conversation(conversation["uuid"], tree=True)
        return await self._store(conversation, data)

    async def _store(self, conversation: dict[str, Any], data: dict[str, Any]) -> int:
        cid = conversation["uuid"]
        messages = [from_wire(r, cid) for r in data.get("chat_messages") or []]
        project = data.get("project") or {}

        await self._db.execute("DELETE FROM message_cache WHERE conversation_id = ?", (cid,))
        await self._db.executemany(
            """INSERT INTO message_cache
               (message_uuid, conversation_id, sender, text, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            [(m.uuid, cid, m.sender, extract_text(m), m.created_at) for m in messages],
        )
        await self._db.execute(
            """INSERT INTO conversation_cache
               (conversation_id, name, model, project_uuid, updated_at, synced_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(conversation_id) DO UPDATE SET
                   name = excluded.name,
                   model = excluded.model,
                   project_uuid = excluded.project_uuid,
                   updated_at = excluded.updated_at,
                   synced_at = excluded.synced_at""",
            (
                cid,
                data.get("name") or conversation.get("name"),
                data.get("model"),
                project.get("uuid") or data.get("project_uuid"),
                conversation.get("updated_at") or data.get("updated_at"),
                datetime.now(UTC).isoformat(),
            ),
        )
        return len(messages)

    async def sync_all(
        self,
        progress: SyncProgress | None = None,
        cancel: CancelToken | None = None,
        *,
        use_export: bool | None = None,
    ) -> SyncResponse:
        """Sync every stale conversation.

        With ``export_threshold`` or more stale conversations (or when
        ``use_export`` is set) they are read from one bulk data export. If
        the export fails, the slower per-conversation sync runs instead.
        """
        cancel = cancel or CancelToken()
        self._running = cancel
        try:
            stale = await self.find_stale()
            if use_export is None:
                use_export = len(stale) >= self._export_threshold
            if use_export and stale:
                try:
                    return await self.sync_via_export(stale, progress, cancel)
                except (NetworkError, MalformedInputError) as e:
                    logger.warning("Bulk export sync failed, syncing one conversation at a time: %s", e)
            return await self.sync_individually(stale, progress, cancel)
        finally:
            self._running = None

    async def sync_individually(
        self,
        stale: list[dict[str, Any]],
        progress: SyncProgress | None = None,
        cancel: CancelToken | None = None,
    ) -> SyncResponse:
        """Fetch and cache each conversation in turn.

        The work is split into two interleaved halves processed together,
        each pausing between requests. A failed conversation is logged and
        skipped. Cancellation takes effect before the next item.
        """
        cancel = cancel or CancelToken()
        total = len(stale)
        delay = (self._delay_ms if self._delay_ms is not None else sync_delay_ms(total)) / 1000
        counts = {"done": 0, "synced": 0, "failed": 0}

        async def process(half: list[dict[str, Any]]) -> None:
            for i, conversation in enumerate(half):
                if cancel.cancelled:
                    return
                try:
                    n = await self.sync_conversation(conversation)
                    counts["synced"] += 1
                    logger.debug("Synced %s (%d messages)", conversation["uuid"], n)
                except (NetworkError, MalformedInputError) as e:
                    counts["failed"] += 1
                    logger.warning("Failed to sync conversation %s: %s", conversation["uuid"], e)
                counts["done"] += 1
                if progress is not None:
                    progress(counts["done"], total)
                if i < len(half) - 1:
                    await asyncio.sleep(delay)

        await asyncio.gather(process(stale[0::2]), process(stale[1::2]))
        return SyncResponse(
            total=total,
            synced=counts["synced"],
            failed=counts["failed"],
            cancelled=cancel.cancelled,
            method="individual",
        )

    async def sync_via_export(
        self,
        stale: list[dict[str, Any]],
        progress: SyncProgress | None = None,
        cancel: CancelToken | None = None,
    ) -> SyncResponse:
        """Cache ``stale`` from one bulk data export.

        Requests the export, polls until the host publishes its download
        URL, then stores every stale conversation found in the archive.
        Failed polls are logged and retried. A stale conversation missing
        from the archive counts as failed. Raises NetworkError when the
        export never becomes ready, MalformedInputError when the archive
        cannot be read.
        """
        cancel = cancel or CancelToken()
        total = len(stale)
        nonce = await self._client.request_data_export()

        url: str | None = None
        for attempt in range(self._export_max_polls):
            if attempt > 0:
                await asyncio.sleep(self._export_poll_interval)
            if cancel.cancelled:
                return SyncResponse(total=total, synced=0, failed=0, cancelled=True, method="export")
            try:
                url = await self._client.poll_data_export(nonce)
            except NetworkError as e:
                logger.warning("Data export poll %d failed: %s", attempt + 1, e)
            if url is not None:
                break
        if url is None:
            raise NetworkError("data export", f"not ready after {self._export_max_polls} polls")

        exported = {c.get("uuid"): c for c in read_export_archive(await self._client.download(url))}
        logger.info("Data export holds %d conversations", len(exported))

        synced = failed = 0
        for done, conversation in enumerate(stale, start=1):
            if cancel.cancelled:
                break
            data = exported.get(conversation["uuid"])
            if data is None:
                failed += 1
                logger.warning("Conversation %s is missing from the data export", conversation["uuid"])
            else:
                try:
                    await self._store(conversation, data)
                    synced += 1
                except MalformedInputError as e:
                    failed += 1
                    logger.warning("Failed to cache exported conversation %s: %s", conversation["uuid"], e)
            if progress is not None:
                progress(done, total)

        return SyncResponse(
            total=total, synced=synced, failed=failed, cancelled=cancel.cancelled, method="export",
        )

    def cancel_running(self) -> bool:
        """Cancel the sync in progress, if any."""
        if self._running is None:
            return False
        self._running.cancel()
        return True


class SearchService:
    """Full-text search over the cached message text."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def search(self, query: str, *, limit: int = 50) -> SearchResponse:
        """Conversations containing every word of ``query``, newest first."""
        fts_query = self._sanitize_query(query)
        if not fts_query:
            return SearchResponse(query=query, results=[], total=0)

        rows = await self._db.fetchall(
            """
            SELECT
                m.message_uuid,
                m.conversation_id,
                c.name,
                c.updated_at,
                snippet(message_cache_fts, 0, '[[mark]]', '[[/mark]]', '...', 40) AS snippet
            FROM message_cache_fts
            JOIN message_cache m ON m.rowid = message_cache_fts.rowid
            LEFT JOIN conversation_cache c ON c.conversation_id = m.conversation_id
            WHERE message_cache_fts MATCH ?
            ORDER BY rank
            """,
            (fts_query,),
        )

        by_conversation: dict[str, SearchResultItem] = {}
        for row in rows:
            item = by_conversation.get(row["conversation_id"])
            if item is None:
                by_conversation[row["conversation_id"]] = SearchResultItem(
                    conversation_id=row["conversation_id"],
                    name=row["name"],
                    updated_at=row["updated_at"],
                    match_count=1,
                    message_uuid=row["message_uuid"],
                    snippet=row["snippet"],
                )
            else:
                item.match_count += 1

        results = sorted(by_conversation.values(), key=lambda r: r.updated_at or "", reverse=True)[:limit]
        return SearchResponse(query=query, results=results, total=len(results))

    @staticmethod
    def _sanitize_query(raw: str) -> str:
        """Escape user input for safe FTS5 querying.

        Splits into words, double-quotes each (prevents FTS5 operator injection).
        Result is implicit AND: all terms must be present.
        """
        words = raw.strip().split()
        if not words:
            return ""
        return " ".join('"{}"'.format(w.replace('"', '""')) for w in words)
