"""Tests for the local conversation cache sync and full-text search."""

import io
import zipfile

import pytest

from chatgraft.host.client import NetworkError
from chatgraft.models import MalformedInputError
from chatgraft.sync.service import (
    CancelToken,
    SearchService,
    SyncService,
    read_export_archive,
    sync_delay_ms,
)
from tests.fixtures import make_chain, make_conversation_data, make_message, timestamp


@pytest.fixture
def syncer(host_client, db):
    return SyncService(host_client, db, delay_ms=0)


@pytest.fixture
def exporter(host_client, db):
    return SyncService(host_client, db, delay_ms=0, export_poll_interval=0, export_max_polls=3)


@pytest.fixture
def searcher(db):
    return SearchService(db)


def _add(fake_host, uuid, texts, updated_offset=3600, **fields):
    data = make_conversation_data(
        make_chain(texts), uuid=uuid, name=f"Chat {uuid}", updated_at=timestamp(updated_offset), **fields,
    )
    fake_host.add_conversation(data)
    return data


def test_delay_grows_with_work():
    assert sync_delay_ms(0) == 100
    assert sync_delay_ms(150) == 250
    assert sync_delay_ms(5000) == 1000


class TestFindStale:
    async def test_uncached_conversations_are_stale(self, syncer, fake_host):
        _add(fake_host, "c1", ["hello"])
        _add(fake_host, "c2", ["world"])
        stale = await syncer.find_stale()
        assert {c["uuid"] for c in stale} == {"c1", "c2"}

    async def test_synced_conversations_are_fresh(self, syncer, fake_host):
        _add(fake_host, "c1", ["hello"])
        await syncer.sync_all()
        assert await syncer.find_stale() == []

    async def test_newer_host_copy_is_stale(self, syncer, fake_host):
        _add(fake_host, "c1", ["hello"])
        await syncer.sync_all()
        fake_host.conversations["c1"]["updated_at"] = timestamp(7200)
        assert [c["uuid"] for c in await syncer.find_stale()] == ["c1"]

    async def test_cached_without_messages_is_stale(self, syncer, fake_host):
        _add(fake_host, "c1", [])
        await syncer.sync_all()
        assert [c["uuid"] for c in await syncer.find_stale()] == ["c1"]


class TestSyncAll:
    async def test_counts(self, syncer, fake_host, db):
        for uuid in ("c1", "c2", "c3"):
            _add(fake_host, uuid, ["question", "answer"])

        result = await syncer.sync_all()

        assert (result.total, result.synced, result.failed, result.cancelled) == (3, 3, 0, False)
        row = await db.fetchone("SELECT COUNT(*) AS n FROM message_cache")
        assert row["n"] == 6

    async def test_cache_row_contents(self, syncer, fake_host, db):
        _add(fake_host, "c1", ["question"], project={"uuid": "proj-1"})
        await syncer.sync_all()
        row = await db.fetchone("SELECT * FROM conversation_cache WHERE conversation_id = 'c1'")
        assert row["name"] == "Chat c1"
        assert row["project_uuid"] == "proj-1"
        assert row["updated_at"] == timestamp(3600)

    async def test_failures_skipped(self, syncer, fake_host):
        _add(fake_host, "c1", ["fine"])
        _add(fake_host, "c-broken", ["never read"])
        fake_host.fail_paths.add("c-broken")

        result = await syncer.sync_all()
        assert (result.total, result.synced, result.failed) == (2, 1, 1)

    async def test_progress(self, syncer, fake_host):
        for uuid in ("c1", "c2", "c3"):
            _add(fake_host, uuid, ["x"])
        calls = []
        await syncer.sync_all(progress=lambda done, total: calls.append((done, total)))
        assert sorted(calls) == [(1, 3), (2, 3), (3, 3)]

    async def test_cancelled_before_start(self, syncer, fake_host):
        _add(fake_host, "c1", ["x"])
        token = CancelToken()
        token.cancel()
        result = await syncer.sync_all(cancel=token)
        assert result.synced == 0
        assert result.cancelled is True

    async def test_cancel_running(self, syncer, fake_host):
        for i in range(6):
            _add(fake_host, f"c{i}", ["x"])
        result = await syncer.sync_all(progress=lambda done, total: syncer.cancel_running())
        assert result.cancelled is True
        assert result.synced < 6

    def test_cancel_when_idle(self, syncer):
        assert syncer.cancel_running() is False

    async def test_resync_replaces_text(self, syncer, searcher, fake_host):
        _add(fake_host, "c1", ["old wording"])
        await syncer.sync_all()

        new_message = make_message("new wording", uuid="m-new")
        fake_host.conversations["c1"]["chat_messages"] = [
            make_conversation_data([new_message])["chat_messages"][0],
        ]
        fake_host.conversations["c1"]["updated_at"] = timestamp(7200)
        await syncer.sync_all()

        assert (await searcher.search("old")).total == 0
        assert (await searcher.search("new")).results[0].message_uuid == "m-new"


    async def test_resync_leaves_no_stale_index_rows(self, syncer, fake_host, db):
        _add(fake_host, "c1", ["only once"])
        await syncer.sync_all()
        fake_host.conversations["c1"]["updated_at"] = timestamp(7200)
        await syncer.sync_all()

        rows = await db.fetchall(
            "SELECT rowid FROM message_cache_fts WHERE message_cache_fts MATCH ?", ("once",),
        )
        assert len(rows) == 1

    async def test_same_message_uuid_in_two_conversations(self, syncer, searcher, fake_host):
        shared = make_message("copied text", uuid="m-shared")
        fake_host.add_conversation(make_conversation_data([shared], uuid="c1"))
        fake_host.add_conversation(make_conversation_data([shared], uuid="c2"))

        result = await syncer.sync_all()

        assert result.synced == 2
        assert (await searcher.search("copied")).total == 2


class TestExportSync:
    async def test_forced_export(self, exporter, searcher, fake_host):
        _add(fake_host, "c1", ["about herons"])
        _add(fake_host, "c2", ["about egrets"])
        fake_host.export_ready_after = 2

        result = await exporter.sync_all(use_export=True)

        assert (result.method, result.total, result.synced, result.failed) == ("export", 2, 2, 0)
        assert fake_host.export_polls == 3
        assert [r.conversation_id for r in (await searcher.search("herons")).results] == ["c1"]
        # No per-conversation reads
        assert not any("/chat_conversations/" in r.url.path for r in fake_host.requests)

    async def test_threshold_selects_export(self, host_client, db, fake_host):
        service = SyncService(host_client, db, delay_ms=0, export_poll_interval=0, export_threshold=2)
        _add(fake_host, "c1", ["x"])
        assert (await service.sync_all()).method == "individual"

        _add(fake_host, "c2", ["y"])
        _add(fake_host, "c3", ["z"])
        result = await service.sync_all()
        assert (result.method, result.total, result.synced) == ("export", 2, 2)

    async def test_failed_request_falls_back(self, exporter, fake_host):
        _add(fake_host, "c1", ["x"])
        fake_host.fail_paths.add("export_data")

        result = await exporter.sync_all(use_export=True)

        assert (result.method, result.synced, result.failed) == ("individual", 1, 0)

    async def test_export_never_ready_falls_back(self, exporter, fake_host):
        _add(fake_host, "c1", ["x"])
        fake_host.export_ready_after = 100

        result = await exporter.sync_all(use_export=True)

        assert fake_host.export_polls == 3
        assert (result.method, result.synced) == ("individual", 1)

    async def test_export_never_ready_raises_directly(self, exporter, fake_host):
        fake_host.export_ready_after = 100
        with pytest.raises(NetworkError, match="not ready"):
            await exporter.sync_via_export([{"uuid": "c1"}])

    async def test_failed_poll_is_retried(self, exporter, host_client, fake_host, monkeypatch):
        _add(fake_host, "c1", ["x"])
        poll = host_client.poll_data_export
        attempts = []

        async def flaky_poll(nonce):
            attempts.append(nonce)
            if len(attempts) == 1:
                raise NetworkError("poll data export", "HTTP 500", 500)
            return await poll(nonce)

        monkeypatch.setattr(host_client, "poll_data_export", flaky_poll)

        result = await exporter.sync_all(use_export=True)

        assert attempts == ["export-nonce", "export-nonce"]
        assert (result.method, result.synced) == ("export", 1)

    async def test_unreadable_archive_falls_back(self, exporter, fake_host):
        _add(fake_host, "c1", ["x"])
        fake_host.export_archive = b"not a zip"

        result = await exporter.sync_all(use_export=True)

        assert (result.method, result.synced) == ("individual", 1)

    async def test_missing_from_archive_counts_as_failed(self, exporter, fake_host):
        first = _add(fake_host, "c1", ["x"])
        _add(fake_host, "c2", ["y"])
        fake_host.export_archive = fake_host.build_export_archive([first])
        calls = []

        result = await exporter.sync_all(use_export=True, progress=lambda done, total: calls.append((done, total)))

        assert (result.method, result.synced, result.failed) == ("export", 1, 1)
        assert calls == [(1, 2), (2, 2)]

    async def test_cancel_while_waiting(self, exporter, fake_host):
        fake_host.export_ready_after = 100
        token = CancelToken()
        token.cancel()

        result = await exporter.sync_via_export([{"uuid": "c1"}], cancel=token)

        assert result.cancelled is True
        assert result.synced == 0
        assert fake_host.export_polls == 0


class TestReadExportArchive:
    def _zip(self, **members):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:
            for name, content in members.items():
                archive.writestr(name.replace("_", "."), content)
        return buffer.getvalue()

    def test_reads_conversations(self):
        data = self._zip(conversations_json='[{"uuid": "c1"}, "junk"]')
        assert read_export_archive(data) == [{"uuid": "c1"}]

    def test_not_a_zip(self):
        with pytest.raises(MalformedInputError, match="Unreadable"):
            read_export_archive(b"plain bytes")

    def test_missing_member(self):
        with pytest.raises(MalformedInputError):
            read_export_archive(self._zip(users_json="[]"))

    def test_not_a_list(self):
        with pytest.raises(MalformedInputError, match="list"):
            read_export_archive(self._zip(conversations_json='{"uuid": "c1"}'))


class TestSearch:
    async def test_grouped_by_conversation(self, syncer, searcher, fake_host):
        _add(fake_host, "c1", ["I like banana bread", "banana bread is great"])
        _add(fake_host, "c2", ["apples only"])
        await syncer.sync_all()

        response = await searcher.search("banana")
        assert response.query == "banana"
        assert response.total == 1
        item = response.results[0]
        assert item.conversation_id == "c1"
        assert item.name == "Chat c1"
        assert item.match_count == 2
        assert "[[mark]]banana[[/mark]]" in item.snippet

    async def test_all_words_required(self, syncer, searcher, fake_host):
        _add(fake_host, "c1", ["red apple"])
        _add(fake_host, "c2", ["green apple"])
        await syncer.sync_all()

        response = await searcher.search("green apple")
        assert [r.conversation_id for r in response.results] == ["c2"]

    async def test_newest_first_and_limit(self, syncer, searcher, fake_host):
        _add(fake_host, "c-old", ["shared topic"], updated_offset=100)
        _add(fake_host, "c-new", ["shared topic"], updated_offset=9000)
        await syncer.sync_all()

        response = await searcher.search("shared")
        assert [r.conversation_id for r in response.results] == ["c-new", "c-old"]
        limited = await searcher.search("shared", limit=1)
        assert [r.conversation_id for r in limited.results] == ["c-new"]

    async def test_tool_input_searchable(self, syncer, searcher, fake_host):
        message = make_message(sender="assistant", content=[
            {"type": "tool_use", "id": "t1", "name": "lookup", "input": {"query": "zeppelin"}},
        ])
        fake_host.add_conversation(make_conversation_data([message], uuid="c1"))
        await syncer.sync_all()
        assert (await searcher.search("zeppelin")).total == 1

    async def test_blank_query(self, searcher):
        response = await searcher.search("   ")
        assert response.results == []
        assert response.total == 0

    async def test_operators_are_literal(self, syncer, searcher, fake_host):
        _add(fake_host, "c1", ["plain text"])
        await syncer.sync_all()
        assert (await searcher.search('text" OR "x')).total == 0
        assert (await searcher.search("NOT plain")).total == 0

    def test_sanitize_quotes_words(self):
        assert SearchService._sanitize_query('say "hi"') == '"say" """hi"""'
        assert SearchService._sanitize_query("") == ""
