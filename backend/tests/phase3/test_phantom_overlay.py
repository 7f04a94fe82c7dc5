"""Tests for phantom splicing, uuid markers and completion-parent correction."""

import copy

from chatgraft.host.client import HostClient
from chatgraft.models import ROOT_MESSAGE_UUID, Message
from chatgraft.phantom.overlay import (
    END_ACK_TEXT,
    PHANTOM_MARKER,
    PhantomOverlay,
    correct_completion_parent,
    end_ack_uuid,
    inject_uuid_markers,
    splice_phantoms,
    strip_markers,
)
from tests.fixtures import ORG_ID, make_chain, make_conversation_data, make_message


def _real_data():
    real = make_chain(["real question", "real answer"])
    data = make_conversation_data(real)
    data["chat_messages"][0]["stop_reason"] = None
    data["chat_messages"][1]["stop_reason"] = "end_turn"
    return real, data


class TestSplicePhantoms:
    def test_phantoms_precede_real_messages(self):
        real, data = _real_data()
        phantoms = make_chain(["old question", "old answer"])
        spliced = splice_phantoms(data, phantoms)["chat_messages"]

        assert [r["uuid"] for r in spliced] == [*(p.uuid for p in phantoms), *(m.uuid for m in real)]
        assert [r["index"] for r in spliced] == [0, 1, 2, 3]
        assert spliced[2]["parent_message_uuid"] == phantoms[-1].uuid
        assert spliced[3]["parent_message_uuid"] == real[0].uuid

    def test_phantom_text_marked(self):
        _, data = _real_data()
        spliced = splice_phantoms(data, make_chain(["old"], start_sender="assistant"))["chat_messages"]
        assert spliced[0]["content"][0]["text"] == "old\n\n" + PHANTOM_MARKER
        assert spliced[0]["text"] == "old\n\n" + PHANTOM_MARKER
        assert spliced[1]["content"][0]["text"] == "real question"

    def test_trailing_human_gets_ack(self):
        real, data = _real_data()
        phantoms = make_chain(["old question"])
        spliced = splice_phantoms(data, phantoms)["chat_messages"]

        ack = spliced[1]
        assert ack["sender"] == "assistant"
        assert ack["uuid"] == end_ack_uuid(phantoms[0].uuid)
        assert ack["text"].startswith(END_ACK_TEXT)
        assert spliced[2]["parent_message_uuid"] == ack["uuid"]

    def test_two_phantoms_before_one_real_message(self):
        real = make_message("only real", uuid="r1")
        data = make_conversation_data([real])
        phantoms = make_chain(["old question", "old answer"])
        spliced = splice_phantoms(data, phantoms)["chat_messages"]

        assert [r["uuid"] for r in spliced] == [phantoms[0].uuid, phantoms[1].uuid, "r1"]
        assert [r["index"] for r in spliced] == [0, 1, 2]
        assert spliced[2]["parent_message_uuid"] == phantoms[1].uuid

    def test_human_phantom_tail_before_one_real_message(self):
        real = make_message("only real", "assistant", uuid="r1")
        data = make_conversation_data([real])
        phantoms = make_chain(["old answer", "old question"], start_sender="assistant")
        spliced = splice_phantoms(data, phantoms)["chat_messages"]

        ack_uuid = end_ack_uuid(phantoms[1].uuid)
        assert [r["uuid"] for r in spliced] == [phantoms[0].uuid, phantoms[1].uuid, ack_uuid, "r1"]
        assert [r["index"] for r in spliced] == [0, 1, 2, 3]
        assert spliced[2]["parent_message_uuid"] == phantoms[1].uuid
        assert spliced[3]["parent_message_uuid"] == ack_uuid

    def test_ack_uuid_is_stable(self):
        assert end_ack_uuid("p1") == end_ack_uuid("p1")
        assert end_ack_uuid("p1") != end_ack_uuid("p2")

    def test_missing_timestamps_filled(self):
        _, data = _real_data()
        phantom = Message.from_text("no time")
        spliced = splice_phantoms(data, [phantom], now="2025-06-01T00:00:00+00:00")["chat_messages"]
        assert spliced[0]["created_at"] == "2025-06-01T00:00:00+00:00"
        assert spliced[0]["content"][0]["start_timestamp"] == "2025-06-01T00:00:00+00:00"
        assert spliced[0]["content"][0]["citations"] == []

    def test_phantom_keys_follow_real_message(self):
        _, data = _real_data()
        spliced = splice_phantoms(data, make_chain(["old"], start_sender="assistant"))["chat_messages"]
        assert list(spliced[0])[:len(data["chat_messages"][0])] == list(data["chat_messages"][0])
        assert spliced[0]["stop_reason"] is None

    def test_input_not_modified(self):
        _, data = _real_data()
        before = copy.deepcopy(data)
        splice_phantoms(data, make_chain(["old", "older"]))
        assert data == before

    def test_no_phantoms(self):
        _, data = _real_data()
        assert splice_phantoms(data, [])["chat_messages"] == data["chat_messages"]

    def test_no_real_messages(self):
        data = make_conversation_data([])
        spliced = splice_phantoms(data, make_chain(["a", "b"]))["chat_messages"]
        assert len(spliced) == 2


class TestMarkers:
    def test_inject_uuid_markers_on_assistant_only(self):
        real, data = _real_data()
        marked = inject_uuid_markers(data)["chat_messages"]
        assert marked[0]["content"][0]["text"] == "real question"
        assert marked[1]["content"][0]["text"] == f"real answer\n\n====UUID:{real[1].uuid}===="

    def test_strip_markers(self):
        text = f"answer\n\n{PHANTOM_MARKER}"
        assert strip_markers(text) == "answer"
        uuid = "123e4567-e89b-12d3-a456-426614174000"
        assert strip_markers(f"answer\n\n====UUID:{uuid}====") == "answer"
        assert strip_markers("plain") == "plain"


class TestCorrectCompletionParent:
    def test_last_phantom_parent_repointed(self):
        phantoms = make_chain(["a", "b"])
        body = {"prompt": "x", "parent_message_uuid": phantoms[-1].uuid}
        assert correct_completion_parent(body, phantoms)["parent_message_uuid"] == ROOT_MESSAGE_UUID

    def test_ack_parent_repointed(self):
        phantoms = make_chain(["a"])
        body = {"parent_message_uuid": end_ack_uuid(phantoms[0].uuid)}
        assert correct_completion_parent(body, phantoms)["parent_message_uuid"] == ROOT_MESSAGE_UUID

    def test_other_parents_untouched(self):
        phantoms = make_chain(["a", "b"])
        body = {"parent_message_uuid": phantoms[0].uuid}
        assert correct_completion_parent(body, phantoms) is body
        assert correct_completion_parent(body, []) is body


class TestPhantomOverlay:
    async def test_reads_are_spliced(self, overlay_client, store, fake_host):
        real = make_chain(["real"])
        fake_host.add_conversation(make_conversation_data(real))
        await store.replace("conv-src", make_chain(["old", "older"]))

        raw = await overlay_client.get_conversation("conv-src", tree=True)
        assert len(raw["chat_messages"]) == 1
        spliced = await overlay_client.get_conversation("conv-src", tree=True, apply_interceptors=True)
        assert len(spliced["chat_messages"]) == 3

    async def test_completion_parent_corrected(self, overlay_client, store, fake_host):
        fake_host.add_conversation(make_conversation_data([]))
        phantoms = make_chain(["old", "older"])
        await store.replace("conv-src", phantoms)

        await overlay_client.send_completion(
            "conv-src", {"prompt": "continue", "parent_message_uuid": phantoms[-1].uuid},
        )
        assert fake_host.completions[0][1]["parent_message_uuid"] == ROOT_MESSAGE_UUID

    async def test_uuid_markers_option(self, store, http, fake_host):
        real = make_chain(["q", "a"])
        fake_host.add_conversation(make_conversation_data(real))
        client = HostClient(http, ORG_ID, interceptors=[PhantomOverlay(store, uuid_markers=True)])
        data = await client.get_conversation("conv-src", apply_interceptors=True)
        assert data["chat_messages"][1]["content"][0]["text"].endswith(f"====UUID:{real[1].uuid}====")

    async def test_read_returns_messages(self, host_client, store, fake_host):
        fake_host.add_conversation(make_conversation_data(make_chain(["real"])))
        await store.replace("conv-src", make_chain(["old", "older"]))
        messages = await PhantomOverlay(store).read(host_client, "conv-src")
        assert [m.sender for m in messages] == ["human", "assistant", "human"]
