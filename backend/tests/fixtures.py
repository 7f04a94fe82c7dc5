"""Shared test helpers: message builders, a stub summary oracle, and a fake host."""

import copy
import email.parser
import email.policy
import io
import json
import zipfile
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

import httpx

from chatgraft.models import (
    ROOT_MESSAGE_UUID,
    ContentBlock,
    HostedFile,
    InlineAttachment,
    Message,
    SandboxFile,
    to_wire,
)
from chatgraft.summarize.oracle import OracleRequest, SummaryOracle

ORG_ID = "org-test"
EXPORT_NONCE = "export-nonce"
EXPORT_URL = (
    "https://storage.googleapis.com/user-data-export-production/"
    f"{EXPORT_NONCE}/data.zip?X-Goog-Signature=abc&X-Goog-Expires=600"
)
BASE_TIME = datetime(2025, 1, 1, tzinfo=UTC)


def timestamp(offset_seconds: int = 0) -> str:
    return (BASE_TIME + timedelta(seconds=offset_seconds)).isoformat()


def make_message(
    text: str = "Hello",
    sender: str = "human",
    *,
    uuid: str | None = None,
    parent: str = ROOT_MESSAGE_UUID,
    created_at: str | None = None,
    files: list | None = None,
    content: list[dict] | None = None,
    **fields: Any,
) -> Message:
    """Build a Message with a single text block unless ``content`` is given."""
    blocks = content if content is not None else [{"type": "text", "text": text}]
    return Message(
        uuid=uuid or str(uuid4()),
        parent_message_uuid=parent,
        sender=sender,
        content=[ContentBlock.model_validate(b) for b in blocks],
        files=files or [],
        created_at=created_at or timestamp(),
        **fields,
    )


def make_chain(texts: list[str], start_sender: str = "human", parent: str = ROOT_MESSAGE_UUID) -> list[Message]:
    """Alternating linear chain, one message per text, a second apart."""
    messages: list[Message] = []
    sender = start_sender
    for i, text in enumerate(texts):
        message = make_message(
            text,
            sender,
            parent=messages[-1].uuid if messages else parent,
            created_at=timestamp(i),
            index=i,
        )
        messages.append(message)
        sender = "assistant" if sender == "human" else "human"
    return messages


def make_hosted_file(name: str = "photo.png", kind: str = "image", **fields: Any) -> HostedFile:
    file_uuid = fields.pop("file_uuid", str(uuid4()))
    return HostedFile(
        file_uuid=file_uuid,
        file_name=name,
        file_kind=kind,
        preview_url=f"/api/{ORG_ID}/files/{file_uuid}/preview",
        **fields,
    )


def make_sandbox_file(
    name: str = "data.csv",
    conversation_id: str | None = "conv-src",
    extracted_content: str | None = None,
    **fields: Any,
) -> SandboxFile:
    return SandboxFile(
        path=f"/mnt/user-data/uploads/{name}",
        file_name=name,
        file_uuid=fields.pop("file_uuid", str(uuid4())),
        extracted_content=extracted_content,
        conversation_id=conversation_id,
        **fields,
    )


def make_attachment(name: str = "notes.txt", text: str = "some notes") -> InlineAttachment:
    return InlineAttachment.from_text(text, name)


def make_conversation_data(
    messages: list[Message],
    *,
    uuid: str = "conv-src",
    name: str = "Source Conversation",
    current_leaf: str | None = None,
    **fields: Any,
) -> dict[str, Any]:
    """Host-shaped conversation document for a set of messages."""
    return {
        "uuid": uuid,
        "name": name,
        "model": "claude-sonnet-4-5-20250929",
        "created_at": timestamp(),
        "updated_at": timestamp(3600),
        "current_leaf_message_uuid": current_leaf or (messages[-1].uuid if messages else None),
        "settings": {},
        "chat_messages": [to_wire(m) for m in messages],
        **fields,
    }


class StubOracle(SummaryOracle):
    """Answers every request with a numbered summary and records what it saw."""

    def __init__(self, replies: list[str] | None = None) -> None:
        self.replies = list(replies or [])
        self.requests: list[OracleRequest] = []
        self.opened = False
        self.closed = False

    async def open(self) -> None:
        self.opened = True

    async def submit(self, request: OracleRequest) -> str:
        self.requests.append(request)
        if self.replies:
            return self.replies.pop(0)
        return f"Summary {len(self.requests)}"

    async def close(self) -> None:
        self.closed = True


def _multipart_file(request: httpx.Request) -> tuple[str, bytes]:
    """(file name, bytes) of the single file in a multipart request."""
    header = f"Content-Type: {request.headers['content-type']}\r\n\r\n".encode()
    parsed = email.parser.BytesParser(policy=email.policy.default).parsebytes(header + request.content)
    for part in parsed.iter_parts():
        if part.get_filename():
            return part.get_filename(), part.get_payload(decode=True)
    raise AssertionError("multipart request carries no file")


class FakeHost:
    """In-memory stand-in for the host's REST API, served through httpx.MockTransport.

    Completions append the human turn and an "Acknowledged." reply. Any
    request whose path contains a string in ``fail_paths`` gets a 500. A
    data export archive holds every stored conversation unless
    ``export_archive`` is set.
    """

    REPLY_TEXT = "Acknowledged."

    def __init__(self, org_id: str = ORG_ID) -> None:
        self.org_id = org_id
        self.conversations: dict[str, dict[str, Any]] = {}
        self.assets: dict[str, bytes] = {}
        self.sandbox: dict[tuple[str, str], bytes] = {}
        self.completions: list[tuple[str, dict[str, Any]]] = []
        self.deleted: list[str] = []
        self.uploads: list[str] = []
        self.fail_paths: set[str] = set()
        self.code_execution_default = False
        self.requests: list[httpx.Request] = []
        # Data export: polls answered "still preparing" before the URL appears
        self.export_ready_after = 0
        self.export_polls = 0
        self.export_archive: bytes | None = None

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def add_conversation(self, data: dict[str, Any]) -> str:
        self.conversations[data["uuid"]] = copy.deepcopy(data)
        return data["uuid"]

    def add_asset(self, path: str, data: bytes) -> None:
        self.assets[path] = data

    def build_export_archive(self, conversations: list[dict[str, Any]] | None = None) -> bytes:
        """Zip with a ``conversations.json`` listing the given (default: all) conversations."""
        records = list(self.conversations.values()) if conversations is None else conversations
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:
            archive.writestr("conversations.json", json.dumps(records))
        return buffer.getvalue()

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append(request)
        if any(fragment in path for fragment in self.fail_paths):
            return httpx.Response(500, json={"error": "injected failure"})

        conversations = f"/api/organizations/{self.org_id}/chat_conversations"
        sandbox = f"/api/organizations/{self.org_id}/conversations/"

        if path == conversations:
            if request.method == "POST":
                return self._create(json.loads(request.content))
            return httpx.Response(200, json=[
                {"uuid": c["uuid"], "name": c["name"], "updated_at": c["updated_at"]}
                for c in self.conversations.values()
            ])
        if path.startswith(conversations + "/"):
            rest = path[len(conversations) + 1:]
            conversation_id, _, action = rest.partition("/")
            return self._conversation(request, conversation_id, action)
        if path.startswith(sandbox) and "/wiggle/" in path:
            conversation_id = path[len(sandbox):].split("/", 1)[0]
            return self._wiggle(request, conversation_id)
        if path == f"/api/{self.org_id}/upload":
            return self._upload(request)
        if path == f"/api/{self.org_id}/convert_document":
            file_name, data = _multipart_file(request)
            text = data.decode("utf-8")
            self.uploads.append(file_name)
            return httpx.Response(200, json={
                "file_name": file_name,
                "file_size": len(text),
                "file_type": "text/plain",
                "extracted_content": text,
            })
        if path == f"/api/organizations/{self.org_id}/export_data" and request.method == "POST":
            return httpx.Response(200, json={"nonce": EXPORT_NONCE})
        if path == f"/export/{self.org_id}/download/{EXPORT_NONCE}":
            return self._export_page()
        if path.startswith("/user-data-export-production/"):
            return httpx.Response(200, content=self.export_archive or self.build_export_archive())
        if request.method == "GET" and path in self.assets:
            return httpx.Response(200, content=self.assets[path])
        return httpx.Response(404, json={"error": "not found"})

    def _create(self, body: dict[str, Any]) -> httpx.Response:
        now = datetime.now(UTC).isoformat()
        self.conversations[body["uuid"]] = {
            "uuid": body["uuid"],
            "name": body["name"],
            "model": body.get("model"),
            "project": {"uuid": body["project_uuid"]} if body.get("project_uuid") else None,
            "created_at": now,
            "updated_at": now,
            "current_leaf_message_uuid": None,
            "settings": {"enabled_monkeys_in_a_barrel": self.code_execution_default},
            "chat_messages": [],
        }
        return httpx.Response(201, json={"uuid": body["uuid"]})

    def _conversation(self, request: httpx.Request, conversation_id: str, action: str) -> httpx.Response:
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            return httpx.Response(404, json={"error": "conversation not found"})

        if action == "" and request.method == "GET":
            return httpx.Response(200, json=copy.deepcopy(conversation))
        if action == "" and request.method == "DELETE":
            del self.conversations[conversation_id]
            self.deleted.append(conversation_id)
            return httpx.Response(204)
        if action == "current_leaf_message_uuid":
            conversation["current_leaf_message_uuid"] = json.loads(request.content)["current_leaf_message_uuid"]
            return httpx.Response(202)
        if action == "completion":
            return self._complete(conversation, json.loads(request.content))
        return httpx.Response(404, json={"error": "not found"})

    def _complete(self, conversation: dict[str, Any], body: dict[str, Any]) -> httpx.Response:
        self.completions.append((conversation["uuid"], body))
        messages = conversation["chat_messages"]
        now = datetime.now(UTC)
        human_uuid, reply_uuid = str(uuid4()), str(uuid4())
        messages.append({
            "uuid": human_uuid,
            "text": body["prompt"],
            "content": [{"type": "text", "text": body["prompt"]}],
            "sender": "human",
            "index": len(messages),
            "created_at": now.isoformat(),
            "updated_at": now.isoformat(),
            "truncated": False,
            "attachments": body.get("attachments") or [],
            "files": body.get("files") or [],
            "files_v2": [],
            "sync_sources": [],
            "parent_message_uuid": body["parent_message_uuid"],
        })
        # A second later, so it is always newer than the send time
        later = (now + timedelta(seconds=1)).isoformat()
        messages.append({
            "uuid": reply_uuid,
            "text": self.REPLY_TEXT,
            "content": [{"type": "text", "text": self.REPLY_TEXT}],
            "sender": "assistant",
            "index": len(messages),
            "created_at": later,
            "updated_at": later,
            "truncated": False,
            "attachments": [],
            "files": [],
            "files_v2": [],
            "sync_sources": [],
            "parent_message_uuid": human_uuid,
        })
        conversation["current_leaf_message_uuid"] = reply_uuid
        conversation["updated_at"] = later
        stream = (
            "event: message_start\ndata: {}\n\n"
            "event: content_block_delta\ndata: {}\n\n"
            "event: message_stop\ndata: {}\n\n"
        )
        return httpx.Response(200, text=stream, headers={"content-type": "text/event-stream"})

    def _export_page(self) -> httpx.Response:
        self.export_polls += 1
        if self.export_polls <= self.export_ready_after:
            return httpx.Response(200, text="<html><body>Preparing your export...</body></html>")
        # The page embeds the URL with each & escaped as \u0026
        escaped = EXPORT_URL.replace("&", "\\u0026")
        return httpx.Response(200, text=f'<html><script>self.__next_f.push("{escaped}")</script></html>')

    def _wiggle(self, request: httpx.Request, conversation_id: str) -> httpx.Response:
        if request.url.path.endswith("/upload-file"):
            file_name, data = _multipart_file(request)
            path = f"/mnt/user-data/uploads/{file_name}"
            self.sandbox[(conversation_id, path)] = data
            self.uploads.append(file_name)
            return httpx.Response(200, json={
                "path": path,
                "file_name": file_name,
                "file_uuid": str(uuid4()),
                "size_bytes": len(data),
                "file_kind": "document",
            })
        data = self.sandbox.get((conversation_id, request.url.params.get("path", "")))
        if data is None:
            return httpx.Response(404, json={"error": "no such sandbox file"})
        return httpx.Response(200, content=data)

    def _upload(self, request: httpx.Request) -> httpx.Response:
        file_name, data = _multipart_file(request)
        file_uuid = str(uuid4())
        preview = f"/api/{self.org_id}/files/{file_uuid}/preview"
        self.assets[preview] = data
        self.uploads.append(file_name)
        kind = "document" if file_name.lower().endswith(".pdf") else "image"
        return httpx.Response(200, json={
            "file_uuid": file_uuid,
            "file_name": file_name,
            "file_kind": kind,
            "preview_url": preview,
        })
