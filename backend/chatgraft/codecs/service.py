"""ExportService and ImportService: conversations to files and back."""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from chatgraft.chatlog import CHATLOG_NAME, build_chatlog
from chatgraft.codecs import bundle
from chatgraft.codecs.detection import detect_import_format, detect_json_format
from chatgraft.codecs.jsonl import format_jsonl
from chatgraft.codecs.librechat import format_librechat, parse_librechat
from chatgraft.codecs.models import ImportedConversation, ImportOptions
from chatgraft.codecs.raw import format_raw, parse_raw
from chatgraft.codecs.schemas import ImportPreview, ImportResult
from chatgraft.codecs.tagged_text import format_tagged_text, parse_tagged_text
from chatgraft.files.rehome import resolve_download_locator
from chatgraft.host.client import HostClient, NetworkError
from chatgraft.host.conversation import Conversation
from chatgraft.models import (
    ROOT_MESSAGE_UUID,
    HostedFile,
    InlineAttachment,
    MalformedInputError,
    Message,
    SandboxFile,
    from_wire,
    strip_tool_calls,
    without_files,
)
from chatgraft.phantom.overlay import strip_markers
from chatgraft.phantom.store import PhantomStore
from chatgraft.tree.paths import active_branch
from chatgraft.utils.json import load_json

logger = logging.getLogger(__name__)

EXPORT_FORMATS = {
    "txt": ("text/plain; charset=utf-8", "txt"),
    "jsonl": ("application/x-ndjson", "jsonl"),
    "librechat": ("application/json", "json"),
    "raw": ("application/json", "json"),
    "zip": ("application/zip", "zip"),
}

IMPORT_PROMPT = (
    "This conversation is imported from the attached chatlog.txt\n"
    "You are Assistant. Simply say 'Acknowledged' and wait for user input."
)

_UNSAFE_FILENAME_RE = re.compile(r"[^\w\- .]+")


def _safe_filename(name: str) -> str:
    return _UNSAFE_FILENAME_RE.sub("_", name).strip() or "conversation"


@dataclass
class ExportArtifact:
    """A rendered export, ready to be sent as a download."""

    content: bytes
    media_type: str
    filename: str
    warnings: list[str] = field(default_factory=list)


def _strip_record_markers(record: dict[str, Any]) -> dict[str, Any]:
    content = []
    for block in record.get("content") or []:
        block = dict(block)
        if isinstance(block.get("text"), str):
            block["text"] = strip_markers(block["text"])
        content.append(block)
    cleaned = {**record, "content": content}
    if isinstance(record.get("text"), str):
        cleaned["text"] = strip_markers(record["text"])
    return cleaned


class ExportService:
    """Renders a conversation, phantoms included, in any export format."""

    def __init__(self, client: HostClient, default_model: str) -> None:
        self._client = client
        self._default_model = default_model

    async def export(self, conversation_id: str, format: str, tree: bool = False) -> ExportArtifact:
        """Export a conversation's active branch, or its whole tree.

        ``tree`` only affects the librechat and raw formats; the text
        formats always hold a single branch.
        """
        if format not in EXPORT_FORMATS:
            raise ValueError(f"Unsupported format: {format}")

        data = await self._client.get_conversation(conversation_id, tree=True, apply_interceptors=True)
        records = [_strip_record_markers(r) for r in data.get("chat_messages") or []]
        data = {**data, "chat_messages": records}
        messages = [from_wire(r, conversation_id) for r in records]
        branch = active_branch(messages, data.get("current_leaf_message_uuid"))
        name = data.get("name") or "Untitled"
        warnings: list[str] = []

        if format == "txt":
            body = format_tagged_text(name, data.get("updated_at"), branch).encode("utf-8")
        elif format == "jsonl":
            body = format_jsonl(branch).encode("utf-8")
        elif format == "librechat":
            model = data.get("model") or self._default_model
            body = format_librechat(name, conversation_id, model, messages if tree else branch).encode("utf-8")
        elif format == "raw":
            if not tree:
                keep = {m.uuid for m in branch}
                data = {**data, "chat_messages": [r for r in records if r.get("uuid") in keep]}
            body = format_raw(data).encode("utf-8")
        else:
            body = await self._bundle(name, data.get("updated_at"), branch, warnings)

        media_type, ext = EXPORT_FORMATS[format]
        logger.info("Exported %s as %s (%d messages)", conversation_id, format, len(branch))
        return ExportArtifact(body, media_type, f"{_safe_filename(name)}.{ext}", warnings)

    async def _bundle(
        self,
        name: str,
        date: str | None,
        branch: list[Message],
        warnings: list[str],
    ) -> bytes:
        members: dict[str, bytes] = {}
        for message in branch:
            for file in message.files:
                if isinstance(file, InlineAttachment):
                    members[bundle.inline_member_name(message.uuid, file.file_name)] = (
                        file.extracted_content.encode("utf-8")
                    )
                    continue
                member = bundle.stored_member_name(file)
                if member in members:
                    continue
                locator = resolve_download_locator(file)
                if locator is None:
                    warnings.append(f"Skipped {file.file_name}: no download location")
                    continue
                try:
                    members[member] = await self._client.download(locator)
                except NetworkError as e:
                    logger.warning("Skipping %s in bundle: %s", file.file_name, e)
                    warnings.append(f"Skipped {file.file_name}: {e}")
        text = format_tagged_text(name, date, branch)
        return bundle.write_bundle(text, members, warnings)


def chain_as_phantoms(messages: list[Message]) -> list[Message]:
    """Fresh ids, a single parent chain from ROOT, and a timestamp on every message."""
    now = datetime.now(UTC).isoformat()
    chained: list[Message] = []
    parent = ROOT_MESSAGE_UUID
    for i, message in enumerate(messages):
        phantom = message.model_copy(update={
            "uuid": str(uuid4()),
            "parent_message_uuid": parent,
            "index": i,
            "created_at": message.created_at or now,
        })
        chained.append(phantom)
        parent = phantom.uuid
    return chained


class ImportService:
    """Parses conversation files and recreates them on the host."""

    def __init__(
        self,
        client: HostClient,
        store: PhantomStore,
        *,
        poll_attempts: int = 30,
        poll_interval: float = 3.0,
    ) -> None:
        self._client = client
        self._store = store
        self._poll_attempts = poll_attempts
        self._poll_interval = poll_interval

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def parse(self, content: bytes, filename: str) -> ImportedConversation:
        """Parse an uploaded file in whichever format it is in."""
        fmt = detect_import_format(content, filename)
        if fmt == "zip":
            return bundle.read_bundle(content)
        if fmt == "txt":
            try:
                return parse_tagged_text(content.decode("utf-8"))
            except UnicodeDecodeError as e:
                raise MalformedInputError(f"{filename} is not UTF-8 text: {e}") from e

        data = load_json(content, filename)
        if detect_json_format(data) == "raw":
            return parse_raw(data)
        return parse_librechat(data)

    def preview(self, content: bytes, filename: str) -> ImportPreview:
        imported = self.parse(content, filename)
        return ImportPreview(
            name=imported.name,
            source_format=imported.source_format,
            message_count=len(imported.messages),
            first_messages=[m.text[:200] for m in imported.messages[:5]],
            warnings=imported.warnings,
        )

    async def import_conversation(
        self,
        imported: ImportedConversation,
        options: ImportOptions | None = None,
    ) -> ImportResult:
        """Create a conversation that continues the imported one.

        The new conversation gets one turn carrying the whole history as a
        chatlog attachment plus the re-homed files; the imported messages
        themselves become its phantoms.
        """
        options = options or ImportOptions()
        model = options.model or imported.model
        messages = self._apply_options(imported.messages, options)

        conversation = self._conversation()
        conversation_id = await conversation.create(imported.name, model=model)
        messages, warnings = await self._rehome_files(messages, conversation, imported.bundled_files)

        chatlog = InlineAttachment.from_text(build_chatlog(messages, role_labels=False), CHATLOG_NAME)
        stored = [f for m in messages for f in m.stored_files]
        turn = Message.from_text(IMPORT_PROMPT, files=[chatlog, *stored], model=model)
        await conversation.send_and_wait(turn)

        phantoms = chain_as_phantoms(messages)
        await self._store.replace(conversation_id, phantoms)
        logger.info("Imported %s as %s (%d messages)", imported.name, conversation_id, len(phantoms))
        return ImportResult(
            conversation_id=conversation_id,
            name=imported.name,
            message_count=len(phantoms),
            warnings=[*imported.warnings, *warnings],
        )

    async def replace_phantoms(
        self,
        conversation_id: str,
        imported: ImportedConversation,
        options: ImportOptions | None = None,
    ) -> ImportResult:
        """Overwrite an existing conversation's phantoms with the imported messages."""
        options = options or ImportOptions()
        messages = self._apply_options(imported.messages, options)
        conversation = self._conversation(conversation_id)
        messages, warnings = await self._rehome_files(messages, conversation, imported.bundled_files)

        phantoms = chain_as_phantoms(messages)
        await self._store.replace(conversation_id, phantoms)
        return ImportResult(
            conversation_id=conversation_id,
            name=imported.name,
            message_count=len(phantoms),
            warnings=[*imported.warnings, *warnings],
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _conversation(self, conversation_id: str | None = None) -> Conversation:
        return Conversation(
            self._client,
            conversation_id,
            poll_attempts=self._poll_attempts,
            poll_interval=self._poll_interval,
        )

    @staticmethod
    def _apply_options(messages: list[Message], options: ImportOptions) -> list[Message]:
        if not options.include_files:
            messages = [without_files(m) for m in messages]
        if not options.include_tool_calls:
            messages = [strip_tool_calls(m) for m in messages]
        return messages

    async def _rehome_files(
        self,
        messages: list[Message],
        target: Conversation,
        bundled: dict[str, bytes],
    ) -> tuple[list[Message], list[str]]:
        """Move every stored file into ``target``.

        Downloads run one at a time; the uploads then run together. Files
        that fail either step are dropped with a warning.
        """
        warnings: list[str] = []
        pending: dict[str, tuple[HostedFile | SandboxFile, bytes]] = {}
        for message in messages:
            for file in message.stored_files:
                key = bundle.stored_member_name(file)
                if key in pending:
                    continue
                data = bundled.get(key)
                if data is None:
                    data = await self._download(file, warnings)
                if data is not None:
                    pending[key] = (file, data)

        if not pending:
            return [self._replace_stored(m, {}) for m in messages], warnings

        code_execution = await target.code_execution_enabled()
        keys = list(pending)
        uploaded = await asyncio.gather(*(
            self._upload(target, pending[k][1], pending[k][0].file_name, code_execution, warnings)
            for k in keys
        ))
        moved = {k: f for k, f in zip(keys, uploaded) if f is not None}
        return [self._replace_stored(m, moved) for m in messages], warnings

    async def _download(self, file: HostedFile | SandboxFile, warnings: list[str]) -> bytes | None:
        locator = resolve_download_locator(file)
        if locator is None:
            warnings.append(f"Skipped {file.file_name}: no download location")
            return None
        try:
            return await self._client.download(locator)
        except NetworkError as e:
            logger.warning("Failed to download %s: %s", file.file_name, e)
            warnings.append(f"Skipped {file.file_name}: {e}")
            return None

    async def _upload(
        self,
        target: Conversation,
        data: bytes,
        file_name: str,
        code_execution: bool,
        warnings: list[str],
    ) -> HostedFile | SandboxFile | InlineAttachment | None:
        try:
            if code_execution:
                return await target.upload_to_sandbox(data, file_name)
            return await self._client.upload_file(data, file_name)
        except NetworkError as e:
            logger.warning("Failed to upload %s: %s", file_name, e)
            warnings.append(f"Skipped {file_name}: {e}")
            return None

    @staticmethod
    def _replace_stored(message: Message, moved: dict[str, Any]) -> Message:
        files = []
        for file in message.files:
            if isinstance(file, InlineAttachment):
                files.append(file)
                continue
            replacement = moved.get(bundle.stored_member_name(file))
            if replacement is not None:
                files.append(replacement)
        return message.model_copy(update={"files": files})
