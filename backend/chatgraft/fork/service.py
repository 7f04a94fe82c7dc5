"""ForkService: continue a conversation from one of its messages in a new one.

The new conversation starts with a single turn whose attachments carry the
history (verbatim as a chatlog, or partly summarized). The history itself
is stored as the new conversation's phantoms so it shows up when the
conversation is read.
"""

import logging
import math
from dataclasses import dataclass, field

from chatgraft.chatlog import CHATLOG_NAME, build_chatlog
from chatgraft.chunking.chunker import normalize_oversized_messages
from chatgraft.chunking.tokens import estimate_tokens, take_from_end
from chatgraft.files.rehome import rehome_all, text_file_for
from chatgraft.fork.schemas import ForkResponse
from chatgraft.host.client import HostClient
from chatgraft.host.conversation import Conversation
from chatgraft.models import (
    InlineAttachment,
    Message,
    dedupe_by_filename,
    from_wire,
    strip_tool_calls,
    without_files,
)
from chatgraft.phantom.store import DEFAULT_TIMEOUT, PhantomStore
from chatgraft.summarize.service import (
    ProgressCallback,
    SummaryOptions,
    SummaryReviewer,
    SummaryService,
    summary_attachment_name,
)
from chatgraft.tree.alternation import repair_alternation
from chatgraft.tree.paths import extract_ancestor_path

logger = logging.getLogger(__name__)

FORK_PROMPT = (
    "This conversation is forked from the attached chatlog.txt. "
    "Simply say 'Acknowledged' and wait for user input."
)

# Attachments describing the history itself; kept even when files are dropped
HISTORY_ATTACHMENT_PREFIXES = ("chatlog", "summary_chunk_")


@dataclass
class ForkOptions:
    """How much of the history stays verbatim and what it carries."""

    model: str | None = None
    raw_text_percentage: int = 100
    include_files: bool = True
    include_tool_calls: bool = True
    keep_files_from_summarized: bool = False
    keep_tool_calls_from_summarized: bool = False
    summary_prompt: str | None = None


@dataclass
class ForkPlan:
    """The fork's history and the attachments describing it."""

    messages: list[Message]
    attachments: list[tuple[str, str]] = field(default_factory=list)  # (file name, text)
    summaries: list[str] = field(default_factory=list)


def filter_for_chatlog(messages: list[Message], include_files: bool, include_tool_calls: bool) -> list[Message]:
    messages = list(messages)
    if not include_files:
        messages = [without_files(m) for m in messages]
    if not include_tool_calls:
        messages = [strip_tool_calls(m) for m in messages]
    return messages


def _is_history_attachment(file: object) -> bool:
    return isinstance(file, InlineAttachment) and file.file_name.startswith(HISTORY_ATTACHMENT_PREFIXES)


def reparent(message: Message, parent_uuid: str) -> Message:
    return message.model_copy(update={"parent_message_uuid": parent_uuid})


class ForkService:
    def __init__(
        self,
        client: HostClient,
        store: PhantomStore,
        summaries: SummaryService,
        *,
        phantom_timeout: float = DEFAULT_TIMEOUT,
        poll_attempts: int = 30,
        poll_interval: float = 3.0,
    ) -> None:
        self._client = client
        self._store = store
        self._summaries = summaries
        self._phantom_timeout = phantom_timeout
        self._poll_attempts = poll_attempts
        self._poll_interval = poll_interval

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def fork(
        self,
        conversation_id: str,
        message_id: str,
        options: ForkOptions | None = None,
        *,
        reviewer: SummaryReviewer | None = None,
        progress: ProgressCallback | None = None,
    ) -> ForkResponse:
        """Fork ``conversation_id`` at ``message_id`` into a new conversation.

        Raises BrokenChainError when ``message_id`` is not in the
        conversation and SummaryCancelledError when the reviewer cancels.
        """
        options = options or ForkOptions()
        source = self._conversation(conversation_id)
        data = await source.get_data(tree=True, force_refresh=True)
        messages = extract_ancestor_path(
            [from_wire(r, conversation_id) for r in data.get("chat_messages") or []],
            message_id,
        )
        phantoms = await self._store.get_with_timeout(conversation_id, self._phantom_timeout) or []
        logger.info(
            "Forking %s at %s (%d messages, %d phantoms)",
            conversation_id, message_id, len(messages), len(phantoms),
        )

        plan = None
        if options.raw_text_percentage < 100:
            plan = await self._summarized_plan(messages, phantoms, options, reviewer, progress)
        if plan is None:
            plan = self._verbatim_plan(messages, phantoms, options)

        history = [self._apply_toggles(m, options) for m in plan.messages]
        return await self._create_fork(data, history, plan, options)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _verbatim_plan(
        self,
        messages: list[Message],
        phantoms: list[Message],
        options: ForkOptions,
    ) -> ForkPlan:
        """Whole history as a chatlog; every existing phantom is carried over."""
        messages = filter_for_chatlog(messages, options.include_files, options.include_tool_calls)
        chatlog = build_chatlog(messages, role_labels=False)
        if phantoms and messages:
            messages[0] = reparent(messages[0], phantoms[-1].uuid)
        return ForkPlan(messages=[*phantoms, *messages], attachments=[(CHATLOG_NAME, chatlog)])

    async def _summarized_plan(
        self,
        messages: list[Message],
        phantoms: list[Message],
        options: ForkOptions,
        reviewer: SummaryReviewer | None,
        progress: ProgressCallback | None,
    ) -> ForkPlan | None:
        """Summarize the head of the history and keep the tail verbatim.

        Returns None when nothing falls before the verbatim window.
        """
        messages = normalize_oversized_messages(messages)
        total = estimate_tokens(messages)
        target = math.ceil(total * options.raw_text_percentage / 100)
        split = len(messages) - take_from_end(messages, target, greedy=True)
        while split < len(messages) and messages[split].sender != "human":
            split += 1
        if split >= len(messages):
            split = 0

        to_summarize = messages[:split]
        if not to_summarize:
            return None
        to_keep = filter_for_chatlog(messages[split:], options.include_files, options.include_tool_calls)

        # Phantoms precede the real messages; those past the summarized
        # token count stay verbatim
        carried: list[Message] = []
        phantom_tokens = estimate_tokens(phantoms)
        summarized_tokens = estimate_tokens(to_summarize)
        if phantoms and summarized_tokens < phantom_tokens:
            keep = take_from_end(phantoms, phantom_tokens - summarized_tokens, greedy=True)
            carried = list(phantoms[-keep:])
            logger.info("Carrying over %d phantom messages", len(carried))

        summary_messages, summaries = await self._summaries.summarize(
            to_summarize,
            SummaryOptions(
                prompt=options.summary_prompt,
                include_attachments=options.include_files,
                include_tool_calls=options.include_tool_calls,
                keep_files_from_summarized=options.keep_files_from_summarized,
                keep_tool_calls_from_summarized=options.keep_tool_calls_from_summarized,
            ),
            reviewer=reviewer,
            progress=progress,
        )
        attachments = [(summary_attachment_name(i), text) for i, text in enumerate(summaries)]

        previous = summary_messages[-1].uuid
        if carried:
            carried[0] = reparent(carried[0], previous)
            previous = carried[-1].uuid
        if to_keep:
            to_keep[0] = reparent(to_keep[0], previous)
            attachments.append((CHATLOG_NAME, build_chatlog(to_keep, role_labels=False)))

        return ForkPlan(
            messages=[*summary_messages, *carried, *to_keep],
            attachments=attachments,
            summaries=summaries,
        )

    @staticmethod
    def _apply_toggles(message: Message, options: ForkOptions) -> Message:
        if not options.include_files:
            message = without_files(message, keep=_is_history_attachment)
        if not options.include_tool_calls:
            message = strip_tool_calls(message)
        return message

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _conversation(self, conversation_id: str | None = None) -> Conversation:
        return Conversation(
            self._client,
            conversation_id,
            poll_attempts=self._poll_attempts,
            poll_interval=self._poll_interval,
        )

    async def _create_fork(
        self,
        source_data: dict,
        history: list[Message],
        plan: ForkPlan,
        options: ForkOptions,
    ) -> ForkResponse:
        name = f"Fork of {(source_data.get('name') or '').strip() or 'Untitled'}"
        project = source_data.get("project") or {}
        project_uuid = project.get("uuid") or source_data.get("project_uuid")

        target = self._conversation()
        new_id = await target.create(name, model=options.model, project_uuid=project_uuid)
        phantoms = repair_alternation(history)
        await self._store.replace(new_id, phantoms)

        files = [
            await text_file_for(target, text, file_name, force_inline=True)
            for file_name, text in plan.attachments
        ]
        stored = dedupe_by_filename([f for m in history for f in m.stored_files])
        moved, warnings = await rehome_all(stored, target)
        files.extend(moved)

        turn = Message.from_text(FORK_PROMPT, files=files, model=options.model)
        await target.send_and_wait(turn)
        logger.info("Created fork %s with %d phantom messages", new_id, len(phantoms))
        return ForkResponse(
            conversation_id=new_id,
            name=name,
            phantom_count=len(phantoms),
            summaries=plan.summaries,
            warnings=warnings,
        )
