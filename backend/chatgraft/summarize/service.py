"""Chunked summarization with a user review step.

A session moves IDLE -> CHUNKING -> SUMMARIZING -> USER_REVIEW, then either
FINALIZING -> DONE or CANCELLED. An oracle failure moves it to FAILED. The
oracle is opened before chunking and closed when the run ends, whatever the
outcome, so a scratch conversation never outlives its run.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from chatgraft.chatlog import CHATLOG_NAME, build_chatlog
from chatgraft.chunking.chunker import partition_into_chunks
from chatgraft.chunking.tokens import estimate_tokens
from chatgraft.models import ROOT_MESSAGE_UUID, InlineAttachment, Message
from chatgraft.summarize.oracle import OracleRequest, SummaryOracle
from chatgraft.summarize.prompts import SummaryPrompts, load_prompts

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class PipelineState(str, Enum):
    IDLE = "idle"
    CHUNKING = "chunking"
    SUMMARIZING = "summarizing"
    USER_REVIEW = "user_review"
    FINALIZING = "finalizing"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


class SummaryCancelledError(Exception):
    """Raised when the user cancels during summary review."""

    def __init__(self) -> None:
        super().__init__("Summarization cancelled during review")


@dataclass
class SummaryOptions:
    """How summaries are requested and what the synthetic turns carry."""

    prompt: str | None = None
    include_attachments: bool = True
    include_tool_calls: bool = True
    keep_files_from_summarized: bool = False
    keep_tool_calls_from_summarized: bool = False


def summary_attachment_name(index: int) -> str:
    return f"summary_chunk_{index + 1}.txt"


class SummarizationSession:
    """State of one summarization run over a message sequence."""

    def __init__(
        self,
        oracle: SummaryOracle,
        messages: list[Message],
        options: SummaryOptions,
        prompts: SummaryPrompts,
        progress: ProgressCallback | None = None,
    ) -> None:
        self.oracle = oracle
        self.messages = list(messages)
        self.options = options
        self.prompts = prompts
        self.progress = progress
        self.state = PipelineState.IDLE
        self.chunks: list[list[Message]] = []
        self.summaries: list[str] = []

    def _require(self, *states: PipelineState) -> None:
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise RuntimeError(f"Session is {self.state.value}; expected {allowed}")

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _chunk_request(self, prompt: str, chunk: list[Message], prior: list[str]) -> OracleRequest:
        attachments = [
            InlineAttachment.from_text(text, summary_attachment_name(i))
            for i, text in enumerate(prior)
        ]
        attachments.extend(a for m in chunk for a in m.inline_attachments)
        attachments.append(InlineAttachment.from_text(build_chatlog(chunk, role_labels=True), CHATLOG_NAME))
        return OracleRequest(
            prompt=prompt,
            attachments=attachments,
            files=[f for m in chunk for f in m.stored_files],
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def summarize(self) -> list[str]:
        """Chunk the sequence and summarize each chunk in order."""
        self._require(PipelineState.IDLE)
        try:
            self.state = PipelineState.CHUNKING
            self.chunks = partition_into_chunks(self.messages)
            total = estimate_tokens(self.messages)
            logger.info("Summarizing %d tokens in %d chunk(s)", total, len(self.chunks))

            self.state = PipelineState.SUMMARIZING
            processed = 0
            for chunk in self.chunks:
                prompt = self.prompts.build_summary_prompt(
                    len(self.summaries),
                    self.options.include_attachments,
                    base=self.options.prompt,
                )
                request = self._chunk_request(prompt, chunk, self.summaries)
                self.summaries.append(await self.oracle.submit(request))
                processed += estimate_tokens(chunk)
                if self.progress is not None:
                    self.progress(processed, total)
        except Exception:
            self.state = PipelineState.FAILED
            raise

        self.state = PipelineState.USER_REVIEW
        return list(self.summaries)

    def edit(self, index: int, text: str) -> None:
        """Replace summary ``index`` with user-written text."""
        self._require(PipelineState.USER_REVIEW)
        self.summaries[index] = text

    async def revise(self, index: int, instruction: str) -> str:
        """Ask the oracle to rewrite summary ``index`` following ``instruction``.

        The request carries the earlier (possibly edited) summaries and the
        chunk's own materials, like the original summary request did.
        """
        self._require(PipelineState.USER_REVIEW)
        prompt = self.prompts.build_rewrite_prompt(self.summaries[index], instruction)
        request = self._chunk_request(prompt, self.chunks[index], self.summaries[:index])
        revised = await self.oracle.submit(request)
        self.summaries[index] = revised
        return revised

    def cancel(self) -> None:
        """Abandon the run. Raises SummaryCancelledError."""
        self._require(PipelineState.USER_REVIEW)
        self.state = PipelineState.CANCELLED
        raise SummaryCancelledError()

    def finalize(self, tail: list[Message] | None = None) -> list[Message]:
        """Turn the reviewed summaries into human/assistant turn pairs.

        Pairs are chained from ROOT. ``tail`` (messages kept verbatim after
        the summarized section) is appended with its first message
        re-parented onto the last pair.
        """
        self._require(PipelineState.USER_REVIEW)
        self.state = PipelineState.FINALIZING

        options = self.options
        carry_files = options.include_attachments and options.keep_files_from_summarized
        carry_tools = options.include_tool_calls and options.keep_tool_calls_from_summarized
        stored = [f for m in self.messages for f in m.stored_files]
        inline = [a for m in self.messages for a in m.inline_attachments]
        tool_calls = [b.model_copy() for m in self.messages for b in m.tool_calls]
        timestamp = datetime.now(UTC).isoformat()

        synthetic: list[Message] = []
        for i, text in enumerate(self.summaries):
            is_first, is_last = i == 0, i == len(self.summaries) - 1
            human = Message.from_text(
                text,
                sender="human",
                parent_message_uuid=synthetic[-1].uuid if synthetic else ROOT_MESSAGE_UUID,
                created_at=timestamp,
                files=[*stored, *inline] if is_first and carry_files else [],
            )
            assistant = Message.from_text(
                self.prompts.summary_ack,
                sender="assistant",
                parent_message_uuid=human.uuid,
                created_at=timestamp,
            )
            if is_last and carry_tools:
                assistant.content.extend(tool_calls)
            synthetic.extend([human, assistant])

        result = synthetic + list(tail or [])
        if tail and synthetic:
            result[len(synthetic)] = tail[0].model_copy(
                update={"parent_message_uuid": synthetic[-1].uuid}
            )
        self.state = PipelineState.DONE
        return result


class SummaryReviewer(ABC):
    """Decides what happens to drafted summaries before they are used."""

    @abstractmethod
    async def review(self, session: SummarizationSession) -> bool:
        """Edit or revise summaries through ``session``; return False to cancel."""
        ...


class AcceptAllReviewer(SummaryReviewer):
    """Accepts the drafts unchanged."""

    async def review(self, session: SummarizationSession) -> bool:
        return True


class PresetReviewer(SummaryReviewer):
    """Applies summaries supplied up front (e.g. edited by a client), then accepts."""

    def __init__(self, edits: dict[int, str]) -> None:
        self._edits = edits

    async def review(self, session: SummarizationSession) -> bool:
        for index, text in self._edits.items():
            if 0 <= index < len(session.summaries):
                session.edit(index, text)
            else:
                logger.warning("Ignoring edit for missing summary %d", index)
        return True


class SummaryService:
    """Runs summarization sessions against a fresh oracle each time."""

    def __init__(
        self,
        oracle_factory: Callable[[], SummaryOracle],
        prompts: SummaryPrompts | None = None,
    ) -> None:
        self._oracle_factory = oracle_factory
        self.prompts = prompts or load_prompts()

    async def summarize(
        self,
        messages: list[Message],
        options: SummaryOptions | None = None,
        *,
        reviewer: SummaryReviewer | None = None,
        progress: ProgressCallback | None = None,
        tail: list[Message] | None = None,
    ) -> tuple[list[Message], list[str]]:
        """Summarize ``messages`` and return (synthetic turns + tail, summaries)."""
        oracle = self._oracle_factory()
        session = SummarizationSession(oracle, messages, options or SummaryOptions(), self.prompts, progress)
        await oracle.open()
        try:
            await session.summarize()
            if not await (reviewer or AcceptAllReviewer()).review(session):
                session.cancel()
            result = session.finalize(tail)
            return result, list(session.summaries)
        finally:
            await oracle.close()
