"""Text-generation backends used to write summaries.

The pipeline only needs "send this prompt plus these attachments, get text
back". Two implementations: a disposable scratch conversation on the host,
and the Anthropic Messages API called directly.
"""

import logging
from abc import ABC, abstractmethod
from datetime import UTC, datetime

from pydantic import BaseModel, Field

from chatgraft.files.rehome import rehome_all
from chatgraft.host.client import HostClient
from chatgraft.host.conversation import Conversation
from chatgraft.models import HostedFile, InlineAttachment, Message, SandboxFile, extract_text

logger = logging.getLogger(__name__)

FAST_MODEL = "claude-haiku-4-5-20251001"


class OracleRequest(BaseModel):
    """One summarization or rewrite request."""

    prompt: str
    attachments: list[InlineAttachment] = Field(default_factory=list)
    files: list[HostedFile | SandboxFile] = Field(default_factory=list)


class SummaryOracle(ABC):
    """Interface for the backend that answers summary requests."""

    async def open(self) -> None:
        """Acquire whatever the backend needs. Called once before any submit."""

    @abstractmethod
    async def submit(self, request: OracleRequest) -> str:
        """Return the generated text for a request."""
        ...

    async def close(self) -> None:
        """Release backend resources. Always called, even after a failure."""


class HostConversationOracle(SummaryOracle):
    """Summarizes through a scratch conversation that is deleted afterwards."""

    def __init__(
        self,
        client: HostClient,
        *,
        model: str = FAST_MODEL,
        poll_attempts: int = 30,
        poll_interval: float = 3.0,
    ) -> None:
        self._client = client
        self._model = model
        self._poll_attempts = poll_attempts
        self._poll_interval = poll_interval
        self.conversation: Conversation | None = None

    async def open(self) -> None:
        conversation = Conversation(
            self._client,
            poll_attempts=self._poll_attempts,
            poll_interval=self._poll_interval,
        )
        name = f"Temp_Summary_{int(datetime.now(UTC).timestamp() * 1000)}"
        await conversation.create(name, model=self._model)
        self.conversation = conversation

    async def submit(self, request: OracleRequest) -> str:
        if self.conversation is None:
            raise RuntimeError("Oracle has not been opened")
        files, warnings = await rehome_all(list(request.files), self.conversation)
        for warning in warnings:
            logger.warning("Summary request continues without a file: %s", warning)

        turn = Message.from_text(
            request.prompt,
            files=[*request.attachments, *files],
        )
        # Each request is an independent root turn in the scratch conversation
        reply = await self.conversation.send_and_wait(turn)
        return extract_text(reply)

    async def close(self) -> None:
        if self.conversation is not None and self.conversation.conversation_id:
            await self.conversation.delete()
        self.conversation = None


class AnthropicOracle(SummaryOracle):
    """Summarizes with a direct Messages API call.

    Inline attachments are sent as text parts; stored files cannot be
    forwarded and are skipped with a warning.
    """

    def __init__(self, client: object, *, model: str = FAST_MODEL, max_tokens: int = 8192) -> None:
        self._client = client
        self._model = model
        self._max_tokens = max_tokens

    async def submit(self, request: OracleRequest) -> str:
        if request.files:
            logger.warning(
                "Direct summarization cannot forward %d stored file(s); skipping them",
                len(request.files),
            )
        content = [
            {
                "type": "text",
                "text": f"<document name=\"{a.file_name}\">\n{a.extracted_content}\n</document>",
            }
            for a in request.attachments
        ]
        content.append({"type": "text", "text": request.prompt})

        response = await self._client.messages.create(
            model=self._model,
            max_tokens=self._max_tokens,
            messages=[{"role": "user", "content": content}],
        )
        return response.content[0].text.strip()
