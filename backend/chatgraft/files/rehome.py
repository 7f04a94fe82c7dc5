"""Moving file references from one conversation into another.

Files belong to the scope they were uploaded in. Before a file can be
attached to a message in a different conversation it is downloaded and
uploaded again there: into the target's sandbox when the target has code
execution enabled, otherwise into the hosted file store.
"""

import logging

from chatgraft.host.client import NetworkError, sandbox_locator
from chatgraft.host.conversation import Conversation
from chatgraft.models import HostedFile, InlineAttachment, SandboxFile

logger = logging.getLogger(__name__)

FileVariant = HostedFile | SandboxFile | InlineAttachment


class RehomeError(Exception):
    """Raised when a file cannot be moved into a target conversation."""

    def __init__(self, file_name: str, reason: str) -> None:
        self.file_name = file_name
        super().__init__(f"Could not re-home {file_name or 'unnamed file'}: {reason}")


def resolve_download_locator(file: FileVariant) -> str | None:
    """Pick the URL (or sandbox locator) to download a file from.

    Hosted files try, in order: preview asset, document asset, preview URL,
    thumbnail asset, thumbnail URL. Sandbox files need their conversation
    scope. Inline attachments have nothing to download.
    """
    if isinstance(file, HostedFile):
        for asset in (file.preview_asset, file.document_asset):
            if asset and asset.get("url"):
                return asset["url"]
        if file.preview_url:
            return file.preview_url
        if file.thumbnail_asset and file.thumbnail_asset.get("url"):
            return file.thumbnail_asset["url"]
        return file.thumbnail_url or None
    if isinstance(file, SandboxFile):
        if not file.conversation_id:
            return None
        return sandbox_locator(file.conversation_id, file.path)
    if isinstance(file, InlineAttachment):
        return None
    raise TypeError(f"Unknown file variant: {type(file).__name__}")


async def text_file_for(
    target: Conversation,
    text: str,
    file_name: str,
    force_inline: bool = False,
) -> SandboxFile | InlineAttachment:
    """Turn text into a file attachable to a message in ``target``.

    Uploaded to the sandbox when the target has code execution enabled,
    unless ``force_inline`` is set; otherwise an inline attachment.
    """
    if not force_inline and await target.code_execution_enabled():
        try:
            return await target.upload_to_sandbox(text.encode("utf-8"), file_name)
        except NetworkError as e:
            raise RehomeError(file_name, str(e)) from e
    return InlineAttachment.from_text(text, file_name)


async def rehome(file: FileVariant, target: Conversation) -> FileVariant:
    """Return an equivalent file usable in ``target``. The source is not modified."""
    code_execution = await target.code_execution_enabled()

    if isinstance(file, InlineAttachment):
        if not code_execution:
            return file
        data = file.extracted_content.encode("utf-8")
    else:
        locator = resolve_download_locator(file)
        if locator is None:
            raise RehomeError(file.file_name, "no download location")
        try:
            data = await target.client.download(locator)
        except NetworkError as e:
            raise RehomeError(file.file_name, str(e)) from e

    try:
        if code_execution:
            return await target.upload_to_sandbox(data, file.file_name)
        return await target.client.upload_file(data, file.file_name)
    except NetworkError as e:
        raise RehomeError(file.file_name, str(e)) from e


async def rehome_all(files: list[FileVariant], target: Conversation) -> tuple[list[FileVariant], list[str]]:
    """Re-home files one by one, skipping failures.

    Returns the re-homed files and a warning per skipped file.
    """
    moved: list[FileVariant] = []
    warnings: list[str] = []
    for file in files:
        try:
            moved.append(await rehome(file, target))
        except RehomeError as e:
            logger.warning("%s", e)
            warnings.append(str(e))
    return moved, warnings
