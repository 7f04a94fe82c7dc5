"""Zip bundles: tagged text plus the conversation's files.

Layout::

    conversation.txt
    files/{stem}-{id}{ext}              stored files, re-uploaded on import
    files/{stem}-{id}_NOEXTRACT{ext}    inline attachments, for reading only
    warnings.txt                        files that could not be bundled

Inline attachments already travel inside ``conversation.txt``; their
copies are marked so an import does not upload them a second time.
"""

import io
import zipfile
from uuid import NAMESPACE_URL, uuid5

from chatgraft.codecs.models import ImportedConversation
from chatgraft.codecs.tagged_text import parse_tagged_text
from chatgraft.models import HostedFile, MalformedInputError, SandboxFile

BUNDLE_TEXT_NAME = "conversation.txt"
BUNDLE_WARNINGS_NAME = "warnings.txt"
FILES_DIR = "files/"
NOEXTRACT_SUFFIX = "_NOEXTRACT"


def member_name(file_name: str, file_id: str, *, inline: bool = False) -> str:
    """``files/{stem}-{id}{ext}``, with the no-extract marker for inline copies."""
    suffix = NOEXTRACT_SUFFIX if inline else ""
    stem, dot, ext = (file_name or "file").rpartition(".")
    if not dot or not stem:
        return f"{FILES_DIR}{file_name or 'file'}-{file_id}{suffix}"
    return f"{FILES_DIR}{stem}-{file_id}{suffix}.{ext}"


def stored_member_name(file: HostedFile | SandboxFile) -> str:
    if isinstance(file, SandboxFile):
        file_id = file.file_uuid or str(uuid5(NAMESPACE_URL, file.path))
    else:
        file_id = file.file_uuid
    return member_name(file.file_name, file_id)


def inline_member_name(message_uuid: str, file_name: str) -> str:
    file_id = str(uuid5(NAMESPACE_URL, f"{message_uuid}/{file_name}"))
    return member_name(file_name, file_id, inline=True)


def write_bundle(text: str, members: dict[str, bytes], warnings: list[str] | None = None) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(BUNDLE_TEXT_NAME, text)
        for name, data in members.items():
            archive.writestr(name, data)
        if warnings:
            archive.writestr(BUNDLE_WARNINGS_NAME, "\n".join(warnings) + "\n")
    return buffer.getvalue()


def read_bundle(content: bytes) -> ImportedConversation:
    """Parse a bundle, keeping the bytes of every stored file it ships.

    Raises MalformedInputError for archives that are not zip files or lack
    ``conversation.txt``.
    """
    try:
        archive = zipfile.ZipFile(io.BytesIO(content))
    except zipfile.BadZipFile as e:
        raise MalformedInputError(f"Invalid zip bundle: {e}") from e

    with archive:
        names = set(archive.namelist())
        if BUNDLE_TEXT_NAME not in names:
            raise MalformedInputError(f"Bundle has no {BUNDLE_TEXT_NAME}")
        try:
            text = archive.read(BUNDLE_TEXT_NAME).decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedInputError(f"{BUNDLE_TEXT_NAME} is not UTF-8: {e}") from e

        imported = parse_tagged_text(text)
        imported.source_format = "zip"
        for message in imported.messages:
            for file in message.stored_files:
                name = stored_member_name(file)
                if name in names:
                    imported.bundled_files[name] = archive.read(name)
    return imported
