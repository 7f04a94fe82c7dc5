"""HTTP status codes for the exceptions services raise."""

from fastapi import HTTPException

from chatgraft.bookmarks.store import BookmarkNotFoundError, DuplicateBookmarkError
from chatgraft.files.rehome import RehomeError
from chatgraft.host.client import NetworkError
from chatgraft.models import InvalidTurnError, MalformedInputError
from chatgraft.summarize.service import SummaryCancelledError
from chatgraft.tree.paths import BrokenChainError

STATUS_CODES: list[tuple[type[Exception], int]] = [
    (MalformedInputError, 422),
    (InvalidTurnError, 422),
    (BookmarkNotFoundError, 404),
    (DuplicateBookmarkError, 409),
    (BrokenChainError, 409),
    (SummaryCancelledError, 409),
    (NetworkError, 502),
    (RehomeError, 502),
]

DomainError = tuple(error_type for error_type, _ in STATUS_CODES)


def http_error(e: Exception) -> HTTPException:
    for error_type, status_code in STATUS_CODES:
        if isinstance(e, error_type):
            return HTTPException(status_code=status_code, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))
