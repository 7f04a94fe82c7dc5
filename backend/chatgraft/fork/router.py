"""Fork API route."""

from fastapi import APIRouter, Depends, status

from chatgraft.errors import DomainError, http_error
from chatgraft.fork.schemas import ForkRequest, ForkResponse
from chatgraft.fork.service import ForkOptions, ForkService
from chatgraft.summarize.service import AcceptAllReviewer, PresetReviewer

router = APIRouter(prefix="/api/conversations", tags=["fork"])


def get_fork_service() -> ForkService:
    """Dependency placeholder — overridden at startup."""
    raise RuntimeError("ForkService not configured")


@router.post("/{conversation_id}/fork", status_code=status.HTTP_201_CREATED)
async def fork_conversation(
    conversation_id: str,
    request: ForkRequest,
    service: ForkService = Depends(get_fork_service),
) -> ForkResponse:
    """Fork a conversation at a message into a new conversation."""
    options = ForkOptions(
        model=request.model,
        raw_text_percentage=request.raw_text_percentage,
        include_files=request.include_files,
        include_tool_calls=request.include_tool_calls,
        keep_files_from_summarized=request.keep_files_from_summarized,
        keep_tool_calls_from_summarized=request.keep_tool_calls_from_summarized,
        summary_prompt=request.summary_prompt,
    )
    reviewer = PresetReviewer(request.summary_edits) if request.summary_edits else AcceptAllReviewer()
    try:
        return await service.fork(conversation_id, request.message_id, options, reviewer=reviewer)
    except DomainError as e:
        raise http_error(e) from e
