"""Request and response schemas for the fork endpoint."""

from pydantic import BaseModel, Field


class ForkRequest(BaseModel):
    """Request body for POST /api/conversations/{conversation_id}/fork."""

    message_id: str
    model: str | None = None
    raw_text_percentage: int = Field(default=100, ge=0, le=100)
    include_files: bool = True
    include_tool_calls: bool = True
    keep_files_from_summarized: bool = False
    keep_tool_calls_from_summarized: bool = False
    summary_prompt: str | None = None
    # Replacement text per summary index, applied before the fork is created
    summary_edits: dict[int, str] = Field(default_factory=dict)


class ForkResponse(BaseModel):
    conversation_id: str
    name: str
    phantom_count: int
    summaries: list[str]
    warnings: list[str]
