"""Pydantic schemas for the import/export API."""

from pydantic import BaseModel


class ImportResult(BaseModel):
    conversation_id: str
    name: str
    message_count: int
    warnings: list[str]


class ImportPreview(BaseModel):
    name: str
    source_format: str
    message_count: int
    first_messages: list[str]
    warnings: list[str]
