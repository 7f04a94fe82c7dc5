"""Request and response schemas for bookmark endpoints."""

from typing import Annotated

from pydantic import BaseModel, Field, StringConstraints

from chatgraft.tree.paths import BookmarkNode

BookmarkName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class CreateBookmarkRequest(BaseModel):
    name: BookmarkName
    leaf_uuid: Annotated[str, StringConstraints(min_length=1)]


class BookmarkResponse(BaseModel):
    name: str
    leaf_uuid: str


class BookmarkListResponse(BaseModel):
    conversation_id: str
    bookmarks: list[BookmarkResponse]


class BookmarkTreeNode(BaseModel):
    name: str
    leaf_uuid: str
    depth: int
    children: list["BookmarkTreeNode"] = Field(default_factory=list)

    @classmethod
    def from_node(cls, node: BookmarkNode) -> "BookmarkTreeNode":
        return cls(
            name=node.name,
            leaf_uuid=node.leaf_uuid,
            depth=node.depth,
            children=[cls.from_node(child) for child in node.children],
        )


class BookmarkTreeResponse(BaseModel):
    conversation_id: str
    nodes: list[BookmarkTreeNode]
