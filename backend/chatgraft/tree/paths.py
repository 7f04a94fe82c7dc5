"""Branch selection over a flat set of messages linked by parent pointers.

Every function here takes the messages as a list or as a dict keyed by
uuid, and never mutates them. Traversals are iterative so arbitrarily deep
conversations cannot hit the recursion limit.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from chatgraft.models import ROOT_MESSAGE_UUID, Message, parse_timestamp


class BrokenChainError(Exception):
    """Raised when a parent chain references a missing message or loops."""

    def __init__(self, message_id: str, reason: str = "missing") -> None:
        self.message_id = message_id
        self.reason = reason
        super().__init__(f"Broken parent chain at {message_id}: {reason}")


@dataclass(frozen=True)
class LeafInfo:
    """Result of a deepest-leaf search."""

    leaf_id: str
    depth: int
    timestamp: float


def index_messages(messages: Iterable[Message] | Mapping[str, Message]) -> dict[str, Message]:
    if isinstance(messages, Mapping):
        return dict(messages)
    return {m.uuid: m for m in messages}


def children_index(messages: Iterable[Message] | Mapping[str, Message]) -> dict[str, list[Message]]:
    """Map parent uuid -> children, in input order."""
    by_id = index_messages(messages)
    children: dict[str, list[Message]] = {}
    for m in by_id.values():
        children.setdefault(m.parent_message_uuid, []).append(m)
    return children


def branch_points(messages: Iterable[Message] | Mapping[str, Message]) -> list[str]:
    """Parent uuids (ROOT included) that have more than one child."""
    return [pid for pid, kids in children_index(messages).items() if len(kids) > 1]


def extract_ancestor_path(
    messages: Iterable[Message] | Mapping[str, Message],
    leaf_id: str,
) -> list[Message]:
    """Walk parent pointers from ``leaf_id`` up to ROOT; return root-to-leaf.

    Raises BrokenChainError when a referenced message is absent or the
    chain revisits a message.
    """
    by_id = index_messages(messages)
    path: list[Message] = []
    seen: set[str] = set()
    current = leaf_id
    while current != ROOT_MESSAGE_UUID:
        if current in seen:
            raise BrokenChainError(current, "cycle")
        message = by_id.get(current)
        if message is None:
            raise BrokenChainError(current)
        seen.add(current)
        path.append(message)
        current = message.parent_message_uuid
    path.reverse()
    return path


def _timestamp(message: Message) -> float:
    parsed = parse_timestamp(message.created_at)
    return parsed.timestamp() if parsed else 0.0


def _better(candidate: LeafInfo, best: LeafInfo | None) -> bool:
    if best is None:
        return True
    if candidate.depth != best.depth:
        return candidate.depth > best.depth
    return candidate.timestamp > best.timestamp


def find_deepest_leaf(
    messages: Iterable[Message] | Mapping[str, Message],
    from_id: str = ROOT_MESSAGE_UUID,
) -> LeafInfo:
    """Find the leaf farthest below ``from_id``.

    A leaf has depth 0 and its parent depth 1 + the deepest child. Ties go to
    the leaf with the newer timestamp. ROOT is virtual and does not count as
    a level, so ``len(extract_ancestor_path(m, leaf.leaf_id)) == leaf.depth + 1``
    when searching from ROOT.
    """
    by_id = index_messages(messages)
    children = children_index(by_id)

    if from_id == ROOT_MESSAGE_UUID:
        starts = children.get(ROOT_MESSAGE_UUID, [])
        if not starts:
            return LeafInfo(ROOT_MESSAGE_UUID, 0, 0.0)
    else:
        if from_id not in by_id:
            raise BrokenChainError(from_id)
        starts = [by_id[from_id]]

    results: dict[str, LeafInfo] = {}
    best_start: LeafInfo | None = None
    for start in starts:
        # Iterative post-order: a node is resolved once all its children are
        stack: list[tuple[Message, bool]] = [(start, False)]
        on_stack: set[str] = set()
        while stack:
            node, expanded = stack.pop()
            if node.uuid in results:
                continue
            kids = children.get(node.uuid, [])
            if not expanded:
                if node.uuid in on_stack:
                    raise BrokenChainError(node.uuid, "cycle")
                on_stack.add(node.uuid)
                stack.append((node, True))
                for kid in kids:
                    if kid.uuid not in results:
                        stack.append((kid, False))
                continue
            best: LeafInfo | None = None
            for kid in kids:
                info = results[kid.uuid]
                candidate = LeafInfo(info.leaf_id, info.depth + 1, info.timestamp)
                if _better(candidate, best):
                    best = candidate
            results[node.uuid] = best or LeafInfo(node.uuid, 0, _timestamp(node))
        if _better(results[start.uuid], best_start):
            best_start = results[start.uuid]

    assert best_start is not None
    return best_start


def active_branch(
    messages: Iterable[Message] | Mapping[str, Message],
    current_leaf: str | None = None,
) -> list[Message]:
    """Root-to-leaf path ending at ``current_leaf``.

    Falls back to the deepest leaf when no current leaf is given or it is
    not among the messages.
    """
    by_id = index_messages(messages)
    if not current_leaf or current_leaf not in by_id:
        current_leaf = find_deepest_leaf(by_id).leaf_id
    return extract_ancestor_path(by_id, current_leaf)


def find_latest_message(messages: Iterable[Message] | Mapping[str, Message]) -> Message | None:
    """Message with the newest ``created_at``; the earlier one in order wins a tie.

    Messages without a parseable timestamp are never chosen.
    """
    latest: Message | None = None
    latest_at = None
    for message in index_messages(messages).values():
        created = parse_timestamp(message.created_at)
        if created is not None and (latest_at is None or created > latest_at):
            latest, latest_at = message, created
    return latest


@dataclass(frozen=True)
class BookmarkNode:
    """A bookmark placed under its nearest bookmarked ancestor."""

    name: str
    leaf_uuid: str
    depth: int
    children: tuple["BookmarkNode", ...] = ()


def message_depth(messages: Iterable[Message] | Mapping[str, Message], message_id: str) -> int:
    """Messages on the walk from ``message_id`` up to ROOT, itself included.

    The walk stops at a missing message or a repeat, so an unknown id has
    depth 1.
    """
    by_id = index_messages(messages)
    depth = 0
    seen: set[str] = set()
    current: str | None = message_id
    while current and current != ROOT_MESSAGE_UUID and current not in seen:
        seen.add(current)
        depth += 1
        message = by_id.get(current)
        current = message.parent_message_uuid if message else None
    return depth


def build_bookmark_tree(
    messages: Iterable[Message] | Mapping[str, Message],
    bookmarks: Mapping[str, str],
) -> list[BookmarkNode]:
    """Nest bookmarks (name -> message uuid) under their nearest bookmarked ancestor.

    A bookmark with no bookmarked ancestor, or whose message is not among
    ``messages``, is top-level. Siblings are ordered shallowest first.
    Returns the top-level nodes.
    """
    by_id = index_messages(messages)
    marked = set(bookmarks.values())
    depths = {uuid: message_depth(by_id, uuid) for uuid in marked}

    placements: list[tuple[str, str, str]] = []
    for name, uuid in bookmarks.items():
        parent = ROOT_MESSAGE_UUID
        message = by_id.get(uuid)
        current = message.parent_message_uuid if message else None
        seen: set[str] = set()
        while current and current != ROOT_MESSAGE_UUID and current not in seen:
            if current in marked:
                parent = current
                break
            seen.add(current)
            ancestor = by_id.get(current)
            current = ancestor.parent_message_uuid if ancestor else None
        placements.append((name, uuid, parent))

    # A bookmark is strictly deeper than its parent, so deepest-first builds children before parents
    built: dict[str, list[BookmarkNode]] = {}
    for name, uuid, parent in sorted(placements, key=lambda p: -depths[p[1]]):
        children = sorted(built.get(uuid, []), key=lambda n: n.depth)
        built.setdefault(parent, []).append(BookmarkNode(name, uuid, depths[uuid], tuple(children)))
    return sorted(built.get(ROOT_MESSAGE_UUID, []), key=lambda n: n.depth)
