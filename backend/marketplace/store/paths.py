import copy
import re
from typing import Any

from marketplace.core.errors import ValidationFailed

FORBIDDEN_KEY_CHARS = re.compile(r"[.#$\[\]/]")


def split_path(path: str) -> list[str]:
    segments = [segment for segment in path.strip("/").split("/") if segment]
    if not segments:
        raise ValidationFailed("Store path must not be empty")
    for segment in segments:
        if FORBIDDEN_KEY_CHARS.search(segment):
            raise ValidationFailed(f"Invalid store key: {segment!r}")
    return segments


def join_path(*parts: str) -> str:
    return "/".join(part.strip("/") for part in parts if part)


def overlaps(a: list[str], b: list[str]) -> bool:
    """True when one path is an ancestor of (or equal to) the other."""
    size = min(len(a), len(b))
    return a[:size] == b[:size]


def get_in(tree: Any, segments: list[str]) -> Any:
    node = tree
    for segment in segments:
        if not isinstance(node, dict):
            return None
        node = node.get(segment)
        if node is None:
            return None
    return node


def set_in(tree: dict, segments: list[str], value: Any) -> None:
    """Write ``value`` at ``segments`` inside ``tree``; None deletes and prunes empty parents."""
    if value is None:
        _delete_in(tree, segments)
        return
    node = tree
    for segment in segments[:-1]:
        child = node.get(segment)
        if not isinstance(child, dict):
            child = {}
            node[segment] = child
        node = child
    node[segments[-1]] = copy.deepcopy(value)


def _delete_in(tree: dict, segments: list[str]) -> None:
    trail: list[tuple[dict, str]] = []
    node: Any = tree
    for segment in segments[:-1]:
        if not isinstance(node, dict) or not isinstance(node.get(segment), dict):
            return
        trail.append((node, segment))
        node = node[segment]
    if not isinstance(node, dict):
        return
    node.pop(segments[-1], None)
    for parent, segment in reversed(trail):
        if parent[segment]:
            break
        del parent[segment]


def select_children(
    node: Any,
    *,
    end_at: str | None,
    limit: int | None,
) -> list[tuple[str, Any]]:
    """Children of ``node`` ordered by key, ending at ``end_at`` inclusive, last ``limit``."""
    if not isinstance(node, dict):
        return []
    keys = sorted(node)
    if end_at is not None:
        keys = [key for key in keys if key <= end_at]
    if limit is not None:
        keys = keys[-limit:] if limit > 0 else []
    return [(key, copy.deepcopy(node[key])) for key in keys]
