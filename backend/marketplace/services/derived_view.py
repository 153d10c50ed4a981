import unicodedata
from collections.abc import Iterable, Mapping
from typing import Any, Literal

from marketplace.core.errors import ValidationFailed

SortKey = Literal["newest", "oldest", "highest_rating", "title_asc"]
SORT_KEYS: tuple[str, ...] = ("newest", "oldest", "highest_rating", "title_asc")


def average_rating(ratings: Mapping[str, Any] | None) -> float:
    if not ratings:
        return 0.0
    values = [entry.get("rating") or 0 for entry in ratings.values() if isinstance(entry, Mapping)]
    if not values:
        return 0.0
    return sum(values) / len(values)


def is_unrated(item: Mapping[str, Any]) -> bool:
    return average_rating(item.get("ratings")) == 0


def _changelog(item: Mapping[str, Any]) -> list:
    changelog = item.get("changelog")
    return changelog if isinstance(changelog, list) else []


def last_updated_at(item: Mapping[str, Any]) -> int:
    changelog = _changelog(item)
    return (changelog[-1].get("timestamp") or 0) if changelog else 0


def created_at(item: Mapping[str, Any]) -> int:
    changelog = _changelog(item)
    return (changelog[0].get("timestamp") or 0) if changelog else 0


def _title_key(item: Mapping[str, Any]) -> tuple[str, str]:
    # accents only break ties between otherwise equal titles
    folded = unicodedata.normalize("NFKD", str(item.get("title") or "")).casefold()
    base = "".join(ch for ch in folded if not unicodedata.combining(ch))
    return base, folded


def derive_view(
    items: Iterable[Mapping[str, Any]],
    *,
    search_term: str = "",
    category: str | None = None,
    sort_by: str = "newest",
) -> list[Mapping[str, Any]]:
    """Filter and sort a snapshot of the cached listing into a new list.

    All sorts are stable: items with equal keys keep their cache order.
    """
    if sort_by not in SORT_KEYS:
        raise ValidationFailed(f"Unknown sort key: {sort_by}")

    needle = (search_term or "").lower()
    result = [
        item
        for item in items
        if needle in str(item.get("title") or "").lower() and (not category or item.get("cat") == category)
    ]

    if sort_by == "newest":
        return sorted(result, key=last_updated_at, reverse=True)
    if sort_by == "oldest":
        return sorted(result, key=created_at)
    if sort_by == "highest_rating":
        return sorted(result, key=lambda item: average_rating(item.get("ratings")), reverse=True)
    return sorted(result, key=_title_key)


def featured_items(items: Iterable[Mapping[str, Any]]) -> list[Mapping[str, Any]]:
    return [item for item in items if item.get("featured")]
