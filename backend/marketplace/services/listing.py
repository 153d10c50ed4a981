import logging
import os
from dataclasses import dataclass
from typing import Any

from marketplace.core.errors import StoreUnavailable
from marketplace.core.metrics import increment_counter
from marketplace.store.base import KeyedStore

logger = logging.getLogger(__name__)

ITEMS_PATH = "items"
ITEMS_PER_PAGE = int(os.getenv("ITEMS_PER_PAGE", "12"))


@dataclass
class Page:
    items: list[dict]
    cursor: str | None
    has_more: bool


def _as_item(key: str, value: dict) -> dict:
    return {**value, "id": key}


async def fetch_page(
    store: KeyedStore,
    cursor: str | None = None,
    page_size: int = ITEMS_PER_PAGE,
) -> Page:
    """Read one page of items, newest first.

    Without a cursor this is the head of the collection; one extra item is
    read so a collection of exactly ``page_size`` items reports no more pages.
    With a cursor, ``page_size + 1`` items ending at the cursor are read and
    the cursor item itself, already shown by the previous page, is dropped.
    """
    if page_size < 1:
        raise ValueError("page_size must be positive")

    query = store.query(ITEMS_PATH).order_by_key()
    if cursor is None:
        raw = await query.limit_to_last(page_size + 1).get()
        has_more = len(raw) > page_size
    else:
        raw = await query.end_at(cursor).limit_to_last(page_size + 1).get()
        if raw and raw[-1][0] == cursor:
            raw.pop()
        has_more = len(raw) >= page_size
    raw = raw[-page_size:]

    items = [_as_item(key, value) for key, value in reversed(raw) if isinstance(value, dict)]
    next_cursor = raw[0][0] if raw else cursor
    return Page(items=items, cursor=next_cursor, has_more=has_more)


class ListingEngine:
    """Locally cached window over ``items`` that grows backward in time.

    Only one reset and one continuation may be outstanding at a time; extra
    triggers are ignored. State is replaced only after a fetch resolves, so a
    failed fetch leaves cursor, cache and ``has_more`` untouched.
    """

    def __init__(self, store: KeyedStore, page_size: int = ITEMS_PER_PAGE) -> None:
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self._store = store
        self.page_size = page_size
        self.items: list[dict] = []
        self.cursor: str | None = None
        self.has_more = True
        self.loading = False
        self.loading_more = False
        self.last_warning: str | None = None
        self._generation = 0

    @property
    def ids(self) -> list[str]:
        return [item["id"] for item in self.items]

    def get(self, item_id: str) -> dict | None:
        for item in self.items:
            if item["id"] == item_id:
                return item
        return None

    async def reset(self) -> bool:
        if self.loading:
            return False
        self.loading = True
        try:
            page = await fetch_page(self._store, None, self.page_size)
        except StoreUnavailable as exc:
            self._warn("reset", exc)
            return False
        finally:
            self.loading = False

        # continuations started before this point belong to the replaced window
        self._generation += 1
        self.items = page.items
        self.cursor = page.cursor
        self.has_more = page.has_more
        self.last_warning = None
        increment_counter("listing_fetch_total", mode="reset", result="ok")
        logger.debug("listing_reset count=%s cursor=%s has_more=%s", len(page.items), page.cursor, page.has_more)
        return True

    async def load_more(self) -> bool:
        if self.loading_more or not self.has_more:
            return False
        if self.cursor is None:
            return await self.reset()

        self.loading_more = True
        generation = self._generation
        cursor = self.cursor
        try:
            page = await fetch_page(self._store, cursor, self.page_size)
        except StoreUnavailable as exc:
            self._warn("continue", exc)
            return False
        finally:
            self.loading_more = False

        if generation != self._generation or cursor != self.cursor:
            # a reset replaced the window while this page was in flight
            return False
        self.items = self._merge(page.items)
        self.cursor = page.cursor
        self.has_more = self.has_more and page.has_more
        self.last_warning = None
        increment_counter("listing_fetch_total", mode="continue", result="ok")
        logger.debug("listing_continue count=%s cursor=%s has_more=%s", len(page.items), page.cursor, self.has_more)
        return True

    def _merge(self, fetched: list[dict]) -> list[dict]:
        present = {item["id"] for item in self.items}
        merged = list(self.items)
        for item in fetched:
            if item["id"] not in present:
                present.add(item["id"])
                merged.append(item)
        return merged

    def _warn(self, mode: str, exc: StoreUnavailable) -> None:
        self.last_warning = exc.message
        increment_counter("listing_fetch_total", mode=mode, result="error")
        logger.warning("listing_fetch_failed mode=%s cursor=%s error=%s", mode, self.cursor, exc.message)

    # Optimistic patches: the same transform the matching store write performs.

    def prepend(self, item: dict) -> None:
        self.items = [item, *(i for i in self.items if i["id"] != item["id"])]

    def patch(self, item_id: str, fields: dict[str, Any]) -> None:
        self.items = [{**i, **fields} if i["id"] == item_id else i for i in self.items]

    def discard(self, item_id: str) -> None:
        self.items = [i for i in self.items if i["id"] != item_id]

    def reconcile(self, snapshot: dict[str, Any] | None) -> None:
        """Replace cached items with the authoritative ``items`` snapshot.

        Cached ids missing from the snapshot are dropped; ids not yet cached
        are left to pagination.
        """
        snapshot = snapshot or {}
        reconciled = []
        for item in self.items:
            value = snapshot.get(item["id"])
            if isinstance(value, dict):
                reconciled.append(_as_item(item["id"], value))
        self.items = reconciled
