import copy
from typing import Any

from marketplace.store.base import KeyedStore
from marketplace.store.paths import get_in, select_children, set_in


class MemoryKeyedStore(KeyedStore):
    """Process-local store holding the whole tree in a nested dict."""

    def __init__(self, initial: dict[str, Any] | None = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self._tree: dict[str, Any] = copy.deepcopy(initial) if initial else {}

    async def _read(self, segments: list[str]) -> Any:
        return copy.deepcopy(get_in(self._tree, segments))

    async def _write(self, segments: list[str], value: Any) -> None:
        set_in(self._tree, segments, value)

    async def _merge(self, segments: list[str], fields: dict[str, Any]) -> None:
        for key, value in fields.items():
            set_in(self._tree, [*segments, key], value)

    async def _select(self, segments: list[str], *, end_at: str | None, limit: int | None) -> list[tuple[str, Any]]:
        return copy.deepcopy(select_children(get_in(self._tree, segments), end_at=end_at, limit=limit))

    def dump(self) -> dict[str, Any]:
        return copy.deepcopy(self._tree)
