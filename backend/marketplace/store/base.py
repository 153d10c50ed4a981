import inspect
import itertools
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from marketplace.store.keys import PushKeyGenerator
from marketplace.store.paths import overlaps, split_path

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[Any], Any]


@dataclass(frozen=True)
class KeyQuery:
    """Key-ordered read over the children of ``path``.

    ``end_at`` is an inclusive upper bound; ``limit_to_last`` keeps the last
    ``n`` matching children. Results come back in ascending key order.
    """

    store: "KeyedStore" = field(repr=False, compare=False)
    path: str
    end_key: str | None = None
    limit: int | None = None

    def order_by_key(self) -> "KeyQuery":
        return self

    def end_at(self, key: str) -> "KeyQuery":
        return replace(self, end_key=key)

    def limit_to_last(self, limit: int) -> "KeyQuery":
        return replace(self, limit=limit)

    async def get(self) -> list[tuple[str, Any]]:
        return await self.store.run_query(self)


@dataclass
class Subscription:
    id: int
    path: str
    segments: list[str]
    callback: ChangeCallback
    store: "KeyedStore" = field(repr=False)
    active: bool = True

    def cancel(self) -> None:
        self.store.unsubscribe(self)


class KeyedStore(ABC):
    """Remote keyed collection with change notification.

    Every subscription receives the full current value at its path: once on
    subscribe, then after each write touching the path, its ancestors or its
    descendants. Deliveries are full replacements, never deltas.
    """

    def __init__(self, key_generator: Callable[[], str] | None = None) -> None:
        self._key_generator = key_generator or PushKeyGenerator()
        self._subscriptions: dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    @abstractmethod
    async def _read(self, segments: list[str]) -> Any: ...

    @abstractmethod
    async def _write(self, segments: list[str], value: Any) -> None: ...

    @abstractmethod
    async def _merge(self, segments: list[str], fields: dict[str, Any]) -> None: ...

    @abstractmethod
    async def _select(self, segments: list[str], *, end_at: str | None, limit: int | None) -> list[tuple[str, Any]]: ...

    async def get(self, path: str) -> Any:
        return await self._read(split_path(path))

    async def set(self, path: str, value: Any) -> None:
        segments = split_path(path)
        await self._write(segments, value)
        await self._notify(segments)

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        segments = split_path(path)
        if not fields:
            return
        await self._merge(segments, fields)
        await self._notify(segments)

    async def push(self, path: str) -> str:
        split_path(path)
        return self._key_generator()

    def query(self, path: str) -> KeyQuery:
        split_path(path)
        return KeyQuery(store=self, path=path)

    async def run_query(self, query: KeyQuery) -> list[tuple[str, Any]]:
        return await self._select(split_path(query.path), end_at=query.end_key, limit=query.limit)

    async def subscribe(self, path: str, on_change: ChangeCallback) -> Subscription:
        subscription = Subscription(
            id=next(self._ids),
            path=path,
            segments=split_path(path),
            callback=on_change,
            store=self,
        )
        self._subscriptions[subscription.id] = subscription
        await self._deliver(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False
        self._subscriptions.pop(subscription.id, None)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def _notify(self, segments: list[str]) -> None:
        for subscription in list(self._subscriptions.values()):
            if subscription.active and overlaps(subscription.segments, segments):
                await self._deliver(subscription)

    async def _deliver(self, subscription: Subscription) -> None:
        value = await self._read(subscription.segments)
        if not subscription.active:
            return
        try:
            result = subscription.callback(value)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("store_listener_failed path=%s subscription_id=%s", subscription.path, subscription.id)
