from dataclasses import dataclass, field
from typing import Any

from marketplace.store.base import KeyedStore

USERS_PATH = "users"


@dataclass(frozen=True)
class ActorContext:
    """Identity resolved once per call site: auth uid plus its profile record."""

    actor_id: str | None
    actor: dict | None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.actor_id) and self.actor is not None


ANONYMOUS = ActorContext(actor_id=None, actor=None)


class ActorCache:
    """Best-effort uid -> profile snapshot map. Entries are replaced, never evicted."""

    def __init__(self) -> None:
        self._entries: dict[str, dict] = {}

    def __contains__(self, actor_id: str) -> bool:
        return actor_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, actor_id: str) -> dict | None:
        return self._entries.get(actor_id)

    def put(self, actor_id: str, profile: dict) -> None:
        self._entries[actor_id] = profile

    def clear(self) -> None:
        self._entries.clear()

    async def resolve(self, store: KeyedStore, actor_id: str) -> dict | None:
        cached = self._entries.get(actor_id)
        if cached is not None:
            return cached
        profile = await store.get(f"{USERS_PATH}/{actor_id}")
        if isinstance(profile, dict):
            self._entries[actor_id] = profile
            return profile
        return None


@dataclass
class SessionState:
    auth_uid: str | None = None
    profile: dict | None = None
    auth_error: str | None = None
    categories: list[str] = field(default_factory=list)
    admin_users: dict[str, Any] = field(default_factory=dict)

    @property
    def actor(self) -> ActorContext:
        return ActorContext(actor_id=self.auth_uid, actor=self.profile)
