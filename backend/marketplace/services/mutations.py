import logging
import time
from collections.abc import Mapping
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from marketplace.core.errors import NotFound, PermissionDenied, StoreUnavailable, ValidationFailed
from marketplace.core.metrics import increment_counter
from marketplace.core.observability import log_business_event
from marketplace.core.permissions import can_delete_item, can_edit_item, has_permission
from marketplace.schemas.item import ItemForm, RatingIn
from marketplace.schemas.user import AdminUserUpdate, ProfileUpdate
from marketplace.services.listing import ITEMS_PATH, ListingEngine
from marketplace.services.state import USERS_PATH, ActorCache, ActorContext, SessionState
from marketplace.store.base import KeyedStore

logger = logging.getLogger(__name__)

CATEGORIES_PATH = "categories"
INITIAL_VERSION = "v1.0"
UPDATE_VERSION = "Update"

FormT = TypeVar("FormT", bound=BaseModel)


def _parse(model: type[FormT], data: FormT | Mapping[str, Any]) -> FormT:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ValidationFailed("Invalid input", details=exc.errors(include_url=False)) from exc


class MutationDispatcher:
    """Gated writes: policy check, store write, then optimistic cache patch.

    A denied operation raises ``PermissionDenied`` before anything is written.
    The patch applies the same transform as the write; when the store later
    delivers the authoritative value through a subscription, that value wins.
    """

    def __init__(
        self,
        store: KeyedStore,
        ctx: ActorContext,
        *,
        listing: ListingEngine | None = None,
        state: SessionState | None = None,
        actor_cache: ActorCache | None = None,
        clock=time.time,
        request_id: str | None = None,
    ) -> None:
        self._store = store
        self._ctx = ctx
        self._listing = listing
        self._state = state
        self._actor_cache = actor_cache
        self._clock = clock
        self._request_id = request_id

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @property
    def _actor(self) -> dict | None:
        return self._ctx.actor

    def _deny(self, action: str, message: str) -> PermissionDenied:
        increment_counter("mutation_total", action=action, result="denied")
        log_business_event(
            logger,
            event=f"{action}_denied",
            request_id=self._request_id,
            actor_id=self._ctx.actor_id or "-",
        )
        return PermissionDenied(message)

    def _done(self, action: str, **fields) -> None:
        increment_counter("mutation_total", action=action, result="ok")
        log_business_event(
            logger,
            event=action,
            request_id=self._request_id,
            actor_id=self._ctx.actor_id or "-",
            **fields,
        )

    async def _write(self, action: str, coro) -> None:
        try:
            await coro
        except StoreUnavailable as exc:
            increment_counter("mutation_total", action=action, result="error")
            logger.warning("mutation_write_failed action=%s actor_id=%s error=%s", action, self._ctx.actor_id, exc.message)
            raise

    def _require_active_author(self, action: str) -> None:
        if not self._ctx.is_authenticated:
            raise self._deny(action, "Sign in required.")
        if self._actor.get("muted"):
            raise self._deny(action, "You are muted.")

    async def _load_item(self, item_id: str) -> dict:
        record = await self._store.get(f"{ITEMS_PATH}/{item_id}")
        if not isinstance(record, dict):
            raise NotFound("Item not found")
        return {**record, "id": item_id}

    async def _load_user(self, user_id: str) -> dict:
        record = await self._store.get(f"{USERS_PATH}/{user_id}")
        if not isinstance(record, dict):
            raise NotFound("User not found")
        return record

    # Items

    async def create_item(self, form: ItemForm | Mapping[str, Any]) -> dict:
        form = _parse(ItemForm, form)
        self._require_active_author("item_create")

        key = await self._store.push(ITEMS_PATH)
        item = {
            **form.model_dump(),
            "id": key,
            "authorId": self._ctx.actor_id,
            "author": self._actor.get("username") or "User",
            "changelog": [{"version": INITIAL_VERSION, "text": "Initial Release", "timestamp": self._now_ms()}],
            "featured": False,
        }
        await self._write("item_create", self._store.set(f"{ITEMS_PATH}/{key}", item))
        if self._listing is not None:
            self._listing.prepend(item)
        self._done("item_create", item_id=key)
        return item

    async def update_item(self, item_id: str, form: ItemForm | Mapping[str, Any]) -> dict:
        form = _parse(ItemForm, form)
        self._require_active_author("item_update")

        original = await self._load_item(item_id)
        if not can_edit_item(self._actor, self._ctx.actor_id, original.get("authorId")):
            raise self._deny("item_update", "Permission denied.")

        changelog = list(original.get("changelog") or [])
        changelog.append({"version": UPDATE_VERSION, "text": "Updated details", "timestamp": self._now_ms()})
        fields = {**form.model_dump(), "changelog": changelog}
        await self._write("item_update", self._store.update(f"{ITEMS_PATH}/{item_id}", fields))
        if self._listing is not None:
            self._listing.patch(item_id, fields)
        self._done("item_update", item_id=item_id, changelog_size=len(changelog))
        return {**original, **fields}

    async def delete_item(self, item_id: str) -> None:
        if not self._ctx.actor_id:
            raise self._deny("item_delete", "Sign in required.")
        original = await self._load_item(item_id)
        if not can_delete_item(self._actor, self._ctx.actor_id, original.get("authorId")):
            raise self._deny("item_delete", "Permission denied.")

        await self._write("item_delete", self._store.set(f"{ITEMS_PATH}/{item_id}", None))
        if self._listing is not None:
            self._listing.discard(item_id)
        self._done("item_delete", item_id=item_id)

    async def toggle_feature(self, item_id: str) -> bool:
        if not has_permission(self._actor, "FEATURE_POSTS"):
            raise self._deny("item_feature", "Permission denied.")
        original = await self._load_item(item_id)
        featured = not original.get("featured")
        await self._write("item_feature", self._store.update(f"{ITEMS_PATH}/{item_id}", {"featured": featured}))
        if self._listing is not None:
            self._listing.patch(item_id, {"featured": featured})
        self._done("item_feature", item_id=item_id, featured=featured)
        return featured

    async def rate_item(self, item_id: str, rating: RatingIn | Mapping[str, Any]) -> dict:
        rating = _parse(RatingIn, rating)
        self._require_active_author("item_rate")

        original = await self._load_item(item_id)
        entry = {
            "userId": self._ctx.actor_id,
            "username": self._actor.get("username") or "User",
            "rating": rating.rating,
            "review": rating.review or "",
            "timestamp": self._now_ms(),
        }
        path = f"{ITEMS_PATH}/{item_id}/ratings/{self._ctx.actor_id}"
        await self._write("item_rate", self._store.set(path, entry))
        if self._listing is not None:
            ratings = dict(original.get("ratings") or {})
            ratings[self._ctx.actor_id] = entry
            self._listing.patch(item_id, {"ratings": ratings})
        self._done("item_rate", item_id=item_id, rating=rating.rating)
        return entry

    # Users

    async def admin_update_user(self, user_id: str, changes: AdminUserUpdate | Mapping[str, Any]) -> dict:
        changes = _parse(AdminUserUpdate, changes)
        fields = changes.model_dump(exclude_none=True)
        if not fields:
            raise ValidationFailed("No changes requested")
        if not self._ctx.actor_id or not has_permission(self._actor, "MANAGE_USERS"):
            raise self._deny("user_admin_update", "Permission denied.")

        target = await self._load_user(user_id)
        if target.get("role") == "owner":
            raise self._deny("user_admin_update", "Cannot modify the owner account.")
        if fields.get("role") == "owner" and self._actor.get("role") != "owner":
            raise self._deny("user_admin_update", "Only the owner can grant the owner role.")

        await self._write("user_admin_update", self._store.update(f"{USERS_PATH}/{user_id}", fields))
        updated = {**target, **fields}
        if self._state is not None and user_id in self._state.admin_users:
            self._state.admin_users = {**self._state.admin_users, user_id: updated}
        if self._actor_cache is not None and user_id in self._actor_cache:
            self._actor_cache.put(user_id, updated)
        self._done("user_admin_update", target_user_id=user_id, changes=",".join(sorted(fields)))
        return updated

    async def delete_user(self, user_id: str) -> None:
        if not self._ctx.actor_id or not has_permission(self._actor, "MANAGE_USERS"):
            raise self._deny("user_delete", "Permission denied.")
        if user_id == self._ctx.actor_id:
            raise self._deny("user_delete", "Cannot delete yourself.")
        target = await self._load_user(user_id)
        if target.get("role") == "owner":
            raise self._deny("user_delete", "Cannot delete the owner account.")

        await self._write("user_delete", self._store.set(f"{USERS_PATH}/{user_id}", None))
        if self._state is not None and user_id in self._state.admin_users:
            self._state.admin_users = {k: v for k, v in self._state.admin_users.items() if k != user_id}
        self._done("user_delete", target_user_id=user_id)

    async def update_profile(self, changes: ProfileUpdate | Mapping[str, Any]) -> dict:
        changes = _parse(ProfileUpdate, changes)
        fields = changes.model_dump(exclude_unset=True)
        if not fields:
            raise ValidationFailed("No changes requested")
        if not self._ctx.is_authenticated:
            raise self._deny("profile_update", "Sign in required.")

        await self._write("profile_update", self._store.update(f"{USERS_PATH}/{self._ctx.actor_id}", fields))
        updated = {**self._actor, **fields}
        if self._state is not None and self._state.auth_uid == self._ctx.actor_id:
            self._state.profile = updated
        if self._actor_cache is not None:
            self._actor_cache.put(self._ctx.actor_id, updated)
        self._done("profile_update", fields=",".join(sorted(fields)))
        return updated

    # Categories

    async def _current_categories(self) -> list[str]:
        value = await self._store.get(CATEGORIES_PATH)
        return [c for c in value if isinstance(c, str)] if isinstance(value, list) else []

    async def _set_categories(self, action: str, categories: list[str]) -> None:
        await self._write(action, self._store.set(CATEGORIES_PATH, categories))
        if self._state is not None:
            self._state.categories = categories

    async def add_category(self, name: str) -> bool:
        name = (name or "").strip()
        if not name:
            raise ValidationFailed("Category name is required")
        if not has_permission(self._actor, "MANAGE_CATEGORIES"):
            raise self._deny("category_add", "Permission denied.")

        categories = await self._current_categories()
        if name in categories:
            return False
        await self._set_categories("category_add", [*categories, name])
        self._done("category_add", category=name)
        return True

    async def remove_category(self, name: str) -> bool:
        if not has_permission(self._actor, "MANAGE_CATEGORIES"):
            raise self._deny("category_remove", "Permission denied.")

        categories = await self._current_categories()
        if name not in categories:
            return False
        # items keep their category string; nothing is reassigned
        await self._set_categories("category_remove", [c for c in categories if c != name])
        self._done("category_remove", category=name)
        return True
