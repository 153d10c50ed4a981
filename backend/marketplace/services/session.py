import logging
import time
from typing import Any

from marketplace.core.errors import AccountBanned, StoreUnavailable
from marketplace.core.observability import log_business_event
from marketplace.core.permissions import has_permission
from marketplace.services.auth import AuthHandle, AuthProvider, username_from_address, validate_credentials
from marketplace.services.listing import ITEMS_PATH, ITEMS_PER_PAGE, ListingEngine
from marketplace.services.mutations import CATEGORIES_PATH, MutationDispatcher
from marketplace.services.state import USERS_PATH, ActorCache, SessionState
from marketplace.store.base import KeyedStore, Subscription

logger = logging.getLogger(__name__)

BANNED_MESSAGE = "Account banned."
DEFAULT_PROFILE_PIC = "https://raw.githubusercontent.com/RakaMC2/Marketplace/main/nopfp.png"


def default_profile(username: str, now_ms: int) -> dict:
    return {
        "username": username,
        "role": "user",
        "banned": False,
        "muted": False,
        "profilePic": DEFAULT_PROFILE_PIC,
        "profileBorder": "default",
        "createdAt": now_ms,
    }


class MarketplaceSession:
    """One client session: who is signed in, what they see, what they may do.

    ``start()`` opens the auth listener, the categories and items
    subscriptions and the first listing page; ``close()`` releases every
    subscription. All caches belong to this object and die with it.
    """

    def __init__(
        self,
        store: KeyedStore,
        auth: AuthProvider,
        *,
        page_size: int = ITEMS_PER_PAGE,
        live_items: bool = True,
        clock=time.time,
    ) -> None:
        self.store = store
        self.auth = auth
        self.state = SessionState()
        self.listing = ListingEngine(store, page_size=page_size)
        self.actor_cache = ActorCache()
        self._clock = clock
        self._live_items = live_items
        self._auth_handle: AuthHandle | None = None
        self._profile_subscription: Subscription | None = None
        self._categories_subscription: Subscription | None = None
        self._items_subscription: Subscription | None = None
        self._admin_subscription: Subscription | None = None

    @property
    def mutations(self) -> MutationDispatcher:
        return MutationDispatcher(
            self.store,
            self.state.actor,
            listing=self.listing,
            state=self.state,
            actor_cache=self.actor_cache,
            clock=self._clock,
        )

    async def start(self) -> None:
        self._auth_handle = await self.auth.on_auth_state_change(self._on_auth_state)
        self._categories_subscription = await self.store.subscribe(CATEGORIES_PATH, self._on_categories)
        if self._live_items:
            self._items_subscription = await self.store.subscribe(ITEMS_PATH, self.listing.reconcile)
        await self.listing.reset()

    async def close(self) -> None:
        if self._auth_handle is not None:
            self._auth_handle.cancel()
            self._auth_handle = None
        for name in ("_profile_subscription", "_categories_subscription", "_items_subscription", "_admin_subscription"):
            subscription = getattr(self, name)
            if subscription is not None:
                subscription.cancel()
                setattr(self, name, None)

    # Authentication

    async def sign_up(self, username: str, password: str) -> str:
        username = validate_credentials(username, password)
        self.state.auth_error = None
        uid = await self.auth.sign_up(username, password)
        # the bootstrapped profile derives its name from the lowercased address
        if self.state.profile is not None and self.state.profile.get("username") != username:
            await self.store.update(f"{USERS_PATH}/{uid}", {"username": username})
        return uid

    async def sign_in(self, username: str, password: str) -> str:
        username = validate_credentials(username, password)
        self.state.auth_error = None
        uid = await self.auth.sign_in(username, password)
        if self.state.auth_error == BANNED_MESSAGE:
            raise AccountBanned(BANNED_MESSAGE)
        return uid

    async def sign_out(self) -> None:
        await self.auth.sign_out()

    async def _on_auth_state(self, uid: str | None) -> None:
        self._drop_profile_subscription()
        self.close_admin_dashboard()
        if uid is None:
            self.state.auth_uid = None
            self.state.profile = None
            self.actor_cache.clear()
            return

        self.state.auth_uid = uid
        address = self.auth.current_address

        async def on_profile(value: Any) -> None:
            await self._on_profile(uid, address, value)

        subscription = await self.store.subscribe(f"{USERS_PATH}/{uid}", on_profile)
        if self.state.auth_uid != uid:
            # the initial delivery already ended this session (banned account)
            subscription.cancel()
            return
        self._profile_subscription = subscription

    async def _on_profile(self, uid: str, address: str | None, value: Any) -> None:
        if self.state.auth_uid != uid:
            return
        if not isinstance(value, dict):
            value = default_profile(username_from_address(address), self._now_ms())
            try:
                await self.store.set(f"{USERS_PATH}/{uid}", value)
            except StoreUnavailable as exc:
                # another writer may have created the record; the next delivery carries it
                logger.warning("profile_bootstrap_write_failed uid=%s error=%s", uid, exc.message)
            # the write above re-delivers to this subscription, which publishes the record
            return

        if value.get("banned"):
            log_business_event(logger, event="session_banned", actor_id=uid)
            self.state.auth_error = BANNED_MESSAGE
            await self.auth.sign_out()
            self._terminate()
            return

        self.state.profile = value
        self.actor_cache.put(uid, value)

    def _terminate(self) -> None:
        self._drop_profile_subscription()
        self.close_admin_dashboard()
        self.state.auth_uid = None
        self.state.profile = None
        self.actor_cache.clear()

    def _drop_profile_subscription(self) -> None:
        if self._profile_subscription is not None:
            self._profile_subscription.cancel()
            self._profile_subscription = None

    # Shared collections

    def _on_categories(self, value: Any) -> None:
        if isinstance(value, list):
            self.state.categories = [c for c in value if isinstance(c, str)]

    async def open_admin_dashboard(self) -> bool:
        if not has_permission(self.state.profile, "VIEW_ADMIN_DASHBOARD"):
            return False
        if self._admin_subscription is None:
            self._admin_subscription = await self.store.subscribe(USERS_PATH, self._on_admin_users)
        return True

    def close_admin_dashboard(self) -> None:
        if self._admin_subscription is not None:
            self._admin_subscription.cancel()
            self._admin_subscription = None
        self.state.admin_users = {}

    def _on_admin_users(self, value: Any) -> None:
        self.state.admin_users = value if isinstance(value, dict) else {}

    async def view_profile(self, user_id: str) -> dict | None:
        return await self.actor_cache.resolve(self.store, user_id)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)
