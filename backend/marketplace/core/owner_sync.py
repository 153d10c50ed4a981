import logging
import os
from dataclasses import dataclass

from marketplace.services.auth import USERNAME_RE
from marketplace.services.state import USERS_PATH
from marketplace.store.base import KeyedStore

logger = logging.getLogger(__name__)


def parse_owner_usernames(raw: str) -> list[str]:
    names = {x.strip().lower() for x in raw.split(",") if x.strip()}
    invalid = sorted(name for name in names if not USERNAME_RE.match(name))
    if invalid:
        raise ValueError(f"Invalid usernames: {', '.join(invalid)}")
    return sorted(names)


def get_runtime_owner_usernames() -> list[str]:
    return parse_owner_usernames(os.getenv("OWNER_USERNAMES", ""))


@dataclass
class OwnerSyncResult:
    promoted: int = 0
    unchanged: int = 0
    missing: int = 0


async def sync_owner_accounts(store: KeyedStore, usernames: list[str]) -> OwnerSyncResult:
    """Promote the profiles of configured usernames to ``owner``.

    Only promotes: owner accounts are never demoted by configuration, and
    usernames without a profile yet are reported as missing.
    """
    result = OwnerSyncResult()
    if not usernames:
        return result

    users = await store.get(USERS_PATH) or {}
    by_username = {
        (profile.get("username") or "").lower(): uid
        for uid, profile in users.items()
        if isinstance(profile, dict)
    }

    for username in usernames:
        uid = by_username.get(username)
        if uid is None:
            result.missing += 1
            continue
        profile = users[uid]
        if profile.get("role") == "owner" and not profile.get("banned"):
            result.unchanged += 1
            continue
        await store.update(f"{USERS_PATH}/{uid}", {"role": "owner", "banned": False})
        result.promoted += 1

    logger.info(
        "owner_sync promoted=%s unchanged=%s missing=%s",
        result.promoted,
        result.unchanged,
        result.missing,
    )
    return result
