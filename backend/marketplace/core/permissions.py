from collections.abc import Mapping
from typing import Any, Literal

Role = Literal["owner", "admin", "staff", "user"]
Permission = Literal[
    "MANAGE_USERS",
    "MANAGE_CONTENT",
    "FEATURE_POSTS",
    "MANAGE_CATEGORIES",
    "VIEW_ADMIN_DASHBOARD",
]

ROLE_ORDER: list[str] = ["owner", "admin", "staff", "user"]

ALL_PERMISSIONS: frozenset[str] = frozenset(
    {
        "MANAGE_USERS",
        "MANAGE_CONTENT",
        "FEATURE_POSTS",
        "MANAGE_CATEGORIES",
        "VIEW_ADMIN_DASHBOARD",
    }
)

PERMISSIONS_BY_ROLE: dict[str, frozenset[str]] = {
    "owner": ALL_PERMISSIONS,
    "admin": ALL_PERMISSIONS,
    "staff": frozenset({"MANAGE_CONTENT", "VIEW_ADMIN_DASHBOARD"}),
    "user": frozenset(),
}

PERMISSION_LABELS: dict[str, str] = {
    "MANAGE_USERS": "Ban, mute and change roles",
    "MANAGE_CONTENT": "Edit or delete any post",
    "FEATURE_POSTS": "Feature posts on the front page",
    "MANAGE_CATEGORIES": "Add and remove categories",
    "VIEW_ADMIN_DASHBOARD": "Open the admin dashboard",
}


def actor_role(actor: Mapping[str, Any] | None) -> str | None:
    if not actor:
        return None
    role = actor.get("role")
    return role if isinstance(role, str) else None


def has_permission(actor: Mapping[str, Any] | None, permission: str) -> bool:
    role = actor_role(actor)
    if role is None:
        return False
    return permission in PERMISSIONS_BY_ROLE.get(role, frozenset())


def actor_permissions(actor: Mapping[str, Any] | None) -> list[str]:
    return sorted(p for p in ALL_PERMISSIONS if has_permission(actor, p))


def can_edit_item(
    actor: Mapping[str, Any] | None,
    actor_id: str | None,
    item_author_id: str | None,
) -> bool:
    # actor and actor_id come from the same identity check at the call site
    if not actor or not actor_id:
        return False
    if has_permission(actor, "MANAGE_CONTENT"):
        return True
    return actor_id == item_author_id


def can_delete_item(
    actor: Mapping[str, Any] | None,
    actor_id: str | None,
    item_author_id: str | None,
) -> bool:
    if not actor_id:
        return False
    if actor_id == item_author_id:
        return True
    return has_permission(actor, "MANAGE_CONTENT")


def permissions_matrix_payload() -> dict:
    return {
        "roles": [
            {"role": role, "permissions": sorted(PERMISSIONS_BY_ROLE[role])}
            for role in ROLE_ORDER
        ],
        "permission_labels": PERMISSION_LABELS,
    }
