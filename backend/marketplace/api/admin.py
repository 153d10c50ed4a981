from fastapi import APIRouter, Depends, Request

from marketplace.core.api_response import success_response_payload
from marketplace.core.metrics import increment_counter
from marketplace.core.permissions import permissions_matrix_payload
from marketplace.api.deps import get_dispatcher, get_store, require_permission
from marketplace.schemas.user import AdminUserUpdate
from marketplace.services.mutations import MutationDispatcher
from marketplace.services.state import USERS_PATH, ActorContext
from marketplace.store.base import KeyedStore

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/users")
async def list_users(
    request: Request,
    q: str = "",
    store: KeyedStore = Depends(get_store),
    _viewer: ActorContext = Depends(require_permission("VIEW_ADMIN_DASHBOARD")),
):
    users = await store.get(USERS_PATH) or {}
    needle = q.strip().lower()
    rows = [
        {**profile, "id": uid}
        for uid, profile in users.items()
        if isinstance(profile, dict) and needle in (profile.get("username") or "").lower()
    ]
    rows.sort(key=lambda row: (row.get("username") or "").lower())
    return success_response_payload(request, data={"users": rows}, meta={"total": len(rows)})


@router.patch("/users/{user_id}")
async def update_user(
    user_id: str,
    payload: AdminUserUpdate,
    request: Request,
    dispatcher: MutationDispatcher = Depends(get_dispatcher),
):
    increment_counter("admin_action_total", action="update_user")
    updated = await dispatcher.admin_update_user(user_id, payload)
    return success_response_payload(request, data={**updated, "id": user_id})


@router.delete("/users/{user_id}")
async def delete_user(
    user_id: str,
    request: Request,
    dispatcher: MutationDispatcher = Depends(get_dispatcher),
):
    increment_counter("admin_action_total", action="delete_user")
    await dispatcher.delete_user(user_id)
    return success_response_payload(request, data={"ok": True, "id": user_id})


@router.get("/permissions")
def permissions_matrix(
    request: Request,
    _viewer: ActorContext = Depends(require_permission("VIEW_ADMIN_DASHBOARD")),
):
    return success_response_payload(request, data=permissions_matrix_payload())
