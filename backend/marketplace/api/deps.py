from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer

from marketplace.core.api_response import get_request_id
from marketplace.core.errors import AccountBanned, AuthFailed, PermissionDenied
from marketplace.core.permissions import Permission, has_permission
from marketplace.core.security import decode_access_token
from marketplace.services.mutations import MutationDispatcher
from marketplace.services.state import ANONYMOUS, USERS_PATH, ActorContext
from marketplace.store.base import KeyedStore

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/sign-in", auto_error=False)


def get_store(request: Request) -> KeyedStore:
    return request.app.state.store


async def get_optional_actor(
    token: str | None = Depends(oauth2_scheme),
    store: KeyedStore = Depends(get_store),
) -> ActorContext:
    if not token:
        return ANONYMOUS
    actor_id = decode_access_token(token)
    profile = await store.get(f"{USERS_PATH}/{actor_id}")
    if not isinstance(profile, dict):
        raise AuthFailed("Could not validate credentials")
    if profile.get("banned"):
        raise AccountBanned()
    return ActorContext(actor_id=actor_id, actor=profile)


async def get_current_actor(ctx: ActorContext = Depends(get_optional_actor)) -> ActorContext:
    if not ctx.is_authenticated:
        raise AuthFailed("Not authenticated")
    return ctx


def require_permission(permission: Permission):
    async def _dependency(ctx: ActorContext = Depends(get_current_actor)) -> ActorContext:
        if not has_permission(ctx.actor, permission):
            raise PermissionDenied(f"Permission required: {permission}")
        return ctx

    return _dependency


def get_dispatcher(
    request: Request,
    store: KeyedStore = Depends(get_store),
    ctx: ActorContext = Depends(get_optional_actor),
) -> MutationDispatcher:
    return MutationDispatcher(store, ctx, request_id=get_request_id(request))
