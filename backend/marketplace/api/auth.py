import logging
import time

from fastapi import APIRouter, Depends, Request

from marketplace.core.api_response import get_request_id, success_response_payload
from marketplace.core.errors import AccountBanned
from marketplace.core.metrics import increment_counter
from marketplace.core.observability import log_business_event
from marketplace.core.permissions import actor_permissions
from marketplace.core.security import create_access_token
from marketplace.api.deps import get_current_actor, get_store
from marketplace.schemas.user import CredentialsIn
from marketplace.services.auth import AuthProvider, validate_credentials
from marketplace.services.session import default_profile
from marketplace.services.state import USERS_PATH, ActorContext
from marketplace.store.base import KeyedStore

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _session_payload(actor_id: str, profile: dict) -> dict:
    return {
        "access_token": create_access_token(actor_id),
        "token_type": "bearer",
        "user_id": actor_id,
        "profile": profile,
        "permissions": actor_permissions(profile),
    }


@router.post("/sign-up")
async def sign_up(
    payload: CredentialsIn,
    request: Request,
    store: KeyedStore = Depends(get_store),
):
    increment_counter("auth_sign_up_total")
    username = validate_credentials(payload.username, payload.password)
    actor_id = await AuthProvider(store).sign_up(username, payload.password)
    profile = default_profile(username, _now_ms())
    await store.set(f"{USERS_PATH}/{actor_id}", profile)
    log_business_event(logger, event="auth_sign_up", request_id=get_request_id(request), actor_id=actor_id)
    return success_response_payload(request, data=_session_payload(actor_id, profile))


@router.post("/sign-in")
async def sign_in(
    payload: CredentialsIn,
    request: Request,
    store: KeyedStore = Depends(get_store),
):
    increment_counter("auth_sign_in_total")
    username = validate_credentials(payload.username, payload.password)
    actor_id = await AuthProvider(store).verify(username, payload.password)

    profile = await store.get(f"{USERS_PATH}/{actor_id}")
    if not isinstance(profile, dict):
        profile = default_profile(username, _now_ms())
        await store.set(f"{USERS_PATH}/{actor_id}", profile)
    if profile.get("banned"):
        increment_counter("auth_sign_in_result_total", result="banned")
        raise AccountBanned()

    log_business_event(logger, event="auth_sign_in", request_id=get_request_id(request), actor_id=actor_id)
    return success_response_payload(request, data=_session_payload(actor_id, profile))


@router.get("/me")
def me(request: Request, ctx: ActorContext = Depends(get_current_actor)):
    return success_response_payload(
        request,
        data={
            "user_id": ctx.actor_id,
            "profile": ctx.actor,
            "permissions": actor_permissions(ctx.actor),
        },
    )
