from fastapi import APIRouter, Depends, Request

from marketplace.core.api_response import success_response_payload
from marketplace.core.errors import NotFound
from marketplace.api.deps import get_dispatcher, get_store
from marketplace.schemas.user import ProfileUpdate
from marketplace.services.mutations import MutationDispatcher
from marketplace.services.state import USERS_PATH
from marketplace.store.base import KeyedStore

router = APIRouter(prefix="/profile", tags=["profile"])

PUBLIC_FIELDS = (
    "username",
    "role",
    "profilePic",
    "profileBorder",
    "customColor",
    "customBorderWidth",
    "bio",
    "socials",
)


@router.get("/{user_id}")
async def get_profile(user_id: str, request: Request, store: KeyedStore = Depends(get_store)):
    profile = await store.get(f"{USERS_PATH}/{user_id}")
    if not isinstance(profile, dict):
        raise NotFound("User not found")
    public = {key: profile[key] for key in PUBLIC_FIELDS if key in profile}
    return success_response_payload(request, data={**public, "id": user_id})


@router.patch("")
async def update_own_profile(
    payload: ProfileUpdate,
    request: Request,
    dispatcher: MutationDispatcher = Depends(get_dispatcher),
):
    updated = await dispatcher.update_profile(payload)
    return success_response_payload(request, data=updated)
