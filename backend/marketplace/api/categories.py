from fastapi import APIRouter, Depends, Request

from marketplace.core.api_response import success_response_payload
from marketplace.api.deps import get_dispatcher, get_store
from marketplace.schemas.user import CategoryIn
from marketplace.services.mutations import CATEGORIES_PATH, MutationDispatcher
from marketplace.store.base import KeyedStore

router = APIRouter(prefix="/categories", tags=["categories"])


@router.get("")
async def list_categories(request: Request, store: KeyedStore = Depends(get_store)):
    value = await store.get(CATEGORIES_PATH)
    categories = [c for c in value if isinstance(c, str)] if isinstance(value, list) else []
    return success_response_payload(request, data={"categories": categories})


@router.post("")
async def add_category(
    payload: CategoryIn,
    request: Request,
    dispatcher: MutationDispatcher = Depends(get_dispatcher),
):
    added = await dispatcher.add_category(payload.name)
    return success_response_payload(request, data={"name": payload.name.strip(), "added": added})


@router.delete("/{name}")
async def remove_category(
    name: str,
    request: Request,
    dispatcher: MutationDispatcher = Depends(get_dispatcher),
):
    removed = await dispatcher.remove_category(name)
    return success_response_payload(request, data={"name": name, "removed": removed})
