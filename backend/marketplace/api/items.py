from typing import Literal

from fastapi import APIRouter, Depends, Query, Request

from marketplace.core.api_response import page_meta, success_response_payload
from marketplace.core.errors import NotFound
from marketplace.core.metrics import increment_counter
from marketplace.api.deps import get_dispatcher, get_store
from marketplace.schemas.item import ItemForm, RatingIn
from marketplace.services.derived_view import average_rating, derive_view, featured_items
from marketplace.services.listing import ITEMS_PATH, ITEMS_PER_PAGE, fetch_page
from marketplace.services.mutations import MutationDispatcher
from marketplace.store.base import KeyedStore

router = APIRouter(prefix="/items", tags=["items"])


def _with_rating(item: dict) -> dict:
    return {**item, "average_rating": average_rating(item.get("ratings"))}


@router.get("")
async def list_items(
    request: Request,
    cursor: str | None = None,
    q: str = "",
    category: str | None = None,
    sort_by: Literal["newest", "oldest", "highest_rating", "title_asc"] = "newest",
    page_size: int = Query(default=ITEMS_PER_PAGE, ge=1, le=100),
    store: KeyedStore = Depends(get_store),
):
    increment_counter("items_list_total", mode="continue" if cursor else "reset")
    page = await fetch_page(store, cursor, page_size)
    view = derive_view(page.items, search_term=q, category=category, sort_by=sort_by)
    return success_response_payload(
        request,
        data={"items": [_with_rating(item) for item in view]},
        meta=page_meta(next_cursor=page.cursor, has_more=page.has_more, page_size=page_size),
    )


@router.get("/featured")
async def list_featured(request: Request, store: KeyedStore = Depends(get_store)):
    collection = await store.get(ITEMS_PATH) or {}
    items = [{**value, "id": key} for key, value in sorted(collection.items(), reverse=True) if isinstance(value, dict)]
    return success_response_payload(request, data={"items": [_with_rating(item) for item in featured_items(items)]})


@router.get("/{item_id}")
async def get_item(item_id: str, request: Request, store: KeyedStore = Depends(get_store)):
    record = await store.get(f"{ITEMS_PATH}/{item_id}")
    if not isinstance(record, dict):
        raise NotFound("Item not found")
    return success_response_payload(request, data=_with_rating({**record, "id": item_id}))


@router.post("")
async def create_item(
    payload: ItemForm,
    request: Request,
    dispatcher: MutationDispatcher = Depends(get_dispatcher),
):
    item = await dispatcher.create_item(payload)
    return success_response_payload(request, data=item)


@router.put("/{item_id}")
async def update_item(
    item_id: str,
    payload: ItemForm,
    request: Request,
    dispatcher: MutationDispatcher = Depends(get_dispatcher),
):
    item = await dispatcher.update_item(item_id, payload)
    return success_response_payload(request, data=item)


@router.delete("/{item_id}")
async def delete_item(
    item_id: str,
    request: Request,
    dispatcher: MutationDispatcher = Depends(get_dispatcher),
):
    await dispatcher.delete_item(item_id)
    return success_response_payload(request, data={"ok": True, "id": item_id})


@router.post("/{item_id}/feature")
async def toggle_feature(
    item_id: str,
    request: Request,
    dispatcher: MutationDispatcher = Depends(get_dispatcher),
):
    featured = await dispatcher.toggle_feature(item_id)
    return success_response_payload(request, data={"id": item_id, "featured": featured})


@router.post("/{item_id}/ratings")
async def rate_item(
    item_id: str,
    payload: RatingIn,
    request: Request,
    dispatcher: MutationDispatcher = Depends(get_dispatcher),
):
    entry = await dispatcher.rate_item(item_id, payload)
    return success_response_payload(request, data=entry)
