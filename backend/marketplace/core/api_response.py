from fastapi import Request

from marketplace.core.errors import MarketplaceError


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    return str(request_id) if request_id else "-"


def _envelope(request: Request, ok: bool, **body) -> dict:
    return {"ok": ok, **body, "request_id": get_request_id(request)}


def error_response_payload(
    request: Request,
    *,
    code: str,
    message: str,
    details=None,
) -> dict:
    return _envelope(request, False, error={"code": code, "message": message, "details": details})


def marketplace_error_payload(request: Request, exc: MarketplaceError) -> dict:
    return error_response_payload(request, code=exc.code, message=exc.message, details=exc.details)


def success_response_payload(
    request: Request,
    *,
    data,
    meta: dict | None = None,
) -> dict:
    return _envelope(request, True, data=data, meta=meta or {})


def page_meta(*, next_cursor: str | None, has_more: bool, page_size: int) -> dict:
    """Cursor paging metadata; pass ``next_cursor`` back to read the next page."""
    return {"next_cursor": next_cursor, "has_more": has_more, "page_size": page_size}
