"""Request parsing helpers shared by the route modules."""
from __future__ import annotations

from typing import Any, NamedTuple
from uuid import UUID

from aiohttp import web

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


class Page(NamedTuple):
    limit: int
    offset: int


def parse_uuid(value: str, label: str) -> UUID:
    try:
        return UUID(str(value))
    except (ValueError, TypeError) as exc:
        raise web.HTTPBadRequest(text=f"Invalid {label}") from exc


def optional_uuid(value: str | None, label: str) -> UUID | None:
    return None if value is None else parse_uuid(value, label)


async def read_json(request: web.Request) -> dict[str, Any]:
    """Parse a JSON object body, raising HTTPBadRequest on anything else."""
    try:
        data = await request.json()
    except ValueError as exc:
        raise web.HTTPBadRequest(text="Invalid JSON payload") from exc
    if not isinstance(data, dict):
        raise web.HTTPBadRequest(text="JSON body must be an object")
    return data


def page_from_query(request: web.Request) -> Page:
    """``?limit=&offset=``; out-of-range values are clamped, non-integers are a 400."""
    query = request.rel_url.query
    try:
        limit = int(query.get("limit", DEFAULT_PAGE_SIZE))
        offset = int(query.get("offset", 0))
    except ValueError as exc:
        raise web.HTTPBadRequest(text="limit and offset must be integers") from exc
    if limit <= 0:
        limit = DEFAULT_PAGE_SIZE
    return Page(limit=min(limit, MAX_PAGE_SIZE), offset=max(offset, 0))


def page_body(key: str, items: list[Any], page: Page, total: int) -> dict[str, Any]:
    return {key: items, "total": total, "limit": page.limit, "offset": page.offset}
