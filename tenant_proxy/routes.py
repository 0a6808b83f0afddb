import html
import logging
from typing import Union

from fastapi import APIRouter, HTTPException, Request, WebSocket
from fastapi.responses import FileResponse, HTMLResponse
from starlette.requests import HTTPConnection

from tenant_proxy.proxy import bridge_websocket, forward_to_target
from tenant_proxy.proxy.websocket import CLOSE_UNROUTABLE
from tenant_proxy.registry import TenantRegistry
from tenant_proxy.routing import (
    AffinityPrecedence,
    Outcome,
    RequestContext,
    decide,
    read_affinity_token,
)
from tenant_proxy.vars import LANDING_PAGE_FILE

router = APIRouter()
logger = logging.getLogger("uvicorn.error")

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]
NOT_FOUND_DETAIL = (
    "Not Found: This path does not exist on the proxy or could not be routed "
    "to an application."
)


def request_context(connection: HTTPConnection, method: str) -> RequestContext:
    raw_path = connection.scope.get("raw_path")
    return RequestContext(
        path=connection.url.path,
        raw_path=raw_path.decode("latin-1") if raw_path else None,
        method=method,
        referer=connection.headers.get("referer"),
        affinity_token=read_affinity_token(connection.cookies),
        is_websocket=connection.scope["type"] == "websocket",
    )


def _routing_state(connection: HTTPConnection):
    state = connection.app.state
    registry: TenantRegistry = state.registry
    precedence: AffinityPrecedence = getattr(
        state, "precedence", AffinityPrecedence.REFERER
    )
    return registry, precedence


def landing_page(registry: TenantRegistry) -> Union[FileResponse, HTMLResponse]:
    if LANDING_PAGE_FILE:
        return FileResponse(LANDING_PAGE_FILE, media_type="text/html")

    items = "\n".join(
        f'    <li><a href="{html.escape(t.path_prefix)}/">{html.escape(t.name)}</a></li>'
        for t in registry
    )
    body = (
        "<!DOCTYPE html>\n<html>\n<head><title>Applications</title></head>\n"
        f"<body>\n<h1>Applications</h1>\n<ul>\n{items}\n</ul>\n</body>\n</html>\n"
    )
    return HTMLResponse(content=body)


@router.api_route("/{path:path}", methods=PROXY_METHODS)
async def proxy_all(request: Request, path: str):
    """Catch-all route: landing page, explicit prefix, affinity fallback, then 404."""
    registry, precedence = _routing_state(request)
    decision = decide(request_context(request, request.method), registry, precedence)

    if decision.outcome == Outcome.LANDING:
        return landing_page(registry)
    if decision.outcome == Outcome.NOT_FOUND:
        raise HTTPException(status_code=404, detail=NOT_FOUND_DETAIL)
    return await forward_to_target(request, decision, registry)


@router.websocket("/{path:path}")
async def proxy_websocket(websocket: WebSocket, path: str):
    registry, precedence = _routing_state(websocket)
    decision = decide(request_context(websocket, "GET"), registry, precedence)

    if not decision.forwarded:
        await websocket.close(code=CLOSE_UNROUTABLE)
        return
    await bridge_websocket(websocket, decision)
