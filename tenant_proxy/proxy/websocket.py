import asyncio
import logging
from typing import Dict

import aiohttp
from fastapi import WebSocket
from opentelemetry import trace
from starlette.websockets import WebSocketState

from tenant_proxy.proxy.route import HOP_BY_HOP_HEADERS, target_url
from tenant_proxy.routing import RouteDecision, affinity_cookie_header
from tenant_proxy.vars import PROXY_TIMEOUT

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

# Handshake headers aiohttp generates itself for the backend leg
WEBSOCKET_HANDSHAKE_HEADERS = {
    "host",
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-protocol",
    "sec-websocket-accept",
}

# 1008 policy violation: no tenant could be resolved
CLOSE_UNROUTABLE = 1008
# 1011 internal error: backend unreachable
CLOSE_BACKEND_ERROR = 1011


def create_ws_session() -> aiohttp.ClientSession:
    return aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=None, connect=PROXY_TIMEOUT)
    )


def prepare_ws_headers(websocket: WebSocket) -> Dict[str, str]:
    headers = {}
    for name, value in websocket.headers.items():
        name_lower = name.lower()
        if name_lower in HOP_BY_HOP_HEADERS or name_lower in WEBSOCKET_HANDSHAKE_HEADERS:
            continue
        headers[name_lower] = value
    client_ip = websocket.client.host if websocket.client else "unknown"
    existing_xff = headers.get("x-forwarded-for", "")
    headers["x-forwarded-for"] = f"{existing_xff}, {client_ip}".strip(", ")
    headers["x-forwarded-host"] = websocket.headers.get("host", "")
    return headers


async def _client_to_backend(websocket: WebSocket, upstream) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            await upstream.close(code=_close_code(message.get("code")))
            return
        if message.get("text") is not None:
            await upstream.send_str(message["text"])
        elif message.get("bytes") is not None:
            await upstream.send_bytes(message["bytes"])


async def _backend_to_client(websocket: WebSocket, upstream) -> None:
    async for msg in upstream:
        if msg.type == aiohttp.WSMsgType.TEXT:
            await websocket.send_text(msg.data)
        elif msg.type == aiohttp.WSMsgType.BINARY:
            await websocket.send_bytes(msg.data)
        elif msg.type == aiohttp.WSMsgType.ERROR:
            logger.warning(f"[WS Proxy] Backend stream error: {upstream.exception()}")
            break


def _close_code(code) -> int:
    # 1005 and 1006 are reserved and must never be sent in a close frame
    if not code or code in (1005, 1006):
        return 1000
    return code


def _client_connected(websocket: WebSocket) -> bool:
    return (
        websocket.client_state == WebSocketState.CONNECTED
        and websocket.application_state == WebSocketState.CONNECTED
    )


async def bridge_websocket(websocket: WebSocket, decision: RouteDecision) -> None:
    """
    Bridge a client WebSocket to the tenant backend until either side closes.

    The backend is dialled before the client handshake is accepted, so an
    unreachable backend is reported as a close instead of a silent drop.
    """
    tenant = decision.tenant
    url = target_url(
        tenant, decision.upstream_path, str(websocket.url.query), websocket=True
    )

    with tracer.start_as_current_span("proxy_websocket") as span:
        span.set_attribute("proxy.tenant", tenant.name)
        span.set_attribute("proxy.target_url", url)
        if decision.matched_by is not None:
            span.set_attribute("proxy.matched_by", decision.matched_by.value)

        logger.debug(f"[WS Proxy] {websocket.url.path} -> {url}")

        async with create_ws_session() as session:
            try:
                upstream = await session.ws_connect(
                    url,
                    headers=prepare_ws_headers(websocket),
                    protocols=tuple(websocket.scope.get("subprotocols") or ()),
                )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.error(
                    f"[Proxy Error] WebSocket connect failed for tenant={tenant.name} path={websocket.url.path}: {e}"
                )
                span.set_attribute("proxy.error", "connection_failed")
                await websocket.close(code=CLOSE_BACKEND_ERROR)
                return

            try:
                await websocket.accept(
                    subprotocol=upstream.protocol,
                    headers=[
                        (b"set-cookie", affinity_cookie_header(tenant).encode("latin-1"))
                    ],
                )
                pumps = [
                    asyncio.create_task(_client_to_backend(websocket, upstream)),
                    asyncio.create_task(_backend_to_client(websocket, upstream)),
                ]
                try:
                    done, _ = await asyncio.wait(
                        pumps, return_when=asyncio.FIRST_COMPLETED
                    )
                finally:
                    for task in pumps:
                        if not task.done():
                            task.cancel()
                    await asyncio.gather(*pumps, return_exceptions=True)

                for task in done:
                    if not task.cancelled() and task.exception() is not None:
                        logger.warning(
                            f"[WS Proxy] Bridge for {tenant.name} ended with error: {task.exception()}"
                        )
            finally:
                if not upstream.closed:
                    await upstream.close()
                if _client_connected(websocket):
                    await websocket.close(code=_close_code(upstream.close_code))
