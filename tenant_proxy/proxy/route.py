import logging
from typing import AsyncIterator, Dict, Iterable, List, Optional, Tuple

import httpx
from fastapi import HTTPException, Request
from fastapi.responses import StreamingResponse
from opentelemetry import trace
from starlette.background import BackgroundTask

from tenant_proxy.registry import TenantDescriptor, TenantRegistry
from tenant_proxy.routing import (
    MatchedBy,
    RouteDecision,
    rewrite_response_headers,
    set_affinity_cookie,
)
from tenant_proxy.vars import PROXY_TIMEOUT, PUBLIC_URL

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}


def create_client() -> httpx.AsyncClient:
    """One client per proxied request; redirects are passed back, never followed."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(PROXY_TIMEOUT),
        follow_redirects=False,
    )


def target_url(
    tenant: TenantDescriptor,
    upstream_path: str,
    query: str = "",
    websocket: bool = False,
) -> str:
    base = tenant.websocket_address if websocket else tenant.backend_address
    if not upstream_path.startswith("/"):
        upstream_path = "/" + upstream_path
    url = f"{base}{upstream_path}"
    if query:
        url = f"{url}?{query}"
    return url


def prepare_headers(
    request: Request,
    tenant: TenantDescriptor,
    matched_by: Optional[MatchedBy] = None,
) -> Dict[str, str]:
    """
    Prepare headers for forwarding to the tenant backend.
    Removes hop-by-hop headers, points Host at the backend and adds proxy headers.
    """
    headers = {}

    for name, value in request.headers.items():
        name_lower = name.lower()
        if name_lower in HOP_BY_HOP_HEADERS or name_lower == "host":
            continue
        headers[name_lower] = value

    headers["host"] = tenant.backend_host

    # X-Forwarded-For: append client IP
    client_ip = request.client.host if request.client else "unknown"
    existing_xff = headers.get("x-forwarded-for", "")
    headers["x-forwarded-for"] = f"{existing_xff}, {client_ip}".strip(", ")

    headers["x-forwarded-host"] = request.headers.get("host", "")
    headers["x-forwarded-proto"] = request.url.scheme
    headers["x-real-ip"] = client_ip

    # Only an explicitly prefixed request was actually mounted under the prefix
    if matched_by == MatchedBy.EXPLICIT:
        headers["x-forwarded-prefix"] = tenant.path_prefix

    return headers


def filter_response_headers(
    headers: Iterable[Tuple[str, str]],
) -> List[Tuple[str, str]]:
    """Drop hop-by-hop headers; repeated headers such as Set-Cookie are kept."""
    return [
        (name, value)
        for name, value in headers
        if name.lower() not in HOP_BY_HOP_HEADERS
    ]


def _request_body(request: Request) -> Optional[AsyncIterator[bytes]]:
    if "content-length" in request.headers or "transfer-encoding" in request.headers:
        return request.stream()
    return None


async def _stream_body(
    response: httpx.Response, tenant: TenantDescriptor, path: str
) -> AsyncIterator[bytes]:
    # Raw bytes: Content-Encoding and Content-Length pass through untouched
    try:
        async for chunk in response.aiter_raw():
            yield chunk
    except httpx.HTTPError as e:
        # Headers are already sent; the client sees a truncated body
        logger.error(
            f"[Proxy Error] Backend stream failed for tenant={tenant.name} path={path}: {e}"
        )
        trace.get_current_span().set_attribute("proxy.error", "stream_interrupted")
    finally:
        await response.aclose()


async def _close_upstream(response: httpx.Response, client: httpx.AsyncClient) -> None:
    await response.aclose()
    await client.aclose()


def _backend_error(
    error: httpx.HTTPError, request: Request, tenant: TenantDescriptor, url: str, span
) -> HTTPException:
    where = f"tenant={tenant.name} path={request.url.path} target={url}"
    if isinstance(error, httpx.TimeoutException):
        logger.error(f"[Proxy Error] Timeout for {where}: {error}")
        span.set_attribute("proxy.error", "timeout")
        return HTTPException(status_code=504, detail="Gateway timeout")
    if isinstance(error, httpx.ConnectError):
        logger.error(f"[Proxy Error] Failed to connect for {where}: {error}")
        span.set_attribute("proxy.error", "connection_failed")
        return HTTPException(
            status_code=502, detail="Bad gateway - cannot connect to target"
        )
    logger.error(f"[Proxy Error] for {where}: {error}", exc_info=True)
    span.set_attribute("proxy.error", str(error))
    return HTTPException(status_code=502, detail="Proxy Error")


async def forward_to_target(
    request: Request, decision: RouteDecision, registry: TenantRegistry
) -> StreamingResponse:
    """
    Forward a routed request to its tenant backend.

    Status and headers are available before any body byte is read, so
    redirects are rehomed and the affinity cookie is appended before the
    response starts. Failures are reported once and never retried.
    """
    tenant = decision.tenant

    with tracer.start_as_current_span("proxy_request") as span:
        url = target_url(tenant, decision.upstream_path, str(request.url.query))
        span.set_attribute("proxy.tenant", tenant.name)
        span.set_attribute("proxy.target_url", url)
        span.set_attribute("proxy.method", request.method)
        if decision.matched_by is not None:
            span.set_attribute("proxy.matched_by", decision.matched_by.value)

        logger.debug(f"[Proxy Req] {request.method} {request.url.path} -> {url}")

        headers = prepare_headers(request, tenant, decision.matched_by)
        client = create_client()
        try:
            upstream_request = client.build_request(
                method=request.method,
                url=url,
                headers=headers,
                content=_request_body(request),
            )
            response = await client.send(upstream_request, stream=True)
        except httpx.HTTPError as e:
            await client.aclose()
            raise _backend_error(e, request, tenant, url, span)

        span.set_attribute("proxy.status_code", response.status_code)
        logger.debug(f"[Proxy Res] {request.url.path} <- {response.status_code}")

        response_headers = rewrite_response_headers(
            response.status_code,
            filter_response_headers(response.headers.multi_items()),
            tenant,
            registry,
            PUBLIC_URL,
        )

        proxied = StreamingResponse(
            _stream_body(response, tenant, request.url.path),
            status_code=response.status_code,
            background=BackgroundTask(_close_upstream, response, client),
        )
        for name, value in response_headers:
            if name.lower() == "location":
                span.set_attribute("proxy.rewritten_location", value)
            proxied.headers.append(name, value)

        set_affinity_cookie(proxied, tenant)
        return proxied
