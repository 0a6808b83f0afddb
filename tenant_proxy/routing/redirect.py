import logging
from typing import List, Tuple
from urllib.parse import urlparse

from tenant_proxy.registry import TenantDescriptor, TenantRegistry

logger = logging.getLogger("uvicorn.error")


def is_redirect(status_code: int) -> bool:
    return 300 <= status_code < 400


def rehome_location(
    location: str,
    tenant: TenantDescriptor,
    registry: TenantRegistry,
    public_url: str = "",
) -> str:
    """
    Rewrite a redirect target so it re-enters the router under ``tenant``.

    Root-relative targets get the tenant prefix unless a known prefix is
    already present. Absolute targets pointing back at the tenant's own
    backend are rehomed onto the public origin. Anything else is left as is.
    """
    if not location:
        return location

    parsed = urlparse(location)

    if not parsed.scheme and not parsed.netloc:
        # Protocol-relative "//host/x" parses with a netloc, so this is a path
        if not location.startswith("/"):
            return location
        if registry.lookup_by_prefix(parsed.path) is not None:
            return location
        return f"{tenant.path_prefix}{location}"

    if parsed.netloc == tenant.backend_host:
        path = parsed.path or "/"
        if registry.lookup_by_prefix(path) is None:
            path = f"{tenant.path_prefix}{path}"
        query = f"?{parsed.query}" if parsed.query else ""
        fragment = f"#{parsed.fragment}" if parsed.fragment else ""
        return f"{public_url}{path}{query}{fragment}"

    return location


def rewrite_response_headers(
    status_code: int,
    headers: List[Tuple[str, str]],
    tenant: TenantDescriptor,
    registry: TenantRegistry,
    public_url: str = "",
) -> List[Tuple[str, str]]:
    """Rehome ``Location`` on redirect responses for the tenant the request was routed to."""
    if not is_redirect(status_code):
        return headers

    rewritten = []
    for name, value in headers:
        if name.lower() == "location":
            new_value = rehome_location(value, tenant, registry, public_url)
            if new_value != value:
                logger.debug(
                    f"[Proxy Redirect Rewrite] Rewriting Location from '{value}' to '{new_value}'"
                )
            value = new_value
        rewritten.append((name, value))
    return rewritten
