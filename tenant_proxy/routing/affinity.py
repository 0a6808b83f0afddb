"""
Affinity resolution for requests that carry no tenant prefix.

Prefix-unaware backends emit root-relative requests for their own assets and
APIs. The owning tenant is recovered from the referring page or from the
affinity cookie written on the last explicitly prefixed request.
"""

import logging
from enum import Enum
from typing import Mapping, Optional, Tuple

from starlette.responses import Response

from tenant_proxy.registry import TenantDescriptor, TenantRegistry
from tenant_proxy.utils import mask_token
from tenant_proxy.vars import (
    AFFINITY_COOKIE_MAX_AGE,
    AFFINITY_COOKIE_NAME,
    AFFINITY_COOKIE_SECURE,
)

logger = logging.getLogger("uvicorn.error")


class AffinityPrecedence(str, Enum):
    REFERER = "referer"
    COOKIE = "cookie"

    @classmethod
    def parse(cls, value: Optional[str]) -> "AffinityPrecedence":
        try:
            return cls((value or cls.REFERER.value).lower())
        except ValueError:
            logger.warning(
                f"[Affinity] Unknown precedence {value!r}, falling back to referer"
            )
            return cls.REFERER


class MatchedBy(str, Enum):
    EXPLICIT = "explicit"
    REFERER = "referer"
    AFFINITY = "affinity"


def _from_referer(
    registry: TenantRegistry, referer: Optional[str]
) -> Optional[TenantDescriptor]:
    return registry.lookup_by_referer(referer)


def _from_token(
    registry: TenantRegistry, affinity_token: Optional[str]
) -> Optional[TenantDescriptor]:
    if not affinity_token:
        return None
    tenant = registry.lookup_by_prefix_exact(affinity_token)
    if tenant is None:
        # Stale or forged tokens are treated as absent
        logger.warning(
            mask_token(
                f"[Affinity] Ignoring token for unknown tenant: {affinity_token}",
                affinity_token,
            )
        )
    return tenant


def resolve_tenant(
    registry: TenantRegistry,
    referer: Optional[str],
    affinity_token: Optional[str],
    precedence: AffinityPrecedence = AffinityPrecedence.REFERER,
) -> Tuple[Optional[TenantDescriptor], Optional[MatchedBy]]:
    """Infer the owning tenant; the first hint that resolves wins."""
    hints = [
        (MatchedBy.REFERER, lambda: _from_referer(registry, referer)),
        (MatchedBy.AFFINITY, lambda: _from_token(registry, affinity_token)),
    ]
    if precedence == AffinityPrecedence.COOKIE:
        hints.reverse()

    for matched_by, lookup in hints:
        tenant = lookup()
        if tenant is not None:
            return tenant, matched_by
    return None, None


def read_affinity_token(cookies: Mapping[str, str]) -> Optional[str]:
    return cookies.get(AFFINITY_COOKIE_NAME) or None


def affinity_cookie_header(tenant: TenantDescriptor) -> str:
    """Render the ``Set-Cookie`` value that pins this client to ``tenant``."""
    # Prefixes are plain path characters, valid cookie octets without quoting
    parts = [
        f"{AFFINITY_COOKIE_NAME}={tenant.path_prefix}",
        f"Max-Age={AFFINITY_COOKIE_MAX_AGE}",
        "Path=/",
        "HttpOnly",
        "SameSite=Lax",
    ]
    if AFFINITY_COOKIE_SECURE:
        parts.append("Secure")
    return "; ".join(parts)


def set_affinity_cookie(response: Response, tenant: TenantDescriptor) -> None:
    response.headers.append("set-cookie", affinity_cookie_header(tenant))
