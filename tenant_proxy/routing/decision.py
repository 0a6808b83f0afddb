"""
Ordered routing decision chain.

landing page -> explicit prefix -> affinity resolution -> not found.
Each request yields exactly one immutable ``RouteDecision``; nothing is
shared between requests except the read-only registry.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from tenant_proxy.registry import TenantDescriptor, TenantRegistry
from tenant_proxy.routing.affinity import (
    AffinityPrecedence,
    MatchedBy,
    resolve_tenant,
)

logger = logging.getLogger("uvicorn.error")


class Outcome(str, Enum):
    LANDING = "landing"
    FORWARDED = "forwarded"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class RequestContext:
    path: str
    method: str
    referer: Optional[str] = None
    affinity_token: Optional[str] = None
    is_websocket: bool = False
    # Percent-encoded path as received; forwarded verbatim so %2F, %3F, %23 survive
    raw_path: Optional[str] = None

    @property
    def forward_path(self) -> str:
        return self.raw_path or self.path


@dataclass(frozen=True)
class RouteDecision:
    outcome: Outcome
    tenant: Optional[TenantDescriptor] = None
    upstream_path: Optional[str] = None
    matched_by: Optional[MatchedBy] = None

    @property
    def forwarded(self) -> bool:
        return self.outcome == Outcome.FORWARDED


def strip_prefix(path: str, tenant: TenantDescriptor) -> str:
    """Remove the tenant prefix exactly once; an empty remainder becomes ``/``."""
    remainder = path[len(tenant.path_prefix) :]
    return remainder or "/"


def _upstream_path(ctx: RequestContext, tenant: TenantDescriptor) -> str:
    raw = ctx.forward_path
    prefix = tenant.path_prefix
    if raw == prefix or raw.startswith(prefix + "/"):
        return strip_prefix(raw, tenant)
    # prefix itself arrived percent-encoded
    return strip_prefix(ctx.path, tenant)


def is_landing_request(ctx: RequestContext) -> bool:
    return (
        not ctx.is_websocket
        and ctx.method.upper() in ("GET", "HEAD")
        and ctx.path == "/"
    )


def decide(
    ctx: RequestContext,
    registry: TenantRegistry,
    precedence: AffinityPrecedence = AffinityPrecedence.REFERER,
) -> RouteDecision:
    # GET and HEAD / belong to the landing page regardless of cookies or referer
    if is_landing_request(ctx):
        return RouteDecision(Outcome.LANDING)

    tenant = registry.lookup_by_prefix(ctx.path)
    if tenant is not None:
        return RouteDecision(
            Outcome.FORWARDED,
            tenant=tenant,
            upstream_path=_upstream_path(ctx, tenant),
            matched_by=MatchedBy.EXPLICIT,
        )

    tenant, matched_by = resolve_tenant(
        registry, ctx.referer, ctx.affinity_token, precedence
    )
    if tenant is not None:
        logger.info(
            f"[Fallback Proxy] Routing {ctx.method} {ctx.path} to {tenant.name} (by {matched_by.value})"
        )
        return RouteDecision(
            Outcome.FORWARDED,
            tenant=tenant,
            upstream_path=ctx.forward_path,
            matched_by=matched_by,
        )

    logger.warning(f"[Fallback Proxy] Unable to route {ctx.method} {ctx.path}")
    return RouteDecision(Outcome.NOT_FOUND)
