from .affinity import (
    AffinityPrecedence,
    MatchedBy,
    resolve_tenant,
    read_affinity_token,
    affinity_cookie_header,
    set_affinity_cookie,
)
from .decision import (
    Outcome,
    RequestContext,
    RouteDecision,
    decide,
    strip_prefix,
)
from .redirect import is_redirect, rehome_location, rewrite_response_headers

__all__ = [
    "AffinityPrecedence",
    "MatchedBy",
    "resolve_tenant",
    "read_affinity_token",
    "affinity_cookie_header",
    "set_affinity_cookie",
    "Outcome",
    "RequestContext",
    "RouteDecision",
    "decide",
    "strip_prefix",
    "is_redirect",
    "rehome_location",
    "rewrite_response_headers",
]
