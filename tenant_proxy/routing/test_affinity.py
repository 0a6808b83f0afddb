from starlette.responses import Response

from tenant_proxy.routing.affinity import (
    AffinityPrecedence,
    MatchedBy,
    affinity_cookie_header,
    read_affinity_token,
    resolve_tenant,
    set_affinity_cookie,
)


class TestResolveTenant:
    def test_referer_hint(self, registry):
        tenant, matched_by = resolve_tenant(registry, "http://proxy/b/page", None)
        assert tenant.name == "App B"
        assert matched_by == MatchedBy.REFERER

    def test_token_hint(self, registry):
        tenant, matched_by = resolve_tenant(registry, None, "/a")
        assert tenant.name == "App A"
        assert matched_by == MatchedBy.AFFINITY

    def test_no_hints(self, registry):
        assert resolve_tenant(registry, None, None) == (None, None)

    def test_unknown_token_is_treated_as_absent(self, registry):
        assert resolve_tenant(registry, None, "/deleted-app") == (None, None)

    def test_unknown_token_falls_through_to_referer(self, registry):
        tenant, matched_by = resolve_tenant(
            registry,
            "http://proxy/b/page",
            "/deleted-app",
            AffinityPrecedence.COOKIE,
        )
        assert tenant.name == "App B"
        assert matched_by == MatchedBy.REFERER

    def test_foreign_referer_falls_through_to_token(self, registry):
        tenant, matched_by = resolve_tenant(registry, "http://elsewhere/x", "/a")
        assert tenant.name == "App A"
        assert matched_by == MatchedBy.AFFINITY

    def test_disagreement_referer_precedence(self, registry):
        tenant, matched_by = resolve_tenant(
            registry, "http://proxy/b/page", "/a", AffinityPrecedence.REFERER
        )
        assert tenant.name == "App B"
        assert matched_by == MatchedBy.REFERER

    def test_disagreement_cookie_precedence(self, registry):
        tenant, matched_by = resolve_tenant(
            registry, "http://proxy/b/page", "/a", AffinityPrecedence.COOKIE
        )
        assert tenant.name == "App A"
        assert matched_by == MatchedBy.AFFINITY


class TestPrecedenceParsing:
    def test_known_values(self):
        assert AffinityPrecedence.parse("cookie") == AffinityPrecedence.COOKIE
        assert AffinityPrecedence.parse("REFERER") == AffinityPrecedence.REFERER

    def test_default_and_unknown(self):
        assert AffinityPrecedence.parse(None) == AffinityPrecedence.REFERER
        assert AffinityPrecedence.parse("random") == AffinityPrecedence.REFERER


class TestAffinityCookie:
    def test_read_token(self):
        assert read_affinity_token({"x-proxied-app": "/a"}) == "/a"
        assert read_affinity_token({"x-proxied-app": ""}) is None
        assert read_affinity_token({}) is None

    def test_cookie_header(self, tenant_a):
        header = affinity_cookie_header(tenant_a)
        assert header.startswith("x-proxied-app=/a;")
        assert "Max-Age=3600" in header
        assert "Path=/" in header
        assert "HttpOnly" in header
        assert "Secure" not in header

    def test_secure_flag(self, tenant_a, monkeypatch):
        monkeypatch.setattr("tenant_proxy.routing.affinity.AFFINITY_COOKIE_SECURE", True)
        assert "Secure" in affinity_cookie_header(tenant_a)

    def test_set_cookie_keeps_existing_cookies(self, tenant_b):
        response = Response()
        response.headers.append("set-cookie", "session=abc; Path=/")
        set_affinity_cookie(response, tenant_b)
        cookies = response.headers.getlist("set-cookie")
        assert cookies[0] == "session=abc; Path=/"
        assert cookies[1].startswith("x-proxied-app=/b;")
