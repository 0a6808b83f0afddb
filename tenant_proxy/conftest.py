import httpx
import pytest
from fastapi.testclient import TestClient

from tenant_proxy.registry import TenantDescriptor, TenantRegistry
from tenant_proxy.routing import AffinityPrecedence
from tenant_proxy.utils_tests.backend_mock import BackendRecorder

BACKEND_A = "http://backend-a:8001"
BACKEND_B = "http://backend-b:8002"


@pytest.fixture
def tenant_a():
    return TenantDescriptor(name="App A", path_prefix="/a", backend_address=BACKEND_A)


@pytest.fixture
def tenant_b():
    return TenantDescriptor(name="App B", path_prefix="/b", backend_address=BACKEND_B)


@pytest.fixture
def registry(tenant_a, tenant_b):
    return TenantRegistry([tenant_a, tenant_b])


@pytest.fixture
def backend(monkeypatch):
    recorder = BackendRecorder()

    def _client():
        return httpx.AsyncClient(
            transport=httpx.MockTransport(recorder), follow_redirects=False
        )

    monkeypatch.setattr("tenant_proxy.proxy.route.create_client", _client)
    return recorder


@pytest.fixture
def client(registry, backend, monkeypatch):
    """TestClient against the real app with the two-tenant registry swapped in."""
    from tenant_proxy.server import app

    monkeypatch.setattr(app.state, "registry", registry)
    monkeypatch.setattr(app.state, "precedence", AffinityPrecedence.REFERER)
    with TestClient(app) as test_client:
        yield test_client
