import json
import logging
from typing import Iterable, Iterator, List, Optional
from urllib.parse import urlparse

from pydantic import ValidationError

from tenant_proxy.registry.tenant import TenantDescriptor
from tenant_proxy.vars import PROXY_TENANTS, PROXY_TENANTS_FILE

logger = logging.getLogger("uvicorn.error")


class TenantConfigError(ValueError):
    pass


class PrefixCollisionError(TenantConfigError):
    def __init__(self, prefix: str, first: str, second: str):
        super().__init__(
            f"Tenants {first!r} and {second!r} share the path prefix {prefix!r}"
        )
        self.prefix = prefix
        self.tenants = (first, second)


def _covers(prefix: str, path: str) -> bool:
    """True when ``prefix`` is a leading run of whole path segments of ``path``."""
    if not path.startswith(prefix):
        return False
    rest = path[len(prefix) :]
    return rest == "" or rest.startswith("/")


class TenantRegistry:
    """
    Ordered, immutable table of tenants.

    Built once at startup and shared by every request without locking.
    """

    def __init__(self, tenants: Iterable[TenantDescriptor]):
        self._tenants: tuple = tuple(tenants)
        self._by_prefix = {}
        for tenant in self._tenants:
            existing = self._by_prefix.get(tenant.path_prefix)
            if existing is not None:
                raise PrefixCollisionError(
                    tenant.path_prefix, existing.name, tenant.name
                )
            self._by_prefix[tenant.path_prefix] = tenant
        # Longest first so nested prefixes win over their parents
        self._longest_first = sorted(
            self._tenants, key=lambda t: len(t.path_prefix), reverse=True
        )

    def __iter__(self) -> Iterator[TenantDescriptor]:
        return iter(self._tenants)

    def __len__(self) -> int:
        return len(self._tenants)

    @property
    def prefixes(self) -> List[str]:
        return [t.path_prefix for t in self._tenants]

    def lookup_by_prefix(self, path: str) -> Optional[TenantDescriptor]:
        """Return the tenant whose prefix is the longest segment-aligned prefix of ``path``."""
        if not path:
            return None
        for tenant in self._longest_first:
            if _covers(tenant.path_prefix, path):
                return tenant
        return None

    def lookup_by_prefix_exact(self, prefix: Optional[str]) -> Optional[TenantDescriptor]:
        if not prefix:
            return None
        return self._by_prefix.get(prefix)

    def lookup_by_referer(self, referer: Optional[str]) -> Optional[TenantDescriptor]:
        """
        Find the tenant a referring page belonged to.

        The referer is the previous page's full URL, so the prefix may appear
        anywhere in its path, but it must end on a segment boundary.
        """
        if not referer:
            return None
        path = urlparse(referer).path
        if not path:
            return None
        for tenant in self._longest_first:
            prefix = tenant.path_prefix
            start = path.find(prefix)
            while start != -1:
                end = start + len(prefix)
                if end == len(path) or path[end] == "/":
                    return tenant
                start = path.find(prefix, start + 1)
        return None


def load_tenants(
    raw_json: Optional[str] = None, file_path: Optional[str] = None
) -> List[TenantDescriptor]:
    """Parse a JSON list of ``{name, path, target}`` objects from a string or file."""
    if raw_json:
        source = "PROXY_TENANTS"
        text = raw_json
    elif file_path:
        source = file_path
        try:
            with open(file_path, "r", encoding="utf-8") as fh:
                text = fh.read()
        except OSError as e:
            raise TenantConfigError(f"Cannot read tenant file {file_path}: {e}")
    else:
        return []

    try:
        entries = json.loads(text)
    except json.JSONDecodeError as e:
        raise TenantConfigError(f"Tenant config in {source} is not valid JSON: {e}")

    if not isinstance(entries, list):
        raise TenantConfigError(f"Tenant config in {source} must be a JSON list")

    tenants = []
    for index, entry in enumerate(entries):
        try:
            tenants.append(TenantDescriptor.model_validate(entry))
        except ValidationError as e:
            raise TenantConfigError(f"Invalid tenant #{index} in {source}: {e}")
    return tenants


def registry_from_env() -> TenantRegistry:
    tenants = load_tenants(PROXY_TENANTS, PROXY_TENANTS_FILE)
    if not tenants:
        logger.warning("[Registry] No tenants configured; every request will 404")
    registry = TenantRegistry(tenants)
    for tenant in registry:
        logger.info(
            f"Configured proxy for {tenant.name}: {tenant.path_prefix} -> {tenant.backend_address}"
        )
    return registry
