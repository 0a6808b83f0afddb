from .tenant import TenantDescriptor
from .registry import (
    TenantRegistry,
    TenantConfigError,
    PrefixCollisionError,
    load_tenants,
    registry_from_env,
)

__all__ = [
    "TenantDescriptor",
    "TenantRegistry",
    "TenantConfigError",
    "PrefixCollisionError",
    "load_tenants",
    "registry_from_env",
]
