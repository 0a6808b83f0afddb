import re
from urllib.parse import urlparse

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# Unreserved URL characters only; the prefix doubles as the affinity cookie value
_PREFIX_RE = re.compile(r"^(/[A-Za-z0-9._~-]+)+$")


class TenantDescriptor(BaseModel):
    """One backend application fronted under a unique path prefix."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    path_prefix: str = Field(
        validation_alias=AliasChoices("path_prefix", "path", "pathPrefix")
    )
    backend_address: str = Field(
        validation_alias=AliasChoices(
            "backend_address", "target", "backendAddress"
        )
    )

    @field_validator("path_prefix")
    @classmethod
    def _check_prefix(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError(f"path prefix must start with '/': {value!r}")
        value = value.rstrip("/")
        if not value:
            raise ValueError("path prefix must not be '/'")
        if not _PREFIX_RE.match(value):
            raise ValueError(f"path prefix has unsupported characters: {value!r}")
        return value

    @field_validator("backend_address")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"backend address must be an http(s) URL: {value!r}")
        return value.rstrip("/")

    @property
    def backend_host(self) -> str:
        return urlparse(self.backend_address).netloc

    @property
    def websocket_address(self) -> str:
        parsed = urlparse(self.backend_address)
        scheme = "wss" if parsed.scheme == "https" else "ws"
        return parsed._replace(scheme=scheme).geturl()
