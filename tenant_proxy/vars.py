import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "tenant-proxy")

# Tenant table: inline JSON wins over the file
PROXY_TENANTS = os.environ.get("PROXY_TENANTS", "")
PROXY_TENANTS_FILE = os.environ.get("PROXY_TENANTS_FILE", "")

AFFINITY_COOKIE_NAME = os.environ.get("AFFINITY_COOKIE_NAME", "x-proxied-app")
AFFINITY_COOKIE_MAX_AGE = int(os.environ.get("AFFINITY_COOKIE_MAX_AGE", "3600"))
AFFINITY_COOKIE_SECURE = (
    os.environ.get("AFFINITY_COOKIE_SECURE", "false").lower() == "true"
)
# Which hint wins when referer and cookie disagree: "referer" or "cookie"
AFFINITY_PRECEDENCE = os.environ.get("AFFINITY_PRECEDENCE", "referer").lower()

PROXY_TIMEOUT = int(os.environ.get("PROXY_TIMEOUT", "300"))
PUBLIC_URL = os.environ.get("PUBLIC_URL", "").rstrip("/")

LANDING_PAGE_FILE = os.environ.get("LANDING_PAGE_FILE", "")
METRICS_PATH = os.environ.get("METRICS_PATH", "/_router/metrics")

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
