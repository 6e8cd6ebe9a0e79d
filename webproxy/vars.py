import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "webproxy")
SERVICE_VERSION = os.getenv("SERVICE_VERSION", "1.0.0")
PROXY_BASE_PATH = os.environ.get("PROXY_BASE_PATH", "").rstrip("/")
PUBLIC_URL = os.environ.get("PUBLIC_URL", "").rstrip("/")  # Public-facing origin for rewrites

# The hosting platform caps one invocation; the outbound fetch must end before it.
PLATFORM_MAX_DURATION = float(os.environ.get("PLATFORM_MAX_DURATION", "30"))
PROXY_TIMEOUT_MARGIN = float(os.environ.get("PROXY_TIMEOUT_MARGIN", "3"))


def _bounded_timeout(raw: str, cap: float, margin: float) -> float:
    ceiling = max(cap - max(margin, 0.5), 1.0)
    return min(float(raw), ceiling)


PROXY_TIMEOUT = _bounded_timeout(
    os.environ.get("PROXY_TIMEOUT", "25"), PLATFORM_MAX_DURATION, PROXY_TIMEOUT_MARGIN
)

STREAM_CHUNK_SIZE = int(os.getenv("STREAM_CHUNK_SIZE", "65536"))
MAX_REWRITE_BYTES = int(os.getenv("MAX_REWRITE_BYTES", str(10 * 1024 * 1024)))

DEFAULT_USER_AGENT = os.getenv(
    "DEFAULT_USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
)

INJECT_CLIENT_SCRIPT = os.getenv("INJECT_CLIENT_SCRIPT", "true").lower() == "true"
CLIENT_RESCAN_INTERVAL_MS = int(os.getenv("CLIENT_RESCAN_INTERVAL_MS", "2000"))

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
