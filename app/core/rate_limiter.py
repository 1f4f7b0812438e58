from slowapi import Limiter
from slowapi.util import get_remote_address
from app.core.config import settings
from loguru import logger

# ----------------------------------------------------------------
# ROUTE LIMITS
# ----------------------------------------------------------------
STAFF_SIGNUP_LIMIT = "10/minute"
REQUEST_CREATE_LIMIT = "20/minute"
BULK_SEND_LIMIT = "5/minute"


# ----------------------------------------------------------------
# CLIENT IDENTIFICATION
# ----------------------------------------------------------------
def client_key(request) -> str:
    """Leftmost X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    return get_remote_address(request)


def storage_uri_for(url: str | None, production: bool) -> str | None:
    # managed Redis in production only accepts TLS
    if url and production and url.startswith("redis://"):
        return "rediss://" + url[len("redis://"):]
    return url or None


def build_limiter() -> Limiter:
    storage_uri = storage_uri_for(settings.REDIS_URL, settings.is_production)
    if not storage_uri:
        logger.warning("⚠️ REDIS_URL not set, rate limits are kept in process memory")
        return Limiter(key_func=client_key)

    try:
        logger.info("⚡ Rate limiter backed by Redis")
        return Limiter(
            key_func=client_key,
            storage_uri=storage_uri,
            strategy="fixed-window",
            storage_options={"socket_connect_timeout": 5, "retry_on_timeout": True},
        )
    except Exception as e:
        logger.error(f"❌ Redis rate limit storage unavailable: {e}")
        return Limiter(key_func=client_key)


limiter = build_limiter()
