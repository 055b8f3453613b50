from aiohttp import (
    AsyncResolver,
    ClientSession,
    ClientTimeout,
    DummyCookieJar,
    TCPConnector,
)

from medisort.helpers.cache import lru_acache
from medisort.helpers.config import CONFIG


@lru_acache()
async def aiohttp_session() -> ClientSession:
    """
    Create an AIOHTTP session, shared by all the backend clients.

    Credentials travel in the Authorization header only, so cookies are never kept. Per-request timeouts are set by the callers, the session one is an upper bound.

    Object is cached for performance.
    """
    return ClientSession(
        cookie_jar=DummyCookieJar(),
        headers={
            "Accept": "application/json",
            "User-Agent": f"{CONFIG.monitoring.service_name}/{CONFIG.version}",
        },
        raise_for_status=False,  # Status codes are mapped to backend errors by the caller
        trust_env=True,
        # Performance
        connector=TCPConnector(
            limit_per_host=10,
            resolver=AsyncResolver(),
        ),
        # Reliability
        timeout=ClientTimeout(
            connect=5,
            total=60,
        ),
    )
