from __future__ import annotations

import asyncio
import logging
import os
import weakref
from typing import Any, Optional

import aiohttp

logger = logging.getLogger(__name__)

USER_AGENT = os.getenv("HTTP_USER_AGENT", "solscout/0.1")

try:
    HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT_SEC", "15") or 15)
except ValueError:
    HTTP_TIMEOUT = 15.0

CONNECTOR_LIMIT = int(os.getenv("HTTP_CONNECTOR_LIMIT", "0") or 0)


class HTTPError(Exception):
    """Raised when an HTTP request returns a non-success status code."""

    def __init__(self, status: int, url: str, message: str = "") -> None:
        self.status = status
        self.url = url
        super().__init__(message or f"HTTP {status} for {url}")


# One session per event loop; sessions must not be shared across loops.
_SESSIONS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, aiohttp.ClientSession]" = (
    weakref.WeakKeyDictionary()
)


async def get_session() -> aiohttp.ClientSession:
    """Return an aiohttp session bound to the current event loop."""
    loop = asyncio.get_running_loop()
    sess = _SESSIONS.get(loop)
    if sess is None or sess.closed:
        sess = aiohttp.ClientSession(
            headers={"User-Agent": USER_AGENT},
            timeout=aiohttp.ClientTimeout(total=HTTP_TIMEOUT),
            connector=aiohttp.TCPConnector(limit=CONNECTOR_LIMIT),
        )
        _SESSIONS[loop] = sess
    return sess


async def close_session() -> None:
    """Close all known aiohttp sessions."""
    to_close = list(_SESSIONS.values())
    _SESSIONS.clear()
    for sess in to_close:
        try:
            if not sess.closed:
                await sess.close()
        except Exception as exc:
            logger.debug("Failed to close HTTP session: %s", exc)


async def fetch_json(
    url: str,
    *,
    session: Optional[aiohttp.ClientSession] = None,
    timeout: Optional[float] = None,
) -> Any:
    """GET *url* and decode the JSON body, raising :class:`HTTPError` on non-2xx."""

    sess = session or await get_session()
    kwargs: dict[str, Any] = {}
    if timeout is not None:
        kwargs["timeout"] = aiohttp.ClientTimeout(total=timeout)
    async with sess.get(url, **kwargs) as resp:
        if resp.status >= 400:
            raise HTTPError(resp.status, url)
        return await resp.json(content_type=None)
