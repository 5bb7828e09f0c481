"""
Asynchronous cookie jar handling.

The transport only understands a plain cookie header, so jars that expose
asynchronous retrieval are read before execution and written back from the
response's set-cookie headers afterwards.
"""

import asyncio
from dataclasses import replace
from typing import Any, Protocol, runtime_checkable

from ..models import RequestDescriptor, ResponseDescriptor
from shared.logging import get_logger

logger = get_logger("requestor.cookie_jar")


@runtime_checkable
class AsyncCookieJar(Protocol):
    """Cookie jar with asynchronous access."""

    async def get_cookie_string(self, url: str) -> str:
        ...

    async def set_cookie(self, set_cookie_header: str, url: str) -> Any:
        ...


def needs_async_jar(request: RequestDescriptor) -> bool:
    """True when the request carries a jar the pipeline has to drive itself."""
    return isinstance(request.jar, AsyncCookieJar)


async def apply_cookie_jar(request: RequestDescriptor) -> RequestDescriptor:
    """Copy of the request with jar cookies prepended to any explicit cookie header."""
    cookie_string = await request.jar.get_cookie_string(request.url)
    headers = dict(request.headers)
    existing = headers.get("cookie")
    if cookie_string and existing:
        headers["cookie"] = f"{cookie_string}; {existing}"
    elif cookie_string:
        headers["cookie"] = cookie_string
    return replace(request, headers=headers, jar=None)


async def store_response_cookies(jar: AsyncCookieJar, response: ResponseDescriptor, url: str) -> None:
    """Write every set-cookie header of the response into the jar."""
    if not response.set_cookie:
        return

    target = response.url or url
    results = await asyncio.gather(
        *(jar.set_cookie(header, target) for header in response.set_cookie),
        return_exceptions=True
    )
    for outcome in results:
        if isinstance(outcome, Exception):
            logger.warning("Failed to store cookie in jar", url=target, error=str(outcome))
