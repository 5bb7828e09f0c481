"""
HTTP transport for the requestor.
"""

from typing import Optional, Tuple

import httpx

from ..models import RequestDescriptor, ResponseDescriptor
from shared.logging import get_logger


class HttpxTransport:
    """Executes requests through one shared httpx.AsyncClient.

    Retries and redirects are whatever httpx is asked to do; transport errors
    propagate unchanged to the pipeline.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        follow_redirects: bool = True,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.timeout = timeout
        self.follow_redirects = follow_redirects
        self.logger = get_logger("requestor.transport")
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def send(self, request: RequestDescriptor) -> Tuple[ResponseDescriptor, str]:
        """Execute the request and return response metadata plus the text body."""
        kwargs = {
            "params": request.query_pairs() or None,
            "headers": request.headers,
            "follow_redirects": self.follow_redirects if request.follow_redirects is None else request.follow_redirects,
        }
        if request.timeout is not None:
            kwargs["timeout"] = request.timeout
        if request.body is not None:
            kwargs["content"] = request.body
        elif request.json is not None and not isinstance(request.json, bool):
            kwargs["json"] = request.json

        response = await self.client.request(request.method, request.url, **kwargs)

        self.logger.debug(
            "Upstream response received",
            method=request.method,
            url=request.url,
            status_code=response.status_code
        )
        return self.describe(response, request), response.text

    @staticmethod
    def describe(response: httpx.Response, request: RequestDescriptor) -> ResponseDescriptor:
        headers = {name: value for name, value in response.headers.items() if name != "set-cookie"}
        return ResponseDescriptor(
            status_code=response.status_code,
            headers=headers,
            http_version=response.http_version,
            method=request.method,
            url=str(response.url),
            set_cookie=response.headers.get_list("set-cookie"),
        )

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
