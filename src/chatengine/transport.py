"""HTTP transport for completion backends.

Thin wrapper around a long-lived ``httpx.AsyncClient`` with connection pooling
and granular timeouts. Streaming responses are returned open; the caller
iterates ``aiter_bytes()`` and must ``aclose()`` the response.
"""

import json
import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger("chatengine.transport")

__all__ = ["HttpTransport", "read_error_body"]


async def read_error_body(response: httpx.Response) -> Any:
    """Read and decode a non-2xx body, then close the response.

    Returns:
        Decoded JSON, the raw text when the body is not JSON, or None when
        the body is empty
    """
    try:
        raw = await response.aread()
    finally:
        await response.aclose()
    if not raw:
        return None
    text = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return text


class HttpTransport:
    """Shared async HTTP client for one or more backends.

    Example:
        >>> async with HttpTransport() as transport:
        ...     response = await transport.open_stream("POST", url, headers=h, json=body)
        ...     try:
        ...         async for chunk in response.aiter_bytes():
        ...             ...
        ...     finally:
        ...         await response.aclose()
    """

    def __init__(
        self,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize transport.

        Args:
            timeout: Read timeout in seconds (time allowed between chunks)
            client: Pre-built client, e.g. one using ``httpx.MockTransport``
        """
        self._owns_client = client is None
        if client is None:
            timeout_config = httpx.Timeout(
                connect=5.0,
                read=timeout,
                write=10.0,
                pool=5.0,
            )
            limits = httpx.Limits(
                max_keepalive_connections=10,
                max_connections=50,
                keepalive_expiry=30.0,
            )
            client = httpx.AsyncClient(timeout=timeout_config, limits=limits)
        self.client = client

    async def open_stream(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        json: Any = None,
    ) -> httpx.Response:
        """Send a request and return the response with its body unread.

        Raises:
            httpx.TransportError: On connection-level failures
        """
        request = self.client.build_request(method, url, headers=headers, json=json)
        logger.debug("http_stream_opening", extra={"method": method, "url": url})
        return await self.client.send(request, stream=True)

    async def request_json(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        json: Any = None,
    ) -> tuple[int, Any]:
        """Send a non-streaming request.

        Returns:
            (status_code, decoded body or None)
        """
        response = await self.client.request(method, url, headers=headers, json=json)
        try:
            body = response.json() if response.content else None
        except ValueError:
            body = response.text
        return response.status_code, body

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "HttpTransport":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
