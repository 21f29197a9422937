"""
Rockery Upstream Forwarder

Relays a request to the configured upstream backend and returns the
upstream response untouched (status, headers and raw body).

The upstream leg always speaks HTTP/1.1, whatever version the client used.
"""

import logging
from dataclasses import dataclass, field
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import List, Optional, Tuple

import httpx

from ..common import filter_headers


logger = logging.getLogger("rockery.gateway.forwarder")

# Connection-level headers; the transport recomputes framing on each hop
HOP_BY_HOP_HEADERS = frozenset({
    'connection',
    'keep-alive',
    'proxy-connection',
    'te',
    'trailer',
    'transfer-encoding',
    'upgrade',
})

RawHeaders = List[Tuple[bytes, bytes]]


class UpstreamError(Exception):
    """Raised when the upstream backend cannot be reached."""


@dataclass
class UpstreamResponse:
    """Upstream response ready to be relayed to the client."""

    status_code: int
    headers: RawHeaders = field(default_factory=list)
    content: bytes = b""
    http_version: str = "HTTP/1.1"

    def header(self, name: str) -> Optional[str]:
        """Return the first value of a header, case-insensitively."""
        wanted = name.lower()
        for key, value in self.headers:
            if key.decode('latin-1').lower() == wanted:
                return value.decode('latin-1')
        return None


class UpstreamForwarder:
    """
    Forward requests to a single upstream address.

    Example:
        forwarder = UpstreamForwarder('127.0.0.1:5000', spoofed_host='api.local')
        response = await forwarder.forward('GET', '/users', 'page=2', headers, b'')
    """

    def __init__(
        self,
        authority: str,
        spoofed_host: Optional[str] = None,
        timeout: Optional[float] = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize forwarder.

        Args:
            authority: Resolved upstream "ip:port"
            spoofed_host: Host header to send upstream (None keeps the client's)
            timeout: Upstream timeout in seconds (None disables it)
            transport: Optional httpx transport, e.g. a MockTransport in tests
        """
        self.authority = authority
        self.spoofed_host = spoofed_host
        self.timeout = timeout
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                # Upstream cookies belong to the client, never to the gateway
                cookies=CookieJar(policy=DefaultCookiePolicy(allowed_domains=[])),
                timeout=httpx.Timeout(self.timeout),
                transport=self.transport,
                follow_redirects=False,
                trust_env=False,
            )
        return self._client

    def build_url(self, raw_path: str, query_string: Optional[str]) -> str:
        url = f"http://{self.authority}{raw_path}"
        if query_string:
            url = f"{url}?{query_string}"
        return url

    def build_headers(self, headers: RawHeaders) -> RawHeaders:
        """Copy inbound headers for the upstream request, applying Host spoofing."""
        skip = HOP_BY_HOP_HEADERS | {'content-length'}
        if self.spoofed_host:
            skip = skip | {'host'}

        outgoing = filter_headers(headers, skip)
        if self.spoofed_host:
            outgoing.insert(0, (b'host', self.spoofed_host.encode('latin-1')))
        return outgoing

    async def forward(
        self,
        method: str,
        raw_path: str,
        query_string: Optional[str],
        headers: RawHeaders,
        body: bytes
    ) -> UpstreamResponse:
        """
        Send the request upstream and read the full raw response.

        Raises:
            UpstreamError: If the upstream cannot be reached or the
                connection breaks while reading the response
        """
        url = self.build_url(raw_path, query_string)
        # Built directly so the client does not merge in its default headers
        request = httpx.Request(
            method,
            url,
            headers=self.build_headers(headers),
            content=body,
        )
        logger.debug(f"Forwarding {method} {url}")

        try:
            response = await self.client.send(request, stream=True)
            try:
                chunks = [chunk async for chunk in response.aiter_raw()]
            finally:
                await response.aclose()
        except httpx.HTTPError as e:
            raise UpstreamError(f"{type(e).__name__}: {e}") from e

        content = b"".join(chunks)
        relayed = filter_headers(response.headers.raw, HOP_BY_HOP_HEADERS)
        if method != 'HEAD' and not any(k.lower() == b'content-length' for k, _ in relayed):
            relayed.append((b'content-length', str(len(content)).encode('latin-1')))

        return UpstreamResponse(
            status_code=response.status_code,
            headers=relayed,
            content=content,
            http_version=response.http_version,
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
