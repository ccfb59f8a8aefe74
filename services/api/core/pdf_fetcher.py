# services/api/core/pdf_fetcher.py
"""
Binary fetcher for remote PDFs.

Tries, in order: direct fetch with credentials, direct fetch without
credentials, then up to two CORS-proxy services. Returns an independent
bytearray so a retry never reuses a buffer that a consumer has already
mutated or released.

Proxy rotation (which proxy to build the *next* URL with) is not done here;
see ProxyRotation, one instance per viewer.
"""
from __future__ import annotations

import logging
import time
import urllib.parse
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set, Tuple

import httpx

from core.errors import FetchError

logger = logging.getLogger(__name__)


# ---------- Proxy services ---------------------------------------------------

@dataclass(frozen=True)
class ProxyService:
    """A public (or self-hosted) CORS proxy that takes the target URL as a suffix."""
    id: str
    prefix: str
    encode: bool = True  # urlencode the target before appending

    def wrap(self, url: str) -> str:
        target = urllib.parse.quote(url, safe="") if self.encode else url
        return f"{self.prefix}{target}"

    def matches(self, url: str) -> bool:
        return url.startswith(self.prefix)


CORSPROXY_IO = ProxyService(id="corsproxy.io", prefix="https://corsproxy.io/?")
CORS_BRIDGED = ProxyService(id="cors.bridged.cc", prefix="https://cors.bridged.cc/", encode=False)
THINGPROXY = ProxyService(id="thingproxy", prefix="https://thingproxy.freeboard.io/fetch/")

PUBLIC_PROXIES: Tuple[ProxyService, ...] = (CORSPROXY_IO, CORS_BRIDGED, THINGPROXY)


def build_proxy_services(self_hosted_url: str = "") -> List[ProxyService]:
    """
    Fixed rotation order. A self-hosted proxy (our own /proxy-pdf endpoint)
    goes first when configured; the public ones have no SLA.
    """
    services: List[ProxyService] = []
    if self_hosted_url:
        services.append(ProxyService(id="self-hosted", prefix=self_hosted_url))
    services.extend(PUBLIC_PROXIES)
    return services


def add_cache_buster(url: str, now: Optional[float] = None) -> str:
    """Append t=<epoch ms> so intermediaries don't hand back a stale copy."""
    stamp = str(int((now if now is not None else time.time()) * 1000))
    parts = urllib.parse.urlsplit(url)
    extra = urllib.parse.urlencode({"t": stamp})
    query = f"{parts.query}&{extra}" if parts.query else extra
    return urllib.parse.urlunsplit(parts._replace(query=query))


class ProxyRotation:
    """
    Remembers the most recently failed proxy and skips it when building the
    next proxied URL. Once every proxy has failed within a rotation the marker
    is reset and the rotation starts over from the first service.
    """

    def __init__(self, services: Sequence[ProxyService] = PUBLIC_PROXIES):
        if not services:
            raise ValueError("ProxyRotation needs at least one proxy service")
        self.services: List[ProxyService] = list(services)
        self.last_failed: Optional[str] = None
        self._failed_this_rotation: Set[str] = set()

    def service_for(self, url: str) -> Optional[ProxyService]:
        for service in self.services:
            if service.matches(url):
                return service
        return None

    def is_proxied(self, url: str) -> bool:
        return self.service_for(url) is not None

    def proxied_url(self, url: str) -> str:
        if url.startswith("data:") or self.is_proxied(url):
            return url
        busted = add_cache_buster(url)
        service = next(
            (s for s in self.services if s.id != self.last_failed),
            self.services[0],
        )
        return service.wrap(busted)

    def handle_failure(self, failed_url: str, original_url: str) -> str:
        failed = self.service_for(failed_url)
        if failed is not None:
            self.last_failed = failed.id
            self._failed_this_rotation.add(failed.id)
            logger.warning(f"Proxy {failed.id} failed, trying another proxy")

            idx = self.services.index(failed)
            for step in range(1, len(self.services)):
                candidate = self.services[(idx + step) % len(self.services)]
                if candidate.id not in self._failed_this_rotation:
                    return candidate.wrap(original_url)

        # Unknown proxy, or the whole rotation has been tried
        self.reset()
        return self.services[0].wrap(original_url)

    def reset(self) -> None:
        self.last_failed = None
        self._failed_this_rotation.clear()


# ---------- Fetching ---------------------------------------------------------

def detached_copy(raw: bytes) -> bytearray:
    """
    Independent copy of the response body. Falls back to a memoryview-based
    copy if the first one comes back empty.
    """
    copy = bytearray(raw)
    if len(copy) == 0:
        logger.warning("[pdf_fetcher] Zero-sized buffer copy created")
        copy = bytearray(memoryview(raw).tobytes())
        if len(copy) == 0:
            raise FetchError("Failed to create valid buffer copy")
        logger.info(f"[pdf_fetcher] Alternative copy method successful: {len(copy)} bytes")
    return copy


def classify_fetch_error(err: Optional[BaseException]) -> str:
    if isinstance(err, httpx.TimeoutException):
        return FetchError.TIMEOUT
    if isinstance(err, (httpx.ConnectError, ConnectionRefusedError)):
        return FetchError.CONNECTION_REFUSED
    if err is not None and "refused" in str(err).lower():
        return FetchError.CONNECTION_REFUSED
    if isinstance(err, FetchError):
        return err.kind
    return FetchError.GENERIC


class PdfFetcher:
    """
    Stateless apart from configuration; safe to share between viewers.

    Args:
        proxies: proxy services in rotation order; the first two are used.
        timeout: per-request timeout in seconds.
        credentials: extra headers (Authorization / Cookie) for the first,
            credentialed attempt. Without them that attempt is skipped.
        transport: optional httpx transport (tests pass httpx.MockTransport).
    """

    def __init__(
        self,
        *,
        proxies: Sequence[ProxyService] = PUBLIC_PROXIES,
        timeout: float = 30.0,
        credentials: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.proxies = list(proxies)
        self.timeout = timeout
        self.credentials = dict(credentials or {})
        self._transport = transport

    def _methods(self, url: str) -> List[Tuple[str, str, Dict[str, str]]]:
        accept = {"Accept": "application/pdf"}
        methods = []
        if self.credentials:
            methods.append(("direct fetch with credentials", url, {**accept, **self.credentials}))
        else:
            logger.info("[pdf_fetcher] No fetch credentials configured, skipping credentialed attempt")
        methods.append(("direct fetch without credentials", url, accept))
        for proxy in self.proxies[:2]:
            methods.append((f"proxy {proxy.id}", proxy.wrap(url), accept))
        return methods

    async def fetch_document_bytes(self, url: str) -> bytearray:
        if not url:
            raise FetchError("No URL provided")

        logger.info(f"[pdf_fetcher] Fetching PDF from: {url}")
        methods = self._methods(url)
        last_error: Optional[BaseException] = None

        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            for i, (label, target, headers) in enumerate(methods, start=1):
                logger.info(f"[pdf_fetcher] Trying fetch method {i}/{len(methods)}: {label}")
                try:
                    response = await client.get(target, headers=headers)
                    if not response.is_success:
                        logger.warning(f"[pdf_fetcher] {label} returned status {response.status_code}")
                        last_error = httpx.HTTPStatusError(
                            f"HTTP {response.status_code}",
                            request=response.request,
                            response=response,
                        )
                        continue

                    buffer = detached_copy(response.content)
                    logger.info(f"[pdf_fetcher] ✓ {label} returned {len(buffer)} bytes")
                    return buffer
                except (httpx.HTTPError, FetchError) as err:
                    logger.warning(f"[pdf_fetcher] Fetch method {i} failed: {err}")
                    last_error = err

        message = str(last_error) if last_error is not None else "Unknown error"
        logger.error(f"[pdf_fetcher] All fetch methods failed. Last error: {message}")
        raise FetchError(
            f"Failed to fetch PDF: {message}. Please try again or check your connection.",
            kind=classify_fetch_error(last_error),
        )

