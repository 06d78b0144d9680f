"""HTTP GET with SSRF protection for external calendar feeds.

The target host is resolved and every address is checked against the IP
policy before the request is made. The request itself goes through
``requests`` with the original URL, so the address check and the connection
are two separate lookups: a DNS answer that changes in between (DNS
rebinding) is not caught. This is acceptable behind a privileged caller but
is not a complete SSRF defense for hostile multi-tenant input.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any
from urllib.parse import urlsplit

import requests

from paddlesync.errors import (
    DnsResolutionError,
    FetchCancelledError,
    FetchError,
    FetchTimeoutError,
    InvalidURLError,
    NoAddressesFoundError,
    PrivateAddressBlockedError,
)
from paddlesync.ip_policy import is_private_ip
from paddlesync.models import DEFAULT_FETCH_TIMEOUT_SECONDS
from paddlesync.url_policy import validate_url

logger = logging.getLogger(__name__)

USER_AGENT = "paddlesync-ical/0.1"
READ_CHUNK_BYTES = 8 * 1024
WATCH_INTERVAL_SECONDS = 0.05
RESOLVER_WORKERS = 8

_resolver_pool = ThreadPoolExecutor(max_workers=RESOLVER_WORKERS, thread_name_prefix="paddlesync-dns")


def resolve_addresses(hostname: str, port: int, timeout_seconds: float) -> list[str]:
    """Resolve ``hostname`` to every IPv4 and IPv6 address, in resolver order.

    ``getaddrinfo`` cannot be interrupted. A lookup that outlives
    ``timeout_seconds`` raises ``FetchTimeoutError`` for the caller but keeps
    its pool worker until the system resolver gives up, so at most
    ``RESOLVER_WORKERS`` hung lookups run at once. Lookups queued behind them
    still time out on their own deadline instead of waiting for a worker.
    """
    future = _resolver_pool.submit(
        socket.getaddrinfo, hostname, port, socket.AF_UNSPEC, socket.SOCK_STREAM
    )
    try:
        infos = future.result(timeout=max(0.0, timeout_seconds))
    except FutureTimeoutError as exc:
        future.cancel()
        raise FetchTimeoutError(hostname, timeout_seconds) from exc
    except OSError as exc:
        raise DnsResolutionError(hostname, str(exc)) from exc
    except UnicodeError as exc:
        # IDNA encoding rejects empty labels and labels over 63 characters.
        raise DnsResolutionError(hostname, str(exc)) from exc

    addresses: list[str] = []
    for _family, _type, _proto, _canonname, sockaddr in infos:
        address = str(sockaddr[0])
        if address not in addresses:
            addresses.append(address)
    return addresses


class FetchResponse:
    """Streamed response whose body is read on demand.

    ``read`` runs a watcher thread next to the body read. When the deadline
    passes or ``cancel_event`` is set, the watcher shuts the socket down so a
    read that is blocked on a slow server returns at once, and ``read``
    raises ``FetchTimeoutError`` or ``FetchCancelledError``.
    """

    def __init__(
        self,
        response: requests.Response,
        *,
        url: str,
        deadline: float,
        timeout_seconds: float,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._response = response
        self.url = url
        self._deadline = deadline
        self._timeout_seconds = timeout_seconds
        self._cancel_event = cancel_event
        self._abort_reason: str | None = None

    @property
    def status_code(self) -> int:
        return int(self._response.status_code)

    @property
    def reason(self) -> str:
        return str(self._response.reason or "")

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def headers(self) -> Any:
        return self._response.headers

    @property
    def content_length(self) -> int | None:
        raw = self._response.headers.get("Content-Length")
        try:
            return int(raw) if raw is not None else None
        except ValueError:
            return None

    def read(self, limit: int | None = None) -> bytes:
        """Read the body, stopping once ``limit`` bytes have arrived."""
        chunks: list[bytes] = []
        total = 0
        finished = threading.Event()
        watcher = threading.Thread(
            target=self._watch, args=(finished,), name="paddlesync-fetch-watch", daemon=True
        )
        watcher.start()
        try:
            for chunk in self._response.iter_content(chunk_size=READ_CHUNK_BYTES):
                self._check_abort()
                if not chunk:
                    continue
                chunks.append(chunk)
                total += len(chunk)
                if limit is not None and total >= limit:
                    break
        except (requests.RequestException, OSError, ValueError) as exc:
            # An interrupted socket surfaces as whatever the stack raises on EOF.
            if self._abort_reason is not None:
                raise self._abort_error() from exc
            if isinstance(exc, requests.Timeout):
                raise FetchTimeoutError(self.url, self._timeout_seconds) from exc
            raise FetchError(f"Reading response from {self.url} failed: {exc}") from exc
        finally:
            finished.set()
            watcher.join()
            self.close()
        if self._abort_reason is not None:
            raise self._abort_error()
        body = b"".join(chunks)
        if limit is not None:
            return body[:limit]
        return body

    def decode(self, body: bytes) -> str:
        content_type = str(self._response.headers.get("Content-Type", "")).lower()
        # requests falls back to ISO-8859-1 for text/* without a charset.
        encoding = self._response.encoding if "charset=" in content_type else None
        try:
            return body.decode(encoding or "utf-8", errors="replace")
        except LookupError:
            return body.decode("utf-8", errors="replace")

    def text(self, limit: int | None = None) -> str:
        return self.decode(self.read(limit))

    def close(self) -> None:
        self._response.close()

    def __enter__(self) -> "FetchResponse":
        return self

    def __exit__(self, *_exc: Any) -> None:
        self.close()

    def _pending_abort(self) -> str | None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            return "cancelled"
        if time.monotonic() > self._deadline:
            return "timeout"
        return None

    def _abort_error(self) -> Exception:
        if self._abort_reason == "cancelled":
            return FetchCancelledError(self.url)
        return FetchTimeoutError(self.url, self._timeout_seconds)

    def _check_abort(self) -> None:
        reason = self._abort_reason or self._pending_abort()
        if reason is not None:
            self._abort_reason = reason
            raise self._abort_error()

    def _watch(self, finished: threading.Event) -> None:
        while not finished.wait(WATCH_INTERVAL_SECONDS):
            reason = self._pending_abort()
            if reason is None:
                continue
            self._abort_reason = reason
            self._interrupt()
            return

    def _interrupt(self) -> None:
        connection = getattr(self._response.raw, "connection", None)
        sock = getattr(connection, "sock", None)
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Already closed by the reader.
            pass


def safe_fetch(
    url: str,
    *,
    timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
    cancel_event: threading.Event | None = None,
) -> FetchResponse:
    """GET ``url`` after validating it and every address it resolves to.

    Redirects are not followed; a 3xx comes back as a normal response and a
    caller that wants to follow it must pass the new URL through here again.
    ``timeout_seconds`` bounds DNS resolution, connecting and reading the body.
    """
    if not validate_url(url):
        raise InvalidURLError(url)

    deadline = time.monotonic() + timeout_seconds
    parsed = urlsplit(url.strip())
    hostname = parsed.hostname or ""
    port = parsed.port or 443

    addresses = resolve_addresses(hostname, port, timeout_seconds)
    if not addresses:
        raise NoAddressesFoundError(hostname)
    for address in addresses:
        if is_private_ip(address):
            logger.warning("Blocked feed host %s resolving to private address %s", hostname, address)
            raise PrivateAddressBlockedError(address)

    if cancel_event is not None and cancel_event.is_set():
        raise FetchCancelledError(url)
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise FetchTimeoutError(url, timeout_seconds)

    try:
        response = requests.get(
            url,
            headers={"User-Agent": USER_AGENT, "Accept": "text/calendar, text/plain;q=0.9, */*;q=0.1"},
            timeout=(remaining, remaining),
            allow_redirects=False,
            stream=True,
        )
    except requests.Timeout as exc:
        raise FetchTimeoutError(url, timeout_seconds) from exc
    except requests.RequestException as exc:
        raise FetchError(f"Request to {url} failed: {exc}") from exc

    logger.debug("Fetched %s with HTTP %s", url, response.status_code)
    return FetchResponse(
        response,
        url=url,
        deadline=deadline,
        timeout_seconds=timeout_seconds,
        cancel_event=cancel_event,
    )
