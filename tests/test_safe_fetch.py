import socket
import threading
import time
import unittest
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from unittest import mock

import requests
import responses

from paddlesync.errors import (
    DnsResolutionError,
    FetchCancelledError,
    FetchError,
    FetchTimeoutError,
    InvalidURLError,
    NoAddressesFoundError,
    PrivateAddressBlockedError,
)
from paddlesync.safe_fetch import FetchResponse, safe_fetch


FEED_URL = "https://calendar.example.com/team.ics"


def _addrinfo(*addresses: str) -> list[tuple]:
    infos = []
    for address in addresses:
        if ":" in address:
            infos.append((socket.AF_INET6, socket.SOCK_STREAM, 6, "", (address, 443, 0, 0)))
        else:
            infos.append((socket.AF_INET, socket.SOCK_STREAM, 6, "", (address, 443)))
    return infos


class SafeFetchTests(unittest.TestCase):
    def test_rejects_plain_http_before_dns_lookup(self) -> None:
        with mock.patch("socket.getaddrinfo") as getaddrinfo:
            with self.assertRaises(InvalidURLError):
                safe_fetch("http://calendar.example.com/team.ics")
        getaddrinfo.assert_not_called()

    def test_blocks_loopback_resolution(self) -> None:
        with mock.patch("socket.getaddrinfo", return_value=_addrinfo("127.0.0.1")):
            with self.assertRaises(PrivateAddressBlockedError) as ctx:
                safe_fetch("https://internal.example.com/feed.ics")
        self.assertEqual(ctx.exception.address, "127.0.0.1")
        self.assertEqual(str(ctx.exception), "Blocked connection to private IP: 127.0.0.1")

    def test_blocks_private_ipv6_resolution(self) -> None:
        with mock.patch("socket.getaddrinfo", return_value=_addrinfo("::1")):
            with self.assertRaises(PrivateAddressBlockedError):
                safe_fetch("https://ipv6.example.com/feed.ics")

    @responses.activate
    def test_blocks_when_any_resolved_address_is_private(self) -> None:
        responses.add(responses.GET, "https://mixed.example.com/feed.ics", body="never")
        with mock.patch("socket.getaddrinfo", return_value=_addrinfo("93.184.216.34", "192.168.1.5")):
            with self.assertRaises(PrivateAddressBlockedError) as ctx:
                safe_fetch("https://mixed.example.com/feed.ics")
        self.assertEqual(ctx.exception.address, "192.168.1.5")
        self.assertEqual(len(responses.calls), 0)

    def test_dns_failure_is_typed(self) -> None:
        with mock.patch("socket.getaddrinfo", side_effect=socket.gaierror(-2, "Name or service not known")):
            with self.assertRaises(DnsResolutionError) as ctx:
                safe_fetch("https://nowhere.example.com/feed.ics")
        self.assertIn("nowhere.example.com", str(ctx.exception))

    def test_empty_resolution_is_typed(self) -> None:
        with mock.patch("socket.getaddrinfo", return_value=[]):
            with self.assertRaises(NoAddressesFoundError) as ctx:
                safe_fetch("https://nowhere.example.com/feed.ics")
        self.assertEqual(str(ctx.exception), "No IP addresses found for nowhere.example.com")

    @responses.activate
    def test_public_addresses_proceed_to_request(self) -> None:
        responses.add(responses.GET, FEED_URL, body="BEGIN:VCALENDAR", status=200)
        with mock.patch("socket.getaddrinfo", return_value=_addrinfo("8.8.8.8", "2001:4860:4860::8888")) as lookup:
            with safe_fetch(FEED_URL, timeout_seconds=5) as response:
                self.assertEqual(response.status_code, 200)
                self.assertTrue(response.ok)
                self.assertEqual(response.text(), "BEGIN:VCALENDAR")
        self.assertEqual(lookup.call_args.args[0], "calendar.example.com")
        self.assertEqual(len(responses.calls), 1)

    @responses.activate
    def test_redirects_are_not_followed(self) -> None:
        responses.add(
            responses.GET,
            FEED_URL,
            status=302,
            headers={"Location": "https://127.0.0.1/admin"},
        )
        with mock.patch("socket.getaddrinfo", return_value=_addrinfo("8.8.8.8")):
            response = safe_fetch(FEED_URL)
        self.assertEqual(response.status_code, 302)
        self.assertFalse(response.ok)
        self.assertEqual(len(responses.calls), 1)

    @responses.activate
    def test_non_2xx_status_is_returned(self) -> None:
        responses.add(responses.GET, FEED_URL, status=404, body="missing")
        with mock.patch("socket.getaddrinfo", return_value=_addrinfo("8.8.8.8")):
            response = safe_fetch(FEED_URL)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.reason, "Not Found")

    @responses.activate
    def test_request_timeout_is_typed(self) -> None:
        responses.add(responses.GET, FEED_URL, body=requests.exceptions.ConnectTimeout("slow"))
        with mock.patch("socket.getaddrinfo", return_value=_addrinfo("8.8.8.8")):
            with self.assertRaises(FetchTimeoutError):
                safe_fetch(FEED_URL, timeout_seconds=2)

    @responses.activate
    def test_connection_error_is_typed(self) -> None:
        responses.add(responses.GET, FEED_URL, body=requests.exceptions.ConnectionError("refused"))
        with mock.patch("socket.getaddrinfo", return_value=_addrinfo("8.8.8.8")):
            with self.assertRaises(FetchError):
                safe_fetch(FEED_URL)

    @responses.activate
    def test_cancelled_read_aborts(self) -> None:
        responses.add(responses.GET, FEED_URL, body="x" * 1024)
        cancel_event = threading.Event()
        with mock.patch("socket.getaddrinfo", return_value=_addrinfo("8.8.8.8")):
            response = safe_fetch(FEED_URL, cancel_event=cancel_event)
        cancel_event.set()
        with self.assertRaises(FetchCancelledError):
            response.read()

    @responses.activate
    def test_read_limit_stops_early(self) -> None:
        responses.add(responses.GET, FEED_URL, body="a" * 200_000)
        with mock.patch("socket.getaddrinfo", return_value=_addrinfo("8.8.8.8")):
            response = safe_fetch(FEED_URL)
        body = response.read(limit=1000)
        self.assertEqual(len(body), 1000)

    @responses.activate
    def test_decode_defaults_to_utf8_without_charset(self) -> None:
        responses.add(
            responses.GET,
            FEED_URL,
            body="Drachenboot Übung".encode("utf-8"),
            content_type="text/calendar",
        )
        with mock.patch("socket.getaddrinfo", return_value=_addrinfo("8.8.8.8")):
            response = safe_fetch(FEED_URL)
        self.assertEqual(response.text(), "Drachenboot Übung")

    def test_overlong_hostname_label_is_typed(self) -> None:
        url = "https://" + "a" * 64 + ".example.com/cal.ics"
        with mock.patch(
            "socket.getaddrinfo",
            side_effect=UnicodeError("encoding with 'idna' codec failed (label empty or too long)"),
        ):
            with self.assertRaises(DnsResolutionError) as ctx:
                safe_fetch(url)
        self.assertEqual(ctx.exception.kind, "dns_resolution_failed")

    def test_slow_dns_lookup_times_out(self) -> None:
        release = threading.Event()
        self.addCleanup(release.set)

        def hang(*_args, **_kwargs):
            release.wait(5)
            return _addrinfo("8.8.8.8")

        started = time.monotonic()
        with mock.patch("socket.getaddrinfo", side_effect=hang):
            with self.assertRaises(FetchTimeoutError):
                safe_fetch(FEED_URL, timeout_seconds=1)
        self.assertLess(time.monotonic() - started, 3)


class _DripHandler(BaseHTTPRequestHandler):
    """Announces a large body, then sends one byte at a time."""

    def do_GET(self) -> None:
        self.send_response(200)
        self.send_header("Content-Type", "text/calendar")
        self.send_header("Content-Length", "100000")
        self.end_headers()
        for _ in range(200):
            if self.server.stop_event.is_set():
                return
            try:
                self.wfile.write(b"x")
                self.wfile.flush()
            except OSError:
                return
            time.sleep(0.05)

    def log_message(self, *_args) -> None:
        pass


class SlowBodyTests(unittest.TestCase):
    def setUp(self) -> None:
        self.server = ThreadingHTTPServer(("127.0.0.1", 0), _DripHandler)
        self.server.daemon_threads = True
        self.server.stop_event = threading.Event()
        thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        thread.start()
        self.addCleanup(self.server.server_close)
        self.addCleanup(self.server.shutdown)
        self.addCleanup(self.server.stop_event.set)
        self.url = f"http://127.0.0.1:{self.server.server_address[1]}/feed.ics"

    def _open(self, timeout_seconds: float, cancel_event: threading.Event | None = None) -> FetchResponse:
        started = time.monotonic()
        raw = requests.get(self.url, stream=True, timeout=(5, 5))
        return FetchResponse(
            raw,
            url=self.url,
            deadline=started + timeout_seconds,
            timeout_seconds=timeout_seconds,
            cancel_event=cancel_event,
        )

    def test_deadline_bounds_a_dripping_body(self) -> None:
        response = self._open(timeout_seconds=0.5)
        started = time.monotonic()
        with self.assertRaises(FetchTimeoutError):
            response.read(limit=5 * 1024 * 1024 + 1)
        self.assertLess(time.monotonic() - started, 2.5)

    def test_cancel_interrupts_a_dripping_body(self) -> None:
        cancel_event = threading.Event()
        response = self._open(timeout_seconds=30, cancel_event=cancel_event)
        timer = threading.Timer(0.3, cancel_event.set)
        timer.start()
        self.addCleanup(timer.cancel)
        started = time.monotonic()
        with self.assertRaises(FetchCancelledError):
            response.read(limit=5 * 1024 * 1024 + 1)
        self.assertLess(time.monotonic() - started, 2.5)


if __name__ == "__main__":
    unittest.main()
