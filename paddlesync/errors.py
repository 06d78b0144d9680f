"""Exception hierarchy for external calendar sync."""

from __future__ import annotations


class IcalSyncError(Exception):
    """Base exception for calendar sync operations."""

    kind = "sync_error"
    retryable = False


class ConfigurationError(IcalSyncError):
    """The team or its feed URL is not usable."""

    kind = "configuration_error"


class TeamNotFoundError(ConfigurationError):
    kind = "team_not_found"

    def __init__(self, team_id: str) -> None:
        super().__init__("Team not found")
        self.team_id = team_id


class NoUrlConfiguredError(ConfigurationError):
    kind = "no_url_configured"

    def __init__(self) -> None:
        super().__init__("No iCal URL provided")


class InvalidURLError(ConfigurationError):
    kind = "invalid_url"

    def __init__(self, url: str) -> None:
        super().__init__("Invalid URL format or protocol")
        self.url = url


class NetworkError(IcalSyncError):
    """Fetching the feed failed; the caller may retry later."""

    kind = "network_error"
    retryable = True


class DnsResolutionError(NetworkError):
    kind = "dns_resolution_failed"

    def __init__(self, hostname: str, reason: str) -> None:
        super().__init__(f"DNS resolution failed for {hostname}: {reason}")
        self.hostname = hostname


class NoAddressesFoundError(NetworkError):
    kind = "no_addresses_found"

    def __init__(self, hostname: str) -> None:
        super().__init__(f"No IP addresses found for {hostname}")
        self.hostname = hostname


class PrivateAddressBlockedError(NetworkError):
    kind = "private_address_blocked"

    def __init__(self, address: str) -> None:
        super().__init__(f"Blocked connection to private IP: {address}")
        self.address = address


class FetchTimeoutError(NetworkError):
    kind = "timeout"

    def __init__(self, url: str, timeout_seconds: float) -> None:
        super().__init__(f"Request to {url} timed out after {timeout_seconds:g}s")
        self.url = url
        self.timeout_seconds = timeout_seconds


class FetchCancelledError(NetworkError):
    kind = "cancelled"

    def __init__(self, url: str) -> None:
        super().__init__(f"Request to {url} was cancelled")
        self.url = url


class FetchError(NetworkError):
    """Transport-level failure (connection refused, TLS error, ...)."""

    kind = "fetch_error"


class FetchFailedError(NetworkError):
    kind = "fetch_failed"

    def __init__(self, status: int, status_text: str) -> None:
        super().__init__(f"Failed to fetch iCal feed: {status} {status_text}".rstrip())
        self.status = status
        self.status_text = status_text


class PayloadError(IcalSyncError):
    """The feed body cannot be used without an upstream change."""

    kind = "payload_error"


class FeedTooLargeError(PayloadError):
    kind = "feed_too_large"

    def __init__(self, max_bytes: int) -> None:
        super().__init__(f"iCal feed exceeds the maximum size of {max_bytes} bytes")
        self.max_bytes = max_bytes


class FeedParseError(PayloadError):
    kind = "feed_unparseable"


class MassDeletionBlockedError(IcalSyncError):
    """Raised instead of deleting more than the allowed share of managed events."""

    kind = "mass_deletion_blocked"

    def __init__(self, deleted_count: int, total_before: int) -> None:
        percent = round(deleted_count / total_before * 100) if total_before else 0
        super().__init__(
            f"Safety Stop: Attempting to delete {deleted_count} of {total_before} events "
            f"({percent}%). Manual confirmation required."
        )
        self.deleted_count = deleted_count
        self.total_before = total_before
        self.percent = percent
