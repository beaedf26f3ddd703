"""Crawler error taxonomy."""

from typing import Optional

# Chromium net error codes and driver messages that mean our own
# connectivity is gone rather than the target site misbehaving.
TRANSPORT_FAILURE_MARKERS = (
    "err_name_not_resolved",
    "err_internet_disconnected",
    "err_network_changed",
    "err_network_access_denied",
    "err_address_unreachable",
    "err_proxy_connection_failed",
    "err_name_resolution_failed",
    "getaddrinfo",
    "name or service not known",
    "temporary failure in name resolution",
    "network is unreachable",
)


class CrawlError(Exception):
    """Base class for crawler errors."""


class NavigationError(CrawlError):
    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"{reason} ({url})")
        self.url = url
        self.reason = reason

    @property
    def is_transport_failure(self) -> bool:
        lowered = str(self.reason or "").lower()
        return any(marker in lowered for marker in TRANSPORT_FAILURE_MARKERS)


class NetworkDown(CrawlError):
    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"network down: {reason} ({url})")
        self.url = url
        self.reason = reason


class ExtractionAmbiguous(CrawlError):
    """Strategies disagreed or found nothing; resolved by best-of-N."""


class ClassificationUnresolved(CrawlError):
    def __init__(self, identity: str, missing: str) -> None:
        super().__init__(f"unresolved {missing} for {identity}")
        self.identity = identity
        self.missing = missing


class CorruptState(CrawlError):
    def __init__(self, path: str, reason: Optional[str] = None) -> None:
        message = f"state document unreadable: {path}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.path = path


class PoolExhausted(CrawlError):
    """No renderer session became available within the acquire timeout."""


class Fatal(CrawlError):
    """Unexpected failure escaping every retry boundary."""
