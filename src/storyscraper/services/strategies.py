"""Static fetch strategies used by the fallback orchestrator.

Strategies are ordered from the most reliable (authenticated) to the least
reliable (RSS). Reddit's bot detection is inconsistent, so the unauthenticated
profiles vary host, user agent and header set rather than following any
documented contract.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, FrozenSet, Mapping, Sequence, Tuple
from urllib.parse import urlsplit, urlunsplit

__all__ = [
    "DEFAULT_RETRYABLE_STATUS_CODES",
    "DEFAULT_STRATEGIES",
    "FetchStrategy",
    "PayloadShape",
    "STRATEGY_NAMES",
    "json_endpoint",
    "rss_endpoint",
    "with_retry_overrides",
]

DEFAULT_RETRYABLE_STATUS_CODES: FrozenSet[int] = frozenset({429, 502, 503})

DESKTOP_CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/121.0.0.0 Safari/537.36"
)
MOBILE_SAFARI_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 16_6 like Mac OS X) "
    "AppleWebKit/605.1.15 (KHTML, like Gecko) "
    "Version/16.6 Mobile/15E148 Safari/604.1"
)
CURL_UA = "curl/7.68.0"
OAUTH_UA = "web:storyscraper:v1.0 (story import service)"
FEED_READER_UA = "Mozilla/5.0 (compatible; Feedly/1.0; +http://www.feedly.com/fetcher.html)"


class PayloadShape(str, Enum):
    JSON = "json"
    RSS = "rss"


@dataclass(frozen=True)
class FetchStrategy:
    """One retrieval profile: target host, header set and retry budget."""

    name: str
    host_transform: Callable[[str], str]
    headers: Tuple[Tuple[str, str], ...]
    requires_auth: bool = False
    max_retries: int = 0
    retryable_status_codes: FrozenSet[int] = field(default=DEFAULT_RETRYABLE_STATUS_CODES)
    backoff_base: float = 2.0
    backoff_cap: float = 10.0
    payload_shape: PayloadShape = PayloadShape.JSON

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be non-negative for strategy {self.name!r}")

    def endpoint(self, canonical_url: str) -> str:
        return self.host_transform(canonical_url)

    def header_map(self) -> dict[str, str]:
        """Return the headers as a fresh ordered ``dict``."""

        return dict(self.headers)

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt + 1``."""

        return min(self.backoff_base * (2 ** attempt), self.backoff_cap)


def _with_host(canonical_url: str, host: str | None, suffix: str, query: str = "") -> str:
    parts = urlsplit(canonical_url)
    path = parts.path.rstrip("/") + suffix
    netloc = host or parts.netloc
    return urlunsplit(("https", netloc, path, query, ""))


def json_endpoint(host: str | None = None) -> Callable[[str], str]:
    """Map a post URL to its ``.json`` listing on ``host``.

    ``raw_json=1`` stops Reddit from HTML-escaping ``&``, ``<`` and ``>`` in
    the post body.
    """

    def transform(canonical_url: str) -> str:
        return _with_host(canonical_url, host, ".json", "raw_json=1")

    return transform


def rss_endpoint(host: str | None = None) -> Callable[[str], str]:
    """Map a post URL to its ``.rss`` feed on ``host``."""

    def transform(canonical_url: str) -> str:
        return _with_host(canonical_url, host, ".rss")

    return transform


DEFAULT_STRATEGIES: Tuple[FetchStrategy, ...] = (
    FetchStrategy(
        name="oauth",
        host_transform=json_endpoint("oauth.reddit.com"),
        headers=(
            ("User-Agent", OAUTH_UA),
            ("Accept", "application/json"),
        ),
        requires_auth=True,
        max_retries=2,
        backoff_base=1.0,
        backoff_cap=8.0,
    ),
    FetchStrategy(
        name="old_reddit",
        host_transform=json_endpoint("old.reddit.com"),
        headers=(
            ("User-Agent", DESKTOP_CHROME_UA),
            ("Accept", "application/json, text/html, */*"),
            ("Accept-Language", "en-US,en;q=0.9"),
            ("Accept-Encoding", "gzip, deflate"),
            ("Cache-Control", "no-cache"),
            ("Pragma", "no-cache"),
            ("Sec-Ch-Ua", '"Not A(Brand";v="99", "Google Chrome";v="121", "Chromium";v="121"'),
            ("Sec-Ch-Ua-Mobile", "?0"),
            ("Sec-Ch-Ua-Platform", '"Windows"'),
            ("Sec-Fetch-Dest", "document"),
            ("Sec-Fetch-Mode", "navigate"),
            ("Sec-Fetch-Site", "none"),
            ("Sec-Fetch-User", "?1"),
            ("Upgrade-Insecure-Requests", "1"),
        ),
        max_retries=2,
    ),
    FetchStrategy(
        name="www_mobile",
        host_transform=json_endpoint("www.reddit.com"),
        headers=(
            ("User-Agent", MOBILE_SAFARI_UA),
            ("Accept", "application/json"),
            ("Accept-Language", "en-US,en;q=0.9"),
            ("Referer", "https://www.reddit.com/"),
        ),
        max_retries=1,
    ),
    FetchStrategy(
        name="minimal_headers",
        host_transform=json_endpoint("www.reddit.com"),
        headers=(("User-Agent", CURL_UA),),
        max_retries=0,
    ),
    FetchStrategy(
        name="rss",
        host_transform=rss_endpoint("old.reddit.com"),
        headers=(
            ("User-Agent", FEED_READER_UA),
            ("Accept", "application/atom+xml, application/rss+xml, application/xml;q=0.9, */*;q=0.8"),
        ),
        max_retries=1,
        payload_shape=PayloadShape.RSS,
    ),
)

STRATEGY_NAMES: Tuple[str, ...] = tuple(strategy.name for strategy in DEFAULT_STRATEGIES)


def with_retry_overrides(
    strategies: Sequence[FetchStrategy], overrides: Mapping[str, int]
) -> Tuple[FetchStrategy, ...]:
    """Return ``strategies`` with ``max_retries`` replaced where ``overrides`` names them."""

    if not overrides:
        return tuple(strategies)

    return tuple(
        dataclasses.replace(strategy, max_retries=overrides[strategy.name])
        if strategy.name in overrides
        else strategy
        for strategy in strategies
    )
