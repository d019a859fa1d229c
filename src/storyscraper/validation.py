"""Input validation for inbound scrape requests."""

from __future__ import annotations

import re
from urllib.parse import urlsplit, urlunsplit

__all__ = [
    "REDDIT_POST_URL_PATTERN",
    "InvalidRedditUrl",
    "canonicalize_reddit_url",
    "sanitize_string",
]

REDDIT_POST_URL_PATTERN = re.compile(
    r"^https?://(?:www\.|old\.|new\.|np\.)?reddit\.com/r/[^/]+/comments/[^/]+",
    re.IGNORECASE,
)

_TAG_PATTERN = re.compile(r"<[^>]*>")
_UNSAFE_CHARACTERS = re.compile(r"[<>'\"`;(){}\[\]]")


class InvalidRedditUrl(ValueError):
    """Raised when a submitted value is not a Reddit post URL."""


def sanitize_string(value: str, max_length: int = 1000) -> str:
    """Strip markup and injection-prone characters, trim and cap the length."""

    cleaned = _TAG_PATTERN.sub("", value)
    cleaned = _UNSAFE_CHARACTERS.sub("", cleaned)
    return cleaned.strip()[:max_length]


def canonicalize_reddit_url(value: object, max_length: int = 500) -> str:
    """Return the canonical post URL for ``value`` or raise :class:`InvalidRedditUrl`.

    The canonical form is the sanitised URL without query string or fragment.
    """

    if not isinstance(value, str) or not value.strip():
        raise InvalidRedditUrl("Reddit URL is required")

    sanitized = sanitize_string(value, max_length)
    if not REDDIT_POST_URL_PATTERN.match(sanitized):
        raise InvalidRedditUrl(
            "Invalid Reddit URL. Must be a Reddit post URL like: "
            "https://reddit.com/r/subreddit/comments/..."
        )

    parts = urlsplit(sanitized)
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path, "", ""))
