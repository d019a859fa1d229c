"""Turn Reddit JSON listings and RSS/Atom feeds into :class:`ScrapeResult` objects."""

from __future__ import annotations

import json
import re
from typing import Any, Union

from bs4 import BeautifulSoup
from bs4.element import Tag

from storyscraper.models import (
    DEFAULT_AUTHOR_LABEL,
    DEFAULT_COMMUNITY_LABEL,
    ParseError,
    ParseErrorKind,
    ScrapeResult,
)
from storyscraper.services.strategies import PayloadShape

__all__ = [
    "normalize_body",
    "parse_json_payload",
    "parse_payload",
    "parse_rss_payload",
]

ParseOutcome = Union[ScrapeResult, ParseError]

_EXCESS_NEWLINES = re.compile(r"\n{3,}")
_DELETED_AUTHORS = {"", "[deleted]", "[removed]"}
_ENTRY_TAGS = ("entry", "item")
_CONTENT_TAGS = ("content", "content:encoded", "encoded", "description")


def normalize_body(text: str) -> str:
    """Canonicalise line endings, collapse 3+ newlines to 2 and trim."""

    text = text.replace("\r\n", "\n")
    text = _EXCESS_NEWLINES.sub("\n\n", text)
    return text.strip()


def _community_label(name: Any) -> str:
    label = str(name or "").strip()
    if not label:
        return DEFAULT_COMMUNITY_LABEL
    if label.lower().startswith("r/"):
        return "r/" + label[2:]
    return f"r/{label}"


def _author_label(name: Any) -> str:
    label = str(name or "").strip()
    if label.startswith("/u/"):
        label = label[3:]
    elif label.startswith("u/"):
        label = label[2:]
    if label in _DELETED_AUTHORS:
        return DEFAULT_AUTHOR_LABEL
    return label


def _build_result(
    title: str, body: str, community: Any, author: Any, source_url: str
) -> ScrapeResult:
    return ScrapeResult(
        title=title,
        body=body,
        community_label=_community_label(community),
        author_label=_author_label(author),
        source_url=source_url,
    )


def parse_json_payload(raw: str, source_url: str) -> ParseOutcome:
    """Parse the ``[post_listing, comment_listing]`` pair returned by ``.json`` URLs."""

    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        return ParseError(ParseErrorKind.STRUCTURE_INVALID, f"payload is not JSON: {exc}")

    try:
        post = data[0]["data"]["children"][0]["data"]
    except (KeyError, IndexError, TypeError):
        return ParseError(
            ParseErrorKind.STRUCTURE_INVALID,
            "payload does not contain data[0].data.children[0].data",
        )
    if not isinstance(post, dict):
        return ParseError(ParseErrorKind.STRUCTURE_INVALID, "post entry is not an object")

    title = str(post.get("title") or "").strip()
    if not title:
        return ParseError(ParseErrorKind.STRUCTURE_INVALID, "post has no title")

    body = normalize_body(str(post.get("selftext") or ""))
    if not body:
        return ParseError(
            ParseErrorKind.CONTENT_ABSENT,
            "post has no text content; it is probably a link, image or video post",
        )

    return _build_result(title, body, post.get("subreddit"), post.get("author"), source_url)


def _first_child(parent: Tag, names: tuple[str, ...]) -> Tag | None:
    for child in parent.find_all(True, recursive=False):
        if child.name in names:
            return child
    return None


def _html_to_text(fragment: str) -> str:
    """Isolate the ``div.md`` post container and reduce it to plain text."""

    soup = BeautifulSoup(fragment, "lxml")
    container = soup.find("div", class_="md")
    if container is None:
        return ""

    for br in container.find_all("br"):
        br.replace_with("\n")
    for block in container.find_all(["p", "li", "blockquote", "pre", "h1", "h2", "h3", "h4"]):
        block.append("\n\n")

    return "\n".join(line.strip() for line in container.get_text().split("\n"))


def parse_rss_payload(raw: str, source_url: str) -> ParseOutcome:
    """Parse the Atom/RSS feed served for ``.rss`` post URLs."""

    soup = BeautifulSoup(raw or "", "xml")
    entry = None
    for name in _ENTRY_TAGS:
        entry = soup.find(name)
        if entry is not None:
            break
    if entry is None:
        return ParseError(ParseErrorKind.STRUCTURE_INVALID, "feed has no entry or item element")

    title_tag = _first_child(entry, ("title",))
    title = title_tag.get_text().strip() if title_tag is not None else ""

    content_tag = _first_child(entry, _CONTENT_TAGS)
    body = normalize_body(_html_to_text(content_tag.get_text())) if content_tag is not None else ""

    if not title or not body:
        missing = "title" if not title else "body"
        return ParseError(ParseErrorKind.STRUCTURE_INVALID, f"feed entry has no {missing}")

    community = None
    category = _first_child(entry, ("category",))
    if category is not None:
        community = category.get("label") or category.get("term") or category.get_text()

    author = None
    author_tag = _first_child(entry, ("author", "creator", "dc:creator"))
    if author_tag is not None:
        name_tag = author_tag.find("name")
        author = (name_tag or author_tag).get_text()

    return _build_result(title, body, community, author, source_url)


def parse_payload(raw: str, shape: PayloadShape, source_url: str) -> ParseOutcome:
    """Dispatch ``raw`` to the parser for ``shape``."""

    if shape is PayloadShape.RSS:
        return parse_rss_payload(raw, source_url)
    return parse_json_payload(raw, source_url)
