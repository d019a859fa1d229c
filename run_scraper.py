"""Convenience script for scraping a single Reddit post from the command line."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

# Ensure the src directory is on the Python path so the storyscraper package can be imported
SRC_PATH = Path(__file__).resolve().parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from storyscraper.api.routes import failure_payload, success_payload  # noqa: E402  (import after path setup)
from storyscraper.config import ScraperSettings  # noqa: E402
from storyscraper.models import ScrapeFailure  # noqa: E402
from storyscraper.services import build_orchestrator  # noqa: E402
from storyscraper.validation import InvalidRedditUrl, canonicalize_reddit_url  # noqa: E402


def main(argv: list[str] | None = None) -> int:
    """Scrape one post and print the same JSON payload the API would return."""

    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("url", help="Reddit post URL, e.g. https://reddit.com/r/AITA/comments/abc123/")
    parser.add_argument("--config", help="Optional JSON settings file instead of environment variables")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    try:
        settings = ScraperSettings.from_file(args.config) if args.config else ScraperSettings.from_env()
    except (FileNotFoundError, ValueError) as exc:
        logging.error("Could not load scraper settings: %s", exc)
        return 1

    try:
        canonical_url = canonicalize_reddit_url(args.url, settings.max_url_length)
    except InvalidRedditUrl as exc:
        logging.error("%s", exc)
        return 1

    outcome = build_orchestrator(settings).scrape(canonical_url)
    if isinstance(outcome, ScrapeFailure):
        _, body = failure_payload(outcome)
        print(json.dumps(body.model_dump(exclude_none=True), indent=2))
        return 1

    print(json.dumps(success_payload(outcome).model_dump(), indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
