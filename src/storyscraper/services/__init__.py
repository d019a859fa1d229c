"""Service layer entry points for the story scraper."""

from __future__ import annotations

import requests

from storyscraper.config import ScraperSettings

from .executor import RunContext, StrategyExecutor  # noqa: F401
from .orchestrator import FallbackOrchestrator  # noqa: F401
from .parser import normalize_body, parse_payload  # noqa: F401
from .strategies import DEFAULT_STRATEGIES, FetchStrategy, PayloadShape, with_retry_overrides  # noqa: F401
from .token_cache import CredentialCache  # noqa: F401

__all__ = [
    "CredentialCache",
    "DEFAULT_STRATEGIES",
    "FallbackOrchestrator",
    "FetchStrategy",
    "PayloadShape",
    "RunContext",
    "StrategyExecutor",
    "build_orchestrator",
    "normalize_body",
    "parse_payload",
    "with_retry_overrides",
]


def build_orchestrator(
    settings: ScraperSettings, session: requests.Session | None = None
) -> FallbackOrchestrator:
    """Wire one credential cache, executor and orchestrator from ``settings``.

    The returned orchestrator owns the process-wide token cache, so callers
    should build it once and keep it for the lifetime of the process.

    Without ``session`` every upstream call gets its own short-lived session,
    since scrapes run concurrently on worker threads and ``requests.Session``
    is not thread-safe. An injected session is shared by every call.
    """

    cache = CredentialCache(
        settings.credentials,
        session,
        token_endpoint=settings.token_endpoint,
    )
    executor = StrategyExecutor(session, auth_user_agent=settings.credentials.user_agent)
    strategies = with_retry_overrides(DEFAULT_STRATEGIES, settings.retry_overrides)
    return FallbackOrchestrator(
        strategies,
        executor,
        cache,
        deadline_seconds=settings.deadline_seconds,
    )
