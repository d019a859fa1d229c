"""Sequential fallback across fetch strategies with per-strategy retry and backoff."""

from __future__ import annotations

import logging
from typing import Callable, List, Optional, Sequence

from storyscraper.models import (
    AttemptRecord,
    FailureKind,
    NetworkError,
    OAuthToken,
    ParseError,
    ParseErrorKind,
    PermanentFailure,
    ScrapeFailure,
    ScrapeOutcome,
    ScrapeResult,
    Skipped,
    Success,
    TransientFailure,
)
from storyscraper.services.executor import RunContext, StrategyExecutor
from storyscraper.services.parser import ParseOutcome, parse_payload
from storyscraper.services.strategies import DEFAULT_STRATEGIES, FetchStrategy, PayloadShape
from storyscraper.services.token_cache import CredentialCache

__all__ = ["DEFAULT_DEADLINE_SECONDS", "FallbackOrchestrator"]

logger = logging.getLogger(__name__)

DEFAULT_DEADLINE_SECONDS = 30.0

Parser = Callable[[str, PayloadShape, str], ParseOutcome]


class _Run:
    """Mutable bookkeeping for a single :meth:`FallbackOrchestrator.scrape` call."""

    def __init__(self, auth_configured: bool) -> None:
        self.attempts: List[AttemptRecord] = []
        self.last_error: Optional[str] = None
        self.auth_configured = auth_configured
        self.token: Optional[OAuthToken] = None
        self.token_requested = False

    def record(
        self,
        strategy: str,
        attempt: int,
        outcome: str,
        status_code: int | None = None,
        detail: str = "",
    ) -> None:
        record = AttemptRecord(strategy, attempt, outcome, status_code, detail)
        self.attempts.append(record)
        self.last_error = record.describe()

    def failure(self, kind: FailureKind, message: str) -> ScrapeFailure:
        return ScrapeFailure(
            kind=kind,
            message=message,
            attempts=list(self.attempts),
            last_error=self.last_error,
            auth_configured=self.auth_configured,
            auth_available=self.token is not None,
        )


class FallbackOrchestrator:
    """Try each strategy in order until one yields a parseable post.

    Strategies run strictly one after another. Each strategy gets
    ``max_retries`` extra attempts on retryable statuses, separated by
    ``strategy.backoff_delay``. The whole call shares one deadline; running
    out of time or being cancelled stops the run in place instead of moving
    on to the next strategy.
    """

    def __init__(
        self,
        strategies: Sequence[FetchStrategy] = DEFAULT_STRATEGIES,
        executor: StrategyExecutor | None = None,
        credential_cache: CredentialCache | None = None,
        *,
        parser: Parser = parse_payload,
        deadline_seconds: float = DEFAULT_DEADLINE_SECONDS,
        sleep: Callable[[float], object] | None = None,
    ) -> None:
        if not strategies:
            raise ValueError("At least one fetch strategy is required")
        self.strategies = tuple(strategies)
        self._executor = executor or StrategyExecutor()
        self._credential_cache = credential_cache
        self._parser = parser
        self.deadline_seconds = deadline_seconds
        self._sleep = sleep

    @property
    def auth_configured(self) -> bool:
        return self._credential_cache is not None and self._credential_cache.configured

    def new_context(self) -> RunContext:
        return RunContext(self.deadline_seconds)

    def scrape(self, canonical_url: str, context: RunContext | None = None) -> ScrapeOutcome:
        """Fetch and parse ``canonical_url``; never raises for upstream failures."""

        context = context or self.new_context()
        run = _Run(self.auth_configured)
        logger.info("Scraping %s", canonical_url)

        for strategy in self.strategies:
            token = self._token_for(strategy, run)
            if strategy.requires_auth and token is None:
                logger.info("Skipping strategy %s: no OAuth token available", strategy.name)
                continue

            outcome = self._run_strategy(strategy, canonical_url, token, context, run)
            if isinstance(outcome, (ScrapeResult, ScrapeFailure)):
                return outcome

        if run.last_error is None:
            run.last_error = "no strategy could be attempted"
        logger.error(
            "All strategies failed for %s. Last error: %s", canonical_url, run.last_error
        )
        return run.failure(FailureKind.EXHAUSTED, "All fetch strategies failed")

    def _token_for(self, strategy: FetchStrategy, run: _Run) -> OAuthToken | None:
        if not strategy.requires_auth or self._credential_cache is None:
            return None
        if not run.token_requested:
            run.token_requested = True
            run.token = self._credential_cache.get_token()
        return run.token

    def _run_strategy(
        self,
        strategy: FetchStrategy,
        canonical_url: str,
        token: OAuthToken | None,
        context: RunContext,
        run: _Run,
    ) -> ScrapeOutcome | None:
        """Drive one strategy; ``None`` means move on to the next strategy."""

        attempt = 0
        while True:
            if context.cancelled:
                return self._cancelled(run, strategy)
            if context.expired:
                return self._timed_out(run, strategy, context)

            outcome = self._executor.execute(strategy, canonical_url, token, context)

            if isinstance(outcome, Success):
                logger.info("Strategy %s succeeded (HTTP %s)", strategy.name, outcome.status_code)
                return self._parse(strategy, outcome, canonical_url, attempt, run)

            if isinstance(outcome, Skipped):
                logger.info("Skipping strategy %s: %s", strategy.name, outcome.reason)
                return None

            if isinstance(outcome, NetworkError):
                run.record(strategy.name, attempt, "network_error", detail=outcome.message)
                if outcome.cancelled or context.cancelled:
                    return self._cancelled(run, strategy)
                if outcome.aborted or context.expired:
                    return self._timed_out(run, strategy, context)
                logger.warning("Strategy %s network error: %s", strategy.name, outcome.message)
                return None

            if isinstance(outcome, PermanentFailure):
                run.record(strategy.name, attempt, "permanent_failure", outcome.status_code, outcome.reason)
                logger.warning("Strategy %s returned %s", strategy.name, outcome.status_code)
                if strategy.requires_auth and outcome.status_code == 401 and self._credential_cache is not None:
                    logger.warning("OAuth token rejected; invalidating the cached token")
                    self._credential_cache.invalidate()
                return None

            if isinstance(outcome, TransientFailure):
                run.record(strategy.name, attempt, "transient_failure", outcome.status_code)
                if attempt >= strategy.max_retries:
                    logger.warning(
                        "Strategy %s returned %s; retries exhausted after %d attempts",
                        strategy.name,
                        outcome.status_code,
                        attempt + 1,
                    )
                    return None

                delay = strategy.backoff_delay(attempt)
                if delay >= context.remaining():
                    logger.warning(
                        "Strategy %s returned %s; backoff of %.1fs would outlast the deadline, "
                        "moving to the next strategy",
                        strategy.name,
                        outcome.status_code,
                        delay,
                    )
                    return None
                logger.info(
                    "Strategy %s returned %s; retrying in %.1fs (retry %d/%d)",
                    strategy.name,
                    outcome.status_code,
                    delay,
                    attempt + 1,
                    strategy.max_retries,
                )
                if not self._wait(delay, context):
                    return self._cancelled(run, strategy)
                attempt += 1
                continue

            raise TypeError(f"Unexpected attempt outcome: {outcome!r}")

    def _parse(
        self,
        strategy: FetchStrategy,
        outcome: Success,
        canonical_url: str,
        attempt: int,
        run: _Run,
    ) -> ScrapeOutcome | None:
        parsed = self._parser(outcome.payload, strategy.payload_shape, canonical_url)

        if isinstance(parsed, ScrapeResult):
            run.record(strategy.name, attempt, "success", outcome.status_code)
            logger.info(
                "Scraped %s via %s (%d characters)", canonical_url, strategy.name, len(parsed.body)
            )
            return parsed.model_copy(update={"strategy": strategy.name})

        if not isinstance(parsed, ParseError):
            raise TypeError(f"Unexpected parse outcome: {parsed!r}")
        if parsed.kind is ParseErrorKind.CONTENT_ABSENT:
            run.record(strategy.name, attempt, "content_absent", detail=parsed.detail)
            logger.info("Post %s has no text content", canonical_url)
            return run.failure(FailureKind.CONTENT_ABSENT, parsed.detail)

        run.record(strategy.name, attempt, "parse_error", detail=parsed.detail)
        logger.warning("Strategy %s returned an unusable payload: %s", strategy.name, parsed.detail)
        return None

    def _wait(self, delay: float, context: RunContext) -> bool:
        if self._sleep is not None:
            self._sleep(delay)
            return not context.cancelled
        return context.wait(delay)

    def _timed_out(self, run: _Run, strategy: FetchStrategy, context: RunContext) -> ScrapeFailure:
        logger.error("Scrape deadline of %.0fs exceeded during strategy %s", context.timeout, strategy.name)
        return run.failure(FailureKind.TIMEOUT, f"Deadline of {context.timeout:.0f}s exceeded")

    def _cancelled(self, run: _Run, strategy: FetchStrategy) -> ScrapeFailure:
        logger.info("Scrape cancelled during strategy %s", strategy.name)
        return run.failure(FailureKind.CANCELLED, "Scrape cancelled by the caller")
