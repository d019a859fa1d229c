"""Single-attempt fetch execution with a shared deadline and cancellation."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

import requests

from storyscraper.models import (
    AttemptOutcome,
    NetworkError,
    OAuthToken,
    PermanentFailure,
    Skipped,
    Success,
    TransientFailure,
)
from storyscraper.services.strategies import FetchStrategy

__all__ = ["RunContext", "StrategyExecutor"]

logger = logging.getLogger(__name__)

IN_FLIGHT_POLL_SECONDS = 0.05


class RunContext:
    """Deadline and cancellation signal shared by every attempt of one scrape call."""

    def __init__(
        self,
        timeout: float,
        *,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self.timeout = timeout
        self.deadline = clock() + timeout
        self.cancel_event = cancel_event or threading.Event()

    def remaining(self) -> float:
        return max(0.0, self.deadline - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()

    def wait(self, seconds: float) -> bool:
        """Sleep for ``seconds``; return ``False`` if cancelled in the meantime."""

        return not self.cancel_event.wait(max(0.0, seconds))


class _InFlightRequest:
    """One blocking GET running on a daemon thread.

    The caller waits on :attr:`done` and may stop waiting at any time; an
    abandoned request finishes (or hits its socket timeout) in the background
    and its result is discarded.
    """

    def __init__(self, session: requests.Session | None, url: str, headers: dict, timeout: float) -> None:
        self.done = threading.Event()
        self.response: requests.Response | None = None
        self.payload = ""
        self.error: Exception | None = None
        self._thread = threading.Thread(
            target=self._run, args=(session, url, headers, timeout), daemon=True
        )

    def start(self) -> "_InFlightRequest":
        self._thread.start()
        return self

    def _run(self, session: requests.Session | None, url: str, headers: dict, timeout: float) -> None:
        # requests.get opens and closes a fresh session when none is injected
        http = session if session is not None else requests
        try:
            response = http.get(url, headers=headers, timeout=timeout)
            self.payload = response.text
            self.response = response
        except Exception as exc:  # noqa: BLE001
            self.error = exc
        finally:
            self.done.set()


class StrategyExecutor:
    """Perform exactly one HTTP attempt for one strategy and classify the result.

    The request body is downloaded on a worker thread while the caller watches
    the :class:`RunContext`, so a hung or trickling response is abandoned as
    soon as the deadline passes or the scrape is cancelled.
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        *,
        auth_user_agent: str | None = None,
        poll_interval: float = IN_FLIGHT_POLL_SECONDS,
    ) -> None:
        self._session = session
        self._auth_user_agent = auth_user_agent
        self._poll_interval = poll_interval

    def execute(
        self,
        strategy: FetchStrategy,
        canonical_url: str,
        token: OAuthToken | None,
        context: RunContext,
    ) -> AttemptOutcome:
        if strategy.requires_auth and token is None:
            return Skipped(strategy=strategy.name, reason="no OAuth token available")

        stopped = self._stopped(strategy, context)
        if stopped is not None:
            return stopped

        url = strategy.endpoint(canonical_url)
        headers = strategy.header_map()
        if strategy.requires_auth and token is not None:
            if self._auth_user_agent:
                headers["User-Agent"] = self._auth_user_agent
            headers["Authorization"] = f"Bearer {token.token}"

        logger.debug("Strategy %s requesting %s", strategy.name, url)
        call = _InFlightRequest(self._session, url, headers, context.remaining()).start()
        while not call.done.wait(min(self._poll_interval, context.remaining())):
            stopped = self._stopped(strategy, context)
            if stopped is not None:
                logger.warning("Strategy %s abandoned in flight: %s", strategy.name, stopped.message)
                return stopped

        if isinstance(call.error, requests.Timeout):
            logger.warning("Strategy %s timed out: %s", strategy.name, call.error)
            return NetworkError(str(call.error) or "request timed out", strategy.name, aborted=True)
        if isinstance(call.error, requests.RequestException):
            logger.warning("Strategy %s failed: %s", strategy.name, call.error)
            return NetworkError(str(call.error) or call.error.__class__.__name__, strategy.name)
        if call.error is not None:
            raise call.error

        # A response that arrives after the deadline or a cancellation never counts.
        stopped = self._stopped(strategy, context)
        if stopped is not None:
            logger.warning("Strategy %s answered too late: %s", strategy.name, stopped.message)
            return stopped

        response = call.response
        status = response.status_code
        if 200 <= status < 300:
            return Success(payload=call.payload, strategy=strategy.name, status_code=status)
        if status in strategy.retryable_status_codes:
            return TransientFailure(status_code=status, strategy=strategy.name)
        return PermanentFailure(
            status_code=status,
            strategy=strategy.name,
            reason=response.reason or f"HTTP {status}",
        )

    @staticmethod
    def _stopped(strategy: FetchStrategy, context: RunContext) -> NetworkError | None:
        if context.cancelled:
            return NetworkError("scrape cancelled", strategy.name, aborted=True, cancelled=True)
        if context.expired:
            return NetworkError("deadline exceeded", strategy.name, aborted=True)
        return None
