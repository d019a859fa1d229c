from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Dict, List

import pytest

from storyscraper.models import (
    FailureKind,
    NetworkError,
    OAuthToken,
    PermanentFailure,
    ScrapeFailure,
    ScrapeResult,
    Skipped,
    Success,
    TransientFailure,
)
from storyscraper.services.executor import RunContext, StrategyExecutor
from storyscraper.services.orchestrator import FallbackOrchestrator
from storyscraper.services.strategies import DEFAULT_STRATEGIES, FetchStrategy, json_endpoint, with_retry_overrides

CANONICAL_URL = "https://reddit.com/r/AITA/comments/abc123/some_title/"
TOKEN = OAuthToken(token="tok", expires_at=10**10)


def listing(title: str = "Title", selftext: str = "Body text") -> str:
    post = {"title": title, "selftext": selftext, "subreddit": "AITA", "author": "someone"}
    return json.dumps([{"data": {"children": [{"data": post}]}}, {"data": {"children": []}}])


class ScriptedExecutor:
    """Replays canned outcomes per strategy and records every call."""

    def __init__(self, script: Dict[str, List[object]]) -> None:
        self.script = {name: list(outcomes) for name, outcomes in script.items()}
        self.calls: List[str] = []

    def execute(self, strategy, canonical_url, token, context):
        if strategy.requires_auth and token is None:
            return Skipped(strategy.name, "no token")
        self.calls.append(strategy.name)
        outcome = self.script[strategy.name].pop(0)
        if callable(outcome):
            return outcome(context)
        return outcome


class StubCache:
    def __init__(self, token: OAuthToken | None, configured: bool = True) -> None:
        self.token = token
        self.configured = configured
        self.requests = 0
        self.invalidated = False

    def get_token(self):
        self.requests += 1
        return self.token

    def invalidate(self) -> None:
        self.invalidated = True


def ok(name: str, payload: str | None = None) -> Success:
    return Success(payload=payload if payload is not None else listing(), strategy=name)


def make_orchestrator(executor, cache=None, strategies=DEFAULT_STRATEGIES, **kwargs):
    delays: List[float] = []
    orchestrator = FallbackOrchestrator(
        strategies, executor, cache, sleep=delays.append, **kwargs
    )
    return orchestrator, delays


def test_first_success_wins_and_later_strategies_are_not_attempted() -> None:
    executor = ScriptedExecutor({"oauth": [ok("oauth")]})
    orchestrator, delays = make_orchestrator(executor, StubCache(TOKEN))

    result = orchestrator.scrape(CANONICAL_URL)

    assert isinstance(result, ScrapeResult)
    assert result.strategy == "oauth"
    assert result.community_label == "r/AITA"
    assert executor.calls == ["oauth"]
    assert delays == []


@pytest.mark.parametrize("index", range(1, len(DEFAULT_STRATEGIES)))
def test_success_on_strategy_k_stops_the_chain(index: int) -> None:
    names = [strategy.name for strategy in DEFAULT_STRATEGIES]
    script: Dict[str, List[object]] = {name: [PermanentFailure(403, name)] for name in names[:index]}
    target = DEFAULT_STRATEGIES[index]
    payload = listing()
    if target.payload_shape.value == "rss":
        payload = (
            '<feed xmlns="http://www.w3.org/2005/Atom"><entry><title>Title</title>'
            '<content type="html">&lt;div class="md"&gt;&lt;p&gt;Body text&lt;/p&gt;&lt;/div&gt;</content>'
            "</entry></feed>"
        )
    script[target.name] = [ok(target.name, payload)]
    executor = ScriptedExecutor(script)
    orchestrator, _ = make_orchestrator(executor, StubCache(TOKEN))

    result = orchestrator.scrape(CANONICAL_URL)

    assert isinstance(result, ScrapeResult)
    assert executor.calls == names[: index + 1]


def test_transient_failures_retry_with_exponential_backoff_then_succeed() -> None:
    executor = ScriptedExecutor(
        {
            "old_reddit": [
                TransientFailure(429, "old_reddit"),
                TransientFailure(429, "old_reddit"),
                ok("old_reddit"),
            ]
        }
    )
    orchestrator, delays = make_orchestrator(executor, StubCache(None, configured=False))

    result = orchestrator.scrape(CANONICAL_URL)

    assert isinstance(result, ScrapeResult)
    assert result.strategy == "old_reddit"
    assert executor.calls == ["old_reddit"] * 3
    assert delays == [2.0, 4.0]


def test_strategy_gets_exactly_max_retries_plus_one_attempts() -> None:
    strategy = FetchStrategy(
        name="flaky",
        host_transform=json_endpoint(),
        headers=(("User-Agent", "x"),),
        max_retries=4,
        backoff_base=1.0,
        backoff_cap=5.0,
    )
    fallback = FetchStrategy(name="fallback", host_transform=json_endpoint(), headers=())
    executor = ScriptedExecutor(
        {"flaky": [TransientFailure(503, "flaky")] * 5, "fallback": [ok("fallback")]}
    )
    orchestrator, delays = make_orchestrator(executor, strategies=(strategy, fallback))

    result = orchestrator.scrape(CANONICAL_URL)

    assert isinstance(result, ScrapeResult)
    assert executor.calls == ["flaky"] * 5 + ["fallback"]
    assert delays == [1.0, 2.0, 4.0, 5.0]


def test_permanent_failure_moves_on_without_retrying() -> None:
    executor = ScriptedExecutor(
        {"old_reddit": [PermanentFailure(404, "old_reddit")], "www_mobile": [ok("www_mobile")]}
    )
    orchestrator, delays = make_orchestrator(executor)

    result = orchestrator.scrape(CANONICAL_URL)

    assert isinstance(result, ScrapeResult)
    assert executor.calls == ["old_reddit", "www_mobile"]
    assert delays == []


def test_structural_parse_error_moves_to_next_strategy() -> None:
    executor = ScriptedExecutor(
        {
            "old_reddit": [ok("old_reddit", "<html>blocked</html>")],
            "www_mobile": [ok("www_mobile")],
        }
    )
    orchestrator, _ = make_orchestrator(executor)

    result = orchestrator.scrape(CANONICAL_URL)

    assert isinstance(result, ScrapeResult)
    assert result.strategy == "www_mobile"


def test_content_absent_stops_the_whole_scrape() -> None:
    executor = ScriptedExecutor({"old_reddit": [ok("old_reddit", listing(selftext=""))]})
    orchestrator, _ = make_orchestrator(executor)

    result = orchestrator.scrape(CANONICAL_URL)

    assert isinstance(result, ScrapeFailure)
    assert result.kind is FailureKind.CONTENT_ABSENT
    assert executor.calls == ["old_reddit"]


def test_exhaustion_reports_attempts_and_last_error() -> None:
    names = [strategy.name for strategy in DEFAULT_STRATEGIES[1:]]
    script: Dict[str, List[object]] = {name: [PermanentFailure(403, name, "Forbidden")] for name in names}
    script["www_mobile"] = [NetworkError("connection reset", "www_mobile")]
    executor = ScriptedExecutor(script)
    cache = StubCache(None, configured=False)
    orchestrator, _ = make_orchestrator(executor, cache)

    result = orchestrator.scrape(CANONICAL_URL)

    assert isinstance(result, ScrapeFailure)
    assert result.kind is FailureKind.EXHAUSTED
    assert result.attempted_strategies == names
    assert result.last_status_code == 403
    assert result.last_error == "rss: permanent_failure (HTTP 403)"
    assert "connection reset" in result.last_failure_by_strategy["www_mobile"]
    assert not result.auth_configured


def test_token_is_requested_once_and_invalidated_on_401() -> None:
    executor = ScriptedExecutor(
        {"oauth": [PermanentFailure(401, "oauth")], "old_reddit": [ok("old_reddit")]}
    )
    cache = StubCache(TOKEN)
    orchestrator, _ = make_orchestrator(executor, cache)

    result = orchestrator.scrape(CANONICAL_URL)

    assert isinstance(result, ScrapeResult)
    assert cache.requests == 1
    assert cache.invalidated


def test_oauth_is_skipped_without_counting_an_attempt() -> None:
    executor = ScriptedExecutor({"old_reddit": [ok("old_reddit")]})
    orchestrator, _ = make_orchestrator(executor, StubCache(None))

    result = orchestrator.scrape(CANONICAL_URL)

    assert isinstance(result, ScrapeResult)
    assert executor.calls == ["old_reddit"]


def test_aborted_network_error_stops_with_timeout() -> None:
    executor = ScriptedExecutor(
        {"old_reddit": [NetworkError("read timed out", "old_reddit", aborted=True)]}
    )
    orchestrator, _ = make_orchestrator(executor)

    result = orchestrator.scrape(CANONICAL_URL)

    assert isinstance(result, ScrapeFailure)
    assert result.kind is FailureKind.TIMEOUT
    assert executor.calls == ["old_reddit"]


def test_backoff_longer_than_remaining_deadline_moves_to_next_strategy() -> None:
    executor = ScriptedExecutor(
        {"old_reddit": [TransientFailure(429, "old_reddit")], "www_mobile": [ok("www_mobile")]}
    )
    orchestrator, delays = make_orchestrator(executor, deadline_seconds=1.0)

    result = orchestrator.scrape(CANONICAL_URL)

    assert isinstance(result, ScrapeResult)
    assert result.strategy == "www_mobile"
    assert executor.calls == ["old_reddit", "www_mobile"]
    assert delays == []


def test_cancellation_during_backoff_stops_the_scrape() -> None:
    context = RunContext(30)
    executor = ScriptedExecutor({"old_reddit": [TransientFailure(429, "old_reddit")]})
    orchestrator = FallbackOrchestrator(
        DEFAULT_STRATEGIES, executor, None, sleep=lambda delay: context.cancel()
    )

    result = orchestrator.scrape(CANONICAL_URL, context)

    assert isinstance(result, ScrapeFailure)
    assert result.kind is FailureKind.CANCELLED
    assert executor.calls == ["old_reddit"]


def test_default_wait_is_interrupted_by_cancellation() -> None:
    context = RunContext(30)
    context.cancel()

    assert context.wait(5) is False


def test_retry_overrides_replace_max_retries() -> None:
    tuned = with_retry_overrides(DEFAULT_STRATEGIES, {"old_reddit": 0, "rss": 3})
    by_name = {strategy.name: strategy for strategy in tuned}

    assert by_name["old_reddit"].max_retries == 0
    assert by_name["rss"].max_retries == 3
    assert by_name["oauth"].max_retries == DEFAULT_STRATEGIES[0].max_retries
    assert [strategy.name for strategy in tuned] == [strategy.name for strategy in DEFAULT_STRATEGIES]


class Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class SlowSession:
    """Answers 200 only after ``during_call`` has run, like a response that trickles in."""

    def __init__(self, during_call) -> None:
        self.during_call = during_call
        self.calls: List[str] = []

    def get(self, url, headers=None, timeout=None):
        self.calls.append(url)
        self.during_call()
        return SimpleNamespace(status_code=200, text=listing(), reason="OK")


def test_deadline_passing_during_a_call_times_out_without_trying_later_strategies() -> None:
    clock = Clock()
    context = RunContext(30, clock=clock)

    def outlast_deadline() -> None:
        clock.now += 31

    session = SlowSession(outlast_deadline)
    orchestrator = FallbackOrchestrator(DEFAULT_STRATEGIES, StrategyExecutor(session), None)

    result = orchestrator.scrape(CANONICAL_URL, context)

    assert isinstance(result, ScrapeFailure)
    assert result.kind is FailureKind.TIMEOUT
    assert len(session.calls) == 1


def test_cancellation_during_a_call_stops_the_scrape() -> None:
    context = RunContext(30)
    session = SlowSession(context.cancel)
    orchestrator = FallbackOrchestrator(DEFAULT_STRATEGIES, StrategyExecutor(session), None)

    result = orchestrator.scrape(CANONICAL_URL, context)

    assert isinstance(result, ScrapeFailure)
    assert result.kind is FailureKind.CANCELLED
    assert len(session.calls) == 1
