"""API routes exposing the Reddit scraping pipeline."""

from __future__ import annotations

import asyncio
import contextlib
import hmac
import logging
from typing import Any, Dict, List, Mapping, Optional

from fastapi import APIRouter, Body, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from storyscraper.config import ScraperSettings
from storyscraper.models import FailureKind, ScrapeFailure, ScrapeResult
from storyscraper.ratelimit import RateLimitDecision, RateLimiter, client_ip
from storyscraper.services.executor import RunContext
from storyscraper.services.orchestrator import FallbackOrchestrator
from storyscraper.validation import InvalidRedditUrl, canonicalize_reddit_url

logger = logging.getLogger(__name__)

router = APIRouter()

INTERNAL_API_KEY_HEADER = "X-Internal-Api-Key"
CLIENT_CLOSED_REQUEST = 499
DISCONNECT_POLL_SECONDS = 0.5


class ScrapeRequest(BaseModel):
    url: Any = None


class ScrapeSuccessResponse(BaseModel):
    success: bool = True
    title: str
    story: str
    subreddit: str
    author: str
    url: str


class ScrapeErrorResponse(BaseModel):
    success: bool = False
    error: str
    kind: str
    remediation: str
    attempted_strategies: List[str] = Field(default_factory=list)
    last_failure_by_strategy: Dict[str, str] = Field(default_factory=dict)
    last_error: Optional[str] = None
    auth_configured: Optional[bool] = None


class HealthResponse(BaseModel):
    status: str
    oauth_configured: bool


def is_server_initiated(headers: Mapping[str, str], internal_api_key: str | None) -> bool:
    """Return ``True`` for batch/automation calls carrying the internal API key."""

    if not internal_api_key:
        return False
    supplied = headers.get(INTERNAL_API_KEY_HEADER.lower()) or ""
    return hmac.compare_digest(supplied.encode("utf-8"), internal_api_key.encode("utf-8"))


def rate_limit_headers(decision: RateLimitDecision) -> Dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(int(decision.reset_at)),
    }
    if not decision.allowed:
        headers["Retry-After"] = str(decision.retry_after)
    return headers


def success_payload(result: ScrapeResult) -> ScrapeSuccessResponse:
    return ScrapeSuccessResponse(
        title=result.title,
        story=result.body,
        subreddit=result.community_label,
        author=result.author_label,
        url=result.source_url,
    )


def _exhausted_message(failure: ScrapeFailure) -> tuple[str, str]:
    if failure.auth_configured and not failure.auth_available:
        return (
            "Reddit OAuth is configured but failing: the access token could not be refreshed, "
            "and Reddit blocked every anonymous fallback. Regenerate REDDIT_REFRESH_TOKEN and "
            "check REDDIT_CLIENT_ID / REDDIT_CLIENT_SECRET, or paste the story content manually.",
            "reconfigure_credentials",
        )
    if failure.auth_configured:
        return (
            "Reddit OAuth is configured but failing: Reddit rejected the authenticated request "
            "and every anonymous fallback. This is usually a temporary block; wait a few minutes "
            "and try again, or paste the story content manually.",
            "wait_and_retry",
        )
    return (
        "Reddit is blocking automated requests and Reddit OAuth is not configured. Please try:\n"
        "1. Configure REDDIT_CLIENT_ID, REDDIT_CLIENT_SECRET and REDDIT_REFRESH_TOKEN\n"
        "2. Copy and paste the story content manually\n"
        "3. Wait a few minutes and try again",
        "configure_credentials",
    )


def failure_payload(failure: ScrapeFailure) -> tuple[int, ScrapeErrorResponse]:
    """Map an orchestration failure to an HTTP status and a remediation-specific body."""

    if failure.kind is FailureKind.CONTENT_ABSENT:
        status = 400
        message = (
            "This Reddit post has no text content. It might be a link post, image, or video. "
            "Choose a different post."
        )
        remediation = "choose_different_post"
    elif failure.kind is FailureKind.TIMEOUT:
        status = 504
        message = (
            "Reddit request timed out. Reddit is responding slowly; retrying immediately is "
            "unlikely to help, so wait a minute before trying again."
        )
        remediation = "wait_and_retry"
    elif failure.kind is FailureKind.CANCELLED:
        status = CLIENT_CLOSED_REQUEST
        message = "The scrape was cancelled because the client disconnected."
        remediation = "none"
    else:
        status = 502
        message, remediation = _exhausted_message(failure)

    body = ScrapeErrorResponse(
        error=message,
        kind=failure.kind.value,
        remediation=remediation,
        attempted_strategies=failure.attempted_strategies,
        last_failure_by_strategy=failure.last_failure_by_strategy,
        last_error=failure.last_error,
        auth_configured=failure.auth_configured,
    )
    return status, body


def _error_response(
    status_code: int, body: ScrapeErrorResponse, headers: Mapping[str, str] | None = None
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(exclude_none=True),
        headers=dict(headers or {}),
    )


async def _cancel_on_disconnect(request: Request, context: RunContext) -> None:
    while not context.cancelled:
        if await request.is_disconnected():
            logger.info("Client disconnected; cancelling scrape")
            context.cancel()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    """Report liveness and whether Reddit OAuth credentials are configured."""

    orchestrator: FallbackOrchestrator = request.app.state.orchestrator
    return HealthResponse(status="ok", oauth_configured=orchestrator.auth_configured)


@router.post(
    "/scrape-reddit",
    response_model=ScrapeSuccessResponse,
    responses={
        400: {"model": ScrapeErrorResponse},
        429: {"description": "Rate limit exceeded"},
        502: {"model": ScrapeErrorResponse},
        504: {"model": ScrapeErrorResponse},
    },
)
async def scrape_reddit(
    request: Request,
    response: Response,
    payload: ScrapeRequest | None = Body(default=None),
):
    """Scrape the title and text of a Reddit post."""

    settings: ScraperSettings = request.app.state.settings
    rate_limiter: RateLimiter = request.app.state.rate_limiter
    orchestrator: FallbackOrchestrator = request.app.state.orchestrator

    limit_headers: Dict[str, str] = {}
    if is_server_initiated(request.headers, settings.internal_api_key):
        logger.debug("Server-initiated scrape; rate limiting skipped")
    else:
        peer = request.client.host if request.client else None
        decision = rate_limiter.check(f"ip:{client_ip(request.headers, peer)}")
        limit_headers = rate_limit_headers(decision)
        if not decision.allowed:
            return JSONResponse(
                status_code=429,
                content={
                    "error": rate_limiter.config.message,
                    "retryAfter": decision.retry_after,
                    "limit": decision.limit,
                    "window": rate_limiter.config.window_seconds,
                },
                headers=limit_headers,
            )

    try:
        canonical_url = canonicalize_reddit_url(
            payload.url if payload is not None else None, settings.max_url_length
        )
    except InvalidRedditUrl as exc:
        return _error_response(
            400,
            ScrapeErrorResponse(error=str(exc), kind="invalid_input", remediation="fix_url"),
            limit_headers,
        )

    context = orchestrator.new_context()
    watcher = asyncio.create_task(_cancel_on_disconnect(request, context))
    try:
        outcome = await run_in_threadpool(orchestrator.scrape, canonical_url, context)
    except Exception:  # noqa: BLE001
        logger.exception("Unexpected error while scraping %s", canonical_url)
        return _error_response(
            500,
            ScrapeErrorResponse(
                error="Failed to scrape Reddit post", kind="unexpected", remediation="wait_and_retry"
            ),
            limit_headers,
        )
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher

    if isinstance(outcome, ScrapeFailure):
        status_code, body = failure_payload(outcome)
        logger.warning("Scrape of %s failed (%s): %s", canonical_url, outcome.kind.value, outcome.last_error)
        return _error_response(status_code, body, limit_headers)

    logger.info(
        "Scraped %s: %d characters from %s via %s",
        canonical_url,
        len(outcome.body),
        outcome.community_label,
        outcome.strategy,
    )
    response.headers.update(limit_headers)
    return success_payload(outcome)
