"""FastAPI application entrypoint and composition root."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from storyscraper.api.routes import router
from storyscraper.config import ScraperSettings
from storyscraper.ratelimit import RateLimiter
from storyscraper.services import FallbackOrchestrator, build_orchestrator

logger = logging.getLogger(__name__)


async def _invalid_request_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("Rejected malformed request to %s: %s", request.url.path, exc.errors())
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "Request body must be a JSON object like {\"url\": \"https://reddit.com/r/...\"}",
            "kind": "invalid_input",
            "remediation": "fix_url",
        },
    )


def create_app(
    settings: ScraperSettings | None = None,
    orchestrator: FallbackOrchestrator | None = None,
    rate_limiter: RateLimiter | None = None,
) -> FastAPI:
    """Build the application with one orchestrator (and token cache) for its lifetime."""

    settings = settings or ScraperSettings.from_env()

    app = FastAPI(title="Story Scraper", description="Reddit story import API")
    app.state.settings = settings
    app.state.orchestrator = orchestrator or build_orchestrator(settings)
    app.state.rate_limiter = rate_limiter or RateLimiter(settings.rate_limit)

    app.add_exception_handler(RequestValidationError, _invalid_request_handler)
    app.include_router(router, prefix="/api")

    if not app.state.orchestrator.auth_configured:
        logger.warning("Reddit OAuth credentials are not configured; only anonymous strategies will run")

    return app


app = create_app()
