"""Configuration models and helpers for the story scraper."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Dict, Mapping

from pydantic import BaseModel, Field, ValidationError, field_validator

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_TOKEN_ENDPOINT",
    "DEFAULT_USER_AGENT",
    "RateLimitConfig",
    "RedditCredentials",
    "ScraperSettings",
]

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[2] / "data" / "scraper.json"
DEFAULT_TOKEN_ENDPOINT = "https://www.reddit.com/api/v1/access_token"
DEFAULT_USER_AGENT = "web:storyscraper:v1.0 (story import service)"


class RedditCredentials(BaseModel):
    """OAuth client credentials for the single Reddit account used by the scraper."""

    client_id: str = Field(default="", description="Reddit app client id")
    client_secret: str = Field(default="", description="Reddit app client secret")
    refresh_token: str = Field(default="", description="Long lived refresh token")
    user_agent: str = Field(
        default=DEFAULT_USER_AGENT,
        description="Descriptive user agent required by the Reddit API rules",
    )

    @property
    def configured(self) -> bool:
        """Return ``True`` when every secret needed for a token refresh is present."""

        return bool(self.client_id and self.client_secret and self.refresh_token)


class RateLimitConfig(BaseModel):
    """Fixed window rate limit applied to interactive callers."""

    max_requests: int = Field(default=100, ge=1)
    window_seconds: int = Field(default=15 * 60, ge=1)
    message: str = Field(default="Too many requests. Please slow down.")


class ScraperSettings(BaseModel):
    """Top level settings for the scraping pipeline and its gateway."""

    credentials: RedditCredentials = Field(default_factory=RedditCredentials)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    deadline_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Wall clock budget shared by every attempt of one scrape call",
    )
    token_endpoint: str = Field(default=DEFAULT_TOKEN_ENDPOINT)
    internal_api_key: str | None = Field(
        default=None,
        description=(
            "Shared secret sent by batch and automation callers in the "
            "X-Internal-Api-Key header. Matching calls skip rate limiting."
        ),
    )
    max_url_length: int = Field(default=500, ge=40)
    retry_overrides: Dict[str, int] = Field(
        default_factory=dict,
        description="Per-strategy max_retries overrides keyed by strategy name",
    )

    @field_validator("retry_overrides")
    @classmethod
    def _validate_overrides(cls, value: Dict[str, int]) -> Dict[str, int]:
        from storyscraper.services.strategies import STRATEGY_NAMES

        unknown = sorted(set(value) - set(STRATEGY_NAMES))
        if unknown:
            raise ValueError(f"Unknown strategy names in retry_overrides: {', '.join(unknown)}")
        negative = sorted(name for name, retries in value.items() if retries < 0)
        if negative:
            raise ValueError(f"retry_overrides must be non-negative: {', '.join(negative)}")
        return value

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ScraperSettings":
        """Build settings from ``REDDIT_*`` and scraper environment variables."""

        env = os.environ if environ is None else environ

        credentials = RedditCredentials(
            client_id=env.get("REDDIT_CLIENT_ID", "").strip(),
            client_secret=env.get("REDDIT_CLIENT_SECRET", "").strip(),
            refresh_token=env.get("REDDIT_REFRESH_TOKEN", "").strip(),
            user_agent=env.get("REDDIT_USER_AGENT", "").strip() or DEFAULT_USER_AGENT,
        )

        data: dict = {"credentials": credentials}
        deadline = env.get("SCRAPER_DEADLINE_SECONDS", "").strip()
        if deadline:
            try:
                data["deadline_seconds"] = float(deadline)
            except ValueError as exc:
                raise ValueError(f"SCRAPER_DEADLINE_SECONDS must be a number, got {deadline!r}") from exc

        internal_key = env.get("INTERNAL_API_KEY", "").strip()
        if internal_key:
            data["internal_api_key"] = internal_key

        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ValueError(f"Scraper settings from the environment are invalid\n{exc}") from exc

    @classmethod
    def from_file(cls, path: Path | str | None = None) -> "ScraperSettings":
        """Load settings from a JSON file."""

        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        try:
            data = json.loads(config_path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise FileNotFoundError(f"Configuration file not found: {config_path}") from exc
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON in configuration file: {config_path}") from exc

        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ValueError(f"Configuration file is invalid: {config_path}\n{exc}") from exc

    def dump(self, path: Path | str | None = None) -> None:
        """Persist the settings back to disk as JSON."""

        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(self.model_dump_json(indent=2), encoding="utf-8")
