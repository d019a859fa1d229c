"""Process-wide cache for the Reddit OAuth bearer token."""

from __future__ import annotations

import logging
import time
from typing import Callable

import requests
from requests.auth import HTTPBasicAuth

from storyscraper.config import DEFAULT_TOKEN_ENDPOINT, RedditCredentials
from storyscraper.models import OAuthToken, TOKEN_SAFETY_MARGIN_SECONDS

__all__ = ["CredentialCache", "DEFAULT_TOKEN_LIFETIME_SECONDS"]

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME_SECONDS = 3600
TOKEN_REQUEST_TIMEOUT = 10


class CredentialCache:
    """Hold a single OAuth token and refresh it on demand.

    The cache never raises: any failure to obtain a token is logged and
    reported as ``None`` so callers can fall back to unauthenticated
    strategies. Concurrent misses may each refresh; the last writer wins and
    readers simply re-read the slot.
    """

    def __init__(
        self,
        credentials: RedditCredentials,
        session: requests.Session | None = None,
        *,
        token_endpoint: str = DEFAULT_TOKEN_ENDPOINT,
        clock: Callable[[], float] = time.time,
        timeout: float = TOKEN_REQUEST_TIMEOUT,
    ) -> None:
        self._credentials = credentials
        self._session = session
        self._token_endpoint = token_endpoint
        self._clock = clock
        self._timeout = timeout
        self._token: OAuthToken | None = None

    @property
    def configured(self) -> bool:
        return self._credentials.configured

    def peek(self) -> OAuthToken | None:
        """Return the cached token if it is still usable, without refreshing."""

        token = self._token
        if token is not None and token.is_valid(self._clock(), TOKEN_SAFETY_MARGIN_SECONDS):
            return token
        return None

    def invalidate(self) -> None:
        self._token = None

    def get_token(self) -> OAuthToken | None:
        """Return a valid token, refreshing it through the token endpoint on a miss."""

        cached = self.peek()
        if cached is not None:
            return cached

        if not self.configured:
            self._token = None
            return None

        token = self._refresh()
        self._token = token
        return token

    def _refresh(self) -> OAuthToken | None:
        logger.info("Requesting a new Reddit OAuth token")
        try:
            # requests.post opens and closes a fresh session when none is injected
            http = self._session if self._session is not None else requests
            response = http.post(
                self._token_endpoint,
                auth=HTTPBasicAuth(self._credentials.client_id, self._credentials.client_secret),
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": self._credentials.refresh_token,
                },
                headers={"User-Agent": self._credentials.user_agent},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Reddit token request failed: %s", exc)
            return None

        if not 200 <= response.status_code < 300:
            if response.status_code == 400:
                logger.warning(
                    "Reddit token endpoint returned 400: the refresh token is expired or invalid; "
                    "regenerate REDDIT_REFRESH_TOKEN"
                )
            elif response.status_code == 401:
                logger.warning(
                    "Reddit token endpoint returned 401: check REDDIT_CLIENT_ID and REDDIT_CLIENT_SECRET"
                )
            else:
                logger.warning(
                    "Reddit token endpoint returned %s: %s",
                    response.status_code,
                    (response.text or "")[:200],
                )
            return None

        try:
            payload = response.json()
        except ValueError:
            logger.warning("Reddit token endpoint returned a non-JSON body")
            return None

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            logger.warning("Reddit token response did not contain an access_token")
            return None

        try:
            lifetime = float(payload.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)
        except (TypeError, ValueError):
            lifetime = DEFAULT_TOKEN_LIFETIME_SECONDS

        logger.info("Obtained Reddit OAuth token valid for %d seconds", int(lifetime))
        return OAuthToken(token=str(access_token), expires_at=self._clock() + lifetime)
