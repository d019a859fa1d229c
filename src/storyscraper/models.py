"""Domain models used across the scraping pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

DEFAULT_COMMUNITY_LABEL = "r/stories"
DEFAULT_AUTHOR_LABEL = "Anonymous"
TOKEN_SAFETY_MARGIN_SECONDS = 5 * 60


class ScrapeResult(BaseModel):
    """A Reddit post reduced to the fields the video pipeline needs."""

    title: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1, description="Newline-normalised post text")
    community_label: str = Field(default=DEFAULT_COMMUNITY_LABEL)
    author_label: str = Field(default=DEFAULT_AUTHOR_LABEL)
    source_url: str
    strategy: Optional[str] = Field(default=None, description="Strategy that produced the payload")

    @field_validator("title", "body")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


@dataclass(frozen=True)
class OAuthToken:
    """Bearer token issued by the Reddit token endpoint."""

    token: str
    expires_at: float

    def is_valid(self, now: float, margin: float = TOKEN_SAFETY_MARGIN_SECONDS) -> bool:
        return self.expires_at - now > margin


# Attempt outcomes returned by the strategy executor.


@dataclass(frozen=True)
class Success:
    payload: str
    strategy: str
    status_code: int = 200


@dataclass(frozen=True)
class TransientFailure:
    status_code: int
    strategy: str


@dataclass(frozen=True)
class PermanentFailure:
    status_code: int
    strategy: str
    reason: str = ""


@dataclass(frozen=True)
class NetworkError:
    message: str
    strategy: str
    aborted: bool = False
    cancelled: bool = False


@dataclass(frozen=True)
class Skipped:
    strategy: str
    reason: str


AttemptOutcome = Union[Success, TransientFailure, PermanentFailure, NetworkError, Skipped]


class ParseErrorKind(str, Enum):
    STRUCTURE_INVALID = "structure_invalid"
    CONTENT_ABSENT = "content_absent"


@dataclass(frozen=True)
class ParseError:
    kind: ParseErrorKind
    detail: str


class FailureKind(str, Enum):
    """Classification of a scrape that did not produce a result."""

    CONTENT_ABSENT = "content_absent"
    EXHAUSTED = "exhausted"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class AttemptRecord:
    """One executed attempt, kept for diagnostics."""

    strategy: str
    attempt: int
    outcome: str
    status_code: Optional[int] = None
    detail: str = ""

    def describe(self) -> str:
        if self.status_code is not None:
            return f"{self.strategy}: {self.outcome} (HTTP {self.status_code})"
        if self.detail:
            return f"{self.strategy}: {self.outcome} ({self.detail})"
        return f"{self.strategy}: {self.outcome}"


@dataclass
class ScrapeFailure:
    """Aggregate failure produced when no strategy yields a usable post."""

    kind: FailureKind
    message: str
    attempts: List[AttemptRecord] = field(default_factory=list)
    last_error: Optional[str] = None
    auth_configured: bool = False
    auth_available: bool = False

    @property
    def attempted_strategies(self) -> List[str]:
        seen: List[str] = []
        for record in self.attempts:
            if record.strategy not in seen:
                seen.append(record.strategy)
        return seen

    @property
    def last_failure_by_strategy(self) -> Dict[str, str]:
        failures: Dict[str, str] = {}
        for record in self.attempts:
            failures[record.strategy] = record.describe()
        return failures

    @property
    def last_status_code(self) -> Optional[int]:
        for record in reversed(self.attempts):
            if record.status_code is not None:
                return record.status_code
        return None


ScrapeOutcome = Union[ScrapeResult, ScrapeFailure]
