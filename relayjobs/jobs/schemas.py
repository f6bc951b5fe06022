"""
Job system Pydantic schemas.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class JobRecord(BaseModel):
    """A job record as seen by the controller and by hooks."""

    model_config = ConfigDict(from_attributes=True, validate_assignment=False)

    key: str
    kind: str
    payload: Any = None
    created_at: datetime
    next_attempt: datetime | None = None
    last_attempt: datetime | None = None
    processed_at: datetime | None = None
    failed_at: datetime | None = None
    retries: int = 0
    first_error: str | None = None
    last_error: str | None = None
    instance_id: str


class JobEnvelope(BaseModel):
    """Broker message pointing at a job record."""

    name: str = Field(..., description="Controller name the job belongs to")
    key: str = Field(..., description="Record key")


@dataclass(frozen=True)
class Filter:
    """
    One predicate of a record query.

    ``value=None`` with ``=`` matches NULL. Range operators order NULL below
    every other value, so ``next_attempt <= now`` also matches unscheduled
    records.
    """

    field: str
    op: Literal["=", "<", "<=", ">", ">="]
    value: Any


@dataclass
class HandlerResult:
    """Transport-neutral response of a controller entry point."""

    status: int
    body: dict[str, Any] = field(default_factory=dict)


class RetryOutcome(str, Enum):
    """What a single queue_retry call did to a record."""

    SKIPPED = "skipped"
    RESCHEDULED = "rescheduled"
    FAILED = "failed"
    PUBLISHED = "published"
    RESCHEDULED_AND_PUBLISHED = "rescheduled_and_published"


class RetryScanResult(BaseModel):
    """Summary of one retry scan."""

    scanned: int = 0
    published: int = 0
    rescheduled: int = 0
    failed: int = 0
    errors: int = 0
