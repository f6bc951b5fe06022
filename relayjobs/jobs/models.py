"""
Job record storage model.
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from relayjobs.infra.database import Base

# Columns the retry scan and queries may filter on
QUERYABLE_FIELDS = frozenset(
    {
        "kind",
        "created_at",
        "next_attempt",
        "last_attempt",
        "processed_at",
        "failed_at",
        "retries",
        "instance_id",
    }
)


class JobRecordRow(Base):
    """
    One durable row per submitted job.

    The payload and error columns hold serialized JSON and are never indexed;
    lifecycle timestamps are stored in UTC.
    """

    __tablename__ = "job_records"

    key: Mapped[str] = mapped_column("id", String(32), primary_key=True)
    kind: Mapped[str] = mapped_column(
        String(255), nullable=False, comment="Job type / collection name"
    )
    payload: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Caller data as JSON"
    )

    # Lifecycle
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    next_attempt: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="Earliest time to (re)start"
    )
    last_attempt: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="When processing last began"
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="Terminal success marker"
    )
    failed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="Terminal failure marker"
    )
    retries: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Backoff steps applied"
    )

    # Errors
    first_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Log correlation
    instance_id: Mapped[str] = mapped_column(String(36), nullable=False)

    __table_args__ = (
        Index(
            "ix_job_records_scan",
            "kind",
            "processed_at",
            "failed_at",
            "next_attempt",
        ),
    )
