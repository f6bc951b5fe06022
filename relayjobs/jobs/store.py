"""
Record store adapter.

Typed wrapper around the SQL store: JSON (de)serialization of the payload,
UTC normalization of timestamps and bounded retries around writes.
"""

import asyncio
import json
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import InterfaceError, OperationalError

from relayjobs.config.logging import get_logger
from relayjobs.config.settings import Settings
from relayjobs.core.exceptions import RecordNotFoundError, StoreError
from relayjobs.infra.database import Database
from relayjobs.jobs.models import QUERYABLE_FIELDS, JobRecordRow
from relayjobs.jobs.schemas import Filter, JobRecord

logger = get_logger(__name__)

T = TypeVar("T")

DATETIME_FIELDS = (
    "created_at",
    "next_attempt",
    "last_attempt",
    "processed_at",
    "failed_at",
)
UPDATABLE_FIELDS = frozenset(
    {*DATETIME_FIELDS[1:], "payload", "retries", "first_error", "last_error"}
)
TRANSIENT_ERRORS = (OperationalError, InterfaceError, OSError)


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


def as_utc(dt: datetime | str | None) -> datetime | None:
    """Normalize a datetime (or ISO string) to aware UTC.

    Raises:
        ValueError: a string that is not an ISO 8601 date
        TypeError: any other non-datetime value
    """
    if dt is None:
        return None
    if isinstance(dt, str):
        dt = datetime.fromisoformat(dt.replace("Z", "+00:00"))
    if not isinstance(dt, datetime):
        raise TypeError(f"Expected a datetime or ISO string, got {type(dt).__name__}")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def encode_payload(payload: Any) -> str:
    """Serialize a payload; values JSON cannot encode are stored as strings."""
    return json.dumps(payload, default=str)


class RecordStore:
    """Job record persistence: get, save, update by key and query."""

    def __init__(self, database: Database, settings: Settings):
        self.database = database
        self.write_retries = settings.store_write_retries
        self.retry_base_delay = settings.store_retry_base_delay_ms / 1000

    async def _with_retries(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run a write, retrying transient failures with exponential delay."""
        attempt = 0
        while True:
            try:
                return await fn()
            except TRANSIENT_ERRORS as e:
                attempt += 1
                if attempt > self.write_retries:
                    logger.error(
                        "Store write failed",
                        operation=operation,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise StoreError(f"Store {operation} failed: {e}") from e

                delay = self.retry_base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "Retrying store write",
                    operation=operation,
                    attempt=attempt,
                    delay_s=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)

    @staticmethod
    def _to_record(row: JobRecordRow) -> JobRecord:
        record = JobRecord.model_validate(row)
        record.payload = json.loads(row.payload)
        for name in DATETIME_FIELDS:
            setattr(record, name, as_utc(getattr(record, name)))
        return record

    async def get(self, key: str) -> JobRecord:
        """
        Fetch a record by key, parsing its payload.

        Raises:
            RecordNotFoundError: no record has this key
        """
        async with self.database.SessionLocal() as session:
            row = await session.get(JobRecordRow, key)

        if row is None:
            raise RecordNotFoundError(key)

        return self._to_record(row)

    async def save(
        self,
        kind: str,
        payload: Any,
        run_at: datetime | str | None = None,
    ) -> JobRecord:
        """
        Persist a new record for ``payload``.

        ``created_at`` comes from the payload's ``createdAt`` when it is a
        valid date; ``next_attempt`` is ``run_at`` or now.

        Returns:
            The stored record, with its newly assigned key
        """
        now = utcnow()
        created_at = payload.get("createdAt") if isinstance(payload, dict) else None
        try:
            created_at = as_utc(created_at)
        except (TypeError, ValueError):
            # Unusable createdAt falls back to now
            created_at = None

        row_values = {
            "key": uuid.uuid4().hex,
            "kind": kind,
            "payload": encode_payload(payload),
            "created_at": created_at or now,
            "next_attempt": as_utc(run_at) or now,
            "last_attempt": None,
            "processed_at": None,
            "failed_at": None,
            "retries": 0,
            "first_error": None,
            "last_error": None,
            "instance_id": str(uuid.uuid1()),
        }

        async def _save() -> None:
            async with self.database.SessionLocal() as session:
                session.add(JobRecordRow(**row_values))
                await session.commit()

        await self._with_retries("save", _save)

        logger.debug("Record saved", kind=kind, key=row_values["key"])

        record = JobRecord(**{**row_values, "payload": payload})
        return record

    async def update(
        self,
        key: str,
        fields: dict[str, Any],
        *,
        only_if_unprocessed: bool = False,
    ) -> bool:
        """
        Update some fields of a record.

        Args:
            key: Record key
            fields: Column values; ``payload`` is serialized here
            only_if_unprocessed: Skip the write when processed_at is already set

        Returns:
            True if a row was written
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        values = dict(fields)
        if "payload" in values:
            values["payload"] = encode_payload(values["payload"])
        for name in DATETIME_FIELDS:
            if name in values:
                values[name] = as_utc(values[name])

        conditions = [JobRecordRow.key == key]
        if only_if_unprocessed:
            conditions.append(JobRecordRow.processed_at.is_(None))

        async def _update() -> int:
            async with self.database.SessionLocal() as session:
                result = await session.execute(
                    update(JobRecordRow).where(and_(*conditions)).values(**values)
                )
                await session.commit()
                return result.rowcount

        written = await self._with_retries("update", _update)
        return written > 0

    async def save_record(self, record: JobRecord) -> bool:
        """Write back every mutable field of ``record``."""
        return await self.update(
            record.key,
            record.model_dump(include=set(UPDATABLE_FIELDS)),
        )

    async def query(self, kind: str, filters: list[Filter]) -> list[JobRecord]:
        """
        Find records of ``kind`` matching every filter.

        Raises:
            ValueError: a filter names an unknown field or operator
        """
        conditions = [JobRecordRow.kind == kind]
        for flt in filters:
            conditions.append(self._condition(flt))

        async with self.database.SessionLocal() as session:
            result = await session.execute(
                select(JobRecordRow)
                .where(and_(*conditions))
                .order_by(JobRecordRow.created_at)
            )
            rows = result.scalars().all()

        return [self._to_record(row) for row in rows]

    @staticmethod
    def _condition(flt: Filter):
        if flt.field not in QUERYABLE_FIELDS:
            raise ValueError(f"Cannot filter on field: {flt.field}")

        column = getattr(JobRecordRow, flt.field)
        value = as_utc(flt.value) if flt.field in DATETIME_FIELDS else flt.value

        if flt.op == "=":
            return column.is_(None) if value is None else column == value
        if flt.op == "<":
            return or_(column.is_(None), column < value)
        if flt.op == "<=":
            return or_(column.is_(None), column <= value)
        if flt.op == ">":
            return column > value
        if flt.op == ">=":
            return column >= value
        raise ValueError(f"Unsupported filter operator: {flt.op}")

    async def ping(self) -> None:
        """Round-trip to the store; raises on failure."""
        async with self.database.SessionLocal() as session:
            await session.execute(select(1))
