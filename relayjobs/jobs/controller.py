"""
Job lifecycle controller.

Accepts submissions, persists them, dispatches them through the broker,
processes deliveries and re-dispatches stalled records on a backoff schedule.
"""

import asyncio
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from relayjobs.config.logging import get_logger
from relayjobs.config.settings import Settings
from relayjobs.core.exceptions import (
    ControllerMismatchError,
    RelayJobsException,
    ValidationError,
    serialize_error,
)
from relayjobs.jobs.broker import Broker
from relayjobs.jobs.hooks import JobOptions, JobType, ProcessContext, SaveContext
from relayjobs.jobs.schemas import (
    Filter,
    HandlerResult,
    JobEnvelope,
    JobRecord,
    RetryOutcome,
    RetryScanResult,
)
from relayjobs.jobs.store import RecordStore, as_utc, utcnow

if TYPE_CHECKING:
    from relayjobs.core.registries import ControllerRegistry

logger = get_logger(__name__)

EMPTY_PAYLOADS = (None, "", {}, [])


def is_empty_payload(payload: Any) -> bool:
    return any(payload is empty or payload == empty for empty in EMPTY_PAYLOADS)


class JobController:
    """Runs one job type against a record store and a broker."""

    def __init__(
        self,
        job_type: JobType,
        store: RecordStore,
        broker: Broker,
        settings: Settings,
        options: JobOptions | None = None,
    ):
        self.job_type = job_type
        self.hooks = job_type.hooks
        self.store = store
        self.broker = broker
        self.options = options or job_type.resolve_options(settings)
        # Set by init_controllers so jobs can enqueue work on each other
        self.controllers: "ControllerRegistry | None" = None
        self.logger = logger.bind(job=self.name)

    @property
    def name(self) -> str:
        return self.options.name

    @property
    def topic(self) -> str:
        return self.options.topic

    @property
    def kind(self) -> str:
        return self.options.kind

    @property
    def retry_offsets(self) -> list[float]:
        return self.options.retries

    @property
    def max_processing_time(self) -> timedelta:
        return timedelta(seconds=self.options.max_processing_time)

    async def submit(
        self, body: Any, run_at: datetime | str | None = None
    ) -> HandlerResult:
        """
        Validate and enqueue a submitted payload.

        Args:
            body: Request body; the payload itself, or ``{"data", "runAt"}``
                when the controller wraps payloads in data
            run_at: Delay processing until this time

        Returns:
            ``HandlerResult(200, {"data": payload})``

        Raises:
            ValidationError: the validate hook rejected the payload, or runAt
                is not a date
        """
        payload = body
        if self.options.wrap_in_data:
            body = body if isinstance(body, dict) else {}
            payload = body.get("data")
            run_at = body.get("runAt", run_at)

        # Empty submissions are connectivity probes
        if is_empty_payload(payload):
            return HandlerResult(status=200, body={"data": payload})

        try:
            run_at = as_utc(run_at)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid runAt: {run_at!r}") from e

        context = SaveContext(payload=payload, controller=self)
        try:
            await self.hooks.call("validate", context)
        except RelayJobsException:
            raise
        except Exception as e:
            raise ValidationError(str(e) or "Payload failed validation") from e

        await self.enqueue(context.payload, run_at)

        return HandlerResult(status=200, body={"data": context.payload})

    async def enqueue(
        self, payload: Any, run_at: datetime | str | None = None
    ) -> str | None:
        """
        Persist a payload and dispatch it unless it is delayed.

        Returns:
            The broker message id, or None for delayed jobs
        """
        context = SaveContext(payload=payload, controller=self)
        await self.hooks.call("before_save", context)

        record = await self.store.save(self.kind, context.payload, run_at=run_at)

        dispatch_id = None
        if run_at is None:
            dispatch_id = await self.broker.publish(
                self.topic, JobEnvelope(name=self.name, key=record.key)
            )

        self.logger.info(
            "Job enqueued",
            key=record.key,
            instance_id=record.instance_id,
            dispatch_id=dispatch_id,
            delayed=run_at is not None,
        )

        await self.hooks.call(
            "after_save",
            SaveContext(
                payload=context.payload,
                controller=self,
                key=record.key,
                dispatch_id=dispatch_id,
            ),
        )
        return dispatch_id

    async def receive(self, message: Any) -> JobRecord | None:
        """
        Process one broker delivery.

        Hook and process errors are recorded on the record and not raised.
        Store and decoding errors propagate.

        Returns:
            The record's final state, or None if it was already processed
        """
        envelope = self.broker.decode(message)
        if envelope.name != self.name:
            raise ControllerMismatchError(
                "Received message not meant for this controller "
                f"(message name: {envelope.name}, controller name: {self.name})"
            )

        record = await self.store.get(envelope.key)
        log = self.logger.bind(key=record.key, instance_id=record.instance_id)

        # Avoid repeat processing
        if record.processed_at is not None:
            log.info("Job already processed, skipping")
            return None

        context = ProcessContext(record=record, controller=self)
        try:
            await self.hooks.call("before_process", context)
        except Exception as e:
            self._record_error(record, e, log)
        else:
            started_at = utcnow()
            started = await self.store.update(
                record.key, {"last_attempt": started_at}, only_if_unprocessed=True
            )
            if not started:
                log.info("Job processed by another delivery, skipping")
                return None

            record.last_attempt = started_at
            try:
                await self.hooks.call("process", context)
                record.processed_at = utcnow()
                log.info("Job processed")
            except Exception as e:
                self._record_error(record, e, log)

        await self.store.save_record(record)

        await self.hooks.call("after_process", context)
        return record

    @staticmethod
    def _record_error(record: JobRecord, exc: Exception, log) -> None:
        log.exception("Job processing failed", retries=record.retries)
        record.last_error = serialize_error(exc)
        if not record.first_error:
            record.first_error = record.last_error

    async def retry(self) -> RetryScanResult:
        """Find stalled or due records and re-dispatch them."""
        now = utcnow()
        records = await self.store.query(
            self.kind,
            [
                Filter("processed_at", "=", None),
                Filter("failed_at", "=", None),
                Filter("next_attempt", "<=", now),
            ],
        )

        outcomes = await asyncio.gather(
            *(self.queue_retry(record, now) for record in records),
            return_exceptions=True,
        )

        result = RetryScanResult(scanned=len(records))
        for record, outcome in zip(records, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                result.errors += 1
                self.logger.error(
                    "Retry failed",
                    key=record.key,
                    instance_id=record.instance_id,
                    error=str(outcome),
                )
                continue
            if outcome in (RetryOutcome.PUBLISHED, RetryOutcome.RESCHEDULED_AND_PUBLISHED):
                result.published += 1
            if outcome in (RetryOutcome.RESCHEDULED, RetryOutcome.RESCHEDULED_AND_PUBLISHED):
                result.rescheduled += 1
            if outcome is RetryOutcome.FAILED:
                result.failed += 1

        self.logger.info("Retry scan complete", **result.model_dump())
        return result

    async def queue_retry(
        self, record: JobRecord, now: datetime | None = None
    ) -> RetryOutcome:
        """
        Apply one backoff step to a record if it is due, then re-dispatch it
        if it is ready to run.
        """
        now = now or utcnow()
        rescheduled = False

        # An attempt started since the record was last scheduled
        if record.last_attempt is not None and (
            record.next_attempt is None or record.next_attempt <= record.last_attempt
        ):
            if record.retries < len(self.retry_offsets):
                offset = self.retry_offsets[record.retries]
                record.next_attempt = record.last_attempt + timedelta(hours=offset)
                record.retries += 1
                rescheduled = True
            else:
                record.failed_at = record.last_attempt

            await self.store.update(
                record.key,
                {
                    "next_attempt": record.next_attempt,
                    "retries": record.retries,
                    "failed_at": record.failed_at,
                },
            )

        if record.failed_at is not None:
            self.logger.warning(
                "Job failed, retries exhausted",
                key=record.key,
                instance_id=record.instance_id,
                retries=record.retries,
            )
            return RetryOutcome.FAILED

        if not self._ready(record, now):
            return RetryOutcome.RESCHEDULED if rescheduled else RetryOutcome.SKIPPED

        await self.broker.publish(self.topic, JobEnvelope(name=self.name, key=record.key))
        self.logger.info(
            "Job re-dispatched",
            key=record.key,
            instance_id=record.instance_id,
            retries=record.retries,
        )
        return (
            RetryOutcome.RESCHEDULED_AND_PUBLISHED if rescheduled else RetryOutcome.PUBLISHED
        )

    def _ready(self, record: JobRecord, now: datetime) -> bool:
        """Whether a non-failed record should be dispatched at ``now``."""
        window = now - self.max_processing_time
        return (
            (record.last_attempt is None or record.last_attempt <= window)
            and (record.next_attempt is None or record.next_attempt <= now)
            and record.created_at < window
        )
