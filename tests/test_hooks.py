import pytest
from pydantic import ValidationError as PydanticValidationError

from relayjobs.config.settings import DEFAULT_RETRY_OFFSETS_H, Settings
from relayjobs.jobs.hooks import (
    JobHooks,
    JobOptions,
    JobType,
    ProcessContext,
    SaveContext,
    derive_name,
)
from relayjobs.jobs.schemas import JobRecord
from relayjobs.jobs.store import utcnow


class SendEmailJob:
    def validate(self, ctx):
        return "validated"

    async def process(self, ctx):
        return "processed"

    not_a_hook = "ignored"


async def test_call_sync_and_async_hooks():
    hooks = JobHooks.from_object(SendEmailJob())

    assert await hooks.call("validate", SaveContext(payload={})) == "validated"
    assert await hooks.call("process", SaveContext(payload={})) == "processed"


async def test_unset_hooks_are_noops():
    hooks = JobHooks()

    assert await hooks.call("before_save", SaveContext(payload={})) is None
    assert hooks.defined() == []


def test_from_object_resolves_defined_slots():
    hooks = JobHooks.from_object(SendEmailJob())

    assert hooks.defined() == ["validate", "process"]


@pytest.mark.parametrize(
    "class_name,expected",
    [
        ("SendEmailJob", "sendEmail"),
        ("ChainTaskController", "chainTask"),
        ("Plain", "plain"),
        ("Job", "job"),
    ],
)
def test_derive_name(class_name, expected):
    assert derive_name(class_name) == expected


def test_job_type_from_object():
    job_type = JobType.from_object(SendEmailJob(), retries=[1, 2])

    assert job_type.name == "sendEmail"
    assert job_type.options == {"retries": [1, 2]}
    assert job_type.hooks.process is not None


def test_job_type_from_object_explicit_name_and_options():
    class Importer:
        name = "nightlyImport"
        options = {"wrap_in_data": True}

        def process(self, ctx):
            return None

    job_type = JobType.from_object(Importer)

    assert job_type.name == "nightlyImport"
    assert job_type.options == {"wrap_in_data": True}


def test_options_from_settings_defaults():
    settings = Settings(auth_token="secret", cors_hosts=["example.com"])

    options = JobOptions.from_settings("myTask", settings)

    assert options.topic == "myTask"
    assert options.kind == "myTask"
    assert options.retries == DEFAULT_RETRY_OFFSETS_H
    assert options.max_processing_time == 300
    assert options.wrap_in_data is False
    assert options.authenticate == "secret"
    assert options.cors_hosts == ["example.com"]


def test_options_overrides():
    settings = Settings()

    options = JobOptions.from_settings(
        "myTask", settings, topic="tasks", kind="Task", max_processing_time=60
    )

    assert options.topic == "tasks"
    assert options.kind == "Task"
    assert options.max_processing_time == 60


def test_options_reject_empty_name():
    with pytest.raises(PydanticValidationError):
        JobOptions.from_settings("", Settings())


def test_process_context_payload_writes_through():
    record = JobRecord(
        key="k1",
        kind="myTask",
        payload={"value": 1},
        created_at=utcnow(),
        instance_id="i1",
    )
    ctx = ProcessContext(record=record)

    ctx.payload = {"value": 2}

    assert record.payload == {"value": 2}
    assert ctx.key == "k1"
