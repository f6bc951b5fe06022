"""
Job type descriptors and the hook pipeline.

A job type is a name, a set of hook callbacks and option overrides. Hooks are
plain callables (sync or async) taking one context argument; a job type can
be assembled from keyword arguments or from any object exposing hook methods.
"""

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from relayjobs.config.settings import Settings
from relayjobs.core.security import Authenticator
from relayjobs.jobs.schemas import JobRecord

if TYPE_CHECKING:
    from relayjobs.jobs.controller import JobController

Hook = Callable[[Any], Any | Awaitable[Any]]

HOOK_NAMES = (
    "validate",
    "before_save",
    "after_save",
    "before_process",
    "process",
    "after_process",
)


@dataclass
class SaveContext:
    """Context for validate, before_save and after_save.

    ``payload`` may be replaced or mutated by ``before_save``; ``key`` and
    ``dispatch_id`` are only set for ``after_save``.
    """

    payload: Any
    controller: "JobController | None" = None
    key: str | None = None
    dispatch_id: str | None = None


@dataclass
class ProcessContext:
    """Context for before_process, process and after_process."""

    record: JobRecord
    controller: "JobController | None" = None

    @property
    def payload(self) -> Any:
        return self.record.payload

    @payload.setter
    def payload(self, value: Any) -> None:
        self.record.payload = value

    @property
    def key(self) -> str:
        return self.record.key


@dataclass(frozen=True)
class JobHooks:
    """Optional callbacks invoked around a job's lifecycle."""

    validate: Hook | None = None
    before_save: Hook | None = None
    after_save: Hook | None = None
    before_process: Hook | None = None
    process: Hook | None = None
    after_process: Hook | None = None

    @classmethod
    def from_object(cls, obj: Any) -> "JobHooks":
        """Resolve hook slots from an object's callable attributes."""
        slots = {}
        for name in HOOK_NAMES:
            candidate = getattr(obj, name, None)
            if callable(candidate):
                slots[name] = candidate
        return cls(**slots)

    async def call(self, name: str, context: Any) -> Any:
        """Invoke one hook, awaiting it if it is async. Unset hooks return None."""
        hook = getattr(self, name)
        if hook is None:
            return None
        result = hook(context)
        if inspect.isawaitable(result):
            result = await result
        return result

    def defined(self) -> list[str]:
        return [f.name for f in fields(self) if getattr(self, f.name) is not None]


class JobOptions(BaseModel):
    """Resolved per-controller options."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = Field(..., min_length=1, description="Controller name and route path")
    topic: str | None = Field(default=None, description="Broker topic, defaults to name")
    kind: str | None = Field(default=None, description="Record kind, defaults to name")
    retries: list[float] = Field(..., description="Backoff offsets in hours")
    max_processing_time: float = Field(
        ..., ge=0, description="Seconds before an attempt counts as stalled"
    )
    wrap_in_data: bool = False
    authenticate: Authenticator | None = None
    cors_hosts: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def default_topic_and_kind(self) -> "JobOptions":
        if not self.topic:
            self.topic = self.name
        if not self.kind:
            self.kind = self.name
        return self

    @classmethod
    def from_settings(
        cls, name: str, settings: Settings, **overrides: Any
    ) -> "JobOptions":
        """Build options from settings defaults, then apply ``overrides``."""
        values = {
            "name": name,
            "retries": list(settings.job_retry_offsets_h),
            "max_processing_time": settings.job_max_processing_time_s,
            "wrap_in_data": settings.job_wrap_in_data,
            "authenticate": settings.auth_token,
            "cors_hosts": list(settings.cors_hosts),
        }
        values.update(overrides)
        return cls(**values)


def derive_name(class_name: str) -> str:
    """``MyTaskJob`` / ``MyTaskController`` -> ``myTask``."""
    for suffix in ("Controller", "Job"):
        if class_name.endswith(suffix) and len(class_name) > len(suffix):
            class_name = class_name[: -len(suffix)]
            break
    return class_name[:1].lower() + class_name[1:]


@dataclass(frozen=True)
class JobType:
    """A named job definition: hooks plus option overrides."""

    name: str
    hooks: JobHooks = field(default_factory=JobHooks)
    options: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_object(cls, obj: Any, name: str | None = None, **options: Any) -> "JobType":
        """
        Build a job type from an object with hook methods.

        Classes are instantiated without arguments. The name defaults to
        ``obj.name`` and then to the class name without a ``Job``/``Controller``
        suffix. Options come from ``obj.options`` (a mapping) updated with
        ``options``.
        """
        if inspect.isclass(obj):
            obj = obj()
        if name is None:
            name = getattr(obj, "name", None)
        if not isinstance(name, str) or not name:
            name = derive_name(type(obj).__name__)

        merged = dict(getattr(obj, "options", None) or {})
        merged.update(options)
        return cls(name=name, hooks=JobHooks.from_object(obj), options=merged)

    def resolve_options(self, settings: Settings, **overrides: Any) -> JobOptions:
        return JobOptions.from_settings(
            self.name, settings, **{**self.options, **overrides}
        )
