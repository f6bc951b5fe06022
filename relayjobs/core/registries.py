from collections.abc import Iterable, Iterator
from typing import Any, Generic, TypeVar

from relayjobs.config.logging import get_logger
from relayjobs.config.settings import Settings
from relayjobs.jobs.broker import Broker
from relayjobs.jobs.controller import JobController
from relayjobs.jobs.hooks import JobType
from relayjobs.jobs.store import RecordStore

logger = get_logger(__name__)

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry of named implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen"
            )
        if name in self._implementations:
            raise ValueError(f"{self.name} already registered with name: {name}")
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen

    def __contains__(self, name: str) -> bool:
        return name in self._implementations

    def __len__(self) -> int:
        return len(self._implementations)


class ControllerRegistry(Registry[JobController]):
    """Controllers of one process, keyed by job name."""

    def __init__(self):
        super().__init__("Controller")

    def __iter__(self) -> Iterator[JobController]:
        return iter(list(self._implementations.values()))


def init_controllers(
    job_types: Iterable[JobType],
    store: RecordStore,
    broker: Broker,
    settings: Settings,
    options: dict[str, dict[str, Any]] | None = None,
) -> ControllerRegistry:
    """
    Build one controller per job type.

    Args:
        job_types: Job definitions to run
        store: Shared record store
        broker: Shared broker
        settings: Source of default options
        options: Per-job option overrides keyed by job name

    Returns:
        A frozen registry; every controller's ``controllers`` points at it
    """
    options = options or {}
    registry = ControllerRegistry()

    for job_type in job_types:
        job_options = job_type.resolve_options(settings, **options.get(job_type.name, {}))
        controller = JobController(job_type, store, broker, settings, options=job_options)
        registry.register(controller.name, controller)
        controller.controllers = registry

    registry.freeze()
    logger.info("Controllers initialized", controllers=registry.list())
    return registry
