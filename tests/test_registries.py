import pytest

from relayjobs.core.registries import ControllerRegistry, Registry, init_controllers
from relayjobs.jobs.hooks import JobType


def test_registry_basic_operations():
    """Test basic registry register, get, list operations."""
    registry = Registry[str]("Test")

    assert registry.list() == []

    registry.register("test_impl", "test_value")
    assert registry.get("test_impl") == "test_value"
    assert registry.list() == ["test_impl"]
    assert "test_impl" in registry
    assert len(registry) == 1

    with pytest.raises(KeyError, match="No test implementation registered"):
        registry.get("nonexistent")


def test_registry_rejects_duplicates():
    registry = Registry[str]("Test")
    registry.register("impl", "one")

    with pytest.raises(ValueError, match="already registered"):
        registry.register("impl", "two")


def test_registry_freeze():
    """Test registry freezing prevents modifications."""
    registry = Registry[str]("Test")
    registry.register("before_freeze", "value")
    registry.freeze()

    assert registry.is_frozen()
    with pytest.raises(RuntimeError, match="registry is frozen"):
        registry.register("after_freeze", "value")
    assert registry.get("before_freeze") == "value"


def test_init_controllers(store, broker, settings):
    registry = init_controllers(
        [JobType(name="first"), JobType(name="second", options={"topic": "shared"})],
        store,
        broker,
        settings,
        options={"first": {"max_processing_time": 60}},
    )

    assert isinstance(registry, ControllerRegistry)
    assert registry.list() == ["first", "second"]
    assert registry.is_frozen()

    first = registry.get("first")
    assert first.max_processing_time.total_seconds() == 60
    assert first.controllers is registry
    assert registry.get("second").topic == "shared"
    assert [controller.name for controller in registry] == ["first", "second"]


def test_init_controllers_duplicate_names(store, broker, settings):
    with pytest.raises(ValueError):
        init_controllers([JobType(name="dup"), JobType(name="dup")], store, broker, settings)
