"""Shared fixtures for the kontrakt test suite."""

from __future__ import annotations

from datetime import UTC, datetime
import logging
from pathlib import Path
from typing import Any

from kontrakt.context import EphemeralTestContext, fixed_clock
from kontrakt.fixtures import FixtureGenerator, GenerationPipeline
from kontrakt.instance_factory import TestInstanceFactory
from kontrakt.mocking import MockingContext, StubRegistry, UnittestMockEngine
from kontrakt.models import (
    DependencyMetadata,
    EngineConfig,
    MockingStrategy,
    TestMode,
    TestResultEvent,
    TestSpecification,
)
from kontrakt.trace import InMemoryScenarioTrace
import pytest

FIXED_INSTANT = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
"""Instant behind ``FIXED_CLOCK``; every clock-derived value is reproducible."""

FIXED_CLOCK = fixed_clock(FIXED_INSTANT)

# ---------------------------------------------------------------------------
# Factory functions (plain functions, importable from conftest)
# ---------------------------------------------------------------------------


def make_config(**overrides: Any) -> EngineConfig:
    """Build a valid EngineConfig with sensible defaults.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed EngineConfig instance.
    """
    defaults: dict[str, Any] = {"seed": 42}
    defaults.update(overrides)
    return EngineConfig(**defaults)


def make_spec(target: type, *modes: TestMode, **overrides: Any) -> TestSpecification:
    """Build a TestSpecification; user scenarios when no mode is given.

    Args:
        target: Class under test.
        *modes: Verification modes.
        **overrides: Field values to override.

    Returns:
        A fully constructed TestSpecification instance.
    """
    defaults: dict[str, Any] = {
        "target": target,
        "modes": modes or (TestMode.user_scenario(),),
        "seed": 7,
    }
    defaults.update(overrides)
    return TestSpecification(**defaults)


def mock_of(dependency_type: type) -> DependencyMetadata:
    return DependencyMetadata(
        name=dependency_type.__name__,
        dependency_type=dependency_type,
        strategy=MockingStrategy.stateless_mock(),
    )


def fake_of(dependency_type: type) -> DependencyMetadata:
    return DependencyMetadata(
        name=dependency_type.__name__,
        dependency_type=dependency_type,
        strategy=MockingStrategy.stateful_fake(),
    )


def make_factory(**config_overrides: Any) -> TestInstanceFactory:
    """Build a TestInstanceFactory over a fresh ``UnittestMockEngine``."""
    engine = UnittestMockEngine()
    return TestInstanceFactory(
        engine, engine, config=make_config(**config_overrides), clock=FIXED_CLOCK
    )


def make_context(target: type, *modes: TestMode, **spec_overrides: Any) -> EphemeralTestContext:
    """Create the context of a specification through a default factory.

    Args:
        target: Class under test.
        *modes: Verification modes.
        **spec_overrides: Specification fields to override.

    Returns:
        A context whose target has been instantiated.
    """
    return make_factory().create(make_spec(target, *modes, **spec_overrides))


def make_mocking_context(seed: int = 11) -> MockingContext:
    """Build a MockingContext with its own trace and stub registry."""
    trace = InMemoryScenarioTrace()
    return MockingContext(
        generator=FixtureGenerator(seed, clock=FIXED_CLOCK, trace=trace),
        trace=trace,
        stubs=StubRegistry(),
        clock_millis=lambda: 1_000,
    )


class RecordingPublisher:
    """TestResultPublisher that keeps every event in memory."""

    def __init__(self) -> None:
        self.events: list[TestResultEvent] = []
        self.closed = False

    def publish(self, event: TestResultEvent) -> None:
        self.events.append(event)

    def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def pipeline() -> GenerationPipeline:
    """Return a generation pipeline with the default registry."""
    return GenerationPipeline()


@pytest.fixture()
def mock_engine() -> UnittestMockEngine:
    return UnittestMockEngine()


@pytest.fixture()
def mocking_context() -> MockingContext:
    return make_mocking_context()


@pytest.fixture()
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture()
def trace_dir(tmp_path: Path) -> Path:
    """Return an empty trace root directory."""
    root = tmp_path / "kontrakt"
    root.mkdir()
    return root


@pytest.fixture()
def restore_kontrakt_logger() -> Any:
    """Restore the ``kontrakt`` logger after a test reconfigures it.

    ``configure_logging`` disables propagation and replaces handlers,
    which would hide records from ``caplog`` in later tests.
    """
    package_logger = logging.getLogger("kontrakt")
    saved = (list(package_logger.handlers), package_logger.level, package_logger.propagate)
    yield package_logger
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        if handler not in saved[0]:
            handler.close()
    for handler in saved[0]:
        package_logger.addHandler(handler)
    package_logger.setLevel(saved[1])
    package_logger.propagate = saved[2]
