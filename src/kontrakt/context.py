"""Generation and test-execution contexts.

``GenerationContext`` threads the seeded random generator, the clock and
the resolution history through every recursive generation step. It is
immutable: ``descend()`` returns a new context with the history extended.

``EphemeralTestContext`` is the per-test object graph: the dependency
cache that makes diamond-shaped graphs share one instance, the target
instance, the stub registry and the scenario trace. It lives for exactly
one test execution.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
import random
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict

from kontrakt.errors import KontraktInternalException
from kontrakt.mocking import ScenarioContext, StubRegistry
from kontrakt.trace import InMemoryScenarioTrace

if TYPE_CHECKING:
    from kontrakt.fixtures import FixtureGenerator
    from kontrakt.mocking import MockingContext, MockingEngine, ScenarioControl
    from kontrakt.models import TestSpecification

Clock = Callable[[], datetime]
"""Zero-argument callable returning the current aware ``datetime``."""


def system_clock() -> datetime:
    return datetime.now(UTC)


def fixed_clock(instant: datetime) -> Clock:
    """Return a clock frozen at *instant*."""

    def _clock() -> datetime:
        return instant

    return _clock


def epoch_millis(clock: Clock) -> int:
    """Current time of *clock* in milliseconds since the epoch."""
    return int(clock().timestamp() * 1000)


class GenerationContext(BaseModel):
    """Immutable state threaded through value generation.

    Attributes:
        seeded_random: The single source of randomness; shared by all
            contexts derived from one another so draws stay ordered.
        clock: Clock used by time-relative generators.
        history: Types currently being resolved, outermost first.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    seeded_random: random.Random
    clock: Callable[[], datetime] = system_clock
    history: tuple[Any, ...] = ()

    @classmethod
    def seeded(cls, seed: int, clock: Clock = system_clock) -> GenerationContext:
        return cls(seeded_random=random.Random(seed), clock=clock)

    def descend(self, item: Any) -> GenerationContext:
        """Return a copy whose history additionally contains *item*."""
        return self.model_copy(update={"history": (*self.history, item)})

    def is_resolving(self, item: Any) -> bool:
        return item in self.history

    def now(self) -> datetime:
        return self.clock()


class EphemeralTestContext:
    """Test-scoped object graph and collaborators.

    Attributes:
        specification: The test being executed.
        mocking_engine: Creates mocks and fakes for dependencies.
        scenario_control: Builds stubbing contexts over ``stubs``.
        seed: Seed of every generator used by this test.
        trace: Collected decisions and mock calls of this test.
        stubs: Stubs registered during this test.
        fixture_generator: Generator seeded with ``seed``; set by the
            instance factory.
        mocking_context: Collaborators handed to mocks; set by the
            instance factory.
        target_method: Name of the scenario currently running.
    """

    def __init__(
        self,
        specification: TestSpecification,
        mocking_engine: MockingEngine,
        scenario_control: ScenarioControl,
        seed: int,
        trace: InMemoryScenarioTrace | None = None,
    ) -> None:
        self.specification = specification
        self.mocking_engine = mocking_engine
        self.scenario_control = scenario_control
        self.seed = seed
        self.trace = trace if trace is not None else InMemoryScenarioTrace()
        self.stubs = StubRegistry()
        self.fixture_generator: FixtureGenerator | None = None
        self.mocking_context: MockingContext | None = None
        self.target_method: str | None = None
        self._dependencies: dict[type, Any] = {}
        self._target: Any = None
        self._target_set = False

    def register_dependency(self, dependency_type: type, instance: Any) -> None:
        self._dependencies[dependency_type] = instance

    def has_dependency(self, dependency_type: type) -> bool:
        return dependency_type in self._dependencies

    def get_dependency(self, dependency_type: type) -> Any:
        """Return the cached instance for *dependency_type*, or ``None``."""
        return self._dependencies.get(dependency_type)

    @property
    def dependencies(self) -> dict[type, Any]:
        return dict(self._dependencies)

    def register_target(self, instance: Any) -> None:
        self._target = instance
        self._target_set = True

    @property
    def target(self) -> Any:
        """The instance under test.

        Raises:
            KontraktInternalException: If the target was never registered.
        """
        if not self._target_set:
            msg = "Test target accessed before initialization"
            raise KontraktInternalException(msg)
        return self._target

    def scenario(self) -> ScenarioContext:
        """Stubbing context bound to this test's stubs."""
        return self.scenario_control.create_scenario_context(self.stubs)
