"""Dependency resolution: builds the object graph of a test target.

``TestInstanceFactory.create()`` resolves the target's constructor graph
depth-first. Every constructed dependency is cached in the test's
``EphemeralTestContext``, so two consumers of the same type (a diamond)
receive the same instance, and a mock stubbed by a scenario is the one the
target actually calls. A constructor cycle is reported as a configuration
error naming the whole path instead of being broken silently.
"""

from __future__ import annotations

import dataclasses
from enum import Enum
import inspect
import logging
import typing
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from kontrakt.context import EphemeralTestContext, epoch_millis, system_clock
from kontrakt.errors import (
    InvocationError,
    KontraktConfigurationException,
    KontraktError,
    invoke,
    unwrap,
)
from kontrakt.fixtures import FixtureGenerator, GenerationPipeline
from kontrakt.mocking import MockingContext
from kontrakt.models import EngineConfig, StrategyKind
from kontrakt.resolver import ATOMIC_TYPES, is_interface, underlying

if TYPE_CHECKING:
    from kontrakt.context import Clock
    from kontrakt.mocking import MockingEngine, ScenarioControl
    from kontrakt.models import DependencyMetadata, TestSpecification

logger = logging.getLogger(__name__)

_CONTAINER_TYPES = frozenset({list, dict, set, frozenset, tuple})


def is_basic_value_type(cls: type) -> bool:
    """True for scalars, containers, enums and immutable data classes.

    Frozen dataclasses and frozen Pydantic models are value objects and are
    generated as fixtures; everything else is constructed.
    """
    if cls in ATOMIC_TYPES or cls in _CONTAINER_TYPES or issubclass(cls, Enum):
        return True
    if dataclasses.is_dataclass(cls):
        return bool(cls.__dataclass_params__.frozen)  # type: ignore[attr-defined]
    if issubclass(cls, BaseModel):
        return bool(cls.model_config.get("frozen", False))
    return False


class TestInstanceFactory:
    """Creates the ephemeral context and target instance of a test.

    Args:
        mocking_engine: Builds mocks and fakes for declared dependencies.
        scenario_control: Builds stubbing contexts for scenarios.
        config: Engine configuration; supplies the fallback seed.
        clock: Seeds from the clock when no seed is configured.
        pipeline: Generation pipeline shared by every created context.
    """

    __test__ = False

    def __init__(
        self,
        mocking_engine: MockingEngine,
        scenario_control: ScenarioControl,
        *,
        config: EngineConfig | None = None,
        clock: Clock = system_clock,
        pipeline: GenerationPipeline | None = None,
    ) -> None:
        self._mocking_engine = mocking_engine
        self._scenario_control = scenario_control
        self._config = config if config is not None else EngineConfig()
        self._clock = clock
        self._pipeline = (
            pipeline
            if pipeline is not None
            else GenerationPipeline(
                min_size=self._config.min_structural_size,
                max_size=self._config.max_structural_size,
            )
        )

    def create(self, specification: TestSpecification) -> EphemeralTestContext:
        """Build the context of *specification* and instantiate its target.

        Raises:
            KontraktConfigurationException: If the target graph cannot be
                built; wraps the unwrapped root cause.
        """
        seed = self._seed_for(specification)
        context = EphemeralTestContext(
            specification, self._mocking_engine, self._scenario_control, seed
        )
        generator = FixtureGenerator(
            seed,
            clock=self._clock,
            config=self._config,
            pipeline=self._pipeline,
            trace=context.trace,
        )
        context.fixture_generator = generator
        context.mocking_context = MockingContext(
            generator=generator,
            trace=context.trace,
            stubs=context.stubs,
            clock_millis=lambda: epoch_millis(self._clock),
        )
        try:
            target = self.resolve(specification.target, context)
        except KontraktConfigurationException:
            raise
        except Exception as exc:
            cause = unwrap(exc)
            msg = f"Failed to create test target '{specification.display_name}': {cause}"
            raise KontraktConfigurationException(msg) from cause
        context.register_target(target)
        logger.debug("Created target %s with seed %d", specification.display_name, seed)
        return context

    def _seed_for(self, specification: TestSpecification) -> int:
        if specification.seed is not None:
            return specification.seed
        if self._config.seed is not None:
            return self._config.seed
        return epoch_millis(self._clock)

    def resolve(
        self, cls: type, context: EphemeralTestContext, path: tuple[type, ...] = ()
    ) -> Any:
        """Return the test-scoped instance of *cls*.

        Args:
            cls: Requested type.
            context: Context owning the dependency cache.
            path: Types whose construction is in progress, outermost first.

        Raises:
            KontraktConfigurationException: On a constructor cycle or an
                unresolvable parameter.
        """
        if cls in path:
            cycle = " -> ".join(c.__name__ for c in (*path, cls))
            msg = f"Circular dependency detected: {cycle}"
            raise KontraktConfigurationException(msg, diagnostics={"cycle": cycle})
        if context.has_dependency(cls):
            return context.get_dependency(cls)
        path = (*path, cls)

        dependency = context.specification.dependency_for(cls)
        if dependency is not None:
            instance = self._provide(dependency, context, path)
            context.register_dependency(cls, instance)
            return instance

        if is_basic_value_type(cls):
            try:
                return self._generator(context).generate(cls, name=cls.__name__)
            except KontraktError as exc:
                logger.debug("Fixture generation for %s failed (%s); constructing", cls, exc)

        instance = self.create_by_constructor(cls, context, path)
        context.register_dependency(cls, instance)
        return instance

    def _provide(
        self, dependency: DependencyMetadata, context: EphemeralTestContext, path: tuple[type, ...]
    ) -> Any:
        strategy = dependency.strategy
        cls = dependency.dependency_type
        mocking_context = context.mocking_context
        if strategy.kind == StrategyKind.STATEFUL_FAKE:
            return self._mocking_engine.create_fake(cls, mocking_context)
        if strategy.kind in (StrategyKind.STATELESS_MOCK, StrategyKind.ENVIRONMENT):
            return self._mocking_engine.create_mock(cls, mocking_context)
        return self.create_by_constructor(strategy.implementation, context, path)

    def create_by_constructor(
        self, cls: type, context: EphemeralTestContext, path: tuple[type, ...]
    ) -> Any:
        """Instantiate *cls*, resolving each constructor parameter.

        Types without a usable constructor (protocols and abstract classes)
        are mocked instead.

        Raises:
            KontraktConfigurationException: If a parameter cannot be
                resolved or the constructor raises.
        """
        if is_interface(cls):
            return self._mocking_engine.create_mock(cls, context.mocking_context)

        arguments = {
            name: self._resolve_parameter(cls, name, hint, context, path)
            for name, hint in _constructor_parameters(cls)
        }
        try:
            return invoke(cls, **arguments)
        except InvocationError as exc:
            cause = unwrap(exc)
            msg = f"Failed to instantiate class [{cls.__qualname__}]: {cause}"
            raise KontraktConfigurationException(msg) from cause

    def _resolve_parameter(
        self,
        owner: type,
        name: str,
        hint: Any,
        context: EphemeralTestContext,
        path: tuple[type, ...],
    ) -> Any:
        base = underlying(hint)
        if isinstance(base, type) and (
            not is_basic_value_type(base)
            or context.has_dependency(base)
            or context.specification.dependency_for(base) is not None
        ):
            return self.resolve(base, context, path)
        try:
            return self._generator(context).generate(hint, name=f"{owner.__name__}.{name}")
        except KontraktError as exc:
            if isinstance(base, type):
                return self.resolve(base, context, path)
            msg = f"Unresolvable parameter type: [{owner.__qualname__}].{name} ({exc})"
            raise KontraktConfigurationException(msg) from exc

    @staticmethod
    def _generator(context: EphemeralTestContext) -> FixtureGenerator:
        if context.fixture_generator is None:
            msg = "context has no fixture generator"
            raise KontraktConfigurationException(msg)
        return context.fixture_generator


def _constructor_parameters(cls: type) -> list[tuple[str, Any]]:
    """``(name, hint)`` of each constructor parameter that must be supplied."""
    if cls.__init__ is object.__init__:
        return []
    hints: dict[str, Any] = {}
    for owner in (cls, cls.__init__):
        try:
            hints.update(typing.get_type_hints(owner, include_extras=True))
        except (NameError, TypeError) as exc:
            msg = f"Cannot read type hints of [{cls.__qualname__}]: {exc}"
            raise KontraktConfigurationException(msg) from exc

    parameters = []
    signature = inspect.signature(cls.__init__)
    for index, (name, param) in enumerate(signature.parameters.items()):
        if index == 0 or param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        hint = hints.get(name)
        if hint is None:
            if param.default is not param.empty:
                continue
            msg = f"Unresolvable parameter type: [{cls.__qualname__}].{name} has no annotation"
            raise KontraktConfigurationException(msg)
        parameters.append((name, hint))
    return parameters
