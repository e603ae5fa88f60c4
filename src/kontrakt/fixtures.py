"""Fixture generation facade: plan, link and execute in one call.

``GenerationPipeline`` wires the planner, registry, linker and virtual
machine together and is safe to share. ``FixtureGenerator`` binds a
pipeline to one seed, optional path overrides and a scenario trace::

    generator = FixtureGenerator(seed=42)
    order = generator.generate(Order)
    same = FixtureGenerator(seed=42).generate(Order)   # == order
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from kontrakt.context import GenerationContext, epoch_millis, system_clock
from kontrakt.linker import DefaultLinkerContext, ExpansionLinker
from kontrakt.models import EngineConfig
from kontrakt.planner import StructuralPlanner
from kontrakt.registry import build_default_registry
from kontrakt.resolver import ReflectionTypeResolver, split_hint, type_ref
from kontrakt.trace import DesignDecision
from kontrakt.vm import VirtualMachine

if TYPE_CHECKING:
    from collections.abc import Mapping

    from kontrakt.context import Clock
    from kontrakt.generators import Generator
    from kontrakt.models import TypeReference
    from kontrakt.nodes import ExecutableNode, UnlinkedNode
    from kontrakt.registry import GeneratorRegistry
    from kontrakt.resolver import TypeResolver
    from kontrakt.trace import InMemoryScenarioTrace

logger = logging.getLogger(__name__)

_MAX_RENDERED_VALUE = 200


class GenerationPipeline:
    """Planner, linker and VM over one resolver and registry.

    Args:
        resolver: Type resolver; reflection-based by default.
        registry: Generator registry; the built-in strategies by default.
        min_size: Default lower bound of collection sizes.
        max_size: Default upper bound of collection sizes.
    """

    def __init__(
        self,
        resolver: TypeResolver | None = None,
        registry: GeneratorRegistry | None = None,
        *,
        min_size: int = 0,
        max_size: int = 10,
    ) -> None:
        self.resolver = resolver if resolver is not None else ReflectionTypeResolver()
        self.planner = StructuralPlanner(self.resolver)
        self.registry = (
            registry if registry is not None else build_default_registry(self.generate_reference)
        )
        self.linker = ExpansionLinker(self.registry)
        self.vm = VirtualMachine()
        self.min_size = min_size
        self.max_size = max_size

    def plan(self, hint: Any) -> UnlinkedNode:
        inner, attributes = split_hint(hint)
        return self.planner.plan(type_ref(inner), attributes)

    def link(
        self,
        hint: Any,
        context: GenerationContext,
        overrides: Mapping[str, Generator] | None = None,
    ) -> ExecutableNode:
        linker_context = DefaultLinkerContext(
            context.seeded_random, overrides, self.min_size, self.max_size
        )
        return self.linker.link(self.plan(hint), linker_context)

    def run(
        self,
        hint: Any,
        context: GenerationContext,
        overrides: Mapping[str, Generator] | None = None,
    ) -> tuple[ExecutableNode, Any]:
        """Plan, link and execute *hint*; return the plan and the value."""
        plan = self.link(hint, context, overrides)
        value = self.vm.execute(plan, context.descend(plan.type_ref))
        return plan, value

    def generate_reference(self, ref: TypeReference, context: GenerationContext) -> Any:
        """Nested generation of *ref*; ``None`` when *ref* is already being built."""
        if context.is_resolving(ref):
            return None
        _, value = self.run(ref.source, context)
        return value


class FixtureGenerator:
    """Deterministic value generation for one seed.

    Args:
        seed: Seed of the single random generator behind every draw.
        clock: Clock for time-relative values and trace timestamps.
        config: Supplies the default collection size bounds.
        pipeline: Shared pipeline; built from *config* when omitted.
        trace: Receives one ``DesignDecision`` per generated value.
        overrides: Generators keyed by path, applied to every call.
    """

    def __init__(
        self,
        seed: int,
        *,
        clock: Clock = system_clock,
        config: EngineConfig | None = None,
        pipeline: GenerationPipeline | None = None,
        trace: InMemoryScenarioTrace | None = None,
        overrides: Mapping[str, Generator] | None = None,
    ) -> None:
        config = config if config is not None else EngineConfig()
        self.seed = seed
        self.pipeline = (
            pipeline
            if pipeline is not None
            else GenerationPipeline(
                min_size=config.min_structural_size, max_size=config.max_structural_size
            )
        )
        self.context = GenerationContext.seeded(seed, clock)
        self._clock = clock
        self._trace = trace
        self._overrides = dict(overrides or {})

    def generate(
        self,
        hint: Any,
        *,
        name: str = "value",
        overrides: Mapping[str, Generator] | None = None,
    ) -> Any:
        """Generate a value of *hint*.

        Args:
            hint: Any supported type hint, ``Annotated`` constraints included.
            name: Subject recorded in the DESIGN trace.
            overrides: Per-call overrides, merged over the instance ones.

        Raises:
            ExecutionException: Subclasses describe the failing phase.
        """
        merged = {**self._overrides, **(overrides or {})}
        plan, value = self.pipeline.run(hint, self.context, merged)
        logger.debug(
            "Generated %s for %s via %s", type(value).__name__, name, plan.source.description
        )
        if self._trace is not None:
            self._trace.add(
                DesignDecision(
                    timestamp=epoch_millis(self._clock),
                    subject=name,
                    strategy=plan.source.description,
                    generated_value=render_value(value),
                )
            )
        return value

    def reseeded(self, seed: int | None = None) -> FixtureGenerator:
        """Fresh generator over the same pipeline, clock and overrides.

        The copy starts a new random sequence from *seed* (default: this
        generator's seed) and records no trace.
        """
        return FixtureGenerator(
            self.seed if seed is None else seed,
            clock=self._clock,
            pipeline=self.pipeline,
            overrides=self._overrides,
        )

    def plan(self, hint: Any) -> UnlinkedNode:
        return self.pipeline.plan(hint)

    def edge_cases(self, hint: Any) -> list[Any]:
        """Boundary values of an atomic *hint*; empty when it has none."""
        return self._boundary(hint, "edge_cases")

    def invalid_values(self, hint: Any) -> list[Any]:
        """Values violating the constraints of an atomic *hint*."""
        return self._boundary(hint, "invalid")

    def _boundary(self, hint: Any, method: str) -> list[Any]:
        plan = self.pipeline.link(hint, self.context, self._overrides)
        producer = getattr(getattr(plan, "generator", None), method, None)
        if producer is None:
            return []
        return list(producer(self.context))


def render_value(value: Any) -> str:
    rendered = repr(value)
    if len(rendered) > _MAX_RENDERED_VALUE:
        return rendered[: _MAX_RENDERED_VALUE - 3] + "..."
    return rendered
