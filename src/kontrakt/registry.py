"""Generator selection: strategies, registry and interface resolution.

``GeneratorRegistry.select()`` walks an ordered chain of
``GeneratorSelectionStrategy`` instances; the first that returns
``Selected`` wins, otherwise the fallback strategy gets a chance, and if it
passes too the node has no generator. Interface nodes are resolved by a
separate ``InterfaceResolutionStrategy`` that picks a concrete type.

The registry and the default strategies hold no mutable state and are safe
to share between threads.
"""

from __future__ import annotations

from collections import abc
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
import logging
import math
from typing import TYPE_CHECKING, Any, Literal, Protocol, get_args, get_origin
import uuid

from pydantic import BaseModel, ConfigDict

from kontrakt.errors import (
    ExecutionException,
    GeneratorNotFoundException,
    ImplementationResolutionException,
    SealedClassHasNoSubclassesException,
)
from kontrakt.generators import (
    FLOAT_MAX,
    FLOAT_MIN,
    INT_MAX,
    INT_MIN,
    BoolGenerator,
    BytesGenerator,
    ChoiceGenerator,
    DateTimeGenerator,
    DecimalGenerator,
    DelegatingGenerator,
    DictGenerator,
    EmailGenerator,
    EnumGenerator,
    FloatGenerator,
    FrozenSetGenerator,
    IntGenerator,
    ListGenerator,
    NullGenerator,
    ObjectAssembler,
    PatternGenerator,
    PositionalAssembler,
    SetGenerator,
    StringGenerator,
    TupleGenerator,
    UrlGenerator,
    UUIDGenerator,
)
from kontrakt.models import Attribute, DecisionSource, TypeReference
from kontrakt.nodes import (
    UnlinkedAtomicNode,
    UnlinkedCollectionNode,
    UnlinkedCompositeNode,
    UnlinkedInterfaceNode,
    UnlinkedMapNode,
    UnlinkedNode,
    UnlinkedReferenceNode,
)
from kontrakt.resolver import is_interface, strip_optional, type_ref, underlying

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from kontrakt.context import GenerationContext

logger = logging.getLogger(__name__)

_SET_ORIGINS = frozenset({abc.Set, abc.MutableSet})


class Selected(BaseModel):
    """A strategy chose ``generator`` for a node."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    generator: Any
    source: DecisionSource


class Pass(BaseModel):
    """A strategy declined a node."""

    model_config = ConfigDict(frozen=True)


PASS = Pass()

SelectionResult = Selected | Pass


class ResolutionResult(BaseModel):
    """Outcome of interface resolution."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    concrete_type: TypeReference
    generator: Any
    source: DecisionSource


class GeneratorSelectionStrategy(Protocol):
    def select(self, node: UnlinkedNode) -> SelectionResult: ...


class InterfaceResolutionStrategy(Protocol):
    def resolve(self, node: UnlinkedInterfaceNode) -> ResolutionResult: ...


def find_attribute(attributes: Iterable[Attribute], name: str) -> Attribute | None:
    """Return the first attribute called *name*, or ``None``."""
    for attribute in attributes:
        if attribute.name == name:
            return attribute
    return None


# ---------------------------------------------------------------------------
# Default strategies
# ---------------------------------------------------------------------------


class ReferenceCutStrategy:
    """Cuts recursive back-references to ``None``."""

    def select(self, node: UnlinkedNode) -> SelectionResult:
        if isinstance(node, UnlinkedReferenceNode):
            return Selected(generator=NullGenerator(), source=DecisionSource.cycle_cut())
        return PASS


class AtomicValueStrategy:
    """Generators for builtin scalars, enums and literals.

    Sign markers, ``Range`` and ``Digits`` narrow numbers. Strings follow
    the first format marker among ``Email``, ``Uuid``, ``Url`` and
    ``Pattern``, falling back to ``Size``/``NotBlank``/``NotEmpty``
    alphanumerics. ``Past``/``Future`` pick the side of the clock.
    """

    def select(self, node: UnlinkedNode) -> SelectionResult:
        if not isinstance(node, UnlinkedAtomicNode):
            return PASS
        generator = self._generator_for(underlying(node.type_ref.source), node.attributes)
        if generator is None:
            return PASS
        return Selected(generator=generator, source=DecisionSource.strategy(type(self).__name__))

    def _generator_for(self, hint: Any, attributes: tuple[Attribute, ...]) -> Any:
        if get_origin(hint) is Literal:
            return ChoiceGenerator(get_args(hint))
        if not isinstance(hint, type):
            return None
        if issubclass(hint, bool):
            return BoolGenerator()
        if issubclass(hint, Enum):
            return EnumGenerator(hint)
        if issubclass(hint, int):
            low, high = _numeric_bounds(attributes, INT_MIN, INT_MAX, step=1)
            return IntGenerator(math.ceil(low), math.floor(high))
        if issubclass(hint, float):
            low, high = _numeric_bounds(attributes, FLOAT_MIN, FLOAT_MAX, step=_FLOAT_STEP)
            digits = find_attribute(attributes, "Digits")
            decimals = digits.get("fraction", 0) if digits is not None else None
            return FloatGenerator(float(low), float(high), decimals=decimals)
        if issubclass(hint, Decimal):
            low, high = _numeric_bounds(attributes, FLOAT_MIN, FLOAT_MAX, step=0.01)
            digits = find_attribute(attributes, "Digits")
            places = digits.get("fraction", 0) if digits is not None else 2
            return DecimalGenerator(low, high, places)
        if issubclass(hint, str):
            return _string_generator(attributes)
        if issubclass(hint, bytes):
            low, high = _length_bounds(attributes, 0, 16)
            return BytesGenerator(low, high)
        if issubclass(hint, datetime):
            return DateTimeGenerator(direction=_time_direction(attributes))
        if issubclass(hint, date):
            return DateTimeGenerator(as_date=True, direction=_time_direction(attributes))
        if issubclass(hint, uuid.UUID):
            return UUIDGenerator()
        return None


_FLOAT_STEP = 0.00001


def _numeric_bounds(
    attributes: tuple[Attribute, ...], low: float, high: float, *, step: float
) -> tuple[float, float]:
    """Intersect the default range with every numeric marker.

    *step* is the smallest distance from zero that still counts as
    strictly positive or negative.
    """
    range_attr = find_attribute(attributes, "Range")
    if range_attr is not None:
        low = range_attr.get("min") if range_attr.get("min") is not None else low
        high = range_attr.get("max") if range_attr.get("max") is not None else high
    if find_attribute(attributes, "Positive") is not None:
        low = max(low, step)
    if find_attribute(attributes, "PositiveOrZero") is not None:
        low = max(low, 0)
    if find_attribute(attributes, "Negative") is not None:
        high = min(high, -step)
    if find_attribute(attributes, "NegativeOrZero") is not None:
        high = min(high, 0)
    digits = find_attribute(attributes, "Digits")
    if digits is not None:
        limit = 10 ** digits.get("integer") - (
            1 if step == 1 else 10.0 ** -digits.get("fraction", 0)
        )
        low, high = max(low, -limit), min(high, limit)
    return low, high


def _length_bounds(attributes: tuple[Attribute, ...], low: int, high: int) -> tuple[int, int]:
    size = find_attribute(attributes, "Size")
    if size is not None:
        low = size.get("min", low)
        high = size.get("max") if size.get("max") is not None else max(high, low)
    if find_attribute(attributes, "NotEmpty") is not None:
        low = max(low, 1)
        high = max(high, low)
    return low, high


def _string_generator(attributes: tuple[Attribute, ...]) -> Any:
    if find_attribute(attributes, "Email") is not None:
        return EmailGenerator()
    if find_attribute(attributes, "Uuid") is not None:
        return UUIDGenerator(as_string=True)
    if find_attribute(attributes, "Url") is not None:
        return UrlGenerator()
    pattern = find_attribute(attributes, "Pattern")
    if pattern is not None:
        return PatternGenerator(pattern.get("regex"))
    low, high = _length_bounds(attributes, 0, 20)
    size = find_attribute(attributes, "Size")
    return StringGenerator(
        low,
        high,
        not_blank=find_attribute(attributes, "NotBlank") is not None,
        bounded=size is not None and size.get("max") is not None,
    )


def _time_direction(attributes: tuple[Attribute, ...]) -> Literal["any", "past", "future"]:
    if find_attribute(attributes, "Past") is not None:
        return "past"
    if find_attribute(attributes, "Future") is not None:
        return "future"
    return "any"


class ContainerStrategy:
    """Empty container shells that the VM fills with linked elements."""

    def select(self, node: UnlinkedNode) -> SelectionResult:
        hint = underlying(node.type_ref.source)
        origin = get_origin(hint) or hint
        generator: Any = None
        if isinstance(node, UnlinkedMapNode):
            generator = DictGenerator()
        elif isinstance(node, UnlinkedCollectionNode):
            if node.is_fixed_size:
                generator = FrozenSetGenerator() if origin is frozenset else TupleGenerator()
            elif origin is set or origin in _SET_ORIGINS:
                generator = SetGenerator()
            else:
                generator = ListGenerator()
        if generator is None:
            return PASS
        return Selected(generator=generator, source=DecisionSource.strategy(type(self).__name__))


class CompositeStrategy:
    """Assembles composites by calling their class with the field values.

    Fixed-length tuples are assembled positionally.
    """

    def select(self, node: UnlinkedNode) -> SelectionResult:
        if not isinstance(node, UnlinkedCompositeNode):
            return PASS
        cls = underlying(node.type_ref.source)
        source = DecisionSource.strategy(type(self).__name__)
        if get_origin(cls) is tuple:
            return Selected(generator=PositionalAssembler(), source=source)
        if not callable(cls):
            return PASS
        return Selected(generator=ObjectAssembler(cls), source=source)


class NullableFallbackStrategy:
    """Last resort: a nullable type with no generator becomes ``None``."""

    def select(self, node: UnlinkedNode) -> SelectionResult:
        _, nullable = strip_optional(node.type_ref.source)
        if nullable or node.type_ref.type_id.endswith("?"):
            return Selected(generator=NullGenerator(), source=DecisionSource.default())
        return PASS


class SubclassResolutionStrategy:
    """Resolves abstract types and protocols to a concrete subclass.

    Candidates are all non-abstract subclasses, found recursively and
    ordered by qualified name; the first one is chosen. Its values are
    produced by *produce*, a nested plan→link→execute run.
    """

    def __init__(self, produce: Callable[[TypeReference, GenerationContext], Any]) -> None:
        self.produce = produce

    def resolve(self, node: UnlinkedInterfaceNode) -> ResolutionResult:
        base = underlying(node.type_ref.source)
        if not isinstance(base, type):
            msg = f"{base!r} is not a class"
            raise ImplementationResolutionException(node.type_ref, msg)
        candidates = concrete_subclasses(base)
        if not candidates:
            raise SealedClassHasNoSubclassesException(node.type_ref)
        concrete = type_ref(candidates[0])
        return ResolutionResult(
            concrete_type=concrete,
            generator=DelegatingGenerator(concrete, self.produce),
            source=DecisionSource.strategy(f"{type(self).__name__}({concrete})"),
        )


def concrete_subclasses(base: type) -> list[type]:
    """All concrete subclasses of *base*, sorted by qualified name."""
    found: dict[str, type] = {}
    pending = list(base.__subclasses__())
    while pending:
        cls = pending.pop()
        pending.extend(cls.__subclasses__())
        if not is_interface(cls):
            found[f"{cls.__module__}.{cls.__qualname__}"] = cls
    return [found[name] for name in sorted(found)]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class GeneratorRegistry:
    """Chain-of-responsibility over selection strategies.

    Args:
        strategies: Consulted in order; the first ``Selected`` wins.
        fallback_strategy: Consulted when every strategy passes.
        interface_strategy: Resolves interface nodes.
    """

    def __init__(
        self,
        strategies: Sequence[GeneratorSelectionStrategy],
        fallback_strategy: GeneratorSelectionStrategy,
        interface_strategy: InterfaceResolutionStrategy,
    ) -> None:
        self._strategies = tuple(strategies)
        self._fallback = fallback_strategy
        self._interface_strategy = interface_strategy

    def select(self, node: UnlinkedNode) -> Selected:
        """Pick the generator for *node*.

        Raises:
            GeneratorNotFoundException: If no strategy and no fallback
                selected a generator.
        """
        for strategy in self._strategies:
            result = strategy.select(node)
            if isinstance(result, Selected):
                logger.debug("Selected %s for %s", result.source.description, node.type_ref)
                return result
        result = self._fallback.select(node)
        if isinstance(result, Selected):
            return result
        raise GeneratorNotFoundException(node.type_ref, node.attributes)

    def resolve_implementation(self, node: UnlinkedInterfaceNode) -> ResolutionResult:
        """Choose the concrete implementation of an interface node.

        Raises:
            ImplementationResolutionException: If no implementation can be
                chosen.
        """
        try:
            return self._interface_strategy.resolve(node)
        except ExecutionException:
            raise
        except Exception as exc:
            raise ImplementationResolutionException(node.type_ref, str(exc)) from exc


def build_default_registry(
    produce: Callable[[TypeReference, GenerationContext], Any],
) -> GeneratorRegistry:
    """Registry with the built-in strategies.

    Args:
        produce: Nested generation entry point used for interface
            implementations.
    """
    return GeneratorRegistry(
        strategies=[
            ReferenceCutStrategy(),
            AtomicValueStrategy(),
            ContainerStrategy(),
            CompositeStrategy(),
        ],
        fallback_strategy=NullableFallbackStrategy(),
        interface_strategy=SubclassResolutionStrategy(produce),
    )
