"""Tests for dependency resolution and the per-test context.

Validates diamond sharing, cycle detection, dependency strategies, seed
precedence and constructor failures of ``TestInstanceFactory`` in
``src/kontrakt/instance_factory.py``, and the ``EphemeralTestContext``
lifecycle in ``src/kontrakt/context.py``.
"""

from __future__ import annotations

from unittest.mock import NonCallableMock

from kontrakt.context import EphemeralTestContext, epoch_millis
from kontrakt.errors import KontraktConfigurationException, KontraktInternalException
from kontrakt.instance_factory import is_basic_value_type
from kontrakt.mocking import UnittestMockEngine
from kontrakt.models import DependencyMetadata, MockingStrategy
from pydantic import BaseModel
import pytest

from tests.conftest import FIXED_CLOCK, fake_of, make_context, make_factory, make_spec, mock_of
from tests.sample_domain import (
    AuditLog,
    Basket,
    Calculator,
    Color,
    CycleA,
    InMemoryOrderRepository,
    NeedsExploding,
    Node,
    OrderRepository,
    OrderService,
    Person,
    PricingService,
    Profile,
    Ticket,
    Untyped,
)


class MutableModel(BaseModel):
    name: str


# ===========================================================================
# Object graph
# ===========================================================================


@pytest.mark.unit
class TestObjectGraph:
    """Targets are built with their whole constructor graph."""

    def test_diamond_shares_instance(self) -> None:
        """Both consumers of AuditLog receive the same instance."""
        context = make_context(OrderService, required_dependencies=(fake_of(OrderRepository),))
        service = context.target
        assert isinstance(service.pricing, PricingService)
        assert service.pricing.audit is service.audit
        assert context.get_dependency(AuditLog) is service.audit

    def test_declared_fake(self) -> None:
        """A stateful fake keeps what the target saves."""
        context = make_context(OrderService, required_dependencies=(fake_of(OrderRepository),))
        repository = context.get_dependency(OrderRepository)
        assert context.target.repository is repository
        assert repository.count() == 0

    def test_undeclared_interface_is_mocked(self) -> None:
        """Protocol parameters without a declaration get a mock."""
        service = make_context(OrderService).target
        assert isinstance(service.repository, NonCallableMock)

    def test_real_strategy(self) -> None:
        """REAL dependencies are constructed from their implementation."""
        dependency = DependencyMetadata(
            name="repository",
            dependency_type=OrderRepository,
            strategy=MockingStrategy.real(InMemoryOrderRepository),
        )
        service = make_context(OrderService, required_dependencies=(dependency,)).target
        assert isinstance(service.repository, InMemoryOrderRepository)

    def test_value_parameters_generated(self) -> None:
        """Scalar constructor parameters are generated fixtures."""
        ticket = make_context(Ticket).target
        assert isinstance(ticket.code, str)
        assert isinstance(ticket.priority, int)

    def test_cycle_reported_with_path(self) -> None:
        """Constructor cycles name the full path."""
        with pytest.raises(KontraktConfigurationException) as excinfo:
            make_context(CycleA)
        assert str(excinfo.value) == (
            "[Configuration Error] Circular dependency detected: CycleA -> CycleB -> CycleA"
        )
        assert excinfo.value.diagnostics == {"cycle": "CycleA -> CycleB -> CycleA"}

    def test_constructor_failure(self) -> None:
        """A raising constructor is reported with its class and cause."""
        with pytest.raises(KontraktConfigurationException) as excinfo:
            make_context(NeedsExploding)
        assert str(excinfo.value) == (
            "[Configuration Error] Failed to instantiate class [Exploding]: boom"
        )
        assert isinstance(excinfo.value.__cause__, RuntimeError)

    def test_unannotated_parameter(self) -> None:
        """Parameters without annotation or default cannot be resolved."""
        with pytest.raises(KontraktConfigurationException, match="has no annotation"):
            make_context(Untyped)

    def test_mock_recorded_calls_reach_trace(self) -> None:
        """Mocks created for the target write to the test's trace."""
        context = make_context(OrderService, required_dependencies=(mock_of(OrderRepository),))
        context.target.repository.count()
        signatures = [
            getattr(event, "method_signature", None) for event in context.trace.decisions
        ]
        assert "OrderRepository.count" in signatures


# ===========================================================================
# Seeds and context
# ===========================================================================


@pytest.mark.unit
class TestSeedAndContext:
    """Seed precedence and the context lifecycle."""

    def test_specification_seed_wins(self) -> None:
        """The specification seed overrides the configured one."""
        assert make_factory(seed=42).create(make_spec(Calculator, seed=7)).seed == 7

    def test_config_seed(self) -> None:
        """Without a specification seed, the configured seed applies."""
        assert make_factory(seed=42).create(make_spec(Calculator, seed=None)).seed == 42

    def test_clock_seed(self) -> None:
        """Without any seed, the clock supplies one."""
        context = make_factory(seed=None).create(make_spec(Calculator, seed=None))
        assert context.seed == epoch_millis(FIXED_CLOCK)

    def test_same_seed_same_graph(self) -> None:
        """Generated parameters are reproducible for one seed."""
        first = make_context(Ticket).target
        second = make_context(Ticket).target
        assert (first.code, first.priority) == (second.code, second.priority)

    def test_target_before_initialization(self) -> None:
        """Reading the target before it is set is an internal error."""
        engine = UnittestMockEngine()
        context = EphemeralTestContext(make_spec(Calculator), engine, engine, seed=1)
        with pytest.raises(KontraktInternalException, match="before initialization"):
            _ = context.target

    def test_scenario_bound_to_stubs(self) -> None:
        """scenario() stubs into the test's registry."""
        context = make_context(Calculator)
        assert context.scenario().stubs is context.stubs
        assert context.mocking_context.stubs is context.stubs


@pytest.mark.unit
class TestBasicValueType:
    """Which types are generated rather than constructed."""

    @pytest.mark.parametrize(
        ("cls", "expected"),
        [
            (int, True),
            (str, True),
            (list, True),
            (Color, True),
            (Person, True),
            (Profile, True),
            (Node, False),
            (Basket, False),
            (MutableModel, False),
            (OrderService, False),
        ],
    )
    def test_classification(self, cls: type, expected: bool) -> None:
        """Scalars, containers, enums and frozen data classes are values."""
        assert is_basic_value_type(cls) is expected
