"""Tests for mocks, stateful fakes and scenario stubbing.

Validates the fake repository behaviour, stub precedence, generated
return values and call tracing of ``src/kontrakt/mocking.py``.
"""

from __future__ import annotations

import asyncio
import logging

from kontrakt.mocking import (
    FakeStore,
    MockingContext,
    ScenarioContext,
    StubRegistry,
    UnittestMockEngine,
    extract_id,
    fake_operation,
    public_methods,
)
from kontrakt.trace import ExecutionTrace
import pytest

from tests.sample_domain import Order, OrderArchive, OrderRepository, PriceQuoter, RateSource


def _calls(context: MockingContext) -> list[ExecutionTrace]:
    return [event for event in context.trace.decisions if isinstance(event, ExecutionTrace)]


# ===========================================================================
# FakeStore
# ===========================================================================


@pytest.mark.unit
class TestFakeStore:
    """In-memory repository keyed by entity id."""

    def test_save_and_find_by_id(self) -> None:
        """Entities are stored under their id."""
        store = FakeStore()
        order = Order(id="A1", amount=5)
        assert store.save(order) is order
        assert store.find("A1") is order
        assert store.count() == 1

    def test_auto_ids_never_reused(self) -> None:
        """Entities without an id get sequential generated keys."""
        store = FakeStore()
        store.save({"name": "first"})
        store.save({"name": "second"})
        store.delete("auto-id-1")
        store.save({"name": "third"})
        assert store.find("auto-id-1") is None
        assert store.find("auto-id-3") == {"name": "third"}
        assert store.count() == 2

    def test_delete_by_entity(self) -> None:
        """Deleting accepts an entity as well as a key."""
        store = FakeStore()
        order = store.save(Order(id="B2", amount=9))
        store.delete(order)
        assert store.all() == []

    def test_delete_unknown_is_noop(self) -> None:
        """Missing keys and id-less entities are ignored."""
        store = FakeStore()
        store.delete("missing")
        store.delete(object())
        assert store.count() == 0

    @pytest.mark.parametrize(
        ("entity", "expected"),
        [
            (Order(id="X", amount=1), "X"),
            ({"id": 7}, "7"),
            ({"name": "n"}, None),
            (None, None),
        ],
    )
    def test_extract_id(self, entity: object, expected: str | None) -> None:
        """Ids come from an ``id`` attribute or key."""
        assert extract_id(entity) == expected


@pytest.mark.unit
class TestFakeOperation:
    """Method names map to repository operations."""

    @pytest.mark.parametrize(
        ("name", "arity", "expected"),
        [
            ("find_by_id", 1, "find"),
            ("getById", 1, "find"),
            ("find_order_by_id", 1, "find"),
            ("get_details", 1, None),
            ("find_all", 0, "all"),
            ("find_all_active", 0, "all"),
            ("getAllUsers", 0, "all"),
            ("list_orders", 0, "all"),
            ("playlist_songs", 0, None),
            ("save", 1, "save"),
            ("save", 2, "save"),
            ("register_user", 1, "save"),
            ("createOrder", 1, "save"),
            ("save", 0, None),
            ("update_name", 1, None),
            ("put", 1, None),
            ("insert_row", 1, None),
            ("delete", 1, "delete"),
            ("remove_item", 1, "delete"),
            ("delete", 0, "delete"),
            ("count", 0, "count"),
            ("order_count", 0, "count"),
            ("get_active_count_by_status", 1, "count"),
            ("countActive", 0, "count"),
            ("compute", 1, None),
        ],
    )
    def test_classification(self, name: str, arity: int, expected: str | None) -> None:
        """Names and arities are classified."""
        assert fake_operation(name, arity) == expected

    def test_public_methods(self) -> None:
        """Private names are excluded."""
        assert sorted(public_methods(OrderRepository)) == [
            "count",
            "find_all",
            "find_by_id",
            "save",
        ]


# ===========================================================================
# Engine
# ===========================================================================


@pytest.mark.unit
class TestUnittestMockEngine:
    """Mocks answer from stubs, fakes or generated values."""

    def test_fake_keeps_state(
        self, mock_engine: UnittestMockEngine, mocking_context: MockingContext
    ) -> None:
        """A fake returns what was saved, by identity."""
        fake = mock_engine.create_fake(OrderRepository, mocking_context)
        order = Order(id="A1", amount=5)
        saved = fake.save(order)
        assert saved is order
        assert fake.find_by_id("A1") is order
        assert fake.find_all() == [order]
        assert fake.count() == 1

    def test_fake_name_matching(
        self, mock_engine: UnittestMockEngine, mocking_context: MockingContext
    ) -> None:
        """Updates are not saves; prefixed listings and embedded counts use the store."""
        archive = mock_engine.create_fake(OrderArchive, mocking_context)
        order = Order(id="A1", amount=5)
        archive.save(order)
        assert archive.update_note("bob") is None
        assert archive.find_all_archived() == [order]
        assert archive.get_archived_count_by_year(2024) == 1
        assert archive.delete_all() is None
        assert archive.get_archived_count_by_year(2024) == 1

    def test_mock_generates_return_values(
        self, mock_engine: UnittestMockEngine, mocking_context: MockingContext
    ) -> None:
        """Unstubbed calls return values of the annotated type."""
        mock = mock_engine.create_mock(OrderRepository, mocking_context)
        assert isinstance(mock.count(), int)
        quoter = mock_engine.create_mock(PriceQuoter, mocking_context)
        assert quoter.quote(3) > 0

    def test_mock_is_spec_bound(
        self, mock_engine: UnittestMockEngine, mocking_context: MockingContext
    ) -> None:
        """Only members of the mocked type exist."""
        mock = mock_engine.create_mock(OrderRepository, mocking_context)
        with pytest.raises(AttributeError):
            _ = mock.not_a_method

    def test_async_method(
        self, mock_engine: UnittestMockEngine, mocking_context: MockingContext
    ) -> None:
        """Coroutine methods are awaitable and honour return constraints."""
        rates = mock_engine.create_mock(RateSource, mocking_context)
        rate = asyncio.run(rates.fetch_rate("EUR"))
        assert 0.5 <= rate <= 2.0

    def test_stateless_mutation_warns(
        self,
        mock_engine: UnittestMockEngine,
        mocking_context: MockingContext,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Mutating calls on a stateless mock are flagged."""
        mock = mock_engine.create_mock(OrderRepository, mocking_context)
        with caplog.at_level(logging.WARNING, logger="kontrakt.mocking"):
            mock.save(Order(id="A1", amount=5))
        assert "OrderRepository.save called on a stateless mock" in caplog.text

    def test_calls_are_traced(
        self, mock_engine: UnittestMockEngine, mocking_context: MockingContext
    ) -> None:
        """Every call adds an ExecutionTrace with its arguments."""
        fake = mock_engine.create_fake(OrderRepository, mocking_context)
        fake.find_by_id("A1")
        [call] = _calls(mocking_context)
        assert call.method_signature == "OrderRepository.find_by_id"
        assert call.arguments == ("'A1'",)
        assert call.timestamp == 1_000


# ===========================================================================
# Stubbing
# ===========================================================================


@pytest.mark.unit
class TestStubbing:
    """Stubs override every other answer."""

    def test_returns(
        self, mock_engine: UnittestMockEngine, mocking_context: MockingContext
    ) -> None:
        """A matching call returns the stubbed value."""
        mock = mock_engine.create_mock(OrderRepository, mocking_context)
        order = Order(id="A1", amount=5)
        ScenarioContext(mocking_context.stubs).every(mock.find_by_id, "A1").returns(order)
        assert mock.find_by_id("A1") is order

    def test_throws(
        self, mock_engine: UnittestMockEngine, mocking_context: MockingContext
    ) -> None:
        """A throwing stub raises its error and still traces the call."""
        mock = mock_engine.create_mock(OrderRepository, mocking_context)
        ScenarioContext(mocking_context.stubs).every(mock.count).throws(TimeoutError("slow"))
        with pytest.raises(TimeoutError, match="slow"):
            mock.count()
        assert len(_calls(mocking_context)) == 1

    def test_stub_beats_fake(
        self, mock_engine: UnittestMockEngine, mocking_context: MockingContext
    ) -> None:
        """Stubs apply before the fake behaviour."""
        fake = mock_engine.create_fake(OrderRepository, mocking_context)
        ScenarioContext(mocking_context.stubs).every(fake.count).returns(99)
        assert fake.count() == 99

    def test_latest_stub_wins(self) -> None:
        """The most recently registered matching stub applies."""
        stubs = StubRegistry()
        method = object()
        stubs.register(method, (), {}, value=1)
        stubs.register(method, (), {}, value=2)
        stub = stubs.find(method, (), {})
        assert stub is not None
        assert stub.apply() == 2
        assert len(stubs) == 2

    def test_arguments_must_match(self) -> None:
        """Stubs only match identical arguments."""
        stubs = StubRegistry()
        method = object()
        stubs.register(method, ("a",), {}, value=1)
        assert stubs.find(method, ("b",), {}) is None

    def test_every_rejects_non_mock(self) -> None:
        """every() requires a mocked method."""
        with pytest.raises(TypeError, match="expects a method of a mock"):
            ScenarioContext(StubRegistry()).every(len, [])

    def test_engine_builds_scenario_context(self, mock_engine: UnittestMockEngine) -> None:
        """The scenario context is bound to the given registry."""
        stubs = StubRegistry()
        assert mock_engine.create_scenario_context(stubs).stubs is stubs
