"""Mocks, stateful fakes and scenario stubbing over ``unittest.mock``.

``UnittestMockEngine`` implements both consumed ports, ``MockingEngine``
and ``ScenarioControl``. Every public method of a mocked class is replaced
by a ``MagicMock`` (``AsyncMock`` for coroutines) whose answer, in order:

1. applies a stub registered through ``ScenarioContext.every()``,
2. for a fake, applies the in-memory repository behaviour,
3. otherwise generates a value from the method's return annotation.

Each call is recorded as an ``ExecutionTrace``. Stubs live in the
``StubRegistry`` owned by one ``EphemeralTestContext`` and are handed over
explicitly, never through thread-local state.
"""

from __future__ import annotations

import inspect
import itertools
import logging
import re
import threading
import time
import typing
from typing import TYPE_CHECKING, Any, Protocol
from unittest.mock import AsyncMock, MagicMock, NonCallableMock

from pydantic import BaseModel, ConfigDict

from kontrakt.resolver import is_interface, underlying
from kontrakt.trace import ExecutionTrace

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

_MUTATING_PREFIXES = ("save", "insert", "update", "delete", "remove", "store")
_SAVE_PREFIXES = ("save", "create", "register")
_FIND_BY_ID = re.compile(r"^(find|get)\w*by_?id$")
_FIND_ALL_PREFIXES = ("find_all", "findall", "get_all", "getall", "list")
_DELETE_PREFIXES = ("delete", "remove")


class MockingContext(BaseModel):
    """Collaborators a mock needs to answer calls.

    Attributes:
        generator: ``FixtureGenerator`` used for return values.
        trace: Scenario trace receiving one ``ExecutionTrace`` per call.
        stubs: Stubs of the current test.
        clock_millis: Timestamp source for trace events.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    generator: Any
    trace: Any
    stubs: Any
    clock_millis: Any = None

    def now_millis(self) -> int:
        if self.clock_millis is not None:
            return self.clock_millis()
        return int(time.time() * 1000)


class MockingEngine(Protocol):
    def create_mock(self, cls: type, context: MockingContext) -> Any: ...

    def create_fake(self, cls: type, context: MockingContext) -> Any: ...


class ScenarioControl(Protocol):
    def create_scenario_context(self, stubs: StubRegistry) -> ScenarioContext: ...


# ---------------------------------------------------------------------------
# Stubbing
# ---------------------------------------------------------------------------


class _Stub:
    def __init__(
        self,
        method: Any,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
        value: Any,
        error: BaseException | None,
    ) -> None:
        self.method = method
        self.args = args
        self.kwargs = kwargs
        self.value = value
        self.error = error

    def matches(self, method: Any, args: tuple[Any, ...], kwargs: dict[str, Any]) -> bool:
        return self.method is method and self.args == args and self.kwargs == kwargs

    def apply(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value


class StubRegistry:
    """Stubs registered during one test; the latest matching stub wins."""

    def __init__(self) -> None:
        self._stubs: list[_Stub] = []
        self._lock = threading.Lock()

    def register(
        self,
        method: Any,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
        *,
        value: Any = None,
        error: BaseException | None = None,
    ) -> None:
        with self._lock:
            self._stubs.append(_Stub(method, args, kwargs, value, error))

    def find(self, method: Any, args: tuple[Any, ...], kwargs: dict[str, Any]) -> _Stub | None:
        with self._lock:
            for stub in reversed(self._stubs):
                if stub.matches(method, args, kwargs):
                    return stub
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._stubs)


class StubbingBuilder:
    """Completes an ``every()`` call with ``returns()`` or ``throws()``."""

    def __init__(
        self,
        stubs: StubRegistry,
        method: Any,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> None:
        self._stubs = stubs
        self._method = method
        self._args = args
        self._kwargs = kwargs

    def returns(self, value: Any) -> None:
        self._stubs.register(self._method, self._args, self._kwargs, value=value)

    def throws(self, error: BaseException) -> None:
        self._stubs.register(self._method, self._args, self._kwargs, error=error)


class ScenarioContext:
    """Stubbing surface handed to user scenarios.

    Example::

        scenario.every(repository.find_by_id, "42").returns(order)
        scenario.every(gateway.charge, ANY).throws(TimeoutError())
    """

    def __init__(self, stubs: StubRegistry) -> None:
        self.stubs = stubs

    def every(self, method: Any, *args: Any, **kwargs: Any) -> StubbingBuilder:
        if not isinstance(method, NonCallableMock):
            msg = f"every() expects a method of a mock, got {method!r}"
            raise TypeError(msg)
        return StubbingBuilder(self.stubs, method, args, kwargs)


# ---------------------------------------------------------------------------
# Stateful fake store
# ---------------------------------------------------------------------------


def extract_id(entity: Any) -> str | None:
    """Return ``str(entity.id)`` (or ``entity["id"]``), or ``None``."""
    if entity is None:
        return None
    value = entity.get("id") if isinstance(entity, dict) else getattr(entity, "id", None)
    return None if value is None else str(value)


class FakeStore:
    """Thread-safe in-memory repository behind one fake instance.

    Identifiers generated for entities without an ``id`` are
    ``"auto-id-1"``, ``"auto-id-2"`` and so on, never reused.
    """

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def save(self, entity: Any) -> Any:
        with self._lock:
            key = extract_id(entity) or f"auto-id-{next(self._ids)}"
            self._data[key] = entity
        return entity

    def find(self, key: Any) -> Any:
        with self._lock:
            return self._data.get(str(key))

    def all(self) -> list[Any]:
        with self._lock:
            return list(self._data.values())

    def delete(self, key_or_entity: Any) -> None:
        if isinstance(key_or_entity, (str, int)):
            key: str | None = str(key_or_entity)
        else:
            key = extract_id(key_or_entity)
        if key is None:
            return
        with self._lock:
            self._data.pop(key, None)

    def count(self) -> int:
        with self._lock:
            return len(self._data)


def fake_operation(name: str, arity: int) -> str | None:
    """Classify a method name as a repository operation, or ``None``.

    Checked in order: ``save*``/``create*``/``register*`` with an entity,
    ``find*by_id``/``get*by_id`` with one argument, ``find_all*``/
    ``get_all*``/``list*``, ``delete*``/``remove*``, then any name
    containing ``count``. camelCase spellings match as well.
    """
    lowered = name.lower()
    if arity >= 1 and lowered.startswith(_SAVE_PREFIXES):
        return "save"
    if arity == 1 and _FIND_BY_ID.match(lowered):
        return "find"
    if lowered.startswith(_FIND_ALL_PREFIXES):
        return "all"
    if lowered.startswith(_DELETE_PREFIXES):
        return "delete"
    if "count" in lowered:
        return "count"
    return None


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def public_methods(cls: type) -> dict[str, Callable[..., Any]]:
    """Public callables defined on *cls* or its bases, by name."""
    return {
        name: member
        for name, member in inspect.getmembers(cls, callable)
        if not name.startswith("_") and not inspect.isclass(member)
    }


class UnittestMockEngine:
    """``MockingEngine`` and ``ScenarioControl`` backed by ``unittest.mock``."""

    def create_mock(self, cls: type, context: MockingContext) -> Any:
        return self._build(cls, context, store=None)

    def create_fake(self, cls: type, context: MockingContext) -> Any:
        return self._build(cls, context, store=FakeStore())

    def create_scenario_context(self, stubs: StubRegistry) -> ScenarioContext:
        return ScenarioContext(stubs)

    def _build(self, cls: type, context: MockingContext, store: FakeStore | None) -> Any:
        mock = MagicMock(spec=cls, name=cls.__name__)
        for name, func in public_methods(cls).items():
            method_cls = AsyncMock if inspect.iscoroutinefunction(func) else MagicMock
            method = method_cls(name=f"{cls.__name__}.{name}")
            method.side_effect = self._answer(cls, name, func, method, context, store)
            setattr(mock, name, method)
        return mock

    def _answer(
        self,
        cls: type,
        name: str,
        func: Callable[..., Any],
        method: MagicMock,
        context: MockingContext,
        store: FakeStore | None,
    ) -> Callable[..., Any]:
        signature = f"{cls.__name__}.{name}"

        def answer(*args: Any, **kwargs: Any) -> Any:
            started = time.perf_counter()
            try:
                stub = context.stubs.find(method, args, kwargs)
                if stub is not None:
                    return stub.apply()
                if store is not None:
                    operation = fake_operation(name, len(args) + len(kwargs))
                    if operation is not None:
                        return _apply_fake(store, operation, args, kwargs)
                elif name.lower().startswith(_MUTATING_PREFIXES):
                    logger.warning(
                        "%s called on a stateless mock; the change is not persisted. "
                        "Declare the dependency as a stateful fake to keep state.",
                        signature,
                    )
                return self._generate_return(cls, name, func, context)
            finally:
                elapsed = int((time.perf_counter() - started) * 1000)
                context.trace.add(
                    ExecutionTrace(
                        timestamp=context.now_millis(),
                        method_signature=signature,
                        arguments=tuple(repr(a) for a in (*args, *kwargs.values())),
                        duration_ms=elapsed,
                    )
                )

        return answer

    def _generate_return(
        self, cls: type, name: str, func: Callable[..., Any], context: MockingContext
    ) -> Any:
        hints = typing.get_type_hints(func, include_extras=True)
        hint = hints.get("return")
        if hint is None or hint is type(None):
            return None
        base = underlying(hint)
        if isinstance(base, type) and is_interface(base):
            return self.create_mock(base, context)
        return context.generator.generate(hint, name=f"{cls.__name__}.{name}:return")


def _apply_fake(
    store: FakeStore, operation: str, args: tuple[Any, ...], kwargs: dict[str, Any]
) -> Any:
    arguments = (*args, *kwargs.values())
    if operation == "save":
        return store.save(arguments[0])
    if operation == "find":
        return store.find(arguments[0])
    if operation == "all":
        return store.all()
    if operation == "delete":
        if arguments:
            store.delete(arguments[0])
        return None
    return store.count()
