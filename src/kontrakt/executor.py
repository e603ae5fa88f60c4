"""Leaf scenario executor for the three test modes.

* USER_SCENARIO runs every ``@scenario`` method of the target.
* CONTRACT_AUTO calls every public method of an interface on the target
  with generated arguments and validates each return value.
* DATA_COMPLIANCE builds a value type from valid arguments, feeds its
  constructor each invalid value the field constraints imply, and checks
  the equality and hashing contract on instances generated from the same
  seed.

Scenario arguments are generated from their annotations, except that a
parameter annotated with ``ScenarioContext`` receives the test's stubbing
context and a parameter whose type is an already resolved dependency
receives that instance.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import typing
from typing import TYPE_CHECKING, Annotated, Any, Protocol

from kontrakt.context import EphemeralTestContext
from kontrakt.errors import (
    KontraktConfigurationException,
    KontraktError,
    MalformedTypeException,
    invoke,
)
from kontrakt.markers import is_scenario
from kontrakt.mocking import ScenarioContext, public_methods
from kontrakt.models import (
    AssertionRecord,
    AssertionStatus,
    TestModeKind,
    TypeKind,
)
from kontrakt.resolver import type_ref, underlying
from kontrakt.validation import ContractValidator

if TYPE_CHECKING:
    from collections.abc import Callable

    from kontrakt.fixtures import FixtureGenerator
    from kontrakt.models import FieldDescriptor

logger = logging.getLogger(__name__)


class TestScenarioExecutor(Protocol):
    """Leaf of the interceptor chain: runs the scenarios of a test."""

    def execute_scenarios(self, context: EphemeralTestContext) -> list[AssertionRecord]: ...


def _passed(rule: str, message: str) -> AssertionRecord:
    return AssertionRecord(status=AssertionStatus.PASSED, rule=rule, message=message)


def _check(
    rule: str, ok: bool, message: str, expected: str | None = None, actual: str | None = None
) -> AssertionRecord:
    return AssertionRecord(
        status=AssertionStatus.PASSED if ok else AssertionStatus.FAILED,
        rule=rule,
        message=message,
        expected=None if ok else expected,
        actual=None if ok else actual,
    )


def _failed(rule: str, message: str) -> AssertionRecord:
    return AssertionRecord(status=AssertionStatus.FAILED, rule=rule, message=message)


def _verify(
    rule: str,
    message: str,
    predicate: Callable[[], Any],
    describe: Callable[[], tuple[str, str]] | None = None,
) -> AssertionRecord:
    """Evaluate *predicate* into a record.

    User-defined ``__eq__`` and ``__hash__`` run inside the predicate, so an
    exception they raise fails this rule instead of aborting the mode.
    *describe* supplies ``(expected, actual)`` and is only called on failure.
    """
    try:
        ok = bool(predicate())
        expected, actual = describe() if describe is not None and not ok else (None, None)
    except Exception as exc:
        return AssertionRecord(
            status=AssertionStatus.FAILED,
            rule=rule,
            message=f"{message}: raised {type(exc).__name__}: {exc}",
            expected="No Exception",
            actual=type(exc).__name__,
        )
    return _check(rule, ok, message, expected, actual)


def _field_hint(field: FieldDescriptor) -> Any:
    if not field.attributes:
        return field.type_ref.source
    return Annotated[(field.type_ref.source, *field.attributes)]


def _await_if_needed(result: Any) -> Any:
    if inspect.iscoroutine(result):
        return invoke(asyncio.run, result)
    return result


class DefaultScenarioExecutor:
    """Runs every mode of a specification and collects assertion records.

    Args:
        validator: Checks return values in contract mode.
    """

    def __init__(self, validator: ContractValidator | None = None) -> None:
        self._validator = validator if validator is not None else ContractValidator()

    def execute_scenarios(self, context: EphemeralTestContext) -> list[AssertionRecord]:
        records: list[AssertionRecord] = []
        for mode in context.specification.modes:
            if mode.kind == TestModeKind.USER_SCENARIO:
                records.extend(self._run_user_scenarios(context))
            elif mode.kind == TestModeKind.CONTRACT_AUTO:
                records.extend(self._run_contract(context, mode.subject))
            else:
                records.extend(self._run_data_compliance(context, mode.subject))
        return records

    # -- user scenarios ----------------------------------------------------

    def _run_user_scenarios(self, context: EphemeralTestContext) -> list[AssertionRecord]:
        target = context.target
        scenarios = [
            (name, member)
            for name, member in inspect.getmembers(type(target), callable)
            if is_scenario(member)
        ]
        if not scenarios:
            msg = f"No @scenario methods found on {type(target).__qualname__}"
            raise KontraktConfigurationException(msg)

        records = []
        for name, func in scenarios:
            context.target_method = name
            arguments = self._arguments(func, context)
            context.trace.record_generated_arguments(arguments.values())
            _await_if_needed(invoke(getattr(target, name), **arguments))
            records.append(_passed(f"Scenario.{name}", f"Scenario '{name}' passed"))
        return records

    # -- contract ----------------------------------------------------------

    def _run_contract(
        self, context: EphemeralTestContext, interface: type | None
    ) -> list[AssertionRecord]:
        if interface is None:
            msg = "Contract mode requires an interface"
            raise KontraktConfigurationException(msg)
        target = context.target
        records = []
        for name, declared in public_methods(interface).items():
            implementation = getattr(target, name, None)
            if implementation is None or not callable(implementation):
                msg = (
                    f"{type(target).__qualname__} does not implement "
                    f"{interface.__qualname__}.{name}"
                )
                raise KontraktConfigurationException(msg)
            context.target_method = name
            arguments = self._arguments(declared, context)
            context.trace.record_generated_arguments(arguments.values())
            result = _await_if_needed(invoke(implementation, **arguments))
            hints = typing.get_type_hints(declared, include_extras=True)
            if "return" in hints:
                subject = f"{interface.__name__}.{name}() return value"
                self._validator.validate(result, hints["return"], subject=subject)
            records.append(
                _passed(f"Contract.{name}", f"{interface.__name__}.{name} honoured its contract")
            )
        return records

    # -- data compliance ---------------------------------------------------

    def _run_data_compliance(
        self, context: EphemeralTestContext, data_type: type | None
    ) -> list[AssertionRecord]:
        if data_type is None:
            msg = "Data compliance mode requires a data type"
            raise KontraktConfigurationException(msg)
        generator = _generator(context)
        name = data_type.__name__
        structure = f"DataContract.{name}.Structure"

        try:
            descriptor = generator.pipeline.resolver.resolve(type_ref(data_type))
        except MalformedTypeException as exc:
            return [_failed(structure, f"Cannot inspect constructor: {exc}")]
        if descriptor.kind != TypeKind.COMPOSITE:
            return [_failed(structure, f"{name} has no inspectable constructor")]

        records = self._check_constructor(generator, data_type, descriptor.fields)
        try:
            first = generator.reseeded().generate(data_type, name=f"{name}#1")
            twin = generator.reseeded().generate(data_type, name=f"{name}#2")
        except KontraktError as exc:
            records.append(_failed(structure, f"Cannot generate instances: {exc}"))
            return records

        records.extend(
            [
                _verify(f"DataContract.{name}.Reflexive", "x == x", lambda: first == first),
                _verify(
                    f"DataContract.{name}.EqualCopies",
                    "identically generated instances are equal",
                    lambda: first == twin,
                    lambda: (repr(first), repr(twin)),
                ),
                _verify(
                    f"DataContract.{name}.Symmetric",
                    "x == y iff y == x",
                    lambda: bool(twin == first) == bool(first == twin),
                ),
                _verify(
                    f"DataContract.{name}.Consistent",
                    "repeated comparisons agree",
                    lambda: len({bool(first == twin) for _ in range(3)}) == 1,
                ),
                _verify(
                    f"DataContract.{name}.NotEqualToNone",
                    "x != None",
                    lambda: first != None,  # noqa: E711
                ),
            ]
        )
        if type(first).__hash__ is None:
            records.append(
                _passed(f"DataContract.{name}.HashConsistent", "unhashable; not applicable")
            )
        else:
            records.append(
                _verify(
                    f"DataContract.{name}.HashConsistent",
                    "equal instances have equal hashes",
                    lambda: not bool(first == twin) or hash(first) == hash(twin),
                    lambda: (str(hash(first)), str(hash(twin))),
                )
            )
        return records

    @staticmethod
    def _check_constructor(
        generator: FixtureGenerator, data_type: type, fields: tuple[FieldDescriptor, ...]
    ) -> list[AssertionRecord]:
        """Build *data_type* from valid arguments, then from one invalid argument at a time.

        Each invalid value comes from the field's declared constraints; a
        constructor that accepts one fails its defensive check.
        """
        name = data_type.__name__
        source = generator.reseeded()
        hints = {field.name: _field_hint(field) for field in fields}
        sanity = f"DataContract.{name}.ConstructorSanity"
        try:
            valid = {
                field: source.generate(hint, name=f"{name}.{field}")
                for field, hint in hints.items()
            }
            data_type(**valid)
        except Exception as exc:
            return [
                AssertionRecord(
                    status=AssertionStatus.FAILED,
                    rule=sanity,
                    message=f"Constructor Sanity Check Failed: {exc}",
                    expected="Instance Created",
                    actual=type(exc).__name__,
                )
            ]
        records = [_passed(sanity, "Constructor Sanity Check: Instance created successfully.")]

        for field, hint in hints.items():
            rule = f"DataContract.{name}.DefensiveCheck.{field}"
            for bad in source.invalid_values(hint):
                try:
                    data_type(**{**valid, field: bad})
                except Exception:
                    records.append(
                        _passed(
                            rule,
                            f"Defensive Check Passed: Constructor rejected invalid "
                            f"'{field}' = {bad!r}",
                        )
                    )
                    continue
                logger.debug("%s accepted invalid %s=%r", name, field, bad)
                records.append(
                    AssertionRecord(
                        status=AssertionStatus.FAILED,
                        rule=rule,
                        message=(
                            f"Defensive Check Failed: Constructor accepted invalid "
                            f"'{field}' = {bad!r}"
                        ),
                        expected="Exception Thrown",
                        actual="Instance Created",
                    )
                )
        return records

    # -- arguments ---------------------------------------------------------

    @staticmethod
    def _arguments(func: Callable[..., Any], context: EphemeralTestContext) -> dict[str, Any]:
        hints = typing.get_type_hints(func, include_extras=True)
        arguments: dict[str, Any] = {}
        for index, (name, param) in enumerate(inspect.signature(func).parameters.items()):
            if index == 0 and name in ("self", "cls"):
                continue
            if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
                continue
            hint = hints.get(name)
            if hint is None:
                if param.default is not param.empty:
                    continue
                msg = f"Parameter '{name}' of {func.__qualname__} has no annotation"
                raise KontraktConfigurationException(msg)
            base = underlying(hint)
            if base is ScenarioContext:
                arguments[name] = context.scenario()
            elif base is EphemeralTestContext:
                arguments[name] = context
            elif isinstance(base, type) and context.has_dependency(base):
                arguments[name] = context.get_dependency(base)
            else:
                arguments[name] = _generator(context).generate(
                    hint, name=f"{func.__name__}.{name}"
                )
        return arguments


def _generator(context: EphemeralTestContext) -> FixtureGenerator:
    if context.fixture_generator is None:
        msg = "context has no fixture generator"
        raise KontraktConfigurationException(msg)
    return context.fixture_generator
