"""Tests for the exception taxonomy and failure classification.

Covers message formats, ``invoke``/``unwrap`` wrapping of code under test,
``classify_blame`` and ``filtered_stack`` in ``src/kontrakt/errors.py``.
"""

from __future__ import annotations

from kontrakt.errors import (
    ContractViolationException,
    GeneratorNotFoundException,
    InvocationError,
    KontraktConfigurationException,
    KontraktError,
    KontraktInternalException,
    KontraktLifecycleException,
    LinkageException,
    MalformedTypeException,
    SealedClassHasNoSubclassesException,
    StructuralPlanningException,
    VMExecutionException,
    classify_blame,
    filtered_stack,
    invoke,
    unwrap,
)
from kontrakt.models import Attribute, Blame, TypeReference
import pytest


def _ref(type_id: str = "shop.Order") -> TypeReference:
    return TypeReference(type_id=type_id)


def _raise(exc: BaseException) -> None:
    raise exc


# ===========================================================================
# Messages
# ===========================================================================


@pytest.mark.unit
class TestMessages:
    """Each exception renders a stable, descriptive message."""

    def test_malformed_type(self) -> None:
        """Names the type and the detail."""
        exc = MalformedTypeException("shop.Order", "bad annotation")
        assert str(exc) == "Malformed type 'shop.Order': bad annotation"
        assert exc.diagnostics == {"type": "shop.Order"}

    def test_structural_planning(self) -> None:
        """Names the type being planned."""
        exc = StructuralPlanningException(_ref(), "boom")
        assert str(exc) == "Structural planning failed for 'shop.Order': boom"

    def test_generator_not_found_lists_attributes(self) -> None:
        """Attribute names appear in the message."""
        exc = GeneratorNotFoundException(_ref("tuple[int, str]"), [Attribute.of("Size")])
        assert "tuple[int, str]" in str(exc)
        assert "['Size']" in str(exc)

    def test_sealed_class(self) -> None:
        """Sealed classes report missing subclasses."""
        exc = SealedClassHasNoSubclassesException(_ref("shop.Shape"))
        assert str(exc) == (
            "Cannot resolve implementation of 'shop.Shape': no concrete subclasses are defined"
        )

    def test_linkage_carries_path(self) -> None:
        """The failing path is exposed."""
        exc = LinkageException("$.items[0]", "no generator")
        assert exc.path == "$.items[0]"
        assert "$.items[0]" in str(exc)

    def test_vm_execution(self) -> None:
        """Names the failing node type."""
        assert str(VMExecutionException(_ref(), "Runtime execution failed")) == (
            "Execution failed for 'shop.Order': Runtime execution failed"
        )

    def test_configuration_prefix(self) -> None:
        """Configuration errors are marked as such."""
        exc = KontraktConfigurationException("Circular dependency detected: A -> B -> A")
        assert str(exc) == "[Configuration Error] Circular dependency detected: A -> B -> A"

    def test_contract_violation_rule(self) -> None:
        """The violated rule is kept."""
        exc = ContractViolationException("Range", "out of range")
        assert exc.rule == "Range"
        assert exc.diagnostics == {"rule": "Range"}

    def test_default_diagnostics_empty(self) -> None:
        """Diagnostics default to an empty dict."""
        assert KontraktError("x").diagnostics == {}


# ===========================================================================
# invoke / unwrap
# ===========================================================================


@pytest.mark.unit
class TestInvoke:
    """Wrapping of exceptions raised by code under test."""

    def test_returns_result(self) -> None:
        """Successful calls pass through."""
        assert invoke(lambda a, b: a + b, 1, b=2) == 3

    def test_wraps_exception(self) -> None:
        """Failures arrive as InvocationError chained to the cause."""
        cause = ValueError("nope")
        with pytest.raises(InvocationError) as excinfo:
            invoke(_raise, cause)
        assert excinfo.value.__cause__ is cause
        assert "_raise raised ValueError: nope" in str(excinfo.value)

    def test_unwrap_peels_nested_layers(self) -> None:
        """Nested wrappers unwrap to the root cause."""
        cause = KeyError("k")
        with pytest.raises(InvocationError) as excinfo:
            invoke(invoke, _raise, cause)
        assert unwrap(excinfo.value) is cause

    def test_unwrap_leaves_other_exceptions(self) -> None:
        """Non-wrapper exceptions are returned as is."""
        exc = RuntimeError("x")
        assert unwrap(exc) is exc


# ===========================================================================
# classify_blame
# ===========================================================================


@pytest.mark.unit
class TestClassifyBlame:
    """Blame categories follow the unwrapped cause."""

    @pytest.mark.parametrize(
        ("exc", "blame"),
        [
            (AssertionError("x"), Blame.TEST_FAILURE),
            (ContractViolationException("Range", "x"), Blame.TEST_FAILURE),
            (KontraktConfigurationException("x"), Blame.SETUP_FAILURE),
            (LinkageException("$", "x"), Blame.SETUP_FAILURE),
            (MalformedTypeException("T", "x"), Blame.SETUP_FAILURE),
            (KontraktInternalException("x"), Blame.INTERNAL_ERROR),
            (KontraktLifecycleException("x"), Blame.INTERNAL_ERROR),
            (ZeroDivisionError("x"), Blame.EXECUTION_FAILURE),
        ],
    )
    def test_mapping(self, exc: BaseException, blame: Blame) -> None:
        """Each exception family maps to its blame."""
        assert classify_blame(exc) == blame

    def test_wrapped_assertion_blames_test(self) -> None:
        """Wrapping does not hide an assertion failure."""
        with pytest.raises(InvocationError) as excinfo:
            invoke(_raise, AssertionError("bad"))
        assert classify_blame(excinfo.value) == Blame.TEST_FAILURE


# ===========================================================================
# filtered_stack
# ===========================================================================


@pytest.mark.unit
class TestFilteredStack:
    """Framework frames are hidden unless verbose."""

    def _wrapped(self) -> InvocationError:
        try:
            invoke(_raise, RuntimeError("deep"))
        except InvocationError as exc:
            return exc
        msg = "invoke did not raise"
        raise AssertionError(msg)

    def test_user_frames_kept(self) -> None:
        """Frames from this module survive filtering."""
        frames = filtered_stack(unwrap(self._wrapped()))
        assert any("_raise" in frame for frame in frames)
        assert all("kontrakt/errors.py" not in frame for frame in frames)

    def test_verbose_keeps_framework_frames(self) -> None:
        """Verbose mode keeps the invoke frame."""
        frames = filtered_stack(unwrap(self._wrapped()), verbose=True)
        assert any("in invoke" in frame for frame in frames)

    def test_limit(self) -> None:
        """At most *limit* frames, innermost last."""
        frames = filtered_stack(unwrap(self._wrapped()), verbose=True, limit=1)
        assert len(frames) == 1
        assert frames[0].endswith("in _raise")

    def test_exception_without_traceback(self) -> None:
        """An exception never raised has no frames."""
        assert filtered_stack(RuntimeError("x")) == ()
