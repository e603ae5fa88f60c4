"""Exception taxonomy, invocation wrapping, and failure classification.

Generation-pipeline failures derive from ``ExecutionException``; user-facing
setup problems raise ``KontraktConfigurationException``. Code under test is
always invoked through ``invoke()`` so that its failures arrive wrapped in
``InvocationError`` and can be told apart from framework failures, then
peeled back to the root cause with ``unwrap()`` at the execution boundary.
"""

from __future__ import annotations

from pathlib import Path
import traceback
from typing import TYPE_CHECKING, Any

from kontrakt.models import Blame

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from kontrakt.models import Attribute, TypeReference


class KontraktError(Exception):
    """Base class of every error raised by the engine.

    Attributes:
        diagnostics: Structured context about the failure.
    """

    def __init__(self, message: str, *, diagnostics: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.diagnostics = diagnostics or {}


# ---------------------------------------------------------------------------
# Generation pipeline
# ---------------------------------------------------------------------------


class ExecutionException(KontraktError):
    """Base class of plan, link and execute failures.

    Instances pass through the planner and linker unwrapped; any other
    exception is wrapped into the phase-specific subclass.
    """


class MalformedTypeException(KontraktError):
    """A resolver could not describe a type."""

    def __init__(self, type_id: str, detail: str) -> None:
        super().__init__(
            f"Malformed type '{type_id}': {detail}",
            diagnostics={"type": type_id},
        )
        self.type_id = type_id


class StructuralPlanningException(ExecutionException):
    """The planner could not classify or traverse a type."""

    def __init__(self, type_ref: TypeReference, detail: str) -> None:
        super().__init__(
            f"Structural planning failed for '{type_ref}': {detail}",
            diagnostics={"type": str(type_ref)},
        )
        self.type_ref = type_ref


class GeneratorNotFoundException(ExecutionException):
    """No selection strategy produced a generator for a node."""

    def __init__(self, type_ref: TypeReference, attributes: Iterable[Attribute]) -> None:
        names = [attribute.name for attribute in attributes]
        super().__init__(
            f"No generator found for type '{type_ref}' with attributes {names}",
            diagnostics={"type": str(type_ref), "attributes": names},
        )
        self.type_ref = type_ref


class ImplementationResolutionException(ExecutionException):
    """No concrete implementation could be chosen for an interface node."""

    def __init__(self, type_ref: TypeReference, detail: str) -> None:
        super().__init__(
            f"Cannot resolve implementation of '{type_ref}': {detail}",
            diagnostics={"type": str(type_ref)},
        )
        self.type_ref = type_ref


class SealedClassHasNoSubclassesException(ImplementationResolutionException):
    """An abstract type or protocol has no concrete subclass to instantiate."""

    def __init__(self, type_ref: TypeReference) -> None:
        super().__init__(type_ref, "no concrete subclasses are defined")


class LinkageException(ExecutionException):
    """Linking failed at a specific path of the plan."""

    def __init__(self, path: str, detail: str) -> None:
        super().__init__(
            f"Linkage failed at '{path}': {detail}",
            diagnostics={"path": path},
        )
        self.path = path


class VMExecutionException(ExecutionException):
    """Assembling a value from an executable node failed."""

    def __init__(self, type_ref: TypeReference, detail: str) -> None:
        super().__init__(
            f"Execution failed for '{type_ref}': {detail}",
            diagnostics={"type": str(type_ref)},
        )
        self.type_ref = type_ref


# ---------------------------------------------------------------------------
# Setup, contracts and lifecycle
# ---------------------------------------------------------------------------


class KontraktConfigurationException(KontraktError):
    """User-facing setup error: cycles, unresolvable parameters, bad options."""

    def __init__(self, message: str, *, diagnostics: dict[str, Any] | None = None) -> None:
        super().__init__(f"[Configuration Error] {message}", diagnostics=diagnostics)


class ContractViolationException(KontraktError):
    """The code under test broke a declared contract rule.

    Attributes:
        rule: Name of the violated rule.
    """

    def __init__(self, rule: str, message: str) -> None:
        super().__init__(message, diagnostics={"rule": rule})
        self.rule = rule


class KontraktInternalException(KontraktError):
    """An engine invariant was broken; always a framework bug."""


class KontraktLifecycleException(KontraktError):
    """A closed or disposed engine resource was used."""


# ---------------------------------------------------------------------------
# Invocation of code under test
# ---------------------------------------------------------------------------


class InvocationError(KontraktError):
    """Wraps an exception raised by user code called through ``invoke()``.

    Attributes:
        target: Qualified name of the invoked callable.
    """

    def __init__(self, target: str, cause: BaseException) -> None:
        super().__init__(f"Invocation of {target} raised {type(cause).__name__}: {cause}")
        self.target = target


def invoke(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Call *func*, wrapping anything it raises in ``InvocationError``.

    Raises:
        InvocationError: Chained to the original exception.
    """
    try:
        return func(*args, **kwargs)
    except Exception as exc:
        name = getattr(func, "__qualname__", repr(func))
        raise InvocationError(name, exc) from exc


def unwrap(exc: BaseException) -> BaseException:
    """Peel ``InvocationError`` layers and return the root cause."""
    current = exc
    while isinstance(current, InvocationError) and current.__cause__ is not None:
        current = current.__cause__
    return current


def classify_blame(exc: BaseException) -> Blame:
    """Derive the ``Blame`` category of a failure from its unwrapped cause."""
    cause = unwrap(exc)
    if isinstance(cause, (AssertionError, ContractViolationException)):
        return Blame.TEST_FAILURE
    if isinstance(
        cause, (KontraktConfigurationException, ExecutionException, MalformedTypeException)
    ):
        return Blame.SETUP_FAILURE
    if isinstance(cause, (KontraktInternalException, KontraktLifecycleException)):
        return Blame.INTERNAL_ERROR
    return Blame.EXECUTION_FAILURE


_PACKAGE_DIR = str(Path(__file__).resolve().parent)


def filtered_stack(
    exc: BaseException, *, verbose: bool = False, limit: int = 15
) -> tuple[str, ...]:
    """Render the traceback of *exc* as ``"file:line in func"`` strings.

    Frames inside the ``kontrakt`` package are dropped unless *verbose*.
    At most *limit* frames are returned, innermost last.
    """
    frames = traceback.extract_tb(exc.__traceback__)
    rendered = [
        f"{frame.filename}:{frame.lineno} in {frame.name}"
        for frame in frames
        if verbose or not str(Path(frame.filename).resolve()).startswith(_PACKAGE_DIR)
    ]
    return tuple(rendered[-limit:])
