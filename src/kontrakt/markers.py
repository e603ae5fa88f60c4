"""Constraint markers and the ``@scenario`` decorator.

Markers are placed in ``typing.Annotated`` metadata on fields, parameters
and return annotations::

    @dataclass(frozen=True)
    class Account:
        owner: Annotated[str, NotBlank(), Size(max=12)]
        balance: Annotated[int, Range(min=0, max=1_000)]

The resolver turns each marker into an ``Attribute`` of the annotated
node; generators read those attributes to narrow what they produce and
``ContractValidator`` reads them to check return values.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel, ConfigDict, model_validator

from kontrakt.models import Attribute

if TYPE_CHECKING:
    from collections.abc import Callable

_F = TypeVar("_F", bound="Callable[..., Any]")

SCENARIO_FLAG = "__kontrakt_scenario__"


class Marker(BaseModel):
    """Base class of constraint markers."""

    model_config = ConfigDict(frozen=True)

    def to_attribute(self) -> Attribute:
        """Convert the marker into a node attribute named after its class."""
        return Attribute.of(type(self).__name__, **self.model_dump())


class Range(Marker):
    """Inclusive numeric bounds."""

    min: float | None = None
    max: float | None = None

    @model_validator(mode="after")
    def _ordered(self) -> Range:
        if self.min is not None and self.max is not None and self.min > self.max:
            msg = f"Range min ({self.min}) must be <= max ({self.max})"
            raise ValueError(msg)
        return self


class Size(Marker):
    """Inclusive length bounds for strings and containers."""

    min: int = 0
    max: int | None = None

    @model_validator(mode="after")
    def _ordered(self) -> Size:
        if self.min < 0:
            msg = "Size min must be >= 0"
            raise ValueError(msg)
        if self.max is not None and self.max < self.min:
            msg = f"Size max ({self.max}) must be >= min ({self.min})"
            raise ValueError(msg)
        return self


class NotBlank(Marker):
    """String must contain at least one non-whitespace character."""


class NotEmpty(Marker):
    """String or container must have at least one element."""


class Positive(Marker):
    """Number must be strictly greater than zero."""


class PositiveOrZero(Marker):
    """Number must be zero or greater."""


class Negative(Marker):
    """Number must be strictly less than zero."""


class NegativeOrZero(Marker):
    """Number must be zero or less."""


class Digits(Marker):
    """At most ``integer`` integral and ``fraction`` fractional digits."""

    integer: int
    fraction: int = 0

    @model_validator(mode="after")
    def _non_negative(self) -> Digits:
        if self.integer < 1 or self.fraction < 0:
            msg = f"Digits({self.integer}, {self.fraction}) needs integer >= 1 and fraction >= 0"
            raise ValueError(msg)
        return self


class Pattern(Marker):
    """String must fully match ``regex``."""

    regex: str


class Email(Marker):
    """String must be an e-mail address."""


class Url(Marker):
    """String must be an http(s) URL with a host."""


class Uuid(Marker):
    """String must be a canonical UUID."""


class Past(Marker):
    """Date or datetime must lie before now."""


class Future(Marker):
    """Date or datetime must lie after now."""


def scenario(func: _F) -> _F:
    """Mark a method of the target class as a user scenario."""
    setattr(func, SCENARIO_FLAG, True)
    return func


def is_scenario(func: Any) -> bool:
    return bool(getattr(func, SCENARIO_FLAG, False))
