"""Return-value contract checks.

``ContractValidator`` verifies a value against a type hint: nullability,
the runtime type, and the constraint markers carried in ``Annotated``
metadata. Any breach raises ``ContractViolationException`` naming the
violated rule.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
import re
from typing import TYPE_CHECKING, Any, get_origin
from urllib.parse import urlsplit

from kontrakt.context import system_clock
from kontrakt.errors import ContractViolationException
from kontrakt.resolver import (
    canonical_type_id,
    is_interface,
    split_hint,
    strip_optional,
    underlying,
)

if TYPE_CHECKING:
    from kontrakt.context import Clock
    from kontrakt.models import Attribute

EMAIL_REGEX = re.compile(
    r"[A-Za-z0-9_+-]+(\.[A-Za-z0-9_+-]+)*@[A-Za-z0-9-]+(\.[A-Za-z0-9-]+)*\.[A-Za-z]{2,}"
)
UUID_REGEX = re.compile(r"[0-9a-fA-F]{8}(-[0-9a-fA-F]{4}){3}-[0-9a-fA-F]{12}")

_NUMBER = (int, float, Decimal)


def is_url(value: str) -> bool:
    """True for ``http``/``https`` URLs with a host and a valid port."""
    try:
        parts = urlsplit(value)
        _ = parts.port
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.hostname)


def digit_counts(value: int | float | Decimal) -> tuple[int, int]:
    """Return the integral and fractional digit counts of *value*."""
    try:
        number = Decimal(str(value)).normalize()
    except InvalidOperation:
        return 0, 0
    if not number.is_finite():
        return 0, 0
    _, digits, exponent = number.as_tuple()
    return max(len(digits) + exponent, 0), max(-exponent, 0)


class ContractValidator:
    """Checks values against annotated type hints.

    Args:
        clock: Reference time for ``Past`` and ``Future``.
    """

    def __init__(self, clock: Clock = system_clock) -> None:
        self._clock = clock

    def validate(self, value: Any, hint: Any, *, subject: str = "value") -> None:
        """Validate *value* against *hint*.

        Raises:
            ContractViolationException: If a rule is broken.
        """
        inner, attributes = split_hint(hint)
        _, nullable = strip_optional(inner)
        if value is None:
            if nullable or hint is None or hint is type(None) or hint is Any:
                return
            msg = f"NotNull violation: {subject} is None but {canonical_type_id(inner)} is required"
            raise ContractViolationException("NotNull", msg)

        self._check_type(value, underlying(hint), subject)
        for attribute in attributes:
            self._check_attribute(value, attribute, subject)

    @staticmethod
    def _check_type(value: Any, expected: Any, subject: str) -> None:
        if expected is Any:
            return
        runtime = get_origin(expected) or expected
        if not isinstance(runtime, type) or is_interface(runtime):
            return
        if not isinstance(value, runtime):
            msg = (
                f"Type violation: {subject} is {type(value).__name__}, "
                f"expected {canonical_type_id(expected)}"
            )
            raise ContractViolationException("TypeMismatch", msg)

    def _check_attribute(self, value: Any, attribute: Attribute, subject: str) -> None:
        name = attribute.name
        if isinstance(value, _NUMBER) and not isinstance(value, bool):
            problem = _number_problem(value, attribute)
        elif isinstance(value, str):
            problem = _string_problem(value, attribute)
        elif isinstance(value, date):
            problem = self._time_problem(value, attribute)
        else:
            problem = None
        if problem is None and name in ("Size", "NotEmpty") and hasattr(value, "__len__"):
            problem = _size_problem(len(value), attribute, subject)
        if problem is not None:
            msg = f"{name} violation: {subject}={value!r} {problem}"
            raise ContractViolationException(name, msg)

    def _time_problem(self, value: date, attribute: Attribute) -> str | None:
        if attribute.name not in ("Past", "Future"):
            return None
        now = self._clock()
        if isinstance(value, datetime):
            reference: date = now if value.tzinfo is not None else now.replace(tzinfo=None)
        else:
            reference = now.date()
        if attribute.name == "Past" and not value < reference:
            return f"must be before {reference}"
        if attribute.name == "Future" and not value > reference:
            return f"must be after {reference}"
        return None


def _number_problem(value: int | float | Decimal, attribute: Attribute) -> str | None:
    name = attribute.name
    if name == "Range":
        low, high = attribute.get("min"), attribute.get("max")
        if (low is not None and value < low) or (high is not None and value > high):
            return f"not in [{low}, {high}]"
    elif name == "Positive" and not value > 0:
        return "must be > 0"
    elif name == "PositiveOrZero" and not value >= 0:
        return "must be >= 0"
    elif name == "Negative" and not value < 0:
        return "must be < 0"
    elif name == "NegativeOrZero" and not value <= 0:
        return "must be <= 0"
    elif name == "Digits":
        integral, fraction = digit_counts(value)
        allowed = (attribute.get("integer"), attribute.get("fraction", 0))
        if integral > allowed[0] or fraction > allowed[1]:
            return f"has {integral}.{fraction} digits, allowed {allowed[0]}.{allowed[1]}"
    return None


def _string_problem(value: str, attribute: Attribute) -> str | None:
    name = attribute.name
    if name == "NotBlank" and not value.strip():
        return "is blank"
    if name == "Pattern":
        regex = attribute.get("regex")
        if regex is not None and re.fullmatch(regex, value) is None:
            return f"does not match {regex!r}"
    if name == "Email" and EMAIL_REGEX.fullmatch(value) is None:
        return "is not an e-mail address"
    if name == "Url" and not is_url(value):
        return "is not an http(s) URL"
    if name == "Uuid" and UUID_REGEX.fullmatch(value) is None:
        return "is not a UUID"
    return None


def _size_problem(size: int, attribute: Attribute, subject: str) -> str | None:
    if attribute.name == "NotEmpty":
        return "is empty" if size == 0 else None
    low, high = attribute.get("min", 0), attribute.get("max")
    if size < low or (high is not None and size > high):
        return f"has len({subject})={size} not in [{low}, {high}]"
    return None
