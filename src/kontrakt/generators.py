"""Generator protocols and the built-in generators.

A generator produces one value from a ``GenerationContext``. Composite
nodes additionally need ``CompositeGenerator.generate_with_fields`` and
fixed-size collections need ``ArrayProducer.generate_array``; the VM checks
for these capabilities before using them. Numeric and string generators
also expose ``edge_cases()`` and ``invalid()`` for boundary testing.

All randomness comes from ``context.seeded_random``; no generator keeps
random state of its own.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
import math
import re
from re import _constants as sre, _parser as sre_parse
import string
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable
import uuid

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from enum import Enum

    from kontrakt.context import GenerationContext
    from kontrakt.models import TypeReference

EDGE_CASE_PROBABILITY = 0.1
STRING_PHYSICAL_LIMIT = 10_000
CHARSET = string.ascii_letters + string.digits
INT_MIN = -(2**31)
INT_MAX = 2**31 - 1
FLOAT_MIN = -1e6
FLOAT_MAX = 1e6


@runtime_checkable
class Generator(Protocol):
    """Produces a value."""

    def generate(self, context: GenerationContext) -> Any: ...


@runtime_checkable
class CompositeGenerator(Protocol):
    """Assembles an object from already generated field values."""

    def generate_with_fields(
        self, context: GenerationContext, fields: dict[str, Any]
    ) -> Any: ...


@runtime_checkable
class ArrayProducer(Protocol):
    """Builds a fixed-size container from an ordered list of elements."""

    def generate_array(self, context: GenerationContext, elements: list[Any]) -> Any: ...


# ---------------------------------------------------------------------------
# Atomic generators
# ---------------------------------------------------------------------------


class IntGenerator:
    """Uniform integers in ``[min_value, max_value]`` with an edge-case bias.

    One draw in ten picks a boundary value instead of a uniform one.
    """

    def __init__(self, min_value: int = INT_MIN, max_value: int = INT_MAX) -> None:
        if min_value > max_value:
            msg = f"min_value ({min_value}) must be <= max_value ({max_value})"
            raise ValueError(msg)
        self.min_value = min_value
        self.max_value = max_value

    def generate(self, context: GenerationContext) -> int:
        rng = context.seeded_random
        if rng.random() < EDGE_CASE_PROBABILITY:
            return rng.choice(self.edge_cases(context))
        return rng.randint(self.min_value, self.max_value)

    def edge_cases(self, context: GenerationContext | None = None) -> list[int]:
        cases = [self.min_value, self.max_value]
        for candidate in (0, 1, -1):
            if self.min_value <= candidate <= self.max_value and candidate not in cases:
                cases.append(candidate)
        return cases

    def invalid(self, context: GenerationContext | None = None) -> list[int]:
        """Values just outside the bounds; the 32-bit defaults count as undeclared."""
        values = []
        if self.min_value > INT_MIN:
            values.append(self.min_value - 1)
        if self.max_value < INT_MAX:
            values.append(self.max_value + 1)
        return values


class FloatGenerator:
    """Uniform floats in ``[min_value, max_value]``.

    With ``decimals`` set, draws are rounded to that many fractional digits
    and clamped back into the range.
    """

    def __init__(
        self,
        min_value: float = FLOAT_MIN,
        max_value: float = FLOAT_MAX,
        *,
        decimals: int | None = None,
    ) -> None:
        if min_value > max_value:
            msg = f"min_value ({min_value}) must be <= max_value ({max_value})"
            raise ValueError(msg)
        self.min_value = min_value
        self.max_value = max_value
        self.decimals = decimals

    def generate(self, context: GenerationContext) -> float:
        rng = context.seeded_random
        if rng.random() < EDGE_CASE_PROBABILITY:
            return rng.choice(self.edge_cases(context))
        value = rng.uniform(self.min_value, self.max_value)
        if self.decimals is not None:
            value = min(max(round(value, self.decimals), self.min_value), self.max_value)
        return value

    def edge_cases(self, context: GenerationContext | None = None) -> list[float]:
        cases = [float(self.min_value), float(self.max_value)]
        if self.min_value <= 0.0 <= self.max_value and 0.0 not in cases:
            cases.append(0.0)
        return cases

    def invalid(self, context: GenerationContext | None = None) -> list[float]:
        values = []
        if self.min_value > FLOAT_MIN:
            values.append(self.min_value - 1.0)
        if self.max_value < FLOAT_MAX:
            values.append(self.max_value + 1.0)
        return [*values, math.nan]


class DecimalGenerator:
    """Decimals with ``places`` fractional digits in ``[min_value, max_value]``."""

    def __init__(
        self, min_value: float = FLOAT_MIN, max_value: float = FLOAT_MAX, places: int = 2
    ) -> None:
        scale = 10**places
        self.places = places
        self.min_units = math.ceil(min_value * scale)
        self.max_units = math.floor(max_value * scale)

    def generate(self, context: GenerationContext) -> Decimal:
        units = context.seeded_random.randint(self.min_units, self.max_units)
        return Decimal(units).scaleb(-self.places)


class StringGenerator:
    """Alphanumeric strings with a length in ``[min_length, max_length]``.

    ``max_length`` is clamped to ``STRING_PHYSICAL_LIMIT``. Without
    ``bounded`` the maximum is only a generation default and no over-long
    invalid value is offered.
    """

    def __init__(
        self,
        min_length: int = 0,
        max_length: int = 20,
        *,
        not_blank: bool = False,
        bounded: bool = True,
    ) -> None:
        if not_blank:
            min_length = max(min_length, 1)
        max_length = min(max_length, STRING_PHYSICAL_LIMIT)
        if min_length < 0 or min_length > max_length:
            msg = f"invalid length bounds [{min_length}, {max_length}]"
            raise ValueError(msg)
        self.min_length = min_length
        self.max_length = max_length
        self.not_blank = not_blank
        self.bounded = bounded

    def generate(self, context: GenerationContext) -> str:
        rng = context.seeded_random
        length = rng.randint(self.min_length, self.max_length)
        return "".join(rng.choice(CHARSET) for _ in range(length))

    def edge_cases(self, context: GenerationContext | None = None) -> list[str]:
        cases = [CHARSET[0] * self.min_length, CHARSET[0] * self.max_length]
        return list(dict.fromkeys(cases))

    def invalid(self, context: GenerationContext | None = None) -> list[str]:
        values = []
        if self.bounded and self.max_length < STRING_PHYSICAL_LIMIT:
            values.append(CHARSET[0] * (self.max_length + 1))
        if self.min_length > 0:
            values.append(CHARSET[0] * (self.min_length - 1))
        if self.not_blank:
            values.extend(["", " " * max(self.min_length, 1)])
        return list(dict.fromkeys(values))


class BoolGenerator:
    def generate(self, context: GenerationContext) -> bool:
        return context.seeded_random.random() < 0.5

    def edge_cases(self, context: GenerationContext | None = None) -> list[bool]:
        return [True, False]


class BytesGenerator:
    def __init__(self, min_length: int = 0, max_length: int = 16) -> None:
        self.min_length = min_length
        self.max_length = max_length

    def generate(self, context: GenerationContext) -> bytes:
        rng = context.seeded_random
        length = rng.randint(self.min_length, self.max_length)
        return bytes(rng.getrandbits(8) for _ in range(length))


class ChoiceGenerator:
    """Picks one of a fixed, non-empty sequence of values."""

    def __init__(self, values: Sequence[Any]) -> None:
        if not values:
            msg = "ChoiceGenerator needs at least one value"
            raise ValueError(msg)
        self.values = list(values)

    def generate(self, context: GenerationContext) -> Any:
        return context.seeded_random.choice(self.values)

    def edge_cases(self, context: GenerationContext | None = None) -> list[Any]:
        return list(self.values)


class EnumGenerator(ChoiceGenerator):
    def __init__(self, enum_cls: type[Enum]) -> None:
        super().__init__(list(enum_cls))


class DateTimeGenerator:
    """Datetimes (or dates) within ``span`` of the context clock.

    ``direction`` restricts draws to the past or the future of the clock;
    dates then differ from today by at least one day.
    """

    def __init__(
        self,
        span: timedelta = timedelta(days=365),
        *,
        as_date: bool = False,
        direction: Literal["any", "past", "future"] = "any",
    ) -> None:
        self.span = span
        self.as_date = as_date
        self.direction = direction

    def generate(self, context: GenerationContext) -> Any:
        unit = timedelta(days=1) if self.as_date else timedelta(seconds=1)
        steps = max(self.span // unit, 1)
        low = 1 if self.direction == "future" else -steps
        high = -1 if self.direction == "past" else steps
        value = context.now() + unit * context.seeded_random.randint(low, high)
        return value.date() if self.as_date else value

    def invalid(self, context: GenerationContext | None = None) -> list[date]:
        if self.direction == "any":
            return []
        now = context.now() if context is not None else datetime.now(UTC)
        unit = timedelta(days=1) if self.direction == "past" else timedelta(days=-1)
        values = [now, now + unit]
        return [value.date() for value in values] if self.as_date else values


class UUIDGenerator:
    """Version 4 UUIDs; ``as_string`` yields their canonical text form."""

    def __init__(self, *, as_string: bool = False) -> None:
        self.as_string = as_string

    def generate(self, context: GenerationContext) -> uuid.UUID | str:
        value = uuid.UUID(int=context.seeded_random.getrandbits(128), version=4)
        return str(value) if self.as_string else value

    def invalid(self, context: GenerationContext | None = None) -> list[str]:
        if not self.as_string:
            return []
        return [
            "",
            "not-a-uuid",
            "123e4567e89b12d3a456426614174000",
            "zzzzzzzz-zzzz-zzzz-zzzz-zzzzzzzzzzzz",
        ]


# ---------------------------------------------------------------------------
# Formatted strings
# ---------------------------------------------------------------------------

_TLDS = ("com", "org", "net", "io", "dev")


def _word(context: GenerationContext, alphabet: str, low: int, high: int) -> str:
    rng = context.seeded_random
    return "".join(rng.choice(alphabet) for _ in range(rng.randint(low, high)))


class EmailGenerator:
    """Addresses shaped ``local[.part]@domain.tld``."""

    def generate(self, context: GenerationContext) -> str:
        lower = string.ascii_lowercase + string.digits
        local = _word(context, lower, 1, 10)
        if context.seeded_random.random() < 0.3:
            local = f"{local}.{_word(context, lower, 1, 6)}"
        domain = _word(context, string.ascii_lowercase, 2, 10)
        return f"{local}@{domain}.{context.seeded_random.choice(_TLDS)}"

    def invalid(self, context: GenerationContext | None = None) -> list[str]:
        return [
            "plain-string",
            "user@",
            "@domain.com",
            "user name@domain.com",
            "user@domain..com",
            ".user@domain.com",
            "",
        ]


class UrlGenerator:
    """``http``/``https`` URLs with an optional port and path."""

    def generate(self, context: GenerationContext) -> str:
        rng = context.seeded_random
        host = f"{_word(context, string.ascii_lowercase, 2, 10)}.{rng.choice(_TLDS)}"
        port = f":{rng.randint(1, 65535)}" if rng.random() < 0.2 else ""
        segments = [
            _word(context, string.ascii_lowercase + string.digits, 1, 8)
            for _ in range(rng.randint(0, 3))
        ]
        path = "".join(f"/{segment}" for segment in segments)
        return f"{rng.choice(('http', 'https'))}://{host}{port}{path}"

    def invalid(self, context: GenerationContext | None = None) -> list[str]:
        return [
            "ftp://example.com",
            "://example.com",
            "http://",
            "http://example.com:65536",
            "http://example.com:-1",
        ]


class PatternGenerator:
    """Strings matching a regular expression.

    The expression is walked through the stdlib ``re`` parse tree.
    Unbounded repeats add at most ``repeat_slack`` repetitions to their
    minimum; lookarounds and anchors produce no text. Each draw is checked
    with ``re.fullmatch`` and retried a few times before giving up.

    Raises:
        re.error: On construction if *regex* does not compile.
    """

    repeat_slack = 5
    attempts = 10

    def __init__(self, regex: str) -> None:
        self.regex = regex
        self._compiled = re.compile(regex)
        self._tree = sre_parse.parse(regex)

    def generate(self, context: GenerationContext) -> str:
        for _ in range(self.attempts):
            groups: dict[int, str] = {}
            value = self._emit(self._tree, context, groups)
            if self._compiled.fullmatch(value) is not None:
                return value
        msg = f"could not generate a string matching {self.regex!r}"
        raise ValueError(msg)

    def invalid(self, context: GenerationContext | None = None) -> list[str]:
        candidates = ["", " ", "!@#", "\n"]
        return [value for value in candidates if self._compiled.fullmatch(value) is None]

    def _emit(self, tree: Any, context: GenerationContext, groups: dict[int, str]) -> str:
        rng = context.seeded_random
        out = []
        for op, av in tree:
            if op is sre.LITERAL:
                out.append(chr(av))
            elif op is sre.NOT_LITERAL:
                out.append(rng.choice([c for c in _PRINTABLE if ord(c) != av]))
            elif op is sre.ANY:
                out.append(rng.choice(CHARSET))
            elif op is sre.IN:
                out.append(rng.choice(_class_members(av)))
            elif op is sre.BRANCH:
                out.append(self._emit(rng.choice(av[1]), context, groups))
            elif op is sre.SUBPATTERN:
                group, _, _, pattern = av
                text = self._emit(pattern, context, groups)
                if group is not None:
                    groups[group] = text
                out.append(text)
            elif op in (sre.MAX_REPEAT, sre.MIN_REPEAT, sre.POSSESSIVE_REPEAT):
                low, high, pattern = av
                if high == sre.MAXREPEAT:
                    high = low + self.repeat_slack
                count = rng.randint(low, high)
                out.extend(self._emit(pattern, context, groups) for _ in range(count))
            elif op is sre.ATOMIC_GROUP:
                out.append(self._emit(av, context, groups))
            elif op is sre.GROUPREF:
                out.append(groups.get(av, ""))
            elif op is sre.GROUPREF_EXISTS:
                group, yes, no = av
                branch = yes if group in groups else no
                if branch is not None:
                    out.append(self._emit(branch, context, groups))
            elif op in (sre.AT, sre.ASSERT, sre.ASSERT_NOT):
                continue
            else:
                msg = f"unsupported construct {op} in {self.regex!r}"
                raise ValueError(msg)
        return "".join(out)


_PRINTABLE = string.ascii_letters + string.digits + string.punctuation + " "
_CATEGORIES = {
    sre.CATEGORY_DIGIT: string.digits,
    sre.CATEGORY_NOT_DIGIT: string.ascii_letters + "_-",
    sre.CATEGORY_SPACE: " ",
    sre.CATEGORY_NOT_SPACE: CHARSET,
    sre.CATEGORY_WORD: CHARSET + "_",
    sre.CATEGORY_NOT_WORD: " -.,!",
}


def _class_members(items: list[tuple[Any, Any]]) -> str:
    """Characters of a ``[...]`` class; negated classes draw from printable ASCII."""
    negate = bool(items) and items[0][0] is sre.NEGATE
    members = []
    for op, av in items[1:] if negate else items:
        if op is sre.LITERAL:
            members.append(chr(av))
        elif op is sre.RANGE:
            low, high = av
            members.extend(chr(code) for code in range(low, min(high, low + 255) + 1))
        elif op is sre.CATEGORY:
            members.extend(_CATEGORIES.get(av, ""))
    if negate:
        excluded = set(members)
        members = [c for c in _PRINTABLE if c not in excluded]
    if not members:
        msg = "character class has no printable members"
        raise ValueError(msg)
    return "".join(members)


class ConstantGenerator:
    """Always returns ``value``; the usual shape of a user override."""

    def __init__(self, value: Any) -> None:
        self.value = value

    def generate(self, context: GenerationContext) -> Any:
        return self.value


class NullGenerator:
    def generate(self, context: GenerationContext) -> None:
        return None


class CallableGenerator:
    """Adapts a ``context -> value`` callable to the generator protocol."""

    def __init__(self, func: Callable[[GenerationContext], Any]) -> None:
        self.func = func

    def generate(self, context: GenerationContext) -> Any:
        return self.func(context)


class DelegatingGenerator:
    """Generates a whole type through a nested pipeline run.

    Used for interface implementations, which are linked as a single
    atomic node.
    """

    def __init__(
        self,
        type_ref: TypeReference,
        produce: Callable[[TypeReference, GenerationContext], Any],
    ) -> None:
        self.type_ref = type_ref
        self.produce = produce

    def generate(self, context: GenerationContext) -> Any:
        return self.produce(self.type_ref, context)


# ---------------------------------------------------------------------------
# Container shells
# ---------------------------------------------------------------------------


class ListGenerator:
    def generate(self, context: GenerationContext) -> list[Any]:
        return []


class SetGenerator:
    def generate(self, context: GenerationContext) -> set[Any]:
        return set()


class DictGenerator:
    def generate(self, context: GenerationContext) -> dict[Any, Any]:
        return {}


class TupleGenerator:
    def generate(self, context: GenerationContext) -> tuple[Any, ...]:
        return ()

    def generate_array(self, context: GenerationContext, elements: list[Any]) -> tuple[Any, ...]:
        return tuple(elements)


class FrozenSetGenerator:
    def generate(self, context: GenerationContext) -> frozenset[Any]:
        return frozenset()

    def generate_array(self, context: GenerationContext, elements: list[Any]) -> frozenset[Any]:
        return frozenset(elements)


# ---------------------------------------------------------------------------
# Composite assembly
# ---------------------------------------------------------------------------


class ObjectAssembler:
    """Builds an object by calling ``factory(**fields)``."""

    def __init__(self, factory: Callable[..., Any]) -> None:
        self.factory = factory

    def generate(self, context: GenerationContext) -> Any:
        return self.generate_with_fields(context, {})

    def generate_with_fields(self, context: GenerationContext, fields: dict[str, Any]) -> Any:
        try:
            return self.factory(**fields)
        except Exception as exc:
            name = getattr(self.factory, "__qualname__", repr(self.factory))
            msg = f"Object assembly of {name} failed. Provided fields: {sorted(fields)}"
            raise ValueError(msg) from exc


class PositionalAssembler:
    """Builds a fixed-length tuple from fields named ``"0"``, ``"1"``, ..."""

    def generate(self, context: GenerationContext) -> tuple[Any, ...]:
        return ()

    def generate_with_fields(
        self, context: GenerationContext, fields: dict[str, Any]
    ) -> tuple[Any, ...]:
        return tuple(fields[str(index)] for index in range(len(fields)))
