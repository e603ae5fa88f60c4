"""Type references and the reflection-based ``TypeResolver``.

``type_ref()`` turns any runtime type hint into a ``TypeReference`` with a
canonical id, so ``list[int]`` built twice, or read back from two different
annotations, compares equal. ``ReflectionTypeResolver`` describes the
structure of a hint using ``typing`` introspection: dataclasses, Pydantic
models, named tuples and classes with an annotated ``__init__`` are
composites, as are fixed-length tuples, whose fields are named by
position (``"0"``, ``"1"``, ...). ``Annotated`` metadata becomes
per-field attributes.
"""

from __future__ import annotations

from collections import abc
import dataclasses
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
import inspect
import types
import typing
from typing import (
    Annotated,
    Any,
    Literal,
    Protocol,
    Union,
    get_args,
    get_origin,
    runtime_checkable,
)
import uuid

from pydantic import BaseModel

from kontrakt.errors import MalformedTypeException
from kontrakt.models import (
    Attribute,
    FieldDescriptor,
    TypeDescriptor,
    TypeKind,
    TypeReference,
)

ATOMIC_TYPES: frozenset[type] = frozenset(
    {int, float, str, bool, bytes, Decimal, datetime, date, uuid.UUID}
)

_COLLECTION_ORIGINS = frozenset(
    {
        list,
        set,
        abc.Sequence,
        abc.MutableSequence,
        abc.Iterable,
        abc.Collection,
        abc.Set,
        abc.MutableSet,
    }
)
_MAP_ORIGINS = frozenset({dict, abc.Mapping, abc.MutableMapping})
_UNION_ORIGINS = (Union, types.UnionType)
_NONE_TYPE = type(None)


@runtime_checkable
class TypeResolver(Protocol):
    """Describes the structure of the type behind a reference."""

    def resolve(self, ref: TypeReference) -> TypeDescriptor: ...


# ---------------------------------------------------------------------------
# Hint helpers
# ---------------------------------------------------------------------------


def strip_annotated(hint: Any) -> tuple[Any, tuple[Any, ...]]:
    """Split ``Annotated[X, *meta]`` into ``(X, meta)``."""
    if get_origin(hint) is Annotated:
        inner, *metadata = get_args(hint)
        return inner, tuple(metadata)
    return hint, ()


def strip_optional(hint: Any) -> tuple[Any, bool]:
    """Split ``X | None`` into ``(X, True)``; other hints give ``(hint, False)``."""
    if get_origin(hint) in _UNION_ORIGINS:
        args = get_args(hint)
        rest = [arg for arg in args if arg is not _NONE_TYPE]
        if len(rest) == 1 and len(rest) < len(args):
            return rest[0], True
    return hint, False


def underlying(hint: Any) -> Any:
    """Remove ``Annotated`` and ``Optional`` wrappers from *hint*."""
    hint, _ = strip_annotated(hint)
    hint, _ = strip_optional(hint)
    hint, _ = strip_annotated(hint)
    return hint


def split_hint(hint: Any) -> tuple[Any, tuple[Attribute, ...]]:
    """Separate a hint from its constraint attributes.

    Metadata is collected both outside and inside an ``Optional`` wrapper,
    so ``Annotated[int, Range(...)] | None`` keeps its ``Range``.
    """
    inner, metadata = strip_annotated(hint)
    base, nullable = strip_optional(inner)
    if nullable:
        _, nested = strip_annotated(base)
        metadata = metadata + nested
    return inner, attributes_from(metadata)


def attributes_from(metadata: tuple[Any, ...]) -> tuple[Attribute, ...]:
    """Convert ``Annotated`` metadata into attributes.

    Objects exposing ``to_attribute()`` (the markers) convert themselves;
    anything else becomes an argument-less attribute named after its class.
    """
    attributes = []
    for item in metadata:
        if isinstance(item, Attribute):
            attributes.append(item)
        elif hasattr(item, "to_attribute"):
            attributes.append(item.to_attribute())
        else:
            attributes.append(Attribute.of(type(item).__name__))
    return tuple(attributes)


def _class_name(cls: type) -> str:
    if cls.__module__ == "builtins":
        return cls.__qualname__
    return f"{cls.__module__}.{cls.__qualname__}"


def canonical_type_id(hint: Any) -> str:
    """Return the canonical id of a type hint.

    ``Annotated`` metadata is ignored; ``X | None`` becomes ``"X?"``.
    """
    if hint is _NONE_TYPE or hint is None:
        return "None"
    if hint is Any:
        return "typing.Any"
    if hint is Ellipsis:
        return "..."
    origin = get_origin(hint)
    if origin is Annotated:
        return canonical_type_id(get_args(hint)[0])
    if origin in _UNION_ORIGINS:
        inner, nullable = strip_optional(hint)
        if nullable:
            return f"{canonical_type_id(inner)}?"
        return " | ".join(canonical_type_id(arg) for arg in get_args(hint))
    if origin is Literal:
        return f"Literal[{', '.join(repr(arg) for arg in get_args(hint))}]"
    if origin is not None:
        base = _class_name(origin) if isinstance(origin, type) else repr(origin)
        args = ", ".join(canonical_type_id(arg) for arg in get_args(hint))
        return f"{base}[{args}]" if args else base
    if isinstance(hint, type):
        return _class_name(hint)
    return repr(hint)


def type_ref(hint: Any) -> TypeReference:
    """Build the ``TypeReference`` of a runtime type hint."""
    return TypeReference(type_id=canonical_type_id(hint), source=hint)


def is_interface(cls: type) -> bool:
    """True for protocols and classes with unimplemented abstract methods."""
    return bool(cls.__dict__.get("_is_protocol", False)) or inspect.isabstract(cls)


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class ReflectionTypeResolver:
    """``TypeResolver`` built on runtime ``typing`` introspection."""

    def resolve(self, ref: TypeReference) -> TypeDescriptor:
        """Describe the type behind *ref*.

        Raises:
            MalformedTypeException: If *ref* carries no source hint or the
                type's annotations cannot be evaluated.
        """
        if ref.source is None:
            raise MalformedTypeException(ref.type_id, "reference carries no source type")
        hint = underlying(ref.source)
        origin = get_origin(hint)
        args = get_args(hint)

        if origin is Literal:
            return TypeDescriptor(type_ref=ref, kind=TypeKind.ATOMIC)
        if origin in _COLLECTION_ORIGINS or hint in (list, set):
            element = args[0] if args else Any
            return TypeDescriptor(
                type_ref=ref, kind=TypeKind.COLLECTION, element_type=type_ref(element)
            )
        if origin is frozenset or hint is frozenset:
            element = args[0] if args else Any
            return TypeDescriptor(
                type_ref=ref, kind=TypeKind.ARRAY, element_type=type_ref(element)
            )
        if origin is tuple:
            if len(args) == 2 and args[1] is Ellipsis:
                return TypeDescriptor(
                    type_ref=ref, kind=TypeKind.ARRAY, element_type=type_ref(args[0])
                )
            fields = tuple(_describe_field(str(index), arg) for index, arg in enumerate(args))
            return TypeDescriptor(type_ref=ref, kind=TypeKind.COMPOSITE, fields=fields)
        if origin in _MAP_ORIGINS or hint is dict:
            key, value = args if len(args) == 2 else (Any, Any)
            return TypeDescriptor(
                type_ref=ref,
                kind=TypeKind.MAP,
                key_type=type_ref(key),
                value_type=type_ref(value),
            )
        if origin is not None or not isinstance(hint, type):
            return TypeDescriptor(type_ref=ref, kind=TypeKind.UNKNOWN)

        if hint in ATOMIC_TYPES or issubclass(hint, Enum):
            return TypeDescriptor(type_ref=ref, kind=TypeKind.ATOMIC)
        if is_interface(hint):
            is_protocol = hint.__dict__.get("_is_protocol", False)
            kind = TypeKind.INTERFACE if is_protocol else TypeKind.ABSTRACT
            return TypeDescriptor(type_ref=ref, kind=kind)
        return TypeDescriptor(
            type_ref=ref, kind=TypeKind.COMPOSITE, fields=self._fields_of(hint)
        )

    def _fields_of(self, cls: type) -> tuple[FieldDescriptor, ...]:
        if dataclasses.is_dataclass(cls):
            names = [f.name for f in dataclasses.fields(cls) if f.init]
        elif issubclass(cls, BaseModel):
            names = list(cls.model_fields)
        elif issubclass(cls, tuple) and hasattr(cls, "_fields"):
            names = list(cls._fields)
        else:
            return self._init_fields(cls)
        hints = _hints(cls, cls)
        return tuple(_describe_field(name, hints.get(name, Any)) for name in names)

    def _init_fields(self, cls: type) -> tuple[FieldDescriptor, ...]:
        if cls.__init__ is object.__init__:
            return ()
        hints = _hints(cls, cls.__init__)
        fields = []
        for name, param in inspect.signature(cls.__init__).parameters.items():
            if name == "self" or param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
                continue
            if name not in hints:
                if param.default is not param.empty:
                    continue
                msg = f"constructor parameter '{name}' has no type annotation"
                raise MalformedTypeException(canonical_type_id(cls), msg)
            fields.append(_describe_field(name, hints[name]))
        return tuple(fields)


def _hints(cls: type, owner: Any) -> dict[str, Any]:
    try:
        return typing.get_type_hints(owner, include_extras=True)
    except (NameError, TypeError) as exc:
        msg = f"cannot evaluate annotations: {exc}"
        raise MalformedTypeException(canonical_type_id(cls), msg) from exc


def _describe_field(name: str, hint: Any) -> FieldDescriptor:
    inner, attributes = split_hint(hint)
    return FieldDescriptor(name=name, type_ref=type_ref(inner), attributes=attributes)
