"""Expansion linking: ``UnlinkedNode`` tree to ``ExecutableNode`` tree.

The linker attaches a generator to every node, expands collections and
maps to a concrete, seeded number of children, and resolves interfaces to
a concrete implementation. User overrides are matched by path:

* ``$`` is the root value,
* ``$.name`` a field,
* ``$.items[2]`` a collection element,
* ``$.index[0].key`` / ``$.index[0].value`` a map entry.

An override replaces the whole subtree below its path.
"""

from __future__ import annotations

import logging
import random
from typing import TYPE_CHECKING, Any, Protocol

from kontrakt.errors import ExecutionException, LinkageException
from kontrakt.models import DecisionSource
from kontrakt.nodes import (
    ExecutableAtomicNode,
    ExecutableCollectionNode,
    ExecutableCompositeNode,
    ExecutableInterfaceNode,
    ExecutableMapNode,
    ExecutableNode,
    ExecutableReferenceNode,
    UnlinkedAtomicNode,
    UnlinkedCollectionNode,
    UnlinkedCompositeNode,
    UnlinkedInterfaceNode,
    UnlinkedMapNode,
    UnlinkedNode,
    UnlinkedReferenceNode,
)
from kontrakt.registry import find_attribute

if TYPE_CHECKING:
    from collections.abc import Mapping

    from kontrakt.generators import Generator
    from kontrakt.registry import GeneratorRegistry

logger = logging.getLogger(__name__)

ROOT_PATH = "$"


class LinkerContext(Protocol):
    """Per-link inputs: user overrides and seeded structural sizing."""

    def get_override(self, path: str) -> Generator | None: ...

    def generate_structural_size(self, min_size: int, max_size: int) -> int: ...

    def default_size_range(self) -> tuple[int, int]: ...


def normalize_path(path: str) -> str:
    """Anchor a user-supplied path at the root: ``users[0]`` -> ``$.users[0]``."""
    if path.startswith(ROOT_PATH):
        return path
    if path.startswith("["):
        return f"{ROOT_PATH}{path}"
    return f"{ROOT_PATH}.{path}"


class DefaultLinkerContext:
    """``LinkerContext`` over a seeded random generator.

    Args:
        rng: Source of structural sizes; share it with the generation
            context so one seed drives the whole run.
        overrides: Generators keyed by path, anchored or not.
        min_size: Default lower bound of collection sizes.
        max_size: Default upper bound of collection sizes.
    """

    def __init__(
        self,
        rng: random.Random,
        overrides: Mapping[str, Generator] | None = None,
        min_size: int = 0,
        max_size: int = 10,
    ) -> None:
        self._rng = rng
        self._overrides = {normalize_path(k): v for k, v in (overrides or {}).items()}
        self._min_size = min_size
        self._max_size = max_size

    def get_override(self, path: str) -> Generator | None:
        return self._overrides.get(path)

    def generate_structural_size(self, min_size: int, max_size: int) -> int:
        return self._rng.randint(min_size, max_size)

    def default_size_range(self) -> tuple[int, int]:
        return self._min_size, self._max_size


class ExpansionLinker:
    """Links structural plans against a ``GeneratorRegistry``."""

    def __init__(self, registry: GeneratorRegistry) -> None:
        self._registry = registry

    def link(
        self, node: UnlinkedNode, context: LinkerContext, path: str = ROOT_PATH
    ) -> ExecutableNode:
        """Link *node* found at *path*.

        Raises:
            LinkageException: For any failure that is not already an
                ``ExecutionException``; carries the failing path.
        """
        try:
            override = context.get_override(path)
            if override is not None:
                logger.debug("Override applied at %s", path)
                return ExecutableAtomicNode(
                    type_ref=node.type_ref,
                    attributes=node.attributes,
                    generator=override,
                    source=DecisionSource.user(f"Explicit Override at {path}"),
                )
            if isinstance(node, UnlinkedInterfaceNode):
                return self._link_interface(node)
            return self._link_selected(node, context, path)
        except ExecutionException:
            raise
        except Exception as exc:
            raise LinkageException(path, str(exc)) from exc

    def _link_selected(
        self, node: UnlinkedNode, context: LinkerContext, path: str
    ) -> ExecutableNode:
        selected = self._registry.select(node)
        common: dict[str, Any] = {
            "type_ref": node.type_ref,
            "attributes": node.attributes,
            "generator": selected.generator,
            "source": selected.source,
        }
        if isinstance(node, UnlinkedCompositeNode):
            fields = {
                name: self.link(child, context, f"{path}.{name}")
                for name, child in node.fields.items()
            }
            return ExecutableCompositeNode(fields=fields, **common)
        if isinstance(node, UnlinkedCollectionNode):
            count = self._size(node, node.element_node, context)
            children = tuple(
                self.link(node.element_node, context, f"{path}[{i}]") for i in range(count)
            )
            return ExecutableCollectionNode(
                children=children, is_fixed_size=node.is_fixed_size, **common
            )
        if isinstance(node, UnlinkedMapNode):
            count = self._size(node, node.key_node, context)
            entries = tuple(
                (
                    self.link(node.key_node, context, f"{path}[{i}].key"),
                    self.link(node.value_node, context, f"{path}[{i}].value"),
                )
                for i in range(count)
            )
            return ExecutableMapNode(entries=entries, **common)
        if isinstance(node, UnlinkedReferenceNode):
            return ExecutableReferenceNode(recursion_depth=node.recursion_depth, **common)
        if isinstance(node, UnlinkedAtomicNode):
            return ExecutableAtomicNode(**common)
        msg = f"unsupported node variant {type(node).__name__}"
        raise TypeError(msg)

    def _link_interface(self, node: UnlinkedInterfaceNode) -> ExecutableInterfaceNode:
        resolution = self._registry.resolve_implementation(node)
        implementation = ExecutableAtomicNode(
            type_ref=resolution.concrete_type,
            generator=resolution.generator,
            source=resolution.source,
        )
        return ExecutableInterfaceNode(
            type_ref=node.type_ref,
            attributes=node.attributes,
            source=resolution.source,
            concrete_type=resolution.concrete_type,
            implementation=implementation,
        )

    @staticmethod
    def _size(node: UnlinkedNode, element: UnlinkedNode, context: LinkerContext) -> int:
        """Element count of a collection or map node.

        A ``Size`` attribute on the node replaces the default range and
        ``NotEmpty`` raises its lower bound to one. When the element is a
        back-reference the lower bound is used, so recursive containers
        stay as small as allowed.
        """
        low, high = context.default_size_range()
        size = find_attribute(node.attributes, "Size")
        if size is not None:
            low = size.get("min", low)
            high = size.get("max") if size.get("max") is not None else max(high, low)
        if find_attribute(node.attributes, "NotEmpty") is not None:
            low = max(low, 1)
            high = max(high, low)
        if isinstance(element, UnlinkedReferenceNode):
            return low
        return context.generate_structural_size(low, high)
