"""Plan trees produced by the planner and consumed by the linker and VM.

``UnlinkedNode`` variants describe the shape of a type and nothing else.
``ExecutableNode`` variants mirror them, additionally carrying the
generator chosen for the node and the provenance of that choice, with
collections and maps already expanded to a concrete number of children.
Both trees are immutable; the variants form closed hierarchies that
consumers dispatch on with ``isinstance``.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict

from kontrakt.models import Attribute, DecisionSource, TypeReference

# ---------------------------------------------------------------------------
# Structural plan
# ---------------------------------------------------------------------------


class UnlinkedNode(BaseModel):
    """Base of the structural plan variants."""

    model_config = ConfigDict(frozen=True)

    type_ref: TypeReference
    attributes: tuple[Attribute, ...] = ()


class UnlinkedAtomicNode(UnlinkedNode):
    """A leaf value produced directly by a generator."""


class UnlinkedCompositeNode(UnlinkedNode):
    """An object assembled from named fields, in declaration order."""

    fields: dict[str, UnlinkedNode]


class UnlinkedCollectionNode(UnlinkedNode):
    """A homogeneous collection; ``is_fixed_size`` marks array-like types."""

    element_node: UnlinkedNode
    is_fixed_size: bool = False


class UnlinkedMapNode(UnlinkedNode):
    """A mapping from generated keys to generated values."""

    key_node: UnlinkedNode
    value_node: UnlinkedNode


class UnlinkedInterfaceNode(UnlinkedNode):
    """An abstract type whose implementation is chosen while linking."""


class UnlinkedReferenceNode(UnlinkedNode):
    """Back-reference to an ancestor already on the planner stack.

    Attributes:
        recursion_depth: Distance to that ancestor, 0 being the innermost.
    """

    recursion_depth: int


# ---------------------------------------------------------------------------
# Execution plan
# ---------------------------------------------------------------------------


class ExecutableNode(BaseModel):
    """Base of the execution plan variants."""

    model_config = ConfigDict(frozen=True)

    type_ref: TypeReference
    attributes: tuple[Attribute, ...] = ()
    source: DecisionSource


class ExecutableAtomicNode(ExecutableNode):
    generator: Any


class ExecutableCompositeNode(ExecutableNode):
    generator: Any
    fields: dict[str, ExecutableNode]


class ExecutableCollectionNode(ExecutableNode):
    generator: Any
    children: tuple[ExecutableNode, ...]
    is_fixed_size: bool = False


class ExecutableMapNode(ExecutableNode):
    """Entries are ``(key_node, value_node)`` pairs in insertion order."""

    generator: Any
    entries: tuple[tuple[ExecutableNode, ExecutableNode], ...]


class ExecutableInterfaceNode(ExecutableNode):
    """An interface linked to its chosen implementation subtree.

    ``type_ref`` stays the interface type; ``concrete_type`` is the chosen
    implementation, produced by ``implementation``.
    """

    concrete_type: TypeReference
    implementation: ExecutableNode

    @property
    def generator(self) -> Any:
        return self.implementation.generator  # type: ignore[attr-defined]


class ExecutableReferenceNode(ExecutableNode):
    generator: Any
    recursion_depth: int
