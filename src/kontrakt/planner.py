"""Structural planning: type reference to ``UnlinkedNode`` tree.

The planner walks the type graph depth-first with an explicit ancestor
stack. A type that is already on the stack is not expanded again; it
becomes an ``UnlinkedReferenceNode`` recording how far up the stack its
ancestor sits, which keeps recursive types finite.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from kontrakt.errors import ExecutionException, StructuralPlanningException
from kontrakt.models import TypeKind
from kontrakt.nodes import (
    UnlinkedAtomicNode,
    UnlinkedCollectionNode,
    UnlinkedCompositeNode,
    UnlinkedInterfaceNode,
    UnlinkedMapNode,
    UnlinkedNode,
    UnlinkedReferenceNode,
)

if TYPE_CHECKING:
    from kontrakt.models import Attribute, TypeDescriptor, TypeReference
    from kontrakt.resolver import TypeResolver

logger = logging.getLogger(__name__)


class StructuralPlanner:
    """Builds the structural plan of a type.

    Args:
        resolver: Describes each visited type.
    """

    def __init__(self, resolver: TypeResolver) -> None:
        self._resolver = resolver

    def plan(
        self, root: TypeReference, attributes: tuple[Attribute, ...] = ()
    ) -> UnlinkedNode:
        """Plan *root*, attaching *attributes* to the root node only.

        Raises:
            StructuralPlanningException: If a type cannot be resolved or
                traversed.
        """
        logger.debug("Planning %s", root)
        return self._traverse(root, attributes, [])

    def _traverse(
        self,
        ref: TypeReference,
        attributes: tuple[Attribute, ...],
        stack: list[TypeReference],
    ) -> UnlinkedNode:
        if ref in stack:
            depth = len(stack) - 1 - stack.index(ref)
            return UnlinkedReferenceNode(
                type_ref=ref, attributes=attributes, recursion_depth=depth
            )

        stack.append(ref)
        try:
            descriptor = self._resolver.resolve(ref)
            return self._dispatch(descriptor, attributes, stack)
        except ExecutionException:
            raise
        except Exception as exc:
            raise StructuralPlanningException(ref, str(exc)) from exc
        finally:
            stack.pop()

    def _dispatch(
        self,
        descriptor: TypeDescriptor,
        attributes: tuple[Attribute, ...],
        stack: list[TypeReference],
    ) -> UnlinkedNode:
        ref = descriptor.type_ref
        kind = descriptor.kind

        if kind in (TypeKind.COLLECTION, TypeKind.ARRAY):
            if descriptor.element_type is None:
                raise StructuralPlanningException(ref, "collection without element type")
            return UnlinkedCollectionNode(
                type_ref=ref,
                attributes=attributes,
                element_node=self._traverse(descriptor.element_type, (), stack),
                is_fixed_size=kind == TypeKind.ARRAY,
            )
        if kind == TypeKind.MAP:
            if descriptor.key_type is None or descriptor.value_type is None:
                raise StructuralPlanningException(ref, "map without key or value type")
            return UnlinkedMapNode(
                type_ref=ref,
                attributes=attributes,
                key_node=self._traverse(descriptor.key_type, (), stack),
                value_node=self._traverse(descriptor.value_type, (), stack),
            )
        if kind == TypeKind.COMPOSITE:
            fields = {
                field.name: self._traverse(field.type_ref, field.attributes, stack)
                for field in descriptor.fields
            }
            return UnlinkedCompositeNode(type_ref=ref, attributes=attributes, fields=fields)
        if kind in (TypeKind.INTERFACE, TypeKind.ABSTRACT):
            return UnlinkedInterfaceNode(type_ref=ref, attributes=attributes)
        return UnlinkedAtomicNode(type_ref=ref, attributes=attributes)
