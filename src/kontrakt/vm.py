"""Virtual machine: executes an ``ExecutableNode`` tree into a value.

Children are always produced before their parent. Composite generators
receive the field values through ``generate_with_fields``; fixed-size
collections go through ``generate_array``; other collections and maps are
created empty by their generator and then filled in order. Duplicate map
keys keep the value of the last entry.
"""

from __future__ import annotations

from collections.abc import MutableMapping, MutableSequence, MutableSet
import logging
from typing import TYPE_CHECKING, Any

from kontrakt.errors import ExecutionException, VMExecutionException
from kontrakt.generators import ArrayProducer, CompositeGenerator
from kontrakt.nodes import (
    ExecutableAtomicNode,
    ExecutableCollectionNode,
    ExecutableCompositeNode,
    ExecutableInterfaceNode,
    ExecutableMapNode,
    ExecutableReferenceNode,
)

if TYPE_CHECKING:
    from kontrakt.context import GenerationContext
    from kontrakt.nodes import ExecutableNode

logger = logging.getLogger(__name__)


class VirtualMachine:
    """Stateless executor of execution plans."""

    def execute(self, plan: ExecutableNode, context: GenerationContext) -> Any:
        """Produce the value described by *plan*.

        Raises:
            VMExecutionException: For any failure that is not already an
                ``ExecutionException``; carries the failing node's type.
        """
        try:
            return self._traverse(plan, context)
        except ExecutionException:
            raise
        except Exception as exc:
            raise VMExecutionException(plan.type_ref, "Runtime execution failed") from exc

    def _traverse(self, node: ExecutableNode, context: GenerationContext) -> Any:
        if isinstance(node, ExecutableAtomicNode):
            return node.generator.generate(context)
        if isinstance(node, ExecutableCompositeNode):
            return self._assemble(node, context)
        if isinstance(node, ExecutableCollectionNode):
            elements = [self.execute(child, context) for child in node.children]
            if node.is_fixed_size:
                return self._build_array(node, context, elements)
            return self._fill_collection(node, context, elements)
        if isinstance(node, ExecutableMapNode):
            return self._fill_map(node, context)
        if isinstance(node, ExecutableInterfaceNode):
            return self.execute(node.implementation, context)
        if isinstance(node, ExecutableReferenceNode):
            return node.generator.generate(context)
        raise VMExecutionException(node.type_ref, f"unsupported node {type(node).__name__}")

    def _assemble(self, node: ExecutableCompositeNode, context: GenerationContext) -> Any:
        values = {name: self.execute(child, context) for name, child in node.fields.items()}
        if not isinstance(node.generator, CompositeGenerator):
            msg = (
                f"generator {type(node.generator).__name__} cannot assemble fields "
                f"{sorted(values)}"
            )
            raise VMExecutionException(node.type_ref, msg)
        return node.generator.generate_with_fields(context, values)

    @staticmethod
    def _build_array(
        node: ExecutableCollectionNode, context: GenerationContext, elements: list[Any]
    ) -> Any:
        if not isinstance(node.generator, ArrayProducer):
            msg = f"generator {type(node.generator).__name__} cannot produce arrays"
            raise VMExecutionException(node.type_ref, msg)
        return node.generator.generate_array(context, elements)

    @staticmethod
    def _fill_collection(
        node: ExecutableCollectionNode, context: GenerationContext, elements: list[Any]
    ) -> Any:
        container = node.generator.generate(context)
        if isinstance(container, MutableSequence):
            container.extend(elements)
        elif isinstance(container, MutableSet):
            for element in elements:
                container.add(element)
        else:
            msg = f"expected a mutable collection, got {type(container).__name__}"
            raise VMExecutionException(node.type_ref, msg)
        return container

    def _fill_map(self, node: ExecutableMapNode, context: GenerationContext) -> Any:
        container = node.generator.generate(context)
        if not isinstance(container, MutableMapping):
            msg = f"expected a mutable mapping, got {type(container).__name__}"
            raise VMExecutionException(node.type_ref, msg)
        for key_node, value_node in node.entries:
            key = self.execute(key_node, context)
            container[key] = self.execute(value_node, context)
        return container
