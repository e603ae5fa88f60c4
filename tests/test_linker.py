"""Tests for the expansion linker.

Validates structural sizing, ``Size`` narrowing, user overrides by path,
recursive containers and failure wrapping of ``ExpansionLinker`` in
``src/kontrakt/linker.py``.
"""

from __future__ import annotations

from dataclasses import dataclass
import random
from typing import Annotated, Any

from hypothesis import given, settings, strategies as st
from kontrakt.context import GenerationContext
from kontrakt.errors import GeneratorNotFoundException, LinkageException
from kontrakt.fixtures import GenerationPipeline
from kontrakt.generators import ConstantGenerator
from kontrakt.linker import DefaultLinkerContext, normalize_path
from kontrakt.markers import NotEmpty, Size
from kontrakt.models import DecisionKind
from kontrakt.nodes import (
    ExecutableAtomicNode,
    ExecutableCollectionNode,
    ExecutableCompositeNode,
    ExecutableInterfaceNode,
    ExecutableMapNode,
    ExecutableReferenceNode,
)
from kontrakt.resolver import type_ref
import pytest

from tests.sample_domain import Circle, Drawing, Inventory, Person


@dataclass
class Folder:
    name: str
    children: list[Folder]


@dataclass
class Memo:
    body: Annotated[str, Size(min=20_000)]


@dataclass
class Pair:
    left: type[int]


def _link(
    hint: Any,
    seed: int = 1,
    overrides: dict[str, Any] | None = None,
    pipeline: GenerationPipeline | None = None,
) -> Any:
    pipeline = pipeline if pipeline is not None else GenerationPipeline()
    return pipeline.link(hint, GenerationContext.seeded(seed), overrides)


# ===========================================================================
# Paths
# ===========================================================================


@pytest.mark.unit
class TestNormalizePath:
    """User paths are anchored at the root."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("name", "$.name"),
            ("address.street", "$.address.street"),
            ("[0]", "$[0]"),
            ("$.tags[1]", "$.tags[1]"),
            ("$", "$"),
        ],
    )
    def test_normalize(self, raw: str, expected: str) -> None:
        """Relative paths gain the root prefix."""
        assert normalize_path(raw) == expected

    def test_context_normalizes_override_keys(self) -> None:
        """Overrides can be given with or without the root."""
        context = DefaultLinkerContext(random.Random(0), {"name": ConstantGenerator("x")})
        assert context.get_override("$.name") is not None
        assert context.get_override("name") is None


# ===========================================================================
# Sizes
# ===========================================================================


@pytest.mark.unit
class TestStructuralSize:
    """Collection and map sizes obey the configured bounds."""

    @given(seed=st.integers(min_value=0, max_value=2**32))
    @settings(max_examples=50)
    def test_default_bounds(self, seed: int) -> None:
        """Unconstrained collections have 0..10 children."""
        node = _link(list[int], seed)
        assert isinstance(node, ExecutableCollectionNode)
        assert 0 <= len(node.children) <= 10

    @given(seed=st.integers(min_value=0, max_value=2**32))
    @settings(max_examples=50)
    def test_size_attribute_replaces_default(self, seed: int) -> None:
        """A Size attribute sets the exact range."""
        node = _link(Annotated[list[int], Size(min=2, max=3)], seed)
        assert 2 <= len(node.children) <= 3

    @given(seed=st.integers(min_value=0, max_value=2**32))
    @settings(max_examples=50)
    def test_map_default_bounds(self, seed: int) -> None:
        """Unconstrained maps have 0..10 entries."""
        node = _link(dict[str, int], seed)
        assert isinstance(node, ExecutableMapNode)
        assert 0 <= len(node.entries) <= 10

    @given(
        seed=st.integers(min_value=0, max_value=2**32),
        low=st.integers(min_value=0, max_value=6),
        span=st.integers(min_value=0, max_value=6),
    )
    @settings(max_examples=50)
    def test_map_size_attribute(self, seed: int, low: int, span: int) -> None:
        """A Size attribute on a map bounds its entry count."""
        node = _link(Annotated[dict[str, int], Size(min=low, max=low + span)], seed)
        assert isinstance(node, ExecutableMapNode)
        assert low <= len(node.entries) <= low + span

    @given(seed=st.integers(min_value=0, max_value=2**32))
    @settings(max_examples=50)
    def test_not_empty_raises_lower_bound(self, seed: int) -> None:
        """NotEmpty containers have at least one element."""
        node = _link(Annotated[list[int], NotEmpty()], seed)
        assert 1 <= len(node.children) <= 10

    def test_configured_bounds(self) -> None:
        """Pipeline bounds apply when no Size is present."""
        pipeline = GenerationPipeline(min_size=4, max_size=4)
        node = _link(dict[str, int], pipeline=pipeline)
        assert isinstance(node, ExecutableMapNode)
        assert len(node.entries) == 4

    def test_recursive_element_uses_lower_bound(self) -> None:
        """Containers of back-references stay at the minimum size."""
        node = _link(Folder)
        children = node.fields["children"]
        assert isinstance(children, ExecutableCollectionNode)
        assert children.children == ()

    def test_recursive_element_lower_bound_configured(self) -> None:
        """The lower bound comes from the pipeline when raised."""
        node = _link(Folder, pipeline=GenerationPipeline(min_size=2, max_size=5))
        children = node.fields["children"].children
        assert len(children) == 2
        assert all(isinstance(child, ExecutableReferenceNode) for child in children)


# ===========================================================================
# Overrides and provenance
# ===========================================================================


@pytest.mark.unit
class TestOverrides:
    """Overrides replace the generator at their path."""

    def test_field_override(self) -> None:
        """A field override becomes a user decision."""
        node = _link(Person, overrides={"name": ConstantGenerator("Ada")})
        name = node.fields["name"]
        assert isinstance(name, ExecutableAtomicNode)
        assert name.source.kind == DecisionKind.USER
        assert name.source.description == "User Defined: Explicit Override at $.name"

    def test_element_override(self) -> None:
        """Index paths address collection elements."""
        node = _link(
            Annotated[list[int], Size(min=3, max=3)],
            overrides={"[1]": ConstantGenerator(99)},
        )
        sources = [child.source.kind for child in node.children]
        assert sources == [DecisionKind.STRATEGY, DecisionKind.USER, DecisionKind.STRATEGY]

    def test_nested_map_key_override(self) -> None:
        """Map entries are addressed by index and key/value."""
        pipeline = GenerationPipeline(min_size=1, max_size=1)
        node = _link(
            Inventory, overrides={"counts[0].value": ConstantGenerator(5)}, pipeline=pipeline
        )
        key, value = node.fields["counts"].entries[0]
        assert key.source.kind == DecisionKind.STRATEGY
        assert value.source.description == "User Defined: Explicit Override at $.counts[0].value"

    def test_root_override(self) -> None:
        """The root itself can be overridden."""
        node = _link(Person, overrides={"$": ConstantGenerator(None)})
        assert isinstance(node, ExecutableAtomicNode)
        assert node.type_ref == type_ref(Person)


# ===========================================================================
# Variants and failures
# ===========================================================================


@pytest.mark.unit
class TestLinkedVariants:
    """Each plan variant links to its executable counterpart."""

    def test_composite(self) -> None:
        """Composites link every field."""
        node = _link(Person)
        assert isinstance(node, ExecutableCompositeNode)
        assert set(node.fields) == {"name", "age"}

    def test_interface(self) -> None:
        """Interfaces link to the chosen implementation."""
        shape = _link(Drawing).fields["shape"]
        assert isinstance(shape, ExecutableInterfaceNode)
        assert shape.concrete_type == type_ref(Circle)
        assert shape.generator is shape.implementation.generator

    def test_generator_failure_carries_path(self) -> None:
        """Unexpected failures become LinkageException at the failing path."""
        with pytest.raises(LinkageException) as excinfo:
            _link(Memo)
        assert excinfo.value.path == "$.body"

    def test_execution_exceptions_pass_through(self) -> None:
        """Pipeline errors are not re-wrapped."""
        with pytest.raises(GeneratorNotFoundException):
            _link(Pair)
