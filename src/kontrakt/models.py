"""Core data models for the Kontrakt engine.

Defines the enums and Pydantic models shared by the generation pipeline,
the dependency resolution engine and the execution pipeline: type
references and descriptors, generator provenance, test specifications,
verdicts and results, and the engine configuration. Every other module
builds on this one.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# ---------------------------------------------------------------------------
# Type metamodel
# ---------------------------------------------------------------------------


class TypeKind(StrEnum):
    """Structural classification of a type as reported by a resolver."""

    ATOMIC = "atomic"
    COLLECTION = "collection"
    MAP = "map"
    ARRAY = "array"
    COMPOSITE = "composite"
    INTERFACE = "interface"
    ABSTRACT = "abstract"
    UNKNOWN = "unknown"


class TypeReference(BaseModel):
    """Identity-stable handle to a logical type.

    Two references compare equal (and hash equal) when their canonical
    ``type_id`` matches, regardless of which reflective object produced
    them.

    Attributes:
        type_id: Canonical identifier, e.g. ``"int"``, ``"list[int]"``,
            ``"shop.models.Order"`` or ``"shop.models.Order?"``.
        source: The runtime type hint the reference was built from, used
            by resolvers and strategies. Excluded from equality.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    type_id: str
    source: Any = Field(default=None, exclude=True, repr=False)

    @field_validator("type_id")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            msg = "type_id must not be blank"
            raise ValueError(msg)
        return v

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TypeReference):
            return NotImplemented
        return self.type_id == other.type_id

    def __hash__(self) -> int:
        return hash(self.type_id)

    def __str__(self) -> str:
        return self.type_id


class Attribute(BaseModel):
    """Constraint or metadata attached to a single node.

    Usually extracted from ``typing.Annotated`` metadata. An attribute
    decorates exactly one node and is never inherited by its children.

    Attributes:
        name: Attribute name, e.g. ``"Range"`` or ``"Size"``.
        arguments: Sorted ``(key, value)`` pairs.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    arguments: tuple[tuple[str, Any], ...] = ()

    @classmethod
    def of(cls, name: str, **arguments: Any) -> Attribute:
        """Build an attribute from keyword arguments."""
        return cls(name=name, arguments=tuple(sorted(arguments.items())))

    def get(self, key: str, default: Any = None) -> Any:
        """Return the argument named *key*, or *default* when absent."""
        for name, value in self.arguments:
            if name == key:
                return value
        return default


class FieldDescriptor(BaseModel):
    """A named field of a composite type, with its own attributes."""

    model_config = ConfigDict(frozen=True)

    name: str
    type_ref: TypeReference
    attributes: tuple[Attribute, ...] = ()


class TypeDescriptor(BaseModel):
    """Structural description of a type supplied by a ``TypeResolver``.

    Attributes:
        type_ref: The described type.
        kind: Structural classification.
        element_type: Element type for COLLECTION and ARRAY kinds.
        key_type: Key type for the MAP kind.
        value_type: Value type for the MAP kind.
        fields: Ordered fields for the COMPOSITE kind.
    """

    model_config = ConfigDict(frozen=True)

    type_ref: TypeReference
    kind: TypeKind
    element_type: TypeReference | None = None
    key_type: TypeReference | None = None
    value_type: TypeReference | None = None
    fields: tuple[FieldDescriptor, ...] = ()


# ---------------------------------------------------------------------------
# Generator provenance
# ---------------------------------------------------------------------------


class DecisionKind(StrEnum):
    """Who decided which generator a node uses."""

    USER = "user"
    SYSTEM = "system"
    STRATEGY = "strategy"


class DecisionSource(BaseModel):
    """Provenance of a generator choice, surfaced in DESIGN trace events."""

    model_config = ConfigDict(frozen=True)

    kind: DecisionKind
    detail: str

    @classmethod
    def user(cls, detail: str) -> DecisionSource:
        return cls(kind=DecisionKind.USER, detail=detail)

    @classmethod
    def strategy(cls, name: str) -> DecisionSource:
        return cls(kind=DecisionKind.STRATEGY, detail=name)

    @classmethod
    def system(cls, detail: str) -> DecisionSource:
        return cls(kind=DecisionKind.SYSTEM, detail=detail)

    @classmethod
    def default(cls) -> DecisionSource:
        return cls.system("Default Policy")

    @classmethod
    def cycle_cut(cls) -> DecisionSource:
        return cls.system("Cycle Cut Strategy")

    @property
    def description(self) -> str:
        """Human-readable provenance string."""
        if self.kind == DecisionKind.USER:
            return f"User Defined: {self.detail}"
        if self.kind == DecisionKind.STRATEGY:
            return f"Strategy Selected: {self.detail}"
        return self.detail


# ---------------------------------------------------------------------------
# Assertions, blame and verdicts
# ---------------------------------------------------------------------------


class AssertionStatus(StrEnum):
    """Outcome of a single verification."""

    PASSED = "passed"
    FAILED = "failed"


class Blame(StrEnum):
    """Who is responsible for a failure."""

    SETUP_FAILURE = "setup_failure"
    TEST_FAILURE = "test_failure"
    EXECUTION_FAILURE = "execution_failure"
    INTERNAL_ERROR = "internal_error"


class AssertionRecord(BaseModel):
    """Result of one verification performed during a scenario.

    Attributes:
        status: PASSED or FAILED.
        rule: Name of the verified rule.
        message: Human-readable explanation.
        expected: Expected value rendering, if any.
        actual: Actual value rendering, if any.
        cause: Exception that produced a FAILED record, if any.
        blame: Blame category derived from ``cause``.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    status: AssertionStatus
    rule: str
    message: str
    expected: str | None = None
    actual: str | None = None
    cause: BaseException | None = Field(default=None, exclude=True, repr=False)
    blame: Blame | None = None


class StatusKind(StrEnum):
    """Terminal status of a test execution."""

    PASSED = "passed"
    ASSERTION_FAILED = "assertion_failed"
    EXECUTION_ERROR = "execution_error"
    DISABLED = "disabled"
    ABORTED = "aborted"


class TestStatus(BaseModel):
    """Terminal verdict of one test, built through the factory classmethods."""

    __test__: ClassVar[bool] = False

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    kind: StatusKind
    message: str | None = None
    expected: str | None = None
    actual: str | None = None
    cause: BaseException | None = Field(default=None, exclude=True, repr=False)
    blame: Blame | None = None
    stack: tuple[str, ...] = ()

    @classmethod
    def passed(cls) -> TestStatus:
        return cls(kind=StatusKind.PASSED)

    @classmethod
    def assertion_failed(
        cls,
        message: str,
        expected: str | None = None,
        actual: str | None = None,
        cause: BaseException | None = None,
    ) -> TestStatus:
        return cls(
            kind=StatusKind.ASSERTION_FAILED,
            message=message,
            expected=expected,
            actual=actual,
            cause=cause,
            blame=Blame.TEST_FAILURE,
        )

    @classmethod
    def execution_error(
        cls,
        cause: BaseException,
        blame: Blame,
        stack: tuple[str, ...] = (),
    ) -> TestStatus:
        return cls(
            kind=StatusKind.EXECUTION_ERROR,
            message=str(cause) or type(cause).__name__,
            cause=cause,
            blame=blame,
            stack=stack,
        )

    @classmethod
    def disabled(cls) -> TestStatus:
        return cls(kind=StatusKind.DISABLED)

    @classmethod
    def aborted(cls, reason: str) -> TestStatus:
        return cls(kind=StatusKind.ABORTED, message=reason)

    @property
    def is_passed(self) -> bool:
        return self.kind == StatusKind.PASSED


# ---------------------------------------------------------------------------
# Dependency strategies and test specifications
# ---------------------------------------------------------------------------


class StrategyKind(StrEnum):
    """How a dependency is provided to the target."""

    STATELESS_MOCK = "stateless_mock"
    STATEFUL_FAKE = "stateful_fake"
    ENVIRONMENT = "environment"
    REAL = "real"


class EnvType(StrEnum):
    """Environment facet replaced by an ENVIRONMENT dependency."""

    TIME = "time"
    SECURITY = "security"


class MockingStrategy(BaseModel):
    """Provisioning strategy of one dependency.

    ``REAL`` requires ``implementation``; ``ENVIRONMENT`` requires
    ``env_type``.
    """

    model_config = ConfigDict(frozen=True)

    kind: StrategyKind
    env_type: EnvType | None = None
    implementation: type | None = None

    @model_validator(mode="after")
    def _check_payload(self) -> MockingStrategy:
        if self.kind == StrategyKind.REAL and self.implementation is None:
            msg = "REAL strategy requires an implementation type"
            raise ValueError(msg)
        if self.kind == StrategyKind.ENVIRONMENT and self.env_type is None:
            msg = "ENVIRONMENT strategy requires an env_type"
            raise ValueError(msg)
        return self

    @classmethod
    def stateless_mock(cls) -> MockingStrategy:
        return cls(kind=StrategyKind.STATELESS_MOCK)

    @classmethod
    def stateful_fake(cls) -> MockingStrategy:
        return cls(kind=StrategyKind.STATEFUL_FAKE)

    @classmethod
    def environment(cls, env_type: EnvType) -> MockingStrategy:
        return cls(kind=StrategyKind.ENVIRONMENT, env_type=env_type)

    @classmethod
    def real(cls, implementation: type) -> MockingStrategy:
        return cls(kind=StrategyKind.REAL, implementation=implementation)


class DependencyMetadata(BaseModel):
    """Declared dependency of a test target.

    Attributes:
        name: Non-blank dependency name.
        dependency_type: The type requested by the target.
        strategy: How the dependency is provisioned.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    dependency_type: type
    strategy: MockingStrategy

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, v: str) -> str:
        if not v.strip():
            msg = "Dependency name must not be blank"
            raise ValueError(msg)
        return v


class TestModeKind(StrEnum):
    """Kind of verification run against a target."""

    __test__ = False

    USER_SCENARIO = "user_scenario"
    CONTRACT_AUTO = "contract_auto"
    DATA_COMPLIANCE = "data_compliance"


class TestMode(BaseModel):
    """A verification mode; ``subject`` is the interface or data type checked."""

    __test__: ClassVar[bool] = False

    model_config = ConfigDict(frozen=True)

    kind: TestModeKind
    subject: type | None = None

    @model_validator(mode="after")
    def _check_subject(self) -> TestMode:
        if self.kind != TestModeKind.USER_SCENARIO and self.subject is None:
            msg = f"{self.kind} mode requires a subject type"
            raise ValueError(msg)
        return self

    @classmethod
    def user_scenario(cls) -> TestMode:
        return cls(kind=TestModeKind.USER_SCENARIO)

    @classmethod
    def contract_auto(cls, interface: type) -> TestMode:
        return cls(kind=TestModeKind.CONTRACT_AUTO, subject=interface)

    @classmethod
    def data_compliance(cls, data_type: type) -> TestMode:
        return cls(kind=TestModeKind.DATA_COMPLIANCE, subject=data_type)


class TestSpecification(BaseModel):
    """What to test: the target, its modes, dependencies and optional seed.

    Attributes:
        target: Class under test.
        modes: Non-empty tuple of verification modes.
        required_dependencies: Explicit dependency strategies.
        seed: Fixed seed for reproduction; ``None`` seeds from the clock.
    """

    __test__: ClassVar[bool] = False

    model_config = ConfigDict(frozen=True)

    target: type
    modes: tuple[TestMode, ...]
    required_dependencies: tuple[DependencyMetadata, ...] = ()
    seed: int | None = None

    @field_validator("modes")
    @classmethod
    def _modes_not_empty(cls, v: tuple[TestMode, ...]) -> tuple[TestMode, ...]:
        if not v:
            msg = "A test specification needs at least one mode"
            raise ValueError(msg)
        return v

    @property
    def display_name(self) -> str:
        return self.target.__qualname__

    def dependency_for(self, dependency_type: type) -> DependencyMetadata | None:
        """Return the declared dependency for *dependency_type*, if any."""
        for dependency in self.required_dependencies:
            if dependency.dependency_type is dependency_type:
                return dependency
        return None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class WorkerId(BaseModel):
    """Identity of a parallel execution lane."""

    model_config = ConfigDict(frozen=True)

    value: int

    @field_validator("value")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            msg = "WorkerId must be >= 0"
            raise ValueError(msg)
        return v

    def __str__(self) -> str:
        return str(self.value)


class TestResult(BaseModel):
    """Outcome of one test execution.

    Attributes:
        target_name: Qualified name of the tested class.
        status: Terminal verdict.
        duration_seconds: Wall-clock duration.
        records: Assertion records returned by the chain.
        seed: Seed the execution ran with.
    """

    __test__: ClassVar[bool] = False

    model_config = ConfigDict(frozen=True)

    target_name: str
    status: TestStatus
    duration_seconds: float = 0.0
    records: tuple[AssertionRecord, ...] = ()
    seed: int | None = None


class TestResultEvent(BaseModel):
    """Summary of one finished test handed to result publishers."""

    __test__: ClassVar[bool] = False

    model_config = ConfigDict(frozen=True)

    run_id: str
    test_name: str
    worker_id: int
    status: StatusKind
    duration_ms: int
    journal_path: str
    timestamp: int
    seed: int | None = None
    blame: Blame | None = None


# ---------------------------------------------------------------------------
# Engine configuration
# ---------------------------------------------------------------------------


class LogRetention(StrEnum):
    """When a worker journal is snapshotted after a test."""

    NONE = "none"
    ON_FAILURE = "on_failure"
    ALWAYS = "always"


class AuditDepth(StrEnum):
    """How much of the DESIGN phase is written to the trace."""

    SIMPLE = "simple"
    EXPLAINABLE = "explainable"


_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


class EngineConfig(BaseModel):
    """Engine configuration.

    The structural size bounds apply to every collection and map that
    carries no narrower ``Size`` attribute.

    Attributes:
        seed: Global seed; ``None`` seeds every test from the clock.
        min_structural_size: Lower bound of generated collection sizes.
        max_structural_size: Upper bound of generated collection sizes.
        trace_dir: Root directory for worker journals and snapshots.
        audit_retention: When journals are snapshotted.
        audit_depth: Whether DESIGN decisions are written to the journal.
        parallelism: Number of worker threads.
        verbose: Keep framework frames in reported stack traces.
        log_level: Logging level name.
        log_file: Optional log file path.
    """

    model_config = ConfigDict(frozen=True)

    seed: int | None = None
    min_structural_size: int = 0
    max_structural_size: int = 10
    trace_dir: str = "build/kontrakt"
    audit_retention: LogRetention = LogRetention.ON_FAILURE
    audit_depth: AuditDepth = AuditDepth.SIMPLE
    parallelism: int = 1
    verbose: bool = False
    log_level: str = "INFO"
    log_file: str | None = None

    @field_validator("min_structural_size")
    @classmethod
    def _non_negative_size(cls, v: int) -> int:
        if v < 0:
            msg = "min_structural_size must be >= 0"
            raise ValueError(msg)
        return v

    @field_validator("parallelism")
    @classmethod
    def _positive_parallelism(cls, v: int) -> int:
        if v < 1:
            msg = "parallelism must be >= 1"
            raise ValueError(msg)
        return v

    @field_validator("trace_dir")
    @classmethod
    def _trace_dir_not_empty(cls, v: str) -> str:
        if not v.strip():
            msg = "trace_dir must not be empty"
            raise ValueError(msg)
        return v

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, v: str) -> str:
        level = v.upper()
        if level not in _LOG_LEVELS:
            msg = f"log_level must be one of {sorted(_LOG_LEVELS)}, got {v!r}"
            raise ValueError(msg)
        return level

    @model_validator(mode="after")
    def _bounds_ordered(self) -> EngineConfig:
        if self.max_structural_size < self.min_structural_size:
            msg = (
                f"max_structural_size ({self.max_structural_size}) must be >= "
                f"min_structural_size ({self.min_structural_size})"
            )
            raise ValueError(msg)
        return self
