"""Kontrakt: deterministic fixture generation and auditable test execution."""

from kontrakt.engine import (
    TestExecution,
    apply_env_overrides,
    configure_logging,
    run_specifications,
)
from kontrakt.errors import (
    ContractViolationException,
    ExecutionException,
    KontraktConfigurationException,
    KontraktError,
)
from kontrakt.fixtures import FixtureGenerator, GenerationPipeline
from kontrakt.markers import (
    Digits,
    Email,
    Future,
    Negative,
    NegativeOrZero,
    NotBlank,
    NotEmpty,
    Past,
    Pattern,
    Positive,
    PositiveOrZero,
    Range,
    Size,
    Url,
    Uuid,
    scenario,
)
from kontrakt.mocking import ScenarioContext
from kontrakt.models import (
    DependencyMetadata,
    EngineConfig,
    MockingStrategy,
    TestMode,
    TestResult,
    TestSpecification,
)

__version__ = "0.1.0"

__all__ = [
    "ContractViolationException",
    "DependencyMetadata",
    "Digits",
    "Email",
    "EngineConfig",
    "ExecutionException",
    "FixtureGenerator",
    "Future",
    "GenerationPipeline",
    "KontraktConfigurationException",
    "KontraktError",
    "MockingStrategy",
    "Negative",
    "NegativeOrZero",
    "NotBlank",
    "NotEmpty",
    "Past",
    "Pattern",
    "Positive",
    "PositiveOrZero",
    "Range",
    "ScenarioContext",
    "Size",
    "TestExecution",
    "TestMode",
    "TestResult",
    "TestSpecification",
    "Url",
    "Uuid",
    "apply_env_overrides",
    "configure_logging",
    "run_specifications",
    "scenario",
]
