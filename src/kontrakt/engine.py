"""Engine driver: logging, environment overrides and test execution.

``run_specifications()`` is the programmatic entry point::

    results = run_specifications(
        [TestSpecification(target=OrderService, modes=(TestMode.user_scenario(),))],
        EngineConfig(seed=42),
    )

Each specification is executed by a single-use ``TestExecution`` on a
worker thread. Workers own their trace sink, so tests running in
parallel never share a journal.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import itertools
import logging
import os
from pathlib import Path
import threading
import time
from typing import TYPE_CHECKING, Any
import uuid

from kontrakt.chain import ScenarioExecutionChain
from kontrakt.context import system_clock
from kontrakt.errors import KontraktInternalException, unwrap
from kontrakt.executor import DefaultScenarioExecutor
from kontrakt.instance_factory import TestInstanceFactory
from kontrakt.interceptors import (
    AuditingInterceptor,
    ResultResolverInterceptor,
    VerdictDecider,
)
from kontrakt.mocking import UnittestMockEngine
from kontrakt.models import EngineConfig, TestResult, WorkerId
from kontrakt.publishers import BroadcastingResultPublisher, LoggingResultPublisher
from kontrakt.trace import WorkerTraceSinkPool

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from kontrakt.chain import ScenarioInterceptor
    from kontrakt.context import Clock
    from kontrakt.executor import TestScenarioExecutor
    from kontrakt.models import TestSpecification
    from kontrakt.publishers import TestResultPublisher
    from kontrakt.trace import TraceSink

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Environment variable overrides
# ---------------------------------------------------------------------------

_ENV_FIELD_MAP: dict[str, str] = {
    "KONTRAKT_SEED": "seed",
    "KONTRAKT_LOG_LEVEL": "log_level",
    "KONTRAKT_MAX_COLLECTION_SIZE": "max_structural_size",
    "KONTRAKT_TRACE_DIR": "trace_dir",
    "KONTRAKT_PARALLELISM": "parallelism",
}
"""Maps environment variable names to EngineConfig field names."""

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def apply_env_overrides(config: EngineConfig) -> EngineConfig:
    """Apply ``KONTRAKT_*`` env var overrides to a config.

    Environment variables override **default** field values but do **not**
    override values set explicitly. A field is considered explicitly set
    when its value differs from the ``EngineConfig`` default.

    Invalid values (non-parseable or violating validators) are silently
    ignored.

    Args:
        config: The engine configuration to apply overrides to.

    Returns:
        A new ``EngineConfig`` with env var overrides applied.
    """
    defaults = EngineConfig()
    overrides: dict[str, Any] = {}

    for env_var, field_name in _ENV_FIELD_MAP.items():
        env_value = os.environ.get(env_var)
        if env_value is None:
            continue

        if getattr(config, field_name) != getattr(defaults, field_name):
            continue

        parsed = _parse_env_value(field_name, env_value, config)
        if parsed is not None:
            overrides[field_name] = parsed

    if not overrides:
        return config

    return config.model_copy(update=overrides)


def _parse_env_value(field_name: str, raw: str, config: EngineConfig) -> Any:
    """Parse a raw env var string into the type of *field_name*.

    Returns:
        The parsed value, or ``None`` if parsing fails or would violate
        validators.
    """
    raw = raw.strip()
    if field_name == "log_level":
        level = raw.upper()
        return level if level in _LOG_LEVELS else None

    if field_name == "trace_dir":
        return raw or None

    try:
        value = int(raw)
    except ValueError:
        return None
    if field_name == "max_structural_size" and value < config.min_structural_size:
        return None
    if field_name == "parallelism" and value < 1:
        return None
    return value


# ---------------------------------------------------------------------------
# Logging configuration
# ---------------------------------------------------------------------------

_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s - %(message)s"


def configure_logging(config: EngineConfig) -> None:
    """Configure the ``kontrakt`` logger.

    Installs a console handler and, when ``config.log_file`` is set, a file
    handler. Repeated calls replace the handlers installed by earlier
    calls instead of adding more.

    Args:
        config: Engine configuration providing ``log_level`` and
            optional ``log_file``.
    """
    package_logger = logging.getLogger("kontrakt")
    package_logger.setLevel(getattr(logging, config.log_level, logging.INFO))
    package_logger.propagate = False

    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(_LOG_FORMAT))
    package_logger.addHandler(console)

    if config.log_file is not None:
        Path(config.log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(config.log_file)
        file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        package_logger.addHandler(file_handler)


# ---------------------------------------------------------------------------
# Single test execution
# ---------------------------------------------------------------------------


class TestExecution:
    """Executes one specification exactly once.

    The target is built by the instance factory, then the chain
    ``ResultResolverInterceptor -> AuditingInterceptor -> *interceptors``
    runs the leaf executor. A failure while building the target never
    reaches the chain; it is journaled, published and reported as an
    ``EXECUTION_ERROR`` with ``SETUP_FAILURE`` blame.

    Args:
        specification: The test to run.
        instance_factory: Builds the context and target.
        executor: Leaf of the chain.
        trace_sink: Journal of the worker running the test.
        publisher: Receives the result event.
        worker_id: Worker running the test.
        config: Engine configuration.
        clock: Timestamp source.
        interceptors: Extra interceptors placed inside the built-in ones.
    """

    __test__ = False

    def __init__(
        self,
        specification: TestSpecification,
        instance_factory: TestInstanceFactory,
        executor: TestScenarioExecutor,
        *,
        trace_sink: TraceSink,
        publisher: TestResultPublisher,
        worker_id: WorkerId,
        config: EngineConfig | None = None,
        clock: Clock = system_clock,
        interceptors: Sequence[ScenarioInterceptor] = (),
    ) -> None:
        self._specification = specification
        self._factory = instance_factory
        self._executor = executor
        self._config = config if config is not None else EngineConfig()
        self._decider = VerdictDecider(verbose=self._config.verbose)
        self._auditor = AuditingInterceptor(
            trace_sink,
            publisher,
            self._config,
            worker_id,
            clock=clock,
            verdict_decider=self._decider,
        )
        self._interceptors = tuple(interceptors)
        self._lock = threading.Lock()
        self._executed = False

    def execute(self) -> TestResult:
        """Run the test and return its result.

        Raises:
            KontraktInternalException: If called a second time.
        """
        with self._lock:
            if self._executed:
                msg = "TestExecution can only be executed once"
                raise KontraktInternalException(msg)
            self._executed = True

        name = self._specification.display_name
        started = time.perf_counter()
        logger.info("Executing %s", name)

        try:
            context = self._factory.create(self._specification)
        except Exception as exc:
            cause = unwrap(exc)
            logger.error("Setup of %s failed: %s", name, cause)
            seed = self._specification.seed
            if seed is None:
                seed = self._config.seed
            status = self._auditor.finish(
                test_name=name,
                run_id=uuid.uuid4().hex,
                seed=seed,
                records=(),
                error=cause,
                duration_ms=_elapsed_ms(started),
            )
            return TestResult(
                target_name=name,
                status=status,
                duration_seconds=time.perf_counter() - started,
                seed=seed,
            )

        chain = ScenarioExecutionChain(
            (ResultResolverInterceptor(), self._auditor, *self._interceptors),
            0,
            context,
            self._executor,
        )
        records = chain.proceed(context)
        status = self._decider.decide(records)
        duration = time.perf_counter() - started
        logger.info("Finished %s: %s (seed=%d, %.3fs)", name, status.kind, context.seed, duration)
        return TestResult(
            target_name=name,
            status=status,
            duration_seconds=duration,
            records=tuple(records),
            seed=context.seed,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


# ---------------------------------------------------------------------------
# Parallel driver
# ---------------------------------------------------------------------------


def run_specifications(
    specifications: Iterable[TestSpecification],
    config: EngineConfig | None = None,
    *,
    publishers: Sequence[TestResultPublisher] | None = None,
    executor: TestScenarioExecutor | None = None,
    mocking_engine: UnittestMockEngine | None = None,
    interceptors: Sequence[ScenarioInterceptor] = (),
    clock: Clock = system_clock,
) -> list[TestResult]:
    """Execute *specifications* on ``config.parallelism`` worker threads.

    Each thread is given a stable ``WorkerId`` and its own trace sink.
    The sink pool and the publishers are closed afterwards, even when a
    test crashes the driver.

    Args:
        specifications: Tests to run.
        config: Engine configuration; defaults when omitted.
        publishers: Result publishers; a ``LoggingResultPublisher`` when
            omitted.
        executor: Leaf executor; ``DefaultScenarioExecutor`` when omitted.
        mocking_engine: Mock and stub provider; ``UnittestMockEngine`` when
            omitted.
        interceptors: Extra interceptors for every test.
        clock: Clock used for seeds and timestamps.

    Returns:
        One result per specification, in input order.
    """
    config = config if config is not None else EngineConfig()
    specifications = list(specifications)
    engine = mocking_engine if mocking_engine is not None else UnittestMockEngine()
    factory = TestInstanceFactory(engine, engine, config=config, clock=clock)
    leaf = executor if executor is not None else DefaultScenarioExecutor()
    publisher = BroadcastingResultPublisher(
        publishers if publishers is not None else [LoggingResultPublisher()]
    )
    pool = WorkerTraceSinkPool(config.trace_dir)

    worker_ids: dict[int, WorkerId] = {}
    counter = itertools.count()
    ids_lock = threading.Lock()

    def current_worker() -> WorkerId:
        ident = threading.get_ident()
        with ids_lock:
            if ident not in worker_ids:
                worker_ids[ident] = WorkerId(value=next(counter))
            return worker_ids[ident]

    def run_one(specification: TestSpecification) -> TestResult:
        worker_id = current_worker()
        return TestExecution(
            specification,
            factory,
            leaf,
            trace_sink=pool.get_sink(worker_id),
            publisher=publisher,
            worker_id=worker_id,
            config=config,
            clock=clock,
            interceptors=interceptors,
        ).execute()

    logger.info("Running %d test(s) on %d worker(s)", len(specifications), config.parallelism)
    try:
        with ThreadPoolExecutor(
            max_workers=config.parallelism, thread_name_prefix="kontrakt-worker"
        ) as workers:
            return list(workers.map(run_one, specifications))
    finally:
        pool.close()
        publisher.close()
