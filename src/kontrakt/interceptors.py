"""Built-in interceptors: result resolution and auditing.

The engine installs them outermost first::

    ResultResolverInterceptor -> AuditingInterceptor -> executor

so the auditing interceptor sees the raw exception of a failing scenario
and the result resolver turns it into a failed ``AssertionRecord``.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from kontrakt.context import epoch_millis, system_clock
from kontrakt.errors import (
    ContractViolationException,
    ExecutionException,
    KontraktConfigurationException,
    KontraktInternalException,
    KontraktLifecycleException,
    classify_blame,
    filtered_stack,
    unwrap,
)
from kontrakt.fixtures import render_value
from kontrakt.models import (
    AssertionRecord,
    AssertionStatus,
    AuditDepth,
    Blame,
    EngineConfig,
    LogRetention,
    StatusKind,
    TestResultEvent,
    TestStatus,
)
from kontrakt.trace import (
    DesignDecision,
    ExceptionTrace,
    ExecutionTrace,
    TestVerdict,
    VerificationTrace,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from kontrakt.chain import Chain
    from kontrakt.context import Clock, EphemeralTestContext
    from kontrakt.models import WorkerId
    from kontrakt.publishers import TestResultPublisher
    from kontrakt.trace import TraceSink

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Verdict
# ---------------------------------------------------------------------------


class VerdictDecider:
    """Derives the terminal ``TestStatus`` of a test.

    An escaped error decides first; otherwise the first failed record;
    otherwise the test passed.

    Args:
        verbose: Keep framework frames in reported stack traces.
    """

    def __init__(self, *, verbose: bool = False) -> None:
        self._verbose = verbose

    def decide(
        self, records: Sequence[AssertionRecord], error: BaseException | None = None
    ) -> TestStatus:
        if error is not None:
            cause = unwrap(error)
            if isinstance(cause, (AssertionError, ContractViolationException)):
                return TestStatus.assertion_failed(str(cause), cause=cause)
            return TestStatus.execution_error(
                cause,
                classify_blame(cause),
                filtered_stack(cause, verbose=self._verbose),
            )
        for record in records:
            if record.status == AssertionStatus.FAILED:
                if record.cause is not None and record.blame not in (None, Blame.TEST_FAILURE):
                    return TestStatus.execution_error(
                        record.cause,
                        record.blame,
                        filtered_stack(record.cause, verbose=self._verbose),
                    )
                return TestStatus.assertion_failed(
                    record.message,
                    expected=record.expected,
                    actual=record.actual,
                    cause=record.cause,
                )
        return TestStatus.passed()


# ---------------------------------------------------------------------------
# Result resolution
# ---------------------------------------------------------------------------


class ResultResolverInterceptor:
    """Turns an exception escaping the chain into a failed record."""

    def intercept(self, chain: Chain) -> list[AssertionRecord]:
        try:
            return chain.proceed(chain.context)
        except Exception as exc:
            cause = unwrap(exc)
            logger.debug("Scenario raised %s: %s", type(cause).__name__, cause)
            return [to_failure_record(cause)]


def to_failure_record(cause: BaseException) -> AssertionRecord:
    """Map an unwrapped exception to a FAILED ``AssertionRecord``."""
    blame = classify_blame(cause)
    if isinstance(cause, ContractViolationException):
        rule, message, expected, actual = cause.rule, str(cause), None, None
    elif isinstance(cause, AssertionError):
        rule, message = "StandardAssertion", str(cause) or "Assertion failed"
        expected, actual = "True", "False"
    elif isinstance(cause, (KontraktConfigurationException, ExecutionException)):
        rule, message = "ConfigurationError", f"Configuration Error: {cause}"
        expected = actual = None
    elif isinstance(cause, (KontraktInternalException, KontraktLifecycleException)):
        rule, message = "SystemError", f"Internal Framework Error: {cause}"
        expected = actual = None
    else:
        rule = type(cause).__name__
        message = f"Unexpected Exception: {cause}"
        expected = actual = None
    return AssertionRecord(
        status=AssertionStatus.FAILED,
        rule=rule,
        message=message,
        expected=expected,
        actual=actual,
        cause=cause,
        blame=blame,
    )


# ---------------------------------------------------------------------------
# Auditing
# ---------------------------------------------------------------------------


class AuditingInterceptor:
    """Writes the trace of one test to its worker journal.

    After the inner chain returns or raises, the interceptor emits the
    collected decisions (DESIGN only at ``EXPLAINABLE`` depth), one
    ``ExecutionTrace`` for the invocation, one ``VerificationTrace`` per
    record, an ``ExceptionTrace`` on error and a ``TestVerdict``. The
    journal is then snapshotted according to the retention policy, a
    ``TestResultEvent`` is published and the sink is reset for the next
    test of the worker. Exceptions from the chain are re-raised.

    Args:
        trace_sink: Journal of the current worker.
        result_publisher: Receives the result event.
        config: Supplies retention, depth and verbosity.
        worker_id: Worker running the test.
        clock: Timestamp source.
        verdict_decider: Derives the verdict; built from *config* if omitted.
    """

    def __init__(
        self,
        trace_sink: TraceSink,
        result_publisher: TestResultPublisher,
        config: EngineConfig,
        worker_id: WorkerId,
        *,
        clock: Clock = system_clock,
        verdict_decider: VerdictDecider | None = None,
    ) -> None:
        self._sink = trace_sink
        self._publisher = result_publisher
        self._config = config
        self._worker_id = worker_id
        self._clock = clock
        self._decider = (
            verdict_decider
            if verdict_decider is not None
            else VerdictDecider(verbose=config.verbose)
        )

    def intercept(self, chain: Chain) -> list[AssertionRecord]:
        context = chain.context
        started = time.perf_counter()
        records: list[AssertionRecord] = []
        error: Exception | None = None
        try:
            records = chain.proceed(context)
        except Exception as exc:
            error = exc
            raise
        finally:
            duration_ms = int((time.perf_counter() - started) * 1000)
            self._audit(context, records, error, duration_ms)
        return records

    def _audit(
        self,
        context: EphemeralTestContext,
        records: Sequence[AssertionRecord],
        error: Exception | None,
        duration_ms: int,
    ) -> TestStatus:
        now = epoch_millis(self._clock)
        explainable = self._config.audit_depth == AuditDepth.EXPLAINABLE
        for event in context.trace.decisions:
            if explainable or not isinstance(event, DesignDecision):
                self._sink.emit(event)

        target = context.specification.display_name
        method = context.target_method or "execute"
        self._sink.emit(
            ExecutionTrace(
                timestamp=now,
                method_signature=f"{target}.{method}",
                arguments=tuple(render_value(a) for a in context.trace.generated_arguments),
                duration_ms=duration_ms,
            )
        )
        for record in records:
            self._sink.emit(
                VerificationTrace(
                    timestamp=now, rule=record.rule, status=record.status, detail=record.message
                )
            )

        return self.finish(
            test_name=target,
            run_id=context.trace.run_id,
            seed=context.seed,
            records=records,
            error=error,
            duration_ms=duration_ms,
        )

    def finish(
        self,
        *,
        test_name: str,
        run_id: str,
        seed: int | None,
        records: Sequence[AssertionRecord],
        error: BaseException | None,
        duration_ms: int,
    ) -> TestStatus:
        """Emit the exception and verdict, retain the journal and publish.

        Also used for tests whose context could not be created, which
        never reach the chain.

        Returns:
            The verdict of the test.
        """
        now = epoch_millis(self._clock)
        if error is not None:
            cause = unwrap(error)
            self._sink.emit(
                ExceptionTrace(
                    timestamp=now,
                    exception_type=type(cause).__qualname__,
                    message=str(cause),
                    stack_frames=filtered_stack(cause, verbose=self._config.verbose),
                    blame=classify_blame(cause),
                )
            )

        status = self._decider.decide(records, error)
        self._sink.emit(
            TestVerdict(timestamp=now, status=status.kind, duration_total_ms=duration_ms)
        )
        journal = self._retain(run_id, status)
        self._publisher.publish(
            TestResultEvent(
                run_id=run_id,
                test_name=test_name,
                worker_id=self._worker_id.value,
                status=status.kind,
                duration_ms=duration_ms,
                journal_path=journal,
                timestamp=now,
                seed=seed,
                blame=status.blame,
            )
        )
        self._sink.reset()
        return status

    def _retain(self, run_id: str, status: TestStatus) -> str:
        retention = self._config.audit_retention
        if retention == LogRetention.ALWAYS:
            folder = "traces" if status.kind == StatusKind.PASSED else "failures"
            return self._sink.snapshot_to(f"{folder}/run-{run_id}.ndjson")
        if retention == LogRetention.ON_FAILURE and status.kind != StatusKind.PASSED:
            return self._sink.snapshot_to(f"failures/run-{run_id}.ndjson")
        return str(self._sink.journal_path)

