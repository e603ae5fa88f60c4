"""Tests for the verdict decider and the built-in interceptors.

Validates failure mapping, verdict precedence, and the journal, retention
and publishing behaviour of ``AuditingInterceptor`` in
``src/kontrakt/interceptors.py``.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from kontrakt.chain import ScenarioExecutionChain
from kontrakt.errors import (
    ContractViolationException,
    InvocationError,
    KontraktConfigurationException,
    KontraktLifecycleException,
    VMExecutionException,
    invoke,
)
from kontrakt.executor import DefaultScenarioExecutor
from kontrakt.interceptors import (
    AuditingInterceptor,
    ResultResolverInterceptor,
    VerdictDecider,
    to_failure_record,
)
from kontrakt.models import (
    AssertionRecord,
    AssertionStatus,
    AuditDepth,
    Blame,
    LogRetention,
    StatusKind,
    TypeReference,
    WorkerId,
)
from kontrakt.trace import WorkerTraceSinkPool
import pytest

from tests.conftest import FIXED_CLOCK, RecordingPublisher, make_config, make_context
from tests.sample_domain import BrokenCalculator, Calculator, CrashingCalculator


def _raised(exc: Exception) -> Exception:
    try:
        raise exc
    except Exception as caught:
        return caught


def _divide_by_zero() -> float:
    return 1 / 0


def _events(path: str | Path) -> list[str]:
    lines = Path(path).read_text(encoding="utf-8").splitlines()
    return [json.loads(line)["event"] for line in lines]


# ===========================================================================
# Failure records
# ===========================================================================


@pytest.mark.unit
class TestToFailureRecord:
    """Exceptions map to failed records by category."""

    def test_assertion(self) -> None:
        """Plain assertions report True/False."""
        record = to_failure_record(AssertionError("totals differ"))
        assert (record.rule, record.message, record.expected, record.actual) == (
            "StandardAssertion",
            "totals differ",
            "True",
            "False",
        )
        assert record.blame == Blame.TEST_FAILURE

    def test_bare_assertion_message(self) -> None:
        """An assertion without message gets a default one."""
        assert to_failure_record(AssertionError()).message == "Assertion failed"

    def test_contract_violation(self) -> None:
        """Contract violations keep their rule."""
        record = to_failure_record(ContractViolationException("Positive", "must be > 0"))
        assert (record.rule, record.message) == ("Positive", "must be > 0")

    @pytest.mark.parametrize(
        ("cause", "rule", "prefix", "blame"),
        [
            (
                KontraktConfigurationException("bad wiring"),
                "ConfigurationError",
                "Configuration Error: ",
                Blame.SETUP_FAILURE,
            ),
            (
                VMExecutionException(TypeReference(type_id="Order"), "broken"),
                "ConfigurationError",
                "Configuration Error: ",
                Blame.SETUP_FAILURE,
            ),
            (
                KontraktLifecycleException("pool closed"),
                "SystemError",
                "Internal Framework Error: ",
                Blame.INTERNAL_ERROR,
            ),
            (
                ZeroDivisionError("division by zero"),
                "ZeroDivisionError",
                "Unexpected Exception: ",
                Blame.EXECUTION_FAILURE,
            ),
        ],
    )
    def test_other_categories(
        self, cause: Exception, rule: str, prefix: str, blame: Blame
    ) -> None:
        """Framework and user errors are labelled by category."""
        record = to_failure_record(cause)
        assert record.status == AssertionStatus.FAILED
        assert record.rule == rule
        assert record.message == f"{prefix}{cause}"
        assert record.blame == blame
        assert record.cause is cause


# ===========================================================================
# Verdicts
# ===========================================================================


@pytest.mark.unit
class TestVerdictDecider:
    """Errors decide first, then the first failed record."""

    def test_all_passed(self) -> None:
        """Only passed records make a passed verdict."""
        record = AssertionRecord(status=AssertionStatus.PASSED, rule="r", message="ok")
        assert VerdictDecider().decide([record]).is_passed

    def test_first_failure_wins(self) -> None:
        """The first failed record supplies the message."""
        records = [
            AssertionRecord(status=AssertionStatus.PASSED, rule="a", message="ok"),
            AssertionRecord(status=AssertionStatus.FAILED, rule="b", message="first"),
            AssertionRecord(status=AssertionStatus.FAILED, rule="c", message="second"),
        ]
        status = VerdictDecider().decide(records)
        assert status.kind == StatusKind.ASSERTION_FAILED
        assert status.message == "first"

    def test_error_beats_records(self) -> None:
        """An escaped error decides even when records passed."""
        record = AssertionRecord(status=AssertionStatus.PASSED, rule="a", message="ok")
        with pytest.raises(InvocationError) as excinfo:
            invoke(_divide_by_zero)
        status = VerdictDecider().decide([record], excinfo.value)
        assert status.kind == StatusKind.EXECUTION_ERROR
        assert status.blame == Blame.EXECUTION_FAILURE
        assert isinstance(status.cause, ZeroDivisionError)

    def test_escaped_assertion_is_assertion_failure(self) -> None:
        """Assertion errors are failures, not errors."""
        status = VerdictDecider().decide([], AssertionError("nope"))
        assert status.kind == StatusKind.ASSERTION_FAILED
        assert status.blame == Blame.TEST_FAILURE

    def test_failed_record_with_setup_cause(self) -> None:
        """A failed record caused by a setup error is an execution error."""
        record = to_failure_record(_raised(KontraktConfigurationException("bad wiring")))
        status = VerdictDecider().decide([record])
        assert status.kind == StatusKind.EXECUTION_ERROR
        assert status.blame == Blame.SETUP_FAILURE


# ===========================================================================
# Interceptors
# ===========================================================================


def _chain(
    target: type,
    trace_dir: Path,
    publisher: RecordingPublisher,
    **config_overrides: Any,
) -> tuple[list[AssertionRecord], WorkerTraceSinkPool, Any]:
    config = make_config(trace_dir=str(trace_dir), **config_overrides)
    pool = WorkerTraceSinkPool(trace_dir)
    sink = pool.get_sink(WorkerId(value=0))
    interceptors = [
        ResultResolverInterceptor(),
        AuditingInterceptor(sink, publisher, config, WorkerId(value=0), clock=FIXED_CLOCK),
    ]
    context = make_context(target)
    chain = ScenarioExecutionChain(interceptors, 0, context, DefaultScenarioExecutor())
    return chain.proceed(context), pool, sink


@pytest.mark.unit
class TestAuditingInterceptor:
    """Journals are written, retained and published per test."""

    def test_passing_test_not_retained_on_failure_policy(
        self, trace_dir: Path, publisher: RecordingPublisher
    ) -> None:
        """ON_FAILURE keeps no snapshot of a passing test."""
        records, pool, sink = _chain(Calculator, trace_dir, publisher)
        pool.close()
        assert all(r.status == AssertionStatus.PASSED for r in records)
        [event] = publisher.events
        assert event.status == StatusKind.PASSED
        assert event.test_name == "Calculator"
        assert event.seed == 7
        assert event.journal_path == str(sink.journal_path)
        assert not (trace_dir / "failures").exists()

    def test_failing_test_snapshotted(
        self, trace_dir: Path, publisher: RecordingPublisher
    ) -> None:
        """A failure is copied to failures/ and reported with its blame."""
        records, pool, _ = _chain(BrokenCalculator, trace_dir, publisher)
        pool.close()
        [record] = records
        assert record.rule == "StandardAssertion"
        assert record.message == "arithmetic is broken"
        [event] = publisher.events
        assert event.status == StatusKind.ASSERTION_FAILED
        assert event.blame == Blame.TEST_FAILURE
        assert event.journal_path == str(trace_dir / "failures" / f"run-{event.run_id}.ndjson")
        assert _events(event.journal_path) == [
            "ExecutionTrace",
            "ExceptionTrace",
            "TestVerdict",
        ]

    def test_crash_is_execution_error(
        self, trace_dir: Path, publisher: RecordingPublisher
    ) -> None:
        """Unexpected exceptions blame the code under test."""
        records, pool, _ = _chain(CrashingCalculator, trace_dir, publisher)
        pool.close()
        assert records[0].rule == "ZeroDivisionError"
        [event] = publisher.events
        assert event.status == StatusKind.EXECUTION_ERROR
        assert event.blame == Blame.EXECUTION_FAILURE

    def test_always_retention(self, trace_dir: Path, publisher: RecordingPublisher) -> None:
        """ALWAYS snapshots passing tests to traces/."""
        _, pool, _ = _chain(
            Calculator, trace_dir, publisher, audit_retention=LogRetention.ALWAYS
        )
        pool.close()
        [event] = publisher.events
        assert event.journal_path == str(trace_dir / "traces" / f"run-{event.run_id}.ndjson")
        events = _events(event.journal_path)
        assert "DesignDecision" not in events
        assert events[-1] == "TestVerdict"
        assert events.count("VerificationTrace") == 2

    def test_explainable_depth_emits_design(
        self, trace_dir: Path, publisher: RecordingPublisher
    ) -> None:
        """EXPLAINABLE audits include every design decision."""
        _, pool, _ = _chain(
            Calculator,
            trace_dir,
            publisher,
            audit_retention=LogRetention.ALWAYS,
            audit_depth=AuditDepth.EXPLAINABLE,
        )
        pool.close()
        events = _events(publisher.events[0].journal_path)
        assert events.count("DesignDecision") == 3

    def test_none_retention(self, trace_dir: Path, publisher: RecordingPublisher) -> None:
        """NONE keeps only the live journal path, even on failure."""
        _, pool, sink = _chain(
            BrokenCalculator, trace_dir, publisher, audit_retention=LogRetention.NONE
        )
        pool.close()
        assert publisher.events[0].journal_path == str(sink.journal_path)
        assert not (trace_dir / "failures").exists()

    def test_journal_reset_after_test(
        self, trace_dir: Path, publisher: RecordingPublisher
    ) -> None:
        """The worker journal is empty once the test is published."""
        _, pool, sink = _chain(BrokenCalculator, trace_dir, publisher)
        assert sink.journal_path.read_text(encoding="utf-8") == ""
        pool.close()

    def test_resolver_passes_records_through(self) -> None:
        """Without an exception the records are returned unchanged."""
        context = make_context(Calculator)
        chain = ScenarioExecutionChain(
            [ResultResolverInterceptor()], 0, context, DefaultScenarioExecutor()
        )
        assert [r.rule for r in chain.proceed(context)] == [
            "Scenario.addition_commutes",
            "Scenario.zero_is_neutral",
        ]

    def test_auditing_reraises(self, trace_dir: Path, publisher: RecordingPublisher) -> None:
        """Without the resolver, the auditing interceptor re-raises."""
        pool = WorkerTraceSinkPool(trace_dir)
        interceptor = AuditingInterceptor(
            pool.get_sink(WorkerId(value=0)),
            publisher,
            make_config(),
            WorkerId(value=0),
            clock=FIXED_CLOCK,
        )
        context = make_context(CrashingCalculator)
        chain = ScenarioExecutionChain([interceptor], 0, context, DefaultScenarioExecutor())
        with pytest.raises(InvocationError):
            chain.proceed(context)
        pool.close()
        assert publisher.events[0].status == StatusKind.EXECUTION_ERROR
