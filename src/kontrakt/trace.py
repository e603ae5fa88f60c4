"""Trace events and per-worker NDJSON sinks.

Every event serializes itself to exactly one NDJSON line with hand-built
JSON, so trace emission never depends on reflection or a serializer. A
``WorkerTraceSinkPool`` hands each worker thread its own
``RecyclingFileTraceSink``; since no two workers share a sink, emitting an
event needs no lock.

Journal layout under ``root_dir``::

    logs/workers/worker-{id}.ndjson    live journal, truncated per test
    traces/run-{run_id}.ndjson         snapshot kept with ALWAYS retention
    failures/run-{run_id}.ndjson       snapshot of a failed test
"""

from __future__ import annotations

import atexit
from enum import StrEnum
import logging
from pathlib import Path
import shutil
import threading
from typing import TYPE_CHECKING, Any, ClassVar, Protocol
import uuid

from pydantic import BaseModel, ConfigDict

from kontrakt.errors import KontraktLifecycleException
from kontrakt.models import AssertionStatus, Blame, StatusKind

if TYPE_CHECKING:
    from collections.abc import Iterable

    from kontrakt.models import WorkerId

logger = logging.getLogger(__name__)

SNAPSHOT_FAILED = "SNAPSHOT_FAILED"
_BUFFER_LIMIT = 4096

_ESCAPES = {
    '"': '\\"',
    "\\": "\\\\",
    "\b": "\\b",
    "\f": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
}


def escape_json(value: str) -> str:
    """Escape *value* for use inside a JSON string literal."""
    out = []
    for char in value:
        escaped = _ESCAPES.get(char)
        if escaped is not None:
            out.append(escaped)
        elif ord(char) < 0x20 or 0xD800 <= ord(char) <= 0xDFFF:
            out.append(f"\\u{ord(char):04x}")
        else:
            out.append(char)
    return "".join(out)


def _str(value: str | None) -> str:
    return "null" if value is None else f'"{escape_json(value)}"'


def _str_array(values: Iterable[str]) -> str:
    return "[" + ",".join(_str(value) for value in values) + "]"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class TracePhase(StrEnum):
    """Fixed phases of a test execution."""

    DESIGN = "DESIGN"
    EXECUTION = "EXECUTION"
    VERIFICATION = "VERIFICATION"
    RESULT = "RESULT"


class TraceEvent(BaseModel):
    """Base of all trace events.

    Attributes:
        timestamp: Milliseconds since the epoch.
    """

    model_config = ConfigDict(frozen=True)

    phase: ClassVar[TracePhase]

    timestamp: int

    def _head(self) -> str:
        return (
            f'{{"timestamp":{self.timestamp},"phase":"{self.phase}",'
            f'"event":"{type(self).__name__}"'
        )

    def to_ndjson(self) -> str:
        """Serialize to one JSON object, without the trailing newline."""
        raise NotImplementedError


class DesignDecision(TraceEvent):
    """Which generator produced a value, and the value itself."""

    phase: ClassVar[TracePhase] = TracePhase.DESIGN

    subject: str
    strategy: str
    generated_value: str

    def to_ndjson(self) -> str:
        return (
            f'{self._head()},"subject":{_str(self.subject)},'
            f'"strategy":{_str(self.strategy)},"value":{_str(self.generated_value)}}}'
        )


class ExecutionTrace(TraceEvent):
    """A method invocation on the target or on a mock."""

    phase: ClassVar[TracePhase] = TracePhase.EXECUTION

    method_signature: str
    arguments: tuple[str, ...] = ()
    duration_ms: int = 0

    def to_ndjson(self) -> str:
        return (
            f'{self._head()},"methodSignature":{_str(self.method_signature)},'
            f'"arguments":{_str_array(self.arguments)},"durationMs":{self.duration_ms}}}'
        )


class VerificationTrace(TraceEvent):
    """Outcome of one verified rule."""

    phase: ClassVar[TracePhase] = TracePhase.VERIFICATION

    rule: str
    status: AssertionStatus
    detail: str

    def to_ndjson(self) -> str:
        return (
            f'{self._head()},"rule":{_str(self.rule)},'
            f'"status":"{self.status.upper()}","detail":{_str(self.detail)}}}'
        )


class ExceptionTrace(TraceEvent):
    """An exception that escaped the scenario, with its blame."""

    phase: ClassVar[TracePhase] = TracePhase.VERIFICATION

    exception_type: str
    message: str
    stack_frames: tuple[str, ...] = ()
    blame: Blame

    def to_ndjson(self) -> str:
        return (
            f'{self._head()},"exceptionType":{_str(self.exception_type)},'
            f'"message":{_str(self.message)},"blame":"{self.blame.upper()}",'
            f'"stackFrames":{_str_array(self.stack_frames)}}}'
        )


class TestVerdict(TraceEvent):
    """Final status of a test."""

    __test__: ClassVar[bool] = False

    phase: ClassVar[TracePhase] = TracePhase.RESULT

    status: StatusKind
    duration_total_ms: int

    def to_ndjson(self) -> str:
        return (
            f'{self._head()},"status":"{self.status.upper()}",'
            f'"durationTotalMs":{self.duration_total_ms}}}'
        )


# ---------------------------------------------------------------------------
# In-memory scenario trace
# ---------------------------------------------------------------------------


class InMemoryScenarioTrace:
    """Events collected while one test runs.

    Mocks may be called from threads spawned by the code under test, so
    appends are guarded by a lock.

    Attributes:
        run_id: Unique id of the test run, used for snapshot names.
    """

    def __init__(self, run_id: str | None = None) -> None:
        self.run_id = run_id or uuid.uuid4().hex
        self._events: list[TraceEvent] = []
        self._generated_arguments: list[Any] = []
        self._lock = threading.Lock()

    def add(self, event: TraceEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def decisions(self) -> list[TraceEvent]:
        with self._lock:
            return list(self._events)

    def record_generated_arguments(self, arguments: Iterable[Any]) -> None:
        with self._lock:
            self._generated_arguments = list(arguments)

    @property
    def generated_arguments(self) -> list[Any]:
        with self._lock:
            return list(self._generated_arguments)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
            self._generated_arguments.clear()


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


class TraceSink(Protocol):
    def emit(self, event: TraceEvent) -> None: ...

    def snapshot_to(self, relative_path: str) -> str: ...

    def reset(self) -> None: ...

    def close(self) -> None: ...

    @property
    def journal_path(self) -> Path: ...


class RecyclingFileTraceSink:
    """Append-only NDJSON journal of one worker.

    The journal is truncated when the sink opens and on ``reset()``.
    DESIGN events are buffered up to 4 KiB; every other event flushes the
    buffer immediately so a crash never loses an execution or verdict.
    Write failures are logged and never propagate into the test.

    Args:
        worker_id: Owning worker.
        root_dir: Trace root directory.
    """

    def __init__(self, worker_id: WorkerId, root_dir: Path) -> None:
        self.worker_id = worker_id
        self.root_dir = Path(root_dir)
        self._path = self.root_dir / "logs" / "workers" / f"worker-{worker_id.value}.ndjson"
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = open(self._path, "w", encoding="utf-8", newline="\n")  # noqa: SIM115
        self._buffer: list[str] = []
        self._buffered_bytes = 0
        self._closed = False
        atexit.register(self.flush)

    @property
    def journal_path(self) -> Path:
        return self._path

    def emit(self, event: TraceEvent) -> None:
        if self._closed:
            return
        line = event.to_ndjson() + "\n"
        self._buffer.append(line)
        self._buffered_bytes += len(line)
        if not isinstance(event, DesignDecision) or self._buffered_bytes >= _BUFFER_LIMIT:
            self.flush()

    def flush(self) -> None:
        if self._closed or not self._buffer:
            return
        try:
            self._handle.write("".join(self._buffer))
            self._handle.flush()
        except (OSError, UnicodeError):
            logger.warning("Failed to write trace journal %s", self._path, exc_info=True)
        finally:
            self._buffer.clear()
            self._buffered_bytes = 0

    def snapshot_to(self, relative_path: str) -> str:
        """Copy the journal to ``root_dir / relative_path``.

        Returns:
            The snapshot path, or ``SNAPSHOT_FAILED`` if copying failed.
        """
        self.flush()
        target = self.root_dir / relative_path
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(self._path, target)
        except OSError:
            logger.warning("Failed to snapshot %s to %s", self._path, target, exc_info=True)
            return SNAPSHOT_FAILED
        return str(target)

    def reset(self) -> None:
        """Drop buffered events and truncate the journal."""
        if self._closed:
            return
        self._buffer.clear()
        self._buffered_bytes = 0
        try:
            self._handle.seek(0)
            self._handle.truncate()
        except OSError:
            logger.warning("Failed to reset trace journal %s", self._path, exc_info=True)

    def close(self) -> None:
        if self._closed:
            return
        self.flush()
        self._closed = True
        self._handle.close()
        atexit.unregister(self.flush)


class WorkerTraceSinkPool:
    """Lazily creates one sink per worker.

    The lock is only taken when a worker asks for its sink the first time.

    Args:
        root_dir: Trace root directory shared by all sinks.
    """

    def __init__(self, root_dir: Path | str) -> None:
        self.root_dir = Path(root_dir)
        self._sinks: dict[int, RecyclingFileTraceSink] = {}
        self._lock = threading.Lock()
        self._closed = False

    def get_sink(self, worker_id: WorkerId) -> RecyclingFileTraceSink:
        """Return the sink of *worker_id*, creating it on first use.

        Raises:
            KontraktLifecycleException: If the pool was closed.
        """
        if self._closed:
            msg = "WorkerTraceSinkPool is closed"
            raise KontraktLifecycleException(msg)
        sink = self._sinks.get(worker_id.value)
        if sink is not None:
            return sink
        with self._lock:
            if self._closed:
                msg = "WorkerTraceSinkPool is closed"
                raise KontraktLifecycleException(msg)
            sink = self._sinks.get(worker_id.value)
            if sink is None:
                logger.debug("Creating trace sink for worker %s", worker_id)
                sink = RecyclingFileTraceSink(worker_id, self.root_dir)
                self._sinks[worker_id.value] = sink
            return sink

    def close(self) -> None:
        """Close every sink; failures are logged and do not stop the others."""
        with self._lock:
            self._closed = True
            sinks = list(self._sinks.values())
            self._sinks.clear()
        for sink in sinks:
            try:
                sink.close()
            except OSError:
                logger.warning("Failed to close trace sink %s", sink.journal_path, exc_info=True)
