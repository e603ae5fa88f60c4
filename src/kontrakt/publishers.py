"""Result event publishing."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Iterable

    from kontrakt.models import TestResultEvent

logger = logging.getLogger(__name__)


class TestResultPublisher(Protocol):
    """Receives one ``TestResultEvent`` per executed test."""

    def publish(self, event: TestResultEvent) -> None: ...

    def close(self) -> None: ...


class BroadcastingResultPublisher:
    """Fans events out to several publishers.

    A publisher that raises is logged and skipped; the others still
    receive the event.
    """

    def __init__(self, publishers: Iterable[TestResultPublisher] = ()) -> None:
        self._publishers = tuple(publishers)
        if not self._publishers:
            logger.warning("No result publishers configured; test results are discarded")

    @property
    def publishers(self) -> tuple[TestResultPublisher, ...]:
        return self._publishers

    def publish(self, event: TestResultEvent) -> None:
        for publisher in self._publishers:
            try:
                publisher.publish(event)
            except Exception:
                logger.warning(
                    "Result publisher %s failed for %s",
                    type(publisher).__name__,
                    event.test_name,
                    exc_info=True,
                )

    def close(self) -> None:
        for publisher in self._publishers:
            try:
                publisher.close()
            except Exception:
                logger.warning(
                    "Result publisher %s failed to close", type(publisher).__name__, exc_info=True
                )


class LoggingResultPublisher:
    """Logs every event as JSON at INFO level."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log if log is not None else logger

    def publish(self, event: TestResultEvent) -> None:
        self._log.info("Test result: %s", event.model_dump_json())

    def close(self) -> None:
        return None
