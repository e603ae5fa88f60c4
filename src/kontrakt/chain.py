"""Interceptor chain around the leaf scenario executor.

Interceptors are ordered outermost first. Each receives a ``Chain`` and
must call ``chain.proceed(context)`` to let the inner interceptors and the
leaf executor run; an interceptor that does not call it stops the pipeline
at that point. A chain link is immutable: ``proceed`` builds the next link
with the next index rather than advancing a cursor, so a link can be
proceeded more than once (for example to retry).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Sequence

    from kontrakt.context import EphemeralTestContext
    from kontrakt.executor import TestScenarioExecutor
    from kontrakt.models import AssertionRecord


class Chain(Protocol):
    @property
    def context(self) -> EphemeralTestContext: ...

    def proceed(self, context: EphemeralTestContext) -> list[AssertionRecord]: ...


class ScenarioInterceptor(Protocol):
    def intercept(self, chain: Chain) -> list[AssertionRecord]: ...


class ScenarioExecutionChain:
    """One link of the interceptor chain.

    Args:
        interceptors: All interceptors, outermost first.
        index: Position of the interceptor this link will call.
        context: Context passed to that interceptor.
        final_delegate: Leaf executor reached after the last interceptor.
    """

    def __init__(
        self,
        interceptors: Sequence[ScenarioInterceptor],
        index: int,
        context: EphemeralTestContext,
        final_delegate: TestScenarioExecutor,
    ) -> None:
        self._interceptors = tuple(interceptors)
        self._index = index
        self._context = context
        self._final_delegate = final_delegate

    @property
    def context(self) -> EphemeralTestContext:
        return self._context

    @property
    def index(self) -> int:
        return self._index

    def proceed(self, context: EphemeralTestContext) -> list[AssertionRecord]:
        """Run the interceptor at ``index``, or the leaf past the last one."""
        if self._index >= len(self._interceptors):
            return self._final_delegate.execute_scenarios(context)
        following = ScenarioExecutionChain(
            self._interceptors, self._index + 1, context, self._final_delegate
        )
        return self._interceptors[self._index].intercept(following)
