"""Pipeline runner: ordered step execution with reverse-order compensation.

Steps run strictly in order. The first step whose ``run()`` raises halts the
pipeline: the error is recorded in ``state.error`` and every step that
completed is cleaned up in strict reverse order. A cleanup failure is kept as
a warning and never stops the rest of the unwind.

Transient resources are torn down after a successful run too (steps that
publish their resource release ownership instead of deleting it), unless the
runner is told to keep them with ``cleanup_on_success=False``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

from ..errors import BuildCancelledError, CleanupWarning
from ..observability import get_logger
from .state import BuildState

if TYPE_CHECKING:
    from .steps.base import Step

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class PipelineResult:
    """Outcome of one pipeline run."""

    success: bool
    error: BaseException | None = None
    failed_step: str | None = None
    executed: tuple[str, ...] = ()
    cleaned_up: tuple[str, ...] = ()
    warnings: tuple[CleanupWarning, ...] = ()


class PipelineRunner:
    """Runs a fixed, linear list of steps against one BuildState."""

    def __init__(
        self,
        steps: Sequence[Step],
        *,
        cleanup_on_success: bool = True,
        name: str = 'build',
    ) -> None:
        self._steps = list(steps)
        self._cleanup_on_success = cleanup_on_success
        self._name = name

    @property
    def steps(self) -> list[Step]:
        return list(self._steps)

    async def run(self, state: BuildState) -> PipelineResult:
        """Execute every step; unwind completed steps on failure.

        Cancellation of the surrounding task still unwinds before the
        CancelledError propagates.
        """
        executed: list[Step] = []
        current: Step | None = None
        warnings_before = len(state.warnings)

        try:
            for step in self._steps:
                current = step
                logger.info('step_started', pipeline=self._name, step=step.name)
                await step.run(state)
                executed.append(step)
        except asyncio.CancelledError:
            state.error = BuildCancelledError(current.name if current else None)
            state.ui.error(f'Build cancelled during step {current.name if current else "?"}')
            await self._unwind(state, executed)
            raise
        except Exception as exc:
            state.error = exc
            failed = current.name if current else None
            logger.error(
                'step_failed',
                pipeline=self._name,
                step=failed,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            state.ui.error(f'{failed}: {exc}')
            cleaned = await self._unwind(state, executed)
            return PipelineResult(
                success=False,
                error=exc,
                failed_step=failed,
                executed=tuple(s.name for s in executed),
                cleaned_up=cleaned,
                warnings=tuple(state.warnings[warnings_before:]),
            )

        cleaned: tuple[str, ...] = ()
        if self._cleanup_on_success:
            cleaned = await self._unwind(state, executed)
        return PipelineResult(
            success=True,
            executed=tuple(s.name for s in executed),
            cleaned_up=cleaned,
            warnings=tuple(state.warnings[warnings_before:]),
        )

    async def _unwind(self, state: BuildState, executed: list[Step]) -> tuple[str, ...]:
        cleaned: list[str] = []
        for step in reversed(executed):
            try:
                await step.cleanup(state)
            except Exception as exc:
                # Steps outside ResourceStep may still raise from cleanup().
                warning = CleanupWarning(step.name, None, str(exc))
                state.warnings.append(warning)
                state.ui.error(str(warning))
                logger.warning('cleanup_failed', step=step.name, error=str(exc))
            cleaned.append(step.name)
        if cleaned:
            logger.info('pipeline_unwound', pipeline=self._name, steps=cleaned)
        return tuple(cleaned)
