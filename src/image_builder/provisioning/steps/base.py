"""Step contract, per-step state machine and shared polling helpers.

Every step moves through:
  not_started --(run)--> completed --(cleanup)--> cleaned_up

``owns_resource`` is set only when the step itself created its resource.
``cleanup()`` is idempotent: it is a no-op on a step that never completed,
on one that was already cleaned up, and on one that does not own anything.
A failed release is downgraded to a CleanupWarning so it can neither mask
the error that triggered the unwind nor stop sibling cleanups.
"""

from __future__ import annotations

import enum
import uuid
from abc import ABC, abstractmethod
from types import MappingProxyType
from typing import Any, Awaitable, Callable, ClassVar, Protocol, TypeVar, runtime_checkable

from ...errors import CleanupWarning
from ...observability import get_logger
from ..poller import Evaluator, wait_for_expected
from ..retry_codes import not_found_evaluator, retryable_error_evaluator
from ..state import BuildState

logger = get_logger(__name__)

T = TypeVar('T')


class StepStatus(str, enum.Enum):
    NOT_STARTED = 'not_started'
    COMPLETED = 'completed'
    CLEANED_UP = 'cleaned_up'


ALLOWED_TRANSITIONS = MappingProxyType(
    {
        StepStatus.NOT_STARTED: frozenset({StepStatus.COMPLETED}),
        StepStatus.COMPLETED: frozenset({StepStatus.CLEANED_UP}),
        StepStatus.CLEANED_UP: frozenset(),
    }
)


class InvalidStepTransition(RuntimeError):
    """Raised for invalid step state transitions."""

    def __init__(self, step: str, from_state: StepStatus, to_state: StepStatus) -> None:
        self.step = step
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f'{step}: invalid step transition: '
            f'{from_state.value!r} -> {to_state.value!r}'
        )


@runtime_checkable
class Step(Protocol):
    """What the pipeline runner needs from a step."""

    name: str

    async def run(self, state: BuildState) -> None: ...
    async def cleanup(self, state: BuildState) -> CleanupWarning | None: ...


def new_client_token() -> str:
    """Idempotency token so a retried create is not a duplicate create."""
    return uuid.uuid4().hex


class ResourceStep(ABC):
    """Base for steps that acquire (or create) one provider resource."""

    name: ClassVar[str] = 'step'
    kind: ClassVar[str] = ''
    """Resource kind used to look up retry codes."""

    def __init__(self) -> None:
        self.status = StepStatus.NOT_STARTED
        self.owns_resource = False
        self.resource_id: str | None = None

    def __repr__(self) -> str:
        return (
            f'{type(self).__name__}(status={self.status.value}, '
            f'owns={self.owns_resource}, resource_id={self.resource_id!r})'
        )

    # ── Lifecycle ────────────────────────────────────────────────

    async def run(self, state: BuildState) -> None:
        if self.status is not StepStatus.NOT_STARTED:
            raise InvalidStepTransition(self.name, self.status, StepStatus.COMPLETED)
        await self._execute(state)
        self._transition(StepStatus.COMPLETED)
        logger.info(
            'step_completed',
            step=self.name,
            owns_resource=self.owns_resource,
            resource_id=self.resource_id,
        )

    async def cleanup(self, state: BuildState) -> CleanupWarning | None:
        if self.status is not StepStatus.COMPLETED:
            return None
        self._transition(StepStatus.CLEANED_UP)
        if not self.owns_resource:
            return None
        if not self._should_release(state):
            self.owns_resource = False
            return None

        self.owns_resource = False
        state.ui.say(self._cleanup_message(state))
        try:
            await self._release(state)
        except Exception as exc:
            warning = CleanupWarning(self.name, self.resource_id, str(exc))
            state.warnings.append(warning)
            state.ui.error(
                f'Error deleting {self.kind or self.name}, it may still be around: {exc}'
            )
            logger.warning(
                'cleanup_failed',
                step=self.name,
                resource_id=self.resource_id,
                error=str(exc),
            )
            return warning
        return None

    @abstractmethod
    async def _execute(self, state: BuildState) -> None:
        """Acquire or create the resource and write outputs to ``state``."""

    async def _release(self, state: BuildState) -> None:
        """Delete the owned resource. Only called when ``owns_resource``."""

    def _should_release(self, state: BuildState) -> bool:
        return True

    def _take_ownership(self, resource_id: str) -> None:
        self.resource_id = resource_id
        self.owns_resource = True

    def _reuse(self, resource_id: str) -> None:
        self.resource_id = resource_id
        self.owns_resource = False

    def _transition(self, to_state: StepStatus) -> None:
        if to_state not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStepTransition(self.name, self.status, to_state)
        self.status = to_state

    def _cleanup_message(self, state: BuildState) -> str:
        reason = 'because of error' if state.halted else ''
        what = self.kind or self.name
        return ' '.join(filter(None, [f'Deleting {what} {self.resource_id}', reason]))

    # ── Polling helpers ──────────────────────────────────────────

    async def _poll(
        self,
        state: BuildState,
        request: Callable[[], Awaitable[T]],
        evaluate: Evaluator,
        *,
        retry_times: int | None = None,
        description: str = '',
    ) -> T:
        settings = state.settings
        return await wait_for_expected(
            request,
            evaluate,
            retry_times=retry_times or settings.retry_times,
            backoff=settings.backoff,
            description=description or self.name,
        )

    async def _create(
        self,
        state: BuildState,
        request: Callable[[], Awaitable[T]],
        *,
        kind: str | None = None,
        description: str = '',
    ) -> T:
        """Issue a create-class call, retrying the kind's transient codes."""
        codes = state.settings.retry_codes.create(kind or self.kind)
        return await self._poll(
            state,
            request,
            retryable_error_evaluator(codes),
            description=description or f'{kind or self.kind} creation',
        )

    async def _delete(
        self,
        state: BuildState,
        request: Callable[[], Awaitable[Any]],
        *,
        kind: str | None = None,
        description: str = '',
    ) -> None:
        """Issue a delete-class call with the short retry ceiling."""
        codes = state.settings.retry_codes
        await self._poll(
            state,
            request,
            not_found_evaluator(codes.delete(kind or self.kind), codes.not_found),
            retry_times=state.settings.short_retry_times,
            description=description or f'{kind or self.kind} deletion',
        )

    async def _discard(
        self,
        state: BuildState,
        request: Callable[[], Awaitable[Any]],
        resource_id: str,
    ) -> None:
        """Delete a resource created by a run() that is about to fail or move on.

        The resource never became owned, so a failure here is reported as a
        warning rather than replacing the error being handled.
        """
        try:
            await self._delete(state, request)
        except Exception as exc:
            warning = CleanupWarning(self.name, resource_id, str(exc))
            state.warnings.append(warning)
            state.ui.error(
                f'Error deleting {self.kind or self.name} {resource_id}, '
                f'it may still be around: {exc}'
            )
            logger.warning(
                'discard_failed', step=self.name, resource_id=resource_id, error=str(exc),
            )


class NoResourceStep(ResourceStep):
    """Step that never creates anything, so cleanup is always a no-op."""
