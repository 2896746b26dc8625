"""Tests for the step state machine, ownership and cleanup downgrade."""

from __future__ import annotations

import pytest

from image_builder.errors import CleanupWarning, MissingStateError
from image_builder.provisioning.steps.base import (
    ALLOWED_TRANSITIONS,
    InvalidStepTransition,
    ResourceStep,
    Step,
    StepStatus,
)


class FakeStep(ResourceStep):
    name = 'fake'
    kind = 'vswitch'

    def __init__(self, *, owned=True, release_error=None, publish=False):
        super().__init__()
        self.owned = owned
        self.release_error = release_error
        self.publish = publish
        self.released = 0

    async def _execute(self, state):
        if self.owned:
            self._take_ownership('res-1')
        else:
            self._reuse('res-1')

    def _should_release(self, state):
        return state.halted or not self.publish

    async def _release(self, state):
        self.released += 1
        if self.release_error:
            raise self.release_error


def test_transition_table():
    assert ALLOWED_TRANSITIONS[StepStatus.NOT_STARTED] == {StepStatus.COMPLETED}
    assert ALLOWED_TRANSITIONS[StepStatus.COMPLETED] == {StepStatus.CLEANED_UP}
    assert ALLOWED_TRANSITIONS[StepStatus.CLEANED_UP] == frozenset()


def test_resource_step_satisfies_protocol():
    assert isinstance(FakeStep(), Step)


@pytest.mark.asyncio
async def test_run_completes_and_owns(state):
    step = FakeStep()
    await step.run(state)

    assert step.status is StepStatus.COMPLETED
    assert step.owns_resource is True
    assert step.resource_id == 'res-1'


@pytest.mark.asyncio
async def test_run_twice_is_rejected(state):
    step = FakeStep()
    await step.run(state)

    with pytest.raises(InvalidStepTransition):
        await step.run(state)


@pytest.mark.asyncio
async def test_cleanup_before_run_is_noop(state):
    step = FakeStep()
    assert await step.cleanup(state) is None
    assert step.released == 0
    assert step.status is StepStatus.NOT_STARTED


@pytest.mark.asyncio
async def test_cleanup_is_idempotent(state):
    step = FakeStep()
    await step.run(state)

    await step.cleanup(state)
    await step.cleanup(state)

    assert step.released == 1
    assert step.status is StepStatus.CLEANED_UP
    assert step.owns_resource is False


@pytest.mark.asyncio
async def test_reused_resource_is_never_released(state):
    step = FakeStep(owned=False)
    await step.run(state)
    await step.cleanup(state)

    assert step.released == 0
    assert step.status is StepStatus.CLEANED_UP


@pytest.mark.asyncio
async def test_release_failure_becomes_warning(state, ui):
    step = FakeStep(release_error=RuntimeError('DependencyViolation'))
    await step.run(state)

    warning = await step.cleanup(state)

    assert isinstance(warning, CleanupWarning)
    assert warning.step_name == 'fake'
    assert warning.resource_id == 'res-1'
    assert 'DependencyViolation' in warning.error
    assert state.warnings == [warning]
    assert ui.errors


@pytest.mark.asyncio
async def test_published_resource_is_kept_on_success(state):
    step = FakeStep(publish=True)
    await step.run(state)
    await step.cleanup(state)

    assert step.released == 0
    assert step.owns_resource is False


@pytest.mark.asyncio
async def test_published_resource_is_deleted_on_failure(state):
    step = FakeStep(publish=True)
    await step.run(state)
    state.error = RuntimeError('later step failed')

    await step.cleanup(state)

    assert step.released == 1


def test_require_raises_for_unset_fields(state):
    with pytest.raises(MissingStateError) as exc_info:
        state.require('vswitch_id')
    assert exc_info.value.field_name == 'vswitch_id'

    state.vswitches = []
    with pytest.raises(MissingStateError):
        state.require('vswitches')

    state.vpc_id = 'vpc-1'
    assert state.require('vpc_id') == 'vpc-1'
