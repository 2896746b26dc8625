"""Tests for PipelineRunner ordering and compensation."""

from __future__ import annotations

import asyncio

import pytest

from image_builder.errors import BuildCancelledError
from image_builder.provisioning.runner import PipelineRunner
from image_builder.provisioning.steps.base import ResourceStep, StepStatus


class RecordingStep(ResourceStep):
    kind = 'vpc'

    def __init__(self, name, journal, *, fail=False, cleanup_error=None, block=None):
        super().__init__()
        self.name = name
        self.journal = journal
        self.fail = fail
        self.cleanup_error = cleanup_error
        self.block = block

    async def _execute(self, state):
        self.journal.append(('run', self.name))
        if self.block is not None:
            await self.block.wait()
        if self.fail:
            raise RuntimeError(f'{self.name} exploded')
        self._take_ownership(f'{self.name}-id')

    async def _release(self, state):
        self.journal.append(('cleanup', self.name))
        if self.cleanup_error:
            raise self.cleanup_error


@pytest.mark.asyncio
async def test_failure_unwinds_completed_steps_in_reverse(state):
    journal = []
    steps = [
        RecordingStep('s1', journal),
        RecordingStep('s2', journal),
        RecordingStep('s3', journal, fail=True),
        RecordingStep('s4', journal),
    ]

    result = await PipelineRunner(steps).run(state)

    assert result.success is False
    assert result.failed_step == 's3'
    assert str(result.error) == 's3 exploded'
    assert state.error is result.error
    assert journal == [
        ('run', 's1'),
        ('run', 's2'),
        ('run', 's3'),
        ('cleanup', 's2'),
        ('cleanup', 's1'),
    ]
    assert result.executed == ('s1', 's2')
    assert result.cleaned_up == ('s2', 's1')
    assert steps[3].status is StepStatus.NOT_STARTED


@pytest.mark.asyncio
async def test_cleanup_failure_does_not_stop_unwind(state):
    journal = []
    steps = [
        RecordingStep('s1', journal),
        RecordingStep('s2', journal, cleanup_error=RuntimeError('busy')),
        RecordingStep('s3', journal, fail=True),
    ]

    result = await PipelineRunner(steps).run(state)

    assert ('cleanup', 's1') in journal
    assert str(result.error) == 's3 exploded'
    assert len(result.warnings) == 1
    assert result.warnings[0].step_name == 's2'


@pytest.mark.asyncio
async def test_success_cleans_up_by_default(state):
    journal = []
    steps = [RecordingStep('s1', journal), RecordingStep('s2', journal)]

    result = await PipelineRunner(steps).run(state)

    assert result.success is True
    assert result.error is None
    assert journal[-2:] == [('cleanup', 's2'), ('cleanup', 's1')]


@pytest.mark.asyncio
async def test_success_keeps_resources_when_asked(state):
    journal = []
    steps = [RecordingStep('s1', journal)]

    result = await PipelineRunner(steps, cleanup_on_success=False).run(state)

    assert result.success is True
    assert result.cleaned_up == ()
    assert steps[0].owns_resource is True


@pytest.mark.asyncio
async def test_cancellation_unwinds_then_propagates(state):
    journal = []
    gate = asyncio.Event()
    steps = [RecordingStep('s1', journal), RecordingStep('s2', journal, block=gate)]

    task = asyncio.create_task(PipelineRunner(steps).run(state))
    while ('run', 's2') not in journal:
        await asyncio.sleep(0)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert ('cleanup', 's1') in journal
    assert isinstance(state.error, BuildCancelledError)
    assert state.error.step_name == 's2'
