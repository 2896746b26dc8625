"""Tests for CreateImageStep and CopyImageStep."""

from __future__ import annotations

import pytest
import pytest_asyncio

from image_builder.errors import PollTimeoutError
from image_builder.providers.errors import CloudAPIError
from image_builder.providers.models import Image, Instance
from image_builder.provisioning.steps.image import CopyImageStep, CreateImageStep


@pytest.fixture
def stopped_state(state, cloud):
    cloud.instances['i-1'] = Instance('i-1', 'Stopped', 'cn-hangzhou-a')
    state.instance_id = 'i-1'
    return state


# ── CreateImageStep ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_image_is_published_on_success(stopped_state, cloud):
    step = CreateImageStep(image_name='packer-test-image', description='nightly')

    await step.run(stopped_state)
    await step.cleanup(stopped_state)

    image_id = stopped_state.image_id
    assert image_id in cloud.images
    assert stopped_state.images == {'cn-hangzhou': image_id}
    assert cloud.calls_to('DeleteImage') == []
    assert step.owns_resource is False


@pytest.mark.asyncio
async def test_image_is_deleted_when_build_halts(stopped_state, cloud):
    step = CreateImageStep(image_name='packer-test-image')
    await step.run(stopped_state)
    image_id = stopped_state.image_id
    stopped_state.error = RuntimeError('copy failed')

    await step.cleanup(stopped_state)

    assert image_id not in cloud.images
    assert stopped_state.image_id is None
    assert stopped_state.images == {}


@pytest.mark.asyncio
async def test_force_delete_removes_same_named_images_first(stopped_state, cloud):
    cloud.add_image(Image('m-old', 'Available', 'packer-test-image', 'cn-hangzhou'))
    step = CreateImageStep(image_name='packer-test-image', force_delete=True)

    await step.run(stopped_state)

    assert cloud.deleted_of('image') == ['m-old']
    assert stopped_state.image_id != 'm-old'


@pytest.mark.asyncio
async def test_image_stuck_creating_is_discarded(stopped_state, cloud):
    cloud.hold('image')
    step = CreateImageStep(image_name='packer-test-image')

    with pytest.raises(PollTimeoutError):
        await step.run(stopped_state)

    assert cloud.live('image') == []
    assert stopped_state.image_id is None


# ── CopyImageStep ────────────────────────────────────────────────


@pytest_asyncio.fixture
async def imaged_state(stopped_state):
    await CreateImageStep(image_name='packer-test-image').run(stopped_state)
    return stopped_state


def _copy_step():
    return CopyImageStep(
        destination_regions=('cn-beijing', 'cn-shanghai'),
        image_name='packer-test-image',
    )


@pytest.mark.asyncio
async def test_copies_are_recorded_and_published(imaged_state, cloud):
    step = _copy_step()

    await step.run(imaged_state)
    await step.cleanup(imaged_state)

    assert set(imaged_state.images) == {'cn-hangzhou', 'cn-beijing', 'cn-shanghai'}
    for region in ('cn-beijing', 'cn-shanghai'):
        copy = cloud.images[imaged_state.images[region]]
        assert copy.region_id == region
    assert cloud.calls_to('DeleteImage') == []


@pytest.mark.asyncio
async def test_copy_failure_discards_earlier_copies(imaged_state, cloud):
    cloud.fail('CopyImage', 'InvalidRegionId.Malformed', destination_region_id='cn-shanghai')
    step = _copy_step()

    with pytest.raises(CloudAPIError):
        await step.run(imaged_state)

    source = imaged_state.image_id
    assert cloud.live('image') == [source]
    assert set(imaged_state.images) == {'cn-hangzhou'}
    assert step.owns_resource is False


@pytest.mark.asyncio
async def test_copies_deleted_when_build_halts(imaged_state, cloud):
    step = _copy_step()
    await step.run(imaged_state)
    copies = dict(step.copies)
    imaged_state.error = RuntimeError('later failure')

    warning = await step.cleanup(imaged_state)

    assert warning is None
    assert set(cloud.deleted_of('image')) == set(copies.values())
    assert set(imaged_state.images) == {'cn-hangzhou'}


@pytest.mark.asyncio
async def test_copy_delete_failure_is_reported_but_others_deleted(imaged_state, cloud):
    step = _copy_step()
    await step.run(imaged_state)
    beijing = step.copies['cn-beijing']
    shanghai = step.copies['cn-shanghai']
    cloud.fail_always('DeleteImage', 'Forbidden.RAM', image_id=beijing)
    imaged_state.error = RuntimeError('later failure')

    warning = await step.cleanup(imaged_state)

    assert warning is not None
    assert beijing in warning.error
    assert cloud.deleted_of('image') == [shanghai]
    assert imaged_state.warnings == [warning]
