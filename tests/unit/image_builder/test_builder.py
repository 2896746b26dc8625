"""End-to-end tests for ImageBuilder against the in-memory cloud."""

from __future__ import annotations

import pytest

from image_builder.builder import ImageBuilder
from image_builder.errors import ConfigurationError, ZonesExhaustedError
from image_builder.observability import build_id_ctx
from image_builder.providers.alicloud_client import AlicloudClient
from image_builder.providers.errors import CloudAPIError
from image_builder.providers.models import Image, Recommendation
from image_builder.provisioning.steps import CopyImageStep, InstanceStep


TRANSIENT_KINDS = ('vpc', 'vswitch', 'security_group', 'instance')


def _assert_no_transient_leftovers(cloud):
    for kind in TRANSIENT_KINDS:
        assert cloud.live(kind) == [], kind


@pytest.mark.asyncio
async def test_successful_build_publishes_image_and_cleans_up(settings, cloud, ui):
    builder = ImageBuilder(settings, client=cloud, ui=ui)

    result = await builder.build()

    assert result.success is True
    assert result.skipped is False
    assert result.error is None
    assert result.image_id in cloud.images
    assert result.images == {'cn-hangzhou': result.image_id}
    assert cloud.live('image') == [result.image_id]
    _assert_no_transient_leftovers(cloud)
    # Dependent resources go first.
    deletes = [name for name, _ in cloud.calls if name.startswith('Delete')]
    assert deletes == ['DeleteInstance', 'DeleteVSwitch', 'DeleteSecurityGroup', 'DeleteVpc']


@pytest.mark.asyncio
async def test_existing_image_name_skips_build(settings, cloud, ui):
    cloud.add_image(Image('m-old', 'Available', settings.image_name, 'cn-hangzhou'))

    result = await ImageBuilder(settings, client=cloud, ui=ui).build()

    assert result.success is True
    assert result.skipped is True
    assert result.image_id is None
    assert not [name for name, _ in cloud.calls if name.startswith('Create')]
    assert ui.contains('skipping build')


@pytest.mark.asyncio
async def test_failed_build_removes_everything(settings, cloud, ui):
    cloud.fail_always('CreateImage', 'InvalidParameter')

    result = await ImageBuilder(settings, client=cloud, ui=ui).build()

    assert result.success is False
    assert isinstance(result.error, CloudAPIError)
    assert result.error.code == 'InvalidParameter'
    _assert_no_transient_leftovers(cloud)
    assert cloud.live('image') == []


@pytest.mark.asyncio
async def test_copy_failure_deletes_source_image(make_settings, cloud, ui):
    settings = make_settings(destination_regions=('cn-beijing',))
    cloud.fail_always('CopyImage', 'InvalidAccount.NotAuthorized')

    result = await ImageBuilder(settings, client=cloud, ui=ui).build()

    assert result.success is False
    assert cloud.live('image') == []
    _assert_no_transient_leftovers(cloud)


@pytest.mark.asyncio
async def test_copies_to_destination_regions(make_settings, cloud, ui):
    settings = make_settings(destination_regions=('cn-beijing', 'cn-shanghai'))

    result = await ImageBuilder(settings, client=cloud, ui=ui).build()

    assert result.success is True
    assert set(result.images) == {'cn-hangzhou', 'cn-beijing', 'cn-shanghai'}
    assert sorted(cloud.live('image')) == sorted(result.images.values())


@pytest.mark.asyncio
async def test_capacity_fallback_builds_in_recommended_zone(settings, cloud, ui):
    cloud.fail_always('CreateInstance', 'OperationDenied.NoStock', zone_id='cn-hangzhou-a')
    cloud.recommendations = [Recommendation('cn-hangzhou-c', settings.instance_type)]

    result = await ImageBuilder(settings, client=cloud, ui=ui).build()

    assert result.success is True
    created = cloud.calls_to('CreateInstance')
    assert [c['zone_id'] for c in created] == ['cn-hangzhou-a', 'cn-hangzhou-c']
    vswitch_calls = [
        (name, params.get('zone_id') or params.get('vswitch_id'))
        for name, params in cloud.calls
        if name in ('CreateVSwitch', 'DeleteVSwitch')
    ]
    first, second = cloud.created_of('vswitch')
    # The failed zone's vSwitch frees its CIDR block before the retry claims it.
    assert vswitch_calls == [
        ('CreateVSwitch', 'cn-hangzhou-a'),
        ('DeleteVSwitch', first),
        ('CreateVSwitch', 'cn-hangzhou-c'),
        ('DeleteVSwitch', second),
    ]
    assert {c['cidr_block'] for c in cloud.calls_to('CreateVSwitch')} == {settings.cidr_block}
    _assert_no_transient_leftovers(cloud)


@pytest.mark.asyncio
async def test_capacity_fallback_cannot_reuse_cidr_of_undeleted_vswitch(
    settings, cloud, ui,
):
    cloud.fail_always('CreateInstance', 'OperationDenied.NoStock', zone_id='cn-hangzhou-a')
    cloud.fail_always('DeleteVSwitch', 'Forbidden.NotAllowed')
    cloud.recommendations = [Recommendation('cn-hangzhou-c', settings.instance_type)]

    result = await ImageBuilder(settings, client=cloud, ui=ui).build()

    assert result.success is False
    assert isinstance(result.error, ZonesExhaustedError)
    assert ui.contains('InvalidCidrBlock.Overlapped')


@pytest.mark.asyncio
async def test_capacity_fallback_exhausted_fails_cleanly(settings, cloud, ui):
    cloud.fail_always('CreateInstance', 'OperationDenied.NoStock')
    cloud.recommendations = [Recommendation('cn-hangzhou-c', settings.instance_type)]

    result = await ImageBuilder(settings, client=cloud, ui=ui).build()

    assert result.success is False
    assert isinstance(result.error, ZonesExhaustedError)
    _assert_no_transient_leftovers(cloud)


@pytest.mark.asyncio
async def test_provisioners_see_running_instance(settings, cloud, ui):
    seen = []

    async def record(state):
        seen.append(state.instance.status)

    result = await ImageBuilder(settings, client=cloud, ui=ui, provisioners=[record]).build()

    assert result.success is True
    assert seen == ['Running']


@pytest.mark.asyncio
async def test_build_id_is_scoped_to_the_build(settings, cloud, ui):
    seen = []

    async def record(state):
        seen.append(build_id_ctx.get())

    await ImageBuilder(settings, client=cloud, ui=ui, provisioners=[record]).build('build-42')

    assert seen == ['build-42']
    assert build_id_ctx.get() is None


def test_invalid_settings_are_rejected(make_settings, cloud):
    with pytest.raises(ConfigurationError) as exc_info:
        ImageBuilder(make_settings(region='', image_name=''), client=cloud)

    assert 'region is required' in exc_info.value.errors
    assert 'image_name is required' in exc_info.value.errors


def test_default_client_is_alicloud(settings):
    builder = ImageBuilder(settings)
    assert isinstance(builder.client, AlicloudClient)


def test_pipeline_shape(make_settings, cloud):
    names = [s.name for s in ImageBuilder(make_settings(), client=cloud).steps()]
    assert names == [
        'pre_validate',
        'check_source_image',
        'vpc',
        'security_group',
        'vswitch',
        'instance',
        'start_instance',
        'provision',
        'stop_instance',
        'create_image',
    ]

    with_copy = ImageBuilder(make_settings(destination_regions=('cn-beijing',)), client=cloud)
    assert isinstance(with_copy.steps()[-1], CopyImageStep)


def test_pinned_vswitch_disables_zone_fallback(make_settings, cloud):
    settings = make_settings(vpc_id='vpc-1', vswitch_id='vsw-1')
    instance = next(s for s in ImageBuilder(settings, client=cloud).steps() if s.name == 'instance')

    assert isinstance(instance, InstanceStep)
    assert instance.fallback is None
