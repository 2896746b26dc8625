"""Build instance steps: create, start, provision, stop."""

from __future__ import annotations

import base64
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable, Sequence

from ...observability import get_logger
from ...providers.errors import CloudAPIError
from ...providers.models import (
    INSTANCE_STATUS_RUNNING,
    INSTANCE_STATUS_STOPPED,
    Instance,
    InstanceRequest,
)
from ..retry_codes import is_capacity_error, status_evaluator
from ..state import BuildState
from .base import NoResourceStep, ResourceStep, Step, new_client_token

if TYPE_CHECKING:
    from ..fallback import ZoneFallback

logger = get_logger(__name__)

Provisioner = Callable[[BuildState], Awaitable[None]]


def _instance_status(found: list[Instance]) -> str | None:
    return found[0].status if found else None


def read_user_data(user_data: str, user_data_file: str) -> str:
    """Base64-encoded user data from inline text or a file."""
    if user_data_file:
        user_data = Path(user_data_file).read_text()
    if not user_data:
        return ''
    return base64.b64encode(user_data.encode('utf-8')).decode('ascii')


async def wait_for_instance_status(
    step: ResourceStep,
    state: BuildState,
    instance_id: str,
    status: str,
) -> Instance:
    """Poll DescribeInstances until the instance reports ``status``."""
    seen: list[Instance] = []
    await step._poll(
        state,
        partial(state.client.describe_instances, state.settings.region, [instance_id]),
        status_evaluator(
            status,
            extract=_instance_status,
            retryable=state.settings.retry_codes.describe,
            on_match=lambda f: seen.append(f[0]),
        ),
        description=f'instance {instance_id} to reach {status}',
    )
    return seen[0]


class InstanceStep(ResourceStep):
    """Create the build instance and wait until it is Stopped (created).

    On a capacity error the optional ZoneFallback re-runs a network +
    instance sub-pipeline in recommended zones; the winning sub-steps are
    adopted and cleaned up when this step is.
    """

    name = 'instance'
    kind = 'instance'

    def __init__(
        self,
        *,
        zone_id: str = '',
        fallback: ZoneFallback | None = None,
    ) -> None:
        super().__init__()
        self.zone_id = zone_id
        self.fallback = fallback
        self.adopted: list[Step] = []

    def build_request(self, state: BuildState) -> InstanceRequest:
        settings = state.settings
        image_id = ''
        if not settings.image_family:
            image_id = state.require('source_image').image_id
        return InstanceRequest(
            region_id=settings.region,
            instance_type=settings.instance_type,
            zone_id=self.zone_id or state.require('zone_id'),
            security_group_id=state.require('security_group_id'),
            vswitch_id=state.require('vswitch_id'),
            client_token=new_client_token(),
            image_id=image_id,
            image_family=settings.image_family,
            instance_name=settings.instance_name,
            internet_charge_type=settings.internet_charge_type,
            internet_max_bandwidth_out=settings.internet_max_bandwidth_out,
            io_optimized=settings.io_optimized,
            user_data=read_user_data(settings.user_data, settings.user_data_file),
            password=settings.ssh_password,
            ram_role_name=settings.ram_role_name,
            security_enhancement_strategy=settings.security_enhancement_strategy,
            tags=settings.tags,
            system_disk=settings.system_disk,
            data_disks=settings.data_disks,
        )

    async def _execute(self, state: BuildState) -> None:
        client = state.client
        request = self.build_request(state)

        state.ui.say('Creating instance...')
        try:
            instance_id = await self._create(state, partial(client.create_instance, request))
        except CloudAPIError as exc:
            if self.fallback is None or not is_capacity_error(exc, state.settings.retry_codes):
                raise
            logger.warning('instance_capacity_exhausted', zone_id=request.zone_id, code=exc.code)
            self.adopted = await self.fallback.recover(
                state, failed_zone=request.zone_id, cause=exc,
            )
            self._take_ownership(state.require('instance_id'))
            return

        try:
            instance = await wait_for_instance_status(
                self, state, instance_id, INSTANCE_STATUS_STOPPED,
            )
        except Exception:
            await self._discard(
                state, partial(client.delete_instance, instance_id, force=True), instance_id,
            )
            raise

        self._take_ownership(instance_id)
        state.instance = instance
        state.instance_id = instance_id
        state.ui.message(f'Created instance: {instance_id}')

    async def _release(self, state: BuildState) -> None:
        if self.adopted:
            for step in reversed(self.adopted):
                await step.cleanup(state)
            return
        await self._delete(
            state, partial(state.client.delete_instance, self.resource_id, force=True),
        )
        if state.instance_id == self.resource_id:
            state.instance = None
            state.instance_id = None


class StartInstanceStep(NoResourceStep):
    name = 'start_instance'
    kind = 'instance'

    async def _execute(self, state: BuildState) -> None:
        instance_id = state.require('instance_id')
        state.ui.say(f'Starting instance: {instance_id}')
        await self._create(
            state,
            partial(state.client.start_instance, instance_id),
            description=f'start of {instance_id}',
        )
        state.instance = await wait_for_instance_status(
            self, state, instance_id, INSTANCE_STATUS_RUNNING,
        )
        state.ui.message(f'Instance {instance_id} is running')


class ProvisionStep(NoResourceStep):
    """Run the configured provisioners against the running instance."""

    name = 'provision'

    def __init__(self, provisioners: Sequence[Provisioner] = ()) -> None:
        super().__init__()
        self.provisioners = list(provisioners)

    async def _execute(self, state: BuildState) -> None:
        state.require('instance_id')
        for n, provisioner in enumerate(self.provisioners, start=1):
            label = getattr(provisioner, '__name__', type(provisioner).__name__)
            state.ui.say(f'Running provisioner {n}/{len(self.provisioners)}: {label}')
            await provisioner(state)


class StopInstanceStep(NoResourceStep):
    name = 'stop_instance'
    kind = 'instance'

    def __init__(self, *, force: bool = False) -> None:
        super().__init__()
        self.force = force

    async def _execute(self, state: BuildState) -> None:
        instance_id = state.require('instance_id')
        state.ui.say(f'Stopping instance: {instance_id}')
        await self._create(
            state,
            partial(state.client.stop_instance, instance_id, force=self.force),
            description=f'stop of {instance_id}',
        )
        state.instance = await wait_for_instance_status(
            self, state, instance_id, INSTANCE_STATUS_STOPPED,
        )
        state.ui.message(f'Instance {instance_id} stopped')
