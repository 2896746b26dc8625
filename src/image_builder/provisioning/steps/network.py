"""VPC and vSwitch steps.

Both follow the same acquire-or-create shape:
  1. pinned by id -> read-only lookup, reuse or fail
  2. matched by name -> reuse without creating anything
  3. otherwise create, wait until Available, own the result

vSwitch creation walks the candidate zones in order and commits to the
first zone that yields an Available vSwitch. The configured CIDR block is
never replicated across zones.
"""

from __future__ import annotations

from functools import partial

from ...errors import BuildError, PinnedResourceNotFound, ZonesExhaustedError
from ...observability import get_logger
from ...providers.errors import CloudAPIError
from ...providers.models import VPC_STATUS_AVAILABLE, VSWITCH_STATUS_AVAILABLE, Vpc, VSwitch
from ..fallback import candidate_zones
from ..retry_codes import status_evaluator
from ..state import NETWORK_TYPE_VPC, BuildState
from .base import ResourceStep, new_client_token

logger = get_logger(__name__)


class VpcStep(ResourceStep):
    name = 'vpc'
    kind = 'vpc'

    def __init__(
        self,
        *,
        vpc_id: str = '',
        vpc_name: str = '',
        cidr_block: str = '',
    ) -> None:
        super().__init__()
        self.vpc_id = vpc_id
        self.vpc_name = vpc_name
        self.cidr_block = cidr_block

    async def _execute(self, state: BuildState) -> None:
        client = state.client
        region = state.settings.region

        if self.vpc_id:
            found = await client.describe_vpcs(region, vpc_id=self.vpc_id)
            if len(found) != 1:
                raise PinnedResourceNotFound('vpc', self.vpc_id)
            self._use(state, found[0].vpc_id, owned=False)
            state.ui.message(f'Using existing vpc: {self.vpc_id}')
            return

        if self.vpc_name:
            found = await client.describe_vpcs(region, vpc_name=self.vpc_name)
            if found:
                self._use(state, found[0].vpc_id, owned=False)
                state.ui.message(f'Using existing vpc {found[0].vpc_id} named {self.vpc_name}')
                return

        state.ui.say('Creating vpc...')
        vpc_id = await self._create(
            state,
            partial(
                client.create_vpc,
                region,
                cidr_block=self.cidr_block or state.settings.vpc_cidr_block,
                vpc_name=self.vpc_name,
                client_token=new_client_token(),
            ),
        )
        try:
            await self._poll(
                state,
                partial(client.describe_vpcs, region, vpc_id=vpc_id),
                status_evaluator(
                    VPC_STATUS_AVAILABLE,
                    extract=_first_status,
                    retryable=state.settings.retry_codes.describe,
                ),
                description=f'vpc {vpc_id} to become available',
            )
        except Exception:
            await self._discard(state, partial(client.delete_vpc, vpc_id), vpc_id)
            raise

        self._use(state, vpc_id, owned=True)
        state.ui.message(f'Created vpc: {vpc_id}')

    def _use(self, state: BuildState, vpc_id: str, *, owned: bool) -> None:
        if owned:
            self._take_ownership(vpc_id)
        else:
            self._reuse(vpc_id)
        state.vpc_id = vpc_id
        state.network_type = NETWORK_TYPE_VPC

    async def _release(self, state: BuildState) -> None:
        await self._delete(state, partial(state.client.delete_vpc, self.resource_id))
        if state.vpc_id == self.resource_id:
            state.vpc_id = None


class VSwitchStep(ResourceStep):
    name = 'vswitch'
    kind = 'vswitch'

    def __init__(
        self,
        *,
        vswitch_id: str = '',
        zone_id: str = '',
        vswitch_name: str = '',
        cidr_block: str = '',
    ) -> None:
        super().__init__()
        self.vswitch_id = vswitch_id
        self.zone_id = zone_id
        self.vswitch_name = vswitch_name
        self.cidr_block = cidr_block

    async def _execute(self, state: BuildState) -> None:
        client = state.client
        vpc_id = state.require('vpc_id')

        if self.vswitch_id:
            found = await client.describe_vswitches(
                vpc_id,
                vswitch_id=self.vswitch_id,
                vswitch_name=self.vswitch_name,
                zone_id=self.zone_id,
            )
            if len(found) != 1:
                raise PinnedResourceNotFound('vswitch', self.vswitch_id)
            self._reuse(found[0].vswitch_id)
            state.select_vswitch(found[0])
            state.ui.message(f'Using existing vswitch: {self.vswitch_id}')
            return

        zones = await candidate_zones(state, self.zone_id)

        if self.vswitch_name:
            state.ui.say(f'Searching vswitches using name: {self.vswitch_name} ...')
            found = await client.describe_vswitches(vpc_id, vswitch_name=self.vswitch_name)
            matching = [v for v in found if v.zone_id in zones]
            if not matching:
                raise PinnedResourceNotFound('vswitch', self.vswitch_name)
            self._reuse(matching[0].vswitch_id)
            state.select_vswitch(matching[0])
            state.vswitches = matching
            state.ui.message(
                'Using existing vswitches: '
                + ', '.join(v.vswitch_id for v in matching)
            )
            return

        cidr_block = self.cidr_block or state.settings.cidr_block
        state.ui.say('Creating vswitch...')
        for zone_id in zones:
            vswitch = await self._create_in_zone(state, vpc_id, zone_id, cidr_block)
            if vswitch is None:
                continue
            self._take_ownership(vswitch.vswitch_id)
            state.select_vswitch(vswitch)
            state.ui.message(f'Created vswitch: {vswitch.vswitch_id}')
            return

        raise ZonesExhaustedError('vswitch', zones)

    async def _create_in_zone(
        self,
        state: BuildState,
        vpc_id: str,
        zone_id: str,
        cidr_block: str,
    ) -> VSwitch | None:
        """Create and wait for one vSwitch; None means try the next zone."""
        client = state.client
        state.ui.say(f'Try to create vswitch in zone: {zone_id}')
        try:
            vswitch_id = await self._create(
                state,
                partial(
                    client.create_vswitch,
                    vpc_id,
                    zone_id=zone_id,
                    cidr_block=cidr_block,
                    vswitch_name=self.vswitch_name,
                    client_token=new_client_token(),
                ),
                description=f'vswitch creation in {zone_id}',
            )
        except (CloudAPIError, BuildError) as exc:
            state.ui.error(f'Error creating vswitch: {exc}')
            logger.warning('vswitch_create_failed', zone_id=zone_id, error=str(exc))
            return None

        ready: list[VSwitch] = []
        try:
            await self._poll(
                state,
                partial(client.describe_vswitches, vpc_id, vswitch_id=vswitch_id),
                status_evaluator(
                    VSWITCH_STATUS_AVAILABLE,
                    extract=_first_status,
                    retryable=state.settings.retry_codes.describe,
                    on_match=lambda found: ready.append(found[0]),
                ),
                retry_times=state.settings.short_retry_times,
                description=f'vswitch {vswitch_id} to become available',
            )
        except (CloudAPIError, BuildError) as exc:
            state.ui.error(f'Timeout waiting for vswitch {vswitch_id} to become available: {exc}')
            logger.warning('vswitch_not_ready', zone_id=zone_id, vswitch_id=vswitch_id, error=str(exc))
            await self._discard(state, partial(client.delete_vswitch, vswitch_id), vswitch_id)
            return None
        return ready[0]

    async def _release(self, state: BuildState) -> None:
        await self._delete(state, partial(state.client.delete_vswitch, self.resource_id))
        if state.vswitch_id == self.resource_id:
            state.clear_vswitch()


def _first_status(found: list[Vpc] | list[VSwitch]) -> str | None:
    return found[0].status if found else None
