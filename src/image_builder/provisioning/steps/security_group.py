"""Security group step: reuse a pinned group or create one with SSH ingress."""

from __future__ import annotations

from functools import partial

from ...errors import PinnedResourceNotFound
from ..state import BuildState
from .base import ResourceStep, new_client_token


class SecurityGroupStep(ResourceStep):
    name = 'security_group'
    kind = 'security_group'

    def __init__(
        self,
        *,
        security_group_id: str = '',
        security_group_name: str = '',
        ssh_port: int = 22,
        source_cidr_ip: str = '0.0.0.0/0',
    ) -> None:
        super().__init__()
        self.security_group_id = security_group_id
        self.security_group_name = security_group_name
        self.ssh_port = ssh_port
        self.source_cidr_ip = source_cidr_ip

    async def _execute(self, state: BuildState) -> None:
        client = state.client
        region = state.settings.region
        vpc_id = state.require('vpc_id')

        if self.security_group_id:
            found = await client.describe_security_groups(
                region, vpc_id=vpc_id, security_group_id=self.security_group_id,
            )
            if not found:
                raise PinnedResourceNotFound('security group', self.security_group_id)
            self._reuse(self.security_group_id)
            state.security_group_id = self.security_group_id
            state.ui.message(f'Using existing security group: {self.security_group_id}')
            return

        if self.security_group_name:
            found = await client.describe_security_groups(
                region, vpc_id=vpc_id, security_group_name=self.security_group_name,
            )
            if found:
                group_id = found[0].security_group_id
                self._reuse(group_id)
                state.security_group_id = group_id
                state.ui.message(
                    f'Using existing security group {group_id} named {self.security_group_name}'
                )
                return

        state.ui.say('Creating security group...')
        group_id = await self._create(
            state,
            partial(
                client.create_security_group,
                region,
                vpc_id=vpc_id,
                security_group_name=self.security_group_name,
                client_token=new_client_token(),
            ),
        )
        try:
            await self._create(
                state,
                partial(
                    client.authorize_security_group,
                    region,
                    group_id,
                    ip_protocol='tcp',
                    port_range=f'{self.ssh_port}/{self.ssh_port}',
                    source_cidr_ip=self.source_cidr_ip,
                ),
                description=f'ingress rule on {group_id}',
            )
        except Exception:
            await self._discard(
                state, partial(client.delete_security_group, region, group_id), group_id,
            )
            raise

        self._take_ownership(group_id)
        state.security_group_id = group_id
        state.ui.message(f'Created security group: {group_id}')

    async def _release(self, state: BuildState) -> None:
        await self._delete(
            state,
            partial(
                state.client.delete_security_group,
                state.settings.region,
                self.resource_id,
            ),
        )
        if state.security_group_id == self.resource_id:
            state.security_group_id = None
