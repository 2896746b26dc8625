"""In-memory CloudClient for tests and local dry runs.

Satisfies the CloudClient protocol but keeps every resource in dicts.
Failures are scripted per action with ``fail()``; newly created resources can
be held in a pending status for a number of describe calls (``pending_polls``)
or indefinitely (``hold()``), to exercise the poller.
"""

from __future__ import annotations

import ipaddress
import itertools
from dataclasses import dataclass, replace
from typing import Any

from .errors import CloudAPIError
from .models import (
    IMAGE_STATUS_AVAILABLE,
    INSTANCE_STATUS_RUNNING,
    INSTANCE_STATUS_STOPPED,
    Image,
    Instance,
    InstanceRequest,
    Recommendation,
    SecurityGroup,
    Vpc,
    VSwitch,
    ZoneCandidate,
)

_NOT_FOUND = {
    'vpc': 'InvalidVpcID.NotFound',
    'vswitch': 'InvalidVSwitchId.NotFound',
    'security_group': 'InvalidSecurityGroupId.NotFound',
    'instance': 'InvalidInstanceId.NotFound',
    'image': 'InvalidImageId.NotFound',
}


@dataclass
class _Fault:
    code: str
    match: dict[str, Any]
    times: int | None  # None = every matching call


@dataclass
class _Pending:
    polls_left: int | None  # None = held forever
    pending_status: str
    final_status: str


class InMemoryCloud:
    """Test cloud that records calls and replays scripted faults."""

    def __init__(
        self,
        *,
        region_id: str = 'cn-hangzhou',
        regions: tuple[str, ...] = ('cn-hangzhou', 'cn-beijing', 'cn-shanghai'),
        zones: dict[str, str] | None = None,
        recommendations: tuple[Recommendation, ...] = (),
        pending_polls: int = 0,
    ) -> None:
        self.region_id = region_id
        self.regions = list(regions)
        self.zones = dict(zones) if zones is not None else {
            f'{region_id}-a': 'Available',
            f'{region_id}-b': 'Available',
        }
        self.recommendations = list(recommendations)
        self.pending_polls = pending_polls

        self.vpcs: dict[str, Vpc] = {}
        self.vswitches: dict[str, VSwitch] = {}
        self.security_groups: dict[str, SecurityGroup] = {}
        self.instances: dict[str, Instance] = {}
        self.images: dict[str, Image] = {}
        self.ingress_rules: list[dict[str, str]] = []

        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.created: list[tuple[str, str]] = []
        self.deleted: list[tuple[str, str]] = []

        self._faults: dict[str, list[_Fault]] = {}
        self._holds: list[tuple[str, dict[str, Any]]] = []
        self._pending: dict[str, _Pending] = {}
        self._ids = itertools.count(1)

    # ── Scripting ────────────────────────────────────────────────

    def fail(self, action: str, *codes: str, **match: Any) -> None:
        """Raise each code once, in order, on calls to ``action`` matching ``match``."""
        queue = self._faults.setdefault(action, [])
        for code in codes:
            queue.append(_Fault(code=code, match=match, times=1))

    def fail_always(self, action: str, code: str, **match: Any) -> None:
        self._faults.setdefault(action, []).append(
            _Fault(code=code, match=match, times=None)
        )

    def hold(self, kind: str, **match: Any) -> None:
        """Keep matching resources of ``kind`` pending forever once created."""
        self._holds.append((kind, match))

    def add_vpc(self, vpc: Vpc) -> Vpc:
        self.vpcs[vpc.vpc_id] = vpc
        return vpc

    def add_vswitch(self, vswitch: VSwitch) -> VSwitch:
        self.vswitches[vswitch.vswitch_id] = vswitch
        return vswitch

    def add_security_group(self, group: SecurityGroup) -> SecurityGroup:
        self.security_groups[group.security_group_id] = group
        return group

    def add_image(self, image: Image) -> Image:
        self.images[image.image_id] = image
        return image

    def calls_to(self, action: str) -> list[dict[str, Any]]:
        return [params for name, params in self.calls if name == action]

    def created_of(self, kind: str) -> list[str]:
        return [rid for k, rid in self.created if k == kind]

    def deleted_of(self, kind: str) -> list[str]:
        return [rid for k, rid in self.deleted if k == kind]

    def live(self, kind: str) -> list[str]:
        """Ids of resources of ``kind`` created here and not yet deleted."""
        gone = set(self.deleted_of(kind))
        return [rid for rid in self.created_of(kind) if rid not in gone]

    # ── Internals ────────────────────────────────────────────────

    def _record(self, action: str, **params: Any) -> None:
        self.calls.append((action, params))
        for fault in self._faults.get(action, []):
            if fault.times == 0:
                continue
            if any(params.get(k) != v for k, v in fault.match.items()):
                continue
            if fault.times is not None:
                fault.times -= 1
            raise CloudAPIError(fault.code, f'injected {fault.code}', status_code=400, action=action)

    def _new_id(self, prefix: str) -> str:
        return f'{prefix}-{next(self._ids):04d}'

    def _track(
        self,
        kind: str,
        resource_id: str,
        attrs: dict[str, Any],
        *,
        pending_status: str,
        final_status: str,
    ) -> None:
        self.created.append((kind, resource_id))
        held = any(
            k == kind and all(attrs.get(a) == v for a, v in match.items())
            for k, match in self._holds
        )
        polls = None if held else self.pending_polls
        if polls == 0:
            return
        self._pending[resource_id] = _Pending(polls, pending_status, final_status)

    def _transition(self, resource_id: str, pending_status: str, final_status: str) -> None:
        if self.pending_polls:
            self._pending[resource_id] = _Pending(self.pending_polls, pending_status, final_status)

    def _status(self, resource_id: str, current: str) -> str:
        pending = self._pending.get(resource_id)
        if pending is None:
            return current
        if pending.polls_left is None:
            return pending.pending_status
        if pending.polls_left > 0:
            pending.polls_left -= 1
            return pending.pending_status
        del self._pending[resource_id]
        return pending.final_status

    def _lookup(self, kind: str, store: dict[str, Any], resource_id: str) -> Any:
        try:
            return store[resource_id]
        except KeyError:
            raise CloudAPIError(
                _NOT_FOUND[kind], f'{kind} {resource_id} not found', status_code=404,
            ) from None

    # ── Regions and placement ────────────────────────────────────

    async def describe_regions(self) -> list[str]:
        self._record('DescribeRegions')
        return list(self.regions)

    async def describe_available_zones(
        self, region_id: str, instance_type: str,
    ) -> list[ZoneCandidate]:
        self._record('DescribeAvailableResource', region_id=region_id, instance_type=instance_type)
        return [ZoneCandidate(zone_id=z, status=s) for z, s in self.zones.items()]

    async def describe_recommended_instance_types(
        self, region_id: str, instance_type: str,
    ) -> list[Recommendation]:
        self._record('DescribeRecommendInstanceType', region_id=region_id, instance_type=instance_type)
        return list(self.recommendations)

    # ── VPC ──────────────────────────────────────────────────────

    async def describe_vpcs(
        self, region_id: str, *, vpc_id: str = '', vpc_name: str = '',
    ) -> list[Vpc]:
        self._record('DescribeVpcs', region_id=region_id, vpc_id=vpc_id, vpc_name=vpc_name)
        found = []
        for vpc in self.vpcs.values():
            if vpc_id and vpc.vpc_id != vpc_id:
                continue
            if vpc_name and vpc.vpc_name != vpc_name:
                continue
            found.append(replace(vpc, status=self._status(vpc.vpc_id, vpc.status)))
        return found

    async def create_vpc(
        self, region_id: str, *, cidr_block: str, vpc_name: str, client_token: str,
    ) -> str:
        self._record('CreateVpc', region_id=region_id, cidr_block=cidr_block, vpc_name=vpc_name)
        vpc_id = self._new_id('vpc')
        self.vpcs[vpc_id] = Vpc(vpc_id, 'Available', vpc_name, cidr_block)
        self._track('vpc', vpc_id, {'vpc_name': vpc_name},
                    pending_status='Pending', final_status='Available')
        return vpc_id

    async def delete_vpc(self, vpc_id: str) -> None:
        self._record('DeleteVpc', vpc_id=vpc_id)
        self._lookup('vpc', self.vpcs, vpc_id)
        del self.vpcs[vpc_id]
        self.deleted.append(('vpc', vpc_id))

    # ── vSwitch ──────────────────────────────────────────────────

    async def describe_vswitches(
        self,
        vpc_id: str,
        *,
        vswitch_id: str = '',
        vswitch_name: str = '',
        zone_id: str = '',
    ) -> list[VSwitch]:
        self._record(
            'DescribeVSwitches',
            vpc_id=vpc_id, vswitch_id=vswitch_id, vswitch_name=vswitch_name, zone_id=zone_id,
        )
        found = []
        for vsw in self.vswitches.values():
            if vsw.vpc_id != vpc_id:
                continue
            if vswitch_id and vsw.vswitch_id != vswitch_id:
                continue
            if vswitch_name and vsw.vswitch_name != vswitch_name:
                continue
            if zone_id and vsw.zone_id != zone_id:
                continue
            found.append(replace(vsw, status=self._status(vsw.vswitch_id, vsw.status)))
        return found

    async def create_vswitch(
        self,
        vpc_id: str,
        *,
        zone_id: str,
        cidr_block: str,
        vswitch_name: str,
        client_token: str,
    ) -> str:
        self._record(
            'CreateVSwitch',
            vpc_id=vpc_id, zone_id=zone_id, cidr_block=cidr_block, vswitch_name=vswitch_name,
        )
        clash = self._overlapping_vswitch(vpc_id, cidr_block)
        if clash is not None:
            raise CloudAPIError(
                'InvalidCidrBlock.Overlapped',
                f'{cidr_block} overlaps {clash.vswitch_id} ({clash.cidr_block})',
                status_code=400,
                action='CreateVSwitch',
            )
        vswitch_id = self._new_id('vsw')
        self.vswitches[vswitch_id] = VSwitch(
            vswitch_id, vpc_id, zone_id, 'Available', vswitch_name, cidr_block,
        )
        self._track('vswitch', vswitch_id, {'zone_id': zone_id},
                    pending_status='Pending', final_status='Available')
        return vswitch_id

    def _overlapping_vswitch(self, vpc_id: str, cidr_block: str) -> VSwitch | None:
        if not cidr_block:
            return None
        wanted = ipaddress.ip_network(cidr_block, strict=False)
        for vsw in self.vswitches.values():
            if vsw.vpc_id != vpc_id or not vsw.cidr_block:
                continue
            if wanted.overlaps(ipaddress.ip_network(vsw.cidr_block, strict=False)):
                return vsw
        return None

    async def delete_vswitch(self, vswitch_id: str) -> None:
        self._record('DeleteVSwitch', vswitch_id=vswitch_id)
        self._lookup('vswitch', self.vswitches, vswitch_id)
        del self.vswitches[vswitch_id]
        self._pending.pop(vswitch_id, None)
        self.deleted.append(('vswitch', vswitch_id))

    # ── Security group ───────────────────────────────────────────

    async def describe_security_groups(
        self,
        region_id: str,
        *,
        vpc_id: str = '',
        security_group_id: str = '',
        security_group_name: str = '',
    ) -> list[SecurityGroup]:
        self._record(
            'DescribeSecurityGroups',
            region_id=region_id,
            vpc_id=vpc_id,
            security_group_id=security_group_id,
            security_group_name=security_group_name,
        )
        return [
            g for g in self.security_groups.values()
            if (not vpc_id or g.vpc_id == vpc_id)
            and (not security_group_id or g.security_group_id == security_group_id)
            and (not security_group_name or g.security_group_name == security_group_name)
        ]

    async def create_security_group(
        self,
        region_id: str,
        *,
        vpc_id: str,
        security_group_name: str,
        client_token: str,
    ) -> str:
        self._record(
            'CreateSecurityGroup',
            region_id=region_id, vpc_id=vpc_id, security_group_name=security_group_name,
        )
        group_id = self._new_id('sg')
        self.security_groups[group_id] = SecurityGroup(group_id, vpc_id, security_group_name)
        self.created.append(('security_group', group_id))
        return group_id

    async def authorize_security_group(
        self,
        region_id: str,
        security_group_id: str,
        *,
        ip_protocol: str,
        port_range: str,
        source_cidr_ip: str,
    ) -> None:
        self._record(
            'AuthorizeSecurityGroup',
            security_group_id=security_group_id, ip_protocol=ip_protocol, port_range=port_range,
        )
        self._lookup('security_group', self.security_groups, security_group_id)
        self.ingress_rules.append(
            {
                'security_group_id': security_group_id,
                'ip_protocol': ip_protocol,
                'port_range': port_range,
                'source_cidr_ip': source_cidr_ip,
            }
        )

    async def delete_security_group(self, region_id: str, security_group_id: str) -> None:
        self._record('DeleteSecurityGroup', security_group_id=security_group_id)
        self._lookup('security_group', self.security_groups, security_group_id)
        del self.security_groups[security_group_id]
        self.deleted.append(('security_group', security_group_id))

    # ── Instance ─────────────────────────────────────────────────

    async def create_instance(self, request: InstanceRequest) -> str:
        self._record(
            'CreateInstance',
            zone_id=request.zone_id,
            instance_type=request.instance_type,
            vswitch_id=request.vswitch_id,
            image_id=request.image_id,
        )
        instance_id = self._new_id('i')
        self.instances[instance_id] = Instance(
            instance_id,
            INSTANCE_STATUS_STOPPED,
            request.zone_id,
            request.instance_type,
            private_ip=f'172.16.0.{len(self.instances) + 10}',
        )
        self._track('instance', instance_id, {'zone_id': request.zone_id},
                    pending_status='Pending', final_status=INSTANCE_STATUS_STOPPED)
        return instance_id

    async def describe_instances(
        self, region_id: str, instance_ids: list[str],
    ) -> list[Instance]:
        self._record('DescribeInstances', region_id=region_id, instance_ids=list(instance_ids))
        return [
            replace(inst, status=self._status(inst.instance_id, inst.status))
            for iid in instance_ids
            if (inst := self.instances.get(iid)) is not None
        ]

    async def start_instance(self, instance_id: str) -> None:
        self._record('StartInstance', instance_id=instance_id)
        inst = self._lookup('instance', self.instances, instance_id)
        self.instances[instance_id] = replace(inst, status=INSTANCE_STATUS_RUNNING)
        self._transition(instance_id, 'Starting', INSTANCE_STATUS_RUNNING)

    async def stop_instance(self, instance_id: str, *, force: bool = False) -> None:
        self._record('StopInstance', instance_id=instance_id, force=force)
        inst = self._lookup('instance', self.instances, instance_id)
        self.instances[instance_id] = replace(inst, status=INSTANCE_STATUS_STOPPED)
        self._transition(instance_id, 'Stopping', INSTANCE_STATUS_STOPPED)

    async def delete_instance(self, instance_id: str, *, force: bool = True) -> None:
        self._record('DeleteInstance', instance_id=instance_id, force=force)
        self._lookup('instance', self.instances, instance_id)
        del self.instances[instance_id]
        self._pending.pop(instance_id, None)
        self.deleted.append(('instance', instance_id))

    # ── Image ────────────────────────────────────────────────────

    async def describe_images(
        self,
        region_id: str,
        *,
        image_id: str = '',
        image_name: str = '',
        status: str = '',
    ) -> list[Image]:
        self._record('DescribeImages', region_id=region_id, image_id=image_id, image_name=image_name)
        found = []
        for img in self.images.values():
            if img.region_id and img.region_id != region_id:
                continue
            if image_id and img.image_id != image_id:
                continue
            if image_name and img.image_name != image_name:
                continue
            found.append(replace(img, status=self._status(img.image_id, img.status)))
        return found

    async def create_image(
        self,
        region_id: str,
        *,
        instance_id: str,
        image_name: str,
        description: str,
        client_token: str,
    ) -> str:
        self._record('CreateImage', region_id=region_id, instance_id=instance_id, image_name=image_name)
        self._lookup('instance', self.instances, instance_id)
        image_id = self._new_id('m')
        self.images[image_id] = Image(image_id, IMAGE_STATUS_AVAILABLE, image_name, region_id)
        self._track('image', image_id, {'region_id': region_id},
                    pending_status='Creating', final_status=IMAGE_STATUS_AVAILABLE)
        return image_id

    async def copy_image(
        self,
        region_id: str,
        image_id: str,
        *,
        destination_region_id: str,
        destination_image_name: str,
        client_token: str,
    ) -> str:
        self._record(
            'CopyImage',
            region_id=region_id,
            image_id=image_id,
            destination_region_id=destination_region_id,
        )
        self._lookup('image', self.images, image_id)
        copy_id = self._new_id('m')
        self.images[copy_id] = Image(
            copy_id, IMAGE_STATUS_AVAILABLE, destination_image_name, destination_region_id,
        )
        self._track('image', copy_id, {'region_id': destination_region_id},
                    pending_status='Creating', final_status=IMAGE_STATUS_AVAILABLE)
        return copy_id

    async def delete_image(self, region_id: str, image_id: str, *, force: bool = True) -> None:
        self._record('DeleteImage', region_id=region_id, image_id=image_id)
        self._lookup('image', self.images, image_id)
        del self.images[image_id]
        self._pending.pop(image_id, None)
        self.deleted.append(('image', image_id))
