"""Typed views of the provider responses the builder depends on.

Only the handful of fields the pipeline reads are modelled: ids, status,
zone and names. Everything else the API returns is dropped at the client.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

ZONE_STATUS_AVAILABLE = 'Available'
VPC_STATUS_AVAILABLE = 'Available'
VSWITCH_STATUS_AVAILABLE = 'Available'
INSTANCE_STATUS_RUNNING = 'Running'
INSTANCE_STATUS_STOPPED = 'Stopped'
IMAGE_STATUS_AVAILABLE = 'Available'

# Every status an image can hold; used when checking whether a name is taken.
IMAGE_STATUS_QUERIED = 'Creating,Waiting,Available,UnAvailable,CreateFailed'


@dataclass(frozen=True, slots=True)
class ZoneCandidate:
    zone_id: str
    status: str

    @property
    def available(self) -> bool:
        return self.status == ZONE_STATUS_AVAILABLE


@dataclass(frozen=True, slots=True)
class Recommendation:
    """Alternate instance type / zone pairing suggested by the provider."""

    zone_id: str
    instance_type: str


@dataclass(frozen=True, slots=True)
class Vpc:
    vpc_id: str
    status: str
    vpc_name: str = ''
    cidr_block: str = ''


@dataclass(frozen=True, slots=True)
class VSwitch:
    vswitch_id: str
    vpc_id: str
    zone_id: str
    status: str
    vswitch_name: str = ''
    cidr_block: str = ''


@dataclass(frozen=True, slots=True)
class SecurityGroup:
    security_group_id: str
    vpc_id: str = ''
    security_group_name: str = ''


@dataclass(frozen=True, slots=True)
class Instance:
    instance_id: str
    status: str
    zone_id: str = ''
    instance_type: str = ''
    private_ip: str = ''
    public_ip: str = ''


@dataclass(frozen=True, slots=True)
class Image:
    image_id: str
    status: str
    image_name: str = ''
    region_id: str = ''


@dataclass(frozen=True, slots=True)
class DiskMapping:
    """System or data disk layout for the build instance."""

    disk_name: str = ''
    category: str = ''
    size: int = 0
    description: str = ''
    snapshot_id: str = ''
    device: str = ''
    delete_with_instance: bool = True
    encrypted: bool | None = None


@dataclass(frozen=True, slots=True)
class InstanceRequest:
    """Parameters for ``CloudClient.create_instance``."""

    region_id: str
    instance_type: str
    zone_id: str
    security_group_id: str
    vswitch_id: str
    client_token: str
    image_id: str = ''
    image_family: str = ''
    instance_name: str = ''
    internet_charge_type: str = ''
    internet_max_bandwidth_out: int = 0
    io_optimized: bool | None = None
    user_data: str = ''
    password: str = ''
    ram_role_name: str = ''
    security_enhancement_strategy: str = ''
    tags: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    system_disk: DiskMapping = field(default_factory=DiskMapping)
    data_disks: tuple[DiskMapping, ...] = ()
