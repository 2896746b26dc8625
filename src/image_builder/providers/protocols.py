"""Cloud client protocol consumed by the provisioning steps.

Implementations: InMemoryCloud (testing), AlicloudClient (production).
Every operation either returns a typed model / id or raises CloudAPIError
carrying the provider error code.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from .models import (
    Image,
    Instance,
    InstanceRequest,
    Recommendation,
    SecurityGroup,
    Vpc,
    VSwitch,
    ZoneCandidate,
)


@runtime_checkable
class CloudClient(Protocol):
    """Create / describe / delete operations per resource kind."""

    # Regions and placement
    async def describe_regions(self) -> list[str]: ...
    async def describe_available_zones(
        self, region_id: str, instance_type: str,
    ) -> list[ZoneCandidate]: ...
    async def describe_recommended_instance_types(
        self, region_id: str, instance_type: str,
    ) -> list[Recommendation]: ...

    # VPC
    async def describe_vpcs(
        self, region_id: str, *, vpc_id: str = "", vpc_name: str = "",
    ) -> list[Vpc]: ...
    async def create_vpc(
        self, region_id: str, *, cidr_block: str, vpc_name: str, client_token: str,
    ) -> str: ...
    async def delete_vpc(self, vpc_id: str) -> None: ...

    # vSwitch
    async def describe_vswitches(
        self,
        vpc_id: str,
        *,
        vswitch_id: str = "",
        vswitch_name: str = "",
        zone_id: str = "",
    ) -> list[VSwitch]: ...
    async def create_vswitch(
        self,
        vpc_id: str,
        *,
        zone_id: str,
        cidr_block: str,
        vswitch_name: str,
        client_token: str,
    ) -> str: ...
    async def delete_vswitch(self, vswitch_id: str) -> None: ...

    # Security group
    async def describe_security_groups(
        self,
        region_id: str,
        *,
        vpc_id: str = "",
        security_group_id: str = "",
        security_group_name: str = "",
    ) -> list[SecurityGroup]: ...
    async def create_security_group(
        self,
        region_id: str,
        *,
        vpc_id: str,
        security_group_name: str,
        client_token: str,
    ) -> str: ...
    async def authorize_security_group(
        self,
        region_id: str,
        security_group_id: str,
        *,
        ip_protocol: str,
        port_range: str,
        source_cidr_ip: str,
    ) -> None: ...
    async def delete_security_group(
        self, region_id: str, security_group_id: str,
    ) -> None: ...

    # Instance
    async def create_instance(self, request: InstanceRequest) -> str: ...
    async def describe_instances(
        self, region_id: str, instance_ids: list[str],
    ) -> list[Instance]: ...
    async def start_instance(self, instance_id: str) -> None: ...
    async def stop_instance(self, instance_id: str, *, force: bool = False) -> None: ...
    async def delete_instance(self, instance_id: str, *, force: bool = True) -> None: ...

    # Image
    async def describe_images(
        self,
        region_id: str,
        *,
        image_id: str = "",
        image_name: str = "",
        status: str = "",
    ) -> list[Image]: ...
    async def create_image(
        self,
        region_id: str,
        *,
        instance_id: str,
        image_name: str,
        description: str,
        client_token: str,
    ) -> str: ...
    async def copy_image(
        self,
        region_id: str,
        image_id: str,
        *,
        destination_region_id: str,
        destination_image_name: str,
        client_token: str,
    ) -> str: ...
    async def delete_image(
        self, region_id: str, image_id: str, *, force: bool = True,
    ) -> None: ...
