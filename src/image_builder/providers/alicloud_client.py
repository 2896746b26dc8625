"""Async HTTP client for the Alibaba Cloud ECS and VPC RPC APIs.

Implements the CloudClient protocol on top of signed RPC-style GET requests
(HMAC-SHA1, signature version 1.0). Provider errors are decoded from the JSON
error body into CloudAPIError so steps can classify them by ``code``.
Includes exponential backoff with jitter for transport-level failures
(timeouts, 429, 5xx) and Retry-After header respect.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import random
import uuid
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import httpx

from .errors import CloudAPIError, CloudTimeoutError
from .models import (
    DiskMapping,
    Image,
    Instance,
    InstanceRequest,
    Recommendation,
    SecurityGroup,
    Vpc,
    VSwitch,
    ZoneCandidate,
)

logger = logging.getLogger(__name__)

ECS_API_VERSION = "2014-05-26"
VPC_API_VERSION = "2016-04-28"

# Status codes eligible for automatic transport-level retry.
_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

# Default retry configuration.
_DEFAULT_MAX_RETRIES = 3
_DEFAULT_BASE_DELAY = 1.0  # seconds
_DEFAULT_MAX_DELAY = 30.0  # seconds


# ── Signing ──────────────────────────────────────────────────────


def percent_encode(value: str) -> str:
    """RFC 3986 encoding as required by the RPC signature algorithm."""
    return quote(str(value), safe="~")


def sign_parameters(params: dict[str, str], secret: str, method: str = "GET") -> str:
    """Compute the RPC ``Signature`` for a parameter set (excluding Signature)."""
    canonical = "&".join(
        f"{percent_encode(k)}={percent_encode(v)}" for k, v in sorted(params.items())
    )
    string_to_sign = f"{method}&{percent_encode('/')}&{percent_encode(canonical)}"
    digest = hmac.new(
        f"{secret}&".encode("utf-8"),
        string_to_sign.encode("utf-8"),
        hashlib.sha1,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


# ── Module-level shared client ───────────────────────────────────

_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


def _reset_shared_async_client_for_tests() -> None:
    global _shared_async_client
    _shared_async_client = None


# ── Response helpers ─────────────────────────────────────────────


def _items(payload: dict[str, Any], outer: str, inner: str) -> list[dict[str, Any]]:
    """Unwrap the ``{"Vpcs": {"Vpc": [...]}}`` list shape the API uses."""
    container = payload.get(outer) or {}
    if isinstance(container, list):
        return container
    items = container.get(inner) or []
    return items if isinstance(items, list) else []


def _first_ip(container: Any) -> str:
    if not isinstance(container, dict):
        return ""
    ips = container.get("IpAddress") or []
    return ips[0] if ips else ""


def _zone_supports(zone: dict[str, Any], instance_type: str) -> bool:
    """True when the zone reports the instance type itself as Available."""
    for resource in _items(zone, "AvailableResources", "AvailableResource"):
        supported = _items(resource, "SupportedResources", "SupportedResource")
        for item in supported:
            if item.get("Value") in ("", None, instance_type):
                return item.get("Status") == "Available"
        if supported:
            return supported[0].get("Status") == "Available"
    return False


def _disk_params(prefix: str, disk: DiskMapping) -> dict[str, str]:
    params: dict[str, str] = {}
    if disk.disk_name:
        params[f"{prefix}DiskName"] = disk.disk_name
    if disk.category:
        params[f"{prefix}Category"] = disk.category
    if disk.size:
        params[f"{prefix}Size"] = str(disk.size)
    if disk.description:
        params[f"{prefix}Description"] = disk.description
    return params


# ── Client ───────────────────────────────────────────────────────


class AlicloudClient:
    """Async client for the ECS and VPC RPC endpoints of one region.

    All calls are signed with the configured access key pair.
    """

    def __init__(
        self,
        *,
        access_key: str,
        secret_key: str,
        region_id: str,
        security_token: str = "",
        ecs_endpoint: str | None = None,
        vpc_endpoint: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        max_retries: int = _DEFAULT_MAX_RETRIES,
        base_delay: float = _DEFAULT_BASE_DELAY,
        max_delay: float = _DEFAULT_MAX_DELAY,
    ) -> None:
        if not access_key or not secret_key:
            raise ValueError("access_key and secret_key are required")

        self._access_key = access_key
        self._secret_key = secret_key
        self._security_token = security_token
        self._region_id = region_id
        self._ecs_endpoint = (ecs_endpoint or "https://ecs.aliyuncs.com").rstrip("/")
        self._vpc_endpoint = (vpc_endpoint or "https://vpc.aliyuncs.com").rstrip("/")
        self._client = http_client or _get_shared_async_client()
        self._timeout = float(timeout_seconds)
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay

    # ── Transport ────────────────────────────────────────────────

    def _signed_params(
        self, action: str, version: str, params: dict[str, str],
    ) -> dict[str, str]:
        signed: dict[str, str] = {
            "Format": "JSON",
            "Version": version,
            "AccessKeyId": self._access_key,
            "SignatureMethod": "HMAC-SHA1",
            "SignatureVersion": "1.0",
            "SignatureNonce": uuid.uuid4().hex,
            "Timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "Action": action,
        }
        if self._security_token:
            signed["SecurityToken"] = self._security_token
        signed.update({k: v for k, v in params.items() if v not in ("", None)})
        signed["Signature"] = sign_parameters(signed, self._secret_key)
        return signed

    def _raise_for_status(self, resp: httpx.Response, action: str) -> dict[str, Any]:
        try:
            payload = resp.json()
        except ValueError:
            payload = None

        if resp.status_code < 400 and isinstance(payload, dict):
            return payload

        body = resp.text
        code = f"HTTP{resp.status_code}"
        message = body[:200] if body else f"HTTP {resp.status_code}"
        request_id = None
        if isinstance(payload, dict):
            code = payload.get("Code", code)
            message = payload.get("Message", message)
            request_id = payload.get("RequestId")
        raise CloudAPIError(
            code,
            message,
            status_code=resp.status_code,
            request_id=request_id,
            action=action,
        )

    async def _call(
        self,
        action: str,
        params: dict[str, str] | None = None,
        *,
        endpoint: str = "ecs",
    ) -> dict[str, Any]:
        """Execute one RPC action with exponential backoff for transient transport errors."""
        if endpoint == "vpc":
            url, version = self._vpc_endpoint, VPC_API_VERSION
        else:
            url, version = self._ecs_endpoint, ECS_API_VERSION

        last_exc: Exception | None = None
        resp: httpx.Response | None = None
        for attempt in range(self._max_retries + 1):
            # Nonce and timestamp must be fresh on every attempt.
            query = self._signed_params(action, version, params or {})
            try:
                resp = await self._client.request(
                    "GET",
                    url,
                    params=query,
                    timeout=self._timeout,
                )
            except httpx.TimeoutException as e:
                last_exc = CloudTimeoutError(str(e), action=action)
                if attempt < self._max_retries:
                    delay = self._backoff_delay(attempt)
                    logger.warning(
                        "%s timed out (attempt %d/%d), retrying in %.1fs",
                        action,
                        attempt + 1,
                        self._max_retries + 1,
                        delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                raise last_exc from e

            if resp.status_code not in _RETRYABLE_STATUS_CODES:
                break

            if attempt < self._max_retries:
                delay = self._retry_after_delay(resp, attempt)
                logger.warning(
                    "%s returned %d (attempt %d/%d), retrying in %.1fs",
                    action,
                    resp.status_code,
                    attempt + 1,
                    self._max_retries + 1,
                    delay,
                )
                await asyncio.sleep(delay)

        if resp is None:
            if last_exc:
                raise last_exc
            raise CloudAPIError("NoResponse", "exhausted retries with no response", action=action)
        return self._raise_for_status(resp, action)

    def _backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with full jitter."""
        delay = min(self._base_delay * (2 ** attempt), self._max_delay)
        return random.uniform(0, delay)

    def _retry_after_delay(self, resp: httpx.Response, attempt: int) -> float:
        """Use Retry-After header if present, otherwise exponential backoff."""
        retry_after = resp.headers.get("retry-after")
        if retry_after:
            try:
                return max(float(retry_after), 0.1)
            except ValueError:
                pass
        return self._backoff_delay(attempt)

    # ── Regions and placement ────────────────────────────────────

    async def describe_regions(self) -> list[str]:
        payload = await self._call("DescribeRegions")
        return [r["RegionId"] for r in _items(payload, "Regions", "Region")]

    async def describe_available_zones(
        self, region_id: str, instance_type: str,
    ) -> list[ZoneCandidate]:
        payload = await self._call(
            "DescribeAvailableResource",
            {
                "RegionId": region_id,
                "DestinationResource": "InstanceType",
                "IoOptimized": "optimized",
                "ResourceType": "instance",
                "InstanceType": instance_type,
            },
        )
        candidates = []
        for zone in _items(payload, "AvailableZones", "AvailableZone"):
            status = zone.get("Status", "")
            if status == "Available" and not _zone_supports(zone, instance_type):
                status = "SoldOut"
            candidates.append(ZoneCandidate(zone_id=zone["ZoneId"], status=status))
        return candidates

    async def describe_recommended_instance_types(
        self, region_id: str, instance_type: str,
    ) -> list[Recommendation]:
        payload = await self._call(
            "DescribeRecommendInstanceType",
            {
                "RegionId": region_id,
                "NetworkType": "vpc",
                "InstanceChargeType": "PostPaid",
                "SystemDiskCategory": "cloud_essd",
                "InstanceType": instance_type,
                "IoOptimized": "optimized",
                "PriorityStrategy": "PriceFirst",
                "Scene": "CREATE",
                "SpotStrategy": "NoSpot",
            },
        )
        recommendations = []
        for item in _items(payload, "Data", "RecommendInstanceType"):
            raw_type = item.get("InstanceType")
            if isinstance(raw_type, dict):
                raw_type = raw_type.get("InstanceType", "")
            recommendations.append(
                Recommendation(zone_id=item.get("ZoneId", ""), instance_type=raw_type or "")
            )
        return recommendations

    # ── VPC ──────────────────────────────────────────────────────

    async def describe_vpcs(
        self, region_id: str, *, vpc_id: str = "", vpc_name: str = "",
    ) -> list[Vpc]:
        payload = await self._call(
            "DescribeVpcs",
            {"RegionId": region_id, "VpcId": vpc_id, "VpcName": vpc_name},
            endpoint="vpc",
        )
        return [
            Vpc(
                vpc_id=v["VpcId"],
                status=v.get("Status", ""),
                vpc_name=v.get("VpcName", ""),
                cidr_block=v.get("CidrBlock", ""),
            )
            for v in _items(payload, "Vpcs", "Vpc")
        ]

    async def create_vpc(
        self, region_id: str, *, cidr_block: str, vpc_name: str, client_token: str,
    ) -> str:
        payload = await self._call(
            "CreateVpc",
            {
                "RegionId": region_id,
                "CidrBlock": cidr_block,
                "VpcName": vpc_name,
                "ClientToken": client_token,
            },
            endpoint="vpc",
        )
        return payload["VpcId"]

    async def delete_vpc(self, vpc_id: str) -> None:
        await self._call(
            "DeleteVpc", {"RegionId": self._region_id, "VpcId": vpc_id}, endpoint="vpc",
        )

    # ── vSwitch ──────────────────────────────────────────────────

    async def describe_vswitches(
        self,
        vpc_id: str,
        *,
        vswitch_id: str = "",
        vswitch_name: str = "",
        zone_id: str = "",
    ) -> list[VSwitch]:
        payload = await self._call(
            "DescribeVSwitches",
            {
                "RegionId": self._region_id,
                "VpcId": vpc_id,
                "VSwitchId": vswitch_id,
                "VSwitchName": vswitch_name,
                "ZoneId": zone_id,
            },
            endpoint="vpc",
        )
        return [
            VSwitch(
                vswitch_id=v["VSwitchId"],
                vpc_id=v.get("VpcId", vpc_id),
                zone_id=v.get("ZoneId", ""),
                status=v.get("Status", ""),
                vswitch_name=v.get("VSwitchName", ""),
                cidr_block=v.get("CidrBlock", ""),
            )
            for v in _items(payload, "VSwitches", "VSwitch")
        ]

    async def create_vswitch(
        self,
        vpc_id: str,
        *,
        zone_id: str,
        cidr_block: str,
        vswitch_name: str,
        client_token: str,
    ) -> str:
        payload = await self._call(
            "CreateVSwitch",
            {
                "RegionId": self._region_id,
                "VpcId": vpc_id,
                "ZoneId": zone_id,
                "CidrBlock": cidr_block,
                "VSwitchName": vswitch_name,
                "ClientToken": client_token,
            },
            endpoint="vpc",
        )
        return payload["VSwitchId"]

    async def delete_vswitch(self, vswitch_id: str) -> None:
        await self._call(
            "DeleteVSwitch",
            {"RegionId": self._region_id, "VSwitchId": vswitch_id},
            endpoint="vpc",
        )

    # ── Security group ───────────────────────────────────────────

    async def describe_security_groups(
        self,
        region_id: str,
        *,
        vpc_id: str = "",
        security_group_id: str = "",
        security_group_name: str = "",
    ) -> list[SecurityGroup]:
        params = {
            "RegionId": region_id,
            "VpcId": vpc_id,
            "SecurityGroupName": security_group_name,
        }
        if security_group_id:
            params["SecurityGroupIds"] = json.dumps([security_group_id])
        payload = await self._call("DescribeSecurityGroups", params)
        return [
            SecurityGroup(
                security_group_id=g["SecurityGroupId"],
                vpc_id=g.get("VpcId", ""),
                security_group_name=g.get("SecurityGroupName", ""),
            )
            for g in _items(payload, "SecurityGroups", "SecurityGroup")
        ]

    async def create_security_group(
        self,
        region_id: str,
        *,
        vpc_id: str,
        security_group_name: str,
        client_token: str,
    ) -> str:
        payload = await self._call(
            "CreateSecurityGroup",
            {
                "RegionId": region_id,
                "VpcId": vpc_id,
                "SecurityGroupName": security_group_name,
                "ClientToken": client_token,
            },
        )
        return payload["SecurityGroupId"]

    async def authorize_security_group(
        self,
        region_id: str,
        security_group_id: str,
        *,
        ip_protocol: str,
        port_range: str,
        source_cidr_ip: str,
    ) -> None:
        await self._call(
            "AuthorizeSecurityGroup",
            {
                "RegionId": region_id,
                "SecurityGroupId": security_group_id,
                "IpProtocol": ip_protocol,
                "PortRange": port_range,
                "SourceCidrIp": source_cidr_ip,
                "NicType": "intranet",
            },
        )

    async def delete_security_group(self, region_id: str, security_group_id: str) -> None:
        await self._call(
            "DeleteSecurityGroup",
            {"RegionId": region_id, "SecurityGroupId": security_group_id},
        )

    # ── Instance ─────────────────────────────────────────────────

    async def create_instance(self, request: InstanceRequest) -> str:
        params: dict[str, str] = {
            "RegionId": request.region_id,
            "InstanceType": request.instance_type,
            "ZoneId": request.zone_id,
            "SecurityGroupId": request.security_group_id,
            "VSwitchId": request.vswitch_id,
            "ClientToken": request.client_token,
            "ImageId": request.image_id,
            "ImageFamily": request.image_family,
            "InstanceName": request.instance_name,
            "InternetChargeType": request.internet_charge_type,
            "UserData": request.user_data,
            "Password": request.password,
            "RamRoleName": request.ram_role_name,
            "SecurityEnhancementStrategy": request.security_enhancement_strategy,
        }
        if request.internet_max_bandwidth_out:
            params["InternetMaxBandwidthOut"] = str(request.internet_max_bandwidth_out)
        if request.io_optimized is not None:
            params["IoOptimized"] = "optimized" if request.io_optimized else "none"
        for n, (key, value) in enumerate(sorted(request.tags.items()), start=1):
            params[f"Tag.{n}.Key"] = key
            params[f"Tag.{n}.Value"] = value
        params.update(_disk_params("SystemDisk.", request.system_disk))
        for n, disk in enumerate(request.data_disks, start=1):
            prefix = f"DataDisk.{n}."
            params.update(_disk_params(prefix, disk))
            if disk.snapshot_id:
                params[f"{prefix}SnapshotId"] = disk.snapshot_id
            if disk.device:
                params[f"{prefix}Device"] = disk.device
            params[f"{prefix}DeleteWithInstance"] = str(disk.delete_with_instance).lower()
            if disk.encrypted is not None:
                params[f"{prefix}Encrypted"] = str(disk.encrypted).lower()

        payload = await self._call("CreateInstance", params)
        instance_id = payload["InstanceId"]
        logger.info(
            "Instance created: id=%s zone=%s",
            instance_id,
            request.zone_id,
            extra={"instance_id": instance_id},
        )
        return instance_id

    async def describe_instances(
        self, region_id: str, instance_ids: list[str],
    ) -> list[Instance]:
        payload = await self._call(
            "DescribeInstances",
            {"RegionId": region_id, "InstanceIds": json.dumps(instance_ids)},
        )
        instances = []
        for i in _items(payload, "Instances", "Instance"):
            vpc_attrs = i.get("VpcAttributes") or {}
            instances.append(
                Instance(
                    instance_id=i["InstanceId"],
                    status=i.get("Status", ""),
                    zone_id=i.get("ZoneId", ""),
                    instance_type=i.get("InstanceType", ""),
                    private_ip=_first_ip(vpc_attrs.get("PrivateIpAddress")),
                    public_ip=_first_ip(i.get("PublicIpAddress")),
                )
            )
        return instances

    async def start_instance(self, instance_id: str) -> None:
        await self._call("StartInstance", {"InstanceId": instance_id})

    async def stop_instance(self, instance_id: str, *, force: bool = False) -> None:
        await self._call(
            "StopInstance",
            {"InstanceId": instance_id, "ForceStop": str(force).lower()},
        )

    async def delete_instance(self, instance_id: str, *, force: bool = True) -> None:
        await self._call(
            "DeleteInstance",
            {"InstanceId": instance_id, "Force": str(force).lower()},
        )

    # ── Image ────────────────────────────────────────────────────

    async def describe_images(
        self,
        region_id: str,
        *,
        image_id: str = "",
        image_name: str = "",
        status: str = "",
    ) -> list[Image]:
        payload = await self._call(
            "DescribeImages",
            {
                "RegionId": region_id,
                "ImageId": image_id,
                "ImageName": image_name,
                "Status": status,
            },
        )
        return [
            Image(
                image_id=img["ImageId"],
                status=img.get("Status", ""),
                image_name=img.get("ImageName", ""),
                region_id=region_id,
            )
            for img in _items(payload, "Images", "Image")
        ]

    async def create_image(
        self,
        region_id: str,
        *,
        instance_id: str,
        image_name: str,
        description: str,
        client_token: str,
    ) -> str:
        payload = await self._call(
            "CreateImage",
            {
                "RegionId": region_id,
                "InstanceId": instance_id,
                "ImageName": image_name,
                "Description": description,
                "ClientToken": client_token,
            },
        )
        return payload["ImageId"]

    async def copy_image(
        self,
        region_id: str,
        image_id: str,
        *,
        destination_region_id: str,
        destination_image_name: str,
        client_token: str,
    ) -> str:
        payload = await self._call(
            "CopyImage",
            {
                "RegionId": region_id,
                "ImageId": image_id,
                "DestinationRegionId": destination_region_id,
                "DestinationImageName": destination_image_name,
                "ClientToken": client_token,
            },
        )
        return payload["ImageId"]

    async def delete_image(self, region_id: str, image_id: str, *, force: bool = True) -> None:
        await self._call(
            "DeleteImage",
            {"RegionId": region_id, "ImageId": image_id, "Force": str(force).lower()},
        )
