"""Unit tests for AlicloudClient.

Tests request signing and the RPC transport with mocked httpx transport.
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from image_builder.providers.alicloud_client import (
    ECS_API_VERSION,
    VPC_API_VERSION,
    AlicloudClient,
    _reset_shared_async_client_for_tests,
    percent_encode,
    sign_parameters,
)
from image_builder.providers.errors import CloudAPIError, CloudTimeoutError
from image_builder.providers.models import DiskMapping, InstanceRequest


def _make_client(handler, **kwargs) -> AlicloudClient:
    return AlicloudClient(
        access_key="test-ak",
        secret_key="test-sk",
        region_id="cn-hangzhou",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        **kwargs,
    )


def _json(status: int, body: dict, **kwargs) -> httpx.Response:
    return httpx.Response(status, json=body, **kwargs)


# ── Signing ──────────────────────────────────────────────────────


def test_percent_encode_uses_rfc3986():
    assert percent_encode("a b*c~d/e:f") == "a%20b%2Ac~d%2Fe%3Af"


def test_sign_parameters_known_answer():
    params = {
        "Action": "DescribeRegions",
        "Format": "XML",
        "Version": "2014-05-26",
        "AccessKeyId": "testid",
        "SignatureMethod": "HMAC-SHA1",
        "Timestamp": "2016-02-23T12:46:24Z",
        "SignatureVersion": "1.0",
        "SignatureNonce": "3ee8c1b8-83d3-44af-a94f-4e0ad82fd6cf",
    }
    assert sign_parameters(params, "testsecret") == "OLeaidS1JvxuMvnyHOwuJ+uX5qY="


def test_requires_credentials():
    with pytest.raises(ValueError):
        AlicloudClient(access_key="", secret_key="sk", region_id="cn-hangzhou")


# ── Transport ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_vpc_calls_are_signed_get_requests_to_vpc_endpoint():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return _json(200, {"Vpcs": {"Vpc": [{"VpcId": "vpc-1", "Status": "Available"}]}})

    client = _make_client(handler)
    vpcs = await client.describe_vpcs("cn-hangzhou", vpc_id="vpc-1")

    assert [v.vpc_id for v in vpcs] == ["vpc-1"]
    request = seen[0]
    assert request.method == "GET"
    assert request.url.host == "vpc.aliyuncs.com"
    params = dict(request.url.params)
    assert params["Action"] == "DescribeVpcs"
    assert params["Version"] == VPC_API_VERSION
    assert params["AccessKeyId"] == "test-ak"
    assert params["VpcId"] == "vpc-1"
    # Empty filters are omitted rather than sent blank.
    assert "VpcName" not in params
    signature = params.pop("Signature")
    assert sign_parameters(params, "test-sk") == signature


@pytest.mark.asyncio
async def test_security_token_is_sent_when_configured():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return _json(200, {"Regions": {"Region": [{"RegionId": "cn-hangzhou"}]}})

    client = _make_client(handler, security_token="sts-token")
    assert await client.describe_regions() == ["cn-hangzhou"]

    params = dict(seen[0].url.params)
    assert params["SecurityToken"] == "sts-token"
    assert params["Version"] == ECS_API_VERSION
    assert seen[0].url.host == "ecs.aliyuncs.com"


@pytest.mark.asyncio
async def test_error_body_is_decoded_into_cloud_api_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return _json(
            404,
            {
                "Code": "InvalidVSwitchId.NotFound",
                "Message": "The specified vswitch does not exist.",
                "RequestId": "req-123",
            },
        )

    client = _make_client(handler)
    with pytest.raises(CloudAPIError) as exc_info:
        await client.delete_vswitch("vsw-gone")

    err = exc_info.value
    assert err.code == "InvalidVSwitchId.NotFound"
    assert err.status_code == 404
    assert err.request_id == "req-123"
    assert err.action == "DeleteVSwitch"
    assert "code=InvalidVSwitchId.NotFound" in str(err)


@pytest.mark.asyncio
async def test_non_json_error_gets_http_code():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, text="<html>denied</html>")

    client = _make_client(handler)
    with pytest.raises(CloudAPIError) as exc_info:
        await client.describe_regions()
    assert exc_info.value.code == "HTTP403"


@pytest.mark.asyncio
async def test_retries_503_then_succeeds():
    responses = iter(
        [
            httpx.Response(503, text="unavailable", headers={"Retry-After": "2"}),
            _json(200, {"VSwitchId": "vsw-new"}),
        ]
    )
    nonces: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        nonces.append(request.url.params["SignatureNonce"])
        return next(responses)

    client = _make_client(handler)
    with patch("image_builder.providers.alicloud_client.asyncio.sleep", new=AsyncMock()) as sleep:
        vswitch_id = await client.create_vswitch(
            "vpc-1",
            zone_id="cn-hangzhou-b",
            cidr_block="172.16.0.0/24",
            vswitch_name="",
            client_token="tok",
        )

    assert vswitch_id == "vsw-new"
    assert len(nonces) == 2
    assert nonces[0] != nonces[1]
    sleep.assert_awaited_once_with(2.0)


@pytest.mark.asyncio
async def test_timeouts_exhaust_into_cloud_timeout_error():
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        raise httpx.ReadTimeout("read timed out", request=request)

    client = _make_client(handler, max_retries=2)
    with patch("image_builder.providers.alicloud_client.asyncio.sleep", new=AsyncMock()):
        with pytest.raises(CloudTimeoutError) as exc_info:
            await client.describe_regions()

    assert calls == 3
    assert exc_info.value.code == "RequestTimeout"


# ── Request shapes ───────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_instance_flattens_tags_and_disks():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return _json(200, {"InstanceId": "i-new"})

    request = InstanceRequest(
        region_id="cn-hangzhou",
        instance_type="ecs.g6.large",
        zone_id="cn-hangzhou-b",
        security_group_id="sg-1",
        vswitch_id="vsw-1",
        client_token="tok",
        image_id="m-source",
        io_optimized=True,
        internet_max_bandwidth_out=10,
        tags={"team": "infra", "app": "builder"},
        system_disk=DiskMapping(category="cloud_essd", size=40),
        data_disks=(DiskMapping(category="cloud_ssd", size=100, snapshot_id="s-1"),),
    )

    client = _make_client(handler)
    assert await client.create_instance(request) == "i-new"

    params = dict(seen[0].url.params)
    assert params["Action"] == "CreateInstance"
    assert params["IoOptimized"] == "optimized"
    assert params["InternetMaxBandwidthOut"] == "10"
    assert params["Tag.1.Key"] == "app"
    assert params["Tag.2.Value"] == "infra"
    assert params["SystemDisk.Category"] == "cloud_essd"
    assert params["SystemDisk.Size"] == "40"
    assert params["DataDisk.1.SnapshotId"] == "s-1"
    assert params["DataDisk.1.DeleteWithInstance"] == "true"
    assert "ImageFamily" not in params


@pytest.mark.asyncio
async def test_describe_instances_sends_json_id_list():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return _json(
            200,
            {
                "Instances": {
                    "Instance": [
                        {
                            "InstanceId": "i-1",
                            "Status": "Running",
                            "ZoneId": "cn-hangzhou-b",
                            "VpcAttributes": {"PrivateIpAddress": {"IpAddress": ["172.16.0.5"]}},
                            "PublicIpAddress": {"IpAddress": []},
                        }
                    ]
                }
            },
        )

    client = _make_client(handler)
    instances = await client.describe_instances("cn-hangzhou", ["i-1"])

    assert json.loads(seen[0].url.params["InstanceIds"]) == ["i-1"]
    assert instances[0].status == "Running"
    assert instances[0].private_ip == "172.16.0.5"
    assert instances[0].public_ip == ""


@pytest.mark.asyncio
async def test_available_zones_mark_unsupported_type_sold_out():
    def handler(request: httpx.Request) -> httpx.Response:
        return _json(
            200,
            {
                "AvailableZones": {
                    "AvailableZone": [
                        {
                            "ZoneId": "cn-hangzhou-a",
                            "Status": "Available",
                            "AvailableResources": {
                                "AvailableResource": [
                                    {
                                        "SupportedResources": {
                                            "SupportedResource": [
                                                {"Value": "ecs.g6.large", "Status": "Available"}
                                            ]
                                        }
                                    }
                                ]
                            },
                        },
                        {
                            "ZoneId": "cn-hangzhou-b",
                            "Status": "Available",
                            "AvailableResources": {
                                "AvailableResource": [
                                    {
                                        "SupportedResources": {
                                            "SupportedResource": [
                                                {"Value": "ecs.g6.large", "Status": "SoldOut"}
                                            ]
                                        }
                                    }
                                ]
                            },
                        },
                    ]
                }
            },
        )

    client = _make_client(handler)
    zones = await client.describe_available_zones("cn-hangzhou", "ecs.g6.large")

    assert [(z.zone_id, z.available) for z in zones] == [
        ("cn-hangzhou-a", True),
        ("cn-hangzhou-b", False),
    ]


def test_clients_share_one_async_client_until_reset():
    _reset_shared_async_client_for_tests()
    first = AlicloudClient(access_key="ak", secret_key="sk", region_id="cn-hangzhou")
    second = AlicloudClient(access_key="ak", secret_key="sk", region_id="cn-beijing")
    assert first._client is second._client

    _reset_shared_async_client_for_tests()
    third = AlicloudClient(access_key="ak", secret_key="sk", region_id="cn-hangzhou")
    assert third._client is not first._client
    _reset_shared_async_client_for_tests()
