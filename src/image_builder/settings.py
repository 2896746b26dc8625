"""Image builder configuration settings.

BuilderSettings is the single configuration object accepted by ImageBuilder.
Tests construct it directly; ``from_env()`` reads ALICLOUD_* variables.
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from .providers.models import DiskMapping
from .provisioning.poller import (
    DEFAULT_RETRY_INTERVAL,
    DEFAULT_RETRY_TIMES,
    SHORT_RETRY_TIMES,
    Backoff,
)
from .provisioning.retry_codes import DEFAULT_RETRY_CODES, RetryCodes

DEFAULT_VPC_CIDR_BLOCK = "172.16.0.0/16"
DEFAULT_CIDR_BLOCK = "172.16.0.0/24"

_IMAGE_NAME_RE = re.compile(r"^[A-Za-z一-龥][\w.:\-一-龥]{1,127}$")


@dataclass(frozen=True, slots=True)
class BuilderSettings:
    """Configuration for one image build.

    Pinning fields (``vpc_id``, ``vswitch_id``, ``vswitch_name``, ``zone_id``,
    ``security_group_id``...) make the pipeline reuse existing resources
    instead of creating them; reused resources are never deleted.
    """

    # ── Credentials ────────────────────────────────────────────────
    access_key: str = ""
    """Access key id. Never log this."""

    secret_key: str = ""
    """Access key secret. Never log this."""

    security_token: str = ""
    """Optional STS token."""

    # ── Regions ────────────────────────────────────────────────────
    region: str = ""
    destination_regions: tuple[str, ...] = ()
    """Regions the finished image is copied to."""

    skip_region_validation: bool = False

    # ── Target image ───────────────────────────────────────────────
    image_name: str = ""
    image_description: str = ""
    force_delete: bool = False
    """Reuse the image name by deleting any existing image that holds it."""

    # ── Source / instance ──────────────────────────────────────────
    instance_type: str = ""
    source_image: str = ""
    image_family: str = ""
    instance_name: str = ""
    io_optimized: bool | None = None
    internet_charge_type: str = ""
    internet_max_bandwidth_out: int = 0
    user_data: str = ""
    user_data_file: str = ""
    ssh_password: str = ""
    ram_role_name: str = ""
    security_enhancement_strategy: str = ""
    tags: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    system_disk: DiskMapping = field(default_factory=DiskMapping)
    data_disks: tuple[DiskMapping, ...] = ()

    # ── Network pinning ────────────────────────────────────────────
    zone_id: str = ""
    vpc_id: str = ""
    vpc_name: str = ""
    vpc_cidr_block: str = DEFAULT_VPC_CIDR_BLOCK
    vswitch_id: str = ""
    vswitch_name: str = ""
    cidr_block: str = DEFAULT_CIDR_BLOCK
    security_group_id: str = ""
    security_group_name: str = ""
    ssh_port: int = 22

    # ── Polling ────────────────────────────────────────────────────
    retry_times: int = DEFAULT_RETRY_TIMES
    short_retry_times: int = SHORT_RETRY_TIMES
    poll_interval_seconds: float = DEFAULT_RETRY_INTERVAL
    retry_codes: RetryCodes = DEFAULT_RETRY_CODES

    @property
    def backoff(self) -> Backoff:
        return Backoff(interval=self.poll_interval_seconds)

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if not self.region:
            errors.append("region is required")
        if not self.instance_type:
            errors.append("instance_type is required")
        if not self.image_name:
            errors.append("image_name is required")
        elif not _IMAGE_NAME_RE.match(self.image_name):
            errors.append(
                "image_name must be 2-128 characters, start with a letter, "
                "and contain only letters, digits, '.', '_', ':' or '-'"
            )
        if not self.source_image and not self.image_family:
            errors.append("one of source_image or image_family is required")
        if self.source_image and self.image_family:
            errors.append("source_image and image_family are mutually exclusive")
        if self.user_data and self.user_data_file:
            errors.append("user_data and user_data_file are mutually exclusive")
        if self.vswitch_id and not self.vpc_id:
            errors.append("vswitch_id requires vpc_id")
        if self.region in self.destination_regions:
            errors.append(
                f"destination_regions must not include the source region {self.region!r}"
            )
        if self.retry_times < 1 or self.short_retry_times < 1:
            errors.append("retry_times and short_retry_times must be >= 1")
        if self.poll_interval_seconds < 0:
            errors.append("poll_interval_seconds must be >= 0")
        if not 0 < self.ssh_port < 65536:
            errors.append("ssh_port must be between 1 and 65535")
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> BuilderSettings:
        """Build settings from environment variables.

        This is a convenience factory for production use. Tests should
        construct BuilderSettings directly.
        """
        if env is None:
            env = dict(os.environ)

        dest_raw = env.get("ALICLOUD_DESTINATION_REGIONS", "")
        destinations = tuple(r.strip() for r in dest_raw.split(",") if r.strip())

        tags_raw = env.get("ALICLOUD_TAGS", "")
        tags: dict[str, str] = {}
        if tags_raw:
            for pair in tags_raw.split(","):
                if "=" in pair:
                    key, value = pair.split("=", 1)
                    tags[key.strip()] = value.strip()

        disks_raw = env.get("ALICLOUD_DATA_DISKS", "")
        data_disks = tuple(
            DiskMapping(**disk) for disk in json.loads(disks_raw)
        ) if disks_raw else ()
        system_raw = env.get("ALICLOUD_SYSTEM_DISK", "")
        system_disk = DiskMapping(**json.loads(system_raw)) if system_raw else DiskMapping()

        return cls(
            access_key=env.get("ALICLOUD_ACCESS_KEY", ""),
            secret_key=env.get("ALICLOUD_SECRET_KEY", ""),
            security_token=env.get("SECURITY_TOKEN", ""),
            region=env.get("ALICLOUD_REGION", ""),
            destination_regions=destinations,
            skip_region_validation=_flag(env.get("ALICLOUD_SKIP_REGION_VALIDATION")),
            image_name=env.get("ALICLOUD_IMAGE_NAME", ""),
            image_description=env.get("ALICLOUD_IMAGE_DESCRIPTION", ""),
            force_delete=_flag(env.get("ALICLOUD_IMAGE_FORCE_DELETE")),
            instance_type=env.get("ALICLOUD_INSTANCE_TYPE", ""),
            source_image=env.get("ALICLOUD_SOURCE_IMAGE", ""),
            image_family=env.get("ALICLOUD_IMAGE_FAMILY", ""),
            instance_name=env.get("ALICLOUD_INSTANCE_NAME", ""),
            internet_charge_type=env.get("ALICLOUD_INTERNET_CHARGE_TYPE", ""),
            internet_max_bandwidth_out=int(env.get("ALICLOUD_INTERNET_MAX_BANDWIDTH_OUT", "0")),
            user_data=env.get("ALICLOUD_USER_DATA", ""),
            user_data_file=env.get("ALICLOUD_USER_DATA_FILE", ""),
            ssh_password=env.get("ALICLOUD_SSH_PASSWORD", ""),
            ram_role_name=env.get("ALICLOUD_RAM_ROLE_NAME", ""),
            security_enhancement_strategy=env.get("ALICLOUD_SECURITY_ENHANCEMENT_STRATEGY", ""),
            tags=MappingProxyType(tags),
            system_disk=system_disk,
            data_disks=data_disks,
            zone_id=env.get("ALICLOUD_ZONE_ID", ""),
            vpc_id=env.get("ALICLOUD_VPC_ID", ""),
            vpc_name=env.get("ALICLOUD_VPC_NAME", ""),
            vpc_cidr_block=env.get("ALICLOUD_VPC_CIDR_BLOCK", DEFAULT_VPC_CIDR_BLOCK),
            vswitch_id=env.get("ALICLOUD_VSWITCH_ID", ""),
            vswitch_name=env.get("ALICLOUD_VSWITCH_NAME", ""),
            cidr_block=env.get("ALICLOUD_CIDR_BLOCK", DEFAULT_CIDR_BLOCK),
            security_group_id=env.get("ALICLOUD_SECURITY_GROUP_ID", ""),
            security_group_name=env.get("ALICLOUD_SECURITY_GROUP_NAME", ""),
            ssh_port=int(env.get("ALICLOUD_SSH_PORT", "22")),
            retry_times=int(env.get("ALICLOUD_RETRY_TIMES", str(DEFAULT_RETRY_TIMES))),
            short_retry_times=int(
                env.get("ALICLOUD_SHORT_RETRY_TIMES", str(SHORT_RETRY_TIMES))
            ),
            poll_interval_seconds=float(
                env.get("ALICLOUD_POLL_INTERVAL", str(DEFAULT_RETRY_INTERVAL))
            ),
        )


def _flag(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")
