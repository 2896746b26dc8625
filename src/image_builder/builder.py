"""ImageBuilder: wires settings, provider client and steps into one build.

Usage::

    settings = BuilderSettings.from_env()
    result = await ImageBuilder(settings).build()
    if result.success and not result.skipped:
        print(result.images)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Sequence

from .errors import CleanupWarning, ConfigurationError, ImageExistsError
from .observability import build_id_ctx, get_logger
from .providers.alicloud_client import AlicloudClient
from .providers.protocols import CloudClient
from .provisioning.fallback import ZoneFallback
from .provisioning.runner import PipelineRunner
from .provisioning.state import BuildState
from .provisioning.steps import (
    CheckSourceImageStep,
    CopyImageStep,
    CreateImageStep,
    InstanceStep,
    PreValidateStep,
    ProvisionStep,
    SecurityGroupStep,
    StartInstanceStep,
    Step,
    StopInstanceStep,
    VpcStep,
    VSwitchStep,
)
from .provisioning.steps.instance import Provisioner
from .settings import BuilderSettings
from .ui import LogUi, Ui

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class BuildResult:
    """Outcome of one build.

    ``skipped`` is set when the target image name already existed and the
    build exited before creating anything; that still counts as success.
    """

    success: bool
    skipped: bool = False
    image_id: str | None = None
    images: dict[str, str] = field(default_factory=dict)
    error: BaseException | None = None
    warnings: tuple[CleanupWarning, ...] = ()


class ImageBuilder:
    """Build one ECS image from ``BuilderSettings``."""

    def __init__(
        self,
        settings: BuilderSettings,
        *,
        client: CloudClient | None = None,
        ui: Ui | None = None,
        provisioners: Sequence[Provisioner] = (),
    ) -> None:
        errors = settings.validate()
        if errors:
            raise ConfigurationError(errors)
        self.settings = settings
        self.client = client or AlicloudClient(
            access_key=settings.access_key,
            secret_key=settings.secret_key,
            region_id=settings.region,
            security_token=settings.security_token,
        )
        self.ui = ui or LogUi()
        self.provisioners = list(provisioners)

    # ── Pipeline assembly ────────────────────────────────────────

    def steps(self) -> list[Step]:
        s = self.settings
        vswitch = VSwitchStep(
            vswitch_id=s.vswitch_id,
            zone_id=s.zone_id,
            vswitch_name=s.vswitch_name,
            cidr_block=s.cidr_block,
        )
        fallback = None
        if not s.vswitch_id:
            fallback = ZoneFallback(self._fallback_steps, vacate=[vswitch])
        steps: list[Step] = [
            PreValidateStep(image_name=s.image_name, force_delete=s.force_delete),
            CheckSourceImageStep(),
            VpcStep(vpc_id=s.vpc_id, vpc_name=s.vpc_name, cidr_block=s.vpc_cidr_block),
            SecurityGroupStep(
                security_group_id=s.security_group_id,
                security_group_name=s.security_group_name,
                ssh_port=s.ssh_port,
            ),
            vswitch,
            InstanceStep(zone_id=s.zone_id, fallback=fallback),
            StartInstanceStep(),
            ProvisionStep(self.provisioners),
            StopInstanceStep(),
            CreateImageStep(
                image_name=s.image_name,
                description=s.image_description,
                force_delete=s.force_delete,
            ),
        ]
        if s.destination_regions:
            steps.append(
                CopyImageStep(
                    destination_regions=s.destination_regions,
                    image_name=s.image_name,
                )
            )
        return steps

    def _fallback_steps(self, zone_id: str) -> list[Step]:
        s = self.settings
        return [
            VSwitchStep(zone_id=zone_id, vswitch_name=s.vswitch_name, cidr_block=s.cidr_block),
            InstanceStep(zone_id=zone_id),
        ]

    # ── Build ────────────────────────────────────────────────────

    async def build(self, build_id: str | None = None) -> BuildResult:
        token = build_id_ctx.set(build_id or uuid.uuid4().hex[:12])
        try:
            state = BuildState(settings=self.settings, client=self.client, ui=self.ui)
            logger.info(
                'build_started',
                region=self.settings.region,
                image_name=self.settings.image_name,
                instance_type=self.settings.instance_type,
            )
            result = await PipelineRunner(self.steps()).run(state)

            if isinstance(result.error, ImageExistsError):
                self.ui.message(f'{result.error}, skipping build')
                logger.info('build_skipped', image_name=self.settings.image_name)
                return BuildResult(success=True, skipped=True, warnings=result.warnings)

            if not result.success:
                logger.error(
                    'build_failed',
                    failed_step=result.failed_step,
                    error=str(result.error),
                    cleanup_warnings=len(result.warnings),
                )
                return BuildResult(
                    success=False,
                    error=result.error,
                    warnings=result.warnings,
                )

            logger.info('build_succeeded', image_id=state.image_id, images=state.images)
            return BuildResult(
                success=True,
                image_id=state.image_id,
                images=dict(state.images),
                warnings=result.warnings,
            )
        finally:
            build_id_ctx.reset(token)
