"""Zone selection and capacity fallback.

``candidate_zones`` is the pre-flight filter: zones where the instance type
is currently sellable. ``ZoneFallback`` handles the one case where fallback
is driven by a creation-time error: when instance creation reports a
capacity code, it asks the provider for recommended zones and runs a fresh
network + instance sub-pipeline in each, in order, until one succeeds.

The failed zone's own vSwitch is released first, since candidates in the
same VPC reuse its CIDR block. The first successful zone wins (single-zone
commit). A failed sub-pipeline unwinds itself before the next candidate is
tried. The candidate list is finite and the sub-pipeline's instance step
carries no fallback of its own, so the recursion is exactly one level deep.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Sequence

from ..errors import NoZoneAvailableError, ZonesExhaustedError
from ..observability import get_logger
from .poller import wait_for_expected
from .retry_codes import retryable_error_evaluator
from .runner import PipelineRunner
from .state import BuildState

if TYPE_CHECKING:
    from .steps.base import Step

logger = get_logger(__name__)

StepFactory = Callable[[str], Sequence['Step']]


async def candidate_zones(state: BuildState, pinned_zone: str = '') -> list[str]:
    """Ordered zone ids to try; a pinned zone is the sole candidate."""
    if pinned_zone:
        return [pinned_zone]

    settings = state.settings
    state.ui.say('Searching zones...')
    zones = await state.client.describe_available_zones(
        settings.region, settings.instance_type,
    )
    available = [z.zone_id for z in zones if z.available]
    if not available:
        raise NoZoneAvailableError(settings.instance_type, settings.region)
    state.ui.say('Candidate zones are: ' + ', '.join(available))
    return available


def _dedupe(zones: list[str]) -> list[str]:
    seen: set[str] = set()
    ordered = []
    for zone in zones:
        if zone and zone not in seen:
            seen.add(zone)
            ordered.append(zone)
    return ordered


class ZoneFallback:
    """Re-run the network + instance sub-pipeline in recommended zones.

    ``build_steps(zone_id)`` returns fresh, zone-pinned steps; the last one
    must not carry a fallback itself.

    ``vacate`` lists completed steps of the failed zone (its vSwitch) that are
    cleaned up before the first candidate runs, so a candidate can claim the
    same CIDR block in the VPC.
    """

    def __init__(
        self,
        build_steps: StepFactory,
        *,
        vacate: Sequence[Step] = (),
        max_candidates: int | None = None,
    ) -> None:
        self._build_steps = build_steps
        self._vacate = list(vacate)
        self._max_candidates = max_candidates

    async def recommended_zones(self, state: BuildState, failed_zone: str) -> list[str]:
        settings = state.settings
        codes = settings.retry_codes.create('instance')
        recommendations = await wait_for_expected(
            lambda: state.client.describe_recommended_instance_types(
                settings.region, settings.instance_type,
            ),
            retryable_error_evaluator(codes),
            retry_times=settings.retry_times,
            backoff=settings.backoff,
            description='instance type recommendation',
        )
        zones = _dedupe([r.zone_id for r in recommendations if r.zone_id != failed_zone])
        if self._max_candidates is not None:
            zones = zones[: self._max_candidates]
        return zones

    async def vacate(self, state: BuildState, failed_zone: str) -> None:
        """Release the failed zone's network steps, last first."""
        for step in reversed(self._vacate):
            logger.info('zone_fallback_vacate', step=step.name, zone_id=failed_zone)
            await step.cleanup(state)

    async def recover(
        self,
        state: BuildState,
        *,
        failed_zone: str,
        cause: BaseException,
    ) -> list[Step]:
        """Return the completed steps of the first zone that succeeds.

        Raises:
            ZonesExhaustedError: no recommended zone produced an instance.
        """
        remaining = await self.recommended_zones(state, failed_zone)
        tried: list[str] = []
        prior_error = state.error

        if remaining:
            await self.vacate(state, failed_zone)

        while remaining:
            zone, remaining = remaining[0], remaining[1:]
            tried.append(zone)
            state.ui.say(
                f'Instance type {state.settings.instance_type} is not available '
                f'in zone {failed_zone}, trying {zone}'
            )
            logger.info(
                'zone_fallback_attempt',
                failed_zone=failed_zone,
                zone_id=zone,
                remaining=remaining,
            )
            steps = list(self._build_steps(zone))
            result = await PipelineRunner(
                steps, cleanup_on_success=False, name=f'fallback:{zone}',
            ).run(state)
            # A failed candidate is not a failure of the enclosing build.
            state.error = prior_error
            if result.success:
                logger.info('zone_fallback_succeeded', zone_id=zone)
                return steps
            state.ui.error(f'Fallback to zone {zone} failed: {result.error}')

        raise ZonesExhaustedError('instance', tried) from cause
