"""Pre-flight validation before any resource is created."""

from __future__ import annotations

from ...errors import ImageExistsError, PinnedResourceNotFound, RegionValidationError
from ...providers.models import IMAGE_STATUS_QUERIED
from ..state import BuildState
from .base import NoResourceStep


class PreValidateStep(NoResourceStep):
    """Check regions and the target image name.

    A taken image name raises the ``ImageExistsError`` sentinel so the caller
    can skip the build instead of treating it as a crash.
    """

    name = 'pre_validate'

    def __init__(self, *, image_name: str, force_delete: bool = False) -> None:
        super().__init__()
        self.image_name = image_name
        self.force_delete = force_delete

    async def _execute(self, state: BuildState) -> None:
        await self._validate_regions(state)
        await self._validate_image_name(state)

    async def _validate_regions(self, state: BuildState) -> None:
        settings = state.settings
        if settings.skip_region_validation:
            state.ui.say(
                'Skip region validation flag found, skipping prevalidating '
                'source region and copied regions.'
            )
            return

        state.ui.say('Prevalidating source region and copied regions...')
        known = await state.client.describe_regions()
        invalid = [
            region
            for region in (settings.region, *settings.destination_regions)
            if region not in known
        ]
        if invalid:
            raise RegionValidationError(invalid, known)

    async def _validate_image_name(self, state: BuildState) -> None:
        if self.force_delete:
            state.ui.say('Force delete flag found, skipping prevalidating image name.')
            return

        state.ui.say('Prevalidating image name...')
        images = await state.client.describe_images(
            state.settings.region,
            image_name=self.image_name,
            status=IMAGE_STATUS_QUERIED,
        )
        if images:
            raise ImageExistsError(self.image_name, tuple(i.image_id for i in images))


class CheckSourceImageStep(NoResourceStep):
    """Resolve the source image the instance boots from."""

    name = 'check_source_image'

    async def _execute(self, state: BuildState) -> None:
        settings = state.settings
        if settings.image_family:
            state.ui.say(f'Using image family {settings.image_family}, skipping source image lookup.')
            return

        state.ui.say(f'Checking source image {settings.source_image}...')
        images = await state.client.describe_images(
            settings.region, image_id=settings.source_image,
        )
        if not images:
            raise PinnedResourceNotFound('source image', settings.source_image)
        state.source_image = images[0]
        state.ui.message(f'Found source image: {images[0].image_id}')
