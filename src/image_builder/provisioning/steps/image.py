"""Image steps: snapshot the stopped instance and copy it to other regions.

Both steps own their images only until the pipeline succeeds. On a clean
run the images are the build's output, so cleanup releases ownership and
leaves them in place; on a halted run they are deleted like any other
transient resource.
"""

from __future__ import annotations

from functools import partial

from ...errors import BuildError
from ...observability import get_logger
from ...providers.models import IMAGE_STATUS_AVAILABLE, IMAGE_STATUS_QUERIED, Image
from ..retry_codes import status_evaluator
from ..state import BuildState
from .base import ResourceStep, new_client_token

logger = get_logger(__name__)


def _image_status(found: list[Image]) -> str | None:
    return found[0].status if found else None


async def wait_for_image(
    step: ResourceStep,
    state: BuildState,
    region_id: str,
    image_id: str,
) -> None:
    await step._poll(
        state,
        partial(state.client.describe_images, region_id, image_id=image_id),
        status_evaluator(
            IMAGE_STATUS_AVAILABLE,
            extract=_image_status,
            retryable=state.settings.retry_codes.describe,
        ),
        description=f'image {image_id} in {region_id} to become available',
    )


class CreateImageStep(ResourceStep):
    name = 'create_image'
    kind = 'image'

    def __init__(
        self,
        *,
        image_name: str,
        description: str = '',
        force_delete: bool = False,
    ) -> None:
        super().__init__()
        self.image_name = image_name
        self.description = description
        self.force_delete = force_delete

    async def _execute(self, state: BuildState) -> None:
        client = state.client
        region = state.settings.region
        instance_id = state.require('instance_id')

        if self.force_delete:
            await self._delete_existing(state)

        state.ui.say(f'Creating image: {self.image_name}')
        image_id = await self._create(
            state,
            partial(
                client.create_image,
                region,
                instance_id=instance_id,
                image_name=self.image_name,
                description=self.description,
                client_token=new_client_token(),
            ),
        )
        try:
            await wait_for_image(self, state, region, image_id)
        except Exception:
            await self._discard(
                state, partial(client.delete_image, region, image_id, force=True), image_id,
            )
            raise

        self._take_ownership(image_id)
        state.image_id = image_id
        state.images[region] = image_id
        state.ui.message(f'Created image: {image_id}')

    async def _delete_existing(self, state: BuildState) -> None:
        region = state.settings.region
        existing = await state.client.describe_images(
            region, image_name=self.image_name, status=IMAGE_STATUS_QUERIED,
        )
        for image in existing:
            state.ui.say(f'Deleting duplicated image {image.image_id} named {self.image_name}')
            await self._delete(
                state, partial(state.client.delete_image, region, image.image_id, force=True),
            )

    def _should_release(self, state: BuildState) -> bool:
        if not state.halted:
            logger.info('image_published', image_id=self.resource_id)
        return state.halted

    async def _release(self, state: BuildState) -> None:
        region = state.settings.region
        await self._delete(
            state, partial(state.client.delete_image, region, self.resource_id, force=True),
        )
        if state.image_id == self.resource_id:
            state.image_id = None
            state.images.pop(region, None)


class CopyImageStep(ResourceStep):
    """Copy the source image to every destination region."""

    name = 'copy_image'
    kind = 'image'

    def __init__(self, *, destination_regions: tuple[str, ...], image_name: str) -> None:
        super().__init__()
        self.destination_regions = destination_regions
        self.image_name = image_name
        self.copies: dict[str, str] = {}

    async def _execute(self, state: BuildState) -> None:
        client = state.client
        region = state.settings.region
        source_id = state.require('image_id')

        try:
            for destination in self.destination_regions:
                state.ui.say(f'Copying image {source_id} from {region} to {destination}...')
                copy_id = await self._create(
                    state,
                    partial(
                        client.copy_image,
                        region,
                        source_id,
                        destination_region_id=destination,
                        destination_image_name=self.image_name,
                        client_token=new_client_token(),
                    ),
                    description=f'image copy to {destination}',
                )
                self.copies[destination] = copy_id
                await wait_for_image(self, state, destination, copy_id)
                state.images[destination] = copy_id
                state.ui.message(f'Copied image to {destination}: {copy_id}')
        except Exception:
            for destination, copy_id in self.copies.items():
                await self._discard(
                    state,
                    partial(client.delete_image, destination, copy_id, force=True),
                    copy_id,
                )
                state.images.pop(destination, None)
            self.copies.clear()
            raise

        if self.copies:
            self._take_ownership(','.join(self.copies.values()))

    def _should_release(self, state: BuildState) -> bool:
        if not state.halted:
            logger.info('image_copies_published', copies=dict(self.copies))
        return state.halted

    async def _release(self, state: BuildState) -> None:
        failed: list[str] = []
        for destination, copy_id in self.copies.items():
            try:
                await self._delete(
                    state, partial(state.client.delete_image, destination, copy_id, force=True),
                )
            except Exception as exc:
                failed.append(f'{copy_id} in {destination}: {exc}')
                continue
            state.images.pop(destination, None)
        if failed:
            raise BuildError('failed to delete image copies: ' + '; '.join(failed))
