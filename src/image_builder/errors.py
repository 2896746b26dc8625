"""Build error hierarchy.

Every error raised out of a step's ``run()`` is fatal to the pipeline.
Retryable provider errors are absorbed by the poller and never show up here.
``ImageExistsError`` is the one sentinel callers treat as a benign early exit.
"""

from __future__ import annotations

from dataclasses import dataclass


class BuildError(Exception):
    """Base class for fatal build errors."""


class ImageExistsError(BuildError):
    """Target image name is already taken in the source region."""

    def __init__(self, image_name: str, image_ids: tuple[str, ...] = ()) -> None:
        self.image_name = image_name
        self.image_ids = image_ids
        super().__init__(f'image name {image_name!r} already exists')


class RegionValidationError(BuildError):
    """One or more configured regions are unknown to the provider."""

    def __init__(self, invalid_regions: list[str], known_regions: list[str]) -> None:
        self.invalid_regions = invalid_regions
        self.known_regions = known_regions
        super().__init__(
            'unknown region(s): '
            + ', '.join(repr(r) for r in invalid_regions)
        )


class PinnedResourceNotFound(BuildError):
    """A resource the user pinned by id or name could not be located."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f'the specified {kind} {identifier!r} does not exist')


class NoZoneAvailableError(BuildError):
    """No zone currently sells the requested instance type."""

    def __init__(self, instance_type: str, region: str) -> None:
        self.instance_type = instance_type
        self.region = region
        super().__init__(
            f'instance type {instance_type!r} has no available zone '
            f'in region {region!r}'
        )


class ZonesExhaustedError(BuildError):
    """Every candidate zone was tried and none produced a ready resource."""

    def __init__(self, kind: str, zones: list[str]) -> None:
        self.kind = kind
        self.zones = zones
        super().__init__(
            f'no {kind} created successfully in candidate zones: '
            + (', '.join(zones) or '<none>')
        )


class MissingStateError(BuildError):
    """A step read a state field that no earlier step has written."""

    def __init__(self, field_name: str) -> None:
        self.field_name = field_name
        super().__init__(f'build state field {field_name!r} has not been set')


class BuildCancelledError(BuildError):
    """The build task was cancelled while the pipeline was running."""

    def __init__(self, step_name: str | None = None) -> None:
        self.step_name = step_name
        where = f' during step {step_name!r}' if step_name else ''
        super().__init__(f'build cancelled{where}')


class PollFailedError(BuildError):
    """The evaluation function stopped polling without an observed error."""


class PollTimeoutError(BuildError):
    """The poller exhausted its retry ceiling without reaching success."""

    def __init__(self, attempts: int, description: str = '') -> None:
        self.attempts = attempts
        self.description = description
        what = f' for {description}' if description else ''
        super().__init__(
            f'timeout waiting for expected result{what} '
            f'after {attempts} attempt(s)'
        )


@dataclass(frozen=True, slots=True)
class CleanupWarning:
    """Failure during compensating teardown, downgraded to a warning."""

    step_name: str
    resource_id: str | None
    error: str

    def __str__(self) -> str:
        resource = f' {self.resource_id}' if self.resource_id else ''
        return f'{self.step_name}: failed to clean up{resource}: {self.error}'


class ConfigurationError(BuildError):
    """Settings failed validation before any provider call was made."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__('invalid builder settings: ' + '; '.join(errors))
