"""Build Alibaba Cloud ECS images from a source image."""

from .builder import BuildResult, ImageBuilder
from .errors import BuildError, CleanupWarning, ConfigurationError, ImageExistsError
from .settings import BuilderSettings

__all__ = [
    "BuildError",
    "BuildResult",
    "BuilderSettings",
    "CleanupWarning",
    "ConfigurationError",
    "ImageBuilder",
    "ImageExistsError",
]
