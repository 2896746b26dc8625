"""Cloud API clients for the image builder."""

from .alicloud_client import AlicloudClient
from .errors import CloudAPIError, CloudTimeoutError
from .inmemory import InMemoryCloud
from .protocols import CloudClient

__all__ = [
    "AlicloudClient",
    "CloudAPIError",
    "CloudClient",
    "CloudTimeoutError",
    "InMemoryCloud",
]
