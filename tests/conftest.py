"""Pytest configuration for image_builder tests."""
import sys
from pathlib import Path

# Add src/ to path for src-layout imports
_PROJECT_ROOT = Path(__file__).parent.parent
_SRC = _PROJECT_ROOT / 'src'
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

import pytest

from image_builder.providers.inmemory import InMemoryCloud
from image_builder.providers.models import Image
from image_builder.provisioning.state import BuildState
from image_builder.settings import BuilderSettings
from image_builder.ui import RecordingUi


def _make_settings(**overrides) -> BuilderSettings:
    values = dict(
        access_key='test-ak',
        secret_key='test-sk',
        region='cn-hangzhou',
        instance_type='ecs.g6.large',
        image_name='packer-test-image',
        source_image='m-source',
        poll_interval_seconds=0,
        retry_times=3,
        short_retry_times=2,
    )
    values.update(overrides)
    return BuilderSettings(**values)


@pytest.fixture
def make_settings():
    """Valid settings with zero poll delay; keyword overrides replace fields."""
    return _make_settings


@pytest.fixture
def settings():
    return _make_settings()


@pytest.fixture
def cloud():
    cloud = InMemoryCloud()
    cloud.add_image(Image('m-source', 'Available', 'ubuntu', 'cn-hangzhou'))
    return cloud


@pytest.fixture
def ui():
    return RecordingUi()


@pytest.fixture
def state(settings, cloud, ui):
    return BuildState(settings=settings, client=cloud, ui=ui)


@pytest.fixture
def make_state(cloud, ui):
    """BuildState over the shared cloud and ui with custom settings."""

    def factory(**overrides) -> BuildState:
        return BuildState(settings=_make_settings(**overrides), client=cloud, ui=ui)

    return factory
