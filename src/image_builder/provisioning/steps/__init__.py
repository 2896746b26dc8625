"""Concrete build steps, in pipeline order."""

from .base import (
    ALLOWED_TRANSITIONS,
    InvalidStepTransition,
    NoResourceStep,
    ResourceStep,
    Step,
    StepStatus,
)
from .image import CopyImageStep, CreateImageStep
from .instance import InstanceStep, ProvisionStep, StartInstanceStep, StopInstanceStep
from .network import VpcStep, VSwitchStep
from .pre_validate import CheckSourceImageStep, PreValidateStep
from .security_group import SecurityGroupStep

__all__ = [
    "ALLOWED_TRANSITIONS",
    "CheckSourceImageStep",
    "CopyImageStep",
    "CreateImageStep",
    "InstanceStep",
    "InvalidStepTransition",
    "NoResourceStep",
    "PreValidateStep",
    "ProvisionStep",
    "ResourceStep",
    "SecurityGroupStep",
    "StartInstanceStep",
    "Step",
    "StepStatus",
    "StopInstanceStep",
    "VSwitchStep",
    "VpcStep",
]
