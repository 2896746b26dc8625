"""Typed build state shared by the pipeline steps.

The state object is the only channel between steps. Each step reads what
earlier steps wrote and writes its own outputs; writes are last-writer-wins.
Reading a field nothing has written yet is a fatal ``MissingStateError``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..errors import CleanupWarning, MissingStateError
from ..providers.models import Image, Instance, VSwitch
from ..ui import NullUi, Ui

if TYPE_CHECKING:
    from ..providers.protocols import CloudClient
    from ..settings import BuilderSettings

NETWORK_TYPE_VPC = 'vpc'


@dataclass(slots=True)
class BuildState:
    """Mutable per-run state, created once and discarded at run end."""

    settings: BuilderSettings
    client: CloudClient
    ui: Ui = field(default_factory=NullUi)

    vpc_id: str | None = None
    network_type: str | None = None
    security_group_id: str | None = None
    source_image: Image | None = None
    vswitches: list[VSwitch] | None = None
    vswitch_id: str | None = None
    zone_id: str | None = None
    instance: Instance | None = None
    instance_id: str | None = None
    image_id: str | None = None
    images: dict[str, str] = field(default_factory=dict)
    """Region id -> image id for the finished image and its copies."""

    error: BaseException | None = None
    warnings: list[CleanupWarning] = field(default_factory=list)

    def require(self, name: str) -> Any:
        """Return a field written by an earlier step or raise MissingStateError."""
        value = getattr(self, name)
        if value is None or value == []:
            raise MissingStateError(name)
        return value

    @property
    def halted(self) -> bool:
        return self.error is not None

    def select_vswitch(self, vswitch: VSwitch) -> None:
        """Record the vSwitch (and its zone) the instance will be placed in."""
        self.vswitches = [vswitch]
        self.vswitch_id = vswitch.vswitch_id
        self.zone_id = vswitch.zone_id

    def clear_vswitch(self) -> None:
        self.vswitches = None
        self.vswitch_id = None
        self.zone_id = None
