"""Port selection for new and re-targeted IIS sites."""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from .state import InstanceStore

MAX_PORT = 65535


class PortAllocationError(RuntimeError):
    """Raised when no usable port can be selected."""


@dataclass(slots=True)
class PortAllocator:
    """Pick the first free port at or above a requested one."""

    base_port: int
    strategy: str = "sequential"

    def __post_init__(self) -> None:
        """Validate initialiser parameters."""
        if not 1 <= self.base_port <= MAX_PORT:
            raise PortAllocationError("Base port must be between 1 and 65535.")
        if self.strategy != "sequential":
            raise PortAllocationError(f"Unsupported port allocation strategy '{self.strategy}'.")

    def pick(self, requested: int | None, used: Iterable[int]) -> int:
        """Return *requested* (or the base port) unless taken, else the next free one."""
        candidate = requested if requested and requested > 0 else self.base_port
        if candidate > MAX_PORT:
            raise PortAllocationError(f"Requested port {candidate} is out of range.")
        taken = set(used)
        while candidate in taken:
            candidate += 1
            if candidate > MAX_PORT:
                raise PortAllocationError("No free port available above the requested port.")
        return candidate


def recorded_ports(instances: InstanceStore, *, exclude_site: str | None = None) -> set[int]:
    """Return ports recorded for every instance except *exclude_site*."""
    excluded = exclude_site.lower() if exclude_site else None
    ports: set[int] = set()
    for site in instances.list_sites():
        if excluded is not None and site.lower() == excluded:
            continue
        record = instances.get_record(site)
        if record is not None and record.port is not None:
            ports.add(record.port)
    return ports


__all__ = ["PortAllocationError", "PortAllocator", "recorded_ports"]
