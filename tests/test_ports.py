"""Tests for port allocation."""
from __future__ import annotations

import pytest

from storectl.ports import PortAllocationError, PortAllocator, recorded_ports
from storectl.state import InstanceStore
from storectl.state.instances import PORT


def test_pick_returns_base_when_free() -> None:
    """The base port is used when nothing else is bound."""
    assert PortAllocator(base_port=8080).pick(None, []) == 8080


def test_pick_honours_requested_port() -> None:
    """An explicit request is used as the starting point."""
    assert PortAllocator(base_port=8080).pick(9000, {8080}) == 9000


def test_pick_skips_taken_ports() -> None:
    """Collisions move to the next free port."""
    assert PortAllocator(base_port=8080).pick(None, {8080, 8081, 8083}) == 8082


def test_pick_raises_when_range_exhausted() -> None:
    """Running past the top of the TCP range is an error."""
    allocator = PortAllocator(base_port=65534)

    with pytest.raises(PortAllocationError, match="No free port"):
        allocator.pick(None, {65534, 65535})
    with pytest.raises(PortAllocationError, match="out of range"):
        allocator.pick(70000, [])


@pytest.mark.parametrize(("base", "strategy"), [(0, "sequential"), (8080, "random")])
def test_invalid_allocator_parameters(base: int, strategy: str) -> None:
    """Invalid base ports and strategies are rejected up front."""
    with pytest.raises(PortAllocationError):
        PortAllocator(base_port=base, strategy=strategy)


def test_recorded_ports_excludes_requested_site(instances: InstanceStore) -> None:
    """A site's own port does not count as taken when it is re-targeted."""
    instances.write_record("ShopA", {PORT: 8080})
    instances.write_record("ShopB", {PORT: 8081})
    instances.write_record("ShopC", {PORT: "n/a"})

    assert recorded_ports(instances) == {8080, 8081}
    assert recorded_ports(instances, exclude_site="shopa") == {8081}
