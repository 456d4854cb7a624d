"""Tests for port allocation."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from osinstancectl.ports import PortAllocationError, PortAllocator
from osinstancectl.state.registry import Instance, InstanceRegistry


@pytest.mark.parametrize(
    ("bound", "expected"),
    [
        # A port bound below the highest configured one is never a candidate.
        ({61001}, 61003),
        ({61001, 61003}, 61004),
        (set(), 61003),
    ],
)
def test_next_port_skips_ports_in_use(
    registry: InstanceRegistry,
    new_instance: Callable[..., Instance],
    bound: set[int],
    expected: int,
) -> None:
    """The next port is above the highest configured one and actually free."""
    new_instance("a.example", port=61000)
    new_instance("b.example", port=61002)
    allocator = PortAllocator(registry.instances_dir, probe=lambda port: port not in bound)

    assert allocator.used_ports() == [61000, 61002]
    assert allocator.next_free_port() == expected


def test_base_port_used_when_no_instances(tmp_path: Path) -> None:
    allocator = PortAllocator(tmp_path / "instances", probe=lambda port: True)

    assert allocator.next_free_port() == 61001


def test_probing_is_bounded(tmp_path: Path) -> None:
    """Allocation gives up after ``max_probes`` taken ports."""
    probed: list[int] = []

    def probe(port: int) -> bool:
        probed.append(port)
        return False

    allocator = PortAllocator(tmp_path / "instances", max_probes=3, probe=probe)

    with pytest.raises(PortAllocationError, match="Could not find free port"):
        allocator.next_free_port()
    assert probed == [61001, 61002, 61003, 61004]


def test_legacy_env_ports_count(tmp_path: Path) -> None:
    """Ports of legacy instances (``.env`` files) are never reused."""
    legacy = tmp_path / "legacy" / "old.example"
    legacy.mkdir(parents=True)
    (legacy / ".env").write_text('FOO=1\nEXTERNAL_HTTP_PORT="61010"\n', encoding="utf-8")
    allocator = PortAllocator(
        tmp_path / "instances",
        legacy_instances_dir=tmp_path / "legacy",
        probe=lambda port: True,
    )

    assert allocator.used_ports() == [61010]
    assert allocator.next_free_port() == 61011


def test_ran_out_of_ports(tmp_path: Path) -> None:
    allocator = PortAllocator(tmp_path / "instances", base_port=65535, probe=lambda port: True)

    with pytest.raises(PortAllocationError, match="Ran out of ports"):
        allocator.next_free_port()
