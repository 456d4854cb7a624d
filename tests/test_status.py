"""Tests for instance status collection and listings."""
from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

import pytest

from osinstancectl.locking import ActionLockManager
from osinstancectl.providers.stack import ServiceReplicas
from osinstancectl.state.registry import Instance
from osinstancectl.status import (
    ListingOptions,
    StatusError,
    StatusReporter,
    configured_images,
    format_meeting,
)

if TYPE_CHECKING:
    from conftest import FakeProbe, FakeStack, FakeTool

ReporterFactory = Callable[..., StatusReporter]


@pytest.fixture
def fleet(
    new_instance: Callable[..., Instance],
    fake_stack: FakeStack,
    fake_probe: FakeProbe,
) -> dict[str, Instance]:
    """Four instances: healthy, unhealthy, crashed and stopped."""
    instances = {
        "a.example": new_instance("a.example", port=61001),
        "b.example": new_instance("b.example", port=61002),
        "c.example": new_instance("c.example", port=61003),
        "d.example": new_instance("d.example", port=61004),
    }
    fake_probe.open_ports.update({61001, 61002})
    fake_probe.healthy_ports.add(61001)
    fake_probe.versions[61001] = "4.0.1"
    fake_stack.deployed.update({"aexample", "bexample", "cexample"})
    fake_stack.images["aexample"] = [
        "registry.example/openslides-client:4.0.1",
        "registry.example/openslides-backend:4.0.1",
    ]
    return instances


def test_status_symbols(make_status_reporter: ReporterFactory, fleet: dict[str, Instance]) -> None:
    """Open and healthy is OK, unhealthy or crashed is XX, stopped is __."""
    statuses = make_status_reporter().list(None, ListingOptions())

    assert [(status.name, status.symbol) for status in statuses] == [
        ("a.example", "OK"),
        ("b.example", "XX"),
        ("c.example", "XX"),
        ("d.example", "__"),
    ]
    assert statuses[0].version == "4.0.1"
    assert statuses[0].management_access is True
    assert statuses[1].version == "[skipped]"


def test_fast_mode_skips_health_and_stack_queries(
    make_status_reporter: ReporterFactory,
    fleet: dict[str, Instance],
) -> None:
    statuses = make_status_reporter().list(None, ListingOptions(fast=True))

    assert [status.symbol for status in statuses] == ["OK", "OK", "__", "__"]
    assert statuses[0].version == "[skipped]"


@pytest.mark.parametrize(
    ("options", "expected"),
    [
        (ListingOptions(running_state="online"), ["a.example"]),
        (ListingOptions(running_state="stopped"), ["d.example"]),
        (ListingOptions(running_state="error"), ["b.example", "c.example"]),
        (ListingOptions(version_pattern=r"^4\.0"), ["a.example"]),
    ],
)
def test_state_filters(
    make_status_reporter: ReporterFactory,
    fleet: dict[str, Instance],
    options: ListingOptions,
    expected: list[str],
) -> None:
    names = [status.name for status in make_status_reporter().list(None, options)]

    assert names == expected


def test_lock_filters(
    make_status_reporter: ReporterFactory,
    fleet: dict[str, Instance],
    actor_locks: ActionLockManager,
) -> None:
    actor_locks.lock(fleet["c.example"], "event", ["update"])
    reporter = make_status_reporter()

    locked = reporter.list(None, ListingOptions(lock_state="locked"))
    unlocked = reporter.list(None, ListingOptions(lock_state="unlocked"))

    assert [status.name for status in locked] == ["c.example"]
    assert locked[0].update_locked is True
    assert "c.example" not in [status.name for status in unlocked]


def test_parallel_listing_keeps_order(
    make_status_reporter: ReporterFactory,
    fleet: dict[str, Instance],
) -> None:
    """Thread-pool collection returns results in instance order."""
    statuses = make_status_reporter(parallel=True).list("example", ListingOptions())

    assert [status.name for status in statuses] == list(fleet)


@pytest.mark.parametrize("parallel", [False, True])
def test_broken_config_degrades_single_instance(
    make_status_reporter: ReporterFactory,
    fleet: dict[str, Instance],
    parallel: bool,
) -> None:
    """One unparsable config.yml is listed in error state; the rest still are."""
    fleet["c.example"].config_file.write_text("port: [unclosed\n", encoding="utf-8")
    reporter = make_status_reporter(parallel=parallel)

    statuses = reporter.list(None, ListingOptions())

    assert [(status.name, status.symbol) for status in statuses] == [
        ("a.example", "OK"),
        ("b.example", "XX"),
        ("c.example", "XX"),
        ("d.example", "__"),
    ]
    broken = statuses[2]
    assert broken.port is None
    assert broken.stack_name == "cexample"
    assert broken.error is not None and "Failed to parse" in broken.error
    assert broken.to_dict()["error"] == broken.error
    assert reporter.build_tree(broken, ListingOptions(long=True)).find("Error") is not None
    assert [status.name for status in reporter.list(None, ListingOptions(running_state="error"))] == [
        "b.example",
        "c.example",
    ]
    assert [status.name for status in reporter.list(None, ListingOptions(running_state="online"))] == [
        "a.example"
    ]


def test_invalid_listing_options() -> None:
    with pytest.raises(StatusError, match="Unknown state filter"):
        ListingOptions(running_state="sleeping")
    with pytest.raises(StatusError, match="Invalid version pattern"):
        ListingOptions(version_pattern="(")
    assert ListingOptions(stats=True).extended is True
    assert ListingOptions(json=True).wants("secrets") is True


def test_json_document_keys(
    make_status_reporter: ReporterFactory,
    fleet: dict[str, Instance],
) -> None:
    """JSON listings carry every section with stable keys."""
    instance = fleet["a.example"]
    instance.admin_secret_file.write_text("s3cret\n", encoding="utf-8")
    instance.metadata_file.write_text("Customer ACME\n", encoding="utf-8")

    (status,) = make_status_reporter().list("^a\\.", ListingOptions(json=True))
    data = status.to_dict()

    assert data["name"] == "a.example"
    assert data["stackname"] == "aexample"
    assert data["status"] == "OK"
    assert data["version_image"] == "4.0.1"
    assert data["superadmin"] == "s3cret"
    assert data["metadata"] == "Customer ACME"
    assert data["pending_migration"] is False
    assert data["lock_status"] == {"has_locks": False, "update_is_locked": False}
    versions = data["services"]["versions"]  # type: ignore[index]
    assert versions["client"] == "registry.example/openslides-client:4.0.1"
    assert versions["management_tool"] == ""
    assert set(data["stats"]) == {  # type: ignore[arg-type]
        "meetings_active",
        "meetings_limit",
        "users_active",
        "users_total",
        "users_limit",
        "feature_chat",
        "feature_evoting",
    }


def test_long_tree_shows_locks(
    make_status_reporter: ReporterFactory,
    fleet: dict[str, Instance],
    actor_locks: ActionLockManager,
) -> None:
    actor_locks.lock(fleet["a.example"], "customer event", ["erase"])
    reporter = make_status_reporter()
    options = ListingOptions(long=True)
    (status,) = reporter.list("^a\\.", options)

    tree = reporter.build_tree(status, options)

    assert tree.label == "OK a.example"
    lock_node = tree.find("Lock status")
    assert lock_node is not None
    assert lock_node.value == "locked"
    assert lock_node.children[0].label == "erase"
    assert lock_node.children[0].value.startswith("customer event (alice, alice@example.org")  # type: ignore[union-attr]
    versions = tree.find("Versions")
    assert versions is not None
    assert versions.find("Images").value == "4.0.1"  # type: ignore[union-attr]


def test_services_tree_shows_scaling_arrows(
    make_status_reporter: ReporterFactory,
    fleet: dict[str, Instance],
    fake_stack: FakeStack,
) -> None:
    """Pending scale-ups are marked with an arrow and an exclamation mark."""
    fake_stack.current_replicas["aexample"] = {
        "client": ServiceReplicas(service="client", running=1, desired=1),
        "media": ServiceReplicas(service="media", running=3, desired=3),
        "vote": ServiceReplicas(service="vote", running=1, desired=1),
    }
    reporter = make_status_reporter(idle={0: "client=2 media=1 vote=1"})
    options = ListingOptions(services=True)
    (status,) = reporter.list("^a\\.", options)

    tree = reporter.build_tree(status, options)

    services = tree.find("Services")
    assert services is not None
    scaling = services.find("Scaling")
    assert scaling is not None
    values = {child.label: child.value for child in scaling.children}
    assert values == {"client": "1/1 ↗ 2 !", "media": "3/3 ↘ 1", "vote": "1/1 → 1"}
    configured = services.find("Versions (configured)")
    assert configured is not None
    assert configured.find("backendManage") is not None


def test_stats_tree_denied_without_access(
    make_status_reporter: ReporterFactory,
    fleet: dict[str, Instance],
) -> None:
    reporter = make_status_reporter()
    options = ListingOptions(stats=True)
    statuses = reporter.list("^a\\.", options)
    statuses[0].management_access = False
    statuses[0].stats = None

    tree = reporter.build_tree(statuses[0], options)

    stats = tree.find("Stats")
    assert stats is not None
    assert stats.value == "[Access denied]"


def test_configured_images(new_instance: Callable[..., Instance]) -> None:
    instance = new_instance("demo.example")

    assert configured_images(instance.stack_file) == {
        "backendManage": "registry.example/openslides-backend:4.0.1",
        "client": "registry.example/openslides-client:4.0.1",
    }
    assert configured_images(instance.directory / "missing.yml") == {}


def test_format_meeting() -> None:
    """Meeting names are shortened and video rooms appended."""
    start = int(datetime(2024, 5, 6, 10, 0).timestamp())
    header, body = format_meeting(
        {
            "id": 3,
            "name": "A very long meeting name",
            "start_time": start,
            "end_time": start + 86400,
            "jitsi_domain": "meet.example",
            "jitsi_room_name": "room",
            "jitsi_room_password": "pw",
        }
    )

    assert header == "03: A very long mee."
    assert body == "2024-05-06 – 2024-05-07 (2d): meet.example/room: (pw)"
    assert format_meeting({"id": 1, "name": "x"}) == ("01: x", "")


def test_stats_count_users_and_meetings(
    make_status_reporter: ReporterFactory,
    fleet: dict[str, Instance],
    fake_tool: FakeTool,
) -> None:
    """Stats count all and active users and list meetings by id."""
    fake_tool.collections["user"] = {"1": {"id": 1}, "2": {"id": 2}, "3": {"id": 3}}
    fake_tool.collections["user?is_active=true"] = {"1": {"id": 1}, "3": {"id": 3}}
    fake_tool.collections["organization"] = {
        "1": {"active_meeting_ids": [4], "limit_of_users": 50, "enable_chat": True}
    }
    fake_tool.collections["meeting"] = {"4": {"id": 4, "name": "Board"}, "2": {"id": 2, "name": "AGM"}}
    reporter = make_status_reporter()
    options = ListingOptions(stats=True)

    (status,) = reporter.list("^a\\.", options)

    assert status.stats is not None
    assert status.stats["users_total"] == 3
    assert status.stats["users_active"] == 2
    assert status.stats["meetings_active"] == 1
    assert [meeting["name"] for meeting in status.meetings] == ["AGM", "Board"]
    stats = reporter.build_tree(status, options).find("Stats")
    assert stats is not None
    values = {child.label: child.value for child in stats.children}
    assert values["Users"] == "2/3/50"
    assert values["Features"] == "chat"
