import asyncio

import pytest

from server.room_registry import RoomRegistry


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def anyio_backend():
    return "asyncio"


def test_join_returns_existing_members() -> None:
    registry = RoomRegistry()
    assert registry.join("room", "A") == []
    assert registry.join("room", "B") == ["A"]
    assert registry.members("room") == ["A", "B"]
    assert registry.join("room", "B") == ["A"]
    assert registry.members("room") == ["A", "B"]


def test_empty_room_is_dropped_after_grace() -> None:
    clock = FakeClock()
    registry = RoomRegistry(grace_seconds=60, clock=clock)
    registry.join("room", "A")
    registry.join("room", "B")

    assert registry.leave_all("A") == [("room", ["B"])]
    assert registry.leave_all("B") == [("room", [])]
    assert "room" in registry

    clock.now += 59
    assert registry.purge() == []
    clock.now += 1
    assert registry.purge() == ["room"]
    assert len(registry) == 0


def test_rejoin_within_grace_keeps_call_start() -> None:
    clock = FakeClock()
    registry = RoomRegistry(grace_seconds=60, clock=clock)
    registry.join("room", "A")
    started = registry.mark_call_started("room", meeting_id="m1", class_index=2)
    registry.leave("room", "A")

    clock.now += 30
    registry.join("room", "A2")
    clock.now += 120
    assert registry.purge() == []
    assert registry.call_started_at("room") == started
    assert registry.get("room").class_index == 2


def test_call_start_recorded_once() -> None:
    registry = RoomRegistry()
    registry.join("room", "A")
    first = registry.mark_call_started("room")
    assert first is not None
    assert registry.mark_call_started("room") is None
    assert registry.call_started_at("room") == first


def test_call_ended_room_expires_even_with_members() -> None:
    clock = FakeClock()
    registry = RoomRegistry(grace_seconds=10, clock=clock)
    registry.join("room", "A")
    assert registry.mark_call_ended("room") is True
    assert registry.mark_call_ended("missing") is False

    clock.now += 10
    assert registry.purge() == ["room"]


def test_leave_unknown_connection_is_noop() -> None:
    registry = RoomRegistry()
    registry.join("room", "A")
    assert registry.leave("room", "Z") is None
    assert registry.leave("other", "A") is None
    assert registry.leave_all("Z") == []


def test_snapshot_counts_rooms_and_connections() -> None:
    registry = RoomRegistry()
    registry.join("r1", "A")
    registry.join("r2", "A")
    registry.join("r2", "B")
    snapshot = registry.snapshot()
    assert snapshot["room_count"] == 2
    assert snapshot["connection_count"] == 2
    assert [event["type"] for event in snapshot["events"]].count("room_created") == 2


@pytest.mark.anyio
async def test_expiry_timer_purges_without_explicit_call() -> None:
    registry = RoomRegistry(grace_seconds=0.02)
    registry.join("room", "A")
    registry.join("room", "B")
    registry.leave_all("A")
    registry.leave_all("B")

    await asyncio.sleep(0.1)

    assert "room" not in registry
