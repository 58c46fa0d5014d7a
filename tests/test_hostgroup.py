"""Tests for fleet dispatch (hostgroup.py).

Every host is remote and dials through a FakeDialer, so dispatches run
entirely in-process.
"""

import asyncio

import pytest

from conftest import FakeDialer, InFlightTracker, make_host
from steelcut.errors import (
    DialError,
    EmptyHostGroup,
    ExecutionError,
    InvalidConcurrency,
    UnsupportedPlatform,
)
from steelcut.host import OSFamily
from steelcut.hostgroup import HostGroup, ReadWriteLock
from steelcut.models import CommandRequest, DispatchResults, HostResult


def _group(dialer, count: int) -> HostGroup:
    return HostGroup(make_host(f"host{i}", dialer) for i in range(1, count + 1))


# ---------------------------------------------------------------------------
# Membership
# ---------------------------------------------------------------------------


def test_add_has_remove():
    group = HostGroup()
    group.add_host(make_host("web1"))

    assert group.has_host("web1")
    assert "web1" in group
    assert len(group) == 1

    group.remove_host("web1")
    assert not group.has_host("web1")
    # Reason: removing an unknown host is a no-op, not an error.
    group.remove_host("web1")
    assert len(group) == 0


@pytest.mark.asyncio
async def test_add_same_hostname_replaces(fake_dialer):
    """Adding a hostname twice keeps one slot; dispatch yields one result."""
    group = HostGroup()
    first = make_host("web1", fake_dialer)
    second = make_host("web1", fake_dialer)
    group.add_host(first)
    group.add_host(second)

    assert len(group) == 1
    assert group.snapshot()["web1"] is second

    results = await group.run_on_all("echo hello", concurrency=4)
    assert len(results) == 1
    assert results.hostnames == ["web1"]


def test_snapshot_is_a_copy():
    group = HostGroup([make_host("web1")])
    snapshot = group.snapshot()
    group.add_host(make_host("web2"))

    assert list(snapshot) == ["web1"]


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_one_dial_failure_does_not_affect_others():
    """5 hosts, concurrency 2, host3 cannot be dialed: 5 slots, 4 successes."""
    dialer = FakeDialer(fail_hosts={"host3"}, stdout="hello\n")
    group = _group(dialer, 5)

    results = await group.run_on_all("echo hello", concurrency=2)

    assert len(results) == 5
    assert len(results.succeeded) == 4
    for hostname in ("host1", "host2", "host4", "host5"):
        slot = results[hostname]
        assert slot.error is None
        assert slot.result.stdout == "hello\n"

    failed = results["host3"]
    assert isinstance(failed.error, DialError)
    assert failed.result is None
    assert results.failed == [failed]


@pytest.mark.asyncio
@pytest.mark.parametrize("limit", [1, 2, 3])
async def test_concurrency_limit_is_respected(limit):
    """No more than `limit` commands are ever in flight at once."""
    tracker = InFlightTracker()
    dialer = FakeDialer(stdout="ok\n", delay=0.01, tracker=tracker)
    group = _group(dialer, 7)

    results = await group.run_on_all("true", concurrency=limit)

    assert len(results) == 7
    assert 1 <= tracker.peak <= limit


@pytest.mark.asyncio
async def test_semaphore_created_with_concurrency(monkeypatch, fake_dialer):
    """run_on_all creates asyncio.Semaphore with the requested concurrency."""
    captured_semaphore_values: list[int] = []
    _real_semaphore = asyncio.Semaphore

    class TrackingSemaphore(_real_semaphore):
        """Wrapper that records the value passed to Semaphore.__init__."""

        def __init__(self, value=1):
            captured_semaphore_values.append(value)
            super().__init__(value)

    monkeypatch.setattr(asyncio, "Semaphore", TrackingSemaphore)

    await _group(fake_dialer, 2).run_on_all("uptime", concurrency=8)

    assert 8 in captured_semaphore_values


@pytest.mark.asyncio
async def test_execution_error_keeps_result():
    """A non-zero exit fills the slot with both the error and the output."""
    dialer = FakeDialer(stdout="", stderr="E: lock held\n", exit_code=100)
    group = _group(dialer, 1)

    results = await group.run_on_all(CommandRequest.parse("apt-get update"), concurrency=1)

    slot = results["host1"]
    assert isinstance(slot.error, ExecutionError)
    assert slot.result.exit_code == 100
    assert slot.result.stderr == "E: lock held\n"


@pytest.mark.asyncio
async def test_unexpected_exception_is_recorded():
    """Errors outside the steelcut hierarchy still land in the host's slot."""

    class BrokenHost:
        hostname = "broken"

        async def run(self, request, deadline=None):
            raise RuntimeError("driver bug")

    group = HostGroup([BrokenHost(), make_host("web1", FakeDialer(stdout="hi\n"))])

    results = await group.run_on_all("echo hi", concurrency=2)

    assert len(results) == 2
    assert isinstance(results["broken"].error, RuntimeError)
    assert results["web1"].result.stdout == "hi\n"


@pytest.mark.asyncio
async def test_remove_host_mid_flight_keeps_snapshot():
    """A host removed during a dispatch still has a slot in that dispatch."""
    dialer = FakeDialer(stdout="done\n", delay=0.05)
    group = _group(dialer, 3)

    task = asyncio.create_task(group.run_on_all("sleep 1", concurrency=3))
    # Reason: let the dispatch take its snapshot and start dialing.
    while not dialer.calls:
        await asyncio.sleep(0)
    group.remove_host("host2")
    results = await task

    assert not group.has_host("host2")
    assert len(results) == 3
    assert results["host2"].result.stdout == "done\n"


@pytest.mark.asyncio
async def test_timeout_applies_to_every_host():
    dialer = FakeDialer(stdout="late\n", delay=5)
    group = _group(dialer, 2)

    results = await group.run_on_all("sleep 5", concurrency=2, timeout=0.05)

    assert len(results) == 2
    assert all(isinstance(slot.error, TimeoutError) for slot in results)
    assert all(session.closed for session in dialer.sessions)


@pytest.mark.asyncio
async def test_empty_group_is_rejected():
    with pytest.raises(EmptyHostGroup):
        await HostGroup().run_on_all("uptime", concurrency=1)


@pytest.mark.asyncio
@pytest.mark.parametrize("bad", [0, -1, True, 2.5])
async def test_invalid_concurrency_is_rejected(fake_dialer, bad):
    group = _group(fake_dialer, 1)

    with pytest.raises(InvalidConcurrency):
        await group.run_on_all("uptime", concurrency=bad)

    assert fake_dialer.calls == []


# ---------------------------------------------------------------------------
# Aggregated errors
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_raise_for_errors_groups_failures():
    dialer = FakeDialer(fail_hosts={"host1", "host2"}, stdout="ok\n")
    results = await _group(dialer, 3).run_on_all("uptime", concurrency=3)

    with pytest.raises(ExceptionGroup) as info:
        results.raise_for_errors()

    assert "2 of 3 hosts" in str(info.value)
    assert len(info.value.exceptions) == 2
    assert all(isinstance(e, DialError) for e in info.value.exceptions)


def test_raise_for_errors_silent_on_success():
    results = DispatchResults({"web1": HostResult("web1")})

    results.raise_for_errors()
    assert results.failed == []


# ---------------------------------------------------------------------------
# ReadWriteLock
# ---------------------------------------------------------------------------


def test_read_write_lock_allows_nested_readers():
    lock = ReadWriteLock()
    with lock.read():
        with lock.read():
            pass
    with lock.write():
        pass


# ---------------------------------------------------------------------------
# Detection and package upgrades
# ---------------------------------------------------------------------------


DEBIAN_RESPONSES = {
    "uname": ("Linux\n", "", 0),
    "os-release": ("ID=debian\n", "", 0),
}


@pytest.mark.asyncio
async def test_detect_all_records_unexpected_exceptions():
    """One host's crash is returned in its slot; the others are detected."""

    class BrokenHost:
        hostname = "broken"

        async def detected(self, deadline=None):
            raise RuntimeError("driver bug")

    group = HostGroup([BrokenHost(), make_host("web1", FakeDialer(responses=DEBIAN_RESPONSES))])

    detected = await group.detect_all(concurrency=2)

    assert isinstance(detected["broken"], RuntimeError)
    assert detected["web1"].os_family is OSFamily.DEBIAN
    # Reason: detection reports hosts, it does not swap group members.
    assert group.snapshot()["web1"].os_family is OSFamily.UNKNOWN


@pytest.mark.asyncio
async def test_detect_all_rejects_invalid_concurrency(fake_dialer):
    with pytest.raises(InvalidConcurrency):
        await _group(fake_dialer, 1).detect_all(concurrency=0)


@pytest.mark.asyncio
async def test_upgrade_all_detects_then_upgrades():
    dialer = FakeDialer(responses=DEBIAN_RESPONSES)
    group = HostGroup(make_host(f"host{i}", dialer, sudo_password="s3cret") for i in (1, 2))

    results = await group.upgrade_all(concurrency=2)

    assert len(results.succeeded) == 2
    upgrades = [s.commands[0] for s in dialer.sessions if "upgrade" in s.commands[0]]
    assert upgrades == ["sudo -S -p '' -- /bin/sh -c 'apt-get upgrade -y'"] * 2


@pytest.mark.asyncio
async def test_upgrade_all_unsupported_family_fills_slot():
    dialer = FakeDialer(responses={"uname": ("SunOS\n", "", 0)})
    group = _group(dialer, 1)

    results = await group.upgrade_all(concurrency=1)

    assert isinstance(results["host1"].error, UnsupportedPlatform)
    assert results["host1"].result is None
