"""Shared test fixtures and SSH doubles for the steelcut test suite."""

import asyncio

import pytest

from steelcut.dialer import SessionOutput
from steelcut.errors import DialError
from steelcut.executor import CommandManager
from steelcut.host import Host
from steelcut.models import Credentials, HostConfig


class InFlightTracker:
    """Counts how many fake sessions are running a command at once.

    Attributes:
        current: Commands running right now.
        peak: Highest value current ever reached.
    """

    def __init__(self):
        self.current = 0
        self.peak = 0

    def enter(self):
        self.current += 1
        self.peak = max(self.peak, self.current)

    def exit(self):
        self.current -= 1


class FakeSession:
    """Fake SSH session returning predetermined output.

    Attributes:
        responses: Mapping of command substring to (stdout, stderr, exit_code).
            The first matching substring wins; unmatched commands use the
            default output.
        delay: Seconds each run takes.
        commands: Commands received, in order.
        inputs: stdin data received, in order.
        closed: Whether close() was called.
    """

    def __init__(
        self,
        stdout: str = "",
        stderr: str = "",
        exit_code: int = 0,
        delay: float = 0.0,
        responses: dict[str, tuple[str, str, int]] | None = None,
        tracker: InFlightTracker | None = None,
    ):
        self.default = SessionOutput(stdout, stderr, exit_code)
        self.responses = responses or {}
        self.delay = delay
        self.tracker = tracker
        self.commands: list[str] = []
        self.inputs: list[str | None] = []
        self.closed = False

    async def run(self, command, input=None):
        """Record the command and return the matching output."""
        self.commands.append(command)
        self.inputs.append(input)
        if self.tracker:
            self.tracker.enter()
        try:
            await asyncio.sleep(self.delay)
        finally:
            if self.tracker:
                self.tracker.exit()
        for pattern, output in self.responses.items():
            if pattern in command:
                return SessionOutput(*output)
        return self.default

    async def close(self):
        self.closed = True


class FakeDialer:
    """Fake SSH dialer handing out FakeSession objects.

    Args:
        fail_hosts: Hosts whose dial raises DialError.
        **session_kwargs: Passed to every FakeSession.

    Attributes:
        calls: (network, address, auth, timeout) for every dial.
        sessions: Sessions handed out, in order.
    """

    def __init__(self, fail_hosts=(), **session_kwargs):
        self.fail_hosts = set(fail_hosts)
        self.session_kwargs = session_kwargs
        self.calls: list[tuple] = []
        self.sessions: list[FakeSession] = []

    async def dial(self, network, address, auth, timeout):
        """Record the dial and return a new FakeSession."""
        self.calls.append((network, address, auth, timeout))
        host = address.rsplit(":", 1)[0]
        if host in self.fail_hosts:
            raise DialError("mock dial error", host)
        session = FakeSession(**self.session_kwargs)
        self.sessions.append(session)
        return session


class FakeProcess:
    """Fake asyncio subprocess that returns predetermined output.

    Attributes:
        stdout: Bytes to return as stdout.
        stderr: Bytes to return as stderr.
        returncode: None while running, then the exit code (-9 once killed).
        delay: Seconds communicate() takes.
        input: Bytes passed to communicate().
        killed: Whether kill() was called.
    """

    def __init__(
        self,
        stdout: bytes = b"",
        stderr: bytes = b"",
        returncode: int = 0,
        delay: float = 0.0,
    ):
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = None
        self.delay = delay
        self.input = None
        self.killed = False
        self._exit_code = returncode

    async def communicate(self, input=None):
        """Record stdin data and return stored stdout and stderr."""
        self.input = input
        await asyncio.sleep(self.delay)
        self.returncode = self._exit_code
        return self.stdout, self.stderr

    def kill(self):
        self.killed = True
        self.returncode = -9

    async def wait(self):
        return self.returncode


def make_credentials(**overrides) -> Credentials:
    """Credentials with a login password so no agent or key file is needed."""
    values = {"user": "ops", "password": "hunter2"}
    values.update(overrides)
    return Credentials(**values)


def make_host(hostname: str, dialer=None, **credential_overrides) -> Host:
    """Build a Host with a CommandManager bound to the given dialer."""
    config = HostConfig(hostname=hostname, credentials=make_credentials(**credential_overrides))
    return Host(config, CommandManager(config, dialer=dialer))


@pytest.fixture
def fake_dialer():
    """A FakeDialer whose sessions print "hello"."""
    return FakeDialer(stdout="hello\n")


@pytest.fixture
def exec_calls(monkeypatch):
    """Patch asyncio.create_subprocess_exec and record every call.

    Returns a list of (args, kwargs, process) tuples. Set ``exec_calls.process``
    before running to control the returned FakeProcess.
    """

    class ExecCalls(list):
        process: FakeProcess

    calls = ExecCalls()
    calls.process = FakeProcess(stdout=b"hello\n")

    async def fake_exec(*args, **kwargs):
        """Record the call args and return the configured FakeProcess."""
        calls.append((args, kwargs, calls.process))
        return calls.process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
    yield calls
