"""SSH dialing capability and its asyncssh implementation.

The executor only talks to the ``SSHDialer`` and ``SSHSession`` protocols,
so tests can swap in fakes without touching the network.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import asyncssh

from steelcut.auth import AuthConfig
from steelcut.errors import DialError, SessionError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionOutput:
    """Raw output of a command run on a remote session."""

    stdout: str
    stderr: str
    exit_code: int


class SSHSession(Protocol):
    """An established remote shell session."""

    async def run(self, command: str, input: Optional[str] = None) -> SessionOutput:
        """Run a command, writing input to its stdin first."""
        ...

    async def close(self) -> None:
        """Tear the session down."""
        ...


class SSHDialer(Protocol):
    """Opens remote shell sessions."""

    async def dial(
        self, network: str, address: str, auth: AuthConfig, timeout: float
    ) -> SSHSession:
        """Connect to address and negotiate a session within timeout seconds."""
        ...


def split_address(address: str) -> tuple[str, int]:
    """Split "host:port" (or "[v6]:port") into its parts.

    Args:
        address: Network address with a port.

    Returns:
        tuple[str, int]: Host and port.

    Raises:
        ValueError: If the port is missing or not a number.
    """
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"address must be host:port, got {address!r}")
    return host.strip("[]"), int(port)


class AsyncSSHSession:
    """SSHSession backed by an asyncssh client connection."""

    def __init__(self, conn: asyncssh.SSHClientConnection, hostname: str):
        self._conn = conn
        self._hostname = hostname

    async def run(self, command: str, input: Optional[str] = None) -> SessionOutput:
        try:
            completed = await self._conn.run(
                command, input=input, check=False, errors="replace"
            )
        except (OSError, asyncssh.Error) as exc:
            raise SessionError(f"SSH session failed: {exc}", self._hostname) from exc
        # Reason: exit_status is None when the remote side died from a
        # signal or dropped the channel without reporting a status.
        exit_code = completed.exit_status if completed.exit_status is not None else -1
        return SessionOutput(
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            exit_code=exit_code,
        )

    async def close(self) -> None:
        self._conn.close()
        await self._conn.wait_closed()


class AsyncSSHDialer:
    """Production dialer using asyncssh.

    Host keys are not verified (``known_hosts=None``); any key the server
    presents is accepted.
    """

    async def dial(
        self, network: str, address: str, auth: AuthConfig, timeout: float
    ) -> AsyncSSHSession:
        if network != "tcp":
            raise ValueError(f"unsupported network {network!r}")
        host, port = split_address(address)

        logger.debug("Dialing %s:%d as %s (timeout %.1fs)", host, port, auth.username, timeout)
        try:
            conn = await asyncssh.connect(
                host,
                port=port,
                known_hosts=None,
                connect_timeout=timeout,
                **auth.connect_options(),
            )
        except TimeoutError:
            raise DialError(f"SSH connection timed out after {timeout:.1f}s", host) from None
        except (OSError, asyncssh.Error) as exc:
            raise DialError(f"could not establish SSH session: {exc}", host) from exc
        return AsyncSSHSession(conn, host)
