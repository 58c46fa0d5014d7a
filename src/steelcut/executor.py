"""Command execution on a single host, locally or over SSH.

The loopback check in ``CommandManager.run`` is the only place that decides
between a local child process and a remote session. Both paths share the
sudo handling, the deadline handling and the result classification.

Deadlines are absolute ``time.monotonic()`` values. On the remote path a
deadline only stops the caller from waiting: the session is closed, but the
remote process is not guaranteed to be interrupted and may keep running.
"""

import asyncio
import logging
import shlex
import time
from contextlib import suppress
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from steelcut.auth import DEFAULT_KEY_DIR, resolve_auth
from steelcut.dialer import SessionOutput, SSHDialer, SSHSession
from steelcut.errors import (
    CommandTimeout,
    ConfigurationError,
    DialError,
    ExecutionError,
    MissingSudoCredential,
    PrivilegeError,
)
from steelcut.models import CommandRequest, CommandResult, HostConfig
from steelcut.sudo import SUDO_ARGV, SignatureTable


logger = logging.getLogger(__name__)

LOCAL_HOSTNAMES = frozenset({"localhost", "127.0.0.1"})

SHELL = "/bin/sh"

# Dial timeout used when the caller gives no deadline.
DEFAULT_DIAL_TIMEOUT = 15 * 60.0


def deadline_after(seconds: float) -> float:
    """Return the absolute deadline that is ``seconds`` from now.

    Args:
        seconds: Relative timeout.

    Returns:
        float: A ``time.monotonic()`` timestamp.
    """
    return time.monotonic() + seconds


def build_argv(request: CommandRequest) -> list[str]:
    """Wrap a request in a shell invocation, with sudo and env if asked.

    Environment overrides go through ``env`` inside the sudo call so that
    sudo's environment reset does not drop them.

    Args:
        request: Command to wrap.

    Returns:
        list[str]: argv such as ``["sudo", "-S", "-p", "", "--", "/bin/sh", "-c", "ls"]``.
    """
    argv: list[str] = []
    if request.sudo:
        argv += SUDO_ARGV
    if request.env:
        argv += ["env", *request.env]
    return [*argv, SHELL, "-c", request.command_line]


def remote_command(request: CommandRequest) -> str:
    """Command string sent to a remote session for a request.

    Plain requests are sent as typed, since the remote login shell already
    interprets them. Requests with sudo or env overrides are wrapped.

    Args:
        request: Command to send.

    Returns:
        str: The exact string executed remotely.
    """
    if not request.sudo and not request.env:
        return request.command_line
    return shlex.join(build_argv(request))


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CommandManager:
    """Runs commands on one host.

    Args:
        config: Host identity and credentials.
        dialer: Opens SSH sessions for remote hosts. Not needed for loopback.
        signatures: Sudo failure signatures used to classify output.
        key_dir: Directory searched for encrypted private keys.
        agent_path: ssh-agent socket override.
    """

    def __init__(
        self,
        config: HostConfig,
        dialer: Optional[SSHDialer] = None,
        signatures: Optional[SignatureTable] = None,
        key_dir: Path = DEFAULT_KEY_DIR,
        agent_path: Optional[str] = None,
    ):
        self._config = config
        self._dialer = dialer
        self._signatures = signatures or SignatureTable()
        self._key_dir = key_dir
        self._agent_path = agent_path

    @property
    def hostname(self) -> str:
        return self._config.hostname

    @property
    def address(self) -> str:
        """Network address of the SSH endpoint, ``host:port``."""
        host = self._config.hostname
        if ":" in host:
            host = f"[{host}]"
        return f"{host}:{self._config.port}"

    def is_local(self) -> bool:
        return self._config.hostname in LOCAL_HOSTNAMES

    async def run(
        self,
        request: CommandRequest,
        deadline: Optional[float] = None,
        *,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run a command on this host.

        Args:
            request: Command to run.
            deadline: Absolute ``time.monotonic()`` deadline, or None.
            timeout: Relative alternative to ``deadline``. When both are
                given the earlier one applies.

        Returns:
            CommandResult: Output of a run that exited 0.

        Raises:
            MissingSudoCredential: sudo requested without a sudo password.
            NoUsableCredentials: No SSH authentication method was resolvable.
            DialError: The SSH session could not be established.
            SessionError: The SSH session failed while the command ran.
            CommandTimeout: The deadline passed, or had already passed.
            PrivilegeError: stderr matched a sudo failure signature.
            ExecutionError: The command exited non-zero.
        """
        if timeout is not None:
            relative = deadline_after(timeout)
            deadline = relative if deadline is None else min(deadline, relative)

        if request.sudo and self._config.credentials.sudo_password is None:
            raise MissingSudoCredential(self.hostname)

        if self.is_local():
            logger.debug("Running %r locally on %s", request.command, self.hostname)
            return await self.run_local(request, deadline)

        logger.debug("Running %r remotely on %s", request.command, self.hostname)
        return await self.run_remote(request, deadline)

    def _remaining(self, deadline: Optional[float]) -> Optional[float]:
        """Seconds left before the deadline, or None without one.

        Raises:
            CommandTimeout: If the deadline has already passed.
        """
        if deadline is None:
            return None
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise CommandTimeout("deadline passed before the command started", self.hostname)
        return remaining

    def _sudo_input(self, request: CommandRequest) -> Optional[str]:
        if not request.sudo:
            return None
        return self._config.credentials.sudo_password.get_secret_value() + "\n"

    async def run_local(
        self, request: CommandRequest, deadline: Optional[float] = None
    ) -> CommandResult:
        """Run a command as a local child process under ``/bin/sh -c``.

        The sudo password, when needed, is written to the child's stdin.
        Unlike the remote path, the child is killed when the deadline passes.
        """
        remaining = self._remaining(deadline)
        argv = build_argv(request)
        stdin_data = self._sudo_input(request)

        timestamp = _now()
        start = time.monotonic()
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if stdin_data else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(stdin_data.encode() if stdin_data else None),
                timeout=remaining,
            )
        except TimeoutError:
            logger.error("Local command %r timed out on %s", request.command, self.hostname)
            raise CommandTimeout("command timed out", self.hostname) from None
        finally:
            # Reason: covers cancellation as well as the deadline.
            if proc.returncode is None:
                with suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()

        exit_code = proc.returncode or 0
        # Reason: asyncio reports a death by signal N as -N; use the shell's
        # 128+N convention so exit codes stay non-negative.
        if exit_code < 0:
            exit_code = 128 - exit_code

        result = CommandResult(
            stdout=stdout_bytes.decode(errors="replace"),
            stderr=stderr_bytes.decode(errors="replace"),
            exit_code=exit_code,
            duration=time.monotonic() - start,
            command=shlex.join(argv),
            timestamp=timestamp,
        )
        return self.classify(result)

    async def run_remote(
        self, request: CommandRequest, deadline: Optional[float] = None
    ) -> CommandResult:
        """Run a command over a fresh SSH session.

        The session and any agent connection are always released, including
        when the deadline wins the race against the command.
        """
        remaining = self._remaining(deadline)
        dial_timeout = remaining if remaining is not None else DEFAULT_DIAL_TIMEOUT

        if self._dialer is None:
            raise ConfigurationError("SSH dialer is not configured", self.hostname)

        auth = await resolve_auth(
            self.hostname, self._config.credentials, self._key_dir, self._agent_path
        )
        try:
            try:
                session = await asyncio.wait_for(
                    self._dialer.dial("tcp", self.address, auth, dial_timeout),
                    timeout=dial_timeout,
                )
            except TimeoutError:
                if deadline is None:
                    raise DialError(
                        f"SSH connection timed out after {dial_timeout:.1f}s", self.hostname
                    ) from None
                logger.error("Deadline elapsed while dialing %s", self.hostname)
                raise CommandTimeout("deadline elapsed while dialing", self.hostname) from None
            except DialError as exc:
                # Reason: the dialer's own connect timeout equals the time
                # left, so it can fire just before ours does.
                if deadline is not None and time.monotonic() >= deadline:
                    raise CommandTimeout("deadline elapsed while dialing", self.hostname) from exc
                raise
            except OSError as exc:
                raise DialError(f"could not establish SSH session: {exc}", self.hostname) from exc

            try:
                return await self._execute(session, request, deadline)
            finally:
                await session.close()
        finally:
            await auth.close()

    async def _execute(
        self, session: SSHSession, request: CommandRequest, deadline: Optional[float]
    ) -> CommandResult:
        command = remote_command(request)
        stdin_data = self._sudo_input(request)
        remaining = self._remaining(deadline)

        timestamp = _now()
        start = time.monotonic()
        task: asyncio.Task[SessionOutput] = asyncio.create_task(
            session.run(command, input=stdin_data)
        )
        try:
            done, _ = await asyncio.wait({task}, timeout=remaining)
            if task not in done:
                logger.error("Command over SSH timed out on %s: %s", self.hostname, command)
                raise CommandTimeout("command timed out", self.hostname)
            output = task.result()
        finally:
            if not task.done():
                task.cancel()
                await asyncio.wait({task})

        result = CommandResult(
            stdout=output.stdout,
            stderr=output.stderr,
            exit_code=output.exit_code,
            duration=time.monotonic() - start,
            command=command,
            timestamp=timestamp,
        )
        if result.exit_code != 0:
            logger.error(
                "Command over SSH failed on %s: %s (exit %d) stderr=%r",
                self.hostname, command, result.exit_code, result.stderr,
            )
        return self.classify(result)

    def classify(self, result: CommandResult) -> CommandResult:
        """Turn a finished run into a return value or an error.

        Sudo signatures are checked first, then the exit code.

        Args:
            result: Completed run.

        Returns:
            CommandResult: The result unchanged, when nothing is wrong.

        Raises:
            PrivilegeError: stderr matched a sudo failure signature.
            ExecutionError: The command exited non-zero.
        """
        signature = self._signatures.match(result.stderr, result.exit_code)
        if signature is not None:
            raise PrivilegeError(signature, result, self.hostname)
        if result.exit_code != 0:
            raise ExecutionError(result, self.hostname)
        return result
