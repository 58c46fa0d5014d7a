"""Fleet dispatch: run work on every host with bounded concurrency."""

import asyncio
import logging
import threading
from contextlib import contextmanager
from typing import Awaitable, Callable, Iterable, Iterator, Optional, TypeVar, Union

from steelcut.errors import (
    EmptyHostGroup,
    ExecutionError,
    InvalidConcurrency,
    SteelcutError,
)
from steelcut.executor import deadline_after
from steelcut.host import Host, OSFamily
from steelcut.models import CommandRequest, CommandResult, DispatchResults, HostResult


logger = logging.getLogger(__name__)

T = TypeVar("T")


class ReadWriteLock:
    """Many concurrent readers or one writer.

    There is no fairness: a steady stream of readers can delay a writer.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writing or self._readers:
                self._cond.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


class HostGroup:
    """A mutable set of hosts keyed by hostname.

    The lock is held only to copy or change the mapping, never while a
    command runs, so a slow host never blocks adding or removing others.

    Args:
        hosts: Initial members. A later host replaces an earlier one with
            the same hostname.
    """

    def __init__(self, hosts: Iterable[Host] = ()):
        self._lock = ReadWriteLock()
        self._hosts: dict[str, Host] = {h.hostname: h for h in hosts}

    def add_host(self, host: Host) -> None:
        """Add a host, replacing any host with the same hostname."""
        with self._lock.write():
            self._hosts[host.hostname] = host

    def remove_host(self, hostname: str) -> None:
        """Remove a host. Removing an unknown hostname is a no-op."""
        with self._lock.write():
            self._hosts.pop(hostname, None)

    def has_host(self, hostname: str) -> bool:
        with self._lock.read():
            return hostname in self._hosts

    def snapshot(self) -> dict[str, Host]:
        """Copy of the current hostname -> host mapping."""
        with self._lock.read():
            return dict(self._hosts)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._hosts)

    def __contains__(self, hostname: object) -> bool:
        return isinstance(hostname, str) and self.has_host(hostname)

    def _admit(self, concurrency: int) -> dict[str, Host]:
        """Validate the limit and snapshot the members for one dispatch."""
        # Reason: bool is an int subclass; True would silently mean 1.
        if isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency < 1:
            raise InvalidConcurrency(concurrency)
        snapshot = self.snapshot()
        if not snapshot:
            raise EmptyHostGroup()
        return snapshot

    async def _fan_out(
        self,
        snapshot: dict[str, Host],
        concurrency: int,
        unit: Callable[[Host], Awaitable[T]],
    ) -> dict[str, Union[T, BaseException]]:
        """Run unit on every host, at most ``concurrency`` at once.

        A unit that raises never stops the others; its exception is returned
        in place of its value.
        """
        semaphore = asyncio.Semaphore(concurrency)

        async def _with_semaphore(host: Host) -> T:
            async with semaphore:
                return await unit(host)

        outcomes = await asyncio.gather(
            *[_with_semaphore(host) for host in snapshot.values()],
            return_exceptions=True,
        )
        return dict(zip(snapshot, outcomes))

    @staticmethod
    async def _command_slot(hostname: str, call: Awaitable[CommandResult]) -> HostResult:
        try:
            result = await call
        except ExecutionError as exc:
            return HostResult(hostname, result=exc.result, error=exc)
        except SteelcutError as exc:
            return HostResult(hostname, error=exc)
        return HostResult(hostname, result=result)

    @staticmethod
    def _collect(outcomes: dict[str, Union[HostResult, BaseException]]) -> DispatchResults:
        results = DispatchResults()
        for hostname, outcome in outcomes.items():
            if isinstance(outcome, BaseException):
                outcome = HostResult(hostname, error=outcome)
            results.slots[hostname] = outcome
            if outcome.error is not None:
                logger.warning("Host processing error: %s", outcome.error)
        return results

    async def run_on_all(
        self,
        command: Union[str, CommandRequest],
        concurrency: int,
        deadline: Optional[float] = None,
        *,
        timeout: Optional[float] = None,
    ) -> DispatchResults:
        """Run a command on every host in the group.

        The host set is snapshotted when the call starts; hosts added or
        removed afterwards do not change this dispatch. At most
        ``concurrency`` hosts run at once. A failing host never stops the
        others: its error is recorded in its own slot.

        Args:
            command: Shell line or a prepared request.
            concurrency: Maximum hosts in flight, at least 1.
            deadline: Absolute ``time.monotonic()`` deadline shared by all hosts.
            timeout: Relative alternative to ``deadline``.

        Returns:
            DispatchResults: Exactly one slot per host in the snapshot.

        Raises:
            InvalidConcurrency: concurrency is not an integer >= 1.
            EmptyHostGroup: There were no hosts to run on.
        """
        snapshot = self._admit(concurrency)
        request = CommandRequest.parse(command) if isinstance(command, str) else command
        deadline = _merge_deadline(deadline, timeout)

        logger.info(
            "Dispatching %r to %d hosts (concurrency %d)",
            request.command_line, len(snapshot), concurrency,
        )
        outcomes = await self._fan_out(
            snapshot,
            concurrency,
            lambda host: self._command_slot(host.hostname, host.run(request, deadline)),
        )
        return self._collect(outcomes)

    async def detect_all(
        self,
        concurrency: int,
        deadline: Optional[float] = None,
        *,
        timeout: Optional[float] = None,
    ) -> dict[str, Union[Host, BaseException]]:
        """Detect the OS family of every host.

        Returns:
            dict: hostname -> detected Host, or the exception its detection
            raised. Members of the group are not replaced.

        Raises:
            InvalidConcurrency: concurrency is not an integer >= 1.
            EmptyHostGroup: There were no hosts to probe.
        """
        snapshot = self._admit(concurrency)
        deadline = _merge_deadline(deadline, timeout)

        outcomes = await self._fan_out(
            snapshot, concurrency, lambda host: host.detected(deadline)
        )
        for hostname, outcome in outcomes.items():
            if isinstance(outcome, BaseException):
                logger.warning("Host detection error on %s: %s", hostname, outcome)
        return outcomes

    async def upgrade_all(
        self,
        concurrency: int,
        deadline: Optional[float] = None,
        *,
        timeout: Optional[float] = None,
    ) -> DispatchResults:
        """Upgrade every package on every host through its package manager.

        Hosts whose OS family is still unknown are detected first, within
        the same deadline.
        """
        snapshot = self._admit(concurrency)
        deadline = _merge_deadline(deadline, timeout)

        async def _upgrade(host: Host) -> CommandResult:
            if host.os_family is OSFamily.UNKNOWN:
                host = await host.detected(deadline)
            return await host.upgrade_packages(deadline)

        outcomes = await self._fan_out(
            snapshot,
            concurrency,
            lambda host: self._command_slot(host.hostname, _upgrade(host)),
        )
        return self._collect(outcomes)


def _merge_deadline(deadline: Optional[float], timeout: Optional[float]) -> Optional[float]:
    if timeout is None:
        return deadline
    relative = deadline_after(timeout)
    return relative if deadline is None else min(deadline, relative)
