"""Value types shared by the executor and the fleet dispatcher."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, Optional

from pydantic import BaseModel, ConfigDict, SecretStr, field_validator


class Credentials(BaseModel):
    """Login and elevation secrets for one host.

    Attributes:
        user: Remote login user.
        password: Login password. When set, password authentication is used
            instead of public keys.
        key_passphrase: Passphrase for encrypted private keys under ~/.ssh.
            When unset, keys are taken from the running ssh-agent.
        sudo_password: Password written to sudo's stdin for privileged runs.
    """

    model_config = ConfigDict(frozen=True)

    user: str
    password: Optional[SecretStr] = None
    key_passphrase: Optional[SecretStr] = None
    sudo_password: Optional[SecretStr] = None

    @field_validator("password", "key_passphrase", "sudo_password", mode="before")
    @classmethod
    def empty_is_unset(cls, v: object) -> object:
        """Treat an empty secret as not configured.

        Args:
            v: Raw secret value.

        Returns:
            object: None for empty strings, the value otherwise.
        """
        if v == "":
            return None
        return v


class HostConfig(BaseModel):
    """Immutable identity of a host: its address plus its credentials."""

    model_config = ConfigDict(frozen=True)

    hostname: str
    port: int = 22
    credentials: Credentials

    @field_validator("hostname")
    @classmethod
    def hostname_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("hostname must not be empty")
        return v.strip()


@dataclass(frozen=True)
class CommandRequest:
    """A single command to run on one host.

    Attributes:
        command: Command name or full shell line. Must not be empty.
        args: Extra arguments appended to the command, space separated.
        env: Environment overrides as KEY=VALUE strings.
        sudo: Run the command through sudo, feeding the host's sudo password
            on stdin.
    """

    command: str
    args: tuple[str, ...] = ()
    env: tuple[str, ...] = ()
    sudo: bool = False

    def __post_init__(self) -> None:
        if not self.command or not self.command.strip():
            raise ValueError("command name must not be empty")
        # Reason: accept lists from callers but keep the value hashable
        # and immutable once submitted.
        object.__setattr__(self, "args", tuple(self.args))
        object.__setattr__(self, "env", tuple(self.env))
        for item in self.env:
            if "=" not in item or item.startswith("="):
                raise ValueError(f"environment override must be KEY=VALUE, got {item!r}")

    @classmethod
    def parse(cls, line: str, sudo: bool = False) -> "CommandRequest":
        """Build a request from a shell line such as "echo hello".

        Args:
            line: Command line as typed by the operator.
            sudo: Whether to run it with privilege elevation.

        Returns:
            CommandRequest: Request whose command_line equals the stripped line.
        """
        return cls(command=line.strip(), sudo=sudo)

    @property
    def command_line(self) -> str:
        """Command and arguments joined with spaces, unquoted."""
        return " ".join([self.command, *self.args])


@dataclass(frozen=True)
class CommandResult:
    """Normalized outcome of one command run.

    A result with no accompanying error may still carry a non-zero exit
    code when produced outside the executor; check ``ok`` as well.

    Attributes:
        stdout: Captured standard output.
        stderr: Captured standard error, never merged into stdout.
        exit_code: Process exit status.
        duration: Wall-clock seconds from start to completion.
        command: The exact command string that was run.
        timestamp: UTC start time.
    """

    stdout: str
    stderr: str
    exit_code: int
    duration: float
    command: str
    timestamp: datetime

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class HostResult:
    """Outcome of one host's slot in a dispatch.

    Attributes:
        hostname: Host the slot was reserved for.
        result: Command result, present on success and on non-zero exits.
        error: Error raised for this host, if any.
    """

    hostname: str
    result: Optional[CommandResult] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class DispatchResults:
    """Per-host results of one fleet dispatch, keyed by hostname.

    The dispatch succeeding does not mean every host succeeded; inspect
    ``failed`` or call ``raise_for_errors``.
    """

    slots: dict[str, HostResult] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.slots)

    def __iter__(self) -> Iterator[HostResult]:
        return iter(self.slots.values())

    def __getitem__(self, hostname: str) -> HostResult:
        return self.slots[hostname]

    def __contains__(self, hostname: object) -> bool:
        return hostname in self.slots

    @property
    def hostnames(self) -> list[str]:
        return sorted(self.slots)

    @property
    def succeeded(self) -> list[HostResult]:
        return [r for r in self.slots.values() if r.ok]

    @property
    def failed(self) -> list[HostResult]:
        return [r for r in self.slots.values() if not r.ok]

    @property
    def errors(self) -> dict[str, BaseException]:
        return {r.hostname: r.error for r in self.slots.values() if r.error is not None}

    def raise_for_errors(self) -> None:
        """Raise every per-host error together as one ExceptionGroup.

        Raises:
            ExceptionGroup: When at least one host failed. Each member is the
                original per-host exception; its message names the host.
        """
        errors = [
            err if isinstance(err, Exception) else Exception(str(err))
            for err in self.errors.values()
        ]
        if errors:
            raise ExceptionGroup(
                f"{len(errors)} of {len(self.slots)} hosts encountered errors", errors
            )

