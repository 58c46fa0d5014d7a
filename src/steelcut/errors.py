"""Exceptions raised by the command executor and the fleet dispatcher."""

from typing import Optional

from steelcut.models import CommandResult
from steelcut.sudo import SudoFailure, SudoSignature


class SteelcutError(Exception):
    """Base class for every error raised by steelcut.

    Attributes:
        hostname: Host the error belongs to, when there is one.
    """

    def __init__(self, message: str, hostname: Optional[str] = None):
        self.hostname = hostname
        if hostname:
            message = f"{hostname}: {message}"
        super().__init__(message)


class ConfigurationError(SteelcutError):
    """The host lacks a credential needed for the request."""


class MissingSudoCredential(ConfigurationError):
    """Privilege elevation was requested but no sudo password is configured."""

    def __init__(self, hostname: Optional[str] = None):
        super().__init__(
            "privilege elevation requested but no credential available", hostname
        )


class NoUsableCredentials(ConfigurationError):
    """No authentication method could be resolved for the remote shell."""


class DialError(SteelcutError):
    """The remote session could not be established."""


class SessionError(SteelcutError):
    """An established remote session failed while running the command."""


class UnsupportedPlatform(SteelcutError):
    """The host's OS family has no tool for the requested operation."""


class ExecutionError(SteelcutError):
    """The command ran and exited non-zero.

    Attributes:
        result: Captured output of the run.
        exit_code: Exit status of the run.
    """

    def __init__(self, result: CommandResult, hostname: Optional[str] = None, message: Optional[str] = None):
        self.result = result
        self.exit_code = result.exit_code
        super().__init__(message or f"command exited with status {result.exit_code}", hostname)


class PrivilegeError(ExecutionError):
    """Captured output matched a known sudo failure signature.

    Attributes:
        kind: Which sudo failure was recognised.
        signature: The table row that matched.
    """

    def __init__(self, signature: SudoSignature, result: CommandResult, hostname: Optional[str] = None):
        self.signature = signature
        self.kind: SudoFailure = signature.kind
        super().__init__(result, hostname, signature.message)


class CommandTimeout(SteelcutError, TimeoutError):
    """The deadline elapsed before the command completed."""


class DispatchError(SteelcutError):
    """A fleet dispatch could not start."""


class EmptyHostGroup(DispatchError):
    """The host group had no hosts when the dispatch began."""

    def __init__(self) -> None:
        super().__init__("host group is empty")


class InvalidConcurrency(DispatchError, ValueError):
    """The concurrency limit was not a positive integer."""

    def __init__(self, value: object):
        self.value = value
        super().__init__(f"concurrency must be an integer >= 1, got {value!r}")
