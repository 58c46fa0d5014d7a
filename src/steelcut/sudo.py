"""Recognition of sudo failures from captured command output.

Output text is not a stable contract across sudo versions or locales, so
this is a best-effort layer on top of exit codes. Signatures live in a
table that callers can extend from the fleet config.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional


# Argv prefix that makes sudo read its password from stdin without printing
# a prompt into stderr.
SUDO_ARGV = ["sudo", "-S", "-p", "", "--"]


class SudoFailure(str, Enum):
    """Kinds of privilege-elevation failure."""

    INCORRECT_PASSWORD = "incorrect_password"
    NOT_IN_SUDOERS = "not_in_sudoers"
    PROMPT_TIMEOUT = "prompt_timeout"
    NO_TTY = "no_tty"
    UNKNOWN_USER = "unknown_user"
    UNABLE_TO_EXECUTE = "unable_to_execute"
    PERMISSION_DENIED = "permission_denied"


@dataclass(frozen=True)
class SudoSignature:
    """One row of the signature table.

    Attributes:
        pattern: Substring searched for in stderr.
        kind: Failure kind reported when the pattern matches.
        message: Human readable explanation.
        requires_failure: Only match when the exit code is non-zero.
    """

    pattern: str
    kind: SudoFailure
    message: str
    requires_failure: bool = False


DEFAULT_SIGNATURES: tuple[SudoSignature, ...] = (
    SudoSignature(
        "incorrect password",
        SudoFailure.INCORRECT_PASSWORD,
        "sudo: incorrect password provided",
    ),
    SudoSignature(
        "is not in the sudoers file",
        SudoFailure.NOT_IN_SUDOERS,
        "sudo: user is not in the sudoers file",
    ),
    SudoSignature(
        "timed out reading password",
        SudoFailure.PROMPT_TIMEOUT,
        "sudo: password prompt timed out",
    ),
    SudoSignature(
        "no tty present and no askpass program specified",
        SudoFailure.NO_TTY,
        "sudo: cannot prompt for password due to missing terminal or askpass program",
    ),
    SudoSignature(
        "unknown user",
        SudoFailure.UNKNOWN_USER,
        "sudo: specified user is unknown",
    ),
    SudoSignature(
        "unable to execute",
        SudoFailure.UNABLE_TO_EXECUTE,
        "sudo: unable to execute the specified command",
    ),
    # Reason: plain "Permission denied" shows up in the stderr of plenty of
    # successful commands (find, du), so it only counts on a failed exit.
    SudoSignature(
        "Permission denied",
        SudoFailure.PERMISSION_DENIED,
        "permission denied: consider using sudo for this command",
        requires_failure=True,
    ),
)


class SignatureTable:
    """Ordered set of sudo failure signatures; the first match wins."""

    def __init__(self, signatures: Iterable[SudoSignature] = DEFAULT_SIGNATURES):
        self.signatures = tuple(signatures)

    def extend(self, extra: Iterable[SudoSignature]) -> "SignatureTable":
        """Return a new table with extra signatures checked after these ones."""
        return SignatureTable((*self.signatures, *extra))

    def match(self, stderr: str, exit_code: int) -> Optional[SudoSignature]:
        """Find the first signature present in stderr.

        Args:
            stderr: Captured standard error of the command.
            exit_code: Exit status of the command.

        Returns:
            SudoSignature | None: The matching row, or None.
        """
        for signature in self.signatures:
            if signature.requires_failure and exit_code == 0:
                continue
            if signature.pattern in stderr:
                return signature
        return None
