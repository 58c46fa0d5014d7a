"""Hosts and OS family detection.

Each supported OS family carries the names of its package and service
managers and the command that upgrades its packages. The family is chosen
once, when the host is assembled.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from steelcut.dialer import SSHDialer
from steelcut.errors import UnsupportedPlatform
from steelcut.executor import CommandManager
from steelcut.models import CommandRequest, CommandResult, HostConfig
from steelcut.sudo import SignatureTable


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Capabilities:
    """Tools a host family is driven with.

    Attributes:
        package_manager: Package manager binary, or None if unsupported.
        service_manager: Service manager binary, or None if unsupported.
        upgrade_command: Shell line upgrading every installed package.
        upgrade_sudo: Whether the upgrade needs root.
    """

    package_manager: Optional[str]
    service_manager: Optional[str]
    upgrade_command: Optional[str] = None
    upgrade_sudo: bool = True



class OSFamily(str, Enum):
    """Operating system families steelcut knows how to drive."""

    UNKNOWN = "unknown"
    UBUNTU = "ubuntu"
    DEBIAN = "debian"
    FEDORA = "fedora"
    REDHAT = "rhel"
    CENTOS = "centos"
    ARCH = "arch"
    OPENSUSE = "opensuse"
    ALPINE = "alpine"
    DARWIN = "darwin"

    @property
    def capabilities(self) -> Capabilities:
        return _CAPABILITIES[self]

    @property
    def is_linux(self) -> bool:
        return self not in (OSFamily.DARWIN, OSFamily.UNKNOWN)


_CAPABILITIES: dict[OSFamily, Capabilities] = {
    OSFamily.UNKNOWN: Capabilities(None, None),
    OSFamily.UBUNTU: Capabilities("apt", "systemctl", "apt-get upgrade -y"),
    OSFamily.DEBIAN: Capabilities("apt", "systemctl", "apt-get upgrade -y"),
    OSFamily.FEDORA: Capabilities("dnf", "systemctl", "dnf upgrade -y"),
    OSFamily.REDHAT: Capabilities("yum", "systemctl", "yum update -y"),
    OSFamily.CENTOS: Capabilities("yum", "systemctl", "yum update -y"),
    OSFamily.ARCH: Capabilities("pacman", "systemctl", "pacman -Syu --noconfirm"),
    OSFamily.OPENSUSE: Capabilities("zypper", "systemctl", "zypper --non-interactive update"),
    OSFamily.ALPINE: Capabilities("apk", "rc-service", "apk upgrade"),
    # Reason: Homebrew refuses to run as root.
    OSFamily.DARWIN: Capabilities("brew", "launchctl", "brew upgrade", upgrade_sudo=False),
}


_OS_RELEASE_ID = re.compile(r'^ID="?([A-Za-z0-9._-]+)"?\s*$', re.MULTILINE)


def parse_os_release(text: str) -> OSFamily:
    """Map the ID line of /etc/os-release to an OS family.

    Args:
        text: Contents of /etc/os-release.

    Returns:
        OSFamily: The family, or UNKNOWN for unsupported distributions.
    """
    match = _OS_RELEASE_ID.search(text)
    if not match:
        return OSFamily.UNKNOWN
    distro = match.group(1).lower()
    # Reason: openSUSE reports "opensuse-leap" / "opensuse-tumbleweed".
    if distro.startswith("opensuse"):
        return OSFamily.OPENSUSE
    try:
        return OSFamily(distro)
    except ValueError:
        return OSFamily.UNKNOWN


async def detect_os_family(
    manager: CommandManager, deadline: Optional[float] = None
) -> OSFamily:
    """Ask a host which OS family it runs.

    Runs ``uname`` and, on Linux, reads /etc/os-release.

    Args:
        manager: Executor for the host.
        deadline: Absolute deadline for both probe commands.

    Returns:
        OSFamily: Detected family, UNKNOWN if unsupported.

    Raises:
        SteelcutError: If either command fails to run.
    """
    result = await manager.run(CommandRequest("uname"), deadline)
    os_name = result.stdout.strip()
    logger.debug("uname on %s reported %r", manager.hostname, os_name)

    if os_name == "Darwin":
        return OSFamily.DARWIN
    if os_name != "Linux":
        logger.warning("Unknown OS %r on %s", os_name, manager.hostname)
        return OSFamily.UNKNOWN

    release = await manager.run(CommandRequest("cat", ("/etc/os-release",)), deadline)
    family = parse_os_release(release.stdout)
    if family is OSFamily.UNKNOWN:
        logger.warning("Unsupported Linux distribution on %s", manager.hostname)
    return family


class Host:
    """A fleet member: immutable identity, its executor and its OS family.

    Args:
        config: Host identity and credentials.
        manager: Executor bound to the same host.
        os_family: Detected or configured OS family.
    """

    __slots__ = ("_config", "_manager", "_os_family")

    def __init__(
        self,
        config: HostConfig,
        manager: CommandManager,
        os_family: OSFamily = OSFamily.UNKNOWN,
    ):
        self._config = config
        self._manager = manager
        self._os_family = os_family

    def __repr__(self) -> str:
        return f"Host({self.hostname!r}, os_family={self._os_family.value!r})"

    @property
    def hostname(self) -> str:
        return self._config.hostname

    @property
    def config(self) -> HostConfig:
        return self._config

    @property
    def manager(self) -> CommandManager:
        return self._manager

    @property
    def os_family(self) -> OSFamily:
        return self._os_family

    @property
    def capabilities(self) -> Capabilities:
        return self._os_family.capabilities

    async def run(
        self,
        request: CommandRequest,
        deadline: Optional[float] = None,
        *,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run a command on this host. See ``CommandManager.run``."""
        return await self._manager.run(request, deadline, timeout=timeout)

    async def detected(self, deadline: Optional[float] = None) -> "Host":
        """Detect the OS family and return a Host carrying it.

        The same identity and executor are kept; this host is unchanged.
        """
        os_family = await detect_os_family(self._manager, deadline)
        return Host(self._config, self._manager, os_family)

    async def upgrade_packages(self, deadline: Optional[float] = None) -> CommandResult:
        """Upgrade every installed package with the family's package manager.

        Raises:
            UnsupportedPlatform: The OS family has no known package manager.
            SteelcutError: Anything ``run`` raises.
        """
        caps = self.capabilities
        if caps.upgrade_command is None:
            raise UnsupportedPlatform(
                f"no package manager known for OS family {self._os_family.value!r}",
                self.hostname,
            )
        request = CommandRequest.parse(caps.upgrade_command, sudo=caps.upgrade_sudo)
        logger.debug("Upgrading packages on %s with %r", self.hostname, caps.upgrade_command)
        return await self.run(request, deadline)



async def assemble_host(
    config: HostConfig,
    dialer: Optional[SSHDialer] = None,
    signatures: Optional[SignatureTable] = None,
    detect: bool = True,
    os_family: OSFamily = OSFamily.UNKNOWN,
) -> Host:
    """Build a Host, detecting its OS family unless told not to.

    Args:
        config: Host identity and credentials.
        dialer: SSH dialer for remote hosts.
        signatures: Sudo failure signatures for the executor.
        detect: Run OS detection against the host.
        os_family: Family to use when detection is skipped.

    Returns:
        Host: The wired host.

    Raises:
        SteelcutError: If detection was requested and a probe command failed.
    """
    manager = CommandManager(config, dialer=dialer, signatures=signatures)
    if detect:
        os_family = await detect_os_family(manager)
        logger.debug("Detected %s on %s", os_family.value, config.hostname)
    return Host(config, manager, os_family)
