"""Fleet configuration loading and validation."""

import configparser
import os
from pathlib import Path
from typing import Optional

import tomllib
from pydantic import BaseModel, field_validator

from steelcut.models import Credentials
from steelcut.sudo import SignatureTable, SudoFailure, SudoSignature


DEFAULT_CONFIG_PATH = Path.home() / ".config" / "steelcut" / "fleet.toml"

# Environment variables secrets may be read from. They are never persisted.
PASSWORD_ENV = "STEELCUT_PASSWORD"
KEY_PASSPHRASE_ENV = "STEELCUT_KEY_PASSPHRASE"
SUDO_PASSWORD_ENV = "STEELCUT_SUDO_PASSWORD"


class SignatureEntry(BaseModel):
    """Extra sudo failure signature declared in the config file.

    Attributes:
        pattern: Substring searched for in stderr.
        kind: Failure kind, one of the SudoFailure values.
        message: Explanation shown to the operator.
        requires_failure: Only match on non-zero exits.
    """

    pattern: str
    kind: SudoFailure
    message: str = ""
    requires_failure: bool = False

    def to_signature(self) -> SudoSignature:
        return SudoSignature(
            pattern=self.pattern,
            kind=self.kind,
            message=self.message or f"sudo: {self.kind.value.replace('_', ' ')}",
            requires_failure=self.requires_failure,
        )


class FleetConfig(BaseModel):
    """Fleet configuration model.

    Attributes:
        hosts: Hosts targeted when no host or group is given.
        groups: Named host lists.
        user: Login user. Supports env var expansion.
        port: SSH port for every host.
        concurrency: Maximum hosts in flight during a dispatch.
        timeout: Per-dispatch timeout in seconds, or None for no deadline.
        sudo_signatures: Extra sudo failure signatures.
    """

    hosts: list[str] = []
    groups: dict[str, list[str]] = {}
    user: str = "$USER"
    port: int = 22
    concurrency: int = 10
    timeout: Optional[float] = None
    sudo_signatures: list[SignatureEntry] = []

    @field_validator("user", mode="before")
    @classmethod
    def expand_env_vars(cls, v: str) -> str:
        """Expand environment variables in the user field.

        Args:
            v: Raw string value that may contain env var references.

        Returns:
            str: String with env vars expanded.
        """
        return os.path.expandvars(v)

    @field_validator("concurrency")
    @classmethod
    def positive_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("concurrency must be >= 1")
        return v

    @field_validator("timeout")
    @classmethod
    def positive_timeout(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("timeout must be > 0")
        return v

    def signature_table(self) -> SignatureTable:
        """Default sudo signatures followed by the configured extras."""
        return SignatureTable().extend(e.to_signature() for e in self.sudo_signatures)

    def resolve_hosts(self, hosts: list[str], groups: list[str]) -> list[str]:
        """Combine explicit hosts and named groups into one deduplicated list.

        Falls back to the configured ``hosts`` when neither is given.

        Args:
            hosts: Hostnames given directly.
            groups: Group names to expand.

        Returns:
            list[str]: Hostnames in first-seen order.

        Raises:
            KeyError: If a group is not defined.
        """
        selected = list(hosts)
        for group in groups:
            if group not in self.groups:
                raise KeyError(f"unknown host group '{group}'")
            selected.extend(self.groups[group])
        if not hosts and not groups:
            selected = list(self.hosts)
        return list(dict.fromkeys(selected))


def load_config(path: Path | None = None) -> FleetConfig:
    """Load fleet configuration from TOML file.

    Reads the fleet config from the given path (or the default
    ~/.config/steelcut/fleet.toml). If the file doesn't exist,
    returns a FleetConfig with default values.

    Args:
        path: Path to the config file. Defaults to ~/.config/steelcut/fleet.toml.

    Returns:
        FleetConfig: The loaded and validated configuration.

    Raises:
        pydantic.ValidationError: If the config file contains invalid values.
    """
    config_path = path or DEFAULT_CONFIG_PATH

    if not config_path.exists():
        return FleetConfig()

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    return FleetConfig(**data)


def load_inventory(path: Path) -> dict[str, list[str]]:
    """Read an INI inventory of host groups.

    Each section is a group; every value in it is a hostname::

        [web]
        host1 = web1.example.com
        host2 = web2.example.com

    Args:
        path: INI file.

    Returns:
        dict[str, list[str]]: Section name to hostnames, in file order.

    Raises:
        FileNotFoundError: If the file does not exist.
        configparser.Error: If the file is not valid INI.
    """
    parser = configparser.ConfigParser(interpolation=None, default_section="__defaults__")
    # Reason: hostnames are used as written; keep key case.
    parser.optionxform = str
    with open(path) as f:
        parser.read_file(f)

    return {
        section: [value.strip() for value in parser[section].values() if value and value.strip()]
        for section in parser.sections()
    }


def credentials_from_env(user: str, environ: Optional[dict[str, str]] = None) -> Credentials:
    """Build credentials for user from the STEELCUT_* environment variables.

    Args:
        user: Login user.
        environ: Environment to read. Defaults to os.environ.

    Returns:
        Credentials: Unset variables leave the matching secret unset.
    """
    environ = os.environ if environ is None else environ
    return Credentials(
        user=user,
        password=environ.get(PASSWORD_ENV),
        key_passphrase=environ.get(KEY_PASSPHRASE_ENV),
        sudo_password=environ.get(SUDO_PASSWORD_ENV),
    )
