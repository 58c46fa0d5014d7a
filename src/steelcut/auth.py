"""Resolution of SSH authentication methods from a host's credentials.

Password authentication wins when a password is configured. Otherwise keys
come from the running ssh-agent, or from encrypted key files under ~/.ssh
when a key passphrase is configured. A silent keyboard-interactive responder
is always attached so that an unexpected server prompt cannot hang the
connection.
"""

import logging
import os
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Any, Callable, Optional

import asyncssh

from steelcut.errors import NoUsableCredentials
from steelcut.models import Credentials


logger = logging.getLogger(__name__)

DEFAULT_KEY_DIR = Path.home() / ".ssh"


class SilentPromptClient(asyncssh.SSHClient):
    """SSH client that answers every keyboard-interactive challenge with blanks.

    Args:
        hostname: Host name, used only for logging.
    """

    def __init__(self, hostname: str):
        self._hostname = hostname

    def kbdint_auth_requested(self) -> str:
        # Reason: an empty submethod string opts in to keyboard-interactive
        # so the challenge handler below is the one that responds.
        return ""

    def kbdint_challenge_received(
        self, name: str, instructions: str, lang: str, prompts: list[tuple[str, bool]]
    ) -> list[str]:
        for prompt, _echo in prompts:
            logger.debug("Received keyboard-interactive challenge %r from %s", prompt, self._hostname)
        return ["" for _ in prompts]


@dataclass
class AuthConfig:
    """Ordered authentication methods for one connection attempt.

    Attributes:
        username: Login user.
        methods: Method names in the order they were registered.
        password: Password for password authentication.
        client_keys: Signing keys for public key authentication.
        agent: Open agent client backing agent keys; closed by ``close``.
        client_factory: Factory for the silent keyboard-interactive client.
    """

    username: str
    methods: tuple[str, ...]
    password: Optional[str] = field(default=None, repr=False)
    client_keys: Optional[list[Any]] = field(default=None, repr=False)
    agent: Optional[Any] = field(default=None, repr=False)
    client_factory: Optional[Callable[[], asyncssh.SSHClient]] = field(default=None, repr=False)

    def connect_options(self) -> dict[str, Any]:
        """Keyword arguments for ``asyncssh.connect``.

        Returns:
            dict[str, Any]: username, password, client_keys, agent_path and
            client_factory, set so asyncssh uses only the resolved methods.
        """
        return {
            "username": self.username,
            "password": self.password,
            # Reason: None disables asyncssh's own key and agent discovery;
            # only the keys resolved here are offered.
            "client_keys": self.client_keys or None,
            "agent_path": None,
            "client_factory": self.client_factory,
        }

    async def close(self) -> None:
        """Release the agent connection, if one was opened."""
        if self.agent is not None:
            self.agent.close()
            await self.agent.wait_closed()
            self.agent = None


async def load_agent_keys(agent_path: Optional[str] = None) -> tuple[Any, list[Any]]:
    """Fetch signing keys from a running ssh-agent.

    Args:
        agent_path: Agent socket. Defaults to $SSH_AUTH_SOCK.

    Returns:
        tuple: The open agent client and its keys.

    Raises:
        NoUsableCredentials: If no agent is reachable or it holds no keys.
    """
    agent_path = agent_path or os.environ.get("SSH_AUTH_SOCK", "")
    if not agent_path:
        raise NoUsableCredentials("SSH_AUTH_SOCK not set and no key passphrase configured")

    try:
        agent = await asyncssh.connect_agent(agent_path)
    except (OSError, asyncssh.Error) as exc:
        raise NoUsableCredentials(f"could not connect to SSH agent: {exc}") from exc

    try:
        keys = await agent.get_keys()
    except (OSError, ValueError, asyncssh.Error) as exc:
        agent.close()
        await agent.wait_closed()
        raise NoUsableCredentials(f"could not get keys from SSH agent: {exc}") from exc

    if not keys:
        agent.close()
        await agent.wait_closed()
        raise NoUsableCredentials("SSH agent holds no keys")
    return agent, list(keys)


def load_key_files(passphrase: str, key_dir: Path = DEFAULT_KEY_DIR) -> list[Any]:
    """Decrypt the private keys found under key_dir.

    Every ``id_*`` file except ``*.pub`` is tried. Files that cannot be read
    or decrypted with the passphrase are skipped.

    Args:
        passphrase: Passphrase for the encrypted keys.
        key_dir: Directory holding the keys.

    Returns:
        list: The decrypted keys.

    Raises:
        NoUsableCredentials: If no key could be loaded.
    """
    keys = []
    for path in sorted(key_dir.glob("id_*")):
        if path.suffix == ".pub":
            continue
        try:
            keys.append(asyncssh.read_private_key(path, passphrase))
        except (OSError, asyncssh.KeyImportError, asyncssh.KeyEncryptionError) as exc:
            logger.debug("Skipping key %s: %s", path, exc)
            continue

    if not keys:
        raise NoUsableCredentials(f"no private key under {key_dir} could be decrypted")
    return keys


async def resolve_auth(
    hostname: str,
    credentials: Credentials,
    key_dir: Path = DEFAULT_KEY_DIR,
    agent_path: Optional[str] = None,
) -> AuthConfig:
    """Build the ordered authentication methods for a host.

    Args:
        hostname: Host being connected to, used for logging and errors.
        credentials: The host's configured secrets.
        key_dir: Directory searched for private key files.
        agent_path: ssh-agent socket override.

    Returns:
        AuthConfig: Password or public key method, then keyboard-interactive.

    Raises:
        NoUsableCredentials: If the selected key source yields no keys.
    """
    client_factory = partial(SilentPromptClient, hostname)

    if credentials.password is not None:
        logger.debug("Using password authentication for %s", hostname)
        return AuthConfig(
            username=credentials.user,
            methods=("password", "keyboard-interactive"),
            password=credentials.password.get_secret_value(),
            client_factory=client_factory,
        )

    logger.debug("Using public key authentication for %s", hostname)
    agent = None
    try:
        if credentials.key_passphrase is not None:
            keys = load_key_files(credentials.key_passphrase.get_secret_value(), key_dir)
        else:
            agent, keys = await load_agent_keys(agent_path)
    except NoUsableCredentials as exc:
        raise NoUsableCredentials(str(exc), hostname) from exc

    return AuthConfig(
        username=credentials.user,
        methods=("publickey", "keyboard-interactive"),
        client_keys=keys,
        agent=agent,
        client_factory=client_factory,
    )
