"""
SSH tunnel to the private legacy database host.

Opens a local TCP listener whose connections are forwarded one-to-one
through an authenticated SSH session to ``remote_host:remote_port``.
Listener and session share one lifecycle:

    DISCONNECTED -> CONNECTING -> READY -> CLOSING -> DISCONNECTED

Authentication is by private key only.
"""

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Optional

import asyncssh
from pydantic import BaseModel

from core.exceptions import ArtifactError, MigrationPhase, TunnelError
from core.retry import with_auto_retry

logger = logging.getLogger(__name__)


class TunnelState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    CLOSING = "closing"


class TunnelConfig(BaseModel):
    """Connection parameters for an SSH tunnel. Timeouts are in seconds."""

    ssh_host: str
    ssh_port: int = 22
    username: str
    private_key_path: str
    remote_host: str
    remote_port: int = 5432
    local_host: str = "127.0.0.1"
    local_port: int = 5433
    known_hosts: Optional[str] = None
    ready_timeout: float = 30.0
    close_timeout: float = 5.0


class SSHTunnel:
    """
    Local port forward over an SSH session.

    Usage:
        async with SSHTunnel(config) as tunnel:
            engine = create_legacy_engine(..., port=tunnel.local_port)
    """

    def __init__(self, config: TunnelConfig):
        self.config = config
        self.state = TunnelState.DISCONNECTED
        self._connection: Optional[asyncssh.SSHClientConnection] = None
        self._listener: Optional[asyncssh.SSHListener] = None

    @property
    def is_ready(self) -> bool:
        return self.state == TunnelState.READY

    @property
    def local_port(self) -> int:
        """Port the local listener is bound to (resolved when ``local_port`` is 0)."""
        if self._listener is not None:
            return self._listener.get_port()
        return self.config.local_port

    def _load_private_key(self) -> asyncssh.SSHKey:
        key_path = Path(self.config.private_key_path).expanduser()
        try:
            key_data = key_path.read_text(encoding="utf-8")
        except OSError as e:
            raise ArtifactError(
                f"Failed to read SSH private key file {key_path}",
                phase=MigrationPhase.EXTRACT,
                metadata={"private_key_path": str(key_path)},
                original_exception=e
            )

        try:
            return asyncssh.import_private_key(key_data)
        except (asyncssh.KeyImportError, ValueError) as e:
            raise TunnelError(
                f"SSH private key at {key_path} could not be loaded",
                phase=MigrationPhase.EXTRACT,
                retryable=False,
                original_exception=e
            )

    async def connect(self) -> "SSHTunnel":
        """
        Authenticate and bind the local listener.

        Raises:
            TunnelError: SSH connection, authentication or port-forward failure
            ArtifactError: private key file missing or unreadable
        """
        if self.state == TunnelState.READY:
            return self

        config = self.config
        client_key = self._load_private_key()

        if config.known_hosts is None:
            logger.warning(
                f"Host key verification disabled for {config.ssh_host}; "
                f"set SSH_KNOWN_HOSTS to enable it"
            )

        self.state = TunnelState.CONNECTING
        logger.info(
            f"Connecting to SSH server {config.username}@{config.ssh_host}:{config.ssh_port}"
        )

        try:
            self._connection = await asyncio.wait_for(
                asyncssh.connect(
                    config.ssh_host,
                    port=config.ssh_port,
                    username=config.username,
                    client_keys=[client_key],
                    known_hosts=config.known_hosts,
                    password=None,
                    agent_path=None
                ),
                timeout=config.ready_timeout
            )
        except asyncio.TimeoutError as e:
            self.state = TunnelState.DISCONNECTED
            raise TunnelError(
                f"SSH connection to {config.ssh_host} timed out after {config.ready_timeout}s",
                phase=MigrationPhase.EXTRACT,
                metadata={"ssh_host": config.ssh_host, "ssh_port": config.ssh_port},
                original_exception=e
            )
        except (OSError, asyncssh.Error) as e:
            self.state = TunnelState.DISCONNECTED
            raise TunnelError(
                f"SSH connection to {config.ssh_host} failed: {e}",
                phase=MigrationPhase.EXTRACT,
                metadata={"ssh_host": config.ssh_host, "ssh_port": config.ssh_port},
                original_exception=e
            )

        try:
            self._listener = await self._connection.forward_local_port(
                config.local_host,
                config.local_port,
                config.remote_host,
                config.remote_port
            )
        except (OSError, asyncssh.Error) as e:
            await self._close_connection()
            self.state = TunnelState.DISCONNECTED
            raise TunnelError(
                f"SSH tunnel could not listen on {config.local_host}:{config.local_port}: {e}",
                phase=MigrationPhase.EXTRACT,
                metadata={"local_port": config.local_port},
                original_exception=e
            )

        self.state = TunnelState.READY
        logger.info(
            f"SSH tunnel ready: {config.local_host}:{self.local_port} -> "
            f"{config.remote_host}:{config.remote_port}"
        )
        return self

    async def validate_connection(self) -> bool:
        """
        Liveness check: run a no-op command over the session.

        An open socket is not proof the remote side still answers; this is.
        """
        if self._connection is None or self.state != TunnelState.READY:
            return False

        try:
            result = await asyncio.wait_for(
                self._connection.run('echo "test"', check=False),
                timeout=self.config.ready_timeout
            )
        except (asyncio.TimeoutError, OSError, asyncssh.Error) as e:
            logger.warning(f"SSH liveness check failed: {e}")
            return False

        return result.exit_status == 0 and "test" in str(result.stdout)

    async def _close_connection(self) -> None:
        if self._connection is None:
            return

        connection = self._connection
        self._connection = None
        connection.close()
        try:
            await asyncio.wait_for(connection.wait_closed(), timeout=self.config.close_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"SSH session did not close within {self.config.close_timeout}s; forcing it"
            )
            connection.abort()

    async def close(self) -> None:
        """
        Close the listener, then the SSH session.

        Always terminates: a session that does not finish closing within
        ``close_timeout`` seconds is aborted.
        """
        if self.state == TunnelState.DISCONNECTED and self._connection is None:
            return

        self.state = TunnelState.CLOSING

        if self._listener is not None:
            listener = self._listener
            self._listener = None
            listener.close()
            try:
                await asyncio.wait_for(listener.wait_closed(), timeout=self.config.close_timeout)
            except asyncio.TimeoutError:
                logger.warning("SSH tunnel listener did not close in time")

        await self._close_connection()

        self.state = TunnelState.DISCONNECTED
        logger.info("SSH tunnel closed")

    async def __aenter__(self) -> "SSHTunnel":
        return await self.connect()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


async def create_ssh_tunnel(config: TunnelConfig, max_attempts: int = 3) -> SSHTunnel:
    """
    Open a tunnel under the SSH retry policy (backoff 2s, 4s, ...),
    giving up after ``max_attempts``.

    Each attempt uses a fresh SSHTunnel so no half-open session is reused.
    """

    async def attempt() -> SSHTunnel:
        tunnel = SSHTunnel(config)
        return await tunnel.connect()

    def on_retry(error: BaseException, attempt_number: int) -> None:
        logger.warning(f"SSH tunnel attempt {attempt_number}/{max_attempts} failed: {error}")

    return await with_auto_retry(
        attempt,
        MigrationPhase.EXTRACT,
        metadata={"ssh_host": config.ssh_host, "ssh_port": config.ssh_port},
        on_retry=on_retry,
        max_retries=max_attempts - 1
    )
