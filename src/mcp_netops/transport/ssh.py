"""SSH interactive shell transport (paramiko).

Devices are driven through ``invoke_shell()`` rather than ``exec_command``
because configuration mode, enable elevation and Junos candidate editing all
depend on a persistent CLI context across commands.
"""
import logging
import socket
from typing import Optional, Pattern

import paramiko

from .. import errors
from ..credentials import Credentials
from .base import CLITransport

logger = logging.getLogger(__name__)


class SSHTransport(CLITransport):
    """paramiko client with one interactive channel."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._client: Optional[paramiko.SSHClient] = None
        self._shell: Optional[paramiko.Channel] = None

    @property
    def is_open(self) -> bool:
        return self._shell is not None and not self._shell.closed

    async def connect(self, credentials: Credentials, prompt: Pattern) -> str:
        def _connect():
            client = paramiko.SSHClient()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            try:
                client.connect(
                    self.host,
                    port=self.port,
                    username=credentials.username,
                    password=credentials.password,
                    key_filename=credentials.private_key_file,
                    timeout=self.connect_timeout,
                    banner_timeout=self.connect_timeout,
                    auth_timeout=self.connect_timeout,
                    allow_agent=False,
                    look_for_keys=False,
                )
            except paramiko.AuthenticationException:
                client.close()
                raise errors.ConnectionError(
                    "Authentication failed", details={"host": self.host, "port": self.port}
                ) from None
            except socket.timeout:
                client.close()
                raise errors.ConnectTimeout(
                    f"SSH handshake did not finish within {self.connect_timeout}s",
                    details={"host": self.host, "port": self.port},
                ) from None
            except paramiko.SSHException as e:
                client.close()
                raise errors.ConnectionError(
                    f"SSH negotiation failed: {e}", details={"host": self.host, "port": self.port}
                ) from e

            transport = client.get_transport()
            if transport is not None and self.keepalive:
                transport.set_keepalive(int(self.keepalive))
            shell = client.invoke_shell(width=511, height=1000)
            return client, shell

        self._client, self._shell = await self._run(_connect)
        logger.debug(f"SSH channel open to {self.host}:{self.port}")
        # Nudge devices that wait for input before printing a prompt
        await self.send("\n")
        return await self.read_until(prompt, timeout=self.connect_timeout)

    def _recv(self, timeout: float) -> str:
        self._shell.settimeout(timeout)
        try:
            data = self._shell.recv(65535)
        except socket.timeout:
            return ""
        if not data:
            raise EOFError(f"SSH channel to {self.host} closed by peer")
        return data.decode("utf-8", errors="ignore")

    def _send(self, data: str) -> None:
        self._shell.sendall(data.encode("utf-8"))

    async def close(self) -> None:
        shell, client = self._shell, self._client
        self._shell = None
        self._client = None
        for resource in (shell, client):
            if resource is None:
                continue
            try:
                resource.close()
            except (OSError, EOFError, paramiko.SSHException) as e:
                logger.debug(f"Error closing SSH resource for {self.host}: {e}")
