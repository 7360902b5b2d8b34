"""Telnet transport over a raw socket.

Option negotiation is refused outright (``WONT``/``DONT``) which every
network OS in scope accepts, leaving a plain NVT text stream.
"""
import logging
import re
import socket
from typing import Optional, Pattern

from .. import errors
from ..credentials import Credentials
from .base import CLITransport

logger = logging.getLogger(__name__)

IAC, DONT, DO, WONT, WILL, SB, SE = 255, 254, 253, 252, 251, 250, 240

LOGIN_PATTERN = re.compile(r"(?:user ?name|login)\s*:\s*$", re.IGNORECASE)
PASSWORD_PATTERN = re.compile(r"password\s*:\s*$", re.IGNORECASE)
LOGIN_FAILED_PATTERN = re.compile(r"login incorrect|authentication failed|% login invalid|access denied", re.IGNORECASE)


class TelnetTransport(CLITransport):
    """Line-mode telnet client with username/password login."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._socket: Optional[socket.socket] = None

    @property
    def is_open(self) -> bool:
        return self._socket is not None

    async def connect(self, credentials: Credentials, prompt: Pattern) -> str:
        def _connect():
            sock = socket.create_connection((self.host, self.port), timeout=self.connect_timeout)
            if self.keepalive:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
            return sock

        try:
            self._socket = await self._run(_connect)
        except socket.timeout:
            raise errors.ConnectTimeout(
                f"Telnet connect did not finish within {self.connect_timeout}s",
                details={"host": self.host, "port": self.port},
            ) from None

        login_or_prompt = re.compile(
            f"{LOGIN_PATTERN.pattern}|{PASSWORD_PATTERN.pattern}|{prompt.pattern}",
            re.IGNORECASE,
        )
        banner = await self.read_until(login_or_prompt, timeout=self.connect_timeout)
        if LOGIN_PATTERN.search(banner):
            await self.send(f"{credentials.username}\n")
            banner = await self.read_until(
                re.compile(f"{PASSWORD_PATTERN.pattern}|{prompt.pattern}", re.IGNORECASE),
                timeout=self.connect_timeout,
            )
        if PASSWORD_PATTERN.search(banner):
            await self.send(f"{credentials.password or ''}\n")
            banner = await self.read_until(
                re.compile(f"{LOGIN_PATTERN.pattern}|{prompt.pattern}", re.IGNORECASE),
                timeout=self.connect_timeout,
            )
        if LOGIN_PATTERN.search(banner) or LOGIN_FAILED_PATTERN.search(banner):
            raise errors.ConnectionError(
                "Authentication failed", details={"host": self.host, "port": self.port}
            )
        logger.debug(f"Telnet session open to {self.host}:{self.port}")
        return banner

    def _negotiate(self, data: bytes) -> bytes:
        """Strip IAC sequences from ``data``, refusing every option."""
        out = bytearray()
        replies = bytearray()
        i = 0
        while i < len(data):
            byte = data[i]
            if byte != IAC:
                out.append(byte)
                i += 1
                continue
            if i + 1 >= len(data):
                break
            cmd = data[i + 1]
            if cmd in (DO, DONT, WILL, WONT) and i + 2 < len(data):
                option = data[i + 2]
                if cmd == DO:
                    replies += bytes([IAC, WONT, option])
                elif cmd == WILL:
                    replies += bytes([IAC, DONT, option])
                i += 3
            elif cmd == SB:
                end = data.find(bytes([IAC, SE]), i)
                i = len(data) if end == -1 else end + 2
            elif cmd == IAC:
                out.append(IAC)
                i += 2
            else:
                i += 2
        if replies:
            self._socket.sendall(bytes(replies))
        return bytes(out)

    def _recv(self, timeout: float) -> str:
        self._socket.settimeout(timeout)
        try:
            data = self._socket.recv(8192)
        except socket.timeout:
            return ""
        if not data:
            raise EOFError(f"Telnet connection to {self.host} closed by peer")
        return self._negotiate(data).decode("ascii", errors="ignore")

    def _send(self, data: str) -> None:
        self._socket.sendall(data.replace("\n", "\r\n").encode("ascii", errors="ignore"))

    async def close(self) -> None:
        sock, self._socket = self._socket, None
        if sock is None:
            return
        try:
            sock.close()
        except OSError as e:
            logger.debug(f"Error closing telnet socket for {self.host}: {e}")
