"""Interactive line-oriented transports.

A transport moves text to and from a device CLI. It knows nothing about
vendors: callers pass the prompt and paging patterns to wait for.
"""
import asyncio
import logging
import re
from abc import ABC, abstractmethod
from concurrent.futures import Executor
from typing import Callable, Optional, Pattern

from ..credentials import Credentials

logger = logging.getLogger(__name__)

ANSI_PATTERN = re.compile(r"\x1b\[[0-9;?]*[a-zA-Z]|\x1b[()][A-Z0-9]|\x1b[=>]")

# Seconds a single blocking recv may wait before the read loop re-checks its deadline
POLL_INTERVAL = 0.5


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences and stray carriage returns."""
    text = ANSI_PATTERN.sub("", text)
    return text.replace("\r\n", "\n").replace("\r", "")


class Transport(ABC):
    """One interactive CLI channel to a device."""

    host: str
    port: int

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...

    @abstractmethod
    async def connect(self, credentials: Credentials, prompt: Pattern) -> str:
        """Open and authenticate, then wait for ``prompt``. Returns the banner."""

    @abstractmethod
    async def send(self, data: str) -> None:
        ...

    @abstractmethod
    async def read_until(
        self,
        prompt: Pattern,
        paging: Optional[Pattern] = None,
        timeout: float = 30,
    ) -> str:
        """Read until ``prompt`` matches the end of the received text.

        Paging markers matching ``paging`` are answered with a space and
        removed from the output. Raises ``TimeoutError`` if the prompt is
        not seen within ``timeout`` seconds.
        """

    @abstractmethod
    async def close(self) -> None:
        ...


class CLITransport(Transport):
    """Shared read loop for transports whose blocking calls run in a thread pool."""

    def __init__(
        self,
        host: str,
        port: int,
        connect_timeout: float = 15,
        keepalive: float = 0,
        io_executor: Optional[Executor] = None,
    ):
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self.keepalive = keepalive
        self._io = io_executor

    async def _run(self, func: Callable, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._io, func, *args)

    @abstractmethod
    def _recv(self, timeout: float) -> str:
        """Blocking read of whatever is available; ``""`` when nothing arrived.

        Raises ``EOFError`` when the peer closed the channel.
        """

    @abstractmethod
    def _send(self, data: str) -> None:
        ...

    async def send(self, data: str) -> None:
        if not self.is_open:
            raise EOFError(f"Channel to {self.host} is not open")
        await self._run(self._send, data)

    async def read_until(
        self,
        prompt: Pattern,
        paging: Optional[Pattern] = None,
        timeout: float = 30,
    ) -> str:
        if not self.is_open:
            raise EOFError(f"Channel to {self.host} is not open")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        output = ""

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.debug(f"Prompt not seen from {self.host}, tail: {output[-200:]!r}")
                raise TimeoutError(f"Prompt not seen within {timeout}s")

            chunk = await self._run(self._recv, min(POLL_INTERVAL, remaining))
            if not chunk:
                continue
            output += strip_ansi(chunk)

            if paging is not None and paging.search(output):
                output = paging.sub("", output)
                await self.send(" ")
                continue

            if prompt.search(output):
                return output
