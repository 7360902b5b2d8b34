"""Tests for the transport layer that need no real device."""
import re
import socket

import pytest

from mcp_netops import errors
from mcp_netops.models import Device
from mcp_netops.transport import SSHTransport, TelnetTransport, create_transport, strip_ansi
from mcp_netops.transport.base import CLITransport
from mcp_netops.transport.telnet import DO, DONT, IAC, SB, SE, WILL, WONT

PROMPT = re.compile(r"(?:^|\n)core-1#\s*$")
PAGING = re.compile(r" ?--More-- ?")


class ScriptedTransport(CLITransport):
    """Serves queued chunks from ``_recv`` and records what is sent."""

    def __init__(self, chunks):
        super().__init__("192.0.2.1", 22)
        self.chunks = list(chunks)
        self.sent = []
        self._open = True

    @property
    def is_open(self):
        return self._open

    async def connect(self, credentials, prompt):
        return ""

    def _recv(self, timeout):
        return self.chunks.pop(0) if self.chunks else ""

    def _send(self, data):
        self.sent.append(data)

    async def close(self):
        self._open = False


class TestReadLoop:

    def test_strip_ansi(self):
        assert strip_ansi("\x1b[32mok\x1b[0m\r\nnext\r") == "ok\nnext"

    @pytest.mark.asyncio
    async def test_reads_across_chunks(self):
        transport = ScriptedTransport(["show clock\r\n10:15", ":01 UTC\r\n", "core-1#"])
        output = await transport.read_until(PROMPT, timeout=1)
        assert output == "show clock\n10:15:01 UTC\ncore-1#"

    @pytest.mark.asyncio
    async def test_answers_paging(self):
        transport = ScriptedTransport(["line 1\n --More-- ", "line 2\ncore-1#"])
        output = await transport.read_until(PROMPT, PAGING, timeout=1)

        assert transport.sent == [" "]
        assert "More" not in output
        assert output.endswith("line 2\ncore-1#")

    @pytest.mark.asyncio
    async def test_timeout_without_prompt(self):
        transport = ScriptedTransport(["still working..."])
        with pytest.raises(TimeoutError):
            await transport.read_until(PROMPT, timeout=0.05)

    @pytest.mark.asyncio
    async def test_closed_channel(self):
        transport = ScriptedTransport([])
        await transport.close()
        with pytest.raises(EOFError):
            await transport.send("show clock\n")


class TestTelnetNegotiation:

    @pytest.fixture
    def pair(self):
        left, right = socket.socketpair()
        yield left, right
        left.close()
        right.close()

    def test_refuses_options(self, pair):
        left, right = pair
        transport = TelnetTransport("192.0.2.1", 23)
        transport._socket = left

        data = bytes([IAC, DO, 1, IAC, WILL, 3]) + b"Username: "
        assert transport._negotiate(data) == b"Username: "

        right.settimeout(1)
        assert right.recv(16) == bytes([IAC, WONT, 1, IAC, DONT, 3])

    def test_drops_subnegotiation_and_unescapes(self, pair):
        left, _ = pair
        transport = TelnetTransport("192.0.2.1", 23)
        transport._socket = left

        data = b"a" + bytes([IAC, SB, 24, 1, IAC, SE]) + b"b" + bytes([IAC, IAC]) + b"c"
        assert transport._negotiate(data) == b"ab\xffc"

    def test_send_uses_crlf(self, pair):
        left, right = pair
        transport = TelnetTransport("192.0.2.1", 23)
        transport._socket = left

        transport._send("show clock\n")
        right.settimeout(1)
        assert right.recv(32) == b"show clock\r\n"


class TestFactory:

    def test_protocol_selects_transport(self):
        ssh = create_transport(Device("edge-1", "10.0.0.1", "juniper_junos", "lab"))
        telnet = create_transport(Device("core-1", "10.0.0.2", "cisco_ios", "lab", port=23, protocol="telnet"))

        assert isinstance(ssh, SSHTransport)
        assert isinstance(telnet, TelnetTransport)
        assert telnet.port == 23
        assert not ssh.is_open

    def test_unknown_protocol(self):
        with pytest.raises(errors.ConnectionError) as exc_info:
            create_transport(Device("core-1", "10.0.0.2", "cisco_ios", "lab", protocol="netconf"))
        assert exc_info.value.details["supported"] == ["ssh", "telnet"]
