"""In-process device simulators and a fake transport for the test suite.

Each simulator keeps just enough device state (running configuration,
candidate, checkpoints, privilege level) to answer the CLI the handlers
generate, and records every line it receives.
"""
import asyncio
import copy
import re
from typing import Optional, Pattern

from mcp_netops import errors
from mcp_netops.config.settings import CoreSettings
from mcp_netops.credentials import Credentials, StaticCredentialStore
from mcp_netops.devices.cisco_common import parse_indented_config, render_indented_config
from mcp_netops.devices.juniper_junos import parse_junos_config, render_junos_config, section_levels
from mcp_netops.models import ConnectionOptions, Device
from mcp_netops.transport.base import Transport

IOS_VERSION = """Cisco IOS Software, C2960 Software (C2960-LANBASEK9-M), Version 15.2(7)E4, RELEASE SOFTWARE (fc2)
Technical Support: http://www.cisco.com/techsupport

{host} uptime is 3 weeks, 2 days, 1 hour, 12 minutes
System image file is "flash:c2960-lanbasek9-mz.152-7.E4.bin"

cisco WS-C2960-24TT-L (PowerPC405) processor (revision B0) with 65536K bytes of memory.
Processor board ID FOC1234X0AB"""

IOS_INTERFACES = """Interface              IP-Address      OK? Method Status                Protocol
Vlan1                  10.0.0.2        YES NVRAM  up                    up
FastEthernet0/1        unassigned      YES unset  administratively down down
FastEthernet0/2        unassigned      YES unset  up                    up"""

NXOS_VERSION = """Cisco Nexus Operating System (NX-OS) Software
  NXOS: version 9.3(8)
  cisco Nexus9000 C93180YC-EX chassis
  Device name: {host}
  Kernel uptime is 12 day(s), 3 hour(s), 2 minute(s), 1 second(s)"""

JUNOS_VERSION = """Hostname: {host}
Model: mx204
Junos: 21.4R3.15
JUNOS OS Kernel 64-bit  [20230101.abcdef_builder_stable_12]"""

JUNOS_INTERFACES = """Interface               Admin Link Proto    Local                 Remote
ge-0/0/0                up    up
ge-0/0/0.0              up    up   inet     10.0.0.1/24
ge-0/0/1                up    down"""

INVALID = "% Invalid input detected at '^' marker."


class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class DeviceSim:
    """Base simulator: prompt, echo and the failure knobs shared by all vendors."""

    def __init__(self, hostname: str):
        self.hostname = hostname
        self.config_mode = False
        self.received: list[str] = []
        # Commands that never produce a prompt
        self.hang_on: set[str] = set()
        # Substrings that make a command fail with the vendor's error text
        self.reject: set[str] = set()
        self.fail_connects = 0
        self.connect_error: Optional[BaseException] = None
        self.hang_connect = False
        self.connects = 0
        self.in_flight = 0
        self.max_in_flight = 0

    def prompt(self) -> str:
        raise NotImplementedError

    def banner(self) -> str:
        return f"\n{self.prompt()}"

    def on_connect(self) -> None:
        """Reset per-session state on a new login."""
        self.config_mode = False

    def handle(self, line: str) -> str:
        raise NotImplementedError

    def handle_block(self, command: str, body: str) -> str:
        return f"{command}\n{self.error_text()}\n{self.prompt()}"

    def error_text(self) -> str:
        return INVALID

    def respond(self, line: str, output: str = "") -> str:
        body = f"{line}\n{output}\n" if output else f"{line}\n"
        return f"{body}{self.prompt()}"

    def rejected(self, line: str) -> bool:
        return any(word in line for word in self.reject)


class CiscoSim(DeviceSim):
    """Indentation-tree IOS style device. Starts in user EXEC mode."""

    indent_step = 1
    version_text = IOS_VERSION
    enable_secret = "enable-secret"

    def __init__(self, hostname: str, config: str = "", privileged: bool = False):
        super().__init__(hostname)
        self.tree = _dict_leaves(parse_indented_config(config))
        self.start_privileged = privileged
        self.privileged = privileged
        self.awaiting_secret = False
        self._path: list[str] = []

    def on_connect(self) -> None:
        super().on_connect()
        self.privileged = self.start_privileged
        self.awaiting_secret = False

    def prompt(self) -> str:
        if self.config_mode:
            return f"{self.hostname}(config)#"
        return f"{self.hostname}{'#' if self.privileged else '>'}"

    def running_config(self) -> str:
        return render_indented_config(_none_leaves(self.tree), self.indent_step)

    def _section(self, section: Optional[str]) -> str:
        tree = _none_leaves(self.tree)
        if section:
            tree = {k: v for k, v in tree.items() if k.startswith(section)}
        return render_indented_config(tree, self.indent_step)

    def show_running(self, section: Optional[str]) -> str:
        body = self._section(section)
        return f"Building configuration...\n\nCurrent configuration : {len(body)} bytes\n{body}\nend"

    def handle(self, line: str) -> str:
        if self.awaiting_secret:
            self.awaiting_secret = False
            if line == self.enable_secret:
                self.privileged = True
                return f"\n{self.prompt()}"
            return f"\n% Access denied\n\n{self.prompt()}"

        stripped = line.strip()
        if not stripped:
            return f"\n{self.prompt()}"
        if self.rejected(stripped):
            return self.respond(line, self.error_text())
        if self.config_mode:
            return self.handle_config(line)

        if stripped == "enable":
            if self.privileged:
                return self.respond(line)
            self.awaiting_secret = True
            return f"{line}\nPassword: "
        if stripped.startswith("terminal "):
            return self.respond(line)
        if not self.privileged:
            return self.respond(line, self.error_text())
        if stripped == "configure terminal":
            self.config_mode = True
            self._path = []
            return self.respond(line, "Enter configuration commands, one per line.  End with CNTL/Z.")
        return self.respond(line, self.exec_output(stripped))

    def exec_output(self, command: str) -> str:
        if command.startswith("show running-config"):
            match = re.match(r"show running-config(?: \| section (.+))?$", command)
            return self.show_running(match.group(1) if match else None)
        if command == "show version":
            return self.version_text.format(host=self.hostname)
        if command == "show ip interface brief":
            return IOS_INTERFACES
        if command == "show clock":
            return "*10:15:01.123 UTC Mon Oct 19 2026"
        return self.error_text()

    def _node(self, path: list[str]) -> dict:
        node = self.tree
        for key in path:
            node = node.setdefault(key, {})
        return node

    def handle_config(self, line: str) -> str:
        stripped = line.strip()
        if stripped == "end":
            self.config_mode = False
            return self.respond(line)
        if stripped.startswith("do "):
            return self.respond(line, self.exec_output(stripped[3:]))

        depth = (len(line) - len(line.lstrip(" "))) // self.indent_step
        parent = self._path[:depth]
        node = self._node(parent)
        if stripped == "exit":
            self._path = parent[:-1]
            return self.respond(line)
        if stripped.startswith("no "):
            target = stripped[3:]
            for key in [k for k in node if k == target or k.startswith(target + "\n")]:
                del node[key]
            self._path = parent
            return self.respond(line)
        node.pop(f"no {stripped}", None)
        node.setdefault(stripped, {})
        self._path = parent + [stripped]
        return self.respond(line)


IOSSim = CiscoSim


class NXOSSim(CiscoSim):
    """NX-OS: privileged at login, two-space indentation and checkpoints."""

    indent_step = 2
    version_text = NXOS_VERSION

    def __init__(self, hostname: str, config: str = ""):
        super().__init__(hostname, config, privileged=True)
        self.checkpoints: dict[str, dict] = {}
        # User checkpoints the switch accepts before refusing new ones
        self.max_checkpoints: Optional[int] = None

    def error_text(self) -> str:
        return "% Invalid command at '^' marker."

    def show_running(self, section: Optional[str]) -> str:
        body = self._section(section)
        return f"!Command: show running-config\n!Time: Mon Oct 19 10:15:01 2026\n\n{body}"

    def exec_output(self, command: str) -> str:
        match = re.match(r"checkpoint (\S+)$", command)
        if match:
            if self.max_checkpoints is not None and len(self.checkpoints) >= self.max_checkpoints:
                return "ERROR: Checkpoint limit reached"
            self.checkpoints[match.group(1)] = copy.deepcopy(self.tree)
            return "Done"
        match = re.match(r"no checkpoint (\S+)$", command)
        if match:
            if self.checkpoints.pop(match.group(1), None) is None:
                return "ERROR: no checkpoint named " + match.group(1)
            return ""
        match = re.match(r"rollback running-config checkpoint (\S+)$", command)
        if match:
            saved = self.checkpoints.get(match.group(1))
            if saved is None:
                return "ERROR: no checkpoint named " + match.group(1)
            self.tree = copy.deepcopy(saved)
            return "Note: Applying config parallelly may fail Rollback verification\nRollback Status : Success"
        if command == "show ip interface brief":
            return (
                "IP Interface Status for VRF \"default\"(1)\n"
                "Interface            IP Address      Interface Status\n"
                "Vlan10               10.1.0.1        protocol-up/link-up/admin-up\n"
                "Eth1/1               10.2.0.1        protocol-down/link-down/admin-up"
            )
        return super().exec_output(command)


class JunosSim(DeviceSim):
    """Junos with a committed configuration, a candidate and commit history."""

    def __init__(self, hostname: str, config: str = "", user: str = "admin"):
        super().__init__(hostname)
        self.user = user
        self.committed = parse_junos_config(config)
        self.candidate: Optional[dict] = None
        self.history: list[dict] = []
        self.locked_by_other = False
        self.pending_confirm: Optional[int] = None

    def prompt(self) -> str:
        return f"{self.user}@{self.hostname}{'#' if self.config_mode else '>'} "

    def on_connect(self) -> None:
        super().on_connect()
        self.candidate = None

    def error_text(self) -> str:
        return "error: configuration check-out failed"

    def respond(self, line: str, output: str = "") -> str:
        edit = "\n[edit]" if self.config_mode else ""
        body = f"{line}\n{output}{edit}\n" if output else f"{line}{edit}\n"
        return f"{body}{self.prompt()}"

    def running_config(self) -> str:
        return render_junos_config(self.committed)

    def show_configuration(self, section: Optional[str]) -> str:
        node = self.committed
        if section:
            for level in section_levels(section):
                node = (node or {}).get(level)
                if node is None:
                    return ""
        return f"## Last commit: 2026-10-19 10:15:01 UTC by {self.user}\n{render_junos_config(node or {})}"

    def handle(self, line: str) -> str:
        stripped = line.strip()
        if not stripped:
            return f"\n{self.prompt()}"
        if self.rejected(stripped):
            return self.respond(line, "syntax error.")
        if self.config_mode:
            return self.handle_config(line)

        if stripped.startswith("set cli "):
            return self.respond(line, "Screen length set to 0" if "screen-length" in stripped else "")
        if stripped == "configure exclusive":
            if self.locked_by_other:
                return self.respond(
                    line,
                    "error: configuration database locked by:\n  ops terminal p0 (pid 4242) on since 2026-10-19",
                )
            self.config_mode = True
            self.candidate = copy.deepcopy(self.committed)
            return self.respond(line, "warning: uncommitted changes will be discarded on exit\nEntering configuration mode")
        return self.respond(line, self.operational(stripped))

    def operational(self, command: str) -> str:
        if command.startswith("show configuration"):
            section = command[len("show configuration"):].strip() or None
            return self.show_configuration(section)
        if command == "show version":
            return JUNOS_VERSION.format(host=self.hostname)
        if command == "show interfaces terse":
            return JUNOS_INTERFACES
        return "unknown command."

    def handle_config(self, line: str) -> str:
        stripped = line.strip()
        if stripped.startswith("run "):
            return self.respond(line, self.operational(stripped[4:]))
        if stripped == "exit configuration-mode":
            self.config_mode = False
            self.candidate = None
            return self.respond(line, "Exiting configuration mode")
        if stripped == "commit" or stripped.startswith("commit confirmed"):
            self.history.append(copy.deepcopy(self.committed))
            self.committed = copy.deepcopy(self.candidate)
            if stripped == "commit":
                self.pending_confirm = None
                return self.respond(line, "commit complete")
            self.pending_confirm = int(stripped.split()[-1])
            return self.respond(
                line,
                f"configuration check succeeds\ncommit confirmed will be automatically rolled back "
                f"in {self.pending_confirm} minutes unless confirmed\ncommit complete",
            )
        if stripped == "rollback 0":
            self.candidate = copy.deepcopy(self.committed)
            return self.respond(line, "load complete")
        if stripped == "rollback 1":
            if not self.history:
                return self.respond(line, "error: rollback 1 does not exist")
            self.candidate = copy.deepcopy(self.history[-1])
            return self.respond(line, "load complete")
        return self.respond(line, "syntax error.")

    def handle_block(self, command: str, body: str) -> str:
        intro = "[Type ^D at a new line to end input]"
        if not self.config_mode or self.rejected(body):
            return self.respond(command, f"{intro}\nerror: configuration check-out failed")
        try:
            tree = parse_junos_config(body.replace("replace: ", ""))
        except ValueError as e:
            return self.respond(command, f"{intro}\nsyntax error: {e}")
        if command == "load override terminal":
            self.candidate = tree
        elif command == "load merge terminal":
            _merge(self.candidate, tree)
        elif command == "load replace terminal":
            _replace_tagged(self.candidate, parse_junos_config(_tag_keys(body)))
        else:
            return self.respond(command, f"{intro}\nerror: unsupported load mode")
        return self.respond(command, f"{intro}\nload complete")


def _dict_leaves(tree: dict) -> dict:
    return {k: _dict_leaves(v) if v else {} for k, v in tree.items()}


def _none_leaves(tree: dict) -> dict:
    return {k: _none_leaves(v) if v else None for k, v in tree.items()}


def _merge(target: dict, source: dict) -> None:
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


def _tag_keys(body: str) -> str:
    # Keep the replace marker as part of the key so the merge can spot it
    return body.replace("replace: ", "REPLACE@")


def _replace_tagged(target: dict, source: dict) -> None:
    for key, value in source.items():
        if key.startswith("REPLACE@"):
            target[key[len("REPLACE@"):]] = copy.deepcopy(value)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _replace_tagged(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


class FakeTransport(Transport):
    """Transport wired straight to a simulator."""

    def __init__(self, sim: DeviceSim, host: str = "192.0.2.1", port: int = 22):
        self.sim = sim
        self.host = host
        self.port = port
        self._open = False
        self._pending = ""
        self._hang = False
        self.closed = False
        self.credentials: Optional[Credentials] = None

    @property
    def is_open(self) -> bool:
        return self._open

    async def connect(self, credentials: Credentials, prompt: Pattern) -> str:
        self.sim.connects += 1
        if self.sim.hang_connect:
            await asyncio.Event().wait()
        if self.sim.fail_connects > 0:
            self.sim.fail_connects -= 1
            raise ConnectionRefusedError("Connection refused")
        if self.sim.connect_error is not None:
            raise self.sim.connect_error
        if credentials.password != "secret":
            raise errors.ConnectionError("Authentication failed")
        self.credentials = credentials
        self.sim.on_connect()
        self._open = True
        return self.sim.banner()

    async def send(self, data: str) -> None:
        if not self._open:
            raise EOFError("channel closed")
        if "\x04" in data:
            head, _, rest = data.partition("\n")
            body = rest.split("\x04", 1)[0]
            self.sim.received.append(head)
            self._pending += self.sim.handle_block(head, body)
            return
        for line in data.split("\n")[:-1]:
            self.sim.received.append(line)
            if line.strip() in self.sim.hang_on:
                self._hang = True
                continue
            self._pending += self.sim.handle(line)

    async def read_until(self, prompt: Pattern, paging: Optional[Pattern] = None, timeout: float = 30) -> str:
        if not self._open:
            raise EOFError("channel closed")
        self.sim.in_flight += 1
        self.sim.max_in_flight = max(self.sim.max_in_flight, self.sim.in_flight)
        try:
            await asyncio.sleep(0)
            if self._hang:
                await asyncio.sleep(timeout)
                raise TimeoutError(f"no prompt within {timeout}s")
            output, self._pending = self._pending, ""
            if not prompt.search(output):
                raise TimeoutError(f"prompt not seen in {output[-80:]!r}")
            return output
        finally:
            self.sim.in_flight -= 1

    async def close(self) -> None:
        self._open = False
        self.closed = True


class FakeNetwork:
    """Transport factory over a set of simulators keyed by device id."""

    def __init__(self, **sims: DeviceSim):
        self.sims: dict[str, DeviceSim] = dict(sims)
        self.transports: list[FakeTransport] = []

    def add(self, device_id: str, sim: DeviceSim) -> DeviceSim:
        self.sims[device_id] = sim
        return sim

    def __call__(self, device, io_executor=None) -> FakeTransport:
        transport = FakeTransport(self.sims[device.device_id], device.host, device.port)
        self.transports.append(transport)
        return transport

    def opened(self, device_id: str) -> list[FakeTransport]:
        sim = self.sims[device_id]
        return [t for t in self.transports if t.sim is sim]


def make_device(device_id: str, device_type: str, **options) -> Device:
    """Device with short timeouts suitable for the simulators."""
    defaults = {"timeout": 0.2, "connect_timeout": 0.2, "keepalive": 0, "max_sessions": 2}
    return Device(
        device_id=device_id,
        host="192.0.2.10",
        device_type=device_type,
        credential_ref="lab",
        options=ConnectionOptions(**{**defaults, **options}),
    )


def make_credentials() -> StaticCredentialStore:
    return StaticCredentialStore({
        "lab": Credentials("admin", password="secret", enable_secret="enable-secret"),
    })


def make_settings(**overrides) -> CoreSettings:
    values = {
        "backoff_base": 1.0,
        "backoff_factor": 2.0,
        "backoff_cap": 30.0,
        "backoff_jitter": 0.0,
        "connect_attempts": 3,
        "acquire_timeout": 1.0,
        "sweep_interval": 0.05,
    }
    values.update(overrides)
    return CoreSettings(**values)


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` between reconnect attempts."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


IOS_CONFIG = """hostname core-1
interface Vlan1
 description mgmt
 ip address 10.0.0.2 255.255.255.0
interface FastEthernet0/1
 shutdown
ip route 0.0.0.0 0.0.0.0 10.0.0.1"""

NXOS_CONFIG = """hostname nx-1
feature ospf
interface Vlan10
  description servers
  ip address 10.1.0.1/24
router ospf 1
  router-id 10.255.0.1"""

JUNOS_CONFIG = """system {
    host-name edge-1;
}
interfaces {
    ge-0/0/0 {
        unit 0 {
            family inet {
                address 10.0.0.1/24;
            }
        }
    }
}"""
