"""Juniper Junos handler.

Junos edits a candidate configuration that only becomes active on
``commit``. ``configure exclusive`` locks the candidate so no other user
can commit half of our changes; leaving configuration mode with the lock
held discards whatever is uncommitted.

Command Reference:
- configure exclusive                     : Enter config mode with a lock
- load merge|override|replace|set terminal: Load a payload typed on the terminal
- commit / commit confirmed <minutes>     : Activate the candidate
- rollback 0 / rollback 1                 : Discard candidate / previous commit
- show configuration [path]               : Committed configuration
- set cli screen-length 0                 : Disable pagination
"""
import math
import re
from typing import Any, Optional

from ..errors import ConfigValidationError
from .base import Step, TerminalBlock, VendorHandler

SET_COMMAND = re.compile(r"^(set|delete|activate|deactivate|insert|rename|annotate|protect|unprotect)\s")
COMMENT_BLOCK = re.compile(r"/\*.*?\*/")

# Hierarchy keywords whose level is named by the following word ("unit 0 {")
NAMED_LEVELS = {
    "unit", "group", "neighbor", "policy-statement", "term", "filter",
    "family", "interface", "area", "prefix-list", "community", "instance",
}


def _strip_comments(line: str) -> str:
    line = COMMENT_BLOCK.sub("", line)
    stripped = line.strip()
    if stripped.startswith("#"):
        return ""
    return line


def parse_junos_config(text: str) -> dict[str, Any]:
    """Curly-brace configuration to a nested dict; leaves map to ``None``."""
    root: dict[str, Any] = {}
    stack: list[dict] = [root]
    in_comment = False

    for n, raw in enumerate(text.split("\n"), 1):
        if in_comment:
            if "*/" not in raw:
                continue
            raw = raw.split("*/", 1)[1]
            in_comment = False
        line = _strip_comments(raw).strip()
        if "/*" in line:
            line, in_comment = line.split("/*", 1)[0].strip(), True
        if not line:
            continue
        if line.endswith("{"):
            key = line[:-1].strip()
            node = stack[-1].get(key)
            if not isinstance(node, dict):
                node = stack[-1][key] = {}
            stack.append(node)
        elif line == "}":
            if len(stack) == 1:
                raise ValueError(f"line {n}: unbalanced closing brace")
            stack.pop()
        elif line.endswith(";"):
            stack[-1].setdefault(line[:-1].strip(), None)
        else:
            raise ValueError(f"line {n}: statement not terminated: {line!r}")

    if len(stack) != 1:
        raise ValueError(f"{len(stack) - 1} unclosed block(s)")
    return root


def render_junos_config(tree: dict[str, Any], _depth: int = 0) -> str:
    pad = "    " * _depth
    lines = []
    for key, children in tree.items():
        if children is None:
            lines.append(f"{pad}{key};")
        else:
            lines.append(f"{pad}{key} {{")
            if children:
                lines.append(render_junos_config(children, _depth + 1))
            lines.append(f"{pad}}}")
    return "\n".join(lines)


def section_levels(section: str) -> list[str]:
    """Split a ``show configuration`` path into hierarchy levels."""
    words = section.split()
    levels = []
    i = 0
    while i < len(words):
        if words[i] in NAMED_LEVELS and i + 1 < len(words):
            levels.append(f"{words[i]} {words[i + 1]}")
            i += 2
        else:
            levels.append(words[i])
            i += 1
    return levels


def wrap_section(text: str, section: str, replace: bool = False) -> str:
    """Nest section content under its hierarchy, tagging the innermost level."""
    levels = section_levels(section)
    lines = []
    for depth, level in enumerate(levels):
        tag = "replace: " if replace and depth == len(levels) - 1 else ""
        lines.append("    " * depth + f"{tag}{level} {{")
    inner = "    " * len(levels)
    lines.extend(inner + line if line.strip() else line for line in text.split("\n"))
    for depth in reversed(range(len(levels))):
        lines.append("    " * depth + "}")
    return "\n".join(lines)


def is_set_format(text: str) -> bool:
    lines = [line.strip() for line in text.split("\n") if line.strip() and not line.strip().startswith("#")]
    return bool(lines) and all(SET_COMMAND.match(line) for line in lines)


class JuniperJunosHandler(VendorHandler):
    """Juniper Junos (staged commit, confirmed commit)."""

    device_type = "juniper_junos"
    staged_commit = True
    confirmed_commit = True

    prompt_pattern = re.compile(r"(?:^|\n)[\w.\-]+@[\w.\-]+[>#%]\s*$")
    paging_pattern = re.compile(r"---\(more(?: \d+%)?\)---")
    setup_commands = (
        "set cli screen-length 0",
        "set cli screen-width 0",
        "set cli complete-on-space off",
    )

    ERROR_PATTERNS = [
        r"^error:",
        r"^syntax error",
        r"^unknown command\.",
        r"^missing argument\.",
        r"^invalid (value|interface|ip address)",
        r"^configuration check-out failed",
        r"^commit failed",
    ]
    NOISE_PATTERNS = [
        r"^\[edit(?: .*)?\]$",
        r"^\{(master|backup|primary|linecard)(:\d+)?\}(\[edit.*\])?$",
        r"^\[Type \^D at a new line to end input\]$",
    ]
    VOLATILE_PATTERNS = [
        r"^## Last (commit|changed):",
        r"^## Image name:",
    ]

    # Operational commands that need "run" inside configuration mode
    OPERATIONAL_WORDS = ("ping", "traceroute", "request", "clear", "monitor", "file", "restart", "test")

    def format_command(self, command: str, in_config_mode: bool = False) -> str:
        command = command.strip()
        if in_config_mode and command.split(" ", 1)[0] in self.OPERATIONAL_WORDS:
            return f"run {command}"
        return command

    def enter_config_mode(self) -> list[str]:
        return ["configure exclusive"]

    def exit_config_mode(self) -> list[str]:
        return ["exit configuration-mode"]

    def commit(self, confirm_minutes: Optional[int] = None) -> list[str]:
        if confirm_minutes:
            return [f"commit confirmed {confirm_minutes}"]
        return ["commit"]

    @staticmethod
    def confirm_minutes(seconds: float) -> int:
        """Device-side rollback window covering ``seconds``."""
        return max(1, math.ceil(seconds / 60))

    def confirm_commit(self) -> list[str]:
        # A plain commit inside the window confirms it
        return ["commit"]

    def discard_changes(self) -> list[str]:
        return ["rollback 0"]

    def rollback(self, checkpoint: Optional[str] = None) -> list[str]:
        return ["rollback 1", "commit"]

    def show_config_command(self, section: Optional[str] = None, in_config_mode: bool = False) -> str:
        command = "show configuration"
        if section:
            command += f" {section}"
        # Plain "show" in configuration mode would print the candidate
        return f"run {command}" if in_config_mode else command

    def parse_config(self, text: str) -> dict[str, Any]:
        return parse_junos_config(self.normalize_config(text))

    def render_config(self, tree: dict[str, Any]) -> str:
        return render_junos_config(tree)

    def validate_payload(self, text: str) -> list[str]:
        if not text.strip():
            return ["payload has no configuration lines"]
        if is_set_format(text):
            return self._validate_set_format(text)

        problems = []
        lines = [line for line in text.split("\n") if line.strip()]
        if any(SET_COMMAND.match(line.strip()) for line in lines):
            problems.append("payload mixes set commands with hierarchical configuration")

        depth = 0
        in_comment = False
        for n, raw in enumerate(text.split("\n"), 1):
            if in_comment:
                if "*/" not in raw:
                    continue
                raw, in_comment = raw.split("*/", 1)[1], False
            line = _strip_comments(raw).strip()
            if "/*" in line:
                line, in_comment = line.split("/*", 1)[0].strip(), True
            if not line:
                continue
            if line.count('"') % 2:
                problems.append(f"line {n}: unterminated quoted string")
            if line.count("[") != line.count("]"):
                problems.append(f"line {n}: unbalanced brackets")
            if line.endswith("{"):
                depth += 1
            elif line == "}":
                depth -= 1
                if depth < 0:
                    problems.append(f"line {n}: unbalanced closing brace")
                    depth = 0
            elif not line.endswith(";"):
                problems.append(f"line {n}: statement not terminated: {line}")
        if in_comment:
            problems.append("unterminated comment")
        if depth > 0:
            problems.append(f"{depth} unclosed block(s)")
        return problems

    def _validate_set_format(self, text: str) -> list[str]:
        problems = []
        for n, line in enumerate(text.split("\n"), 1):
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            if stripped.count('"') % 2:
                problems.append(f"line {n}: unterminated quoted string")
            if len(stripped.split()) < 2:
                problems.append(f"line {n}: incomplete statement: {stripped}")
        return problems

    def load_config(
        self,
        text: str,
        replace: bool = False,
        section: Optional[str] = None,
        current: Optional[str] = None,
    ) -> list[Step]:
        if is_set_format(text):
            if replace:
                raise ConfigValidationError("Set-format payloads can only be merged")
            return [TerminalBlock("load set terminal", text)]
        if section:
            body = wrap_section(text, section, replace=replace)
            return [TerminalBlock("load replace terminal" if replace else "load merge terminal", body)]
        return [TerminalBlock("load override terminal" if replace else "load merge terminal", text)]

    def parse_version(self, output: str) -> Optional[dict[str, Any]]:
        match = (
            re.search(r"^Junos:\s*(\S+)", output, re.MULTILINE)
            or re.search(r"JUNOS .*?\[([^\]]+)\]", output)
        )
        if not match:
            return None
        info: dict[str, Any] = {"version": match.group(1)}
        hostname = re.search(r"^Hostname:\s*(\S+)", output, re.MULTILINE)
        if hostname:
            info["hostname"] = hostname.group(1)
        model = re.search(r"^Model:\s*(\S+)", output, re.MULTILINE)
        if model:
            info["model"] = model.group(1)
        return info

    def parse_interfaces(self, output: str) -> Optional[dict[str, Any]]:
        """Parse ``show interfaces terse``."""
        if not re.search(r"^Interface\s+Admin\s+Link", output, re.MULTILINE):
            return None
        row = re.compile(r"^(\S+)\s+(up|down)\s+(up|down)(?:\s+(\S+))?(?:\s+(\S+))?")
        interfaces = []
        for line in output.split("\n"):
            match = row.match(line)
            if not match:
                continue
            name, admin, link, proto, local = match.groups()
            interfaces.append({
                "name": name,
                "address": local,
                "admin": admin,
                "oper": link,
                "protocol": proto,
            })
        return {"interfaces": interfaces}
