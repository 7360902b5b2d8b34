"""Shared pieces of the Cisco CLI dialects (IOS, IOS-XE, NX-OS).

Cisco configurations are indentation trees: a child line belongs to the
nearest less-indented line above it. Parsing, rendering and the
compensating diff used for replace-mode loads all work on that tree.
"""
import re
from typing import Any, Optional

from .base import Step, VendorHandler

# Top-level lines that cannot or must not be negated
NON_NEGATABLE = re.compile(
    r"^(version\s|Building configuration|Current configuration|end$|"
    r"boot-start-marker|boot-end-marker|feature\s|!)"
)

BANNER_PATTERN = re.compile(r"^banner\s+\S+\s+(\S+)")
FORBIDDEN_PATTERN = re.compile(
    r"^(reload\b|write\s+erase\b|erase\s|format\s|configure\b|copy\s|delete\s)",
    re.IGNORECASE,
)


def _indent_of(line: str) -> int:
    return len(line) - len(line.lstrip(" "))


def _banner_delimiter(token: str) -> str:
    return token[:2] if token.startswith("^") and len(token) > 1 else token[0]


def parse_indented_config(text: str) -> dict[str, Any]:
    """Indentation tree of a Cisco configuration; leaves map to ``None``.

    A multi-line banner becomes a single top-level leaf whose key is the
    banner text verbatim.
    """
    root: dict[str, Any] = {}
    stack: list[tuple[int, dict]] = [(-1, root)]
    banner: list[str] = []
    banner_delim = None

    for line in text.split("\n"):
        if banner_delim:
            banner.append(line)
            if banner_delim in line:
                root["\n".join(banner)] = {}
                banner, banner_delim = [], None
            continue
        stripped = line.strip()
        if not stripped or stripped.startswith("!") or stripped == "end":
            continue
        if "\t" in line[:_indent_of(line) + 1]:
            raise ValueError(f"tab indentation: {line!r}")

        match = BANNER_PATTERN.match(stripped)
        if match:
            delim = _banner_delimiter(match.group(1))
            if stripped.count(delim) < 2:
                banner, banner_delim = [stripped], delim
                stack = [(-1, root)]
                continue

        indent = _indent_of(line)
        while stack[-1][0] >= indent:
            stack.pop()
        node = stack[-1][1].setdefault(stripped, {})
        stack.append((indent, node))

    if banner_delim:
        raise ValueError("unterminated banner")
    return _leaves_to_none(root)


def _leaves_to_none(tree: dict) -> dict[str, Any]:
    return {key: (_leaves_to_none(child) if child else None) for key, child in tree.items()}


def render_indented_config(tree: dict[str, Any], step: int = 1, _depth: int = 0) -> str:
    lines = []
    for key, children in tree.items():
        # Banners keep their own layout
        lines.append(key if "\n" in key else " " * (step * _depth) + key)
        if children:
            lines.append(render_indented_config(children, step, _depth + 1))
    return "\n".join(lines)


def negate(line: str) -> str:
    if BANNER_PATTERN.match(line):
        return "no " + " ".join(line.split()[:2])
    return line[3:] if line.startswith("no ") else f"no {line}"


def compensating_commands(
    current: dict[str, Any],
    target: dict[str, Any],
    step: int = 1,
) -> list[str]:
    """Commands removing what ``current`` has and ``target`` lacks.

    Blocks present on both sides are entered and their missing children
    negated; blocks absent from ``target`` are negated as a whole.
    """
    commands: list[str] = []
    for key, children in current.items():
        if NON_NEGATABLE.match(key):
            continue
        if key not in target:
            commands.append(negate(key))
            continue
        if not children:
            continue
        nested = compensating_commands(children, target[key] or {}, step)
        if nested:
            commands.append(key)
            commands.extend(" " * step + c for c in nested)
            commands.append(" " * step + "exit")
    return commands


class CiscoHandler(VendorHandler):
    """Direct-apply Cisco CLI: changes take effect line by line."""

    indent_step: int = 1
    replace_needs_running_config = True

    prompt_pattern = re.compile(r"(?:^|\n)[\w.\-@/:]+(?:\([\w.\-]+\))?[#>]\s*$")
    paging_pattern = re.compile(r" ?--More-- ?")
    elevation_command = "enable"
    setup_commands = ("terminal length 0", "terminal width 511")

    ERROR_PATTERNS = [
        r"^% ?Invalid",
        r"^% ?Incomplete command",
        r"^% ?Ambiguous command",
        r"^% ?Unknown command",
        r"^% ?Unrecognized",
        r"^% ?Bad ",
        r"^% ?Error",
        r"^% ?Cannot",
        r"^%\S+: .*failed",
    ]

    # Exec-mode words that need a "do" prefix inside configuration mode
    EXEC_WORDS = ("show", "ping", "traceroute", "write", "copy", "clear", "dir")

    def enter_config_mode(self) -> list[str]:
        return ["configure terminal"]

    def exit_config_mode(self) -> list[str]:
        return ["end"]

    def commit(self, confirm_minutes: Optional[int] = None) -> list[str]:
        # Lines are live as soon as they are entered
        return self.exit_config_mode()

    def show_config_command(self, section: Optional[str] = None, in_config_mode: bool = False) -> str:
        command = "show running-config"
        if section:
            command += f" | section {section}"
        return self.format_command(command, in_config_mode)

    def parse_config(self, text: str) -> dict[str, Any]:
        return parse_indented_config(self.normalize_config(text))

    def render_config(self, tree: dict[str, Any]) -> str:
        return render_indented_config(tree, self.indent_step)

    def validate_payload(self, text: str) -> list[str]:
        problems = []
        banner_delim = None
        seen_top_level = False
        content_lines = 0

        for n, line in enumerate(text.split("\n"), 1):
            stripped = line.strip()
            if banner_delim:
                if banner_delim in line:
                    banner_delim = None
                continue
            if not stripped or stripped.startswith("!") or stripped == "end":
                continue
            content_lines += 1
            indent = _indent_of(line)
            if "\t" in line[:indent + 1]:
                problems.append(f"line {n}: tab indentation")
            if indent == 0:
                seen_top_level = True
            elif not seen_top_level:
                problems.append(f"line {n}: indented line without a parent")
            if stripped.startswith("%"):
                problems.append(f"line {n}: looks like device output: {stripped}")
            if FORBIDDEN_PATTERN.match(stripped):
                problems.append(f"line {n}: command not allowed in a payload: {stripped}")
            match = BANNER_PATTERN.match(stripped)
            if match:
                delim = _banner_delimiter(match.group(1))
                if stripped.count(delim) < 2:
                    banner_delim = delim

        if banner_delim:
            problems.append("unterminated banner")
        if not content_lines:
            problems.append("payload has no configuration lines")
        return problems

    def load_config(
        self,
        text: str,
        replace: bool = False,
        section: Optional[str] = None,
        current: Optional[str] = None,
    ) -> list[Step]:
        target = parse_indented_config(text)
        steps: list[Step] = []
        if replace and current is not None:
            existing = parse_indented_config(self.normalize_config(current))
            steps.extend(compensating_commands(existing, target, self.indent_step))
        steps.extend(
            line for line in render_indented_config(target, self.indent_step).split("\n") if line
        )
        return steps

    def format_command(self, command: str, in_config_mode: bool = False) -> str:
        if not in_config_mode:
            return command.strip()
        # Indentation is kept in config mode so nested lines read like the config they came from
        command = command.rstrip()
        if command.split(" ", 1)[0] in self.EXEC_WORDS:
            return f"do {command}"
        return command
