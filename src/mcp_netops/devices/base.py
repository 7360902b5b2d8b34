"""Vendor handler interface.

A handler turns abstract operations (enter config mode, commit, load a
payload, read the running config) into the CLI dialect of one network OS,
and reads that dialect's prompts, paging markers and error messages back.
Handlers hold no per-device state; one instance serves every device of its
type.
"""
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional, Pattern, Union

from ..errors import ConfigValidationError, UnsupportedOperation
from ..models import ConfigFormat, Payload
from ..transport.base import strip_ansi

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TerminalBlock:
    """A command that reads a multi-line body from the terminal.

    The body is sent line by line after ``command`` and closed with
    ``terminator`` (Ctrl-D by default).
    """
    command: str
    body: str
    terminator: str = "\x04"


# One unit of CLI input sent by the executor
Step = Union[str, TerminalBlock]


class VendorHandler(ABC):
    """Capability interface shared by all vendor handlers."""

    device_type: str = ""
    staged_commit: bool = False
    confirmed_commit: bool = False
    checkpoints: bool = False
    # Replace-mode loads are computed against the current running config
    replace_needs_running_config: bool = False

    prompt_pattern: Pattern = re.compile(r"(?:^|\n)[\w.\-@/:]+[#>$]\s*$")
    paging_pattern: Optional[Pattern] = None
    password_pattern: Pattern = re.compile(r"[Pp]assword:\s*$")

    # Privilege elevation; None when the login lands in full-privilege mode
    elevation_command: Optional[str] = None
    setup_commands: tuple[str, ...] = ()

    # Error patterns that indicate command failure (must appear at line start)
    ERROR_PATTERNS: list[str] = []
    # Patterns that look like errors but are actually OK (statistics, etc.)
    INFO_PATTERNS: list[str] = [
        r"\d+\s+(input\s+|output\s+)?errors",
        r"errors,",
    ]
    # Lines stripped from command output (mode banners, status markers)
    NOISE_PATTERNS: list[str] = []
    # Lines that change on every read of the configuration
    VOLATILE_PATTERNS: list[str] = []

    def supports_staged_commit(self) -> bool:
        return self.staged_commit

    def supports_confirmed_commit(self) -> bool:
        return self.confirmed_commit

    def supports_checkpoint(self) -> bool:
        return self.checkpoints

    # Prompt and output handling

    def is_privileged(self, prompt_text: str) -> bool:
        """True when the prompt at the end of ``prompt_text`` is in privileged mode."""
        return prompt_text.rstrip().endswith("#")

    def format_command(self, command: str, in_config_mode: bool = False) -> str:
        """Return the line to send for ``command``."""
        return command.strip()

    def clean_output(self, raw: str, command: str) -> str:
        """Strip echo, trailing prompt, paging markers and mode banners."""
        text = strip_ansi(raw)
        if self.paging_pattern is not None:
            text = self.paging_pattern.sub("", text)
        lines = text.split("\n")

        echo = command.strip()
        if echo:
            for i, line in enumerate(lines[:3]):
                if echo in line:
                    lines = lines[i + 1:]
                    break

        while lines and (not lines[-1].strip() or self.prompt_pattern.search(lines[-1])):
            lines.pop()

        if self.NOISE_PATTERNS:
            lines = [
                line for line in lines
                if not any(re.match(p, line.strip()) for p in self.NOISE_PATTERNS)
            ]
        return "\n".join(line.rstrip() for line in lines).strip("\n")

    def detect_error(self, output: str) -> Optional[str]:
        """Return the first line reporting a device error, if any.

        Only matches errors at line start to avoid false positives from
        interface statistics like "0 input errors".
        """
        for line in output.split("\n"):
            line_stripped = line.strip()
            if not line_stripped:
                continue

            is_info = any(
                re.search(info_pat, line_stripped, re.IGNORECASE)
                for info_pat in self.INFO_PATTERNS
            )
            if is_info:
                continue

            for pattern in self.ERROR_PATTERNS:
                if re.search(pattern, line_stripped, re.IGNORECASE):
                    return line_stripped

        return None

    # Structured output

    def parsers(self) -> dict[str, Callable[[str], Optional[dict[str, Any]]]]:
        return {
            "version": self.parse_version,
            "interfaces": self.parse_interfaces,
            "config": self.parse_config,
        }

    def parse_output(self, output: str, parser: str) -> Optional[dict[str, Any]]:
        """Run the named parser. ``None`` when it is unknown or does not match."""
        func = self.parsers().get(parser)
        if func is None:
            logger.debug(f"{self.device_type}: no parser named {parser!r}")
            return None
        try:
            return func(output)
        except ValueError as e:
            logger.debug(f"{self.device_type}: parser {parser!r} did not match: {e}")
            return None

    @abstractmethod
    def parse_version(self, output: str) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    def parse_interfaces(self, output: str) -> Optional[dict[str, Any]]:
        ...

    # Configuration mode and commit semantics

    @abstractmethod
    def enter_config_mode(self) -> list[str]:
        ...

    @abstractmethod
    def exit_config_mode(self) -> list[str]:
        ...

    @abstractmethod
    def commit(self, confirm_minutes: Optional[int] = None) -> list[str]:
        """Commands that make loaded changes effective."""

    def confirm_commit(self) -> list[str]:
        raise UnsupportedOperation(f"{self.device_type} has no confirmed commits")

    def discard_changes(self) -> list[str]:
        raise UnsupportedOperation(f"{self.device_type} has no candidate configuration")

    def rollback(self, checkpoint: Optional[str] = None) -> list[str]:
        """Commands that restore the previous configuration natively."""
        raise UnsupportedOperation(f"{self.device_type} has no native rollback")

    def checkpoint(self, name: str) -> list[str]:
        """Commands that take a named restore point. No-op by default."""
        return []

    def delete_checkpoint(self, name: str) -> list[str]:
        """Commands that drop a named restore point. No-op by default."""
        return []

    # Configuration payloads

    @abstractmethod
    def show_config_command(self, section: Optional[str] = None, in_config_mode: bool = False) -> str:
        ...

    def normalize_config(self, text: str) -> str:
        """Drop volatile header lines and surrounding blank lines."""
        lines = [
            line.rstrip() for line in text.split("\n")
            if not any(re.match(p, line.strip()) for p in self.VOLATILE_PATTERNS)
        ]
        while lines and not lines[0].strip():
            lines.pop(0)
        while lines and not lines[-1].strip():
            lines.pop()
        return "\n".join(lines)

    @abstractmethod
    def parse_config(self, text: str) -> dict[str, Any]:
        """Configuration text to a nested dict; leaves map to ``None``.

        Raises ``ValueError`` when the text is not well formed.
        """

    @abstractmethod
    def render_config(self, tree: dict[str, Any]) -> str:
        ...

    def render_payload(self, payload: Payload, fmt: ConfigFormat = ConfigFormat.TEXT) -> str:
        """Payload in either format to the CLI text the device loads."""
        fmt = ConfigFormat(fmt)
        if fmt is ConfigFormat.STRUCTURED:
            if not isinstance(payload, dict):
                raise ConfigValidationError("Structured payload must be a mapping")
            return self.render_config(payload)
        if not isinstance(payload, str):
            raise ConfigValidationError("Text payload must be a string")
        return payload

    @abstractmethod
    def validate_payload(self, text: str) -> list[str]:
        """Syntax pre-check. Returns a list of problems, empty when clean."""

    @abstractmethod
    def load_config(
        self,
        text: str,
        replace: bool = False,
        section: Optional[str] = None,
        current: Optional[str] = None,
    ) -> list[Step]:
        """CLI input that loads ``text`` while in configuration mode.

        ``current`` is the running configuration of the same scope, passed
        when ``replace_needs_running_config`` is set.
        """
