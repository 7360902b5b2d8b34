"""Audit logging for configuration changes.

Every mutating operation emits one JSON ``ChangeRecord`` on the
``netops.audit`` logger. Where the stream ends up is the embedding
application's concern; ``setup_audit_logging`` wires a rotating file for
standalone use.
"""
import json
import logging
import os
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

audit_logger = logging.getLogger("netops.audit")


def setup_audit_logging(log_dir: Optional[str] = None) -> None:
    """Send audit records to ``<log_dir>/audit.log`` (default ``~/.netops``)."""
    if log_dir is None:
        log_dir = os.path.expanduser("~/.netops")

    Path(log_dir).mkdir(parents=True, exist_ok=True)
    audit_file = os.path.join(log_dir, "audit.log")

    audit_logger.setLevel(logging.INFO)
    audit_logger.handlers.clear()

    handler = RotatingFileHandler(
        audit_file,
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=10,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)
    audit_logger.propagate = False


@dataclass
class ChangeRecord:
    """Record of a configuration change."""
    timestamp: str
    device_id: str
    operation: str  # apply_config, commit, rollback, restore, ...
    caller: str
    success: bool
    parameters: dict
    state_before: Optional[str] = None
    state_after: Optional[str] = None
    output: str = ""
    error: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), indent=None, default=str)

    @classmethod
    def from_json(cls, json_str: str) -> "ChangeRecord":
        return cls(**json.loads(json_str))


def log_change(
    device_id: str,
    operation: str,
    caller: str,
    success: bool,
    parameters: Optional[dict] = None,
    state_before: Optional[str] = None,
    state_after: Optional[str] = None,
    output: str = "",
    error: Optional[str] = None,
) -> ChangeRecord:
    """Emit one change record and return it."""
    record = ChangeRecord(
        timestamp=datetime.now(timezone.utc).isoformat(),
        device_id=device_id,
        operation=operation,
        caller=caller,
        success=success,
        parameters=parameters or {},
        state_before=state_before,
        state_after=state_after,
        output=output[:1000] if output else "",  # Truncate long output
        error=error,
    )
    audit_logger.info(record.to_json())
    return record
