"""Schema definitions for the configuration transaction engine."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from ..session_pool import Session


class TransactionState(str, Enum):
    """Per-device, per-caller transaction state."""
    NOT_STARTED = "not_started"
    STAGED = "staged"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    CONFIRM_PENDING = "confirm_pending"


# States in which the transaction holds its session
OPEN_STATES = (TransactionState.STAGED, TransactionState.CONFIRM_PENDING)


@dataclass
class Transaction:
    """Open or most recent configuration transaction on one device."""
    device_id: str
    caller: str
    state: TransactionState = TransactionState.NOT_STARTED
    session: Optional[Session] = field(default=None, repr=False)
    confirm_deadline: Optional[float] = None
    staged: list[str] = field(default_factory=list)
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_open(self) -> bool:
        return self.state in OPEN_STATES

    def move_to(self, state: TransactionState) -> None:
        self.state = state
        self.updated_at = datetime.now(timezone.utc)
        if state is not TransactionState.CONFIRM_PENDING:
            self.confirm_deadline = None
        if state is not TransactionState.STAGED:
            self.staged = []

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "caller": self.caller,
            "state": self.state.value,
            "staged": list(self.staged),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class TransactionResult:
    """Outcome of a mutating engine operation."""
    device_id: str
    operation: str
    state: TransactionState
    committed: bool = False
    commands: list[str] = field(default_factory=list)
    restore_point: Optional[str] = None
    confirm_within: Optional[float] = None
    backup_id: Optional[str] = None
    message: str = ""

    def to_dict(self) -> dict:
        result = {
            "device_id": self.device_id,
            "operation": self.operation,
            "state": self.state.value,
            "committed": self.committed,
            "commands": self.commands,
        }
        if self.restore_point:
            result["restore_point"] = self.restore_point
        if self.confirm_within is not None:
            result["confirm_within"] = self.confirm_within
        if self.backup_id:
            result["backup_id"] = self.backup_id
        if self.message:
            result["message"] = self.message
        return result
