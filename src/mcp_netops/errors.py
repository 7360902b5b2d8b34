"""Exception hierarchy for the network-device core.

Every error raised across a public boundary derives from ``NetOpsError`` so
the service layer can map it onto the response envelope with one handler.

Exception tree::

    NetOpsError
    ├── ConnectionError          NETWORK_CONNECTION_ERROR
    │   └── ConnectTimeout
    ├── CommandError             NETWORK_COMMAND_ERROR
    │   └── CommandTimeout
    ├── ConfigError              NETWORK_CONFIG_ERROR
    │   ├── ConfigValidationError
    │   │   └── NoRestorePoint
    │   ├── NoPendingConfirmation
    │   ├── NoStagedChanges
    │   ├── TransactionConflict
    │   └── BackupNotFound
    ├── PoolExhausted            POOL_EXHAUSTED (retryable)
    ├── UnsupportedOperation     UNSUPPORTED_OPERATION
    ├── UnknownDeviceType        UNKNOWN_DEVICE_TYPE
    ├── DeviceNotFound           DEVICE_NOT_FOUND
    └── InvalidRequest           INVALID_REQUEST
"""

from typing import Any, Optional


class NetOpsError(Exception):
    """Base exception for all core errors.

    Attributes:
        message: Human-readable error description.
        device: Device id the error relates to, if any.
        details: Additional context. Never holds credentials.
    """

    code = "NETWORK_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        device: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.device = device
        self.details = details or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        parts: list[str] = []
        if self.device:
            parts.append(f"[{self.device}]")
        parts.append(self.message)
        return " ".join(parts)

    @property
    def kind(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> dict[str, Any]:
        """Render as the ``error`` member of the response envelope."""
        details = {"kind": self.kind, "retryable": self.retryable, **self.details}
        if self.device:
            details.setdefault("device_id", self.device)
        return {"code": self.code, "message": self.message, "details": details}


class ConnectionError(NetOpsError):  # noqa: A001
    """Device unreachable, authentication failed or handshake broke."""

    code = "NETWORK_CONNECTION_ERROR"


class ConnectTimeout(ConnectionError):
    """Transport handshake did not complete within the connect timeout."""


class CommandError(NetOpsError):
    """Device reported an error for a command, or the channel broke mid-command."""

    code = "NETWORK_COMMAND_ERROR"


class CommandTimeout(CommandError):
    """Prompt was not seen again before the command timeout elapsed."""


class ConfigError(NetOpsError):
    """Configuration load, commit or rollback failed."""

    code = "NETWORK_CONFIG_ERROR"


class ConfigValidationError(ConfigError):
    """Payload rejected by the syntax pre-check before reaching the device."""

    def __init__(
        self,
        message: str,
        device: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        errors: Optional[list[str]] = None,
    ) -> None:
        self.errors = list(errors or [])
        merged = dict(details or {})
        if self.errors:
            merged.setdefault("errors", self.errors)
        super().__init__(message, device=device, details=merged)


class NoRestorePoint(ConfigValidationError):
    """Rollback requested but no backup, checkpoint or prior commit exists."""


class NoPendingConfirmation(ConfigError):
    """``confirm_commit`` called while no confirmed commit is pending."""


class NoStagedChanges(ConfigError):
    """``commit``/``discard`` called while nothing is staged."""


class TransactionConflict(ConfigError):
    """Another caller holds an open transaction on the device."""


class BackupNotFound(ConfigError):
    """Backup identifier unknown to the backup store."""


class PoolExhausted(NetOpsError):
    """No session became available before the acquire timeout."""

    code = "POOL_EXHAUSTED"
    retryable = True


class UnsupportedOperation(NetOpsError):
    """Operation not supported by the device's vendor handler."""

    code = "UNSUPPORTED_OPERATION"


class UnknownDeviceType(NetOpsError):
    """Device-type tag has no registered vendor handler."""

    code = "UNKNOWN_DEVICE_TYPE"


class DeviceNotFound(NetOpsError):
    """Device id not present in the inventory."""

    code = "DEVICE_NOT_FOUND"


class InvalidRequest(NetOpsError):
    """Operation name or payload shape not understood."""

    code = "INVALID_REQUEST"
