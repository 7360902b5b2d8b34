"""Service facade: one object composing the whole core.

``NetworkCore.dispatch`` is the entry point the routing layer calls with an
already-authorized ``(device_id, operation, payload)`` triple. Every call
returns the response envelope, success or not::

    {"status": "success", "data": {...}, "metadata": {...}}
    {"status": "error", "error": {"code", "message", "details"}, "metadata": {...}}
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from . import errors
from .config.inventory import DeviceInventory
from .config.settings import CoreSettings
from .config_engine import DEFAULT_CALLER, ConfigurationEngine
from .config_store import BackupStore, FileBackupStore
from .credentials import CredentialStore, EnvCredentialStore
from .devices import get_handler
from .executor import CommandExecutor
from .models import ConfigFormat, Device
from .session_pool import SessionPool, TransportFactory
from .transport import create_transport

logger = logging.getLogger(__name__)

OpHandler = Callable[[Device, dict, str], Awaitable[Any]]


class NetworkCore:
    """Inventory, session pool, executor, transaction engine and backup store.

    The pool and engine have an explicit lifecycle: ``start()`` launches the
    confirm-deadline sweeper, ``close()`` stops it, drains every session and
    shuts the I/O thread pool down. Usable as an async context manager.
    """

    def __init__(
        self,
        inventory: Optional[DeviceInventory] = None,
        credentials: Optional[CredentialStore] = None,
        settings: Optional[CoreSettings] = None,
        backup_store: Optional[BackupStore] = None,
        transport_factory: TransportFactory = create_transport,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable]] = None,
    ):
        self.inventory = inventory if inventory is not None else DeviceInventory()
        self.settings = (settings or CoreSettings.from_env()).merged(self.inventory.settings)
        self.credentials = credentials or EnvCredentialStore()
        self._io = ThreadPoolExecutor(
            max_workers=self.settings.io_workers, thread_name_prefix="netops-io"
        )
        self.pool = SessionPool(
            self.credentials,
            self.settings,
            transport_factory=transport_factory,
            io_executor=self._io,
            clock=clock,
            sleep=sleep,
        )
        self.executor = CommandExecutor(self.pool)
        if backup_store is None:
            backup_store = FileBackupStore(self.settings.backup_dir, io_executor=self._io)
        self.backups = backup_store
        self.engine = ConfigurationEngine(self.executor, self.backups, self.settings, clock=clock)

        self._operations: dict[str, OpHandler] = {
            "execute": self._op_execute,
            "execute_batch": self._op_execute_batch,
            "get_config": self._op_get_config,
            "apply_config": self._op_apply_config,
            "commit": self._op_commit,
            "confirm_commit": self._op_confirm_commit,
            "rollback": self._op_rollback,
            "discard": self._op_discard,
            "backup": self._op_backup,
            "restore": self._op_restore,
            "transaction_state": self._op_transaction_state,
            "list_backups": self._op_list_backups,
        }

    @property
    def operations(self) -> list[str]:
        return list(self._operations)

    # Lifecycle

    async def start(self) -> None:
        self.engine.start()
        logger.info(f"Network core started ({len(self.inventory)} devices)")

    async def close(self) -> None:
        await self.engine.close()
        await self.pool.close_all()
        self._io.shutdown(wait=False)
        logger.info("Network core stopped")

    async def __aenter__(self) -> "NetworkCore":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # Device registry

    def register_device(self, device: Device) -> Device:
        get_handler(device.device_type)
        return self.inventory.register(device)

    async def deregister_device(self, device_id: str) -> Device:
        device = self.inventory.deregister(device_id)
        await self.pool.evict(device_id)
        return device

    # Dispatch

    async def dispatch(
        self,
        device_id: str,
        operation: str,
        payload: Optional[dict] = None,
        caller: str = DEFAULT_CALLER,
    ) -> dict[str, Any]:
        """Run one operation and wrap its outcome in the response envelope."""
        start = time.perf_counter()
        metadata = {
            "device_id": device_id,
            "operation": operation,
            "caller": caller,
        }

        def finish(envelope: dict) -> dict:
            elapsed_ms = (time.perf_counter() - start) * 1000
            metadata["elapsed_ms"] = round(elapsed_ms, 2)
            metadata["timestamp"] = datetime.now(timezone.utc).isoformat()
            envelope["metadata"] = metadata
            return envelope

        try:
            handler = self._operations.get(operation)
            if handler is None:
                raise errors.InvalidRequest(
                    f"Unknown operation: {operation!r}",
                    device=device_id,
                    details={"supported": self.operations},
                )
            if payload is not None and not isinstance(payload, dict):
                raise errors.InvalidRequest("Payload must be a mapping", device=device_id)
            device = self.inventory.get(device_id)
            get_handler(device.device_type)
            data = await handler(device, dict(payload or {}), caller)
        except errors.NetOpsError as e:
            envelope = finish({"status": "error", "error": e.to_dict()})
            logger.warning(
                f"{operation} on {device_id} failed after {metadata['elapsed_ms']}ms: "
                f"{e.code} {e.kind}: {e.message}"
            )
            return envelope
        except Exception as e:
            envelope = finish({
                "status": "error",
                "error": {
                    "code": "INTERNAL_ERROR",
                    "message": str(e),
                    "details": {"kind": type(e).__name__, "retryable": False},
                },
            })
            logger.exception(f"{operation} on {device_id} crashed after {metadata['elapsed_ms']}ms")
            return envelope

        envelope = finish({"status": "success", "data": data})
        logger.info(f"{operation} on {device_id} ok in {metadata['elapsed_ms']}ms")
        return envelope

    @staticmethod
    def _require(payload: dict, key: str) -> Any:
        if key not in payload:
            raise errors.InvalidRequest(f"Missing required field: {key!r}")
        return payload[key]

    @staticmethod
    def _format(payload: dict) -> ConfigFormat:
        try:
            return ConfigFormat(payload.get("format", ConfigFormat.TEXT.value))
        except ValueError:
            raise errors.InvalidRequest(
                f"Unknown format: {payload.get('format')!r}",
                details={"supported": [f.value for f in ConfigFormat]},
            ) from None

    # Operations

    async def _op_execute(self, device: Device, payload: dict, caller: str) -> dict:
        result = await self.executor.execute(
            device,
            self._require(payload, "command"),
            timeout=payload.get("timeout"),
            parser=payload.get("parser"),
        )
        return result.to_dict()

    async def _op_execute_batch(self, device: Device, payload: dict, caller: str) -> dict:
        commands = self._require(payload, "commands")
        if not isinstance(commands, list) or not all(isinstance(c, str) for c in commands):
            raise errors.InvalidRequest("'commands' must be a list of strings")
        batch = await self.executor.execute_batch(
            device,
            commands,
            timeout=payload.get("timeout"),
            best_effort=bool(payload.get("best_effort", False)),
            parser=payload.get("parser"),
        )
        return batch.to_dict()

    async def _op_get_config(self, device: Device, payload: dict, caller: str) -> dict:
        snapshot = await self.engine.get_config(
            device,
            section=payload.get("section"),
            format=self._format(payload),
            caller=caller,
        )
        return snapshot.to_dict()

    async def _op_apply_config(self, device: Device, payload: dict, caller: str) -> dict:
        result = await self.engine.apply_config(
            device,
            self._require(payload, "config"),
            format=self._format(payload),
            replace=bool(payload.get("replace", False)),
            commit_immediately=bool(payload.get("commit_immediately", True)),
            section=payload.get("section"),
            caller=caller,
        )
        return result.to_dict()

    async def _op_commit(self, device: Device, payload: dict, caller: str) -> dict:
        result = await self.engine.commit(device, payload.get("confirm_within"), caller=caller)
        return result.to_dict()

    async def _op_confirm_commit(self, device: Device, payload: dict, caller: str) -> dict:
        return (await self.engine.confirm_commit(device, caller=caller)).to_dict()

    async def _op_rollback(self, device: Device, payload: dict, caller: str) -> dict:
        return (await self.engine.rollback(device, caller=caller)).to_dict()

    async def _op_discard(self, device: Device, payload: dict, caller: str) -> dict:
        return (await self.engine.discard(device, caller=caller)).to_dict()

    async def _op_backup(self, device: Device, payload: dict, caller: str) -> dict:
        backup_id = await self.engine.backup(
            device,
            description=payload.get("description", ""),
            section=payload.get("section"),
            caller=caller,
        )
        return {"backup_id": backup_id}

    async def _op_restore(self, device: Device, payload: dict, caller: str) -> dict:
        result = await self.engine.restore(
            device,
            self._require(payload, "backup_id"),
            commit_immediately=bool(payload.get("commit_immediately", True)),
            caller=caller,
        )
        return result.to_dict()

    async def _op_transaction_state(self, device: Device, payload: dict, caller: str) -> dict:
        state = await self.engine.transaction_state(device, caller)
        data = {"state": state.value, "restore_points": self.engine.restore_points(device.device_id)}
        txn = self.engine.transaction(device.device_id)
        if txn is not None and txn.caller == caller:
            data["transaction"] = txn.to_dict()
        return data

    async def _op_list_backups(self, device: Device, payload: dict, caller: str) -> dict:
        snapshots = await self.backups.list(device.device_id)
        limit = int(payload.get("limit", 20))
        return {
            "backups": [
                {
                    "backup_id": s.backup_id,
                    "captured_at": s.captured_at.isoformat(),
                    "description": s.description,
                    "section": s.section,
                    "format": s.format.value,
                }
                for s in snapshots[:limit]
            ]
        }
