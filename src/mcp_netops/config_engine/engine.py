"""Configuration transaction engine.

Drives get/set/commit/rollback/confirm/backup/restore on top of the
command executor. Vendor differences stay behind the handler interface:

- Staged-commit vendors (Junos) load payloads into a candidate. A staged
  transaction keeps its session checked out until it is committed,
  discarded or rolled back, so nobody else can touch the device meanwhile.
- Direct-apply vendors (IOS, IOS-XE, NX-OS) apply line by line and commit
  implicitly. Before each change a restore point is taken (a checkpoint on
  NX-OS, a stored snapshot elsewhere) so ``rollback`` has a target. Only
  the newest ``max_restore_points`` per device are kept.

Confirmed commits are tracked as deadlines on the transaction. Every
operation on a device checks its deadline first, and a single sweeper
task reverts expired ones for devices nobody is talking to.
"""
import asyncio
import itertools
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from .. import errors
from ..config.settings import ConflictPolicy, CoreSettings
from ..config_store import BackupStore
from ..devices import VendorHandler, get_handler
from ..executor import CommandExecutor
from ..models import ConfigFormat, ConfigurationSnapshot, Device, Payload
from ..session_pool import Session
from ..utils.audit_log import log_change
from ..utils.logging_config import timed_section
from .schema import Transaction, TransactionResult, TransactionState

logger = logging.getLogger(__name__)

DEFAULT_CALLER = "default"


class _Lease:
    """A session lent to one engine operation.

    ``kept`` means a transaction owns the session and the lease must not
    hand it back to the pool.
    """

    def __init__(self, session: Session, txn: Optional[Transaction] = None):
        self.session = session
        self.txn = txn
        self.kept = txn is not None


class ConfigurationEngine:
    """Uniform configuration transactions over divergent vendor CLIs."""

    def __init__(
        self,
        executor: CommandExecutor,
        backups: BackupStore,
        settings: Optional[CoreSettings] = None,
        clock: Callable[[], float] = time.monotonic,
        handler_resolver: Callable[[str], VendorHandler] = get_handler,
    ):
        self.executor = executor
        self.pool = executor.pool
        self.backups = backups
        self.settings = settings or CoreSettings()
        self._clock = clock
        self._handlers = handler_resolver
        self._transactions: dict[str, Transaction] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        # Rollback targets per device, newest last
        self._restore_points: dict[str, list[str]] = {}
        self._checkpoints: dict[str, list[str]] = {}
        # Backup ids the engine stored itself and may delete again
        self._automatic: set[str] = set()
        # Staged-commit devices with a commit this engine can revert
        self._committed: set[str] = set()
        self._checkpoint_seq = itertools.count(1)
        self._sweeper: Optional[asyncio.Task] = None

    # Lifecycle

    def start(self) -> None:
        """Start the confirm-deadline sweeper."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="netops-confirm-sweeper")

    async def close(self) -> None:
        """Stop the sweeper and release sessions held by open transactions."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        for txn in list(self._transactions.values()):
            if txn.is_open:
                await self._abandon(txn, "engine shutting down")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.sweep_interval)
            await self.sweep()

    async def sweep(self) -> int:
        """Revert every confirmed commit whose window has closed."""
        reverted = 0
        for device_id in list(self._transactions):
            try:
                if await self._expire_if_due(device_id):
                    reverted += 1
            except errors.NetOpsError as e:
                logger.error(f"Auto-rollback on {device_id} failed: {e}")
        return reverted

    # Session leasing

    def _lock(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = self._locks[device_id] = asyncio.Lock()
        return lock

    def _open_txn(self, device_id: str) -> Optional[Transaction]:
        txn = self._transactions.get(device_id)
        return txn if txn is not None and txn.is_open else None

    @asynccontextmanager
    async def _lease(self, device: Device, caller: str, mutate: bool = False) -> AsyncIterator[_Lease]:
        """Lend a session: the caller's open transaction's, or a pooled one.

        A different caller's open transaction either makes us wait in the
        pool (``block``) or fails fast (``reject``).
        """
        device_id = device.device_id
        await self._expire_if_due(device_id)

        txn = self._open_txn(device_id)
        if txn is not None and txn.caller != caller:
            if self.settings.conflict_policy is ConflictPolicy.REJECT:
                raise errors.TransactionConflict(
                    "Another caller has an open transaction on this device",
                    device=device_id,
                    details={"state": txn.state.value},
                )
            logger.debug(f"{caller} waits for transaction of {txn.caller} on {device_id}")

        if txn is not None and txn.caller == caller:
            lock = self._lock(device_id)
            await lock.acquire()
            try:
                if txn is self._open_txn(device_id) and txn.session is not None:
                    lease = _Lease(txn.session, txn)
                    try:
                        yield lease
                    except BaseException:
                        if txn.is_open and txn.session is not None and not txn.session.is_healthy:
                            await self._abandon(txn, "session lost mid-operation")
                        raise
                    return
            finally:
                lock.release()

        session = await self.pool.acquire(device)
        lease = _Lease(session)
        try:
            if mutate:
                async with self._lock(device_id):
                    yield lease
            else:
                yield lease
        finally:
            if not lease.kept:
                await self.pool.release(session, healthy=session.is_healthy)

    def _hold(self, lease: _Lease, txn: Transaction) -> None:
        txn.session = lease.session
        lease.txn = txn
        lease.kept = True

    async def _finish(self, txn: Transaction, state: TransactionState) -> None:
        """Move to a closed state and give the session back."""
        session, txn.session = txn.session, None
        txn.move_to(state)
        if session is not None:
            await self.pool.release(session, healthy=session.is_healthy)

    async def _abandon(self, txn: Transaction, reason: str) -> None:
        if txn.state is TransactionState.CONFIRM_PENDING:
            logger.warning(
                f"Transaction on {txn.device_id} abandoned ({reason}); "
                f"the device reverts the unconfirmed commit when its own window closes"
            )
        else:
            logger.warning(f"Transaction on {txn.device_id} abandoned ({reason})")
        if txn.session is not None and txn.session.is_healthy:
            # Leaving exclusive config mode discards the candidate
            txn.session.evict_on_release = True
        await self._finish(txn, TransactionState.NOT_STARTED)

    def _record(self, device_id: str, caller: str, state: TransactionState) -> Transaction:
        txn = self._transactions.get(device_id)
        if txn is None or txn.is_open:
            txn = self._transactions[device_id] = Transaction(device_id, caller)
        txn.caller = caller
        txn.move_to(state)
        return txn

    # Confirm deadlines

    async def _expire_if_due(self, device_id: str) -> bool:
        txn = self._transactions.get(device_id)
        if not self._is_due(txn):
            return False
        async with self._lock(device_id):
            if txn is not self._transactions.get(device_id) or not self._is_due(txn):
                return False
            await self._auto_rollback(txn)
            return True

    def _is_due(self, txn: Optional[Transaction]) -> bool:
        return (
            txn is not None
            and txn.state is TransactionState.CONFIRM_PENDING
            and txn.confirm_deadline is not None
            and self._clock() >= txn.confirm_deadline
        )

    async def _auto_rollback(self, txn: Transaction) -> None:
        session = txn.session
        handler = session.handler
        logger.warning(f"Confirm window expired on {txn.device_id}; reverting commit")
        success, error = False, None
        try:
            async with timed_section("auto_rollback", txn.device_id):
                await self.executor.run_steps(session, handler.rollback())
                await self._leave_config(session, handler)
            success = True
        except errors.NetOpsError as e:
            error = str(e)
            raise
        finally:
            self._committed.discard(txn.device_id)
            await self._finish(txn, TransactionState.ROLLED_BACK)
            log_change(
                txn.device_id, "auto_rollback", txn.caller, success,
                state_before=TransactionState.CONFIRM_PENDING.value,
                state_after=TransactionState.ROLLED_BACK.value,
                error=error,
            )

    # Helpers

    def _handler(self, device: Device) -> VendorHandler:
        return self._handlers(device.device_type)

    async def _read_running(self, session: Session, handler: VendorHandler, section: Optional[str]) -> str:
        command = handler.show_config_command(section, session.in_config_mode)
        result = await self.executor.run(session, command)
        if not result.success:
            raise errors.ConfigError(
                f"Could not read configuration: {result.error}",
                device=session.device_id,
                details={"command": result.command, "output": result.output},
            )
        return handler.normalize_config(result.output)

    async def _enter_config(self, session: Session, handler: VendorHandler) -> None:
        if session.in_config_mode:
            return
        try:
            await self.executor.run_steps(session, handler.enter_config_mode())
        except errors.ConfigError as e:
            if "locked" in str(e.details.get("output", "")).lower():
                raise errors.TransactionConflict(
                    "Configuration database is locked by another user",
                    device=session.device_id,
                    details=e.details,
                ) from e
            raise
        session.in_config_mode = True

    async def _leave_config(self, session: Session, handler: VendorHandler, quiet: bool = False) -> None:
        if not session.in_config_mode:
            return
        try:
            await self.executor.run_steps(session, handler.exit_config_mode())
            session.in_config_mode = False
        except errors.NetOpsError as e:
            if not quiet:
                raise
            session.mark_unhealthy(f"could not leave configuration mode: {e}")

    async def _discard_candidate(self, session: Session, handler: VendorHandler) -> list[str]:
        results = await self.executor.run_steps(session, handler.discard_changes())
        await self._leave_config(session, handler)
        return [r.command for r in results]

    async def _drop_candidate(self, session: Session, handler: VendorHandler) -> None:
        if not session.is_healthy:
            return
        try:
            await self._discard_candidate(session, handler)
        except errors.NetOpsError as cleanup_error:
            session.mark_unhealthy(f"candidate discard failed: {cleanup_error}")

    def _prepare_payload(
        self,
        device: Device,
        handler: VendorHandler,
        payload: Payload,
        fmt: ConfigFormat,
    ) -> str:
        try:
            text = handler.render_payload(payload, fmt)
        except errors.ConfigValidationError as e:
            raise errors.ConfigValidationError(e.message, device=device.device_id, errors=e.errors) from e
        problems = handler.validate_payload(text)
        if problems:
            raise errors.ConfigValidationError(
                "Payload failed syntax pre-check",
                device=device.device_id,
                errors=problems,
            )
        return text

    @property
    def _keep(self) -> int:
        return max(1, self.settings.max_restore_points)

    async def _take_restore_point(self, device: Device, handler: VendorHandler, session: Session) -> str:
        device_id = device.device_id
        if handler.supports_checkpoint():
            names = self._checkpoints.setdefault(device_id, [])
            # The device caps user checkpoints; make room before taking one
            while len(names) >= self._keep:
                await self._drop_checkpoint(device_id, handler, session, names.pop(0))
            name = f"netops-{int(time.time())}-{next(self._checkpoint_seq)}"
            await self.executor.run_steps(session, handler.checkpoint(name))
            names.append(name)
            logger.info(f"Checkpoint {name} taken on {device_id}")
            return name

        text = await self._read_running(session, handler, None)
        snapshot = ConfigurationSnapshot(
            device_id=device_id,
            device_type=device.device_type,
            content=text,
            format=ConfigFormat.TEXT,
            description="automatic restore point",
        )
        backup_id = await self.backups.put(snapshot)
        self._automatic.add(backup_id)
        await self._push_restore_point(device_id, backup_id)
        logger.info(f"Restore point {backup_id} stored for {device_id}")
        return backup_id

    async def _push_restore_point(self, device_id: str, backup_id: str) -> None:
        backup_ids = self._restore_points.setdefault(device_id, [])
        backup_ids.append(backup_id)
        while len(backup_ids) > self._keep:
            await self._drop_backup(backup_ids.pop(0))

    async def _drop_backup(self, backup_id: str) -> None:
        """Delete an automatic restore point. Explicit backups stay in the store."""
        if backup_id not in self._automatic:
            return
        self._automatic.discard(backup_id)
        try:
            await self.backups.delete(backup_id)
        except errors.BackupNotFound:
            logger.debug(f"Restore point {backup_id} already gone")

    async def _drop_checkpoint(self, device_id: str, handler: VendorHandler, session: Session, name: str) -> None:
        try:
            await self.executor.run_steps(session, handler.delete_checkpoint(name))
        except errors.ConfigError as e:
            logger.warning(f"Could not delete checkpoint {name} on {device_id}: {e}")
            return
        logger.info(f"Checkpoint {name} deleted on {device_id}")

    def _audit(
        self,
        device_id: str,
        operation: str,
        caller: str,
        success: bool,
        parameters: Optional[dict] = None,
        before: Optional[TransactionState] = None,
        error: Optional[Exception] = None,
    ) -> None:
        after = self._transactions.get(device_id)
        log_change(
            device_id,
            operation,
            caller,
            success,
            parameters=parameters,
            state_before=before.value if before else None,
            state_after=after.state.value if after else None,
            error=str(error) if error else None,
        )

    def _state(self, device_id: str) -> TransactionState:
        txn = self._transactions.get(device_id)
        return txn.state if txn else TransactionState.NOT_STARTED

    # Public operations

    async def get_config(
        self,
        device: Device,
        section: Optional[str] = None,
        format: ConfigFormat = ConfigFormat.TEXT,
        caller: str = DEFAULT_CALLER,
    ) -> ConfigurationSnapshot:
        """Read the running configuration. Never changes transaction state."""
        handler = self._handler(device)
        fmt = ConfigFormat(format)
        async with timed_section("get_config", device.device_id):
            async with self._lease(device, caller) as lease:
                text = await self._read_running(lease.session, handler, section)

        content: Payload = text
        if fmt is ConfigFormat.STRUCTURED:
            try:
                content = handler.parse_config(text)
            except ValueError as e:
                raise errors.ConfigError(
                    f"Could not parse configuration: {e}", device=device.device_id
                ) from e
        return ConfigurationSnapshot(
            device_id=device.device_id,
            device_type=device.device_type,
            content=content,
            format=fmt,
            section=section,
        )

    async def apply_config(
        self,
        device: Device,
        payload: Payload,
        format: ConfigFormat = ConfigFormat.TEXT,
        replace: bool = False,
        commit_immediately: bool = True,
        section: Optional[str] = None,
        caller: str = DEFAULT_CALLER,
    ) -> TransactionResult:
        """Load a payload; stage it, or stage and commit in one call.

        Direct-apply vendors cannot stage: ``commit_immediately=False`` is
        rejected with ``UnsupportedOperation`` before anything is sent.
        """
        return await self._apply(
            device, payload, ConfigFormat(format), replace, commit_immediately, section, caller,
            operation="apply_config",
        )

    async def _apply(
        self,
        device: Device,
        payload: Payload,
        fmt: ConfigFormat,
        replace: bool,
        commit_immediately: bool,
        section: Optional[str],
        caller: str,
        operation: str,
        restore_point: bool = True,
    ) -> TransactionResult:
        device_id = device.device_id
        handler = self._handler(device)
        if not commit_immediately and not handler.supports_staged_commit():
            raise errors.UnsupportedOperation(
                f"{device.device_type} applies changes immediately and cannot stage them",
                device=device_id,
            )
        text = self._prepare_payload(device, handler, payload, fmt)
        parameters = {
            "replace": replace,
            "commit_immediately": commit_immediately,
            "section": section,
            "format": fmt.value,
            "bytes": len(text),
        }

        async with timed_section(operation, device_id, caller=caller):
            async with self._lease(device, caller, mutate=True) as lease:
                before = self._state(device_id)
                try:
                    if handler.supports_staged_commit():
                        result = await self._apply_staged(
                            device, handler, lease, text, replace, section, commit_immediately, caller
                        )
                    else:
                        result = await self._apply_direct(
                            device, handler, lease.session, text, replace, section, caller, restore_point
                        )
                except errors.NetOpsError as e:
                    self._audit(device_id, operation, caller, False, parameters, before, e)
                    raise
        result.operation = operation
        self._audit(device_id, operation, caller, True, parameters, before)
        return result

    async def _apply_staged(
        self,
        device: Device,
        handler: VendorHandler,
        lease: _Lease,
        text: str,
        replace: bool,
        section: Optional[str],
        commit_immediately: bool,
        caller: str,
    ) -> TransactionResult:
        device_id = device.device_id
        session = lease.session
        txn = lease.txn
        if txn is not None and txn.state is TransactionState.CONFIRM_PENDING:
            raise errors.ConfigError(
                "A confirmed commit is pending; confirm or roll it back first",
                device=device_id,
            )

        await self._enter_config(session, handler)
        try:
            results = await self.executor.run_steps(session, handler.load_config(text, replace, section))
        except errors.ConfigError:
            # Nothing half-loaded may stay in the candidate
            await self._drop_candidate(session, handler)
            if txn is not None:
                await self._finish(txn, TransactionState.NOT_STARTED)
            raise

        created = txn is None
        if created:
            txn = self._transactions[device_id] = Transaction(device_id, caller)
            self._hold(lease, txn)
        if txn.state is not TransactionState.STAGED:
            txn.move_to(TransactionState.STAGED)
        mode = "replace" if replace else "merge"
        txn.staged.append(f"{mode}{' ' + section if section else ''} ({len(text)} bytes)")

        commands = [r.command for r in results]
        committed = False
        if commit_immediately:
            try:
                commands += await self._commit_txn(txn, handler, None)
            except errors.NetOpsError as e:
                # A candidate opened by this call is not left behind
                if created:
                    await self._drop_candidate(session, handler)
                    await self._finish(txn, TransactionState.NOT_STARTED)
                e.details["state"] = txn.state.value if session.is_healthy else TransactionState.NOT_STARTED.value
                e.details["staged"] = list(txn.staged) if txn.is_open else []
                raise
            committed = True
        return TransactionResult(
            device_id=device_id,
            operation="apply_config",
            state=txn.state,
            committed=committed,
            commands=commands,
        )

    async def _apply_direct(
        self,
        device: Device,
        handler: VendorHandler,
        session: Session,
        text: str,
        replace: bool,
        section: Optional[str],
        caller: str,
        restore_point: bool,
    ) -> TransactionResult:
        point = None
        if restore_point and self.settings.backup_before_apply:
            point = await self._take_restore_point(device, handler, session)

        current = None
        if replace and handler.replace_needs_running_config:
            current = await self._read_running(session, handler, section)
        steps = handler.load_config(text, replace, section, current)

        await self._enter_config(session, handler)
        try:
            results = await self.executor.run_steps(session, steps)
        except errors.ConfigError as e:
            await self._leave_config(session, handler, quiet=True)
            if point:
                e.details["restore_point"] = point
            raise
        await self.executor.run_steps(session, handler.commit())
        session.in_config_mode = False

        txn = self._record(device.device_id, caller, TransactionState.COMMITTED)
        return TransactionResult(
            device_id=device.device_id,
            operation="apply_config",
            state=txn.state,
            committed=True,
            commands=[r.command for r in results],
            restore_point=point,
        )

    async def _commit_txn(
        self,
        txn: Transaction,
        handler: VendorHandler,
        confirm_within: Optional[float],
    ) -> list[str]:
        session = txn.session
        minutes = handler.confirm_minutes(confirm_within) if confirm_within else None
        # A failed commit leaves the candidate staged
        results = await self.executor.run_steps(session, handler.commit(minutes))
        self._committed.add(txn.device_id)

        if confirm_within:
            txn.move_to(TransactionState.CONFIRM_PENDING)
            txn.confirm_deadline = self._clock() + confirm_within
            logger.info(f"Commit on {txn.device_id} must be confirmed within {confirm_within}s")
        else:
            await self._leave_config(session, handler)
            await self._finish(txn, TransactionState.COMMITTED)
        return [r.command for r in results]

    async def commit(
        self,
        device: Device,
        confirm_within: Optional[float] = None,
        caller: str = DEFAULT_CALLER,
    ) -> TransactionResult:
        """Staged → Committed, optionally as a confirmed commit."""
        device_id = device.device_id
        handler = self._handler(device)
        if confirm_within is not None and confirm_within <= 0:
            raise errors.ConfigValidationError("confirm_within must be positive", device=device_id)
        if confirm_within is not None and not handler.supports_confirmed_commit():
            logger.info(f"{device.device_type} has no confirmed commits; committing unconditionally")
            confirm_within = None

        async with timed_section("commit", device_id, caller=caller):
            async with self._lease(device, caller, mutate=True) as lease:
                txn = lease.txn
                before = self._state(device_id)
                if txn is None or txn.state is not TransactionState.STAGED:
                    raise errors.NoStagedChanges("Nothing staged to commit", device=device_id)
                try:
                    commands = await self._commit_txn(txn, handler, confirm_within)
                except errors.NetOpsError as e:
                    self._audit(device_id, "commit", caller, False, {"confirm_within": confirm_within}, before, e)
                    raise
        self._audit(device_id, "commit", caller, True, {"confirm_within": confirm_within}, before)
        return TransactionResult(
            device_id=device_id,
            operation="commit",
            state=txn.state,
            committed=True,
            commands=commands,
            confirm_within=confirm_within,
        )

    async def confirm_commit(self, device: Device, caller: str = DEFAULT_CALLER) -> TransactionResult:
        """Make a confirmed commit permanent."""
        device_id = device.device_id
        handler = self._handler(device)
        async with timed_section("confirm_commit", device_id, caller=caller):
            async with self._lease(device, caller, mutate=True) as lease:
                txn = lease.txn
                if txn is None or txn.state is not TransactionState.CONFIRM_PENDING:
                    raise errors.NoPendingConfirmation("No confirmed commit is pending", device=device_id)
                results = await self.executor.run_steps(lease.session, handler.confirm_commit())
                await self._leave_config(lease.session, handler)
                await self._finish(txn, TransactionState.COMMITTED)
        self._audit(device_id, "confirm_commit", caller, True, before=TransactionState.CONFIRM_PENDING)
        return TransactionResult(
            device_id=device_id,
            operation="confirm_commit",
            state=TransactionState.COMMITTED,
            committed=True,
            commands=[r.command for r in results],
        )

    async def discard(self, device: Device, caller: str = DEFAULT_CALLER) -> TransactionResult:
        """Staged → NotStarted, dropping the candidate."""
        device_id = device.device_id
        handler = self._handler(device)
        async with timed_section("discard", device_id, caller=caller):
            async with self._lease(device, caller, mutate=True) as lease:
                txn = lease.txn
                if txn is None or txn.state is not TransactionState.STAGED:
                    raise errors.NoStagedChanges("Nothing staged to discard", device=device_id)
                commands = await self._discard_candidate(lease.session, handler)
                await self._finish(txn, TransactionState.NOT_STARTED)
        self._audit(device_id, "discard", caller, True, before=TransactionState.STAGED)
        return TransactionResult(
            device_id=device_id,
            operation="discard",
            state=TransactionState.NOT_STARTED,
            commands=commands,
        )

    async def rollback(self, device: Device, caller: str = DEFAULT_CALLER) -> TransactionResult:
        """Undo the most recent change.

        Staged candidate: discarded. Pending or completed commit on a
        staged vendor: reverted with the device's own rollback. NX-OS:
        rolled back to the newest checkpoint. IOS/IOS-XE: the newest stored
        snapshot is reapplied through a compensating diff, which is
        best-effort and not atomic. Without a target ``NoRestorePoint`` is
        raised.
        """
        device_id = device.device_id
        handler = self._handler(device)
        async with timed_section("rollback", device_id, caller=caller):
            async with self._lease(device, caller, mutate=True) as lease:
                before = self._state(device_id)
                try:
                    result = await self._rollback(device, handler, lease, caller)
                except errors.NetOpsError as e:
                    self._audit(device_id, "rollback", caller, False, before=before, error=e)
                    raise
        self._audit(device_id, "rollback", caller, True, before=before)
        return result

    async def _rollback(
        self,
        device: Device,
        handler: VendorHandler,
        lease: _Lease,
        caller: str,
    ) -> TransactionResult:
        device_id = device.device_id
        session = lease.session
        txn = lease.txn
        result = TransactionResult(device_id=device_id, operation="rollback", state=TransactionState.ROLLED_BACK)

        if handler.supports_staged_commit():
            if txn is not None and txn.state is TransactionState.STAGED:
                result.commands = await self._discard_candidate(session, handler)
                await self._finish(txn, TransactionState.ROLLED_BACK)
                return result
            if txn is None and device_id not in self._committed:
                raise errors.NoRestorePoint("No commit to roll back", device=device_id)
            await self._enter_config(session, handler)
            results = await self.executor.run_steps(session, handler.rollback())
            await self._leave_config(session, handler)
            self._committed.discard(device_id)
            if txn is not None:
                await self._finish(txn, TransactionState.ROLLED_BACK)
            else:
                self._record(device_id, caller, TransactionState.ROLLED_BACK)
            result.commands = [r.command for r in results]
            return result

        if handler.supports_checkpoint():
            names = self._checkpoints.get(device_id)
            if not names:
                raise errors.NoRestorePoint("No checkpoint to roll back to", device=device_id)
            results = await self.executor.run_steps(session, handler.rollback(names[-1]))
            result.restore_point = names.pop()
            result.commands = [r.command for r in results]
            await self._drop_checkpoint(device_id, handler, session, result.restore_point)
            self._record(device_id, caller, TransactionState.ROLLED_BACK)
            return result

        backup_ids = self._restore_points.get(device_id)
        if not backup_ids:
            raise errors.NoRestorePoint(
                "No backup to roll back to; take a backup before changing the device",
                device=device_id,
            )
        snapshot = await self.backups.get(backup_ids[-1])
        text = self._prepare_payload(device, handler, snapshot.content, snapshot.format)
        applied = await self._apply_direct(
            device, handler, session, text, True, snapshot.section, caller, restore_point=False
        )
        result.restore_point = backup_ids.pop()
        result.commands = applied.commands
        await self._drop_backup(result.restore_point)
        self._record(device_id, caller, TransactionState.ROLLED_BACK)
        return result

    async def backup(
        self,
        device: Device,
        description: str = "",
        section: Optional[str] = None,
        caller: str = DEFAULT_CALLER,
    ) -> str:
        """Capture the running configuration and persist it. Returns the backup id."""
        snapshot = await self.get_config(device, section=section, format=ConfigFormat.TEXT, caller=caller)
        snapshot.description = description
        backup_id = await self.backups.put(snapshot)
        handler = self._handler(device)
        if not handler.supports_staged_commit() and not handler.supports_checkpoint():
            await self._push_restore_point(device.device_id, backup_id)
        log_change(
            device.device_id, "backup", caller, True,
            parameters={"backup_id": backup_id, "section": section, "description": description},
        )
        return backup_id

    async def restore(
        self,
        device: Device,
        backup_id: str,
        commit_immediately: bool = True,
        caller: str = DEFAULT_CALLER,
    ) -> TransactionResult:
        """Reapply a stored snapshot with replace semantics."""
        snapshot = await self.backups.get(backup_id)
        if snapshot.device_type != device.device_type:
            raise errors.ConfigValidationError(
                "Backup was taken from a different device type",
                device=device.device_id,
                details={"backup_id": backup_id, "backup_device_type": snapshot.device_type},
            )
        if snapshot.device_id != device.device_id:
            logger.warning(f"Restoring backup {backup_id} of {snapshot.device_id} onto {device.device_id}")
        result = await self._apply(
            device, snapshot.content, snapshot.format, True, commit_immediately, snapshot.section, caller,
            operation="restore",
        )
        result.backup_id = backup_id
        return result

    async def transaction_state(self, device: Device, caller: Optional[str] = None) -> TransactionState:
        """State of the device's transaction as seen by ``caller``."""
        await self._expire_if_due(device.device_id)
        txn = self._transactions.get(device.device_id)
        if txn is None or (caller is not None and txn.caller != caller):
            return TransactionState.NOT_STARTED
        return txn.state

    def transaction(self, device_id: str) -> Optional[Transaction]:
        return self._transactions.get(device_id)

    def restore_points(self, device_id: str) -> list[str]:
        return list(self._checkpoints.get(device_id) or self._restore_points.get(device_id) or [])
