"""Command executor: run commands on a device over a pooled session."""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Sequence

from . import errors
from .devices.base import Step, TerminalBlock
from .models import BatchResult, CommandResult, Device
from .session_pool import Session, SessionPool
from .utils.logging_config import timed_section

logger = logging.getLogger(__name__)


class CommandExecutor:
    """Sends commands through a device's handler and interprets the replies.

    A command that times out, is cancelled or breaks the channel leaves its
    session unhealthy, so the pool closes it instead of reusing it.
    Device-reported errors are not exceptions: they come back as a
    ``CommandResult`` with ``success=False``.
    """

    def __init__(self, pool: SessionPool):
        self.pool = pool

    @asynccontextmanager
    async def session(self, device: Device, timeout: Optional[float] = None) -> AsyncIterator[Session]:
        """Check out a session for the duration of the block."""
        session = await self.pool.acquire(device, timeout)
        try:
            yield session
        finally:
            await self.pool.release(session, healthy=session.is_healthy)

    async def execute(
        self,
        device: Device,
        command: str,
        timeout: Optional[float] = None,
        parser: Optional[str] = None,
    ) -> CommandResult:
        """Run one command on its own session checkout."""
        async with timed_section("execute", device.device_id):
            async with self.session(device) as session:
                return await self.run(session, command, timeout, parser)

    async def execute_batch(
        self,
        device: Device,
        commands: Sequence[str],
        timeout: Optional[float] = None,
        best_effort: bool = False,
        parser: Optional[str] = None,
    ) -> BatchResult:
        """Run commands in order on one session.

        Stops at the first device-reported error unless ``best_effort`` is
        set; the commands not run are listed in ``skipped``.
        """
        async with timed_section("execute_batch", device.device_id, commands=len(commands)):
            async with self.session(device) as session:
                return await self.run_batch(session, commands, timeout, best_effort, parser)

    async def run_batch(
        self,
        session: Session,
        commands: Sequence[str],
        timeout: Optional[float] = None,
        best_effort: bool = False,
        parser: Optional[str] = None,
    ) -> BatchResult:
        batch = BatchResult(device_id=session.device_id, best_effort=best_effort)
        for i, command in enumerate(commands):
            result = await self.run(session, command, timeout, parser)
            batch.results.append(result)
            if not result.success and not best_effort:
                batch.skipped = list(commands[i + 1:])
                logger.warning(
                    f"Batch on {session.device_id} stopped at {command!r}: {result.error}"
                )
                break
        return batch

    async def run(
        self,
        session: Session,
        command: Step,
        timeout: Optional[float] = None,
        parser: Optional[str] = None,
    ) -> CommandResult:
        """Run one command (or terminal block) on an already checked-out session."""
        handler = session.handler
        timeout = timeout or session.device.options.timeout
        if isinstance(command, TerminalBlock):
            label = command.command
            exchange = session.exchange_block(command, timeout)
        else:
            label = handler.format_command(command, session.in_config_mode)
            exchange = session.exchange(label, timeout)

        start = time.perf_counter()
        try:
            raw = await asyncio.wait_for(exchange, timeout)
        except (asyncio.TimeoutError, TimeoutError):
            session.mark_unhealthy(f"command timed out: {label!r}")
            raise errors.CommandTimeout(
                f"No prompt within {timeout}s",
                device=session.device_id,
                details={"command": label, "timeout": timeout},
            ) from None
        except asyncio.CancelledError:
            session.mark_unhealthy(f"cancelled during {label!r}")
            raise
        except (OSError, EOFError) as e:
            session.mark_unhealthy(f"I/O error: {e}")
            raise errors.CommandError(
                f"Channel failed: {e}",
                device=session.device_id,
                details={"command": label},
            ) from e
        elapsed_ms = (time.perf_counter() - start) * 1000

        session.consecutive_timeouts = 0
        output = handler.clean_output(raw, label)
        error = handler.detect_error(output)
        result = CommandResult(
            command=label,
            output=output,
            success=error is None,
            device_id=session.device_id,
            error=error,
            elapsed_ms=elapsed_ms,
            raw=raw,
        )
        if error:
            logger.info(f"{session.device_id} rejected {label!r}: {error}")
        elif parser:
            result.structured = handler.parse_output(output, parser)
        return result

    async def run_steps(
        self,
        session: Session,
        steps: Sequence[Step],
        timeout: Optional[float] = None,
    ) -> list[CommandResult]:
        """Run configuration steps in order, raising ``ConfigError`` on the first rejection."""
        results = []
        for step in steps:
            result = await self.run(session, step, timeout)
            results.append(result)
            if not result.success:
                raise errors.ConfigError(
                    f"Device rejected configuration: {result.error}",
                    device=session.device_id,
                    details={
                        "command": result.command,
                        "output": result.output,
                        "applied": len(results) - 1,
                    },
                )
        return results
