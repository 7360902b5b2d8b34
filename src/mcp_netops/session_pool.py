"""Session pool: persistent authenticated CLI sessions per device.

Sessions are reused across operations because opening one (TCP, SSH
handshake, login, privilege elevation, pagination setup) costs seconds on
most network OSes. Each device has its own slot guarded by its own
condition variable; at most one session per device is handed out at a time
and the number of live sessions never exceeds the device's
``max_sessions``.
"""
import asyncio
import itertools
import logging
import re
import time
from concurrent.futures import Executor
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

from . import errors
from .config.settings import CoreSettings
from .credentials import CredentialStore, Credentials
from .devices import VendorHandler, get_handler
from .devices.base import TerminalBlock
from .models import Device
from .transport import Transport, create_transport
from .utils.connection import retry_async, wait_jittered_exponential
from .utils.logging_config import timed

logger = logging.getLogger(__name__)

# Upper bound for a keepalive probe round trip
PROBE_TIMEOUT = 5.0
# Probe timeouts in a row after which a session is discarded
MAX_PROBE_TIMEOUTS = 2

_session_ids = itertools.count(1)


class SessionState(str, Enum):
    IDLE = "idle"
    IN_USE = "in_use"
    UNHEALTHY = "unhealthy"
    CLOSED = "closed"


class Session:
    """One authenticated CLI channel bound to one device."""

    def __init__(self, device: Device, transport: Transport, handler: VendorHandler, now: float):
        self.session_id = next(_session_ids)
        self.device = device
        self.transport = transport
        self.handler = handler
        self.state = SessionState.IN_USE
        self.created_at = now
        self.last_used = now
        self.consecutive_timeouts = 0
        self.in_config_mode = False
        self.evict_on_release = False
        self.unhealthy_reason: Optional[str] = None

    @property
    def device_id(self) -> str:
        return self.device.device_id

    @property
    def is_healthy(self) -> bool:
        return self.state in (SessionState.IDLE, SessionState.IN_USE) and self.transport.is_open

    def mark_unhealthy(self, reason: str) -> None:
        if self.state is not SessionState.CLOSED:
            self.state = SessionState.UNHEALTHY
        self.unhealthy_reason = reason
        logger.warning(f"Session {self.session_id} to {self.device_id} unhealthy: {reason}")

    async def exchange(self, line: str, timeout: float) -> str:
        """Send one line and return everything up to the next prompt."""
        await self.transport.send(f"{line}\n")
        return await self.transport.read_until(
            self.handler.prompt_pattern, self.handler.paging_pattern, timeout
        )

    async def exchange_block(self, block: TerminalBlock, timeout: float) -> str:
        """Send a terminal-input command with its body and terminator."""
        body = block.body if block.body.endswith("\n") else f"{block.body}\n"
        await self.transport.send(f"{block.command}\n{body}{block.terminator}")
        return await self.transport.read_until(
            self.handler.prompt_pattern, self.handler.paging_pattern, timeout
        )

    def __repr__(self) -> str:
        return f"Session({self.session_id}, device={self.device_id}, state={self.state.value})"


@dataclass
class _Slot:
    """Per-device session table entry."""
    cond: asyncio.Condition = field(default_factory=asyncio.Condition)
    idle: list[Session] = field(default_factory=list)
    active: Optional[Session] = None
    busy: bool = False
    opening: bool = False
    opened: int = 0
    peak: int = 0

    @property
    def live(self) -> int:
        return len(self.idle) + (self.active is not None) + self.opening

    def note_peak(self) -> None:
        self.peak = max(self.peak, self.live)


TransportFactory = Callable[[Device, Optional[Executor]], Transport]


class SessionPool:
    """Owns every device session for the lifetime of the core.

    Args:
        credentials: Resolves ``Device.credential_ref`` at session-open time.
        settings: Backoff, connect attempts and acquire timeout.
        transport_factory: Builds an unconnected transport for a device.
        io_executor: Thread pool for blocking transport calls.
        clock: Monotonic time source for idle and keepalive ages.
        sleep: Awaitable used between reconnect attempts.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        settings: Optional[CoreSettings] = None,
        transport_factory: TransportFactory = create_transport,
        io_executor: Optional[Executor] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable]] = None,
        handler_resolver: Callable[[str], VendorHandler] = get_handler,
    ):
        self.credentials = credentials
        self.settings = settings or CoreSettings()
        self._transport_factory = transport_factory
        self._io = io_executor
        self._clock = clock
        self._sleep = sleep
        self._handlers = handler_resolver
        self._backoff = wait_jittered_exponential.from_settings(self.settings)
        self._slots: dict[str, _Slot] = {}
        self._closed = False

    def _slot(self, device_id: str) -> _Slot:
        slot = self._slots.get(device_id)
        if slot is None:
            slot = self._slots[device_id] = _Slot()
        return slot

    # Acquire / release

    async def acquire(self, device: Device, timeout: Optional[float] = None) -> Session:
        """Hand out a ready session, waiting up to ``timeout`` for one to free up."""
        if self._closed:
            raise errors.ConnectionError("Session pool is closed", device=device.device_id)

        timeout = self.settings.acquire_timeout if timeout is None else timeout
        cap = max(1, device.options.max_sessions)
        slot = self._slot(device.device_id)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        stale: list[Session] = []

        async with slot.cond:
            while slot.busy or (not slot.idle and slot.live >= cap):
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise self._exhausted(device, timeout)
                try:
                    await asyncio.wait_for(slot.cond.wait(), remaining)
                except asyncio.TimeoutError:
                    raise self._exhausted(device, timeout) from None
            slot.busy = True
            session = self._take_idle(slot, device, stale)
            if session is None:
                slot.opening = True
                slot.note_peak()

        for old in stale:
            await self._close(old)

        try:
            if session is not None:
                session = await self._revalidate(session)
                if session is None:
                    slot.opening = True
                    slot.note_peak()
            if session is None:
                session = await self._open(device)
        except BaseException:
            async with slot.cond:
                slot.opening = False
                slot.busy = False
                slot.cond.notify_all()
            raise

        async with slot.cond:
            if slot.opening:
                slot.opened += 1
            slot.opening = False
            slot.active = session
            session.state = SessionState.IN_USE
            slot.note_peak()
        return session

    async def release(self, session: Session, healthy: bool = True) -> None:
        """Return a session to the idle list, or close it when unhealthy."""
        slot = self._slot(session.device_id)
        discard = None
        async with slot.cond:
            if slot.active is not session:
                logger.warning(f"Release of {session!r} which is not checked out")
                return
            slot.active = None
            slot.busy = False
            if healthy and session.is_healthy and not session.evict_on_release and not self._closed:
                session.state = SessionState.IDLE
                session.last_used = self._clock()
                slot.idle.append(session)
            else:
                if session.state is not SessionState.CLOSED:
                    session.state = SessionState.UNHEALTHY
                discard = session
            slot.cond.notify_all()
        if discard is not None:
            await self._close(discard)

    def _take_idle(self, slot: _Slot, device: Device, stale: list[Session]) -> Optional[Session]:
        """Pop the most recently used reusable idle session; collect expired ones."""
        now = self._clock()
        while slot.idle:
            session = slot.idle.pop()
            if not session.is_healthy:
                stale.append(session)
            elif now - session.last_used > device.options.idle_ttl:
                logger.debug(f"{session!r} exceeded idle TTL")
                stale.append(session)
            else:
                session.state = SessionState.IN_USE
                # Devices may have been edited since the session opened
                session.device = device
                return session
        return None

    async def _revalidate(self, session: Session) -> Optional[Session]:
        """Probe a session that sat idle longer than its keepalive interval."""
        keepalive = session.device.options.keepalive
        if not keepalive or self._clock() - session.last_used < keepalive:
            return session

        probe_timeout = min(PROBE_TIMEOUT, session.device.options.timeout)
        while True:
            try:
                await asyncio.wait_for(session.exchange("", probe_timeout), probe_timeout)
            except (asyncio.TimeoutError, TimeoutError):
                session.consecutive_timeouts += 1
                if session.consecutive_timeouts >= MAX_PROBE_TIMEOUTS:
                    session.mark_unhealthy("keepalive probe timed out twice")
                    break
                continue
            except (OSError, EOFError, errors.NetOpsError) as e:
                session.mark_unhealthy(f"keepalive probe failed: {e}")
                break
            session.consecutive_timeouts = 0
            session.last_used = self._clock()
            return session

        await self._close(session)
        return None

    def _exhausted(self, device: Device, timeout: float) -> errors.PoolExhausted:
        slot = self._slot(device.device_id)
        return errors.PoolExhausted(
            f"No session available within {timeout}s",
            device=device.device_id,
            details={"max_sessions": device.options.max_sessions, "live": slot.live},
        )

    # Opening

    @timed("open_session")
    async def _open(self, device: Device) -> Session:
        """Connect, authenticate and prepare a new session with bounded retries."""
        handler = self._handlers(device.device_type)
        credentials = self.credentials.resolve(device.credential_ref)
        attempts = max(1, self.settings.connect_attempts)

        async def attempt() -> Transport:
            transport = self._transport_factory(device, self._io)
            try:
                banner = await asyncio.wait_for(
                    transport.connect(credentials, handler.prompt_pattern),
                    device.options.connect_timeout,
                )
                await self._prepare(transport, handler, device, credentials, banner)
            except BaseException:
                await transport.close()
                raise
            return transport

        logger.info(f"Opening session to {device.device_id} at {device.host}:{device.port}")
        try:
            transport = await retry_async(attempt, attempts, self._backoff, sleep=self._sleep)
        except (asyncio.TimeoutError, TimeoutError, errors.ConnectTimeout) as e:
            raise errors.ConnectTimeout(
                f"Connect did not complete within {device.options.connect_timeout}s",
                device=device.device_id,
                details={"attempts": attempts, "host": device.host, "port": device.port},
            ) from e
        except errors.ConnectionError as e:
            raise errors.ConnectionError(
                e.message,
                device=device.device_id,
                details={**e.details, "attempts": attempts},
            ) from e
        except (OSError, EOFError) as e:
            raise errors.ConnectionError(
                f"Could not connect: {e}",
                device=device.device_id,
                details={"attempts": attempts, "host": device.host, "port": device.port},
            ) from e

        session = Session(device, transport, handler, self._clock())
        logger.info(f"Session {session.session_id} open to {device.device_id}")
        return session

    async def _prepare(
        self,
        transport: Transport,
        handler: VendorHandler,
        device: Device,
        credentials: Credentials,
        banner: str,
    ) -> None:
        """Privilege elevation and pagination setup on a fresh transport."""
        timeout = device.options.timeout

        if handler.elevation_command and device.options.enable_required and not handler.is_privileged(banner):
            either = re.compile(f"{handler.password_pattern.pattern}|{handler.prompt_pattern.pattern}")
            await transport.send(f"{handler.elevation_command}\n")
            output = await transport.read_until(either, timeout=timeout)
            if handler.password_pattern.search(output):
                secret = credentials.enable_secret or credentials.password or ""
                await transport.send(f"{secret}\n")
                output = await transport.read_until(either, timeout=timeout)
            if not handler.is_privileged(output):
                raise errors.ConnectionError("Privilege elevation failed", device=device.device_id)
            logger.debug(f"Privileged mode on {device.device_id}")

        for command in handler.setup_commands:
            await transport.send(f"{command}\n")
            output = await transport.read_until(
                handler.prompt_pattern, handler.paging_pattern, timeout=timeout
            )
            error = handler.detect_error(handler.clean_output(output, command))
            if error:
                logger.warning(f"Setup command {command!r} rejected by {device.device_id}: {error}")

    # Eviction / shutdown

    async def evict(self, device_id: str) -> int:
        """Close idle sessions of a device; the checked-out one closes on release."""
        slot = self._slots.get(device_id)
        if slot is None:
            return 0
        async with slot.cond:
            victims, slot.idle = slot.idle, []
            if slot.active is not None:
                slot.active.evict_on_release = True
        for session in victims:
            await self._close(session)
        if victims:
            logger.info(f"Evicted {len(victims)} idle session(s) for {device_id}")
        return len(victims)

    async def close_all(self) -> None:
        """Drain every slot. Further acquires fail."""
        self._closed = True
        for device_id in list(self._slots):
            await self.evict(device_id)
        logger.info("Session pool closed")

    async def _close(self, session: Session) -> None:
        session.state = SessionState.CLOSED
        try:
            await session.transport.close()
        except (OSError, EOFError) as e:
            logger.debug(f"Error closing {session!r}: {e}")
        logger.debug(f"Closed {session!r}")

    # Introspection

    def stats(self, device_id: str) -> dict:
        slot = self._slots.get(device_id)
        if slot is None:
            return {"idle": 0, "in_use": 0, "opening": 0, "opened": 0, "peak": 0}
        return {
            "idle": len(slot.idle),
            "in_use": int(slot.active is not None),
            "opening": int(slot.opening),
            "opened": slot.opened,
            "peak": slot.peak,
        }
