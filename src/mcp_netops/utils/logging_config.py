"""Logging setup and performance timing.

Package modules log under ``mcp_netops.*`` and audit records under
``netops.audit``. ``netops.perf`` carries one line per timed operation
and goes to its own file.

Environment Variables:
    NETOPS_LOG_LEVEL: Console level (default: INFO)
    NETOPS_LOG_FILE: Main log file (default: ~/.netops/netops.log)
    NETOPS_LOG_MAX_SIZE: Rotation size in MB (default: 10)
    NETOPS_LOG_BACKUPS: Rotated files to keep (default: 5)
"""
import asyncio
import functools
import logging
import os
import time
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Optional, Union

perf_logger = logging.getLogger("netops.perf")

MAIN_FORMAT = "%(asctime)s.%(msecs)03d | %(name)-32s | %(levelname)-7s | %(message)s"
PERF_FORMAT = "%(asctime)s.%(msecs)03d | PERF | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# (logger, handler) pairs installed by setup_logging, removed on the next call
_installed: list[tuple[logging.Logger, logging.Handler]] = []


def _rotating(path: Path, fmt: str) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        path,
        maxBytes=int(os.environ.get("NETOPS_LOG_MAX_SIZE", "10")) * 1024 * 1024,
        backupCount=int(os.environ.get("NETOPS_LOG_BACKUPS", "5")),
        encoding="utf-8",
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(fmt, datefmt=DATE_FORMAT))
    return handler


def _install(logger: logging.Logger, handler: logging.Handler) -> None:
    logger.addHandler(handler)
    _installed.append((logger, handler))


def setup_logging(level: Optional[str] = None, log_file: Union[str, Path, None] = None) -> Path:
    """Attach console and rotating file handlers. Safe to call again.

    The console follows ``level`` (or NETOPS_LOG_LEVEL); files always get
    DEBUG. Returns the main log file path.
    """
    for logger, handler in _installed:
        logger.removeHandler(handler)
        handler.close()
    _installed.clear()

    level_name = (level or os.environ.get("NETOPS_LOG_LEVEL", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    path = Path(log_file or os.environ.get("NETOPS_LOG_FILE", Path.home() / ".netops" / "netops.log"))
    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    console = logging.StreamHandler()
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(MAIN_FORMAT, datefmt=DATE_FORMAT))
    main_file = _rotating(path, MAIN_FORMAT)

    for name in ("mcp_netops", "netops"):
        logger = logging.getLogger(name)
        logger.setLevel(logging.DEBUG)
        _install(logger, console)
        _install(logger, main_file)

    perf_path = path.with_name(f"{path.stem}-perf{path.suffix}")
    perf_logger.setLevel(logging.DEBUG)
    perf_logger.propagate = False
    _install(perf_logger, _rotating(perf_path, PERF_FORMAT))

    logging.getLogger("mcp_netops").info(
        f"Logging initialized: level={logging.getLevelName(console_level)}, file={path}, perf={perf_path}"
    )
    return path


def _perf_line(operation: str, device_id: Optional[str], elapsed_ms: float, status: str, extra: str = "") -> str:
    msg = f"{operation:20s} | {device_id or 'N/A':15s} | {elapsed_ms:8.2f}ms | {status}"
    if extra:
        msg += f" | {extra}"
    return msg


def timed(operation: str, device_id: Optional[str] = None):
    """Log the duration of a coroutine function on ``netops.perf``.

    The device id comes from ``device_id``, else a ``device_id`` attribute
    on the first argument, else the ``device`` argument.
    """
    def decorator(func: Callable) -> Callable:
        if not asyncio.iscoroutinefunction(func):
            raise TypeError("timed() only wraps coroutine functions")

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            dev_id = device_id
            if dev_id is None and args:
                dev_id = getattr(args[0], "device_id", None)
            if dev_id is None:
                device = kwargs.get("device") or (args[1] if len(args) > 1 else None)
                dev_id = getattr(device, "device_id", None)

            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.warning(_perf_line(operation, dev_id, elapsed, f"FAIL: {type(e).__name__}"))
                raise
            elapsed = (time.perf_counter() - start) * 1000
            perf_logger.info(_perf_line(operation, dev_id, elapsed, "OK"))
            return result

        return wrapper

    return decorator


@asynccontextmanager
async def timed_section(operation: str, device_id: Optional[str] = None, **extra):
    """Time an ``async with`` block; keyword extras are appended as key=value."""
    start = time.perf_counter()
    extra_str = " | ".join(f"{k}={v}" for k, v in extra.items())
    try:
        yield
    except BaseException as e:
        elapsed = (time.perf_counter() - start) * 1000
        perf_logger.warning(_perf_line(operation, device_id, elapsed, f"FAIL: {type(e).__name__}", extra_str))
        raise
    elapsed = (time.perf_counter() - start) * 1000
    perf_logger.info(_perf_line(operation, device_id, elapsed, "OK", extra_str))
