from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from .settings import _env_int

_LOG_SETUP_DONE = False


def _log_level() -> int:
    raw = str(os.getenv("ROUTE_CONSOLE_LOG_LEVEL", "INFO") or "INFO").strip().upper()
    return int(getattr(logging, raw, logging.INFO))


def _log_file() -> Path:
    raw = str(os.getenv("ROUTE_CONSOLE_LOG_FILE", "/var/log/route-console/console.log") or "").strip()
    if not raw:
        raw = "/var/log/route-console/console.log"
    return Path(raw)


def _truncate(val: Any, max_len: int = 400) -> str:
    if isinstance(val, str):
        s = val
    else:
        try:
            s = repr(val)
        except Exception:
            s = str(val)
    if len(s) <= max_len:
        return s
    return s[:max_len] + "…"


def _fallback_path(path: Path) -> Path:
    return Path("/tmp/route-console") / path.name


def _select_writable_path(primary: Path) -> Optional[Path]:
    try:
        primary.parent.mkdir(parents=True, exist_ok=True)
        return primary
    except OSError:
        pass
    selected = _fallback_path(primary)
    try:
        selected.parent.mkdir(parents=True, exist_ok=True)
        return selected
    except OSError:
        return None


def _runtime_formatter() -> logging.Formatter:
    return logging.Formatter("%(asctime)s %(levelname)s %(process)d %(name)s | %(message)s")


def configure_runtime_logging() -> None:
    global _LOG_SETUP_DONE
    if _LOG_SETUP_DONE:
        return

    level = _log_level()
    root = logging.getLogger()
    root.setLevel(level)
    fmt = _runtime_formatter()

    # Keep stdout logging when root has no handlers (development mode).
    if not root.handlers:
        sh = logging.StreamHandler(sys.stdout)
        sh.setLevel(level)
        sh.setFormatter(fmt)
        setattr(sh, "_route_console_handler", "stdout")
        root.addHandler(sh)

    selected = _select_writable_path(_log_file())
    try:
        if selected is None:
            raise RuntimeError("no writable log directory")
        max_bytes = _env_int("ROUTE_CONSOLE_LOG_MAX_BYTES", 5 * 1024 * 1024, 256 * 1024, 512 * 1024 * 1024)
        backups = _env_int("ROUTE_CONSOLE_LOG_BACKUP_COUNT", 5, 1, 50)
        already = any(
            getattr(h, "_route_console_handler", "") == "file" and getattr(h, "baseFilename", "") == str(selected)
            for h in root.handlers
        )
        if not already:
            fh = RotatingFileHandler(str(selected), maxBytes=int(max_bytes), backupCount=int(backups), encoding="utf-8")
            fh.setLevel(level)
            fh.setFormatter(fmt)
            setattr(fh, "_route_console_handler", "file")
            root.addHandler(fh)
    except Exception:
        logging.getLogger(__name__).exception("failed to setup file logging")

    _LOG_SETUP_DONE = True
    logging.getLogger(__name__).info("runtime logging enabled")


def install_asyncio_exception_logging() -> None:
    loop = asyncio.get_running_loop()
    if bool(getattr(loop, "_route_console_asyncio_handler_installed", False)):
        return
    logger = logging.getLogger("route_console.asyncio")
    prev = loop.get_exception_handler()

    def _handler(lp: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        exc = context.get("exception")
        msg = str(context.get("message") or "unhandled asyncio exception")
        extra = {str(k): _truncate(v) for k, v in context.items() if k != "exception"}
        if exc is not None:
            logger.error("%s context=%s", msg, extra, exc_info=exc)
        else:
            logger.error("%s context=%s", msg, extra)
        try:
            if prev is not None:
                prev(lp, context)
            else:
                lp.default_exception_handler(context)
        except Exception:
            logger.exception("asyncio previous exception handler failed")

    loop.set_exception_handler(_handler)
    setattr(loop, "_route_console_asyncio_handler_installed", True)
