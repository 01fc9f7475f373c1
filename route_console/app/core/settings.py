from __future__ import annotations

import os


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() not in ("0", "false", "off", "no")


def _env_float(name: str, default: float, lo: float, hi: float) -> float:
    try:
        v = float(str(os.getenv(name, str(default))).strip() or default)
    except Exception:
        v = float(default)
    if v < lo:
        v = lo
    if v > hi:
        v = hi
    return float(v)


def _env_int(name: str, default: int, lo: int, hi: int) -> int:
    try:
        v = int(float(str(os.getenv(name, str(default))).strip() or default))
    except Exception:
        v = int(default)
    if v < lo:
        v = lo
    if v > hi:
        v = hi
    return int(v)


def _env_str(name: str, default: str = "") -> str:
    return str(os.getenv(name, default) or "").strip()


# Backend panel API (tunnels / forwards / nodes / exits)
PANEL_URL = _env_str("ROUTE_CONSOLE_PANEL_URL", "http://127.0.0.1:6365")
PANEL_TOKEN = _env_str("ROUTE_CONSOLE_PANEL_TOKEN")
PANEL_VERIFY_TLS = _env_flag("ROUTE_CONSOLE_VERIFY_TLS", True)
HTTP_TIMEOUT = _env_float("ROUTE_CONSOLE_HTTP_TIMEOUT", 6.0, 1.0, 60.0)
HTTP_RETRIES = _env_int("ROUTE_CONSOLE_HTTP_RETRIES", 3, 1, 10)
HTTP_RETRY_BACKOFF_BASE_SEC = _env_float("ROUTE_CONSOLE_HTTP_RETRY_BACKOFF", 0.35, 0.05, 5.0)

# Inventory snapshot reuse between editing sessions
INVENTORY_TTL_SEC = _env_float("ROUTE_CONSOLE_INVENTORY_TTL", 15.0, 0.0, 3600.0)

# Node port range used when the backend reports 0 / missing bounds
DEFAULT_PORT_RANGE_START = 10000
DEFAULT_PORT_RANGE_END = 65535

# When every port in a node range is taken, recommend_port either falls back to
# the range start (default) or raises PortInvalid(code="exhausted").
STRICT_PORT_EXHAUSTION = _env_flag("ROUTE_CONSOLE_STRICT_PORT_EXHAUSTION", False)

# Background submission jobs
JOB_TTL_SEC = _env_int("ROUTE_CONSOLE_JOB_TTL_SEC", 1800, 120, 7 * 24 * 3600)

# Presentation API guard (empty = disabled)
API_KEY = _env_str("ROUTE_CONSOLE_API_KEY")
