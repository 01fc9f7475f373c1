from __future__ import annotations

import ipaddress
import re
from typing import Any, List, Optional, Tuple
from urllib.parse import urlparse

_GROUP_SPLIT_RE = re.compile(r"[，,;/|]+")


def split_host_port(addr: str) -> Tuple[str, Optional[int]]:
    """Split host:port (or [ipv6]:port) as found in forward remote addresses."""
    addr = (addr or "").strip()
    if not addr:
        return "", None
    if addr.startswith("["):
        if "]" in addr:
            host = addr[1 : addr.index("]")]
            rest = addr[addr.index("]") + 1 :]
            if rest.startswith(":"):
                try:
                    return host, int(rest[1:])
                except Exception:
                    return host, None
            return host, None
        return addr, None
    if addr.count(":") == 1:
        host, p = addr.rsplit(":", 1)
        try:
            return host, int(p)
        except Exception:
            return addr, None
    return addr, None


def format_host_for_url(host: str) -> str:
    """Wrap IPv6 literals in brackets: 2001:db8::1 -> [2001:db8::1]."""
    h = (host or "").strip()
    if not h:
        return h
    if h.startswith("[") and h.endswith("]"):
        return h
    if ":" in h:
        core = h.split("%", 1)[0]
        try:
            if ipaddress.ip_address(core).version == 6:
                return f"[{h}]"
        except ValueError:
            if h.count(":") > 1:
                return f"[{h}]"
    return h


def format_addr(host: str, port: int) -> str:
    return f"{format_host_for_url(host)}:{int(port)}"


def normalize_host_input(h: str) -> str:
    """Host without scheme or port; accepts URLs, host:port, [ipv6]:port and raw hosts."""
    h = (h or "").strip()
    if not h:
        return ""
    if "://" in h:
        try:
            return urlparse(h).hostname or ""
        except ValueError:
            return ""
    if h.startswith("["):
        host, _ = split_host_port(h)
        return host
    if h.count(":") == 1:
        host, port = split_host_port(h)
        if port is not None:
            return host.strip()
    return h


def first_address(value: Any) -> str:
    """Backend node addresses are comma lists; the first entry is the public one."""
    for part in str(value or "").split(","):
        p = normalize_host_input(part)
        if p:
            return p
    return ""


def split_groups(value: Any) -> List[str]:
    """Split a group string (comma / fullwidth comma / ; / | separated), keeping order."""
    if isinstance(value, (list, tuple, set)):
        items = [str(x or "") for x in value]
    else:
        items = _GROUP_SPLIT_RE.split(str(value or ""))
    out: List[str] = []
    for it in items:
        s = it.strip()
        if s and s not in out:
            out.append(s)
    return out


def safe_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(float(value))
    except Exception:
        return default


def safe_int_list(values: Any) -> List[int]:
    """Convert an iterable of values to a list of ints; drop invalid items."""
    out: List[int] = []
    if isinstance(values, str):
        values = [x for x in values.split(",") if x.strip()]
    if not isinstance(values, (list, tuple, set)):
        return out
    for v in values:
        try:
            out.append(int(v))
        except Exception:
            continue
    return out
