from __future__ import annotations

from typing import Iterable, Optional, Set, Tuple

from ..core.errors import PortInvalid
from ..core.settings import DEFAULT_PORT_RANGE_END, DEFAULT_PORT_RANGE_START, STRICT_PORT_EXHAUSTION
from ..models import Node

ISSUE_OUT_OF_RANGE = "out_of_range"
ISSUE_IN_USE = "in_use"
ISSUE_EXHAUSTED = "exhausted"


def node_port_range(node: Optional[Node]) -> Tuple[int, int]:
    """Effective [start, end] of a node; missing/zero bounds fall back to defaults."""
    if node is None:
        return DEFAULT_PORT_RANGE_START, DEFAULT_PORT_RANGE_END
    start = int(node.port_range_start or 0)
    end = int(node.port_range_end or 0)
    if start <= 0:
        start = DEFAULT_PORT_RANGE_START
    if end <= 0:
        end = DEFAULT_PORT_RANGE_END
    return start, end


def _as_port_set(values: Optional[Iterable[int]]) -> Set[int]:
    out: Set[int] = set()
    for v in values or ():
        try:
            p = int(v)
        except Exception:
            continue
        if p > 0:
            out.add(p)
    return out


def recommend_port(node: Node, used_ports: Optional[Iterable[int]] = None, *, strict: Optional[bool] = None) -> int:
    """Smallest free port in the node range.

    The recommendation is advisory: nothing is reserved, and submit still
    checks the port against the used set. When the whole range is taken the
    range start is returned (or PortInvalid is raised in strict mode).
    """
    start, end = node_port_range(node)
    used = _as_port_set(node.used_ports if used_ports is None else used_ports)
    for port in range(start, end + 1):
        if port not in used:
            return port
    if STRICT_PORT_EXHAUSTION if strict is None else strict:
        raise PortInvalid(
            f"no free port left on node {node.name or node.id} ({start}-{end})",
            issue=ISSUE_EXHAUSTED,
            node_id=node.id,
        )
    return start


def check_port(
    port: int,
    start: int,
    end: int,
    used_ports: Optional[Iterable[int]] = None,
    exemption_port: Optional[int] = None,
) -> Optional[str]:
    """Return the issue code for `port`, or None when it is acceptable."""
    try:
        p = int(port)
    except Exception:
        return ISSUE_OUT_OF_RANGE
    if p < 1 or p > 65535 or p < int(start) or p > int(end):
        return ISSUE_OUT_OF_RANGE
    if p in _as_port_set(used_ports):
        if exemption_port is not None and p == int(exemption_port):
            return None
        return ISSUE_IN_USE
    return None


def validate_port(
    port: int,
    start: int,
    end: int,
    used_ports: Optional[Iterable[int]] = None,
    exemption_port: Optional[int] = None,
) -> None:
    """Raise PortInvalid when `port` is out of range or already taken.

    `exemption_port` lets an edit keep the port the route already owns.
    """
    issue = check_port(port, start, end, used_ports, exemption_port)
    if issue is None:
        return
    if issue == ISSUE_OUT_OF_RANGE:
        raise PortInvalid(f"port {port} must be within {start}-{end}", issue=issue, port=_safe_int(port))
    raise PortInvalid(f"port {port} is already in use", issue=issue, port=_safe_int(port))


def validate_node_port(node: Node, port: int, exemption_port: Optional[int] = None) -> None:
    start, end = node_port_range(node)
    try:
        validate_port(port, start, end, node.used_ports, exemption_port)
    except PortInvalid as exc:
        exc.node_id = node.id
        raise


def _safe_int(v: object) -> Optional[int]:
    try:
        return int(v)  # type: ignore[arg-type]
    except Exception:
        return None
