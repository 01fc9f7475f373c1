from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Union

from ..core.errors import PortInvalid, StructuralInvalid
from ..models import (
    AddNodeCommand,
    AssignPortCommand,
    ExternalExit,
    Hop,
    Inventory,
    LinkMode,
    ManagedExit,
    Node,
    RemoveHopCommand,
    ReorderHopCommand,
    Route,
    RouteCommand,
    SetBindIpCommand,
    SetExitCommand,
    SetLinkModeCommand,
    SetProtocolCommand,
    hop_key,
)
from ..utils.validate import MSG_EXTERNAL_NOT_LAST
from .edge_modes import rebuild
from .ports import recommend_port

logger = logging.getLogger(__name__)


def _is_terminal_exit(hops: Sequence[Hop], idx: int, inventory: Inventory) -> bool:
    # A single hop is the entry first; its exit port only feeds the remote address.
    return len(hops) >= 2 and idx == len(hops) - 1 and inventory.is_exit_capable(hops[idx])


def _fill_hop_port(hops: Sequence[Hop], idx: int, inventory: Inventory) -> Hop:
    hop = hops[idx]
    if hop.kind != "node":
        return hop

    if _is_terminal_exit(hops, idx, inventory):
        fixed = inventory.exit_port(hop.node_id, hop.protocol)
        if fixed is None:
            if hop.port_auto:
                return hop.model_copy(update={"port": None, "port_auto": False})
            return hop
        if hop.port == fixed and hop.port_auto:
            return hop
        return hop.model_copy(update={"port": fixed, "port_auto": True})

    if hop.port is not None and not hop.port_auto:
        return hop
    node = inventory.node(hop.node_id)
    if node is None:
        return hop
    try:
        rec: Optional[int] = recommend_port(node)
    except PortInvalid:
        rec = None
    if rec is None:
        return hop.model_copy(update={"port": None, "port_auto": False})
    if hop.port == rec and hop.port_auto:
        return hop
    return hop.model_copy(update={"port": rec, "port_auto": True})


def fill_default_ports(route: Route, inventory: Inventory) -> Route:
    """Give every unassigned node hop its default port.

    Entry and relay hops get the node's recommended free port; a managed exit
    at the terminal position gets its provisioned protocol port. Ports typed
    by the operator are left alone.
    """
    hops = list(route.hops)
    filled = tuple(_fill_hop_port(hops, idx, inventory) for idx in range(len(hops)))
    if filled == route.hops:
        return route
    return route.model_copy(update={"hops": filled})


def _finish(old: Route, new_hops: Sequence[Hop], inventory: Inventory) -> Route:
    return fill_default_ports(rebuild(old, new_hops), inventory)


def _require_hop(route: Route, key: str) -> int:
    idx = route.index_of(key)
    if idx < 0:
        raise StructuralInvalid(f"hop {key} is not part of the route.")
    return idx


def _has_interior_external(hops: Sequence[Hop]) -> bool:
    return any(h.kind == "external" for h in hops[:-1])


# ---------------------------------------------------------------------------
# Structural operations
# ---------------------------------------------------------------------------


def add_node_hop(route: Route, node: Node, inventory: Inventory) -> Route:
    """Toggle `node` in the route.

    A node already present is removed. A new node goes right before the
    terminal hop when that hop is exit-capable, so the exit stays last;
    otherwise it is appended.
    """
    key = hop_key("node", node.id)
    hops: List[Hop] = list(route.hops)
    if any(h.key == key for h in hops):
        return _finish(route, [h for h in hops if h.key != key], inventory)

    hop = Hop(kind="node", node_id=node.id)
    if hops and inventory.is_exit_capable(hops[-1]):
        hops.insert(len(hops) - 1, hop)
    else:
        hops.append(hop)
    return _finish(route, hops, inventory)


def set_exit_hop(
    route: Route,
    exit_desc: Union[ManagedExit, ExternalExit],
    inventory: Inventory,
    protocol: Optional[str] = None,
) -> Route:
    """Put an exit at the terminal position.

    Only one external exit may be present, so adding one strips the others.
    A managed exit replaces any hop already standing for the same node.
    """
    hops: List[Hop] = list(route.hops)
    if isinstance(exit_desc, ExternalExit):
        proto = (protocol or exit_desc.protocol or None)
        hop = Hop(kind="external", exit_id=exit_desc.exit_id, protocol=proto)
        hops = [h for h in hops if h.kind != "external" and h.key != hop.key]
        hops.append(hop)
        return _finish(route, hops, inventory)

    proto = _managed_protocol(exit_desc, protocol)
    key = hop_key("node", exit_desc.node_id)
    previous = next((h for h in hops if h.key == key), None)
    hop = Hop(
        kind="node",
        node_id=exit_desc.node_id,
        protocol=proto,
        bind_ip=previous.bind_ip if previous is not None else None,
    )
    hops = [h for h in hops if h.key != key]
    hops.append(hop)
    return _finish(route, hops, inventory)


def _managed_protocol(exit_desc: ManagedExit, protocol: Optional[str]) -> Optional[str]:
    proto = str(protocol or "").strip().lower()
    if not proto:
        return exit_desc.preferred_protocol()
    if exit_desc.supported_protocols and proto not in exit_desc.supported_protocols:
        raise StructuralInvalid(f"exit node {exit_desc.name or exit_desc.node_id} does not provide {proto}.")
    return proto


def remove_hop(route: Route, key: str, inventory: Inventory) -> Route:
    _require_hop(route, key)
    return _finish(route, [h for h in route.hops if h.key != key], inventory)


def reorder_hop(route: Route, from_index: int, to_index: int, inventory: Inventory) -> Route:
    """Move a hop; the move is refused if an external exit would end up inside the route."""
    n = len(route.hops)
    if not (0 <= from_index < n) or not (0 <= to_index < n):
        raise StructuralInvalid("hop position out of range.")
    if from_index == to_index:
        return route
    hops: List[Hop] = list(route.hops)
    hop = hops.pop(from_index)
    hops.insert(to_index, hop)
    if _has_interior_external(hops):
        raise StructuralInvalid(MSG_EXTERNAL_NOT_LAST)
    return _finish(route, hops, inventory)


def assign_port(route: Route, key: str, port: Optional[int], inventory: Inventory) -> Route:
    """Set the operator port of a node hop; None hands it back to the recommendation."""
    idx = _require_hop(route, key)
    hop = route.hops[idx]
    if hop.kind != "node":
        raise StructuralInvalid("external exit ports come from the exit definition.")
    updated = hop.model_copy(update={"port": None if port is None else int(port), "port_auto": port is None})
    hops = list(route.hops)
    hops[idx] = updated
    return fill_default_ports(route.model_copy(update={"hops": tuple(hops)}), inventory)


# ---------------------------------------------------------------------------
# Per-edge / per-hop attributes (no structural change)
# ---------------------------------------------------------------------------


def set_link_mode(route: Route, index: int, mode: LinkMode) -> Route:
    edges = max(len(route.hops) - 1, 0)
    if not (0 <= index < edges):
        raise StructuralInvalid("link position out of range.")
    modes = list(route.link_modes[:edges])
    while len(modes) < edges:
        modes.append("direct")
    modes[index] = mode
    return route.model_copy(update={"link_modes": tuple(modes)})


def set_bind_ip(route: Route, key: str, ip: Optional[str]) -> Route:
    idx = _require_hop(route, key)
    hop = route.hops[idx]
    if hop.kind != "node":
        raise StructuralInvalid("bind IP is only available on node hops.")
    value = str(ip or "").strip() or None
    hops = list(route.hops)
    hops[idx] = hop.model_copy(update={"bind_ip": value})
    return route.model_copy(update={"hops": tuple(hops)})


def set_protocol(route: Route, key: str, protocol: str, inventory: Inventory) -> Route:
    idx = _require_hop(route, key)
    hop = route.hops[idx]
    proto = str(protocol or "").strip().lower() or None
    if hop.kind == "node":
        ex = inventory.managed_exit(hop.node_id)
        if ex is None:
            raise StructuralInvalid(f"node {hop.node_id} is not an exit.")
        proto = _managed_protocol(ex, proto)
    hops = list(route.hops)
    hops[idx] = hop.model_copy(update={"protocol": proto})
    return fill_default_ports(route.model_copy(update={"hops": tuple(hops)}), inventory)


# ---------------------------------------------------------------------------
# Command dispatch (presentation layer entry point)
# ---------------------------------------------------------------------------


def mutate(route: Route, command: RouteCommand, inventory: Inventory) -> Route:
    """Apply one editing command; raises StructuralInvalid and leaves `route` untouched on refusal."""
    if isinstance(command, AddNodeCommand):
        node = inventory.node(command.node_id)
        if node is None:
            raise StructuralInvalid(f"node {command.node_id} does not exist.")
        return add_node_hop(route, node, inventory)

    if isinstance(command, SetExitCommand):
        exit_desc: Union[ManagedExit, ExternalExit, None]
        if command.source == "external":
            exit_desc = inventory.external_exit(command.exit_id)
        else:
            exit_desc = inventory.managed_exit(command.node_id)
        if exit_desc is None:
            raise StructuralInvalid("selected exit does not exist.")
        return set_exit_hop(route, exit_desc, inventory, command.protocol)

    if isinstance(command, RemoveHopCommand):
        return remove_hop(route, command.key, inventory)

    if isinstance(command, ReorderHopCommand):
        return reorder_hop(route, command.from_index, command.to_index, inventory)

    if isinstance(command, AssignPortCommand):
        return assign_port(route, command.key, command.port, inventory)

    if isinstance(command, SetLinkModeCommand):
        return set_link_mode(route, command.index, command.mode)

    if isinstance(command, SetBindIpCommand):
        return set_bind_ip(route, command.key, command.ip)

    if isinstance(command, SetProtocolCommand):
        return set_protocol(route, command.key, command.protocol, inventory)

    logger.warning("unsupported route command: %r", command)
    raise StructuralInvalid("unsupported route command.")
