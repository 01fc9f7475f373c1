from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..clients.panel_api import PanelApi, PanelApiError
from ..core.errors import RecordNotFound
from ..models import (
    TUNNEL_TYPE_TUNNEL_FORWARD,
    EditContext,
    ForwardRecord,
    Hop,
    Inventory,
    LinkMode,
    Route,
    TunnelRecord,
)
from ..utils.normalize import safe_int, safe_int_list
from .inventory import parse_forward, parse_tunnel
from .route_model import fill_default_ports

logger = logging.getLogger(__name__)


def _default_mode(tunnel: TunnelRecord) -> LinkMode:
    return "tunnel" if int(tunnel.type) == TUNNEL_TYPE_TUNNEL_FORWARD else "direct"


def route_from_persisted(
    forward: ForwardRecord,
    tunnel: TunnelRecord,
    path: Sequence[int],
    link_modes: Sequence[str],
    binds: Dict[int, str],
    mid_ports: Dict[int, int],
    inventory: Inventory,
) -> Tuple[Route, EditContext]:
    """Rebuild the editable route of a saved forward.

    Entry and relay ports come back as operator ports so that an unchanged
    edit resubmits exactly what is persisted.
    """
    entry_id = int(tunnel.in_node_id)
    hops: List[Hop] = [
        Hop(
            kind="node",
            node_id=entry_id,
            port=forward.in_port,
            bind_ip=forward.interface_name or None,
        )
    ]
    seen = {hops[0].key}

    for nid in path:
        nid = int(nid)
        hop = Hop(kind="node", node_id=nid, port=mid_ports.get(nid), bind_ip=binds.get(nid) or None)
        if hop.key in seen:
            continue
        seen.add(hop.key)
        hops.append(hop)

    protocol = (tunnel.protocol or "").strip().lower() or None
    if tunnel.out_exit_id:
        ext = inventory.external_exit(tunnel.out_exit_id)
        proto = protocol or (ext.protocol if ext is not None else None)
        hops.append(Hop(kind="external", exit_id=int(tunnel.out_exit_id), protocol=proto))
    elif tunnel.out_node_id:
        out_id = int(tunnel.out_node_id)
        if out_id == entry_id and len(hops) == 1:
            hops[0] = hops[0].model_copy(update={"protocol": protocol})
        else:
            exit_hop = Hop(kind="node", node_id=out_id, protocol=protocol, bind_ip=binds.get(out_id) or None)
            if exit_hop.key in seen:
                hops = [h for h in hops if h.key != exit_hop.key]
            hops.append(exit_hop)

    edges = len(hops) - 1
    modes: List[LinkMode] = []
    if len(link_modes) == edges:
        for m in link_modes:
            modes.append("tunnel" if str(m or "").strip().lower() == "tunnel" else "direct")
    else:
        modes = [_default_mode(tunnel)] * edges

    route = fill_default_ports(Route(hops=tuple(hops), link_modes=tuple(modes)), inventory)
    ctx = EditContext(tunnel=tunnel, forward=forward, mid_ports=dict(mid_ports))
    return route, ctx


def _mid_ports_from_status(detail: Dict[str, Any]) -> Dict[int, int]:
    out: Dict[int, int] = {}
    nodes = detail.get("nodes") if isinstance(detail, dict) else None
    if not isinstance(nodes, list):
        return out
    for it in nodes:
        if not isinstance(it, dict) or str(it.get("role") or "") != "mid":
            continue
        nid = safe_int(it.get("nodeId"))
        port = safe_int(it.get("expectedPort")) or safe_int(it.get("actualPort"))
        if nid and port and port > 0:
            out[nid] = port
    return out


async def _find_forward(api: PanelApi, forward_id: int) -> Optional[ForwardRecord]:
    for row in await api.list_forwards():
        f = parse_forward(row)
        if f is not None and f.id == int(forward_id):
            return f
    return None


async def load_edit_context(api: PanelApi, forward_id: int, inventory: Inventory) -> Tuple[Route, EditContext]:
    forward = await _find_forward(api, forward_id)
    if forward is None:
        raise RecordNotFound(f"forward {forward_id} does not exist.")
    tunnel = parse_tunnel(await api.get_tunnel(forward.tunnel_id))
    if tunnel is None:
        raise RecordNotFound(f"tunnel {forward.tunnel_id} of forward {forward_id} does not exist.")

    path_data, bind_rows = await asyncio.gather(
        api.get_tunnel_path(tunnel.id),
        api.get_tunnel_bind(tunnel.id),
    )
    path = safe_int_list(path_data.get("path"))
    raw_modes = path_data.get("linkModes")
    link_modes = [str(m) for m in raw_modes] if isinstance(raw_modes, list) else []

    binds: Dict[int, str] = {}
    for b in bind_rows:
        nid = safe_int(b.get("nodeId"))
        ip = str(b.get("ip") or "").strip()
        if nid and ip:
            binds[nid] = ip

    mid_ports: Dict[int, int] = {}
    if path:
        try:
            mid_ports = _mid_ports_from_status(await api.get_forward_status_detail(forward.id))
        except PanelApiError as exc:
            # Relay ports fall back to recommendations.
            logger.warning("forward %s status detail unavailable: %s", forward.id, exc.message)

    return route_from_persisted(forward, tunnel, path, link_modes, binds, mid_ports, inventory)
