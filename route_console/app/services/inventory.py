from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Union

from ..clients.panel_api import PanelApi
from ..core.settings import INVENTORY_TTL_SEC
from ..models import (
    TUNNEL_TYPE_PORT_FORWARD,
    ExternalExit,
    ForwardRecord,
    Inventory,
    ManagedExit,
    Node,
    TunnelRecord,
)
from ..utils.normalize import first_address, normalize_host_input, safe_int, safe_int_list

logger = logging.getLogger(__name__)

# exit list field -> protocol it provisions
_EXIT_PORT_FIELDS = (("ssPort", "ss"), ("anytlsPort", "anytls"))


def _opt_str(v: Any) -> Optional[str]:
    s = str(v or "").strip()
    return s or None


def parse_node(row: Dict[str, Any]) -> Optional[Node]:
    nid = safe_int(row.get("id"))
    if nid is None or nid <= 0:
        return None
    address = normalize_host_input(str(row.get("serverIp") or "")) or first_address(row.get("ip"))
    return Node(
        id=nid,
        name=str(row.get("name") or ""),
        address=address,
        port_range_start=safe_int(row.get("portSta"), 0) or 0,
        port_range_end=safe_int(row.get("portEnd"), 0) or 0,
        used_ports=set(p for p in safe_int_list(row.get("usedPorts")) if p > 0),
        online=safe_int(row.get("status"), 0) == 1,
    )


def parse_exit(row: Dict[str, Any]) -> Optional[Union[ManagedExit, ExternalExit]]:
    source = str(row.get("source") or "node").strip().lower()
    if source == "external":
        eid = safe_int(row.get("exitId"))
        if eid is None or eid <= 0:
            return None
        port = safe_int(row.get("port"))
        return ExternalExit(
            exit_id=eid,
            name=str(row.get("name") or ""),
            host=normalize_host_input(str(row.get("host") or "")),
            port=port if port and port > 0 else None,
            protocol=(_opt_str(row.get("protocol")) or "").lower() or None,
        )

    nid = safe_int(row.get("nodeId"))
    if nid is None or nid <= 0:
        return None
    ports: Dict[str, int] = {}
    for field, proto in _EXIT_PORT_FIELDS:
        p = safe_int(row.get(field))
        if p and p > 0:
            ports[proto] = p
    proto = (_opt_str(row.get("protocol")) or "").lower()
    p = safe_int(row.get("port"))
    if proto and p and p > 0 and proto not in ports:
        ports[proto] = p
    return ManagedExit(
        node_id=nid,
        name=str(row.get("name") or ""),
        host=normalize_host_input(str(row.get("host") or "")),
        supported_protocols=set(ports),
        protocol_port=ports,
        online=bool(row.get("online")),
    )


def parse_tunnel(row: Dict[str, Any]) -> Optional[TunnelRecord]:
    tid = safe_int(row.get("id"))
    if tid is None or tid <= 0:
        return None
    out_node = safe_int(row.get("outNodeId"))
    out_exit = safe_int(row.get("outExitId"))
    try:
        ratio = float(row.get("trafficRatio") or 1.0)
    except (TypeError, ValueError):
        ratio = 1.0
    return TunnelRecord(
        id=tid,
        name=str(row.get("name") or ""),
        in_node_id=safe_int(row.get("inNodeId"), 0) or 0,
        out_node_id=out_node if out_node and out_node > 0 else None,
        out_exit_id=out_exit if out_exit and out_exit > 0 else None,
        type=safe_int(row.get("type"), TUNNEL_TYPE_PORT_FORWARD) or TUNNEL_TYPE_PORT_FORWARD,
        protocol=(_opt_str(row.get("protocol")) or "").lower() or None,
        flow=safe_int(row.get("flow"), 1) or 1,
        traffic_ratio=ratio,
        tcp_listen_addr=_opt_str(row.get("tcpListenAddr")),
        udp_listen_addr=_opt_str(row.get("udpListenAddr")),
        interface_name=_opt_str(row.get("interfaceName")),
        created_time=safe_int(row.get("createdTime"), 0) or 0,
    )


def parse_forward(row: Dict[str, Any]) -> Optional[ForwardRecord]:
    fid = safe_int(row.get("id"))
    if fid is None or fid <= 0:
        return None
    return ForwardRecord(
        id=fid,
        name=str(row.get("name") or ""),
        tunnel_id=safe_int(row.get("tunnelId"), 0) or 0,
        in_port=safe_int(row.get("inPort")),
        remote_addr=str(row.get("remoteAddr") or "").strip(),
        interface_name=_opt_str(row.get("interfaceName")),
        group=str(row.get("group") or ""),
        created_time=safe_int(row.get("createdTime"), 0) or 0,
    )


async def load_inventory(api: PanelApi) -> Inventory:
    """Fetch nodes and the exit catalogue and freeze them into an Inventory."""
    node_rows, exit_rows = await asyncio.gather(api.list_nodes(), api.list_exits())
    nodes: List[Node] = []
    for row in node_rows:
        n = parse_node(row)
        if n is not None:
            nodes.append(n)
    exits: List[Union[ManagedExit, ExternalExit]] = []
    for row in exit_rows:
        ex = parse_exit(row)
        if ex is not None:
            exits.append(ex)
    logger.debug("inventory loaded: %d nodes, %d exits", len(nodes), len(exits))
    return Inventory.build(nodes, exits)


class InventoryCache:
    """Inventory snapshot shared read-only between editing sessions.

    A snapshot is reused for `ttl` seconds; `refresh()` forces a reload
    (callers do this after the backend reports a port race).
    """

    def __init__(self, api: PanelApi, ttl: float = INVENTORY_TTL_SEC):
        self.api = api
        self.ttl = float(ttl)
        self._snapshot: Optional[Inventory] = None
        self._loaded_at = 0.0
        self._lock: Optional[asyncio.Lock] = None

    def _fresh(self) -> bool:
        if self._snapshot is None:
            return False
        return (time.monotonic() - self._loaded_at) < self.ttl

    def _get_lock(self) -> asyncio.Lock:
        # Created on first use so it binds to the running loop.
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def get(self) -> Inventory:
        snap = self._snapshot
        if snap is not None and self._fresh():
            return snap
        async with self._get_lock():
            snap = self._snapshot
            if snap is not None and self._fresh():
                return snap
            return await self._load()

    async def refresh(self) -> Inventory:
        async with self._get_lock():
            return await self._load()

    def invalidate(self) -> None:
        self._snapshot = None
        self._loaded_at = 0.0

    async def _load(self) -> Inventory:
        inv = await load_inventory(self.api)
        self._snapshot = inv
        self._loaded_at = time.monotonic()
        return inv
