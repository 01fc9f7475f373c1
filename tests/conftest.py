"""
Pytest configuration and shared fixtures for the route console tests.
"""
from typing import Any, Dict, List, Optional, Tuple

import pytest

from route_console.app.clients.panel_api import PanelApiError
from route_console.app.models import ExternalExit, Inventory, ManagedExit, Node


def make_inventory() -> Inventory:
    nodes = [
        Node(id=1, name="entry-hk", address="10.0.0.1", port_range_start=20000, port_range_end=20010,
             used_ports={20000, 20005}, online=True),
        Node(id=2, name="relay-sg", address="10.0.0.2", port_range_start=30000, port_range_end=30010,
             used_ports={30000, 30001}, online=True),
        Node(id=3, name="exit-jp", address="10.0.0.3", port_range_start=40000, port_range_end=40010,
             used_ports=set(), online=True),
        Node(id=4, name="relay-us", address="10.0.0.4", port_range_start=0, port_range_end=0,
             used_ports={10000}, online=True),
    ]
    exits = [
        ManagedExit(node_id=1, name="entry-hk", host="", supported_protocols={"ss"},
                    protocol_port={"ss": 20000}, online=True),
        ManagedExit(node_id=3, name="exit-jp", host="exit-jp.example.com", supported_protocols={"ss", "anytls"},
                    protocol_port={"ss": 8388, "anytls": 8443}, online=True),
        ExternalExit(exit_id=7, name="vendor-trojan", host="203.0.113.7", port=443, protocol="trojan"),
    ]
    return Inventory.build(nodes, exits)


@pytest.fixture
def inventory() -> Inventory:
    """Four nodes, two managed exits (nodes 1 and 3) and one external exit (7)."""
    return make_inventory()


class FakePanelApi:
    """In-memory stand-in for PanelApi recording every call.

    Created tunnels and forwards are acknowledged without an id, as the real
    backend does, so callers have to find them by listing.
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[str, Any]] = []
        self.tunnels: Dict[int, Dict[str, Any]] = {}
        self.forwards: Dict[int, Dict[str, Any]] = {}
        self.paths: Dict[int, Dict[str, Any]] = {}
        self.binds: Dict[int, List[Dict[str, Any]]] = {}
        self.mid_ports: Dict[int, Dict[int, int]] = {}
        self.node_rows: List[Dict[str, Any]] = []
        self.exit_rows: List[Dict[str, Any]] = []
        self.interfaces: Dict[int, List[str]] = {}
        self.failures: Dict[str, Exception] = {}
        self.create_ack_with_id = False
        self._next_id = 100

    def fail_next(self, method: str, message: str = "boom") -> None:
        self.failures[method] = PanelApiError(message, path=method, code=-1)

    def _enter(self, method: str, payload: Any = None) -> None:
        self.calls.append((method, payload))
        exc = self.failures.pop(method, None)
        if exc is not None:
            raise exc

    def called(self, method: str) -> List[Any]:
        return [p for (m, p) in self.calls if m == method]

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    async def list_nodes(self) -> List[Dict[str, Any]]:
        self._enter("list_nodes")
        return list(self.node_rows)

    async def list_exits(self) -> List[Dict[str, Any]]:
        self._enter("list_exits")
        return list(self.exit_rows)

    async def get_node_interfaces(self, node_id: int) -> List[str]:
        self._enter("get_node_interfaces", node_id)
        return list(self.interfaces.get(node_id, []))

    async def list_tunnels(self) -> List[Dict[str, Any]]:
        self._enter("list_tunnels")
        return [dict(t) for t in self.tunnels.values()]

    async def get_tunnel(self, tunnel_id: int) -> Dict[str, Any]:
        self._enter("get_tunnel", tunnel_id)
        return dict(self.tunnels.get(tunnel_id, {}))

    async def create_tunnel(self, payload: Dict[str, Any]) -> Any:
        self._enter("create_tunnel", payload)
        tid = self._new_id()
        self.tunnels[tid] = dict(payload, id=tid)
        return {"id": tid} if self.create_ack_with_id else None

    async def update_tunnel(self, payload: Dict[str, Any]) -> Any:
        self._enter("update_tunnel", payload)
        self.tunnels[payload["id"]].update(payload)
        return None

    async def get_tunnel_path(self, tunnel_id: int) -> Dict[str, Any]:
        self._enter("get_tunnel_path", tunnel_id)
        return dict(self.paths.get(tunnel_id, {"path": []}))

    async def set_tunnel_path(self, tunnel_id: int, path: List[int], link_modes: List[str]) -> Any:
        self._enter("set_tunnel_path", {"tunnelId": tunnel_id, "path": list(path), "linkModes": list(link_modes)})
        self.paths[tunnel_id] = {"path": list(path), "linkModes": list(link_modes)}
        return {"saved": len(path)}

    async def get_tunnel_bind(self, tunnel_id: int) -> List[Dict[str, Any]]:
        self._enter("get_tunnel_bind", tunnel_id)
        return list(self.binds.get(tunnel_id, []))

    async def set_tunnel_bind(self, tunnel_id: int, binds: List[Dict[str, Any]]) -> Any:
        self._enter("set_tunnel_bind", {"tunnelId": tunnel_id, "binds": list(binds)})
        self.binds[tunnel_id] = list(binds)
        return None

    async def list_forwards(self) -> List[Dict[str, Any]]:
        self._enter("list_forwards")
        return [dict(f) for f in self.forwards.values()]

    async def create_forward(self, payload: Dict[str, Any]) -> Any:
        self._enter("create_forward", payload)
        fid = self._new_id()
        self.forwards[fid] = dict(payload, id=fid)
        return {"requestId": "op-1"}

    async def update_forward(self, payload: Dict[str, Any]) -> Any:
        self._enter("update_forward", payload)
        row = dict(payload)
        mids = row.pop("midPorts", None)
        self.forwards[payload["id"]].update(row)
        if mids is not None:
            self.mid_ports[payload["id"]] = {int(m["idx"]): int(m["port"]) for m in mids}
        return {"requestId": "op-2"}

    async def get_forward_status_detail(self, forward_id: int) -> Dict[str, Any]:
        self._enter("get_forward_status_detail", forward_id)
        fwd = self.forwards.get(forward_id) or {}
        path = self.paths.get(int(fwd.get("tunnelId") or 0), {}).get("path", [])
        ports = self.mid_ports.get(forward_id, {})
        nodes = [{"nodeId": nid, "role": "mid", "expectedPort": ports.get(idx)} for idx, nid in enumerate(path)]
        return {"forwardId": forward_id, "nodes": nodes}

    def seed_tunnel(self, row: Dict[str, Any]) -> int:
        self.tunnels[int(row["id"])] = dict(row)
        return int(row["id"])

    def seed_forward(self, row: Dict[str, Any]) -> int:
        self.forwards[int(row["id"])] = dict(row)
        return int(row["id"])


@pytest.fixture
def fake_api() -> FakePanelApi:
    return FakePanelApi()


def find_forward(api: FakePanelApi, name: str) -> Optional[Dict[str, Any]]:
    for row in api.forwards.values():
        if row.get("name") == name:
            return row
    return None
