"""Tests for route editing operations."""

import pytest

from route_console.app.core.errors import StructuralInvalid
from route_console.app.models import (
    AddNodeCommand,
    AssignPortCommand,
    Hop,
    RemoveHopCommand,
    ReorderHopCommand,
    Route,
    SetBindIpCommand,
    SetExitCommand,
    SetLinkModeCommand,
    SetProtocolCommand,
)
from route_console.app.services.route_model import fill_default_ports, mutate
from route_console.app.utils.validate import MSG_EXTERNAL_NOT_LAST, MSG_EXTERNAL_TUNNEL, validate_route


def _apply(route, inventory, *commands):
    for cmd in commands:
        route = mutate(route, cmd, inventory)
    return route


@pytest.fixture
def via_external(inventory) -> Route:
    """entry-hk -> relay-sg -> vendor-trojan."""
    return _apply(
        Route(),
        inventory,
        AddNodeCommand(node_id=1),
        SetExitCommand(source="external", exit_id=7),
        AddNodeCommand(node_id=2),
    )


class TestAddNode:
    """Toggle semantics and exit pinning."""

    def test_first_node(self, inventory) -> None:
        route = mutate(Route(), AddNodeCommand(node_id=2), inventory)
        assert route.keys() == ["node-2"]
        assert route.link_modes == ()

    def test_appends_when_last_is_not_exit(self, inventory) -> None:
        route = _apply(Route(), inventory, AddNodeCommand(node_id=2), AddNodeCommand(node_id=4))
        assert route.keys() == ["node-2", "node-4"]
        assert route.link_modes == ("direct",)

    def test_inserts_before_exit_capable_terminal(self, via_external) -> None:
        assert via_external.keys() == ["node-1", "node-2", "external-7"]
        assert via_external.link_modes == ("direct", "direct")

    def test_toggle_removes_existing(self, inventory, via_external) -> None:
        route = mutate(via_external, AddNodeCommand(node_id=2), inventory)
        assert route.keys() == ["node-1", "external-7"]

    def test_unknown_node_rejected(self, inventory) -> None:
        with pytest.raises(StructuralInvalid, match="does not exist"):
            mutate(Route(), AddNodeCommand(node_id=99), inventory)


class TestSetExit:
    """Exit selection."""

    def test_single_external_exit(self, inventory, via_external) -> None:
        route = mutate(via_external, SetExitCommand(source="external", exit_id=7, protocol="trojan"), inventory)
        assert [h.kind for h in route.hops].count("external") == 1
        assert route.keys()[-1] == "external-7"

    def test_managed_exit_replaces_same_node(self, inventory) -> None:
        route = _apply(
            Route(),
            inventory,
            AddNodeCommand(node_id=3),
            AddNodeCommand(node_id=2),
            SetExitCommand(source="node", node_id=3),
        )
        assert route.keys() == ["node-2", "node-3"]
        assert route.hops[-1].protocol == "ss"

    def test_managed_exit_gets_protocol_port(self, inventory) -> None:
        route = _apply(Route(), inventory, AddNodeCommand(node_id=2), SetExitCommand(source="node", node_id=3))
        terminal = route.hops[-1]
        assert terminal.port == 8388
        assert terminal.port_auto is True

    def test_unsupported_protocol_rejected(self, inventory) -> None:
        with pytest.raises(StructuralInvalid, match="does not provide"):
            mutate(Route(), SetExitCommand(source="node", node_id=3, protocol="vmess"), inventory)

    def test_missing_exit_rejected(self, inventory) -> None:
        with pytest.raises(StructuralInvalid, match="selected exit does not exist"):
            mutate(Route(), SetExitCommand(source="external", exit_id=70), inventory)


class TestReorder:
    """Reorder keeps external exits at the end."""

    def test_moving_external_inside_is_rejected(self, inventory, via_external) -> None:
        before = via_external.model_dump()
        with pytest.raises(StructuralInvalid) as exc_info:
            mutate(via_external, ReorderHopCommand(from_index=2, to_index=1), inventory)
        assert exc_info.value.reason == MSG_EXTERNAL_NOT_LAST
        assert via_external.model_dump() == before
        assert validate_route(via_external, inventory).ok is True

    def test_reorder_nodes(self, inventory) -> None:
        route = _apply(
            Route(),
            inventory,
            AddNodeCommand(node_id=1),
            AddNodeCommand(node_id=2),
            AddNodeCommand(node_id=4),
            SetLinkModeCommand(index=0, mode="tunnel"),
        )
        assert route.keys() == ["node-2", "node-4", "node-1"]
        moved = mutate(route, ReorderHopCommand(from_index=0, to_index=1), inventory)
        assert moved.keys() == ["node-4", "node-2", "node-1"]
        assert moved.link_modes == ("direct", "direct")

    def test_out_of_range(self, inventory, via_external) -> None:
        with pytest.raises(StructuralInvalid, match="out of range"):
            mutate(via_external, ReorderHopCommand(from_index=0, to_index=5), inventory)


class TestEdgeModesAcrossEdits:
    """Link modes survive unrelated structural edits."""

    def test_tunnel_edge_survives_insert(self, inventory) -> None:
        route = _apply(
            Route(),
            inventory,
            AddNodeCommand(node_id=1),
            AddNodeCommand(node_id=2),
            SetExitCommand(source="node", node_id=3),
            SetLinkModeCommand(index=0, mode="tunnel"),
        )
        assert route.keys() == ["node-2", "node-1", "node-3"]
        route = mutate(route, AddNodeCommand(node_id=4), inventory)
        assert route.keys() == ["node-2", "node-1", "node-4", "node-3"]
        assert route.link_modes == ("tunnel", "direct", "direct")

    def test_broken_edge_forgets_mode(self, inventory) -> None:
        route = _apply(
            Route(),
            inventory,
            AddNodeCommand(node_id=2),
            SetExitCommand(source="node", node_id=3),
            SetLinkModeCommand(index=0, mode="tunnel"),
            AddNodeCommand(node_id=4),
        )
        assert route.keys() == ["node-2", "node-4", "node-3"]
        assert route.link_modes == ("direct", "direct")
        route = mutate(route, RemoveHopCommand(key="node-4"), inventory)
        assert route.link_modes == ("direct",)

    def test_tunnel_mode_into_external_fails_validation(self, inventory, via_external) -> None:
        route = _apply(
            via_external,
            inventory,
            SetLinkModeCommand(index=0, mode="tunnel"),
            SetLinkModeCommand(index=1, mode="tunnel"),
        )
        assert validate_route(route, inventory).reason == MSG_EXTERNAL_TUNNEL

    def test_link_index_out_of_range(self, inventory, via_external) -> None:
        with pytest.raises(StructuralInvalid):
            mutate(via_external, SetLinkModeCommand(index=2, mode="tunnel"), inventory)


class TestPorts:
    """Default ports and operator ports."""

    def test_defaults_filled(self, via_external) -> None:
        entry, relay, _ = via_external.hops
        assert (entry.port, entry.port_auto) == (20001, True)
        assert (relay.port, relay.port_auto) == (30002, True)

    def test_operator_port_kept(self, inventory, via_external) -> None:
        route = mutate(via_external, AssignPortCommand(key="node-2", port=30009), inventory)
        relay = route.hops[1]
        assert (relay.port, relay.port_auto) == (30009, False)
        route = mutate(route, AddNodeCommand(node_id=4), inventory)
        assert route.hops[route.index_of("node-2")].port == 30009

    def test_clearing_port_restores_recommendation(self, inventory, via_external) -> None:
        route = mutate(via_external, AssignPortCommand(key="node-2", port=30009), inventory)
        route = mutate(route, AssignPortCommand(key="node-2", port=None), inventory)
        assert route.hops[1].port == 30002

    def test_terminal_exit_port_follows_protocol(self, inventory) -> None:
        route = _apply(Route(), inventory, AddNodeCommand(node_id=2), SetExitCommand(source="node", node_id=3))
        route = mutate(route, SetProtocolCommand(key="node-3", protocol="anytls"), inventory)
        assert route.hops[-1].port == 8443

    def test_single_hop_exit_uses_entry_recommendation(self, inventory) -> None:
        route = mutate(Route(), AddNodeCommand(node_id=1), inventory)
        assert route.hops[0].port == 20001

    def test_external_ports_not_assignable(self, inventory, via_external) -> None:
        with pytest.raises(StructuralInvalid):
            mutate(via_external, AssignPortCommand(key="external-7", port=1000), inventory)

    def test_fill_is_stable(self, inventory, via_external) -> None:
        assert fill_default_ports(via_external, inventory) is via_external


class TestBindIp:
    """Per-hop bind IP."""

    def test_set_and_clear(self, inventory, via_external) -> None:
        route = mutate(via_external, SetBindIpCommand(key="node-2", ip=" 10.9.9.9 "), inventory)
        assert route.hops[1].bind_ip == "10.9.9.9"
        route = mutate(route, SetBindIpCommand(key="node-2", ip=""), inventory)
        assert route.hops[1].bind_ip is None

    def test_not_on_external(self, inventory, via_external) -> None:
        with pytest.raises(StructuralInvalid):
            mutate(via_external, SetBindIpCommand(key="external-7", ip="1.2.3.4"), inventory)

    def test_unknown_hop(self, inventory, via_external) -> None:
        with pytest.raises(StructuralInvalid, match="not part of the route"):
            mutate(via_external, SetBindIpCommand(key="node-4", ip="1.2.3.4"), inventory)


class TestHopModel:
    """Hop identity rules."""

    def test_node_hop_requires_node_id(self) -> None:
        with pytest.raises(ValueError):
            Hop(kind="node")

    def test_external_hop_rejects_bind_ip(self) -> None:
        with pytest.raises(ValueError):
            Hop(kind="external", exit_id=7, bind_ip="1.1.1.1")
