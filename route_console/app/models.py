from __future__ import annotations

from typing import Annotated, Dict, List, Literal, Optional, Set, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from .core.settings import DEFAULT_PORT_RANGE_END, DEFAULT_PORT_RANGE_START

LinkMode = Literal["direct", "tunnel"]
HopKind = Literal["node", "external"]
TransportType = Literal["portForward", "tunnelForward"]

# Preference order when a managed exit is added without an explicit protocol.
PREFERRED_EXIT_PROTOCOLS: Tuple[str, ...] = ("ss", "anytls")


def hop_key(kind: str, ident: int) -> str:
    return f"{kind}-{int(ident)}"


# ---------------------------------------------------------------------------
# Inventory (read-only snapshot of the backend)
# ---------------------------------------------------------------------------


class Node(BaseModel):
    id: int
    name: str = ""
    address: str = Field("", description="host used when this node is the terminal exit")
    port_range_start: int = DEFAULT_PORT_RANGE_START
    port_range_end: int = DEFAULT_PORT_RANGE_END
    used_ports: Set[int] = Field(default_factory=set)
    online: bool = False


class ManagedExit(BaseModel):
    source: Literal["node"] = "node"
    node_id: int
    name: str = ""
    host: str = ""
    supported_protocols: Set[str] = Field(default_factory=set)
    protocol_port: Dict[str, int] = Field(default_factory=dict, description="protocol -> provisioned port")
    online: bool = False

    def preferred_protocol(self) -> Optional[str]:
        for proto in PREFERRED_EXIT_PROTOCOLS:
            if proto in self.supported_protocols:
                return proto
        if self.supported_protocols:
            return sorted(self.supported_protocols)[0]
        return None


class ExternalExit(BaseModel):
    source: Literal["external"] = "external"
    exit_id: int
    name: str = ""
    host: str = ""
    port: Optional[int] = None
    protocol: Optional[str] = None


ExitDescriptor = Annotated[Union[ManagedExit, ExternalExit], Field(discriminator="source")]


class Inventory(BaseModel):
    """Explicit snapshot of nodes and the exit catalogue.

    Every allocation / validation / submission call receives one of these;
    nothing in the engine reads inventory state implicitly.
    """

    nodes: Dict[int, Node] = Field(default_factory=dict)
    exits: List[ExitDescriptor] = Field(default_factory=list)

    @classmethod
    def build(cls, nodes: List[Node], exits: List[Union[ManagedExit, ExternalExit]]) -> "Inventory":
        return cls(nodes={n.id: n for n in nodes}, exits=list(exits))

    def node(self, node_id: Optional[int]) -> Optional[Node]:
        if node_id is None:
            return None
        return self.nodes.get(int(node_id))

    def managed_exit(self, node_id: Optional[int]) -> Optional[ManagedExit]:
        if node_id is None:
            return None
        for ex in self.exits:
            if isinstance(ex, ManagedExit) and ex.node_id == int(node_id):
                return ex
        return None

    def external_exit(self, exit_id: Optional[int]) -> Optional[ExternalExit]:
        if exit_id is None:
            return None
        for ex in self.exits:
            if isinstance(ex, ExternalExit) and ex.exit_id == int(exit_id):
                return ex
        return None

    def is_exit_capable(self, hop: Optional["Hop"]) -> bool:
        if hop is None:
            return False
        if hop.kind == "external":
            return True
        return self.managed_exit(hop.node_id) is not None

    def exit_port(self, node_id: Optional[int], protocol: Optional[str]) -> Optional[int]:
        """Provisioned exit-service port of a managed node for `protocol`."""
        ex = self.managed_exit(node_id)
        if ex is None:
            return None
        proto = (protocol or ex.preferred_protocol() or "").strip().lower()
        port = ex.protocol_port.get(proto)
        if port is None or int(port) <= 0:
            return None
        return int(port)


# ---------------------------------------------------------------------------
# Route (session-local)
# ---------------------------------------------------------------------------


class Hop(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: HopKind
    node_id: Optional[int] = None
    exit_id: Optional[int] = None
    protocol: Optional[str] = Field(None, description="only meaningful on the terminal exit hop")
    port: Optional[int] = Field(None, description="listening port at this hop; None = use recommendation")
    bind_ip: Optional[str] = Field(None, description="outbound interface override (node hops only)")
    port_auto: bool = Field(False, description="port was filled by the engine, not the operator")

    @model_validator(mode="after")
    def _check_identity(self) -> "Hop":
        if self.kind == "node":
            if self.node_id is None:
                raise ValueError("node hop requires node_id")
            if self.exit_id is not None:
                raise ValueError("node hop cannot carry exit_id")
        else:
            if self.exit_id is None:
                raise ValueError("external hop requires exit_id")
            if self.node_id is not None:
                raise ValueError("external hop cannot carry node_id")
            if self.bind_ip:
                raise ValueError("bind_ip is only supported on node hops")
        return self

    @computed_field  # type: ignore[misc]
    @property
    def key(self) -> str:
        if self.kind == "node":
            return hop_key("node", int(self.node_id or 0))
        return hop_key("external", int(self.exit_id or 0))


class Route(BaseModel):
    model_config = ConfigDict(frozen=True)

    hops: Tuple[Hop, ...] = ()
    link_modes: Tuple[LinkMode, ...] = ()

    def keys(self) -> List[str]:
        return [h.key for h in self.hops]

    def index_of(self, key: str) -> int:
        for idx, h in enumerate(self.hops):
            if h.key == key:
                return idx
        return -1

    @property
    def entry(self) -> Optional[Hop]:
        return self.hops[0] if self.hops else None

    @property
    def terminal(self) -> Optional[Hop]:
        return self.hops[-1] if self.hops else None

    @property
    def interior(self) -> Tuple[Hop, ...]:
        if len(self.hops) <= 2:
            return ()
        return self.hops[1:-1]

    def transport_type(self) -> TransportType:
        modes = list(self.link_modes[: max(len(self.hops) - 1, 0)])
        if modes and all(m == "tunnel" for m in modes):
            return "tunnelForward"
        return "portForward"


class ValidationResult(BaseModel):
    ok: bool
    reason: str


# ---------------------------------------------------------------------------
# Persisted backend entities
# ---------------------------------------------------------------------------

TUNNEL_TYPE_PORT_FORWARD = 1
TUNNEL_TYPE_TUNNEL_FORWARD = 2


class TunnelRecord(BaseModel):
    id: int
    name: str = ""
    in_node_id: int = 0
    out_node_id: Optional[int] = None
    out_exit_id: Optional[int] = None
    type: int = TUNNEL_TYPE_PORT_FORWARD
    protocol: Optional[str] = None
    flow: int = 1
    traffic_ratio: float = 1.0
    tcp_listen_addr: Optional[str] = None
    udp_listen_addr: Optional[str] = None
    interface_name: Optional[str] = None
    created_time: int = 0

    @property
    def transport_type(self) -> TransportType:
        return "tunnelForward" if int(self.type) == TUNNEL_TYPE_TUNNEL_FORWARD else "portForward"


class ForwardRecord(BaseModel):
    id: int
    name: str = ""
    tunnel_id: int = 0
    in_port: Optional[int] = None
    remote_addr: str = ""
    interface_name: Optional[str] = None
    group: str = ""
    created_time: int = 0


class EditContext(BaseModel):
    tunnel: TunnelRecord
    forward: ForwardRecord
    mid_ports: Dict[int, int] = Field(default_factory=dict, description="node_id -> port owned before the edit")


class SubmitRequest(BaseModel):
    route: Route
    name: str = Field(..., min_length=1)
    groups: List[str] = Field(default_factory=list)
    edit: Optional[EditContext] = None


class SubmitResult(BaseModel):
    tunnel_id: int
    forward_id: int
    tunnel_created: bool = False
    remote_addr: str = ""
    in_port: Optional[int] = None
    steps: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Route editing commands
# ---------------------------------------------------------------------------


class AddNodeCommand(BaseModel):
    op: Literal["add_node"] = "add_node"
    node_id: int


class SetExitCommand(BaseModel):
    op: Literal["set_exit"] = "set_exit"
    source: Literal["node", "external"]
    node_id: Optional[int] = None
    exit_id: Optional[int] = None
    protocol: Optional[str] = None


class RemoveHopCommand(BaseModel):
    op: Literal["remove"] = "remove"
    key: str


class ReorderHopCommand(BaseModel):
    op: Literal["reorder"] = "reorder"
    from_index: int
    to_index: int


class AssignPortCommand(BaseModel):
    op: Literal["assign_port"] = "assign_port"
    key: str
    port: Optional[int] = None


class SetLinkModeCommand(BaseModel):
    op: Literal["set_link_mode"] = "set_link_mode"
    index: int
    mode: LinkMode


class SetBindIpCommand(BaseModel):
    op: Literal["set_bind_ip"] = "set_bind_ip"
    key: str
    ip: Optional[str] = None


class SetProtocolCommand(BaseModel):
    op: Literal["set_protocol"] = "set_protocol"
    key: str
    protocol: str


RouteCommand = Annotated[
    Union[
        AddNodeCommand,
        SetExitCommand,
        RemoveHopCommand,
        ReorderHopCommand,
        AssignPortCommand,
        SetLinkModeCommand,
        SetBindIpCommand,
        SetProtocolCommand,
    ],
    Field(discriminator="op"),
]
