from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..clients.panel_api import PanelApi, PanelApiError
from ..core.errors import (
    PartialReconciliation,
    PortInvalid,
    PortRace,
    ReconcileError,
    ResolutionError,
    StructuralInvalid,
    SubmissionCancelled,
    TunnelIdentificationFailure,
)
from ..models import (
    TUNNEL_TYPE_PORT_FORWARD,
    TUNNEL_TYPE_TUNNEL_FORWARD,
    EditContext,
    Hop,
    Inventory,
    Node,
    Route,
    SubmitRequest,
    SubmitResult,
)
from ..utils.normalize import format_addr, safe_int
from ..utils.validate import MSG_EMPTY, require_valid
from .inventory import parse_forward, parse_tunnel
from .ports import recommend_port, validate_node_port

logger = logging.getLogger(__name__)

STEP_RESOLVE = "resolve"
STEP_CHECK_PORTS = "check_ports"
STEP_PLAN = "plan"
STEP_TUNNEL = "tunnel"
STEP_PATH = "path"
STEP_BIND = "bind"
STEP_FORWARD = "forward"
STEP_MID_PORTS = "mid_ports"

LOCAL_STEPS = (STEP_RESOLVE, STEP_CHECK_PORTS, STEP_PLAN)
REMOTE_STEPS = (STEP_TUNNEL, STEP_PATH, STEP_BIND, STEP_FORWARD, STEP_MID_PORTS)

PLAN_CREATE = "create"
PLAN_UPDATE = "update"
PLAN_REUSE = "reuse"

FORWARD_STRATEGY = "fifo"
TUNNEL_NAME_PREFIX = "线路"

_PORT_WORDS = ("端口", "port")
_CONFLICT_WORDS = ("占用", "已被使用", "已存在", "冲突", "已满", "in use", "occupied", "conflict", "taken", "unavailable")


def new_submission_token() -> str:
    return uuid.uuid4().hex[:8]


def tunnel_name_for(forward_name: str, token: str) -> str:
    return f"{TUNNEL_NAME_PREFIX}-{forward_name}-{token}"


def looks_like_port_conflict(message: str) -> bool:
    msg = str(message or "").lower()
    return any(w in msg for w in _PORT_WORDS) and any(w in msg for w in _CONFLICT_WORDS)


@dataclass
class SubmissionState:
    """Progress of one submission; enough to resume instead of restarting."""

    token: str = field(default_factory=new_submission_token)
    completed: List[str] = field(default_factory=list)
    tunnel_id: Optional[int] = None
    forward_id: Optional[int] = None
    tunnel_created: bool = False
    forward_created: bool = False
    failed_step: Optional[str] = None
    error: str = ""
    cancel_requested: bool = False

    @property
    def resume_point(self) -> Optional[str]:
        for step in REMOTE_STEPS:
            if step not in self.completed:
                return step
        return None

    @property
    def finished(self) -> bool:
        return self.resume_point is None

    def done(self, step: str) -> bool:
        return step in self.completed

    def mark(self, step: str) -> None:
        if step not in self.completed:
            self.completed.append(step)

    def public_view(self) -> Dict[str, Any]:
        return {
            "completed": list(self.completed),
            "tunnel_id": self.tunnel_id,
            "forward_id": self.forward_id,
            "tunnel_created": bool(self.tunnel_created),
            "failed_step": self.failed_step,
            "resume_point": self.resume_point,
            "error": self.error,
        }


@dataclass
class TunnelPlan:
    action: str
    type: int
    protocol: Optional[str]
    out_node_id: Optional[int]
    out_exit_id: Optional[int]


@dataclass
class _Resolved:
    remote_addr: str
    exit_port: int
    entry_port: int
    mid_ports: List[Tuple[int, Hop, int]]


# ---------------------------------------------------------------------------
# Local steps
# ---------------------------------------------------------------------------


def resolve_terminal(route: Route, inventory: Inventory) -> Tuple[str, int]:
    """(host, port) the forward finally sends traffic to."""
    hop = route.terminal
    if hop is None:
        raise ResolutionError("route has no exit.")
    if hop.kind == "external":
        ext = inventory.external_exit(hop.exit_id)
        if ext is None:
            raise ResolutionError(f"external exit {hop.exit_id} does not exist.")
        if not ext.host or not ext.port:
            raise ResolutionError(f"external exit {ext.name or ext.exit_id} has no address.")
        return ext.host, int(ext.port)

    ex = inventory.managed_exit(hop.node_id)
    node = inventory.node(hop.node_id)
    if ex is None:
        raise ResolutionError(f"node {hop.node_id} is not an exit.")
    host = ex.host or (node.address if node is not None else "")
    if not host:
        raise ResolutionError(f"exit node {ex.name or ex.node_id} has no address.")
    port = inventory.exit_port(hop.node_id, hop.protocol)
    if port is None:
        proto = hop.protocol or ex.preferred_protocol() or "-"
        raise ResolutionError(f"exit node {ex.name or ex.node_id} has no {proto} service port.")
    return host, port


def _endpoints(route: Route) -> Tuple[Hop, Hop]:
    if not route.hops:
        raise StructuralInvalid(MSG_EMPTY)
    return route.hops[0], route.hops[-1]


def _require_node(hop: Hop, inventory: Inventory) -> Node:
    node = inventory.node(hop.node_id)
    if node is None:
        raise ResolutionError(f"node {hop.node_id} does not exist.")
    return node


def _hop_port(hop: Hop, inventory: Inventory) -> int:
    node = _require_node(hop, inventory)
    if hop.port is not None:
        return int(hop.port)
    try:
        return recommend_port(node)
    except PortInvalid as exc:
        raise exc.annotate(hop.key, node.id)


def check_ports(route: Route, inventory: Inventory, exit_port: int, edit: Optional[EditContext] = None) -> _Resolved:
    """Verify the entry and relay ports against the snapshot.

    The port a route already owns is exempt from the in-use check, so an edit
    can keep it.
    """
    entry, _ = _endpoints(route)
    entry_port = _hop_port(entry, inventory)
    entry_node = _require_node(entry, inventory)

    single_own_port = len(route.hops) == 1 and entry_port == exit_port
    if not single_own_port:
        exemption: Optional[int] = None
        if edit is not None and edit.tunnel.in_node_id == entry.node_id:
            exemption = edit.forward.in_port
        try:
            validate_node_port(entry_node, entry_port, exemption)
        except PortInvalid as exc:
            raise exc.annotate(entry.key, entry_node.id)

    mids: List[Tuple[int, Hop, int]] = []
    for idx, hop in enumerate(route.interior):
        port = _hop_port(hop, inventory)
        node = _require_node(hop, inventory)
        owned = edit.mid_ports.get(int(hop.node_id or 0)) if edit is not None else None
        try:
            validate_node_port(node, port, owned)
        except PortInvalid as exc:
            raise exc.annotate(hop.key, node.id)
        mids.append((idx, hop, port))

    return _Resolved(remote_addr="", exit_port=exit_port, entry_port=entry_port, mid_ports=mids)


def effective_protocol(route: Route, inventory: Inventory) -> Optional[str]:
    """Protocol of the terminal exit; a managed exit without one uses its preferred protocol."""
    hop = route.terminal
    if hop is None:
        return None
    if hop.protocol:
        return hop.protocol
    if hop.kind == "node":
        ex = inventory.managed_exit(hop.node_id)
        return ex.preferred_protocol() if ex is not None else None
    ext = inventory.external_exit(hop.exit_id)
    return ext.protocol if ext is not None else None


def plan_tunnel(route: Route, edit: Optional[EditContext] = None, protocol: Optional[str] = None) -> TunnelPlan:
    entry, terminal = _endpoints(route)
    ttype = TUNNEL_TYPE_TUNNEL_FORWARD if route.transport_type() == "tunnelForward" else TUNNEL_TYPE_PORT_FORWARD
    out_node = terminal.node_id if terminal.kind == "node" else None
    out_exit = terminal.exit_id if terminal.kind == "external" else None
    protocol = protocol or terminal.protocol

    def _plan(action: str) -> TunnelPlan:
        return TunnelPlan(action=action, type=ttype, protocol=protocol, out_node_id=out_node, out_exit_id=out_exit)

    if edit is None:
        return _plan(PLAN_CREATE)
    t = edit.tunnel
    if int(t.in_node_id) != int(entry.node_id or 0) or int(t.type) != ttype:
        return _plan(PLAN_CREATE)
    if (t.out_node_id or None) != out_node or (t.out_exit_id or None) != out_exit:
        return _plan(PLAN_UPDATE)
    if (t.protocol or None) != (protocol or None):
        return _plan(PLAN_UPDATE)
    return _plan(PLAN_REUSE)


def _mid_port_overrides(resolved: _Resolved, inventory: Inventory) -> List[Dict[str, int]]:
    """Operator-set relay ports; empty when every one matches its recommendation."""
    out: List[Dict[str, int]] = []
    differs = False
    for idx, hop, port in resolved.mid_ports:
        if hop.port is None or hop.port_auto:
            continue
        out.append({"idx": idx, "port": port})
        node = inventory.node(hop.node_id)
        try:
            rec: Optional[int] = recommend_port(node) if node is not None else None
        except PortInvalid:
            rec = None
        if rec != port:
            differs = True
    return out if differs else []


# ---------------------------------------------------------------------------
# Saga
# ---------------------------------------------------------------------------


class Reconciler:
    """Turns a validated route into backend tunnel/path/bind/forward records.

    Steps run strictly in order and are never rolled back. A failure carries
    the SubmissionState so `resume` can continue from the failed step.
    """

    def __init__(self, api: PanelApi):
        self.api = api

    async def submit(
        self, request: SubmitRequest, inventory: Inventory, *, state: Optional[SubmissionState] = None
    ) -> SubmitResult:
        return await self._run(request, inventory, state or SubmissionState())

    async def resume(self, state: SubmissionState, request: SubmitRequest, inventory: Inventory) -> SubmitResult:
        state.failed_step = None
        state.error = ""
        logger.info(
            "resuming submission token=%s from=%s tunnel_id=%s forward_id=%s",
            state.token,
            state.resume_point,
            state.tunnel_id,
            state.forward_id,
        )
        return await self._run(request, inventory, state)

    def _check_cancel(self, state: SubmissionState, step: str) -> None:
        if state.cancel_requested and not state.done(STEP_TUNNEL) and not state.tunnel_created:
            state.failed_step = step
            state.error = "submission cancelled"
            raise SubmissionCancelled("submission cancelled before any backend change.", step=step, state=state)

    def _remote_failure(self, state: SubmissionState, step: str, exc: PanelApiError) -> ReconcileError:
        state.failed_step = step
        state.error = exc.message
        logger.warning(
            "submission step %s failed token=%s tunnel_id=%s forward_id=%s: %s",
            step,
            state.token,
            state.tunnel_id,
            state.forward_id,
            exc.message,
        )
        if looks_like_port_conflict(exc.message):
            return PortRace(f"port taken on the backend: {exc.message}", step=step, state=state)
        if step == STEP_TUNNEL and state.tunnel_id is None:
            return ReconcileError(f"tunnel save failed: {exc.message}", step=step, state=state)
        return PartialReconciliation(f"{step} failed: {exc.message}", step=step, state=state)

    async def _run(self, request: SubmitRequest, inventory: Inventory, state: SubmissionState) -> SubmitResult:
        route = request.route
        edit = request.edit

        self._check_cancel(state, STEP_RESOLVE)
        require_valid(route, inventory)
        host, exit_port = resolve_terminal(route, inventory)
        remote_addr = format_addr(host, exit_port)

        self._check_cancel(state, STEP_CHECK_PORTS)
        resolved = check_ports(route, inventory, exit_port, edit)
        resolved.remote_addr = remote_addr

        self._check_cancel(state, STEP_PLAN)
        plan = plan_tunnel(route, edit, effective_protocol(route, inventory))
        logger.info(
            "submission token=%s name=%s plan=%s type=%s hops=%s",
            state.token,
            request.name,
            plan.action,
            plan.type,
            route.keys(),
        )

        self._check_cancel(state, STEP_TUNNEL)
        if not state.done(STEP_TUNNEL):
            try:
                await self._step_tunnel(request, plan, state)
            except PanelApiError as exc:
                raise self._remote_failure(state, STEP_TUNNEL, exc) from exc
            state.mark(STEP_TUNNEL)
            logger.info("submission token=%s tunnel ready id=%s created=%s", state.token, state.tunnel_id, state.tunnel_created)
        tunnel_id = int(state.tunnel_id or 0)

        forward_payload = self._forward_payload(request, tunnel_id, resolved)

        steps = (
            (STEP_PATH, lambda: self._step_path(route, tunnel_id, edit)),
            (STEP_BIND, lambda: self._step_bind(route, tunnel_id, edit)),
            (STEP_FORWARD, lambda: self._step_forward(request, forward_payload, state)),
            (STEP_MID_PORTS, lambda: self._step_mid_ports(forward_payload, resolved, inventory, state)),
        )
        for step, run in steps:
            if state.done(step):
                continue
            try:
                await run()
            except PanelApiError as exc:
                raise self._remote_failure(state, step, exc) from exc
            state.mark(step)
            logger.info("submission token=%s step %s done", state.token, step)

        logger.info(
            "submission token=%s finished tunnel_id=%s forward_id=%s", state.token, state.tunnel_id, state.forward_id
        )
        return SubmitResult(
            tunnel_id=tunnel_id,
            forward_id=int(state.forward_id or 0),
            tunnel_created=state.tunnel_created,
            remote_addr=remote_addr,
            in_port=resolved.entry_port,
            steps=list(state.completed),
        )

    # -- step 4 ------------------------------------------------------------

    async def _step_tunnel(self, request: SubmitRequest, plan: TunnelPlan, state: SubmissionState) -> None:
        entry, _ = _endpoints(request.route)
        edit = request.edit

        if edit is not None and plan.action == PLAN_REUSE:
            state.tunnel_id = edit.tunnel.id
            return

        if edit is not None and plan.action == PLAN_UPDATE:
            t = edit.tunnel
            payload: Dict[str, Any] = {
                "id": t.id,
                "name": t.name,
                "flow": t.flow,
                "trafficRatio": t.traffic_ratio,
                "tcpListenAddr": t.tcp_listen_addr or "",
                "udpListenAddr": t.udp_listen_addr or "",
                "interfaceName": t.interface_name or "",
                "protocol": plan.protocol or "",
            }
            if plan.out_exit_id is not None:
                payload["outExitId"] = plan.out_exit_id
            else:
                payload["outNodeId"] = plan.out_node_id
            await self.api.update_tunnel(payload)
            state.tunnel_id = t.id
            return

        name = tunnel_name_for(request.name, state.token)
        if not state.tunnel_created:
            payload = {
                "name": name,
                "inNodeId": int(entry.node_id or 0),
                "type": plan.type,
                "flow": 1,
                "trafficRatio": 1,
                "protocol": plan.protocol or "",
            }
            if plan.out_exit_id is not None:
                payload["outExitId"] = plan.out_exit_id
            else:
                payload["outNodeId"] = plan.out_node_id
            ack = await self.api.create_tunnel(payload)
            state.tunnel_created = True
            ack_id = _ack_id(ack)
            if ack_id:
                state.tunnel_id = ack_id
                return

        state.tunnel_id = await self._identify_tunnel(name, int(entry.node_id or 0), state)

    async def _identify_tunnel(self, name: str, in_node_id: int, state: SubmissionState) -> int:
        try:
            rows = await self.api.list_tunnels()
        except PanelApiError as exc:
            state.failed_step = STEP_TUNNEL
            state.error = exc.message
            raise TunnelIdentificationFailure(
                f"tunnel created but unidentified: {exc.message}", step=STEP_TUNNEL, state=state
            ) from exc
        matches: List[int] = []
        for row in rows:
            t = parse_tunnel(row)
            if t is not None and t.name == name and t.in_node_id == in_node_id:
                matches.append(t.id)
        if len(matches) == 1:
            return matches[0]
        state.failed_step = STEP_TUNNEL
        state.error = "tunnel created but unidentified"
        logger.warning("tunnel %s on node %s matched %d rows: %s", name, in_node_id, len(matches), matches)
        raise TunnelIdentificationFailure(
            f"tunnel created but unidentified ({len(matches)} matches for {name}).",
            step=STEP_TUNNEL,
            state=state,
            candidates=matches,
        )

    # -- steps 5-8 ---------------------------------------------------------

    async def _step_path(self, route: Route, tunnel_id: int, edit: Optional[EditContext]) -> None:
        mids = [int(h.node_id or 0) for h in route.interior]
        modes = list(route.link_modes[: max(len(route.hops) - 1, 0)])
        if edit is None and not mids and not modes:
            return
        await self.api.set_tunnel_path(tunnel_id, mids, modes)

    async def _step_bind(self, route: Route, tunnel_id: int, edit: Optional[EditContext]) -> None:
        binds = [
            {"nodeId": int(h.node_id or 0), "ip": h.bind_ip}
            for h in route.hops[1:]
            if h.kind == "node" and h.bind_ip
        ]
        if edit is None and not binds:
            return
        await self.api.set_tunnel_bind(tunnel_id, binds)

    def _forward_payload(self, request: SubmitRequest, tunnel_id: int, resolved: _Resolved) -> Dict[str, Any]:
        entry, _ = _endpoints(request.route)
        return {
            "name": request.name,
            "group": ",".join(request.groups),
            "tunnelId": tunnel_id,
            "inPort": resolved.entry_port,
            "remoteAddr": resolved.remote_addr,
            "interfaceName": entry.bind_ip or "",
            "strategy": FORWARD_STRATEGY,
        }

    async def _step_forward(self, request: SubmitRequest, payload: Dict[str, Any], state: SubmissionState) -> None:
        if request.edit is not None:
            state.forward_id = request.edit.forward.id
            await self.api.update_forward(dict(payload, id=request.edit.forward.id))
            return
        if not state.forward_created:
            ack = await self.api.create_forward(payload)
            state.forward_created = True
            ack_id = _ack_id(ack)
            if ack_id:
                state.forward_id = ack_id
                return
        state.forward_id = await self._identify_forward(request.name, int(payload["tunnelId"]), state)

    async def _identify_forward(self, name: str, tunnel_id: int, state: SubmissionState) -> int:
        rows = await self.api.list_forwards()
        matches: List[int] = []
        for row in rows:
            f = parse_forward(row)
            if f is not None and f.name == name and f.tunnel_id == tunnel_id:
                matches.append(f.id)
        if len(matches) == 1:
            return matches[0]
        state.failed_step = STEP_FORWARD
        state.error = "forward created but unidentified"
        raise PartialReconciliation(
            f"forward created but unidentified ({len(matches)} matches for {name}).",
            step=STEP_FORWARD,
            state=state,
        )

    async def _step_mid_ports(
        self, payload: Dict[str, Any], resolved: _Resolved, inventory: Inventory, state: SubmissionState
    ) -> None:
        overrides = _mid_port_overrides(resolved, inventory)
        if not overrides:
            return
        await self.api.update_forward(dict(payload, id=int(state.forward_id or 0), midPorts=overrides))


def _ack_id(ack: Any) -> Optional[int]:
    if isinstance(ack, dict):
        v = safe_int(ack.get("id"))
    else:
        v = safe_int(ack) if isinstance(ack, (int, str)) and not isinstance(ack, bool) else None
    return v if v is not None and v > 0 else None
