from __future__ import annotations

from typing import Any, Dict, List, Optional


class RouteEngineError(RuntimeError):
    """Base class for every failure surfaced to the route editor."""

    code = "route_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = str(message or "")

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": False, "code": self.code, "error": self.message}


# ---------------------------------------------------------------------------
# Local errors: raised before any backend call
# ---------------------------------------------------------------------------


class StructuralInvalid(RouteEngineError):
    """The route breaks a topology rule."""

    code = "structural_invalid"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class PortInvalid(RouteEngineError):
    """A hop port is out of its node range, already taken, or unallocatable."""

    code = "port_invalid"

    def __init__(
        self,
        message: str,
        *,
        issue: str,
        port: Optional[int] = None,
        hop_key: Optional[str] = None,
        node_id: Optional[int] = None,
    ):
        super().__init__(message)
        self.issue = issue
        self.port = port
        self.hop_key = hop_key
        self.node_id = node_id

    def annotate(self, hop_key: str, node_id: Optional[int] = None) -> "PortInvalid":
        self.hop_key = hop_key
        if node_id is not None:
            self.node_id = node_id
        return self

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out.update({"issue": self.issue, "port": self.port, "hop_key": self.hop_key, "node_id": self.node_id})
        return out


class ResolutionError(RouteEngineError):
    """The terminal hop has no resolvable host/port."""

    code = "resolution_error"


class RecordNotFound(RouteEngineError):
    code = "not_found"


# ---------------------------------------------------------------------------
# Remote errors: raised by the reconciler once it talks to the backend
# ---------------------------------------------------------------------------


class ReconcileError(RouteEngineError):
    """A backend step failed.

    `step` is the saga step that failed, `state` the saga state (ids known so
    far, completed steps) so the caller can resume instead of restarting.
    """

    code = "reconcile_error"

    def __init__(self, message: str, *, step: str, state: Any = None):
        super().__init__(message)
        self.step = step
        self.state = state

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["step"] = self.step
        if self.state is not None and hasattr(self.state, "public_view"):
            out["state"] = self.state.public_view()
        return out


class TunnelIdentificationFailure(ReconcileError):
    """Tunnel create was acknowledged but no unique tunnel can be found."""

    code = "tunnel_unidentified"

    def __init__(self, message: str, *, step: str, state: Any = None, candidates: Optional[List[int]] = None):
        super().__init__(message, step=step, state=state)
        self.candidates = list(candidates or [])

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["candidates"] = list(self.candidates)
        return out


class PartialReconciliation(ReconcileError):
    """A step after tunnel creation failed; earlier steps stay applied."""

    code = "partial_reconciliation"


class PortRace(ReconcileError):
    """The backend rejected a port the local inventory snapshot thought free."""

    code = "port_race"


class SubmissionCancelled(ReconcileError):
    code = "cancelled"
