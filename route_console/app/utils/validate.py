from __future__ import annotations

from dataclasses import dataclass
from typing import List

from ..core.errors import StructuralInvalid
from ..models import Inventory, Route, ValidationResult

MSG_EMPTY = "select hops; last hop must be an exit."
MSG_SINGLE_HOP = "single-hop routes require a managed exit node."
MSG_ENTRY_NOT_NODE = "entry must be a managed node."
MSG_LAST_NOT_EXIT = "last hop must be an exit."
MSG_EXTERNAL_NOT_LAST = "external exits may only be the last hop."
MSG_EXTERNAL_TUNNEL = "external exits do not support the tunnel link mode."
MSG_DUPLICATE_HOP = "duplicate hop in route."
MSG_LINK_MODES = "link modes out of sync with hops."
MSG_UNKNOWN_NODE = "hop references an unknown node."
MSG_UNKNOWN_EXIT = "hop references an unknown exit."
MSG_VALID = "route is valid."


@dataclass
class RouteIssue:
    """A single validation issue."""

    path: str
    message: str


def route_issues(route: Route, inventory: Inventory) -> List[RouteIssue]:
    """All topology issues of `route`, in the order they are reported.

    The first issue is the verdict shown to the operator; later ones only
    matter for diagnostics.
    """
    hops = route.hops
    n = len(hops)
    if n == 0:
        return [RouteIssue(path="hops", message=MSG_EMPTY)]

    issues: List[RouteIssue] = []

    if n == 1:
        only = hops[0]
        if only.kind != "node" or not inventory.is_exit_capable(only):
            issues.append(RouteIssue(path="hops[0]", message=MSG_SINGLE_HOP))
    else:
        last = n - 1
        if hops[0].kind != "node":
            issues.append(RouteIssue(path="hops[0]", message=MSG_ENTRY_NOT_NODE))
        if not inventory.is_exit_capable(hops[last]):
            issues.append(RouteIssue(path=f"hops[{last}]", message=MSG_LAST_NOT_EXIT))
        for idx in range(last):
            if hops[idx].kind == "external":
                issues.append(RouteIssue(path=f"hops[{idx}]", message=MSG_EXTERNAL_NOT_LAST))
                break
        last_mode = route.link_modes[last - 1] if len(route.link_modes) >= last else "direct"
        if last_mode == "tunnel" and hops[last].kind == "external":
            issues.append(RouteIssue(path=f"link_modes[{last - 1}]", message=MSG_EXTERNAL_TUNNEL))

    keys = route.keys()
    if len(set(keys)) != len(keys):
        issues.append(RouteIssue(path="hops", message=MSG_DUPLICATE_HOP))
    if len(route.link_modes) != n - 1:
        issues.append(RouteIssue(path="link_modes", message=MSG_LINK_MODES))

    for idx, hop in enumerate(hops):
        if hop.kind == "node" and inventory.node(hop.node_id) is None:
            issues.append(RouteIssue(path=f"hops[{idx}]", message=MSG_UNKNOWN_NODE))
        elif hop.kind == "external" and inventory.external_exit(hop.exit_id) is None:
            issues.append(RouteIssue(path=f"hops[{idx}]", message=MSG_UNKNOWN_EXIT))

    return issues


def validate_route(route: Route, inventory: Inventory) -> ValidationResult:
    """Pure verdict over (route, inventory); gates the submit action."""
    issues = route_issues(route, inventory)
    if issues:
        return ValidationResult(ok=False, reason=issues[0].message)
    return ValidationResult(ok=True, reason=MSG_VALID)


def require_valid(route: Route, inventory: Inventory) -> None:
    verdict = validate_route(route, inventory)
    if not verdict.ok:
        raise StructuralInvalid(verdict.reason)
