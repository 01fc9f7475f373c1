from __future__ import annotations

from typing import Any, Dict, Union

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..clients.panel_api import PanelApi, PanelApiError, get_panel_api
from ..core.deps import get_inventory_cache, get_reconciler, require_key
from ..core.errors import (
    PortRace,
    RecordNotFound,
    ReconcileError,
    RouteEngineError,
    SubmissionCancelled,
)
from ..models import Route, RouteCommand, SubmitRequest
from ..services import submit_jobs
from ..services.edit_load import load_edit_context
from ..services.inventory import InventoryCache
from ..services.ports import recommend_port
from ..services.reconcile import Reconciler
from ..services.route_model import mutate
from ..utils.normalize import split_groups
from ..utils.validate import validate_route

router = APIRouter(dependencies=[Depends(require_key)])


class MutateRequest(BaseModel):
    route: Route = Route()
    command: RouteCommand


class ValidateRequest(BaseModel):
    route: Route


class RecommendPortRequest(BaseModel):
    node_id: int


def _status_for(exc: Union[RouteEngineError, PanelApiError]) -> int:
    if isinstance(exc, PanelApiError):
        return 502
    if isinstance(exc, RecordNotFound):
        return 404
    if isinstance(exc, (PortRace, SubmissionCancelled)):
        return 409
    if isinstance(exc, ReconcileError):
        return 502
    return 400


def _error_response(exc: Union[RouteEngineError, PanelApiError]) -> JSONResponse:
    return JSONResponse(exc.to_dict(), status_code=_status_for(exc))


@router.post("/api/route/mutate")
async def api_route_mutate(payload: MutateRequest, cache: InventoryCache = Depends(get_inventory_cache)):
    """Apply one editing command and return the new route with its verdict."""
    try:
        inventory = await cache.get()
    except PanelApiError as exc:
        return _error_response(exc)
    try:
        route = mutate(payload.route, payload.command, inventory)
    except RouteEngineError as exc:
        body = exc.to_dict()
        body["route"] = payload.route.model_dump()
        body["validation"] = validate_route(payload.route, inventory).model_dump()
        return JSONResponse(body, status_code=400)
    return {"ok": True, "route": route.model_dump(), "validation": validate_route(route, inventory).model_dump()}


@router.post("/api/route/validate")
async def api_route_validate(payload: ValidateRequest, cache: InventoryCache = Depends(get_inventory_cache)):
    try:
        inventory = await cache.get()
    except PanelApiError as exc:
        return _error_response(exc)
    return validate_route(payload.route, inventory).model_dump()


@router.post("/api/route/recommend_port")
async def api_route_recommend_port(payload: RecommendPortRequest, cache: InventoryCache = Depends(get_inventory_cache)):
    try:
        inventory = await cache.get()
    except PanelApiError as exc:
        return _error_response(exc)
    node = inventory.node(payload.node_id)
    if node is None:
        return JSONResponse({"ok": False, "error": f"node {payload.node_id} does not exist."}, status_code=404)
    try:
        port = recommend_port(node)
    except RouteEngineError as exc:
        return JSONResponse(exc.to_dict(), status_code=409)
    return {"ok": True, "node_id": node.id, "port": port}


@router.post("/api/route/submit")
async def api_route_submit(
    payload: SubmitRequest,
    cache: InventoryCache = Depends(get_inventory_cache),
    reconciler: Reconciler = Depends(get_reconciler),
):
    """Run the whole submission and wait for it."""
    try:
        inventory = await cache.get()
        result = await reconciler.submit(payload, inventory)
    except PortRace as exc:
        # The snapshot was stale; the next attempt should see the taken port.
        cache.invalidate()
        return _error_response(exc)
    except (RouteEngineError, PanelApiError) as exc:
        return _error_response(exc)
    out: Dict[str, Any] = {"ok": True}
    out.update(result.model_dump())
    return out


@router.post("/api/route/submit_async")
async def api_route_submit_async(
    payload: SubmitRequest,
    cache: InventoryCache = Depends(get_inventory_cache),
    reconciler: Reconciler = Depends(get_reconciler),
):
    try:
        inventory = await cache.get()
    except PanelApiError as exc:
        return _error_response(exc)
    job = submit_jobs.enqueue_submission(reconciler, payload, inventory)
    return {"ok": True, "job": job}


@router.get("/api/route_jobs/{job_id}")
async def api_route_job_get(job_id: str):
    jid = str(job_id or "").strip()
    job = submit_jobs.get_job(jid)
    if job is None:
        return JSONResponse({"ok": False, "error": "job not found or expired"}, status_code=404)
    return {"ok": True, "job": job}


@router.post("/api/route_jobs/{job_id}/cancel")
async def api_route_job_cancel(job_id: str):
    ok, err, job = submit_jobs.cancel_job(str(job_id or "").strip())
    if job is None:
        return JSONResponse({"ok": False, "error": err}, status_code=404)
    if not ok:
        return JSONResponse({"ok": False, "error": err, "job": job}, status_code=409)
    return {"ok": True, "job": job}


@router.post("/api/route_jobs/{job_id}/resume")
async def api_route_job_resume(
    job_id: str,
    cache: InventoryCache = Depends(get_inventory_cache),
    reconciler: Reconciler = Depends(get_reconciler),
):
    jid = str(job_id or "").strip()
    if submit_jobs.get_job(jid) is None:
        return JSONResponse({"ok": False, "error": "job not found or expired"}, status_code=404)
    try:
        inventory = await cache.refresh()
    except PanelApiError as exc:
        return _error_response(exc)
    ok, err, job = submit_jobs.resume_job(jid, reconciler, inventory)
    if job is None:
        return JSONResponse({"ok": False, "error": err}, status_code=404)
    if not ok:
        return JSONResponse({"ok": False, "error": err, "job": job}, status_code=409)
    return {"ok": True, "job": job}


@router.get("/api/route/edit/{forward_id}")
async def api_route_edit(
    forward_id: int,
    cache: InventoryCache = Depends(get_inventory_cache),
    api: PanelApi = Depends(get_panel_api),
):
    """Reconstruct the editable route of a saved forward."""
    try:
        inventory = await cache.get()
        route, ctx = await load_edit_context(api, forward_id, inventory)
    except (RouteEngineError, PanelApiError) as exc:
        return _error_response(exc)
    return {
        "ok": True,
        "route": route.model_dump(),
        "edit": ctx.model_dump(),
        "name": ctx.forward.name,
        "groups": split_groups(ctx.forward.group),
        "validation": validate_route(route, inventory).model_dump(),
    }


@router.get("/api/nodes/{node_id}/interfaces")
async def api_node_interfaces(node_id: int, api: PanelApi = Depends(get_panel_api)):
    """Bind IP choices of a node."""
    try:
        ips = await api.get_node_interfaces(node_id)
    except PanelApiError as exc:
        return _error_response(exc)
    return {"ok": True, "node_id": node_id, "ips": ips}
