from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

from ..core.errors import RouteEngineError, SubmissionCancelled
from ..core.settings import JOB_TTL_SEC
from ..models import Inventory, SubmitRequest
from .reconcile import STEP_TUNNEL, Reconciler, SubmissionState

logger = logging.getLogger(__name__)

JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_SUCCESS = "success"
JOB_ERROR = "error"
JOB_CANCELLED = "cancelled"
FINAL_STATUSES = (JOB_SUCCESS, JOB_ERROR, JOB_CANCELLED)

_JOBS: Dict[str, Dict[str, Any]] = {}
_JOBS_LOCK = threading.Lock()


def _now() -> float:
    return float(time.time())


def _prune_jobs_locked(now_ts: Optional[float] = None) -> None:
    now = float(now_ts if now_ts is not None else _now())
    stale_ids: List[str] = []
    for jid, job in _JOBS.items():
        st = str(job.get("status") or "")
        updated = float(job.get("updated_at") or 0.0)
        if st in FINAL_STATUSES and (now - updated) > float(JOB_TTL_SEC):
            stale_ids.append(jid)
    for jid in stale_ids:
        _JOBS.pop(jid, None)


def job_public_view(job: Dict[str, Any]) -> Dict[str, Any]:
    state = job.get("_state")
    res = job.get("result")
    return {
        "job_id": str(job.get("job_id") or ""),
        "status": str(job.get("status") or ""),
        "name": str(job.get("name") or ""),
        "created_at": float(job.get("created_at") or 0.0),
        "updated_at": float(job.get("updated_at") or 0.0),
        "attempts": int(job.get("attempts") or 0),
        "error": str(job.get("error") or ""),
        "code": str(job.get("code") or ""),
        "step": str(job.get("step") or ""),
        "result": dict(res) if isinstance(res, dict) else {},
        "state": state.public_view() if isinstance(state, SubmissionState) else {},
    }


def _job_set(job_id: str, **kwargs: Any) -> None:
    now = _now()
    with _JOBS_LOCK:
        job = _JOBS.get(job_id)
        if not isinstance(job, dict):
            return
        for k, v in kwargs.items():
            job[k] = v
        job["updated_at"] = now


def _job_snapshot(job_id: str) -> Optional[Dict[str, Any]]:
    with _JOBS_LOCK:
        job = _JOBS.get(job_id)
        if not isinstance(job, dict):
            return None
        return dict(job)


async def _job_runner(job_id: str, reconciler: Reconciler, inventory: Inventory) -> None:
    snap = _job_snapshot(job_id)
    if snap is None:
        return
    request: SubmitRequest = snap["_request"]
    state: SubmissionState = snap["_state"]
    attempts = int(snap.get("attempts") or 0) + 1
    _job_set(job_id, status=JOB_RUNNING, attempts=attempts, error="", code="", step="")

    try:
        if attempts > 1:
            result = await reconciler.resume(state, request, inventory)
        else:
            result = await reconciler.submit(request, inventory, state=state)
    except SubmissionCancelled as exc:
        _job_set(job_id, status=JOB_CANCELLED, error=exc.message, code=exc.code, step=exc.step)
        return
    except RouteEngineError as exc:
        _job_set(job_id, status=JOB_ERROR, error=exc.message, code=exc.code, step=str(getattr(exc, "step", "") or ""))
        return
    except Exception as exc:
        logger.exception("submission job %s crashed", job_id)
        _job_set(job_id, status=JOB_ERROR, error=f"submission crashed: {exc}", code="internal_error")
        return

    _job_set(job_id, status=JOB_SUCCESS, result=result.model_dump())


def enqueue_submission(reconciler: Reconciler, request: SubmitRequest, inventory: Inventory) -> Dict[str, Any]:
    """Queue a submission and run it in the background; returns the job view."""
    now = _now()
    job_id = uuid.uuid4().hex
    job = {
        "job_id": job_id,
        "status": JOB_QUEUED,
        "name": request.name,
        "created_at": now,
        "updated_at": now,
        "attempts": 0,
        "error": "",
        "code": "",
        "step": "",
        "result": {},
        "_request": request,
        "_state": SubmissionState(),
    }
    with _JOBS_LOCK:
        _prune_jobs_locked(now)
        _JOBS[job_id] = job
    asyncio.create_task(_job_runner(job_id, reconciler, inventory))
    return job_public_view(job)


def get_job(job_id: str) -> Optional[Dict[str, Any]]:
    with _JOBS_LOCK:
        _prune_jobs_locked()
        job = _JOBS.get(str(job_id or ""))
        if not isinstance(job, dict):
            return None
        return job_public_view(job)


def cancel_job(job_id: str) -> Tuple[bool, str, Optional[Dict[str, Any]]]:
    """Ask a job to stop. Only effective until the tunnel step starts."""
    with _JOBS_LOCK:
        job = _JOBS.get(str(job_id or ""))
        if not isinstance(job, dict):
            return False, "job not found or expired", None
        st = str(job.get("status") or "")
        if st in FINAL_STATUSES:
            return False, "job already finished", job_public_view(job)
        state: SubmissionState = job["_state"]
        if state.done(STEP_TUNNEL) or state.tunnel_created:
            return False, "backend changes already started; the job can no longer be cancelled", job_public_view(job)
        state.cancel_requested = True
        job["updated_at"] = _now()
        return True, "", job_public_view(job)


def resume_job(job_id: str, reconciler: Reconciler, inventory: Inventory) -> Tuple[bool, str, Optional[Dict[str, Any]]]:
    """Re-run a failed or cancelled job from its resume point."""
    with _JOBS_LOCK:
        _prune_jobs_locked()
        job = _JOBS.get(str(job_id or ""))
        if not isinstance(job, dict):
            return False, "job not found or expired", None
        st = str(job.get("status") or "")
        if st not in (JOB_ERROR, JOB_CANCELLED):
            return False, "only failed or cancelled jobs can be resumed", job_public_view(job)
        state: SubmissionState = job["_state"]
        state.cancel_requested = False
        job["status"] = JOB_QUEUED
        job["updated_at"] = _now()
        view = job_public_view(job)
    asyncio.create_task(_job_runner(str(job_id), reconciler, inventory))
    return True, "", view


def clear_jobs() -> None:
    with _JOBS_LOCK:
        _JOBS.clear()
