from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..core.settings import (
    HTTP_RETRIES,
    HTTP_RETRY_BACKOFF_BASE_SEC,
    HTTP_TIMEOUT,
    PANEL_TOKEN,
    PANEL_URL,
    PANEL_VERIFY_TLS,
)

logger = logging.getLogger(__name__)

_HTTP_LIMITS = httpx.Limits(max_connections=50, max_keepalive_connections=20, keepalive_expiry=20.0)
_API_PREFIX = "/api/v1"

# Writes are only re-sent when the request never reached the backend.
_UNSENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


class PanelApiError(RuntimeError):
    """Raised when a backend call fails (transport, HTTP status or envelope code != 0)."""

    def __init__(self, message: str, *, path: str = "", code: Optional[int] = None, status_code: int = 0):
        super().__init__(message)
        self.message = str(message or "")
        self.path = path
        self.code = code
        self.status_code = int(status_code or 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": False,
            "code": "backend_error",
            "error": self.message,
            "path": self.path,
            "backend_code": self.code,
        }


def _retry_backoff_sec(attempt_no: int) -> float:
    n = max(1, int(attempt_no or 1))
    return min(2.5, HTTP_RETRY_BACKOFF_BASE_SEC * (2 ** (n - 1)))


def _normalize_base_url(base_url: str) -> str:
    raw = (base_url or "").strip()
    if not raw:
        return ""
    if "://" not in raw:
        raw = f"http://{raw}"
    raw = raw.rstrip("/")
    if raw.endswith(_API_PREFIX):
        raw = raw[: -len(_API_PREFIX)]
    return raw


def _format_http_error(r: httpx.Response) -> str:
    try:
        data = r.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and data.get("msg"):
        return f"HTTP {r.status_code}: {data.get('msg')}"
    text = (r.text or "").strip()
    if len(text) > 200:
        text = text[:200] + "…"
    return f"HTTP {r.status_code}: {text or r.reason_phrase}"


def _as_list(data: Any, *keys: str) -> List[Dict[str, Any]]:
    """Backend list endpoints return either a bare array or {<key>: [...]}."""
    if isinstance(data, list):
        return [x for x in data if isinstance(x, dict)]
    if isinstance(data, dict):
        for k in keys + ("list", "records", "items"):
            v = data.get(k)
            if isinstance(v, list):
                return [x for x in v if isinstance(x, dict)]
    return []


class PanelApi:
    """Async client for the forwarding backend's POST-only JSON API.

    Every call goes to ``<base>/api/v1/<path>`` and unwraps the
    ``{code, msg, data}`` envelope; ``code != 0`` raises PanelApiError with
    the backend message.
    """

    def __init__(
        self,
        base_url: str = PANEL_URL,
        token: str = PANEL_TOKEN,
        *,
        verify_tls: bool = PANEL_VERIFY_TLS,
        timeout: float = HTTP_TIMEOUT,
        retries: int = HTTP_RETRIES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = _normalize_base_url(base_url)
        self.token = str(token or "")
        self.verify_tls = bool(verify_tls)
        self.timeout = float(timeout)
        self.retries = max(1, int(retries))
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._lock = threading.Lock()

    def _get_client(self) -> httpx.AsyncClient:
        cli = self._client
        if cli is not None and not cli.is_closed:
            return cli
        with self._lock:
            cli = self._client
            if cli is not None and not cli.is_closed:
                return cli
            kwargs: Dict[str, Any] = {"verify": self.verify_tls, "limits": _HTTP_LIMITS, "timeout": self.timeout}
            if self._transport is not None:
                kwargs["transport"] = self._transport
            cli = httpx.AsyncClient(**kwargs)
            self._client = cli
            return cli

    async def _drop_client(self) -> None:
        with self._lock:
            cli, self._client = self._client, None
        if cli is not None:
            try:
                await cli.aclose()
            except Exception:
                logger.debug("closing stale panel client failed", exc_info=True)

    async def aclose(self) -> None:
        with self._lock:
            cli, self._client = self._client, None
        if cli is not None:
            await cli.aclose()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = self.token
        return headers

    async def call(self, path: str, payload: Optional[Dict[str, Any]] = None, *, idempotent: bool = True) -> Any:
        """POST one API call and return the envelope's ``data``."""
        if not self.base_url:
            raise PanelApiError("backend address is not configured", path=path)
        p = "/" + str(path or "").lstrip("/")
        url = f"{self.base_url}{_API_PREFIX}{p}"
        retry_on = httpx.TransportError if idempotent else _UNSENT_ERRORS

        r: Optional[httpx.Response] = None
        for attempt in range(self.retries):
            client = self._get_client()
            try:
                r = await client.post(url, json=payload or {}, headers=self._headers(), timeout=self.timeout)
                break
            except retry_on as exc:
                if attempt + 1 < self.retries:
                    logger.info("panel call %s transport error (%s), retrying", p, exc)
                    await self._drop_client()
                    await asyncio.sleep(_retry_backoff_sec(attempt + 1))
                    continue
                raise PanelApiError(f"backend unreachable: {exc}", path=p) from exc
            except httpx.TransportError as exc:
                raise PanelApiError(f"backend request failed: {exc}", path=p) from exc

        if r is None:
            raise PanelApiError("backend unreachable", path=p)
        if not (200 <= r.status_code < 300):
            raise PanelApiError(_format_http_error(r), path=p, status_code=r.status_code)
        try:
            body = r.json()
        except ValueError as exc:
            raise PanelApiError("backend returned a non-JSON response", path=p, status_code=r.status_code) from exc
        if not isinstance(body, dict):
            raise PanelApiError("backend returned an unexpected response", path=p, status_code=r.status_code)
        code = body.get("code")
        try:
            code_i = int(code) if code is not None else 0
        except (TypeError, ValueError):
            code_i = -1
        if code_i != 0:
            msg = str(body.get("msg") or "").strip() or f"backend error code {code}"
            raise PanelApiError(msg, path=p, code=code_i, status_code=r.status_code)
        return body.get("data")

    # -- inventory ---------------------------------------------------------

    async def list_nodes(self) -> List[Dict[str, Any]]:
        return _as_list(await self.call("/node/list"), "nodes")

    async def list_exits(self) -> List[Dict[str, Any]]:
        return _as_list(await self.call("/exit/list"), "exits")

    async def get_node_interfaces(self, node_id: int) -> List[str]:
        data = await self.call("/node/interfaces", {"nodeId": int(node_id)})
        ips = data.get("ips") if isinstance(data, dict) else data
        if not isinstance(ips, list):
            return []
        return [str(x).strip() for x in ips if str(x or "").strip()]

    # -- tunnels -----------------------------------------------------------

    async def list_tunnels(self) -> List[Dict[str, Any]]:
        return _as_list(await self.call("/tunnel/list"), "tunnels")

    async def get_tunnel(self, tunnel_id: int) -> Dict[str, Any]:
        data = await self.call("/tunnel/get", {"id": int(tunnel_id)})
        return data if isinstance(data, dict) else {}

    async def create_tunnel(self, payload: Dict[str, Any]) -> Any:
        return await self.call("/tunnel/create", payload, idempotent=False)

    async def update_tunnel(self, payload: Dict[str, Any]) -> Any:
        return await self.call("/tunnel/update", payload, idempotent=False)

    async def get_tunnel_path(self, tunnel_id: int) -> Dict[str, Any]:
        data = await self.call("/tunnel/path/get", {"tunnelId": int(tunnel_id)})
        return data if isinstance(data, dict) else {}

    async def set_tunnel_path(self, tunnel_id: int, path: Sequence[int], link_modes: Sequence[str]) -> Any:
        payload = {"tunnelId": int(tunnel_id), "path": [int(x) for x in path], "linkModes": list(link_modes)}
        return await self.call("/tunnel/path/set", payload)

    async def get_tunnel_bind(self, tunnel_id: int) -> List[Dict[str, Any]]:
        return _as_list(await self.call("/tunnel/bind/get", {"tunnelId": int(tunnel_id)}), "binds")

    async def set_tunnel_bind(self, tunnel_id: int, binds: Sequence[Dict[str, Any]]) -> Any:
        payload = {"tunnelId": int(tunnel_id), "binds": [dict(b) for b in binds]}
        return await self.call("/tunnel/bind/set", payload)

    # -- forwards ----------------------------------------------------------

    async def list_forwards(self) -> List[Dict[str, Any]]:
        return _as_list(await self.call("/forward/list"), "forwards")

    async def create_forward(self, payload: Dict[str, Any]) -> Any:
        return await self.call("/forward/create", payload, idempotent=False)

    async def update_forward(self, payload: Dict[str, Any]) -> Any:
        return await self.call("/forward/update", payload, idempotent=False)

    async def get_forward_status_detail(self, forward_id: int) -> Dict[str, Any]:
        data = await self.call("/forward/status-detail", {"forwardId": int(forward_id)})
        return data if isinstance(data, dict) else {}


_API: Optional[PanelApi] = None
_API_LOCK = threading.Lock()


def get_panel_api() -> PanelApi:
    """Process-wide client built from settings (FastAPI dependency)."""
    global _API
    with _API_LOCK:
        if _API is None:
            _API = PanelApi()
        return _API


async def close_panel_api() -> None:
    """Close the shared keep-alive client (called at app shutdown)."""
    global _API
    with _API_LOCK:
        api, _API = _API, None
    if api is not None:
        await api.aclose()
