"""Tests for the backend API client."""

import json
from typing import Any, Callable, Dict, List
from unittest.mock import patch

import httpx
import pytest

from route_console.app.clients import panel_api
from route_console.app.clients.panel_api import PanelApi, PanelApiError, _as_list, _normalize_base_url


def _api(handler: Callable[[httpx.Request], httpx.Response], **kw: Any) -> PanelApi:
    return PanelApi("http://panel.test/", "tok-1", transport=httpx.MockTransport(handler), **kw)


def _ok(data: Any) -> httpx.Response:
    return httpx.Response(200, json={"code": 0, "msg": "success", "data": data})


@pytest.fixture(autouse=True)
def no_backoff():
    with patch.object(panel_api, "_retry_backoff_sec", return_value=0.0):
        yield


class TestBaseUrl:
    """Tests for _normalize_base_url."""

    def test_adds_scheme_and_strips_prefix(self) -> None:
        assert _normalize_base_url("panel.test:6365/api/v1/") == "http://panel.test:6365"

    def test_empty(self) -> None:
        assert _normalize_base_url("  ") == ""


class TestAsList:
    def test_bare_array(self) -> None:
        assert _as_list([{"id": 1}, "x"]) == [{"id": 1}]

    def test_wrapped(self) -> None:
        assert _as_list({"tunnels": [{"id": 2}]}, "tunnels") == [{"id": 2}]
        assert _as_list({"list": [{"id": 3}]}) == [{"id": 3}]

    def test_other(self) -> None:
        assert _as_list(None) == []


class TestCall:
    """Envelope handling and request shape."""

    @pytest.mark.asyncio
    async def test_unwraps_data_and_sends_token(self) -> None:
        seen: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return _ok([{"id": 1, "name": "n1"}])

        api = _api(handler)
        rows = await api.list_nodes()
        await api.aclose()

        assert rows == [{"id": 1, "name": "n1"}]
        assert seen[0].method == "POST"
        assert str(seen[0].url) == "http://panel.test/api/v1/node/list"
        assert seen[0].headers["Authorization"] == "tok-1"

    @pytest.mark.asyncio
    async def test_payload_is_json(self) -> None:
        bodies: List[Dict[str, Any]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return _ok(None)

        api = _api(handler)
        await api.set_tunnel_path(5, [2, 3], ["direct", "tunnel", "direct"])
        await api.aclose()
        assert bodies == [{"tunnelId": 5, "path": [2, 3], "linkModes": ["direct", "tunnel", "direct"]}]

    @pytest.mark.asyncio
    async def test_nonzero_code_raises_with_message(self) -> None:
        api = _api(lambda request: httpx.Response(200, json={"code": -1, "msg": "隧道不存在", "data": None}))
        with pytest.raises(PanelApiError) as exc_info:
            await api.get_tunnel(9)
        await api.aclose()
        assert exc_info.value.message == "隧道不存在"
        assert exc_info.value.code == -1
        assert exc_info.value.path == "/tunnel/get"
        assert exc_info.value.to_dict()["code"] == "backend_error"

    @pytest.mark.asyncio
    async def test_http_error(self) -> None:
        api = _api(lambda request: httpx.Response(500, text="upstream broke"))
        with pytest.raises(PanelApiError) as exc_info:
            await api.list_forwards()
        await api.aclose()
        assert exc_info.value.status_code == 500
        assert "HTTP 500" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_non_json_body(self) -> None:
        api = _api(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(PanelApiError, match="non-JSON"):
            await api.list_exits()
        await api.aclose()

    @pytest.mark.asyncio
    async def test_unconfigured_backend(self) -> None:
        api = PanelApi("", "")
        with pytest.raises(PanelApiError, match="not configured"):
            await api.list_nodes()


class TestRetries:
    """Reads retry on transport errors; writes only when nothing was sent."""

    @pytest.mark.asyncio
    async def test_read_retried_after_connect_error(self) -> None:
        attempts: List[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            if len(attempts) < 3:
                raise httpx.ConnectError("refused", request=request)
            return _ok([])

        api = _api(handler, retries=3)
        assert await api.list_tunnels() == []
        await api.aclose()
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_read_gives_up(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        api = _api(handler, retries=2)
        with pytest.raises(PanelApiError, match="unreachable"):
            await api.list_tunnels()
        await api.aclose()

    @pytest.mark.asyncio
    async def test_write_not_resent_after_read_error(self) -> None:
        attempts: List[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            raise httpx.ReadError("reset", request=request)

        api = _api(handler, retries=3)
        with pytest.raises(PanelApiError, match="request failed"):
            await api.create_forward({"name": "f"})
        await api.aclose()
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_write_resent_after_connect_error(self) -> None:
        attempts: List[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            if len(attempts) == 1:
                raise httpx.ConnectError("refused", request=request)
            return _ok({"requestId": "r1"})

        api = _api(handler, retries=3)
        assert await api.create_forward({"name": "f"}) == {"requestId": "r1"}
        await api.aclose()
        assert len(attempts) == 2


class TestHelpers:
    @pytest.mark.asyncio
    async def test_interfaces(self) -> None:
        api = _api(lambda request: _ok({"ips": ["10.0.0.1", " ", "fe80::1"]}))
        assert await api.get_node_interfaces(3) == ["10.0.0.1", "fe80::1"]
        await api.aclose()

    @pytest.mark.asyncio
    async def test_status_detail_non_dict(self) -> None:
        api = _api(lambda request: _ok(None))
        assert await api.get_forward_status_detail(3) == {}
        await api.aclose()
