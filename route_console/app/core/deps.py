from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from ..clients.panel_api import PanelApi, get_panel_api
from ..services.inventory import InventoryCache
from ..services.reconcile import Reconciler
from . import settings

_CACHE: Optional[InventoryCache] = None


def require_key(x_api_key: Optional[str] = Header(default=None, alias="X-API-Key")) -> None:
    key = settings.API_KEY
    if key and x_api_key != key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid API key")


async def get_inventory_cache(api: PanelApi = Depends(get_panel_api)) -> InventoryCache:
    global _CACHE
    if _CACHE is None or _CACHE.api is not api:
        _CACHE = InventoryCache(api)
    return _CACHE


def get_reconciler(api: PanelApi = Depends(get_panel_api)) -> Reconciler:
    return Reconciler(api)


def reset_inventory_cache() -> None:
    global _CACHE
    _CACHE = None
