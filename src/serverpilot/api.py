"""Plugins — FastAPI API router.

Provides REST endpoints for:
  /api/plugins                       list / enable / disable / configure
  /api/plugins/rescan                re-read plugins dir and registry
  /api/plugins/nav                   sidebar items from enabled plugins
  /api/plugins/widgets               widget declarations + data
  /api/plugins/components            component declarations
  /api/plugins/component-file        serve one component file
  /api/plugins/marketplace           catalog, install, uninstall
  /api/plugins/<id>/<path>           plugin-defined API routes
"""

import logging

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response

from serverpilot.auth import Caller, get_caller, require_admin, require_caller
from serverpilot.plugins.manifest import is_valid_plugin_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/plugins", tags=["Plugins"])


def _manager(request: Request):
    return request.app.state.plugins


def _marketplace(request: Request):
    return request.app.state.marketplace


async def _json_object(request: Request) -> dict:
    try:
        data = await request.json()
    except ValueError:
        data = None
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object")
    return data


# ─── Plugins ──────────────────────────────────────────────────────────────


@router.get("")
async def list_plugins_endpoint(request: Request, _caller: Caller = Depends(require_caller)):
    """List all discovered plugins (enabled and disabled)."""
    return _manager(request).list_plugins()


@router.post("")
async def update_plugin_endpoint(request: Request, _caller: Caller = Depends(require_admin)):
    """Enable, disable or configure a plugin."""
    data = await _json_object(request)

    plugin_id = data.get("id")
    action = data.get("action")
    if not plugin_id:
        raise HTTPException(status_code=400, detail="Missing plugin id")
    if not is_valid_plugin_id(plugin_id):
        raise HTTPException(status_code=400, detail="Invalid plugin id")

    manager = _manager(request)
    if manager.get(plugin_id) is None:
        raise HTTPException(status_code=404, detail="Plugin not found")

    if action == "enable":
        if not await manager.enable(plugin_id):
            raise HTTPException(status_code=500, detail=f'Plugin "{plugin_id}" failed to activate')
        return {"ok": True, "message": f'Plugin "{plugin_id}" enabled'}

    if action == "disable":
        await manager.disable(plugin_id)
        return {"ok": True, "message": f'Plugin "{plugin_id}" disabled'}

    if action == "configure":
        config = data.get("config")
        if not isinstance(config, dict):
            raise HTTPException(status_code=400, detail="Missing config object")
        manager.configure(plugin_id, config)
        return {"ok": True, "message": f'Plugin "{plugin_id}" configured'}

    raise HTTPException(status_code=400, detail="Invalid action. Use: enable, disable, configure")


@router.post("/rescan")
async def rescan_endpoint(request: Request, _caller: Caller = Depends(require_admin)):
    """Re-read the plugin tree and registry, then apply enabled/disabled state."""
    return {"ok": True, "plugins": await _manager(request).discover()}


@router.get("/nav")
async def nav_items_endpoint(request: Request, _caller: Caller = Depends(require_caller)):
    return _manager(request).nav_items()


@router.get("/widgets")
async def widgets_endpoint(
    request: Request,
    placement: str = Query("dashboard"),
    _caller: Caller = Depends(require_caller),
):
    """Widget declarations from enabled plugins, with their current data."""
    manager = _manager(request)
    results = []
    for widget in manager.widgets(placement):
        results.append(
            {
                "pluginId": widget["pluginId"],
                "key": widget["key"],
                "title": widget["title"],
                "colSpan": widget.get("colSpan") or 1,
                "data": await manager.widget_data(widget["pluginId"], widget["key"]),
            }
        )
    return results


@router.get("/components")
async def components_endpoint(
    request: Request,
    type_: str | None = Query(None, alias="type", pattern="^(page|widget|panel)$"),
    include_all: bool = Query(False, alias="all"),
    _caller: Caller = Depends(require_caller),
):
    manager = _manager(request)
    if include_all:
        return manager.all_components(type_)
    return manager.components(type_)


@router.get("/component-file")
async def component_file_endpoint(
    request: Request,
    plugin: str = Query(...),
    key: str = Query(...),
    _caller: Caller = Depends(require_caller),
):
    """Serve a plugin component file; the path must stay inside the plugin dir."""
    if not is_valid_plugin_id(plugin):
        raise HTTPException(status_code=400, detail="Invalid plugin id")

    result = _manager(request).component_file(plugin, key)
    if result is None:
        raise HTTPException(status_code=404, detail="Component not found or plugin is disabled")

    return Response(
        content=result.content,
        media_type=result.media_type,
        headers={
            "Cache-Control": "no-cache",
            "X-Plugin-Id": plugin,
            "X-Component-Key": key,
        },
    )


# ─── Marketplace ──────────────────────────────────────────────────────────


@router.get("/marketplace")
async def marketplace_catalog(
    request: Request,
    refresh: bool = Query(False),
    _caller: Caller = Depends(require_caller),
):
    """Remote catalog with an ``installed`` flag per entry."""
    try:
        catalog = await _marketplace(request).fetch_catalog(force_refresh=refresh)
    except (httpx.HTTPError, ValueError):
        logger.exception("Catalog fetch failed")
        raise HTTPException(status_code=502, detail="Failed to load catalog")

    installed = set(_manager(request).installed_ids())
    return {
        **catalog,
        "plugins": [{**p, "installed": p.get("id") in installed} for p in catalog["plugins"]],
    }


@router.post("/marketplace")
async def marketplace_install(request: Request, _caller: Caller = Depends(require_admin)):
    """Install a plugin from ``{pluginId, downloadUrl}``."""
    data = await _json_object(request)

    plugin_id = data.get("pluginId")
    download_url = data.get("downloadUrl")
    if not plugin_id or not download_url:
        raise HTTPException(status_code=400, detail="Missing pluginId or downloadUrl")
    if not is_valid_plugin_id(plugin_id):
        raise HTTPException(status_code=400, detail="Invalid plugin ID format")

    result = await _marketplace(request).install(plugin_id, download_url)
    return JSONResponse(result.to_dict(), status_code=200 if result.ok else 400)


@router.delete("/marketplace")
async def marketplace_uninstall(
    request: Request,
    plugin_id: str = Query(..., alias="id"),
    _caller: Caller = Depends(require_admin),
):
    result = await _marketplace(request).uninstall(plugin_id)
    return JSONResponse(result.to_dict(), status_code=200 if result.ok else 400)


# ─── Plugin-defined routes ────────────────────────────────────────────────


@router.api_route("/{plugin_id}/{path:path}", methods=["GET", "POST", "PUT", "DELETE"])
async def plugin_route(
    plugin_id: str,
    path: str,
    request: Request,
    caller: Caller | None = Depends(get_caller),
):
    """Route ``/api/plugins/<id>/<path>`` to the plugin's handler."""
    response = await request.app.state.plugin_router.dispatch(
        plugin_id, request.method, "/" + path, request, caller
    )
    if response is None:
        raise HTTPException(status_code=404, detail="Route not found in plugin")
    return response
