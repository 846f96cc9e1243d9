"""Dispatch ``/api/plugins/<id>/<path>`` requests to plugin handlers.

Access rules come from the manifest's ``apiRoutes`` declarations, never
from the handler code:

  - the plugin must exist and be enabled
  - routes need an authenticated caller unless declared ``"auth": false``
  - ``"adminOnly": true`` routes need the admin role
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi.responses import JSONResponse
from starlette.requests import Request
from starlette.responses import Response

from serverpilot.plugins.manager import PluginManager, call_hook

if TYPE_CHECKING:
    from serverpilot.auth import Caller

logger = logging.getLogger(__name__)


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status)


class PluginApiRouter:
    def __init__(self, manager: PluginManager):
        self.manager = manager

    async def dispatch(
        self,
        plugin_id: str,
        method: str,
        path: str,
        request: Request,
        caller: Caller | None = None,
    ) -> Response | None:
        """Run the plugin handler for ``METHOD path``.

        Returns ``None`` when the plugin has no handler for the route; access
        refusals come back as JSON error responses.
        """
        method = method.upper()
        if not path.startswith("/"):
            path = "/" + path

        plugin = self.manager.get(plugin_id)
        if plugin is None:
            return _error(404, "Plugin not found")
        if not plugin.enabled:
            return _error(403, "Plugin is disabled")

        route = plugin.manifest.find_route(method, path)
        if route is not None:
            admin_only = route.admin_only
        else:
            # Undeclared method: the handler may be a bare-path entry shared by all methods.
            admin_only = plugin.manifest.path_admin_only(path)
        needs_auth = route is None or route.auth or admin_only
        if needs_auth and caller is None:
            return _error(401, "Unauthorized")
        if admin_only and not (caller and caller.is_admin):
            return _error(403, "Admin only")

        handler = self.manager.api_handler(plugin, method, path)
        if handler is None:
            return None

        logger.debug("Dispatching %s %s to plugin '%s'", method, path, plugin_id)
        try:
            result: Any = await call_hook(handler, request, plugin.context)
            if isinstance(result, Response):
                return result
            if result is None:
                return Response(status_code=204)
            return JSONResponse(result)
        except Exception:
            plugin.context.log.exception("API error for %s %s", method, path)
            return _error(500, "Plugin error")
