"""Workspace isolation middleware using ContextVar.

Extracts the current workspace from the X-Workspace-ID request header (or
falls back to subdomain detection). The workspace ID is stored in a
ContextVar so that routers, the sync orchestrator and the webhook gateway
can call get_current_workspace() without explicit parameter passing.

Each request also gets a request id (X-Request-ID, generated when absent)
that the JSON log formatter stamps on every record.
"""

from contextvars import ContextVar
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from core.observability.logging_setup import request_id_ctx_var, set_request_id

# ---------------------------------------------------------------------------
# Context variable: task-safe workspace state
# ---------------------------------------------------------------------------

_current_workspace: ContextVar[str] = ContextVar("current_workspace", default="default")


def get_current_workspace() -> str:
    """Return the workspace ID for the current request.

    Safe to call from any async context within the request lifecycle::

        workspace = get_current_workspace()
        state = await store.load(workspace, "stripe")
    """
    return _current_workspace.get()


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

class WorkspaceMiddleware(BaseHTTPMiddleware):
    """Extract workspace from request headers or subdomain.

    Priority:
    1. X-Workspace-ID header (explicit)
    2. First subdomain segment (e.g., acme.synchub.app → "acme")
    3. Falls back to "default"
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        # 1. Check header
        workspace_id = request.headers.get("X-Workspace-ID")

        # 2. Fall back to subdomain
        if not workspace_id:
            host = request.headers.get("host", "").split(":")[0]
            parts = host.split(".")
            if len(parts) > 2:
                workspace_id = parts[0]

        # 3. Default
        token = _current_workspace.set(workspace_id or "default")
        request_id = set_request_id(request.headers.get("X-Request-ID"))
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            _current_workspace.reset(token)
            request_id_ctx_var.set("-")
