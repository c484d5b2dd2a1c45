"""
FastAPI status application.
"""

import uuid
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from oslo_log import log as logging

from fip_controller import __version__
from fip_controller.api.models import HealthResponse, StatusResponse

LOG = logging.getLogger(__name__)


def create_app(controller) -> FastAPI:
    """Build the status app serving ``controller``."""
    app = FastAPI(
        title="Neutron FIP Controller",
        description="Health and status of the floating IP controller",
        version=__version__,
    )
    app.state.controller = controller

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler."""
        request_id = str(uuid.uuid4())
        LOG.exception("Unhandled error (request_id=%s, path=%s)", request_id, request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "request_id": request_id,
                "status": "error",
                "error": {"code": "INTERNAL_ERROR", "message": "Internal server error", "details": {}},
            },
        )

    @app.get("/healthz", response_model=HealthResponse)
    def healthz() -> Dict[str, Any]:
        """Liveness: the process serves requests."""
        return {"status": "ok"}

    @app.get("/readyz", response_model=HealthResponse)
    def readyz(request: Request):
        """Readiness: caches synced and workers running."""
        if request.app.state.controller.ready:
            return {"status": "ok"}
        return JSONResponse(status_code=503, content={"status": "unavailable", "detail": "controller not ready"})

    @app.get("/v1/status", response_model=StatusResponse)
    def status(request: Request) -> Dict[str, Any]:
        """Informer sync state, queue depths and worker count."""
        return {
            "request_id": str(uuid.uuid4()),
            "status": "ok",
            "data": {"controller": request.app.state.controller.status()},
        }

    return app
