"""
Uvicorn server for the status API.
"""

import threading

import uvicorn
from oslo_log import log as logging

from fip_controller.api.main import create_app

LOG = logging.getLogger(__name__)


def build_server(controller, host: str, port: int, log_level: str = "warning") -> uvicorn.Server:
    config = uvicorn.Config(create_app(controller), host=host, port=port, log_level=log_level)
    return uvicorn.Server(config)


def start_status_server(controller, host: str, port: int) -> uvicorn.Server:
    """Serve the status API from a daemon thread.

    Set ``should_exit`` on the returned server to stop it.
    """
    server = build_server(controller, host, port)
    thread = threading.Thread(target=server.run, name="status-api", daemon=True)
    thread.start()
    LOG.info("status API listening on %s:%d", host, port)
    return server
