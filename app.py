"""Health endpoint and entry helpers for the access request notification plugin."""

from __future__ import annotations

import asyncio
import signal
import threading
from pathlib import Path
from uuid import uuid4

import structlog
from flask import Flask, jsonify
from werkzeug.serving import BaseWSGIServer, make_server

from access_notify import __version__
from access_notify.config import Config
from access_notify.logging_config import configure_logging
from access_notify.service import NotifierService

DEFAULT_SHUTDOWN_TIMEOUT = 15.0


def _load_version() -> str:
    version_file = Path(__file__).resolve().parent / "VERSION"
    if version_file.exists():
        return version_file.read_text(encoding="utf-8").strip()
    return __version__


def _register_error_handlers(flask_app: Flask) -> None:
    """Register a JSON error handler that attaches a trace identifier."""

    @flask_app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):  # type: ignore[override]
        trace_id = str(uuid4())
        structlog.get_logger().error("health_endpoint_error", trace_id=trace_id, error=str(error), exc_info=error)
        response = jsonify({"error": "internal_server_error", "trace_id": trace_id})
        response.status_code = 500
        return response


def create_app(service: NotifierService) -> Flask:
    """Create the Flask application exposing the plugin's readiness."""

    flask_app = Flask(__name__)
    flask_app.config["APP_VERSION"] = _load_version()
    _register_error_handlers(flask_app)

    @flask_app.route("/healthz", methods=["GET"])
    def healthz():
        ready = service.ready
        health: dict[str, object] = {
            "ok": ready,
            "ready": ready,
            "version": flask_app.config.get("APP_VERSION", "unknown"),
        }
        if service.cluster_name:
            health["cluster"] = service.cluster_name
        status = 200 if ready else 503
        return jsonify(health), status

    return flask_app


def start_health_server(service: NotifierService, *, host: str, port: int) -> BaseWSGIServer:
    """Serve the health endpoint from a daemon thread and return the server."""

    server = make_server(host, port, create_app(service), threaded=True)
    thread = threading.Thread(target=server.serve_forever, name="health-server", daemon=True)
    thread.start()
    structlog.get_logger().info("health_server_started", host=host, port=server.server_port)
    return server


class ShutdownSignals:
    """Turn SIGTERM and SIGINT into a graceful shutdown of *service*.

    The first signal asks the service to stop within ``timeout`` seconds. A
    second SIGINT cancels whatever is still running straight away.
    """

    signals = (signal.SIGTERM, signal.SIGINT)

    def __init__(self, service: NotifierService, *, timeout: float = DEFAULT_SHUTDOWN_TIMEOUT) -> None:
        self.service = service
        self.timeout = timeout
        self._tasks: set[asyncio.Task] = set()

    def install(self, loop: asyncio.AbstractEventLoop) -> None:
        for signum in self.signals:
            loop.add_signal_handler(signum, self.handle, signum)

    def uninstall(self, loop: asyncio.AbstractEventLoop) -> None:
        for signum in self.signals:
            loop.remove_signal_handler(signum)

    def handle(self, signum: int) -> None:
        log = structlog.get_logger().bind(signal=signal.Signals(signum).name)
        if not self._tasks:
            log.info("shutdown_requested", timeout=self.timeout)
            self._shutdown(self.timeout)
        elif signum == signal.SIGINT:
            log.warning("forced_shutdown_requested")
            self._shutdown(0)

    def _shutdown(self, timeout: float) -> None:
        self._tasks.add(asyncio.ensure_future(self.service.shutdown(timeout)))

    async def wait(self) -> None:
        """Wait for the shutdowns started by signals to finish."""

        if self._tasks:
            await asyncio.gather(*self._tasks)


async def run(service: NotifierService, *, shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT) -> None:
    """Run *service* with the health endpoint its configuration asks for.

    SIGTERM and SIGINT shut the service down for as long as this runs.
    """

    config: Config = service.config
    loop = asyncio.get_running_loop()
    signals = ShutdownSignals(service, timeout=shutdown_timeout)
    signals.install(loop)
    server = None
    if config.health.port:
        server = start_health_server(service, host=config.health.host, port=config.health.port)
    try:
        await service.run()
        await signals.wait()
    finally:
        signals.uninstall(loop)
        if server is not None:
            await asyncio.to_thread(server.shutdown)


def main(service: NotifierService) -> None:
    """Configure logging and block until *service* stops.

    The access API client is deployment specific, so callers construct the
    service and hand it over.
    """

    configure_logging(service.config.log)
    asyncio.run(run(service))
