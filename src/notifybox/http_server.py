#!/usr/bin/env python3
"""Probe server: liveness, readiness of the broker and user directory, metrics."""

import json
import threading
from typing import Any, Callable, Dict, Optional
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from bottle import Bottle, ServerAdapter, response, run
from loguru import logger

METRICS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


class _QuietHandler(WSGIRequestHandler):
    def log_request(self, *args: Any, **kwargs: Any) -> None:
        pass


class StoppableServer(ServerAdapter):
    """wsgiref adapter that can be shut down from another thread."""

    def __init__(self, host: str, port: int) -> None:
        super().__init__(host=host, port=port)
        self.server: Optional[WSGIServer] = None
        self._stopped = threading.Event()

    def run(self, handler: Callable) -> None:
        self.server = make_server(self.host, self.port, handler, handler_class=_QuietHandler)
        if self._stopped.is_set():
            self.server.server_close()
            return
        self.server.serve_forever()

    def shutdown(self) -> None:
        self._stopped.set()
        if self.server is not None:
            self.server.shutdown()
            self.server.server_close()


def _json_error(status: int, error: str, message: str) -> str:
    response.content_type = "application/json"
    response.status = status
    return json.dumps({"error": error, "message": message})


class HttpServer:
    """Serves /health, /ready and /metrics from a background thread."""

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 8080,
        ready_checks: Optional[Dict[str, Callable[[], bool]]] = None,
        metrics_fn: Optional[Callable[[], str]] = None,
    ) -> None:
        """
        Initialize HTTP server.

        Args:
            host: Host to bind to (default: 0.0.0.0)
            port: Port to listen on (default: 8080)
            ready_checks: Dependency name -> connectivity check, all must pass for /ready (optional)
            metrics_fn: Function returning Prometheus exposition text (optional, no /metrics without it)
        """
        self.host: str = host
        self.port: int = port
        self.ready_checks: Dict[str, Callable[[], bool]] = ready_checks or {}
        self.metrics_fn: Optional[Callable[[], str]] = metrics_fn
        self.app: Bottle = Bottle()
        self.app.get("/health")(self._health)
        self.app.get("/ready")(self._ready)
        if self.metrics_fn:
            self.app.get("/metrics")(self._metrics)
        self.app.error(404)(lambda error: _json_error(404, "Not Found", "The requested resource was not found"))
        self.app.error(405)(
            lambda error: _json_error(405, "Method Not Allowed", "The HTTP method is not allowed for this resource")
        )
        self.app.error(500)(
            lambda error: _json_error(500, "Internal Server Error", "An internal server error occurred")
        )
        self._adapter: Optional[StoppableServer] = None
        self._server_thread: Optional[threading.Thread] = None

    def _health(self) -> dict:
        return {"status": "ok"}

    def _check(self, name: str, check: Callable[[], bool]) -> str:
        try:
            return "ok" if check() else "not connected"
        # A failing probe reports not ready instead of a 500
        except Exception as e:
            logger.error("Error checking readiness of {}: {}", name, e)
            return "check failed"

    def _ready(self) -> dict:
        """
        Readiness probe: every dependency check must pass.

        Returns:
            JSON body with overall status, per-dependency results and, when
            not ready, the first failing dependency as reason
        """
        results = {name: self._check(name, check) for name, check in self.ready_checks.items()}
        failing = [(name, state) for name, state in results.items() if state != "ok"]
        if not failing:
            return {"status": "ready", "checks": results}

        name, state = failing[0]
        response.status = 503
        return {"status": "not ready", "reason": f"{name} {state}", "checks": results}

    def _metrics(self) -> str:
        try:
            body = self.metrics_fn()
        except Exception as e:
            logger.error("Error generating metrics: {}", e)
            response.status = 500
            return "# Error generating metrics\n"
        response.content_type = METRICS_CONTENT_TYPE
        return body

    def start(self, daemon: bool = True) -> None:
        """
        Start serving in a background thread.

        Args:
            daemon: If True, thread will be daemon (dies with main thread)
        """
        if self.is_running():
            logger.warning("HTTP server already running")
            return

        self._adapter = StoppableServer(self.host, self.port)

        def _serve() -> None:
            try:
                run(self.app, server=self._adapter, quiet=True)
            except Exception as e:
                logger.error("HTTP server error: {}", e)

        self._server_thread = threading.Thread(target=_serve, name="http-probes", daemon=daemon)
        self._server_thread.start()
        logger.info("HTTP server started on {}:{}", self.host, self.port)

    def stop(self, timeout: float = 2.0) -> None:
        """
        Shut the server down and wait for its thread.

        Args:
            timeout: Seconds to wait for the serving thread to exit
        """
        if self._adapter is not None:
            self._adapter.shutdown()
        if self._server_thread is not None:
            self._server_thread.join(timeout)
        logger.info("HTTP server stopped")

    def is_running(self) -> bool:
        return self._server_thread is not None and self._server_thread.is_alive()
