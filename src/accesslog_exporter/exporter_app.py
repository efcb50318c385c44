from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest

from accesslog_exporter.discovery import ConsulRegistrator
from accesslog_exporter.processor import FAILED, NamespaceProcessor, Supervisor
from accesslog_exporter.shutdown import ShutdownCoordinator

log = logging.getLogger(__name__)


def create_app(
    registry: CollectorRegistry,
    processors: List[NamespaceProcessor],
    *,
    coordinator: Optional[ShutdownCoordinator] = None,
    supervisor: Optional[Supervisor] = None,
    registrator: Optional[ConsulRegistrator] = None,
    metrics_endpoint: str = "/metrics",
) -> FastAPI:
    """
    HTTP side of the exporter. Ingestion loops run as tasks on the server's
    event loop: they start with the app and are joined when it shuts down.
    """
    coordinator = coordinator or ShutdownCoordinator()
    supervisor = supervisor or Supervisor(on_fatal=lambda exc: None)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for p in processors:
            p.start(coordinator, supervisor)
        if registrator is not None:
            coordinator.spawn(registrator.deregister_on_shutdown(coordinator), name="consul-deregister")
        try:
            yield
        finally:
            await coordinator.shutdown()

    app = FastAPI(title="accesslog-exporter", lifespan=lifespan)
    app.state.registry = registry
    app.state.processors = processors
    app.state.coordinator = coordinator
    app.state.supervisor = supervisor

    def metrics():
        return Response(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)

    app.add_api_route(metrics_endpoint, metrics, methods=["GET"], include_in_schema=False)

    @app.get("/health")
    def health():
        namespaces = [p.status() for p in processors]
        ok = not any(src["state"] == FAILED for ns in namespaces for src in ns["sources"])
        return JSONResponse({"ok": ok, "namespaces": namespaces}, status_code=200 if ok else 503)

    return app
