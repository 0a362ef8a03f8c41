from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
import structlog
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from cache.coordinator import QueryCoordinator, build_coordinator
from config.logging import configure_logging
from config.settings import CacheSettings
from monitoring.cache_metrics import PrometheusSink

logger = structlog.get_logger()


class InvalidateRequest(BaseModel):
    tags: List[str] = Field(min_length=1)


def create_app(coordinator: QueryCoordinator, sink: Optional[PrometheusSink] = None) -> FastAPI:
    """
    Build the diagnostics API around a running coordinator.

    Args:
        coordinator: The cache instance to expose
        sink: Prometheus sink whose registry backs ``/metrics``; taken from
            the coordinator's metrics collector when it uses one
    """
    app = FastAPI(title="Ledger Cache Diagnostics", version="1.0.0")
    app.state.coordinator = coordinator
    if sink is None and isinstance(coordinator.metrics.sink, PrometheusSink):
        sink = coordinator.metrics.sink
    app.state.prometheus_sink = sink

    @app.get("/health")
    async def health_check(request: Request) -> Dict[str, Any]:
        """Health check endpoint for monitoring."""
        report = request.app.state.coordinator.check_health()
        return {"status": "healthy" if report.healthy else "degraded", **report.to_dict()}

    @app.get("/cache/state")
    async def cache_state(request: Request) -> Dict[str, Any]:
        return request.app.state.coordinator.export_state()

    @app.get("/cache/metrics")
    async def cache_metrics(request: Request) -> Dict[str, Any]:
        return request.app.state.coordinator.get_metrics()

    @app.post("/cache/invalidate")
    async def invalidate(request: Request, body: InvalidateRequest) -> Dict[str, Any]:
        try:
            count = request.app.state.coordinator.invalidate_after_mutation(body.tags)
        except ValueError as e:
            logger.error("invalidate_error", tags=body.tags, error=str(e))
            raise HTTPException(status_code=400, detail=str(e))
        logger.info("diagnostics_invalidated", tags=body.tags, count=count)
        return {"tags": body.tags, "invalidated": count}

    @app.get("/metrics")
    async def metrics(request: Request):
        """Prometheus metrics endpoint."""
        prometheus_sink = request.app.state.prometheus_sink
        if prometheus_sink is None:
            raise HTTPException(status_code=404, detail="Prometheus export is not enabled")
        return Response(generate_latest(prometheus_sink.registry), media_type=CONTENT_TYPE_LATEST)

    return app


def main() -> None:
    import uvicorn

    settings = CacheSettings.for_environment()
    configure_logging(settings.log_level, settings.json_logs)
    sink = PrometheusSink()
    app = create_app(build_coordinator(settings, sink=sink), sink=sink)
    uvicorn.run(
        app,
        host=settings.diagnostics_host,
        port=settings.diagnostics_port,
    )


if __name__ == "__main__":
    main()
