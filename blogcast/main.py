"""
Realtime gateway application.

Serves the WebSocket endpoint that browsers connect to, plus health and
Prometheus endpoints for operators.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from blogcast import __version__
from blogcast.components.core.constants import DEFAULT_ALLOWED_ORIGINS
from blogcast.components.endpoints.base import RealtimeEndpoint
from blogcast.components.metrics.prometheus import get_prometheus_formatter
from blogcast.config.logging import get_logger, setup_logging
from blogcast.config.settings import Settings, settings as default_settings
from blogcast.core.gateway import RealtimeGateway

logger = get_logger(__name__)


def create_app(gateway: RealtimeGateway | None = None, settings: Settings | None = None) -> FastAPI:
    """
    Build the FastAPI application around a gateway.

    Tests pass their own gateway (fake clock, in-memory persistence).
    """
    settings = settings or (gateway.settings if gateway is not None else default_settings)
    gateway = gateway or RealtimeGateway(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings)
        for error in settings.validate_production():
            logger.warning("Configuration problem", error=error)
        logger.info(
            "Starting realtime gateway",
            port=settings.port,
            env=settings.environment,
            persistence=settings.persistence_backend,
        )
        await gateway.start()

        yield

        logger.info("Shutting down realtime gateway")
        await gateway.stop()

    app = FastAPI(
        title="Blogcast Realtime Gateway",
        description="Presence, room membership and event fan-out",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.gateway = gateway

    # Add HTTPS variants of the development origins
    default_origins = list(DEFAULT_ALLOWED_ORIGINS) + [
        origin.replace("http://", "https://") for origin in DEFAULT_ALLOWED_ORIGINS
    ]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins() or default_origins,
        allow_credentials=True,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    # =========================================================================
    # Health and metrics
    # =========================================================================

    @app.get("/ws/health")
    def health_check():
        """Basic health check endpoint."""
        try:
            stats = gateway.get_stats()
        except Exception as e:
            logger.warning("Failed to get stats in health check", error=str(e))
            stats = {"error": "stats_unavailable"}
        return {
            "status": "healthy",
            "service": "blogcast-realtime",
            "version": app.version,
            "environment": settings.environment,
            **stats,
        }

    @app.get("/ws/metrics")
    def prometheus_metrics():
        """
        Prometheus-compatible metrics endpoint.

        Configure Prometheus scrape:
            scrape_configs:
              - job_name: 'blogcast-realtime'
                static_configs:
                  - targets: ['localhost:8001']
                metrics_path: '/ws/metrics'
        """
        return PlainTextResponse(
            content=get_prometheus_formatter().format_all_metrics(gateway.get_stats()),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    # =========================================================================
    # WebSocket endpoint
    # =========================================================================

    @app.websocket("/ws")
    async def realtime_websocket(websocket: WebSocket):
        endpoint = RealtimeEndpoint(websocket, gateway)
        await endpoint.run()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "blogcast.main:app",
        host=default_settings.host,
        port=default_settings.port,
        reload=True,
    )
