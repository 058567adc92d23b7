"""FastAPI application factory"""

import uvicorn
from fastapi import FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from cardsync.api.middleware import RequestIDMiddleware, MetricsMiddleware
from cardsync.api.v1 import cards, connections, cycles
from cardsync.infrastructure.observability.logging import setup_logging
from cardsync.config import settings

# Setup structured logging
setup_logging(settings.log_level)


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Card Sync",
        description="Credit-card account sync and reconciliation service",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(connections.router, prefix="/v1", tags=["connections"])
    app.include_router(cycles.router, prefix="/v1", tags=["billing-cycles"])
    app.include_router(cards.router, prefix="/v1", tags=["cards"])

    return app


app = create_app()


def run() -> None:
    """Serve the API with uvicorn"""
    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_config=None)


if __name__ == "__main__":
    run()
