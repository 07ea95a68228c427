"""Polymux - Multi-provider AI Gateway
Main FastAPI application: chat WebSocket, REST endpoints, health and metrics
"""

import json
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from polymux import __version__
from polymux.api.routes import router
from polymux.config import Settings, get_settings
from polymux.gateway import Gateway, build_gateway
from polymux.middleware.logging import request_logging_middleware
from polymux.utils.logging import setup_logging


logger = structlog.get_logger(__name__)


def create_app(settings: Optional[Settings] = None, gateway: Optional[Gateway] = None) -> FastAPI:
    """Build the FastAPI app; a prebuilt gateway may be injected"""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan manager"""
        setup_logging(settings)
        logger.info("Starting Polymux", version=__version__)

        app.state.gateway = gateway or build_gateway(settings)
        app.state.start_time = time.time()
        await app.state.gateway.start()
        logger.info("Polymux startup complete",
                    api_host=settings.api_host,
                    api_port=settings.api_port,
                    providers=len(app.state.gateway.catalog))

        yield

        logger.info("Shutting down Polymux...")
        await app.state.gateway.stop()
        logger.info("Polymux shutdown complete")

    app = FastAPI(
        title=settings.app_name,
        description="Multi-provider AI gateway with a canonical streaming event protocol",
        version=__version__,
        debug=settings.debug,
        lifespan=lifespan,
        docs_url=f"{settings.api_prefix}/docs",
        openapi_url=f"{settings.api_prefix}/openapi.json",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )
    app.middleware("http")(request_logging_middleware)
    app.include_router(router, prefix=settings.api_prefix)

    @app.get("/health", summary="Health Check", tags=["Monitoring"])
    async def health_check():
        gateway: Gateway = app.state.gateway
        health_data = {
            "status": "healthy",
            "service": "polymux",
            "version": __version__,
            "timestamp": time.time(),
            "uptime_seconds": time.time() - app.state.start_time,
            "gateway": gateway.stats(),
        }

        providers = await gateway.factory.health_check_all()
        health_data["providers"] = providers
        if any(p.get("status") != "healthy" for p in providers.values()):
            health_data["status"] = "degraded"

        return JSONResponse(status_code=200, content=health_data)

    @app.get("/metrics", summary="Prometheus Metrics", tags=["Monitoring"])
    async def metrics_endpoint():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.websocket(settings.websocket_path)
    async def chat_websocket(websocket: WebSocket):
        """Chat socket: client commands in, canonical events out"""
        gateway: Gateway = websocket.app.state.gateway
        user_id = (
            websocket.headers.get(settings.user_id_header)
            or websocket.query_params.get("user_id")
            or f"anonymous-{uuid.uuid4().hex[:12]}"
        )

        await websocket.accept()
        gateway.connections.register(user_id, websocket)
        try:
            while True:
                text = await websocket.receive_text()
                try:
                    data = json.loads(text)
                except ValueError:
                    data = None
                await gateway.dispatcher.handle_message(data, user_id, websocket)
        except WebSocketDisconnect:
            logger.info("WebSocket client disconnected", user_id=user_id)
        finally:
            gateway.connections.unregister(user_id, websocket)

    return app


app = create_app()
