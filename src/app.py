from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError

from src.infra.config.settings import settings
from src.core.logger.logger import logger
from src.api.router import health, collectibles, claims, websocket
from src.api.middleware.logging.request_logging import RequestLoggingMiddleware
from src.core.dependencies import CollectibleEngine, build_engine
from src.core.exceptions.handler import ServiceError, GlobalErrorHandler
from src.core.service.websocket.manager import ConnectionManager


def create_app(engine: Optional[CollectibleEngine] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        engine: Pre-built engine (tests); when omitted one is built from settings at startup
    """
    app = FastAPI(
        title=settings.APP_NAME,
        description="""
TrustFi Collectibles API - discovery, eligibility and claim history for on-chain collectible credentials.

## Services
- **Collectibles**: cached template registry, trending / expiring-soon / low-supply views
- **Eligibility**: live claim verdicts and gas estimates
- **Claim history**: idempotent sync of on-chain claim events, per-user statistics
- **WebSocket**: live feed of newly ingested claims
        """,
        version=settings.APP_VERSION,
        docs_url="/",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
        max_age=600,  # 10 minutes
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.add_exception_handler(ServiceError, GlobalErrorHandler.service_error_handler)
    app.add_exception_handler(RequestValidationError, GlobalErrorHandler.validation_error_handler)
    app.add_exception_handler(Exception, GlobalErrorHandler.general_exception_handler)

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(collectibles.router, prefix="/api/v1")
    app.include_router(claims.router, prefix="/api/v1")
    app.include_router(websocket.router)

    app.state.ws_manager = ConnectionManager()
    app.state.engine = engine

    @app.on_event("startup")
    async def startup_event():
        logger.info(
            "Starting collectibles API",
            extra={"service": settings.APP_NAME, "version": settings.APP_VERSION}
        )
        if app.state.engine is None:
            app.state.engine = await build_engine()
        app.state.unsubscribe_ws = app.state.engine.synchronizer.subscribe(app.state.ws_manager.broadcast_claim)

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info(
            "Shutting down collectibles API",
            extra={"service": settings.APP_NAME, "version": settings.APP_VERSION}
        )
        unsubscribe = getattr(app.state, "unsubscribe_ws", None)
        if unsubscribe is not None:
            unsubscribe()
        if app.state.engine is not None:
            await app.state.engine.close()

    return app
