import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis

from energy_market.api.middleware.logging.request_logging import RequestLoggingMiddleware
from energy_market.api.router import auth, health, listings, transactions, users, websocket
from energy_market.core.dependencies import build_container
from energy_market.core.exceptions.handler import GlobalErrorHandler, ServiceError
from energy_market.core.logger.logger import logger
from energy_market.core.service.blockchain.settlement_client import SettlementClient, create_settlement_client
from energy_market.core.service.websocket.manager import ConnectionManager
from energy_market.infra.config.redis import close_redis_pool, connect_redis
from energy_market.infra.config.settings import Settings, get_settings
from energy_market.infra.database import DatabaseManager


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[DatabaseManager] = None,
    redis_client: Optional[Redis] = None,
    settlement_client: Optional[SettlementClient] = None
) -> FastAPI:
    """
    Build the API. Collaborators left as None are created from settings at
    startup; tests pass their own.
    """
    settings = settings or get_settings()
    ws_manager = ConnectionManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(json.dumps({
            "message": "Starting EnergyMarket API",
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION
        }))

        db = database or DatabaseManager(settings=settings)
        await db.connect()
        await db.create_schema()

        owns_redis = redis_client is None
        redis = redis_client or await connect_redis()
        settlement = settlement_client or create_settlement_client(settings)

        app.state.container = build_container(settings, db, redis, settlement, ws_manager)
        try:
            yield
        finally:
            logger.info(json.dumps({
                "message": "Shutting down EnergyMarket API",
                "timestamp": datetime.utcnow().isoformat() + "Z",
                "service": settings.APP_NAME,
                "version": settings.APP_VERSION
            }))
            await app.state.container.binder.wait_for_background_tasks()
            await db.close()
            if owns_redis:
                await close_redis_pool()

    app = FastAPI(
        title=settings.APP_NAME,
        description="""
EnergyMarket API - peer-to-peer energy trading settled against an on-chain escrow.

## Services
- **Authentication**: Sign-In with Ethereum, cookie sessions
- **Listings**: escrow energy for sale, cancel unsold energy
- **Transactions**: buy energy from listings
- **Events**: live market feed over WebSocket at `/ws`
        """,
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    # CORS middleware; credentials are needed for the session cookie
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
        max_age=600,  # 10 minutes
    )

    # Request logging middleware
    app.add_middleware(RequestLoggingMiddleware)

    # Add centralized error handlers
    app.add_exception_handler(ServiceError, GlobalErrorHandler.service_error_handler)
    app.add_exception_handler(RequestValidationError, GlobalErrorHandler.validation_error_handler)
    app.add_exception_handler(Exception, GlobalErrorHandler.general_exception_handler)

    app.include_router(health.router, prefix="/api")
    app.include_router(auth.router, prefix="/api")
    app.include_router(users.router, prefix="/api")
    app.include_router(listings.router, prefix="/api")
    app.include_router(transactions.router, prefix="/api")
    app.include_router(websocket.router)  # /ws endpoint

    app.state.ws_manager = ws_manager

    return app
