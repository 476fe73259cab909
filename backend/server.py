from fastapi import FastAPI, APIRouter
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from datetime import datetime
from typing import Optional
import logging

import httpx

from callback_routes import callback_router
from fulfillment.indexes import ensure_indexes
from services import ServiceContainer, build_services
from settings import Settings
from transaction_routes import transaction_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, services: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Build the application.

    With services given (tests), they are used as-is and no connections are
    opened. Otherwise the Motor client and the shared httpx client are
    created on startup and closed on shutdown.
    """
    settings = settings or Settings.from_env()

    app = FastAPI(
        title="Top-up Fulfillment & Settlement",
        version="1.0.0",
        description="Order fulfillment, payment callbacks and settlement ledger"
    )
    app.state.settings = settings
    app.state.services = services

    api_router = APIRouter(prefix="/api")

    @api_router.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "timestamp": datetime.utcnow(),
            "version": "1.0.0"
        }

    app.include_router(api_router)
    app.include_router(callback_router)
    app.include_router(transaction_router)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=[settings.frontend_url],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if services is None:
        @app.on_event("startup")
        async def startup():
            settings.validate()
            client = AsyncIOMotorClient(settings.mongo_url)
            db = client[settings.db_name]
            await ensure_indexes(db)
            http_client = httpx.AsyncClient()
            app.state.services = build_services(client, db, settings, http_client)
            logger.info(f"[SERVER] Connected to {settings.db_name}")

        @app.on_event("shutdown")
        async def shutdown():
            container: ServiceContainer = app.state.services
            if container is None:
                return
            if container.http_client is not None:
                await container.http_client.aclose()
            container.client.close()
            logger.info("[SERVER] Connections closed")

    return app


app = create_app()
