"""
Banka Wallet API Application Factory
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .auth import WalletSystem
from .errors import register_exception_handlers
from .accounts import router as accounts_router
from .wallet import router as wallet_router
from .webhooks import router as webhooks_router
from .savings import router as savings_router
from ..logging_config import get_logger

logger = get_logger("banka.api")


def create_app(system: Optional[WalletSystem] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        system: Pre-built wallet system; one is built from the environment when omitted
    """
    wallet_system = system or WalletSystem()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start the auto-charge scheduler and release resources on shutdown"""
        if wallet_system.config.auto_charge_enabled:
            wallet_system.scheduler.start()
            logger.info("Auto-charge scheduler started")
        try:
            yield
        finally:
            wallet_system.close()
            logger.info("Wallet system shut down")

    app = FastAPI(
        title="Banka Wallet API",
        description="Custodial wallet ledger and settlement engine",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.wallet_system = wallet_system

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    # Include routers
    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(wallet_router, prefix="/wallet", tags=["Wallet"])
    app.include_router(webhooks_router, prefix="/webhooks", tags=["Webhooks"])
    app.include_router(savings_router, prefix="/savings", tags=["Savings"])

    # Health check endpoint
    @app.get("/health")
    def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "banka_wallet_api",
            "version": "1.0.0",
            "scheduler": wallet_system.scheduler.status(),
        }

    # Root endpoint
    @app.get("/")
    def get_api_info():
        """Get API information"""
        return {
            "name": "Banka Wallet API",
            "version": "1.0.0",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "accounts": "/accounts",
                "wallet": "/wallet",
                "webhooks": "/webhooks",
                "savings": "/savings",
            },
        }

    return app
