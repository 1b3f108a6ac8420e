"""
Card Ledger API Application Factory
"""

from typing import Optional

from fastapi import FastAPI

from .admin import router as admin_router
from .block_requests import router as block_requests_router
from .cards import router as cards_router
from .error_handlers import register_error_handlers
from .transfers import router as transfers_router
from .users import router as users_router
from .. import __version__
from ..system import CardLedgerSystem


def create_app(system: Optional[CardLedgerSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Bank Cards API",
        description="Bank card ledger: cards, transfers, block requests",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system or CardLedgerSystem()

    register_error_handlers(app)

    # Include routers
    app.include_router(cards_router, prefix="/cards", tags=["Cards"])
    app.include_router(transfers_router, prefix="/transfers", tags=["Transfers"])
    app.include_router(block_requests_router, prefix="/block-requests", tags=["Block Requests"])
    app.include_router(users_router, prefix="/users", tags=["Users"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "bank_cards_api",
            "version": __version__
        }

    return app
