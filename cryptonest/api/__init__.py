"""
CryptoNest API Application Factory
"""

from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth import CryptoNestSystem
from .sessions import router as sessions_router
from .plans import router as plans_router
from .accounts import router as accounts_router
from .deposits import router as deposits_router
from .withdrawals import router as withdrawals_router
from .investments import router as investments_router
from .transactions import router as transactions_router
from .admin import router as admin_router
from .. import __version__
from ..exceptions import CryptoNestError
from ..logging_config import get_logger


logger = get_logger("cryptonest.api")


def create_app(system: Optional[CryptoNestSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    system = system or CryptoNestSystem()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Open storage, seed plans and start the scheduler; undo on shutdown"""
        await system.startup()
        logger.info("CryptoNest API started", extra={'action': 'startup'})
        yield
        await system.shutdown()
        logger.info("CryptoNest API stopped", extra={'action': 'shutdown'})

    app = FastAPI(
        title="CryptoNest API",
        description="Bookkeeping backend for tiered fixed-return investment plans",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.system = system

    # Add CORS middleware
    origins = [origin.strip() for origin in system.config.cors_origins.split(",") if origin.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CryptoNestError)
    async def handle_domain_error(request: Request, exc: CryptoNestError):
        if exc.status_code >= 500:
            logger.error(f"{exc.error_code}: {exc.message}",
                         extra={'action': 'request_failed', 'resource': request.url.path})
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # Include routers
    app.include_router(sessions_router, prefix="/auth", tags=["Auth"])
    app.include_router(plans_router, prefix="/plans", tags=["Plans"])
    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(deposits_router, prefix="/deposits", tags=["Deposits"])
    app.include_router(withdrawals_router, prefix="/withdrawals", tags=["Withdrawals"])
    app.include_router(investments_router, prefix="/investments", tags=["Investments"])
    app.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "cryptonest_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "CryptoNest API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "auth": "/auth",
                "plans": "/plans",
                "accounts": "/accounts",
                "deposits": "/deposits",
                "withdrawals": "/withdrawals",
                "investments": "/investments",
                "transactions": "/transactions",
                "admin": "/admin",
            }
        }

    return app


def run_server(host: str = "0.0.0.0", port: int = 8090, log_level: str = "info"):
    """Run the FastAPI server"""
    uvicorn.run(create_app(), host=host, port=port, log_level=log_level)
