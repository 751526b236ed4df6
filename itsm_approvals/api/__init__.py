"""
Approval Engine API Application Factory
"""

from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .approvals import router as approvals_router
from .deps import ApprovalSystem, get_approval_system
from .error_handlers import register_error_handlers
from .rbac import router as rbac_router
from ..config import get_config
from ..logging_config import setup_logging


def create_app(system: Optional[ApprovalSystem] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Passing ``system`` pins the app to that container instead of the
    process-wide one built from configuration.
    """
    app = FastAPI(
        title="ITSM Approval Engine API",
        description="Versioned multi-step approval workflows with RBAC step resolution",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(approvals_router, prefix="/approvals", tags=["Approvals"])
    app.include_router(rbac_router, prefix="/rbac", tags=["RBAC"])

    if system is not None:
        app.dependency_overrides[get_approval_system] = lambda: system

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "itsm_approvals_api",
            "version": "1.0.0"
        }

    return app


app = create_app()


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the API with uvicorn using configured host, port and logging"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "itsm_approvals.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
