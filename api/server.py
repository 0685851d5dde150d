"""FastAPI server for the ledger sync service.

Main entry point for the API server.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.dependencies import SyncServices, bootstrap_development_tokens, build_services
from api.routes import health, sync
from core.config import SyncSettings
from core.observability.logging import configure_logging, get_logger

logger = get_logger(__name__)


def create_app(services: Optional[SyncServices] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        services: Prebuilt service graph. When omitted the lifespan builds
            one from the environment.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        # Startup
        current = services
        if current is None:
            settings = SyncSettings.from_env()
            configure_logging(settings.log_level, json_format=settings.log_json)
            current = build_services(settings)
            await bootstrap_development_tokens(current)
        app.state.services = current
        logger.info(
            "Ledger sync API starting up",
            extra_fields={"connector": current.settings.connector},
        )

        yield

        # Shutdown
        logger.info("Ledger sync API shutting down")
        await current.close()

    app = FastAPI(
        title="Ledger Sync API",
        description="Two-way sync of contacts, invoices and payments between the local store and a remote ledger",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(sync.router, prefix="/sync", tags=["Sync"])

    return app


# Default app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.server:app", host="0.0.0.0", port=8000, reload=True)
