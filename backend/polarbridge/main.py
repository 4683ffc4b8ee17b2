"""POLAR BRIDGE - FastAPI Application.

Cross-chain settlement core and collateralized lending ledger.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from polarbridge import __version__
from polarbridge.api import loans, settlements
from polarbridge.core.config import get_settings
from polarbridge.core.log import configure_logging
from polarbridge.services.runtime import BridgeRuntime

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime: Optional[BridgeRuntime] = app.state.runtime
    if runtime is None:
        runtime = BridgeRuntime.from_settings(get_settings())
        app.state.runtime = runtime
    if app.state.start_jobs:
        await runtime.start()
    logger.info(f"[APP] Serving {runtime.settings.SOURCE_CHAIN} -> {runtime.settings.DESTINATION_CHAIN}")
    try:
        yield
    finally:
        if app.state.start_jobs:
            await runtime.stop()


def create_app(runtime: Optional[BridgeRuntime] = None, start_jobs: bool = True) -> FastAPI:
    settings = runtime.settings if runtime else get_settings()
    configure_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title=settings.APP_NAME,
        description="POLAR BRIDGE - Cross-chain settlement & collateralized lending",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.state.start_jobs = start_jobs

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(loans.router)  # Loans & lending config
    app.include_router(settlements.router)  # Settlement operator surface

    @app.get("/")
    async def root():
        return {
            "service": "POLAR BRIDGE",
            "version": __version__,
            "source_chain": settings.SOURCE_CHAIN,
            "destination_chain": settings.DESTINATION_CHAIN,
        }

    @app.get("/health")
    async def health(request: Request):
        """Job health. 503 when any job halted on a fatal error."""
        current: Optional[BridgeRuntime] = request.app.state.runtime
        if current is None:
            return JSONResponse(status_code=503, content={"status": "starting", "jobs": []})
        report = current.health()
        return JSONResponse(status_code=200 if current.healthy else 503, content=report)

    return app


app = create_app()
