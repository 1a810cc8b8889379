"""FastAPI application for the devnet upgrade daemon."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
import uvicorn

from devnet_upgrader.api.routes import router
from devnet_upgrader.config import Settings
from devnet_upgrader.services.provider import build_services
from devnet_upgrader.utils.logging import setup_logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown hooks.

    Startup:
    - Initialize logger
    - Build every service once and attach them to app.state
    - Resume interrupted upgrades in the background

    Shutdown:
    - Cancel running passes; records keep their last checkpoint
    """
    settings = Settings()
    logger = setup_logger("devnet_upgrader", settings.log_file, level=settings.log_level)
    logger.info("Devnet upgrader starting up...")

    services = build_services(settings)
    app.state.services = services
    logger.info(f"Upgrade state directory: {settings.resolved_state_dir}")

    if settings.resume_on_startup:
        services.start_resume_all()
    else:
        logger.info("Startup resume disabled, interrupted upgrades wait for an explicit resume")

    logger.info(f"Devnet upgrader ready on {settings.host}:{settings.port}")

    yield

    logger.info("Devnet upgrader shutting down...")
    await services.shutdown()


app = FastAPI(
    title="Devnet Upgrader",
    description="Resumable governance-gated binary upgrades for blockchain devnets",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "devnet-upgrader", "version": "1.0.0"}


def main():
    """Main entry point for running the server."""
    settings = Settings()
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        access_log=True,
    )


if __name__ == "__main__":
    main()
