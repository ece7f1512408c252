"""
claudebox server

FastAPI application: REST endpoints under /api and the session WebSocket at /ws.
"""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from claudebox import __version__
from claudebox.api import api_router
from claudebox.api import websocket as websocket_api
from claudebox.config import Settings, get_settings
from claudebox.core.broker import SessionBroker
from claudebox.lib.auth import TokenVerifier
from claudebox.lib.errors import BrokerError, ErrorCode
from claudebox.lib.logger import get_logger, setup_logging

logger = get_logger(__name__)


def build_broker(settings: Settings) -> SessionBroker:
    """Create the process-wide session broker."""
    return SessionBroker.from_settings(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = get_settings()

    # Set up logging
    setup_logging(level=settings.log_level)

    logger.info("Starting claudebox server...")

    # Refuse to start without the token secret and the backend credential
    settings.require_secrets()

    settings.workspaces_dir.mkdir(parents=True, exist_ok=True)
    logger.info(f"Workspaces: {settings.workspaces_dir}")

    app.state.verifier = TokenVerifier(
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
        audience=settings.jwt_audience,
    )

    broker = build_broker(settings)
    app.state.broker = broker

    if await broker.sandbox.is_available():
        removed = await broker.sandbox.reconcile(set())
        if removed:
            logger.info(f"Cleaned up {removed} orphaned sandbox(es)")
        if not await broker.sandbox.image_exists():
            logger.warning(f"Sandbox image '{settings.sandbox_image}' not found locally")
    else:
        logger.warning("Docker is not available; sessions will fail to start")

    logger.info("Server ready")

    yield

    # Shutdown
    logger.info("Shutting down...")
    await broker.shutdown()
    app.state.broker = None
    app.state.verifier = None


# Create FastAPI application
app = FastAPI(
    title="claudebox",
    description="Session broker for sandboxed coding-assistant terminals",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BrokerError)
async def broker_error_handler(request: Request, exc: BrokerError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = ", ".join(".".join(str(p) for p in err["loc"][1:]) for err in exc.errors())
    return JSONResponse(
        status_code=400,
        content={"error": f"Invalid request: {fields}", "code": ErrorCode.PROTOCOL_ERROR.value},
    )


# Include API routes
app.include_router(api_router)
app.include_router(websocket_api.router, tags=["websocket"])


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint - returns server info."""
    return {
        "name": "claudebox",
        "version": __version__,
        "status": "running",
    }


def main():
    """Main entry point."""
    settings = get_settings()

    print(f"""
===============================================================
                        claudebox
===============================================================
  Server:     http://{settings.host}:{settings.port}
  WebSocket:  ws://{settings.host}:{settings.advertised_ws_port}/ws
  Image:      {settings.sandbox_image}
---------------------------------------------------------------
  API Endpoints:
    GET  /api/config                    - Client configuration
    GET  /api/health                    - Health check
    GET  /api/user/sessions             - List your sessions
    POST /api/user/sessions/:id/stop    - Stop a session
    POST /api/run-command               - Run a whitelisted command
===============================================================
    """)

    uvicorn.run(
        "claudebox.server:app" if settings.reload else app,
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
        ws_ping_interval=settings.heartbeat_interval,
        ws_ping_timeout=settings.heartbeat_interval,
    )


if __name__ == "__main__":
    main()
