from contextlib import asynccontextmanager
import asyncio
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
from typing import Optional

from bump_bridge.utils.logging import setup_logging
from bump_bridge.api.agent import router as agent_router
from bump_bridge.api.events import router as events_router
from bump_bridge.api.terminals import router as terminals_router
from bump_bridge.constants import SERVER_HOST, SERVER_PORT, SERVER_VERSION, CORS_ORIGINS
from bump_bridge.core.agent_manager import AgentSessionManager
from bump_bridge.core.events import EventBus
from bump_bridge.core.terminal_manager import TerminalManager
from bump_bridge.models.agent import AuthStatus
from bump_bridge.providers.agent_cli import check_auth

logger = logging.getLogger(__name__)


def create_app(
    event_bus: Optional[EventBus] = None,
    terminal_manager: Optional[TerminalManager] = None,
    agent_manager: Optional[AgentSessionManager] = None,
) -> FastAPI:
    """Create and configure FastAPI application.

    Components not supplied are created with defaults. The lifespan closes
    every terminal and stops the agent session on shutdown.
    """
    bus = event_bus or EventBus()
    terminals = terminal_manager or TerminalManager(event_bus=bus)
    agent = agent_manager or AgentSessionManager(event_bus=bus)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events."""
        # Startup
        logger.info("Starting bump bridge server...")
        yield
        # Shutdown
        logger.info("Shutting down bump bridge server...")
        await agent.shutdown()
        await terminals.close_all()

    app = FastAPI(
        title="bump bridge",
        description="Local terminal and coding agent bridge",
        version=SERVER_VERSION,
        lifespan=lifespan,
    )
    app.state.event_bus = bus
    app.state.terminal_manager = terminals
    app.state.agent_manager = agent

    # Configure CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(terminals_router)
    app.include_router(agent_router)
    app.include_router(events_router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "ok", "service": "bump-bridge", "version": SERVER_VERSION}

    @app.get("/auth", response_model=AuthStatus)
    async def auth_status() -> AuthStatus:
        """Whether the agent CLI is logged in."""
        return await asyncio.to_thread(check_auth)

    logger.info("FastAPI application created successfully")
    return app


def main(host: str = SERVER_HOST, port: int = SERVER_PORT):
    """Main entry point for bump-server command."""
    setup_logging()

    config = uvicorn.Config(
        create_app(),
        host=host,
        port=port,
        log_level="info"
    )
    server = uvicorn.Server(config)
    asyncio.run(server.serve())
