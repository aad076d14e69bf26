"""
FastAPI Main Application
========================

Entry point for the BuildForge orchestration server.
Provides the REST API for builds, sessions and ticket dependencies.
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

# Fix for Windows subprocess support in asyncio
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

from dotenv import load_dotenv

# Load environment variables from .env file if present
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from forge_config import ForgeSettings, load_settings

from .deps import build_services
from .routers import build_router, dependencies_router, sessions_router
from .utils.errors import install_exception_handlers

logger = logging.getLogger(__name__)

LOCAL_HOSTS = ("127.0.0.1", "::1", "localhost", None)


def create_app(settings: Optional[ForgeSettings] = None, **build_overrides) -> FastAPI:
    """Build a server instance.

    ``build_overrides`` are forwarded to ``BuildService`` (fake providers in tests).
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = build_services(settings, **build_overrides)
        logger.info("Using database %s", settings.database_path)
        recovered = services.lifecycle.recover_interrupted_sessions()
        if recovered:
            logger.warning("Finalized %d session(s) interrupted by the last shutdown", recovered)
        app.state.services = services

        yield

        # Kill agents first so finalizers can observe the terminal status
        await services.registry.shutdown()
        await services.build_service.shutdown()

    app = FastAPI(
        title="BuildForge",
        description="Orchestrates coding-agent CLIs against epics and user stories",
        version="1.0.0",
        lifespan=lifespan,
    )

    if settings.allow_remote:
        logger.warning(
            "Remote access is enabled. Agents can be launched from any host; "
            "only use this in trusted network environments."
        )
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    else:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[
                "http://localhost:5173",      # Vite dev server
                "http://127.0.0.1:5173",
                f"http://localhost:{settings.port}",
                f"http://127.0.0.1:{settings.port}",
            ],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @app.middleware("http")
        async def require_localhost(request: Request, call_next):
            """Only allow requests from localhost (disabled by BUILDFORGE_ALLOW_REMOTE=1)."""
            client_host = request.client.host if request.client else None
            if client_host not in LOCAL_HOSTS:
                return JSONResponse(status_code=403, content={"detail": "Localhost access only"})
            return await call_next(request)

    install_exception_handlers(app)

    app.include_router(build_router)
    app.include_router(sessions_router)
    app.include_router(dependencies_router)

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        services = getattr(app.state, "services", None)
        active = services.registry.active_count if services else 0
        return {"status": "healthy", "activeSessions": active}

    return app


def main() -> None:
    import uvicorn

    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
