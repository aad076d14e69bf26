"""
Application Services
====================

Every long-lived component is constructed once in the app lifespan and
stored on ``app.state.services``; routers reach it through FastAPI
dependencies. Nothing here is a module-level singleton, so tests can build
as many isolated apps as they like.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Generator

from fastapi import Request
from sqlalchemy.orm import Session, sessionmaker

from api.database import create_database
from api.lifecycle import SessionLifecycleManager
from forge_config import ForgeSettings
from server.services.activity_registry import ActivityRegistry
from server.services.build_service import BuildService
from server.services.process_manager import AgentProcessRegistry
from server.services.workspace import GitWorkspace

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    settings: ForgeSettings
    session_maker: sessionmaker
    lifecycle: SessionLifecycleManager
    registry: AgentProcessRegistry
    activities: ActivityRegistry
    build_service: BuildService


def build_services(settings: ForgeSettings, **build_overrides) -> AppServices:
    """Construct the component graph for one server instance.

    ``build_overrides`` are passed to ``BuildService`` (tests use it to
    inject a fake provider factory or workspace).
    """
    _, session_maker = create_database(settings.data_dir)
    lifecycle = SessionLifecycleManager(session_maker)
    registry = AgentProcessRegistry()
    activities = ActivityRegistry()
    build_overrides.setdefault("workspace", GitWorkspace())
    build_service = BuildService(
        session_maker,
        lifecycle,
        registry,
        activities,
        settings,
        **build_overrides,
    )
    return AppServices(
        settings=settings,
        session_maker=session_maker,
        lifecycle=lifecycle,
        registry=registry,
        activities=activities,
        build_service=build_service,
    )


def get_services(request: Request) -> AppServices:
    return request.app.state.services


@contextmanager
def get_db_session(services: AppServices) -> Generator[Session, None, None]:
    """
    Context manager for read-only database sessions.
    Ensures session is always closed, even on exceptions.
    """
    session = services.session_maker()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
