"""
API Package
============

Persistence, session lifecycle, concurrency guard and dependency scheduling.
"""

from api.database import AgentSession, Epic, Project, TicketDependency, UserStory, create_database, get_database_path

__all__ = [
    "AgentSession",
    "Epic",
    "Project",
    "TicketDependency",
    "UserStory",
    "create_database",
    "get_database_path",
]
