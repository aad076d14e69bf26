"""
Database Models and Connection
==============================

SQLite database schema for projects, work items, agent sessions and
dependency edges using SQLAlchemy.
"""

import sys
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Session, relationship, sessionmaker
from sqlalchemy.types import JSON


def _utc_now() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate an opaque identifier for sessions and edges."""
    return uuid.uuid4().hex


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class Base(DeclarativeBase):
    """SQLAlchemy 2.0 style declarative base."""
    pass


class Project(Base):
    """A git-backed project owning epics, sessions and dependency edges."""

    __tablename__ = "projects"

    id = Column(String(64), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="ideation")
    git_repo_path = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utc_now)
    updated_at = Column(DateTime, nullable=False, default=_utc_now, onupdate=_utc_now)

    epics = relationship("Epic", back_populates="project", cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "git_repo_path": self.git_repo_path,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Epic(Base):
    """Top-level work item. Epics are the nodes of the dependency graph."""

    __tablename__ = "epics"

    id = Column(String(64), primary_key=True, default=new_id)
    project_id = Column(
        String(64), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    # backlog | todo | in_progress | review | done
    status = Column(String(20), nullable=False, default="backlog", index=True)
    priority = Column(Integer, nullable=False, default=0)
    position = Column(Integer, nullable=False, default=0)
    branch_name = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utc_now)
    updated_at = Column(DateTime, nullable=False, default=_utc_now, onupdate=_utc_now)

    project = relationship("Project", back_populates="epics")
    user_stories = relationship(
        "UserStory",
        back_populates="epic",
        cascade="all, delete-orphan",
        order_by="UserStory.position",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "position": self.position,
            "branch_name": self.branch_name,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class UserStory(Base):
    """Ordered story inside an epic."""

    __tablename__ = "user_stories"

    id = Column(String(64), primary_key=True, default=new_id)
    epic_id = Column(
        String(64), ForeignKey("epics.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    acceptance_criteria = Column(Text, nullable=True)
    # todo | in_progress | review | done
    status = Column(String(20), nullable=False, default="todo")
    position = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=_utc_now)

    epic = relationship("Epic", back_populates="user_stories")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "epic_id": self.epic_id,
            "title": self.title,
            "description": self.description,
            "acceptance_criteria": self.acceptance_criteria,
            "status": self.status,
            "position": self.position,
        }


class AgentSession(Base):
    """One attempt to run an external coding agent against a scope target."""

    __tablename__ = "agent_sessions"

    # Guard queries filter on (project_id, status) and then on epic/story
    __table_args__ = (
        Index("ix_agent_session_project_status", "project_id", "status"),
        CheckConstraint(
            "status IN ('pending', 'queued', 'running', 'completed', 'failed', 'cancelled')",
            name="ck_agent_session_status",
        ),
    )

    id = Column(String(64), primary_key=True, default=new_id)
    project_id = Column(
        String(64), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    epic_id = Column(String(64), ForeignKey("epics.id"), nullable=True, index=True)
    user_story_id = Column(String(64), ForeignKey("user_stories.id"), nullable=True, index=True)
    status = Column(String(20), nullable=False, default="queued")
    mode = Column(String(20), nullable=False, default="code")  # plan | code | analyze
    orchestration_mode = Column(String(20), nullable=False, default="solo")  # solo | team
    provider = Column(String(20), nullable=False, default="claude-code")
    model = Column(String(200), nullable=True)
    prompt = Column(Text, nullable=True)
    logs_path = Column(String, nullable=True)
    branch_name = Column(String(255), nullable=True)
    worktree_path = Column(String, nullable=True)
    cli_session_id = Column(String(100), nullable=True)
    cli_command = Column(Text, nullable=True)
    # Work items covered by a team session (solo sessions use epic_id/user_story_id)
    ticket_ids = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utc_now)

    def get_ticket_ids_safe(self) -> list[str]:
        """Covered work items, handling NULL and malformed JSON."""
        if isinstance(self.ticket_ids, list):
            return [t for t in self.ticket_ids if isinstance(t, str)]
        return []

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "epic_id": self.epic_id,
            "user_story_id": self.user_story_id,
            "status": self.status,
            "mode": self.mode,
            "orchestration_mode": self.orchestration_mode,
            "provider": self.provider,
            "model": self.model,
            "prompt": self.prompt,
            "logs_path": self.logs_path,
            "branch_name": self.branch_name,
            "worktree_path": self.worktree_path,
            "cli_session_id": self.cli_session_id,
            "cli_command": self.cli_command,
            "ticket_ids": self.get_ticket_ids_safe(),
            "error": self.error,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
        }


class TicketDependency(Base):
    """Directed edge: ``ticket_id`` depends on ``depends_on_ticket_id``."""

    __tablename__ = "ticket_dependencies"
    __table_args__ = (
        UniqueConstraint("ticket_id", "depends_on_ticket_id", name="uq_ticket_dependency_edge"),
        CheckConstraint("ticket_id != depends_on_ticket_id", name="ck_ticket_dependency_no_self"),
    )

    id = Column(String(64), primary_key=True, default=new_id)
    ticket_id = Column(String(64), nullable=False, index=True)
    depends_on_ticket_id = Column(String(64), nullable=False, index=True)
    project_id = Column(
        String(64), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    scope_type = Column(String(20), nullable=False, default="project")
    scope_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utc_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "depends_on_ticket_id": self.depends_on_ticket_id,
            "project_id": self.project_id,
            "scope_type": self.scope_type,
            "scope_id": self.scope_id,
            "created_at": _iso(self.created_at),
        }


def get_database_path(data_dir: Path) -> Path:
    """Return the path to the SQLite database inside the data directory."""
    from forge_config import get_database_path as _get_database_path
    return _get_database_path(data_dir)


def get_database_url(data_dir: Path) -> str:
    """Return the SQLAlchemy database URL.

    Uses POSIX-style paths (forward slashes) for cross-platform compatibility.
    """
    db_path = get_database_path(data_dir)
    return f"sqlite:///{db_path.as_posix()}"


def _migrate_add_cli_session_columns(engine) -> None:
    """Add resumption columns to databases created before CLI resume support."""
    with engine.connect() as conn:
        result = conn.execute(text("PRAGMA table_info(agent_sessions)"))
        columns = [row[1] for row in result.fetchall()]

        if "cli_session_id" not in columns:
            conn.execute(text("ALTER TABLE agent_sessions ADD COLUMN cli_session_id VARCHAR(100) DEFAULT NULL"))
        if "cli_command" not in columns:
            conn.execute(text("ALTER TABLE agent_sessions ADD COLUMN cli_command TEXT DEFAULT NULL"))
        conn.commit()


def _migrate_normalize_pending_sessions(engine) -> None:
    """Rewrite the legacy ``pending`` session status to ``queued``."""
    with engine.connect() as conn:
        conn.execute(text("UPDATE agent_sessions SET status = 'queued' WHERE status = 'pending' OR status IS NULL"))
        conn.commit()


def _is_network_path(path: Path) -> bool:
    """Detect if path is on a network filesystem.

    WAL mode doesn't work reliably on network filesystems (NFS, SMB, CIFS)
    and can cause database corruption, so callers fall back to DELETE mode.
    """
    path_str = str(path.resolve())

    if sys.platform == "win32":
        # Windows UNC paths: \\server\share or \\?\UNC\server\share
        if path_str.startswith("\\\\"):
            return True
        try:
            import ctypes
            drive = path_str[:2]
            if len(drive) == 2 and drive[1] == ":":
                # DRIVE_REMOTE = 4
                drive_type = ctypes.windll.kernel32.GetDriveTypeW(drive + "\\")
                if drive_type == 4:
                    return True
        except (AttributeError, OSError):
            pass
    else:
        try:
            with open("/proc/mounts", "r") as f:
                for line in f.read().splitlines():
                    parts = line.split()
                    if len(parts) >= 3:
                        mount_point, fs_type = parts[1], parts[2]
                        if path_str.startswith(mount_point) and fs_type in (
                            "nfs", "nfs4", "cifs", "smbfs", "fuse.sshfs"
                        ):
                            return True
        except (FileNotFoundError, PermissionError):
            pass

    return False


def _configure_sqlite_immediate_transactions(engine) -> None:
    """Configure engine for IMMEDIATE transactions via event hooks.

    Every transaction takes the write lock at BEGIN, so a read-validate-write
    sequence inside ``atomic_transaction`` cannot interleave with another
    writer (two finalizers racing on the same session, or a guard check
    racing a second dispatch).
    """
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        # Disable pysqlite's implicit transaction handling
        dbapi_connection.isolation_level = None

        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.execute("PRAGMA foreign_keys=ON")
        finally:
            cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_database(data_dir: Path) -> tuple:
    """
    Create database and return engine + session maker.

    Engines are cached per data directory so repeated calls reuse the same
    connection pool.

    Args:
        data_dir: Directory holding the database file

    Returns:
        Tuple of (engine, SessionLocal)
    """
    cache_key = data_dir.as_posix()

    if cache_key in _engine_cache:
        return _engine_cache[cache_key]

    db_path = get_database_path(data_dir)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    journal_mode = "DELETE" if _is_network_path(data_dir) else "WAL"

    engine = create_engine(get_database_url(data_dir), connect_args={
        "check_same_thread": False,
        "timeout": 30,
    })

    # PRAGMA journal_mode must run outside of a transaction, so set it before
    # the BEGIN IMMEDIATE hooks are installed
    with engine.connect() as conn:
        raw_conn = conn.connection.dbapi_connection
        if raw_conn is None:
            raise RuntimeError("Failed to get raw DBAPI connection")
        cursor = raw_conn.cursor()
        try:
            cursor.execute(f"PRAGMA journal_mode={journal_mode}")
            cursor.execute("PRAGMA busy_timeout=30000")
        finally:
            cursor.close()

    _configure_sqlite_immediate_transactions(engine)

    Base.metadata.create_all(bind=engine)

    _migrate_add_cli_session_columns(engine)
    _migrate_normalize_pending_sessions(engine)

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    _engine_cache[cache_key] = (engine, SessionLocal)

    return engine, SessionLocal


def dispose_engine(data_dir: Path) -> bool:
    """Dispose of and remove the cached engine for a data directory.

    Returns:
        True if an engine was disposed, False if no engine was cached.
    """
    cache_key = data_dir.as_posix()

    if cache_key in _engine_cache:
        engine, _ = _engine_cache.pop(cache_key)
        engine.dispose()
        return True

    return False


# Key: data directory path (as posix string), Value: (engine, SessionLocal)
_engine_cache: dict[str, tuple] = {}


@contextmanager
def atomic_transaction(session_maker: sessionmaker) -> Generator[Session, None, None]:
    """Context manager for atomic SQLite transactions.

    Acquires the write lock immediately via BEGIN IMMEDIATE (configured by
    the engine event hooks), so reads inside the block cannot go stale
    before the write that depends on them.

    Example:
        with atomic_transaction(session_maker) as session:
            row = session.get(AgentSession, session_id)
            row.status = "running"
            # Commit happens automatically on exit
    """
    session = session_maker()
    try:
        yield session
        session.commit()
    except Exception:
        try:
            session.rollback()
        except Exception:
            pass  # Don't let rollback failure mask original error
        raise
    finally:
        session.close()
