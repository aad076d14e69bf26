"""
Pydantic Schemas
================

Request/Response models for the API endpoints.

JSON on the wire is camelCase; models accept either spelling.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from forge_config import VALID_PROVIDERS


def _validate_model_string(v: str | None) -> str | None:
    """Validate a model ID string. Accepts any non-empty string up to 200 chars."""
    if v is not None:
        v = v.strip()
        if not v:
            return None
        if len(v) > 200:
            raise ValueError("Model ID too long (max 200 characters)")
    return v


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Session Schemas
# ============================================================================

class SessionResponse(CamelModel):
    """Persisted agent session."""
    id: str
    project_id: str
    epic_id: Optional[str] = None
    user_story_id: Optional[str] = None
    status: str
    mode: str
    orchestration_mode: str
    provider: str
    model: Optional[str] = None
    logs_path: Optional[str] = None
    branch_name: Optional[str] = None
    worktree_path: Optional[str] = None
    cli_session_id: Optional[str] = None
    cli_command: Optional[str] = None
    ticket_ids: list[str] = Field(default_factory=list)
    error: Optional[str] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    completed_at: Optional[str] = None
    created_at: Optional[str] = None
    live: Optional[dict] = None


class SessionListResponse(CamelModel):
    sessions: list[SessionResponse]
    count: int


class ActiveSessionsResponse(SessionListResponse):
    """Running sessions plus in-flight batch activities (never persisted)."""
    activities: list[dict] = Field(default_factory=list)


class SessionCancelResponse(CamelModel):
    id: str
    cancelled: bool
    source: Literal["session", "activity"]
    process_killed: Optional[bool] = None


class SessionLogResponse(CamelModel):
    session_id: str
    events: list[dict]


# ============================================================================
# Dependency Schemas
# ============================================================================

class DependencyEdgeIn(CamelModel):
    ticket_id: str = Field(..., min_length=1)
    depends_on_ticket_id: str = Field(..., min_length=1)


class DependencyCreateRequest(CamelModel):
    edges: list[DependencyEdgeIn] = Field(..., min_length=1)


class TicketDependenciesUpdate(CamelModel):
    depends_on: list[str] = Field(default_factory=list)


class DependencyResponse(CamelModel):
    id: str
    ticket_id: str
    depends_on_ticket_id: str
    project_id: str
    scope_type: str
    scope_id: Optional[str] = None
    created_at: Optional[str] = None


class DependencyListResponse(CamelModel):
    dependencies: list[DependencyResponse]
    count: int


class TicketIdsRequest(CamelModel):
    # Empty lists are rejected by the handler with a 400, not a 422
    ticket_ids: list[str] = Field(default_factory=list)


class ExecutionPlanResponse(CamelModel):
    layers: list[list[str]]
    layer_count: int
    ticket_count: int
    ticket_status: dict[str, str] = Field(default_factory=dict)


class TransitiveSelectionResponse(CamelModel):
    all: list[str]
    auto_included: list[str]


# ============================================================================
# Build Schemas
# ============================================================================

class BuildRequest(CamelModel):
    """Batch build of several epics."""
    epic_ids: list[str] = Field(default_factory=list)
    mode: Literal["parallel", "sequential", "dag"] = "parallel"
    team: bool = False
    provider: Optional[str] = None
    model: Optional[str] = None
    include_dependencies: bool = False

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str | None) -> str | None:
        if v is not None and v not in VALID_PROVIDERS:
            raise ValueError(f"Invalid provider. Must be one of: {VALID_PROVIDERS}")
        return v

    @field_validator("model")
    @classmethod
    def validate_model(cls, v: str | None) -> str | None:
        return _validate_model_string(v)


class StoryBuildRequest(CamelModel):
    provider: Optional[str] = None
    model: Optional[str] = None
    resume_session_id: Optional[str] = None

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str | None) -> str | None:
        if v is not None and v not in VALID_PROVIDERS:
            raise ValueError(f"Invalid provider. Must be one of: {VALID_PROVIDERS}")
        return v

    @field_validator("model")
    @classmethod
    def validate_model(cls, v: str | None) -> str | None:
        return _validate_model_string(v)


class ReviewRequest(CamelModel):
    # Unknown or empty review types are rejected by the service with a 400
    review_types: list[str] = Field(default_factory=list)
    provider: Optional[str] = None
    model: Optional[str] = None

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str | None) -> str | None:
        if v is not None and v not in VALID_PROVIDERS:
            raise ValueError(f"Invalid provider. Must be one of: {VALID_PROVIDERS}")
        return v

    @field_validator("model")
    @classmethod
    def validate_model(cls, v: str | None) -> str | None:
        return _validate_model_string(v)
