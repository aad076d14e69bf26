"""
Build Router
============

Launch build sessions for epics (batch) and single stories, and review
sessions for finished work.
"""

import logging

from fastapi import APIRouter, Depends

from server.deps import AppServices, get_services
from server.schemas import BuildRequest, ReviewRequest, StoryBuildRequest
from server.utils.validation import validate_identifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/projects/{project_id}", tags=["build"])


@router.post("/build")
async def build_epics(project_id: str, request: BuildRequest, services: AppServices = Depends(get_services)):
    validate_identifier(project_id, "project id")
    data = await services.build_service.launch_epics(
        project_id,
        request.epic_ids,
        mode=request.mode,
        team=request.team,
        provider=request.provider,
        model=request.model,
        include_dependencies=request.include_dependencies,
    )
    return {"data": data}


@router.post("/stories/{story_id}/build")
async def build_story(
    project_id: str,
    story_id: str,
    request: StoryBuildRequest,
    services: AppServices = Depends(get_services),
):
    validate_identifier(story_id, "story id")
    data = await services.build_service.launch_story(
        project_id,
        story_id,
        provider=request.provider,
        model=request.model,
        resume_session_id=request.resume_session_id,
    )
    return {"data": data}


@router.post("/epics/{epic_id}/review")
async def review_epic(
    project_id: str,
    epic_id: str,
    request: ReviewRequest,
    services: AppServices = Depends(get_services),
):
    validate_identifier(epic_id, "epic id")
    data = await services.build_service.launch_review(
        project_id,
        request.review_types,
        epic_id=epic_id,
        provider=request.provider,
        model=request.model,
    )
    return {"data": data}


@router.post("/stories/{story_id}/review")
async def review_story(
    project_id: str,
    story_id: str,
    request: ReviewRequest,
    services: AppServices = Depends(get_services),
):
    validate_identifier(story_id, "story id")
    data = await services.build_service.launch_review(
        project_id,
        request.review_types,
        story_id=story_id,
        provider=request.provider,
        model=request.model,
    )
    return {"data": data}
