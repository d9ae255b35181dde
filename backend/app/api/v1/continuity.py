from __future__ import annotations

from fastapi import APIRouter, Depends

from storyboard.src.service import StoryboardService

from ... import schemas
from ...deps import get_service

router = APIRouter()


@router.post("/continuity/check", response_model=schemas.ContinuityResponse)
def check_continuity(request: schemas.ContinuityRequest, service: StoryboardService = Depends(get_service)):
    return schemas.ContinuityResponse(issues=service.check_continuity(request.shots, request.assets))


@router.post("/continuity/apply-fix", response_model=schemas.ApplyFixResponse)
def apply_fix(request: schemas.ApplyFixRequest, service: StoryboardService = Depends(get_service)):
    shots, issue = service.apply_fix(request.shots, request.issue)
    return schemas.ApplyFixResponse(shots=shots, issue=issue)
