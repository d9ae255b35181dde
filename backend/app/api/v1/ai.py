from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from storyboard.src.jobs.registry import JobRegistry
from storyboard.src.service import StoryboardService
from storyboard.src.utils.schema import IdentifiedEntity, RenderAnchors

from ... import schemas
from ...deps import get_job_registry, get_service

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/entities/identify", response_model=schemas.IdentifyResponse)
async def identify_entities(
    request: schemas.IdentifyRequest,
    service: StoryboardService = Depends(get_service),
):
    registry, new_entities = await service.identify_entities(request.script, request.global_assets, request.assets)
    return schemas.IdentifyResponse(
        entities=[IdentifiedEntity(name=e.name, type=e.type) for e in new_entities],
        assets=registry.local_entities,
    )


@router.post("/shots/plan", response_model=schemas.JobAccepted, status_code=202)
async def plan_shots(
    request: schemas.PlanRequest,
    service: StoryboardService = Depends(get_service),
    jobs: JobRegistry = Depends(get_job_registry),
):
    async def work(progress):
        progress(10)
        result = await service.plan_shots(request.script, request.assets)
        return schemas.PlanResponse(
            scene_context=result.scene_context,
            shot_plan=result.shot_plan,
            shots=result.shots,
        ).model_dump(mode="json")

    return schemas.JobAccepted(job_id=jobs.submit(work, kind="plan"))


@router.post("/shots/expand", response_model=schemas.JobAccepted, status_code=202)
async def expand_shot(
    request: schemas.ExpandRequest,
    service: StoryboardService = Depends(get_service),
    jobs: JobRegistry = Depends(get_job_registry),
):
    async def work(progress):
        shot = await service.expand_shot(
            request.planned,
            request.scene_context,
            request.assets,
            total=request.total,
            previous_shot=request.previous_shot,
            anchors=RenderAnchors(master_url=request.master_url, previous_url=request.previous_url),
        )
        return shot.model_dump(mode="json")

    return schemas.JobAccepted(job_id=jobs.submit(work, kind="expand"))


@router.post("/shots/custom", response_model=schemas.JobAccepted, status_code=202)
async def analyze_custom_shot(
    request: schemas.CustomShotRequest,
    service: StoryboardService = Depends(get_service),
    jobs: JobRegistry = Depends(get_job_registry),
):
    async def work(progress):
        shot = await service.analyze_custom_shot(request.description, request.assets)
        return shot.model_dump(mode="json")

    return schemas.JobAccepted(job_id=jobs.submit(work, kind="custom-shot"))


@router.post("/shots/render", response_model=schemas.JobAccepted, status_code=202)
async def render_shot(
    request: schemas.RenderShotRequest,
    service: StoryboardService = Depends(get_service),
    jobs: JobRegistry = Depends(get_job_registry),
):
    registry = service.registry_for(request.assets, request.global_assets)
    anchors = RenderAnchors(master_url=request.master_url, previous_url=request.previous_url)

    async def work(progress):
        result = await service.render_shot(request.shot, registry, anchors, key_prefix=request.key_prefix)
        return schemas.RenderShotResponse(image_url=result.image_url, shot=result.shot).model_dump(mode="json")

    logger.info("Queued render for shot %s", request.shot.shot_id)
    return schemas.JobAccepted(job_id=jobs.submit(work, kind="render"))


@router.post("/shots/edit", response_model=schemas.JobAccepted, status_code=202)
async def edit_shot(
    request: schemas.EditShotRequest,
    service: StoryboardService = Depends(get_service),
    jobs: JobRegistry = Depends(get_job_registry),
):
    async def work(progress):
        result = await service.edit_shot(request.image_url, request.instruction, request.shot, key_prefix=request.key_prefix)
        return schemas.EditShotResponse(
            image_url=result.image_url,
            visual_breakdown=result.visual_breakdown,
        ).model_dump(mode="json")

    return schemas.JobAccepted(job_id=jobs.submit(work, kind="edit"))


@router.post("/sequences/render", response_model=schemas.JobAccepted, status_code=202)
async def render_sequence(
    request: schemas.RenderSequenceRequest,
    service: StoryboardService = Depends(get_service),
    jobs: JobRegistry = Depends(get_job_registry),
):
    registry = service.registry_for(request.sequence.assets, request.global_assets)

    async def work(progress):
        result = await service.render_sequence(request.sequence, registry, progress=progress)
        return schemas.RenderSequenceResponse(sequence=result.sequence, failures=result.failures).model_dump(mode="json")

    return schemas.JobAccepted(job_id=jobs.submit(work, kind="render-sequence"))
