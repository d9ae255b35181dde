from __future__ import annotations

from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field

from storyboard.src.utils.schema import (
    ContinuityIssue,
    Entity,
    IdentifiedEntity,
    PlannedShot,
    SceneContext,
    Sequence,
    ShotPlan,
    VisualBreakdown,
)

JobStatusType = Literal["processing", "completed", "failed"]
JobErrorCode = Literal["timeout", "capability", "validation", "internal"]


class IdentifyRequest(BaseModel):
    script: str = Field(..., min_length=1)
    global_assets: List[Entity] = Field(default_factory=list, description="Project asset library")
    assets: List[Entity] = Field(default_factory=list, description="Entities already in the sequence")


class IdentifyResponse(BaseModel):
    entities: List[IdentifiedEntity]
    assets: List[Entity] = Field(description="Local entities after identification, including new ones")


class PlanRequest(BaseModel):
    script: str = Field(..., min_length=1)
    assets: List[Entity] = Field(default_factory=list)


class PlanResponse(BaseModel):
    scene_context: SceneContext
    shot_plan: List[PlannedShot]
    shots: List[ShotPlan]


class ExpandRequest(BaseModel):
    planned: PlannedShot
    scene_context: SceneContext
    assets: List[Entity] = Field(default_factory=list)
    total: int = Field(..., ge=1)
    previous_shot: Optional[ShotPlan] = None
    master_url: Optional[str] = None
    previous_url: Optional[str] = None


class CustomShotRequest(BaseModel):
    description: str = Field(..., min_length=1)
    assets: List[Entity] = Field(default_factory=list)


class RenderShotRequest(BaseModel):
    shot: ShotPlan
    assets: List[Entity] = Field(default_factory=list)
    global_assets: List[Entity] = Field(default_factory=list)
    master_url: Optional[str] = None
    previous_url: Optional[str] = None
    key_prefix: str = "global"


class RenderShotResponse(BaseModel):
    image_url: str
    shot: ShotPlan


class EditShotRequest(BaseModel):
    image_url: str = Field(..., min_length=1, description="Locator of the image being edited")
    instruction: str = Field(..., min_length=1)
    shot: ShotPlan
    key_prefix: str = "global"


class EditShotResponse(BaseModel):
    image_url: str
    visual_breakdown: VisualBreakdown


class RenderSequenceRequest(BaseModel):
    sequence: Sequence
    global_assets: List[Entity] = Field(default_factory=list)


class RenderSequenceResponse(BaseModel):
    sequence: Sequence
    failures: dict = Field(default_factory=dict)


class ContinuityRequest(BaseModel):
    shots: List[ShotPlan]
    assets: List[Entity] = Field(default_factory=list)


class ContinuityResponse(BaseModel):
    issues: List[ContinuityIssue]


class ApplyFixRequest(BaseModel):
    shots: List[ShotPlan]
    issue: ContinuityIssue


class ApplyFixResponse(BaseModel):
    shots: List[ShotPlan]
    issue: ContinuityIssue


class JobAccepted(BaseModel):
    job_id: str
    status: JobStatusType = "processing"


class JobRead(BaseModel):
    id: str
    kind: str
    status: JobStatusType
    progress: int
    data: Optional[Any] = None
    error_message: Optional[str] = None
    error_code: Optional[JobErrorCode] = None
