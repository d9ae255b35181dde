from __future__ import annotations

import os
from pathlib import Path
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from ..errors import InvalidTransitionError

EntityType = Literal["character", "location", "item"]
ShotRole = Literal["master", "sequential"]
SequenceStatus = Literal["draft", "analyzed", "storyboarded"]
IssueCategory = Literal["outfit", "time", "location", "camera", "lighting", "other"]
IssueSeverity = Literal["error", "warning", "info"]

SEQUENCE_STATUS_ORDER = ("draft", "analyzed", "storyboarded")
DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[2] / "configs" / "default.yaml"


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:12]}"


class Entity(BaseModel):
    id: str = Field(default_factory=lambda: new_id("entity"))
    ref_tag: str
    name: str
    type: EntityType
    description: str = ""
    image_data: Optional[str] = Field(
        default=None, description="Image locator: data URL, media-store locator, http(s) URL or raw base64"
    )
    mime_type: Optional[str] = None
    linked_global_id: Optional[str] = None

    @property
    def has_image(self) -> bool:
        return bool(self.image_data)


class Environment(BaseModel):
    location_type: str
    description: str
    reference_image: Optional[str] = None
    original_ref: Optional[str] = None


class Scene(BaseModel):
    environment: Environment
    time: str
    mood: str
    color_palette: str


class Appearance(BaseModel):
    description: str
    expression: str


class CharacterShotDetail(BaseModel):
    name: str
    reference_image: Optional[str] = None
    original_ref: Optional[str] = None
    position: str
    blocking_id: Optional[str] = None
    appearance: Appearance
    actions: str
    lighting_effect: str


class ObjectDetail(BaseModel):
    name: str
    reference_image: Optional[str] = None
    original_ref: Optional[str] = None
    details: str
    action: Optional[str] = None


class FramingComposition(BaseModel):
    shot_type: str
    framing: str
    perspective: str


class Lens(BaseModel):
    focal_length_mm: float
    type: str


class CameraSettings(BaseModel):
    aperture: str
    focus: str


class Camera(BaseModel):
    lens: Lens
    settings: CameraSettings


class Lighting(BaseModel):
    key: str
    quality: str
    color_contrast: str


class VisualBreakdown(BaseModel):
    scene: Scene
    characters: List[CharacterShotDetail]
    objects: List[ObjectDetail] = Field(default_factory=list)
    framing_composition: FramingComposition
    camera: Camera
    lighting: Lighting
    director_notes: Optional[str] = None


class ShotDetail(BaseModel):
    """Structured output of a per-shot detail expansion."""

    shot_id: str
    plan_type: str
    camera_specs: str = ""
    action_segment: str = ""
    relevant_entities: List[str] = Field(default_factory=list)
    visual_breakdown: VisualBreakdown


class ShotPlan(ShotDetail):
    role: ShotRole = "sequential"
    image_url: Optional[str] = None
    loading: bool = False
    editing: bool = False

    @property
    def is_master(self) -> bool:
        return self.role == "master"


class RenderAnchors(BaseModel):
    master_url: Optional[str] = None
    previous_url: Optional[str] = None


class CharacterContext(BaseModel):
    name: str
    outfit: str = ""
    accessories: List[str] = Field(default_factory=list)


class SceneContext(BaseModel):
    environment: str
    time_of_day: str
    characters: List[CharacterContext] = Field(default_factory=list)
    persistent_props: List[str] = Field(default_factory=list)


class PlannedShot(BaseModel):
    index: int
    summary: str
    action_segment: str


class ShotListPlan(BaseModel):
    shots: List[PlannedShot]

    @field_validator("shots")
    @classmethod
    def validate_not_empty(cls, value: List[PlannedShot]) -> List[PlannedShot]:
        if not value:
            raise ValueError("shot list must contain at least one shot")
        return value


class IdentifiedEntity(BaseModel):
    name: str
    type: EntityType


class EntityIdentification(BaseModel):
    entities: List[IdentifiedEntity] = Field(default_factory=list)


class FixData(BaseModel):
    type: Literal["update-field"] = "update-field"
    field: str
    value: Any
    char_name: Optional[str] = None


class ContinuityIssue(BaseModel):
    id: str
    shot_id: str
    category: IssueCategory
    severity: IssueSeverity
    message: str
    evidence: str
    suggested_fix: Optional[str] = None
    fix_data: Optional[FixData] = None
    resolved: bool = False


class Sequence(BaseModel):
    id: str = Field(default_factory=lambda: new_id("seq"))
    title: str = ""
    script: str = ""
    shots: List[ShotPlan] = Field(default_factory=list)
    assets: List[Entity] = Field(default_factory=list)
    status: SequenceStatus = "draft"

    def advance(self, status: SequenceStatus) -> "Sequence":
        """Move forward one step at a time: draft -> analyzed -> storyboarded."""
        current = SEQUENCE_STATUS_ORDER.index(self.status)
        target = SEQUENCE_STATUS_ORDER.index(status)
        if target < current:
            raise InvalidTransitionError(f"Sequence {self.id} cannot move from {self.status} back to {status}")
        if target > current + 1:
            raise InvalidTransitionError(
                f"Sequence {self.id} cannot skip from {self.status} to {status}; "
                f"it must be {SEQUENCE_STATUS_ORDER[current + 1]} first"
            )
        return self.model_copy(update={"status": status})

    def master_shot(self) -> Optional[ShotPlan]:
        for shot in self.shots:
            if shot.is_master:
                return shot
        return self.shots[0] if self.shots else None

    def with_shots(self, shots: List[ShotPlan]) -> "Sequence":
        return self.model_copy(update={"shots": list(shots)})

    def replace_shot(self, shot: ShotPlan) -> "Sequence":
        return self.with_shots([shot if s.shot_id == shot.shot_id else s for s in self.shots])

    def insert_shot(self, index: int, shot: ShotPlan) -> "Sequence":
        shots = list(self.shots)
        shots.insert(max(0, min(index, len(shots))), shot)
        return self.with_shots(shots)

    def delete_shot(self, shot_id: str) -> "Sequence":
        return self.with_shots([s for s in self.shots if s.shot_id != shot_id])


class LLMConfig(BaseModel):
    provider: Literal["openai"] = "openai"
    identify_model: str = "gpt-4o-mini"
    planning_model: str = "gpt-4o"
    timeout_seconds: float = 120.0


class ImageConfig(BaseModel):
    backend: Literal["openai", "polling"] = "openai"
    model: str = "gpt-image-1"
    aspect_ratio: str = "16:9"
    service_url: Optional[str] = None
    poll_interval_seconds: float = 2.0
    max_poll_attempts: int = 30
    request_timeout_seconds: float = 30.0


class ReferenceConfig(BaseModel):
    max_images: int = Field(default=8, ge=0, le=8)


class JobConfig(BaseModel):
    retention_seconds: float = 3600.0


class MediaConfig(BaseModel):
    root_dir: str = "media"
    url_prefix: str = "/media"


class ConfigModel(BaseModel):
    llm: LLMConfig = Field(default_factory=LLMConfig)
    images: ImageConfig = Field(default_factory=ImageConfig)
    references: ReferenceConfig = Field(default_factory=ReferenceConfig)
    jobs: JobConfig = Field(default_factory=JobConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    logging: dict = Field(default_factory=dict)

    @classmethod
    def from_path(cls, path: Path) -> "ConfigModel":
        from .io import load_yaml

        data = load_yaml(path) or {}
        return cls(**data)

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "ConfigModel":
        """Load the YAML config and apply ``SB_*`` environment overrides."""
        config_path = Path(path or os.getenv("SB_CONFIG", DEFAULT_CONFIG_PATH))
        config = cls.from_path(config_path) if config_path.exists() else cls()

        if os.getenv("SB_MEDIA_DIR"):
            config.media.root_dir = os.environ["SB_MEDIA_DIR"]
        if os.getenv("SB_IMAGE_BACKEND"):
            config.images.backend = os.environ["SB_IMAGE_BACKEND"]  # type: ignore[assignment]
        if os.getenv("SB_IMAGE_SERVICE_URL"):
            config.images.service_url = os.environ["SB_IMAGE_SERVICE_URL"]
        if os.getenv("SB_LOGLEVEL"):
            config.logging["level"] = os.environ["SB_LOGLEVEL"]
        return config
