"""
Storyboard service facade.

Wires the entity registry, shot planner, reference resolver, renderer and
continuity checker behind one object that the API backend and the CLI share.
Callers pass state in and get new state back; nothing here is persisted.
"""

from __future__ import annotations

import functools
import logging
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple

from .continuity.checker import apply_fix, check_sequence_continuity
from .entities.registry import EntityRegistry, ImageLoader
from .imaging.client import ImageCapability, OpenAIImageBackend, PollingImageBackend
from .imaging.media import LocalMediaStore, MediaStore, load_image_resource
from .imaging.renderer import BatchRenderResult, EditResult, RenderResult, ShotRenderer
from .llm.client import OpenAIStructuredClient, TextCapability
from .llm.planner import PlanResult, ShotPlanner
from .references.resolver import ReferenceResolver
from .utils.schema import (
    ConfigModel,
    ContinuityIssue,
    Entity,
    PlannedShot,
    RenderAnchors,
    SceneContext,
    Sequence,
    ShotPlan,
)

logger = logging.getLogger(__name__)


def build_image_backend(config: ConfigModel) -> ImageCapability:
    images = config.images
    if images.backend == "polling":
        return PollingImageBackend(
            base_url=images.service_url or "",
            poll_interval=images.poll_interval_seconds,
            max_attempts=images.max_poll_attempts,
            timeout=images.request_timeout_seconds,
        )
    return OpenAIImageBackend(model=images.model, timeout=config.llm.timeout_seconds)


class StoryboardService:
    def __init__(
        self,
        text_client: TextCapability,
        image_backend: ImageCapability,
        store: MediaStore,
        config: Optional[ConfigModel] = None,
    ) -> None:
        self.config = config or ConfigModel()
        self.text_client = text_client
        self.store = store
        self.loader: ImageLoader = functools.partial(load_image_resource, store=store)
        self.planner = ShotPlanner(text_client, model=self.config.llm.planning_model)
        self.resolver = ReferenceResolver(max_references=self.config.references.max_images, loader=self.loader)
        self.renderer = ShotRenderer(
            backend=image_backend,
            store=store,
            resolver=self.resolver,
            loader=self.loader,
            aspect_ratio=self.config.images.aspect_ratio,
        )

    @classmethod
    def from_config(cls, config: Optional[ConfigModel] = None) -> "StoryboardService":
        config = config or ConfigModel.load()
        text_client = OpenAIStructuredClient(model=config.llm.planning_model, timeout=config.llm.timeout_seconds)
        store = LocalMediaStore(Path(config.media.root_dir), url_prefix=config.media.url_prefix)
        logger.info(
            "Storyboard service: text=%s, images=%s (%s), media=%s",
            config.llm.planning_model,
            config.images.backend,
            config.images.model,
            config.media.root_dir,
        )
        return cls(text_client, build_image_backend(config), store, config)

    @staticmethod
    def registry_for(assets: Iterable[Entity] = (), global_assets: Iterable[Entity] = ()) -> EntityRegistry:
        return EntityRegistry(global_entities=global_assets, local_entities=assets)

    async def identify_entities(
        self,
        script: str,
        global_assets: Iterable[Entity] = (),
        local_assets: Iterable[Entity] = (),
    ) -> Tuple[EntityRegistry, List[Entity]]:
        registry = self.registry_for(local_assets, global_assets)
        return await registry.identify(script, self.text_client, model=self.config.llm.identify_model)

    async def plan_shots(self, script: str, assets: Iterable[Entity]) -> PlanResult:
        return await self.planner.plan(script, list(assets))

    async def plan_all_shots(self, script: str, assets: Iterable[Entity]) -> PlanResult:
        return await self.planner.plan_all(script, list(assets))

    async def expand_shot(
        self,
        planned: PlannedShot,
        scene_context: SceneContext,
        assets: Iterable[Entity],
        total: int,
        previous_shot: Optional[ShotPlan] = None,
        anchors: Optional[RenderAnchors] = None,
    ) -> ShotPlan:
        anchors = anchors or RenderAnchors()
        master_image = await self.loader(anchors.master_url) if anchors.master_url else None
        previous_image = await self.loader(anchors.previous_url) if anchors.previous_url else None
        return await self.planner.expand_shot(
            planned,
            scene_context,
            list(assets),
            total=total,
            previous_shot=previous_shot,
            master_image=master_image,
            previous_image=previous_image,
        )

    async def analyze_custom_shot(self, description: str, assets: Iterable[Entity]) -> ShotPlan:
        return await self.planner.analyze_custom_shot(description, list(assets))

    async def render_shot(
        self,
        shot: ShotPlan,
        registry: EntityRegistry,
        anchors: Optional[RenderAnchors] = None,
        key_prefix: str = "global",
    ) -> RenderResult:
        return await self.renderer.render_shot(shot, registry, anchors, key_prefix=key_prefix)

    async def edit_shot(self, image_locator: str, instruction: str, shot: ShotPlan, key_prefix: str = "global") -> EditResult:
        return await self.renderer.edit_shot(image_locator, instruction, shot, key_prefix=key_prefix)

    async def render_sequence(
        self,
        sequence: Sequence,
        registry: EntityRegistry,
        progress: Optional[Callable[[int], None]] = None,
    ) -> BatchRenderResult:
        return await self.renderer.render_sequence(sequence, registry, progress=progress)

    def check_continuity(self, shots: List[ShotPlan], assets: Iterable[Entity] = ()) -> List[ContinuityIssue]:
        return check_sequence_continuity(shots, list(assets))

    def apply_fix(self, shots: List[ShotPlan], issue: ContinuityIssue) -> Tuple[List[ShotPlan], ContinuityIssue]:
        return apply_fix(shots, issue)
