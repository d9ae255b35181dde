from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from ..errors import InputValidationError, MalformedResponseError
from ..imaging.media import ImageResource
from ..utils.schema import Entity, PlannedShot, SceneContext, ShotDetail, ShotListPlan, ShotPlan, new_id
from . import prompts
from .client import TextCapability

logger = logging.getLogger(__name__)


@dataclass
class PlanResult:
    scene_context: SceneContext
    shot_plan: List[PlannedShot]
    shots: List[ShotPlan] = field(default_factory=list)


def _dump(model) -> str:
    return json.dumps(model.model_dump(mode="json"), ensure_ascii=False, indent=2)


def _shot_json_for_continuity(shot: ShotPlan) -> str:
    payload = shot.model_dump(mode="json", exclude={"image_url", "loading", "editing"})
    return json.dumps(payload, ensure_ascii=False, indent=2)


class ShotPlanner:
    """Staged script breakdown: scene pre-analysis, shot list, per-shot detail.

    Each stage is grounded on the structured output of the previous one, and
    every detail expansion after the master shot sees its predecessor.
    """

    def __init__(self, text_client: TextCapability, model: Optional[str] = None) -> None:
        self.text_client = text_client
        self.model = model

    async def analyze_scene(self, script: str, assets: Sequence[Entity]) -> SceneContext:
        prompt = prompts.SCENE_ANALYSIS_TEMPLATE.format(
            asset_table=prompts.format_asset_table(assets),
            script=script,
        )
        context = await self.text_client.generate_structured(prompt, SceneContext, model=self.model)
        logger.info(
            "Scene context: %s at %s, %d characters, %d persistent props",
            context.environment[:60],
            context.time_of_day,
            len(context.characters),
            len(context.persistent_props),
        )
        return context

    async def plan_shot_list(self, script: str, scene_context: SceneContext, assets: Sequence[Entity]) -> List[PlannedShot]:
        prompt = prompts.SHOT_LIST_TEMPLATE.format(
            scene_context_json=_dump(scene_context),
            asset_table=prompts.format_asset_table(assets),
            script=script,
        )
        plan = await self.text_client.generate_structured(prompt, ShotListPlan, model=self.model)
        shots = sorted(plan.shots, key=lambda s: s.index)
        logger.info("Planned %d shots", len(shots))
        return shots

    async def expand_shot(
        self,
        planned: PlannedShot,
        scene_context: SceneContext,
        assets: Sequence[Entity],
        total: int,
        previous_shot: Optional[ShotPlan] = None,
        master_image: Optional[ImageResource] = None,
        previous_image: Optional[ImageResource] = None,
    ) -> ShotPlan:
        is_master = previous_shot is None
        shot_id = f"shot-{planned.index:02d}"

        images: List[ImageResource] = []
        labels: List[str] = []
        if not is_master:
            if master_image is not None:
                images.append(master_image)
                labels.append("master shot")
            if previous_image is not None:
                images.append(previous_image)
                labels.append("previous shot")
            anchor_note = prompts.ANCHOR_NOTE_TEMPLATE.format(labels=", ".join(labels)) if labels else ""
            continuity_block = prompts.SEQUENTIAL_CONTINUITY_BLOCK.format(
                previous_shot_json=_shot_json_for_continuity(previous_shot),
                anchor_note=anchor_note,
            )
        else:
            continuity_block = prompts.MASTER_CONTINUITY_BLOCK

        prompt = prompts.SHOT_DETAIL_TEMPLATE.format(
            index=planned.index,
            total=total,
            summary=planned.summary,
            action_segment=planned.action_segment,
            scene_context_json=_dump(scene_context),
            asset_table=prompts.format_asset_table(assets),
            continuity_block=continuity_block,
            shot_id=shot_id,
        )
        detail = await self.text_client.generate_structured(prompt, ShotDetail, images=images or None, model=self.model)
        if not detail.visual_breakdown.scene.environment.description:
            raise MalformedResponseError(f"Shot {planned.index} has no environment description", capability="text")

        shot = ShotPlan(
            **detail.model_dump(),
            role="master" if is_master else "sequential",
        )
        shot.shot_id = shot_id
        if not shot.action_segment:
            shot.action_segment = planned.action_segment
        logger.info("Expanded %s (%s, %d characters)", shot.shot_id, shot.role, len(shot.visual_breakdown.characters))
        return shot

    async def plan(self, script: str, assets: Sequence[Entity]) -> PlanResult:
        """Run stages 1 and 2 and expand the master shot only."""
        if not script or not script.strip():
            raise InputValidationError("A script is required to plan shots")
        scene_context = await self.analyze_scene(script, assets)
        shot_plan = await self.plan_shot_list(script, scene_context, assets)
        master = await self.expand_shot(shot_plan[0], scene_context, assets, total=len(shot_plan))
        return PlanResult(scene_context=scene_context, shot_plan=shot_plan, shots=[master])

    async def plan_all(self, script: str, assets: Sequence[Entity]) -> PlanResult:
        """Run every stage, expanding shots strictly one after another."""
        result = await self.plan(script, assets)
        for planned in result.shot_plan[1:]:
            shot = await self.expand_shot(
                planned,
                result.scene_context,
                assets,
                total=len(result.shot_plan),
                previous_shot=result.shots[-1],
            )
            result.shots.append(shot)
        return result

    async def analyze_custom_shot(self, description: str, assets: Sequence[Entity]) -> ShotPlan:
        if not description or not description.strip():
            raise InputValidationError("A shot description is required")
        shot_id = new_id("custom")
        prompt = prompts.CUSTOM_SHOT_TEMPLATE.format(
            description=description,
            asset_table=prompts.format_asset_table(assets),
            shot_id=shot_id,
        )
        detail = await self.text_client.generate_structured(prompt, ShotDetail, model=self.model)
        shot = ShotPlan(**detail.model_dump(), role="sequential")
        # ids coming back from the model are not trusted to be unique inside a sequence
        shot.shot_id = shot_id
        return shot
