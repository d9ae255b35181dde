from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from ..entities.registry import EntityRegistry, ImageLoader
from ..errors import CapabilityError, InputValidationError
from ..llm import prompts
from ..references.resolver import ReferenceResolver
from ..utils.schema import RenderAnchors, Sequence, ShotPlan, VisualBreakdown
from .client import GeneratedImage, ImageCapability
from .media import MediaStore

logger = logging.getLogger(__name__)


@dataclass
class RenderResult:
    image_url: str
    shot: ShotPlan


@dataclass
class EditResult:
    image_url: str
    visual_breakdown: VisualBreakdown


@dataclass
class BatchRenderResult:
    sequence: Sequence
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.failures and all(s.image_url for s in self.sequence.shots)


class ShotRenderer:
    """Turns resolved shots into stored images through an image capability."""

    def __init__(
        self,
        backend: ImageCapability,
        store: MediaStore,
        resolver: ReferenceResolver,
        loader: ImageLoader,
        aspect_ratio: str = "16:9",
    ) -> None:
        self.backend = backend
        self.store = store
        self.resolver = resolver
        self.loader = loader
        self.aspect_ratio = aspect_ratio

    def _store(self, key: str, image: GeneratedImage) -> str:
        if image.data:
            return self.store.save(key, image.data, image.mime_type)
        if image.url:
            # hosted results are referenced, not copied
            return image.url
        raise CapabilityError("Image capability returned neither bytes nor a URL", capability="image")

    async def render_shot(
        self,
        shot: ShotPlan,
        registry: EntityRegistry,
        anchors: Optional[RenderAnchors] = None,
        key_prefix: str = "global",
    ) -> RenderResult:
        resolved = await self.resolver.resolve(shot, registry, anchors)
        if resolved.dropped:
            logger.info("Shot %s rendered without references: %s", shot.shot_id, ", ".join(resolved.dropped))

        started = time.monotonic()
        image = await self.backend.generate_image(resolved.text, resolved.images, aspect_ratio=self.aspect_ratio)
        logger.info("Image for %s generated in %.2fs", shot.shot_id, time.monotonic() - started)

        image_url = self._store(f"{key_prefix}_shot_{shot.shot_id}", image)
        rendered = resolved.shot.model_copy(update={"image_url": image_url, "loading": False})
        return RenderResult(image_url=image_url, shot=rendered)

    async def edit_shot(self, image_locator: str, instruction: str, shot: ShotPlan, key_prefix: str = "global") -> EditResult:
        if not instruction or not instruction.strip():
            raise InputValidationError("An edit instruction is required")
        original = await self.loader(image_locator)
        if original is None:
            raise InputValidationError("No original image data provided.")

        prompt = prompts.EDIT_TEMPLATE.format(
            plan_type=shot.plan_type,
            action_segment=shot.action_segment,
            instruction=instruction.strip(),
        )
        image = await self.backend.generate_image(prompt, [original], aspect_ratio=self.aspect_ratio)
        image_url = self._store(f"{key_prefix}_shot_{shot.shot_id}_edit_{int(time.time() * 1000)}", image)

        breakdown = shot.visual_breakdown.model_copy(deep=True)
        note = f"Edit: {instruction.strip()}"
        breakdown.director_notes = f"{breakdown.director_notes}\n{note}" if breakdown.director_notes else note
        logger.info("Edited %s -> %s", shot.shot_id, image_url)
        return EditResult(image_url=image_url, visual_breakdown=breakdown)

    async def render_sequence(
        self,
        sequence: Sequence,
        registry: EntityRegistry,
        progress: Optional[Callable[[int], None]] = None,
    ) -> BatchRenderResult:
        """Render every shot without an image, strictly in order.

        Each shot is anchored on the master image and on the most recent
        rendered image before it. A failing shot is recorded and left
        without an image; later shots still render.
        """
        master = sequence.master_shot()
        master_url = master.image_url if master else None
        previous_url: Optional[str] = None
        failures: Dict[str, str] = {}
        total = len(sequence.shots)

        for position, shot in enumerate(list(sequence.shots), start=1):
            if shot.image_url:
                previous_url = shot.image_url
                if progress:
                    progress(int(position * 100 / total))
                continue

            sequence = sequence.replace_shot(shot.model_copy(update={"loading": True}))
            is_master = master is not None and shot.shot_id == master.shot_id
            anchors = RenderAnchors(master_url=None if is_master else master_url, previous_url=previous_url)
            try:
                result = await self.render_shot(shot, registry, anchors, key_prefix=sequence.id)
            except Exception as exc:
                logger.warning("Rendering %s failed: %s", shot.shot_id, exc)
                failures[shot.shot_id] = str(exc) or type(exc).__name__
                sequence = sequence.replace_shot(shot.model_copy(update={"loading": False, "image_url": None}))
            else:
                sequence = sequence.replace_shot(result.shot)
                previous_url = result.image_url
                if is_master:
                    master_url = result.image_url
            if progress:
                progress(int(position * 100 / total))

        # a draft sequence has no analysis yet and stays draft
        if sequence.status != "draft" and sequence.shots and all(s.image_url for s in sequence.shots):
            sequence = sequence.advance("storyboarded")
        logger.info("Rendered sequence %s: %d shots, %d failed", sequence.id, total, len(failures))
        return BatchRenderResult(sequence=sequence, failures=failures)
