"""Reference selection, budgeting and tag remapping for a single shot.

The image model receives at most ``max_references`` images, numbered
``image 1`` .. ``image K`` in the order they are attached. Everything the
prompt text says about references is rewritten to that numbering: a tag whose
image was dropped becomes ``[reference]``, never a number without an image
behind it.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..entities.registry import EntityRegistry, ImageLoader, format_tag, parse_tag
from ..imaging.media import ImageResource, load_image_resource
from ..llm import prompts
from ..utils.schema import Entity, RenderAnchors, ShotPlan

logger = logging.getLogger(__name__)

MAX_REFERENCES = 8

MASTER_TAG = "REF_MASTER"
PREVIOUS_TAG = "REF_PREVIOUS"
PLACEHOLDER = "[reference]"

PRIORITY_MASTER = 100
PRIORITY_PREVIOUS = 98
PRIORITY_CHARACTER = 95
PRIORITY_WORN_OBJECT = 90
PRIORITY_ENVIRONMENT = 80
PRIORITY_OBJECT = 60

WORN_KEYWORDS = (
    "suit", "helmet", "glove", "outfit", "armor", "armour", "clothing", "clothes", "costume",
    "uniform", "jacket", "coat", "dress", "shirt", "vest", "hood", "hat", "cap", "mask",
    "glasses", "goggles", "boots", "shoes", "scarf", "backpack",
)
# compounds such as "wetsuit" or "eyewear" end in these
WORN_SUFFIXES = ("suit", "wear")
_WORN_RE = re.compile(
    r"\b(?:%s)(?:e?s)?\b|\B(?:%s)s?\b" % ("|".join(WORN_KEYWORDS), "|".join(WORN_SUFFIXES)),
    re.IGNORECASE,
)
_TAG_TOKEN_RE = re.compile(
    r"(?P<open>\[\s*)?\b(?:image\s*[-_#]?\s*(?P<num>\d+)|(?P<synthetic>REF_MASTER|REF_PREVIOUS))\b(?P<close>\s*\])?",
    re.IGNORECASE,
)


def is_worn(name: str) -> bool:
    return bool(_WORN_RE.search(name or ""))


def canonical_tag(tag: Optional[str]) -> Optional[str]:
    if not tag:
        return None
    upper = tag.strip().strip("[]").strip().upper()
    if upper in (MASTER_TAG, PREVIOUS_TAG):
        return upper
    return parse_tag(tag)


def rewrite_tags(text: Optional[str], tag_map: Dict[str, str]) -> str:
    """Rewrite every reference tag in ``text`` through ``tag_map`` in one pass.

    Matching is token based (``image 1`` never matches inside ``image 12``).
    Unmapped tags are replaced with the generic placeholder.
    """
    if not text:
        return ""

    def _sub(match: "re.Match[str]") -> str:
        if match.group("num") is not None:
            key = format_tag(int(match.group("num")))
        else:
            key = match.group("synthetic").upper()
        final = tag_map.get(key)
        if final is None:
            return PLACEHOLDER
        return f"{match.group('open') or ''}{final}{match.group('close') or ''}"

    return _TAG_TOKEN_RE.sub(_sub, text)


@dataclass
class ReferenceCandidate:
    kind: str
    priority: int
    order: int
    locator: str
    tags: List[str] = field(default_factory=list)
    entity: Optional[Entity] = None
    targets: List[Tuple[str, int]] = field(default_factory=list)
    image: Optional[ImageResource] = None

    @property
    def key(self) -> str:
        return self.locator


@dataclass
class PromptPart:
    text: str
    image: Optional[ImageResource] = None
    tag: Optional[str] = None


@dataclass
class ResolvedPrompt:
    parts: List[PromptPart]
    tag_map: Dict[str, str]
    dropped: List[str]
    shot: ShotPlan

    @property
    def images(self) -> List[ImageResource]:
        return [p.image for p in self.parts if p.image is not None]

    @property
    def text(self) -> str:
        return "\n".join(p.text for p in self.parts)


class ReferenceResolver:
    def __init__(self, max_references: int = MAX_REFERENCES, loader: Optional[ImageLoader] = None) -> None:
        if not 0 <= max_references <= MAX_REFERENCES:
            raise ValueError(f"max_references must be between 0 and {MAX_REFERENCES}")
        self.max_references = max_references
        self.loader = loader or load_image_resource

    def _lookup(self, registry: EntityRegistry, ref: Optional[str], name: str) -> Optional[Entity]:
        entity = registry.find(ref) if parse_tag(ref) else None
        return entity or registry.find(name)

    def collect(self, shot: ShotPlan, registry: EntityRegistry, anchors: Optional[RenderAnchors] = None) -> Tuple[List[ReferenceCandidate], List[str]]:
        """Candidates in discovery order (master, previous, environment, characters, objects)."""
        anchors = anchors or RenderAnchors()
        candidates: List[ReferenceCandidate] = []
        unresolved: List[str] = []
        breakdown = shot.visual_breakdown

        def add(kind: str, priority: int, locator: Optional[str], tags: List[str], entity=None, target=None) -> None:
            if not locator:
                unresolved.extend(t for t in tags if t)
                return
            candidates.append(
                ReferenceCandidate(
                    kind=kind,
                    priority=priority,
                    order=len(candidates),
                    locator=locator,
                    tags=[t for t in tags if t],
                    entity=entity,
                    targets=[target] if target else [],
                )
            )

        if not shot.is_master and anchors.master_url:
            add("master", PRIORITY_MASTER, anchors.master_url, [MASTER_TAG])
        if anchors.previous_url:
            add("previous", PRIORITY_PREVIOUS, anchors.previous_url, [PREVIOUS_TAG])

        environment = breakdown.scene.environment
        env_ref = environment.original_ref or environment.reference_image
        location = registry.find(env_ref) if parse_tag(env_ref) else None
        if location is None:
            location = next(
                (e for e in registry.pool if e.type == "location" and e.name in shot.relevant_entities),
                None,
            )
        if location is not None or env_ref:
            add(
                "environment",
                PRIORITY_ENVIRONMENT,
                location.image_data if location else None,
                [env_ref, location.ref_tag if location else None],
                entity=location,
                target=("environment", 0),
            )

        for index, character in enumerate(breakdown.characters):
            ref = character.original_ref or character.reference_image
            entity = self._lookup(registry, ref, character.name)
            if entity is None and not ref:
                continue
            add(
                "character",
                PRIORITY_CHARACTER,
                entity.image_data if entity else None,
                [ref, entity.ref_tag if entity else None],
                entity=entity,
                target=("character", index),
            )

        for index, obj in enumerate(breakdown.objects):
            ref = obj.original_ref or obj.reference_image
            entity = self._lookup(registry, ref, obj.name)
            if entity is None and not ref:
                continue
            add(
                "object",
                PRIORITY_WORN_OBJECT if is_worn(obj.name) else PRIORITY_OBJECT,
                entity.image_data if entity else None,
                [ref, entity.ref_tag if entity else None],
                entity=entity,
                target=("object", index),
            )

        return candidates, unresolved

    async def _load(self, candidate: ReferenceCandidate) -> Optional[ImageResource]:
        resource = await self.loader(candidate.locator)
        if resource is not None and candidate.entity is not None and candidate.entity.mime_type:
            resource = ImageResource(data=resource.data, mime_type=candidate.entity.mime_type)
        return resource

    def select(self, candidates: Sequence[ReferenceCandidate]) -> Tuple[List[ReferenceCandidate], List[ReferenceCandidate]]:
        """Priority order (stable on discovery order), duplicates merged, capped."""
        ordered = sorted(candidates, key=lambda c: (-c.priority, c.order))
        unique: List[ReferenceCandidate] = []
        by_key: Dict[str, ReferenceCandidate] = {}
        for candidate in ordered:
            kept = by_key.get(candidate.key)
            if kept is not None:
                kept.tags.extend(t for t in candidate.tags if t not in kept.tags)
                kept.targets.extend(candidate.targets)
                continue
            by_key[candidate.key] = candidate
            unique.append(candidate)
        return unique[: self.max_references], unique[self.max_references:]

    async def resolve(self, shot: ShotPlan, registry: EntityRegistry, anchors: Optional[RenderAnchors] = None) -> ResolvedPrompt:
        candidates, unresolved = self.collect(shot, registry, anchors)

        images = await asyncio.gather(*(self._load(c) for c in candidates))
        loaded: List[ReferenceCandidate] = []
        for candidate, image in zip(candidates, images):
            if image is None:
                logger.warning("Dropping %s reference %s: image could not be loaded", candidate.kind, candidate.tags or candidate.locator)
                unresolved.extend(candidate.tags)
                continue
            candidate.image = image
            loaded.append(candidate)

        survivors, overflow = self.select(loaded)
        if overflow:
            logger.info(
                "Reference budget exceeded for %s: dropping %s",
                shot.shot_id,
                ", ".join(f"{c.kind}:{'/'.join(c.tags) or c.locator[:24]}" for c in overflow),
            )

        tag_map: Dict[str, str] = {}
        for number, candidate in enumerate(survivors, start=1):
            final = format_tag(number)
            for tag in candidate.tags:
                key = canonical_tag(tag)
                if key and key not in tag_map:
                    tag_map[key] = final

        dropped = sorted({t for t in unresolved + [t for c in overflow for t in c.tags] if canonical_tag(t) not in tag_map})
        remapped = self._remap_shot(shot, survivors, tag_map)
        parts = [
            PromptPart(text=self._describe(candidate, format_tag(number), remapped, tag_map), image=candidate.image, tag=format_tag(number))
            for number, candidate in enumerate(survivors, start=1)
        ]
        parts.append(PromptPart(text=self._shot_text(remapped, survivors, tag_map)))

        logger.info("Resolved %d/%d references for %s", len(survivors), len(candidates), shot.shot_id)
        return ResolvedPrompt(parts=parts, tag_map=tag_map, dropped=dropped, shot=remapped)

    def _remap_shot(self, shot: ShotPlan, survivors: Sequence[ReferenceCandidate], tag_map: Dict[str, str]) -> ShotPlan:
        """Copy of ``shot`` with structured reference fields in final numbering.

        ``original_ref`` keeps the pre-remap tag and is only written when empty.
        Prose is left untouched; it is rewritten at prompt assembly time.
        """
        remapped = shot.model_copy(deep=True)
        breakdown = remapped.visual_breakdown
        final_by_target: Dict[Tuple[str, int], str] = {}
        entity_tag_by_target: Dict[Tuple[str, int], str] = {}
        for number, candidate in enumerate(survivors, start=1):
            for target in candidate.targets:
                final_by_target.setdefault(target, format_tag(number))
                if candidate.entity is not None:
                    entity_tag_by_target.setdefault(target, candidate.entity.ref_tag)

        subjects = [(("environment", 0), breakdown.scene.environment)]
        subjects += [(("character", i), c) for i, c in enumerate(breakdown.characters)]
        subjects += [(("object", i), o) for i, o in enumerate(breakdown.objects)]
        for target, subject in subjects:
            if subject.original_ref is None:
                subject.original_ref = subject.reference_image or entity_tag_by_target.get(target)
            final = final_by_target.get(target)
            if final is None:
                final = tag_map.get(canonical_tag(subject.original_ref) or "")
            subject.reference_image = final
        return remapped

    def _describe(self, candidate: ReferenceCandidate, tag: str, shot: ShotPlan, tag_map: Dict[str, str]) -> str:
        rewrite: Callable[[Optional[str]], str] = lambda text: rewrite_tags(text, tag_map)
        breakdown = shot.visual_breakdown
        kind, index = candidate.targets[0] if candidate.targets else (candidate.kind, 0)

        if candidate.kind == "master":
            return prompts.MASTER_REFERENCE_TEXT.format(tag=tag)
        if candidate.kind == "previous":
            return prompts.PREVIOUS_REFERENCE_TEXT.format(tag=tag)
        if kind == "environment":
            entity = candidate.entity
            return prompts.ENVIRONMENT_REFERENCE_TEXT.format(
                tag=tag,
                name=rewrite(entity.name if entity else breakdown.scene.environment.location_type),
                description=rewrite((entity.description if entity else "") or breakdown.scene.environment.description),
            )
        if kind == "character":
            character = breakdown.characters[index]
            return prompts.CHARACTER_REFERENCE_TEXT.format(
                tag=tag,
                name=rewrite(character.name),
                position=rewrite(character.position),
                expression=rewrite(character.appearance.expression),
                appearance=rewrite(character.appearance.description),
                actions=rewrite(character.actions),
                lighting=rewrite(character.lighting_effect),
            )
        obj = breakdown.objects[index]
        return prompts.OBJECT_REFERENCE_TEXT.format(tag=tag, name=rewrite(obj.name), details=rewrite(obj.details))

    def _shot_text(self, shot: ShotPlan, survivors: Sequence[ReferenceCandidate], tag_map: Dict[str, str]) -> str:
        rewrite: Callable[[Optional[str]], str] = lambda text: rewrite_tags(text, tag_map)
        breakdown = shot.visual_breakdown
        described = {t for c in survivors for t in c.targets[:1]}

        extra: List[str] = []
        for index, character in enumerate(breakdown.characters):
            if ("character", index) in described:
                continue
            ref = f" [{character.reference_image}]" if character.reference_image else ""
            extra.append(
                f"CHARACTER{ref}: \"{rewrite(character.name)}\" at {rewrite(character.position)}; "
                f"{rewrite(character.appearance.description)}; {rewrite(character.actions)}"
            )
        for index, obj in enumerate(breakdown.objects):
            if ("object", index) in described:
                continue
            ref = f" [{obj.reference_image}]" if obj.reference_image else ""
            extra.append(f"OBJECT{ref}: \"{rewrite(obj.name)}\". {rewrite(obj.details)}")

        # no free-text field may carry a stale tag
        notes = rewrite(breakdown.director_notes)
        return prompts.SHOT_RENDER_TEMPLATE.format(
            action_segment=rewrite(shot.action_segment),
            environment=rewrite(breakdown.scene.environment.description),
            time=rewrite(breakdown.scene.time),
            shot_type=rewrite(breakdown.framing_composition.shot_type),
            framing=rewrite(breakdown.framing_composition.framing),
            perspective=rewrite(breakdown.framing_composition.perspective),
            focal_length=f"{breakdown.camera.lens.focal_length_mm:g}",
            lens_type=rewrite(breakdown.camera.lens.type),
            aperture=rewrite(breakdown.camera.settings.aperture),
            focus=rewrite(breakdown.camera.settings.focus),
            lighting_key=rewrite(breakdown.lighting.key),
            lighting_quality=rewrite(breakdown.lighting.quality),
            color_contrast=rewrite(breakdown.lighting.color_contrast),
            mood=rewrite(breakdown.scene.mood),
            palette=rewrite(breakdown.scene.color_palette),
            characters_without_reference="".join(f"{line}\n" for line in extra),
            director_notes=f"DIRECTOR NOTES: {notes}\n" if notes else "",
        )
