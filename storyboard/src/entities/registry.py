from __future__ import annotations

import logging
import re
from typing import Awaitable, Callable, Iterable, List, Literal, Optional, Sequence, Tuple

from ..errors import InputValidationError
from ..imaging.media import ImageResource, load_image_resource
from ..llm import prompts
from ..llm.client import TextCapability
from ..utils.schema import Entity, EntityIdentification, EntityType, new_id

logger = logging.getLogger(__name__)

Scope = Literal["local", "global"]
ImageLoader = Callable[[str], Awaitable[Optional[ImageResource]]]

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")
_TAG_RE = re.compile(r"^\s*\[?\s*image\s*[-_#]?\s*(\d+)\s*\]?\s*$", re.IGNORECASE)


def normalize_name(name: str) -> str:
    return _NON_ALNUM_RE.sub("", (name or "").lower())


def parse_tag(text: Optional[str]) -> Optional[str]:
    """Canonical ``"image N"`` form of a reference tag, or ``None``."""
    if not text:
        return None
    match = _TAG_RE.match(text)
    return f"image {int(match.group(1))}" if match else None


def format_tag(number: int) -> str:
    return f"image {number}"


def _tag_number(tag: str) -> int:
    parsed = parse_tag(tag)
    return int(parsed.split()[1]) if parsed else 0


class EntityRegistry:
    """Snapshot of the global (project) and local (sequence) entity scopes.

    Snapshots are never mutated: every change returns a new registry, so two
    operations working from the same snapshot cannot clobber each other.
    Tag counters are monotonic per scope and only grow, which keeps tags baked
    into earlier shots valid after deletions.
    """

    def __init__(
        self,
        global_entities: Iterable[Entity] = (),
        local_entities: Iterable[Entity] = (),
        global_counter: Optional[int] = None,
        local_counter: Optional[int] = None,
    ) -> None:
        self._global: Tuple[Entity, ...] = tuple(global_entities)
        self._local: Tuple[Entity, ...] = tuple(local_entities)
        self.global_counter = max(global_counter or 0, *(_tag_number(e.ref_tag) for e in self._global), 0)
        local_own = (_tag_number(e.ref_tag) for e in self._local if not e.linked_global_id)
        self.local_counter = max(local_counter or 0, *local_own, 0)

    @property
    def global_entities(self) -> List[Entity]:
        return list(self._global)

    @property
    def local_entities(self) -> List[Entity]:
        return list(self._local)

    @property
    def pool(self) -> List[Entity]:
        return [*self._global, *self._local]

    def _replace(
        self,
        global_entities: Optional[Sequence[Entity]] = None,
        local_entities: Optional[Sequence[Entity]] = None,
        global_counter: Optional[int] = None,
        local_counter: Optional[int] = None,
    ) -> "EntityRegistry":
        return EntityRegistry(
            self._global if global_entities is None else global_entities,
            self._local if local_entities is None else local_entities,
            global_counter=self.global_counter if global_counter is None else global_counter,
            local_counter=self.local_counter if local_counter is None else local_counter,
        )

    def _scopes(self, scope: Scope) -> List[Tuple[Entity, ...]]:
        return [self._local, self._global] if scope == "local" else [self._global]

    def get(self, entity_id: str) -> Optional[Entity]:
        return next((e for e in self.pool if e.id == entity_id), None)

    def find(self, tag_or_name: Optional[str], scope: Scope = "local") -> Optional[Entity]:
        """Locate an entity by reference tag or name.

        Order: tag in local then global scope, exact name in local then
        global scope, finally a normalized (case and punctuation blind) name
        match.
        """
        if not tag_or_name:
            return None
        scopes = self._scopes(scope)

        tag = parse_tag(tag_or_name)
        if tag is not None:
            for entities in scopes:
                for entity in entities:
                    if parse_tag(entity.ref_tag) == tag:
                        return entity

        for entities in scopes:
            for entity in entities:
                if entity.name == tag_or_name:
                    return entity

        wanted = normalize_name(tag_or_name)
        if not wanted:
            return None
        for entities in scopes:
            for entity in entities:
                if normalize_name(entity.name) == wanted:
                    return entity
        return None

    def find_global_by_name(self, name: str) -> Optional[Entity]:
        wanted = normalize_name(name)
        return next((e for e in self._global if normalize_name(e.name) == wanted), None)

    async def resolve(
        self,
        tag_or_name: Optional[str],
        scope: Scope = "local",
        loader: Optional[ImageLoader] = None,
    ) -> Optional[ImageResource]:
        entity = self.find(tag_or_name, scope)
        if entity is None or not entity.has_image:
            return None
        load = loader or load_image_resource
        resource = await load(entity.image_data)
        if resource is not None and entity.mime_type and resource.mime_type != entity.mime_type:
            resource = ImageResource(data=resource.data, mime_type=entity.mime_type)
        return resource

    def add_global(self, name: str, type: EntityType = "character", description: str = "") -> Tuple["EntityRegistry", Entity]:
        if self.find_global_by_name(name) is not None:
            raise InputValidationError(f"An asset named {name!r} already exists in the project library")
        number = max(self.global_counter, self.local_counter) + 1
        entity = Entity(id=new_id("global"), ref_tag=format_tag(number), name=name, type=type, description=description)
        return self._replace(global_entities=[*self._global, entity], global_counter=number), entity

    def promote_to_global(self, entity_id: str) -> Tuple["EntityRegistry", Entity]:
        local = next((e for e in self._local if e.id == entity_id), None)
        if local is None:
            raise InputValidationError(f"Local entity {entity_id} not found")
        if self.find_global_by_name(local.name) is not None:
            raise InputValidationError(f"An asset named {local.name!r} already exists in the project library")
        number = max(self.global_counter, self.local_counter) + 1
        promoted = local.model_copy(update={"id": new_id("global"), "ref_tag": format_tag(number), "linked_global_id": None})
        return self._replace(global_entities=[*self._global, promoted], global_counter=number), promoted

    def attach_image(self, entity_id: str, locator: str, mime_type: Optional[str] = None) -> "EntityRegistry":
        if self.get(entity_id) is None:
            raise InputValidationError(f"Entity {entity_id} not found")

        def update(entities: Sequence[Entity]) -> List[Entity]:
            return [
                e.model_copy(update={"image_data": locator, "mime_type": mime_type}) if e.id == entity_id else e
                for e in entities
            ]

        return self._replace(global_entities=update(self._global), local_entities=update(self._local))

    def remove(self, entity_id: str) -> "EntityRegistry":
        return self._replace(
            global_entities=[e for e in self._global if e.id != entity_id],
            local_entities=[e for e in self._local if e.id != entity_id],
        )

    def link(self, global_entity: Entity) -> Entity:
        """Local handle onto a global entity: same tag and image, own id."""
        return global_entity.model_copy(update={"id": new_id("link"), "linked_global_id": global_entity.id})

    async def identify(self, script: str, text_client: TextCapability, model: Optional[str] = None) -> Tuple["EntityRegistry", List[Entity]]:
        """Extract new characters, locations and items from ``script``.

        Names already in the project library are linked instead of duplicated;
        names already present in the local scope are skipped.
        """
        if not script or not script.strip():
            raise InputValidationError("A script is required to identify entities")

        known = [e.name for e in self._global]
        prompt = prompts.IDENTIFY_ENTITIES_TEMPLATE.format(
            known_cast=", ".join(known) if known else "(none)",
            script=script,
        )
        result = await text_client.generate_structured(prompt, EntityIdentification, model=model)

        local_names = {normalize_name(e.name) for e in self._local}
        new_entities: List[Entity] = []
        counter = self.local_counter
        for identified in result.entities:
            normalized = normalize_name(identified.name)
            if not normalized or normalized in local_names:
                continue
            global_match = self.find_global_by_name(identified.name)
            if global_match is not None:
                logger.info("Linking %r to project asset %s (%s)", identified.name, global_match.id, global_match.ref_tag)
                entity = self.link(global_match)
            else:
                # local numbering continues after the global numbering
                counter = max(self.global_counter, counter) + 1
                entity = Entity(
                    id=new_id("scene"),
                    ref_tag=format_tag(counter),
                    name=identified.name,
                    type=identified.type,
                )
            new_entities.append(entity)
            local_names.add(normalized)

        logger.info("Identified %d new entities (%d linked)", len(new_entities), sum(1 for e in new_entities if e.linked_global_id))
        registry = self._replace(local_entities=[*self._local, *new_entities], local_counter=counter)
        return registry, new_entities
