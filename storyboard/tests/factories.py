"""Shared builders and test doubles for the storyboard test suite."""

import base64
import io
import json
from typing import Any, Callable, Dict, List, Optional

from PIL import Image

from storyboard.src.imaging.client import GeneratedImage
from storyboard.src.llm.client import parse_structured
from storyboard.src.utils.schema import (
    Appearance,
    Camera,
    CameraSettings,
    CharacterShotDetail,
    Entity,
    Environment,
    FramingComposition,
    Lens,
    Lighting,
    ObjectDetail,
    Scene,
    ShotPlan,
    VisualBreakdown,
)

COLORS = [
    "red", "green", "blue", "yellow", "purple", "orange", "white", "black",
    "gray", "pink", "brown", "cyan", "magenta", "navy", "olive", "teal",
]


def png_bytes(color: str = "white", size: int = 8) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (size, size), color=color).save(buffer, format="PNG")
    return buffer.getvalue()


def data_url(color: str = "white") -> str:
    return "data:image/png;base64," + base64.b64encode(png_bytes(color)).decode("ascii")


def character(
    name: str,
    ref: Optional[str] = None,
    position: str = "center of frame",
    appearance: str = "grey coat",
    actions: str = "stands still",
    blocking_id: Optional[str] = None,
) -> CharacterShotDetail:
    return CharacterShotDetail(
        name=name,
        reference_image=ref,
        position=position,
        blocking_id=blocking_id,
        appearance=Appearance(description=appearance, expression="neutral"),
        actions=actions,
        lighting_effect="soft key from the window",
    )


def prop(name: str, ref: Optional[str] = None, details: str = "on the table") -> ObjectDetail:
    return ObjectDetail(name=name, reference_image=ref, details=details)


def make_shot(
    shot_id: str = "shot-01",
    role: str = "master",
    characters: Optional[List[CharacterShotDetail]] = None,
    objects: Optional[List[ObjectDetail]] = None,
    env_ref: Optional[str] = None,
    env_description: str = "A small kitchen with a window",
    time: str = "Day",
    perspective: str = "Eye level",
    action_segment: str = "",
    director_notes: Optional[str] = None,
    relevant_entities: Optional[List[str]] = None,
) -> ShotPlan:
    return ShotPlan(
        shot_id=shot_id,
        role=role,
        plan_type="Medium shot",
        action_segment=action_segment,
        relevant_entities=relevant_entities or [],
        visual_breakdown=VisualBreakdown(
            scene=Scene(
                environment=Environment(location_type="Kitchen", description=env_description, reference_image=env_ref),
                time=time,
                mood="quiet",
                color_palette="warm browns",
            ),
            characters=characters or [],
            objects=objects or [],
            framing_composition=FramingComposition(shot_type="Medium", framing="rule of thirds", perspective=perspective),
            camera=Camera(lens=Lens(focal_length_mm=35, type="spherical prime"), settings=CameraSettings(aperture="f/2.8", focus="on the subject")),
            lighting=Lighting(key="window light", quality="soft", color_contrast="low"),
            director_notes=director_notes,
        ),
    )


def entity(name: str, tag: str, type: str = "character", color: Optional[str] = None, **kwargs: Any) -> Entity:
    return Entity(
        ref_tag=tag,
        name=name,
        type=type,
        image_data=kwargs.pop("image_data", data_url(color) if color else None),
        **kwargs,
    )


def breakdown_payload(shot_id: str = "shot-01", **kwargs: Any) -> Dict[str, Any]:
    """JSON-shaped shot detail, as the text capability would return it."""
    shot = make_shot(shot_id=shot_id, **kwargs)
    return shot.model_dump(mode="json", exclude={"role", "image_url", "loading", "editing"})


class DummyTextClient:
    """Answers structured requests from a queue of payloads per schema name."""

    def __init__(self, responses: Optional[Dict[str, List[Any]]] = None):
        self.responses = {name: list(items) for name, items in (responses or {}).items()}
        self.calls: List[Dict[str, Any]] = []

    async def generate_structured(self, prompt, schema, images=None, model=None):
        self.calls.append({"prompt": prompt, "schema": schema.__name__, "images": list(images or []), "model": model})
        queue = self.responses.get(schema.__name__)
        if not queue:
            raise AssertionError(f"no canned response for {schema.__name__}")
        payload = queue.pop(0)
        if isinstance(payload, Exception):
            raise payload
        return parse_structured(json.dumps(payload), schema)


class DummyImageBackend:
    def __init__(self, fail_when: Optional[Callable[[str], Optional[Exception]]] = None, url: Optional[str] = None):
        self.fail_when = fail_when
        self.url = url
        self.calls: List[Dict[str, Any]] = []

    async def generate_image(self, prompt, images=(), aspect_ratio="16:9"):
        self.calls.append({"prompt": prompt, "images": list(images), "aspect_ratio": aspect_ratio})
        if self.fail_when is not None:
            error = self.fail_when(prompt)
            if error is not None:
                raise error
        if self.url:
            return GeneratedImage(url=self.url)
        return GeneratedImage(data=png_bytes(COLORS[len(self.calls) % len(COLORS)]), mime_type="image/png")
