import asyncio
import base64
import functools
import json
from types import SimpleNamespace

import httpx
import openai
import pytest

from storyboard.src.entities.registry import EntityRegistry
from storyboard.src.errors import CapabilityError, GenerationTimeoutError, InputValidationError, SafetyRejectionError
from storyboard.src.imaging.client import OpenAIImageBackend, PollingImageBackend
from storyboard.src.imaging.media import ImageResource, LocalMediaStore, load_image_resource
from storyboard.src.imaging.renderer import ShotRenderer
from storyboard.src.references.resolver import ReferenceResolver
from storyboard.src.utils.schema import Sequence
from storyboard.tests.factories import DummyImageBackend, character, entity, make_shot, png_bytes


def renderer_for(tmp_path, backend):
    store = LocalMediaStore(tmp_path / "media")
    loader = functools.partial(load_image_resource, store=store)
    return ShotRenderer(backend, store, ReferenceResolver(loader=loader), loader), store


REGISTRY = EntityRegistry(local_entities=[entity("Ava", "image 1", color="red")])


def test_render_shot_stores_image_and_remaps_tags(tmp_path):
    backend = DummyImageBackend()
    renderer, store = renderer_for(tmp_path, backend)
    shot = make_shot(characters=[character("Ava", ref="image 1")], director_notes="image 1 pours coffee.")

    result = asyncio.run(renderer.render_shot(shot, REGISTRY, key_prefix="seq-1"))

    assert result.image_url == "/media/seq-1_shot_shot-01.png"
    assert store.get(result.image_url) is not None
    assert result.shot.image_url == result.image_url
    assert result.shot.loading is False
    assert result.shot.visual_breakdown.characters[0].original_ref == "image 1"
    call = backend.calls[0]
    assert [img.data for img in call["images"]] == [png_bytes("red")]
    assert "image 1 pours coffee." in call["prompt"]
    assert call["aspect_ratio"] == "16:9"


def test_hosted_results_are_referenced(tmp_path):
    renderer, _ = renderer_for(tmp_path, DummyImageBackend(url="https://cdn.example.com/frame.png"))

    result = asyncio.run(renderer.render_shot(make_shot(), EntityRegistry()))

    assert result.image_url == "https://cdn.example.com/frame.png"
    assert not list((tmp_path / "media").iterdir())


def test_edit_shot_appends_note(tmp_path):
    backend = DummyImageBackend()
    renderer, store = renderer_for(tmp_path, backend)
    original = store.save("seq-1_shot_shot-01", png_bytes("blue"))
    shot = make_shot(director_notes="Keep it quiet.", action_segment="Ava pours coffee.")

    result = asyncio.run(renderer.edit_shot(original, "  make it night ", shot, key_prefix="seq-1"))

    assert result.image_url != original
    assert result.visual_breakdown.director_notes == "Keep it quiet.\nEdit: make it night"
    assert shot.visual_breakdown.director_notes == "Keep it quiet."
    assert [img.data for img in backend.calls[0]["images"]] == [png_bytes("blue")]
    assert "EDIT INSTRUCTION: make it night" in backend.calls[0]["prompt"]


def test_edit_shot_rejects_missing_inputs(tmp_path):
    renderer, store = renderer_for(tmp_path, DummyImageBackend())
    original = store.save("frame", png_bytes())

    with pytest.raises(InputValidationError):
        asyncio.run(renderer.edit_shot(original, "   ", make_shot()))
    with pytest.raises(InputValidationError):
        asyncio.run(renderer.edit_shot("/media/missing.png", "brighter", make_shot()))


def test_render_sequence_isolates_failures(tmp_path):
    def fail_on_kettle(prompt):
        return CapabilityError("service down", capability="image") if "kettle" in prompt else None

    backend = DummyImageBackend(fail_when=fail_on_kettle)
    renderer, _ = renderer_for(tmp_path, backend)
    sequence = Sequence(
        id="seq-1",
        status="analyzed",
        shots=[
            make_shot("shot-01", "master", action_segment="Ava enters."),
            make_shot("shot-02", "sequential", action_segment="Ava sits."),
            make_shot("shot-03", "sequential", action_segment="The kettle whistles."),
            make_shot("shot-04", "sequential", action_segment="Ava leaves."),
        ],
    )
    reported = []

    result = asyncio.run(renderer.render_sequence(sequence, EntityRegistry(), progress=reported.append))

    assert result.failures == {"shot-03": "service down"}
    assert not result.complete
    assert result.sequence.status == "analyzed"
    assert [bool(s.image_url) for s in result.sequence.shots] == [True, True, False, True]
    assert not any(s.loading for s in result.sequence.shots)
    assert reported == [25, 50, 75, 100]
    # the master shot renders without anchors; the last shot sees master and shot-02
    assert backend.calls[0]["images"] == []
    assert len(backend.calls[3]["images"]) == 2
    assert sequence.shots[0].image_url is None


def test_render_sequence_skips_rendered_shots_and_completes(tmp_path):
    backend = DummyImageBackend()
    renderer, store = renderer_for(tmp_path, backend)
    master_url = store.save("seq-1_shot_shot-01", png_bytes("white"))
    sequence = Sequence(
        id="seq-1",
        status="analyzed",
        shots=[
            make_shot("shot-01", "master").model_copy(update={"image_url": master_url}),
            make_shot("shot-02", "sequential"),
        ],
    )

    result = asyncio.run(renderer.render_sequence(sequence, EntityRegistry()))

    assert result.complete
    assert result.sequence.status == "storyboarded"
    assert len(backend.calls) == 1
    assert [img.data for img in backend.calls[0]["images"]] == [png_bytes("white")]


def polling_backend(handler, **kwargs):
    return PollingImageBackend(
        "https://images.example.com/",
        api_key="secret",
        poll_interval=0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def test_polling_backend_returns_hosted_url():
    seen = []

    def handler(request):
        seen.append(request)
        if request.url.path == "/generate":
            return httpx.Response(200, json={"job_id": "job-7"})
        if len(seen) < 4:
            return httpx.Response(200, json={"status": "processing"})
        return httpx.Response(200, json={"status": "completed", "result": "https://cdn.example.com/job-7.png"})

    backend = polling_backend(handler)

    image = asyncio.run(backend.generate_image("a kitchen", aspect_ratio="9:16"))

    assert image.url == "https://cdn.example.com/job-7.png"
    payload = json.loads(seen[0].content)
    assert (payload["width"], payload["height"]) == (576, 1024)
    assert seen[0].headers["Authorization"] == "Bearer secret"
    assert seen[-1].url.path == "/jobs/job-7"


def test_polling_backend_decodes_base64_results():
    encoded = base64.b64encode(png_bytes("green")).decode("ascii")

    def handler(request):
        if request.url.path == "/generate":
            return httpx.Response(200, json={"id": "job-8"})
        return httpx.Response(200, json={"status": "completed", "data": [{"url": f"data:image/png;base64,{encoded}"}]})

    image = asyncio.run(polling_backend(handler).generate_image("a kitchen"))

    assert image.data == png_bytes("green")
    assert image.mime_type == "image/png"


def test_polling_backend_reports_failed_jobs():
    def handler(request):
        if request.url.path == "/generate":
            return httpx.Response(200, json={"job_id": "job-9"})
        return httpx.Response(200, json={"status": "failed", "error": "out of memory"})

    with pytest.raises(CapabilityError, match="out of memory"):
        asyncio.run(polling_backend(handler).generate_image("a kitchen"))


def test_polling_backend_rejected_submission():
    def handler(request):
        return httpx.Response(503, text="busy")

    with pytest.raises(CapabilityError):
        asyncio.run(polling_backend(handler).generate_image("a kitchen"))


def test_polling_backend_times_out_after_bounded_attempts():
    polls = []

    def handler(request):
        if request.url.path == "/generate":
            return httpx.Response(200, json={"job_id": "job-10"})
        polls.append(request)
        if len(polls) % 2:
            return httpx.Response(500)
        return httpx.Response(200, json={"status": "processing"})

    with pytest.raises(GenerationTimeoutError) as info:
        asyncio.run(polling_backend(handler, max_attempts=5).generate_image("a kitchen"))

    assert len(polls) == 5
    assert info.value.attempts == 5


class FakeImages:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    async def generate(self, **kwargs):
        self.calls.append(("generate", kwargs))
        return self._answer()

    async def edit(self, **kwargs):
        self.calls.append(("edit", kwargs))
        return self._answer()

    def _answer(self):
        if self.error is not None:
            raise self.error
        return self.response


def openai_backend(images):
    return OpenAIImageBackend(model="image-model", client=SimpleNamespace(images=images))


def test_openai_backend_uses_edit_when_references_are_attached():
    encoded = base64.b64encode(png_bytes("olive")).decode("ascii")
    images = FakeImages(SimpleNamespace(data=[SimpleNamespace(b64_json=encoded, url=None)]))
    reference = ImageResource(png_bytes("red"))

    with_refs = asyncio.run(openai_backend(images).generate_image("a kitchen", [reference]))
    plain = asyncio.run(openai_backend(images).generate_image("a kitchen", aspect_ratio="1:1"))

    assert with_refs.data == png_bytes("olive")
    assert plain.mime_type == "image/png"
    (first_kind, first_kwargs), (second_kind, second_kwargs) = images.calls
    assert first_kind == "edit"
    assert first_kwargs["image"] == [("reference_1.png", png_bytes("red"), "image/png")]
    assert first_kwargs["size"] == "1536x1024"
    assert (second_kind, second_kwargs["size"]) == ("generate", "1024x1024")


def test_openai_backend_maps_moderation_to_safety_rejection():
    request = httpx.Request("POST", "https://api.openai.com/v1/images/generations")
    blocked = openai.BadRequestError(
        "blocked",
        response=httpx.Response(400, request=request),
        body={"code": "moderation_blocked", "message": "blocked"},
    )

    with pytest.raises(SafetyRejectionError):
        asyncio.run(openai_backend(FakeImages(error=blocked)).generate_image("a kitchen"))
    with pytest.raises(CapabilityError):
        asyncio.run(openai_backend(FakeImages(SimpleNamespace(data=[]))).generate_image("a kitchen"))
