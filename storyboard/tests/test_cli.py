import argparse
import asyncio
import logging

from storyboard.src.cli import generate_storyboard
from storyboard.src.imaging.media import LocalMediaStore
from storyboard.src.service import StoryboardService
from storyboard.src.utils.schema import ConfigModel
from storyboard.tests.factories import DummyImageBackend, DummyTextClient, breakdown_payload, character


def test_run_plans_checks_and_renders(tmp_path, monkeypatch):
    script_path = tmp_path / "kitchen.txt"
    script_path.write_text("INT. KITCHEN - DAY\nAva pours coffee. Ava sits.", encoding="utf-8")
    text_client = DummyTextClient(
        {
            "EntityIdentification": [{"entities": [{"name": "Ava", "type": "character"}]}],
            "SceneContext": [
                {"environment": "Kitchen", "time_of_day": "Day", "characters": [], "persistent_props": []}
            ],
            "ShotListPlan": [
                {
                    "shots": [
                        {"index": 1, "summary": "Ava pours", "action_segment": "Ava pours coffee."},
                        {"index": 2, "summary": "Ava sits", "action_segment": "Ava sits."},
                    ]
                }
            ],
            "ShotDetail": [
                breakdown_payload("shot-01", characters=[character("Ava", appearance="red coat")]),
                breakdown_payload("shot-02", characters=[character("Ava", appearance="blue coat")]),
            ],
        }
    )
    backend = DummyImageBackend()
    config = ConfigModel()
    service = StoryboardService(text_client, backend, LocalMediaStore(tmp_path / "media"), config)
    monkeypatch.setattr(StoryboardService, "from_config", classmethod(lambda cls, config=None: service))
    args = argparse.Namespace(script=script_path, title="", assets=None, skip_render=False)

    payload = asyncio.run(generate_storyboard.run(args, config, logging.getLogger("test")))

    assert payload["title"] == "kitchen"
    assert payload["status"] == "storyboarded"
    assert [a["ref_tag"] for a in payload["assets"]] == ["image 1"]
    assert [s["role"] for s in payload["shots"]] == ["master", "sequential"]
    assert all(s["image_url"] for s in payload["shots"])
    assert [i["category"] for i in payload["continuity"] if i["severity"] == "error"] == ["outfit"]
    assert len(backend.calls) == 2
