from __future__ import annotations

import argparse
import asyncio
import os
from pathlib import Path
from typing import Any, Dict, List

from ..errors import StoryboardError
from ..service import StoryboardService
from ..utils import io as io_utils
from ..utils.logging_setup import configure_logging
from ..utils.schema import ConfigModel, Entity, Sequence


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Plan and render a storyboard from a film script.")
    parser.add_argument("--script", type=Path, required=True, help="Path to the script text file.")
    parser.add_argument("--title", type=str, default="", help="Sequence title.")
    parser.add_argument("--config", type=Path, default=None, help="Path to config YAML (defaults to SB_CONFIG or the bundled one).")
    parser.add_argument("--assets", type=Path, default=None, help="JSON file with the project asset library (list of entities).")
    parser.add_argument("--output", type=Path, default=None, help="Output directory.")
    parser.add_argument("--backend", choices=["openai", "polling"], default=None, help="Image backend (overrides config).")
    parser.add_argument("--skip-render", action="store_true", help="Plan and check continuity only.")
    return parser.parse_args()


async def run(args: argparse.Namespace, config: ConfigModel, logger) -> Dict[str, Any]:
    service = StoryboardService.from_config(config)
    script = io_utils.read_text(args.script)
    global_assets: List[Entity] = []
    if args.assets:
        global_assets = [Entity.model_validate(item) for item in io_utils.load_json(args.assets)]

    registry, new_entities = await service.identify_entities(script, global_assets)
    logger.info("Identified %s", ", ".join(f"{e.name} ({e.type}, {e.ref_tag})" for e in new_entities) or "no new entities")

    plan = await service.plan_all_shots(script, registry.pool)
    sequence = Sequence(title=args.title or args.script.stem, script=script, shots=plan.shots, assets=registry.local_entities)
    sequence = sequence.advance("analyzed")

    issues = service.check_continuity(sequence.shots, registry.pool)
    for issue in issues:
        logger.warning("[%s/%s] %s %s", issue.category, issue.severity, issue.shot_id, issue.message)

    failures: Dict[str, str] = {}
    if not args.skip_render:
        result = await service.render_sequence(sequence, registry)
        sequence, failures = result.sequence, result.failures
        for shot_id, error in failures.items():
            logger.error("Shot %s failed to render: %s", shot_id, error)

    return {
        "created_at": io_utils.timestamp(),
        "title": sequence.title,
        "status": sequence.status,
        "assets": [e.model_dump(mode="json") for e in registry.pool],
        "scene_context": plan.scene_context.model_dump(mode="json"),
        "shot_plan": [p.model_dump(mode="json") for p in plan.shot_plan],
        "shots": [s.model_dump(mode="json") for s in sequence.shots],
        "continuity": [i.model_dump(mode="json") for i in issues],
        "failures": failures,
    }


def main() -> None:
    args = parse_args()
    config = ConfigModel.load(args.config)
    logger = configure_logging(config.logging.get("level"))

    if not os.getenv("OPENAI_API_KEY"):
        logger.warning("OPENAI_API_KEY not set; the OpenAI text and image capabilities will refuse to start.")

    if args.backend:
        config.images.backend = args.backend

    run_id = io_utils.default_run_id(prefix="storyboard")
    output_dir = args.output or Path("outputs") / run_id
    config.media.root_dir = str(output_dir / "media")

    try:
        index_payload = asyncio.run(run(args, config, logger))
    except StoryboardError as exc:
        logger.error("Storyboard generation failed: %s", exc)
        raise SystemExit(1) from exc

    index_path = output_dir / "index.json"
    io_utils.dump_json(index_path, {"run_id": run_id, **index_payload})
    logger.info("Storyboard written to %s", output_dir)
    logger.info("Index file: %s", index_path)


if __name__ == "__main__":
    main()
