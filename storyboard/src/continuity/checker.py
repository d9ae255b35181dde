"""Rule-based continuity checks across an ordered list of shots.

Every rule is a keyword heuristic and every issue is advisory: nothing here
blocks rendering. ``check_sequence_continuity`` is a pure function of its
inputs, so issue ids are derived from shot ids and character names only.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Sequence, Set, Tuple

from ..errors import InputValidationError
from ..utils.schema import CharacterShotDetail, ContinuityIssue, Entity, FixData, ShotPlan

logger = logging.getLogger(__name__)

MOVEMENT_KEYWORDS = (
    "moves to",
    "switches seat",
    "gets out",
    "walks to",
    "changes position",
    "slides over",
    "stands up",
)
PROP_KEYWORDS = ("helmet", "glasses", "hat", "mask", "backpack", "bag", "jacket")
REMOVAL_KEYWORDS = (
    "remove", "removes", "removed", "take off", "takes off", "took off",
    "drop", "drops", "dropped", "lose", "loses", "lost", "leaves",
)
AXIS_KEYWORDS = ("side", "profile")


def _word_re(word: str) -> "re.Pattern[str]":
    return re.compile(r"\b%s(?:e?s)?\b" % re.escape(word), re.IGNORECASE)


def _any_word_re(phrases: Sequence[str]) -> "re.Pattern[str]":
    return re.compile(r"\b(?:%s)\b" % "|".join(re.escape(p) for p in phrases), re.IGNORECASE)


_PROP_RES = {prop: _word_re(prop) for prop in PROP_KEYWORDS}
_NEGATED_PROP_RES = {prop: re.compile(r"\b(?:no|without)\s+%s" % re.escape(prop), re.IGNORECASE) for prop in PROP_KEYWORDS}
_REMOVAL_RE = _any_word_re(REMOVAL_KEYWORDS)
_AXIS_RE = _any_word_re(AXIS_KEYWORDS)


def _character_text(character: CharacterShotDetail) -> str:
    return f"{character.appearance.description} {character.actions}".lower()


def _mentions_movement(shot: ShotPlan, character: CharacterShotDetail) -> bool:
    text = f"{_character_text(character)} {shot.action_segment}".lower()
    return any(keyword in text for keyword in MOVEMENT_KEYWORDS)


def _props_in(shot: ShotPlan, character: CharacterShotDetail) -> Set[str]:
    text = _character_text(character)
    props = {
        prop
        for prop, pattern in _PROP_RES.items()
        if pattern.search(text) and not _NEGATED_PROP_RES[prop].search(text)
    }
    for obj in shot.visual_breakdown.objects:
        props.update(prop for prop, pattern in _PROP_RES.items() if pattern.search(obj.name))
    return props


def _mentions_removal(shot: ShotPlan, character: CharacterShotDetail, prop: str) -> bool:
    text = f"{_character_text(character)} {shot.action_segment}".lower()
    return bool(_REMOVAL_RE.search(text)) or f"{prop} off" in text


def _is_axis_perspective(perspective: str) -> bool:
    return bool(_AXIS_RE.search(perspective))


def _check_time(shots: Sequence[ShotPlan]) -> List[ContinuityIssue]:
    issues: List[ContinuityIssue] = []
    base_time = shots[0].visual_breakdown.scene.time
    for shot in shots[1:]:
        current = shot.visual_breakdown.scene.time
        if current == base_time:
            continue
        issues.append(
            ContinuityIssue(
                id=f"time-mismatch-{shot.shot_id}",
                shot_id=shot.shot_id,
                category="time",
                severity="warning",
                message=f'Time of day mismatch. Expected "{base_time}", found "{current}".',
                evidence=f"Shot 1 is {base_time}, but this shot is {current}",
                suggested_fix=f"Update scene time to {base_time} for consistency.",
                fix_data=FixData(field="scene.time", value=base_time),
            )
        )
    return issues


def _check_location(shots: Sequence[ShotPlan]) -> List[ContinuityIssue]:
    issues: List[ContinuityIssue] = []
    base_location = shots[0].visual_breakdown.scene.environment.description
    for shot in shots[1:]:
        current = shot.visual_breakdown.scene.environment.description
        if current == base_location:
            continue
        issues.append(
            ContinuityIssue(
                id=f"loc-mismatch-{shot.shot_id}",
                shot_id=shot.shot_id,
                category="location",
                severity="info",
                message="Location variation detected within sequence.",
                evidence=f'Primary location: "{base_location[:30]}...". Current: "{current[:30]}..."',
            )
        )
    return issues


def _check_outfits(shots: Sequence[ShotPlan]) -> List[ContinuityIssue]:
    issues: List[ContinuityIssue] = []
    last_outfit: Dict[str, str] = {}
    for shot in shots:
        for character in shot.visual_breakdown.characters:
            current = character.appearance.description
            previous = last_outfit.get(character.name)
            if previous and previous != current:
                issues.append(
                    ContinuityIssue(
                        id=f"outfit-mismatch-{shot.shot_id}-{character.name}",
                        shot_id=shot.shot_id,
                        category="outfit",
                        severity="error",
                        message=f"Outfit mismatch for {character.name}.",
                        evidence=f'Previously: "{previous}". Now: "{current}"',
                        suggested_fix="Standardize outfit description to match previous appearance.",
                        fix_data=FixData(
                            field="characters.appearance.description", value=previous, char_name=character.name
                        ),
                    )
                )
            last_outfit[character.name] = current
    return issues


def _check_blocking(shots: Sequence[ShotPlan]) -> List[ContinuityIssue]:
    issues: List[ContinuityIssue] = []
    last_position: Dict[str, str] = {}
    last_blocking: Dict[str, str] = {}
    for shot in shots:
        for character in shot.visual_breakdown.characters:
            name = character.name
            blocking_id = (character.blocking_id or "").strip()
            previous_blocking = last_blocking.get(name)

            if previous_blocking and blocking_id and previous_blocking != blocking_id:
                issues.append(
                    ContinuityIssue(
                        id=f"blocking-id-mismatch-{shot.shot_id}-{name}",
                        shot_id=shot.shot_id,
                        category="other",
                        severity="error",
                        message=f"Blocking ID mismatch for {name}.",
                        evidence=f'Previously: "{previous_blocking}". Now: "{blocking_id}"',
                        suggested_fix=f'Keep {name} blocking_id as "{previous_blocking}" for continuity.',
                        fix_data=FixData(field="characters.blocking_id", value=previous_blocking, char_name=name),
                    )
                )
            if previous_blocking and not blocking_id:
                issues.append(
                    ContinuityIssue(
                        id=f"blocking-id-missing-{shot.shot_id}-{name}",
                        shot_id=shot.shot_id,
                        category="other",
                        severity="warning",
                        message=f"Missing blocking_id for {name}.",
                        evidence=f'Previous shots used blocking_id "{previous_blocking}" but this shot has none.',
                        suggested_fix=f'Set blocking_id to "{previous_blocking}".',
                        fix_data=FixData(field="characters.blocking_id", value=previous_blocking, char_name=name),
                    )
                )

            position = (character.position or "").strip()
            if not position:
                continue
            previous_position = last_position.get(name)
            if previous_position and previous_position != position and not _mentions_movement(shot, character):
                issues.append(
                    ContinuityIssue(
                        id=f"position-mismatch-{shot.shot_id}-{name}",
                        shot_id=shot.shot_id,
                        category="other",
                        severity="error",
                        message=f"Position mismatch for {name}.",
                        evidence=f'Previously: "{previous_position}". Now: "{position}"',
                        suggested_fix=f'Keep {name} at "{previous_position}" unless script/action explicitly states movement.',
                        fix_data=FixData(field="characters.position", value=previous_position, char_name=name),
                    )
                )
            if blocking_id:
                last_blocking[name] = blocking_id
            last_position[name] = position
    return issues


def _check_axis(shots: Sequence[ShotPlan]) -> List[ContinuityIssue]:
    issues: List[ContinuityIssue] = []
    for previous_shot, shot in zip(shots, shots[1:]):
        previous = previous_shot.visual_breakdown.framing_composition.perspective
        current = shot.visual_breakdown.framing_composition.perspective
        if previous and current and previous != current and _is_axis_perspective(previous) and _is_axis_perspective(current):
            issues.append(
                ContinuityIssue(
                    id=f"axis-warning-{shot.shot_id}",
                    shot_id=shot.shot_id,
                    category="camera",
                    severity="warning",
                    message=f"Potential axis crossing. Perspective shifted from {previous} to {current}.",
                    evidence="Consecutive side-angle shifts can be disorienting.",
                )
            )
    return issues


def _check_props(shots: Sequence[ShotPlan]) -> List[ContinuityIssue]:
    issues: List[ContinuityIssue] = []
    last_props: Dict[str, Set[str]] = {}
    for shot in shots:
        for character in shot.visual_breakdown.characters:
            current = _props_in(shot, character)
            for prop in sorted(last_props.get(character.name, set()) - current):
                if _mentions_removal(shot, character, prop):
                    continue
                issues.append(
                    ContinuityIssue(
                        id=f"prop-lost-{shot.shot_id}-{character.name}-{prop}",
                        shot_id=shot.shot_id,
                        category="outfit",
                        severity="warning",
                        message=f"{character.name} is missing {prop}.",
                        evidence=f"{prop.capitalize()} was seen in previous shots but is missing here without a removal action.",
                        suggested_fix=f'Add "{prop}" to {character.name}\'s appearance description.',
                        fix_data=FixData(
                            field="characters.appearance.description",
                            value=f"{character.appearance.description}, wearing {prop}",
                            char_name=character.name,
                        ),
                    )
                )
            last_props[character.name] = current
    return issues


RULES = (_check_time, _check_location, _check_outfits, _check_blocking, _check_axis, _check_props)


def check_sequence_continuity(shots: Sequence[ShotPlan], assets: Sequence[Entity] = ()) -> List[ContinuityIssue]:
    """Evaluate every rule independently over ``shots`` in order.

    ``assets`` is accepted for parity with the rest of the pipeline; the
    current rules only read shot breakdowns.
    """
    if len(shots) < 2:
        return []
    issues: List[ContinuityIssue] = []
    for rule in RULES:
        issues.extend(rule(shots))
    logger.info("Continuity check over %d shots found %d issue(s)", len(shots), len(issues))
    return issues


def _set_path(target: Any, path: List[str], value: Any) -> None:
    for part in path[:-1]:
        target = getattr(target, part, None)
        if target is None:
            raise InputValidationError(f"Unknown field path segment: {part}")
    if not hasattr(target, path[-1]):
        raise InputValidationError(f"Unknown field: {path[-1]}")
    setattr(target, path[-1], value)


def apply_fix(shots: Sequence[ShotPlan], issue: ContinuityIssue) -> Tuple[List[ShotPlan], ContinuityIssue]:
    """Apply ``issue.fix_data`` to the targeted shot's visual breakdown.

    Returns a new shot list (only the targeted shot is copied and changed)
    and the issue marked resolved. The shot image is left as it is.
    """
    fix = issue.fix_data
    if fix is None:
        raise InputValidationError(f"Issue {issue.id} has no mechanical fix")
    if fix.type != "update-field":
        raise InputValidationError(f"Unsupported fix type: {fix.type}")

    index = next((i for i, s in enumerate(shots) if s.shot_id == issue.shot_id), None)
    if index is None:
        raise InputValidationError(f"Shot {issue.shot_id} not found")

    updated = shots[index].model_copy(deep=True)
    breakdown = updated.visual_breakdown
    path = fix.field.split(".")
    if path[0] == "characters":
        targets = [c for c in breakdown.characters if fix.char_name is None or c.name == fix.char_name]
        if not targets:
            raise InputValidationError(f"Character {fix.char_name} not found in shot {issue.shot_id}")
        for character in targets:
            _set_path(character, path[1:], fix.value)
    else:
        _set_path(breakdown, path, fix.value)

    new_shots = list(shots)
    new_shots[index] = updated
    logger.info("Applied fix for %s on %s (%s)", issue.id, issue.shot_id, fix.field)
    return new_shots, issue.model_copy(update={"resolved": True})


def dismiss_issue(issue: ContinuityIssue) -> ContinuityIssue:
    return issue.model_copy(update={"resolved": True})
