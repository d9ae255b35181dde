from typing import Iterable

from ..utils.schema import Entity

PRIMARY_SYSTEM_PROMPT = """You are a professional film director and cinematographer preparing a technical storyboard.
You break scripts into shots and describe each shot precisely enough for an image model to render it.
Strong requirements:
- Keep character identity CONSTANT across shots: face, outfit, accessories and props stay the same unless the
  action text explicitly changes them.
- Keep spatial blocking CONSTANT: characters keep their place in the set unless the action explicitly moves them.
- Respect the 180-degree rule between consecutive shots.
- Whenever a production asset from the mapping table is visible, write its exact ref tag (e.g. "image 3") in the
  "reference_image" field. Never invent ref tags that are not in the table.

Return only valid JSON matching the requested schema. No Markdown, no commentary."""

# Quoted dialogue is speech, not picture: nothing mentioned only inside quotes is physically present.
DIALOGUE_RULE = """VISIBILITY RULE: Anything mentioned only inside quoted dialogue is NOT physically present in the scene.
Only stage directions and action lines describe what the camera can see. Example: in
  AVA: "I left my gun in the car."
neither the gun nor the car is in the scene."""

IDENTIFY_ENTITIES_TEMPLATE = """Identify all unique characters, locations, and important visible items in this film script.
The following characters are already cast: [{known_cast}].
- DO NOT list characters that are already cast.
- ONLY identify NEW characters, LOCATIONS and key PROPS/ITEMS that are physically present.
- Ensure names match the script exactly (use the sluglines for locations, e.g. "INT. KITCHEN - DAY" -> "Kitchen").

""" + DIALOGUE_RULE + """

Script:
\"\"\"{script}\"\"\""""

SCENE_ANALYSIS_TEMPLATE = """Stage 1: scene pre-analysis.
Read the script and extract what is physically present:
- environment: the set, as the camera sees it
- time_of_day
- characters: for each character, the outfit and the accessories they wear or carry
- persistent_props: props that stay in the scene across shots

""" + DIALOGUE_RULE + """

Production assets (mapping table):
{asset_table}

Script:
\"\"\"{script}\"\"\""""

SHOT_LIST_TEMPLATE = """Stage 2: shot list.
Using the scene context below, break the script into an ordered list of shots following the narrative beats.
Decide the number of shots yourself: one shot per meaningful beat, no filler.
For each shot give: index (1-based), a one-sentence summary, and the literal action_segment text of the script it covers.
The first shot is the MASTER shot: a wide establishing view that anchors the spatial layout for the whole sequence.

Scene context (JSON):
{scene_context_json}

Production assets (mapping table):
{asset_table}

Script:
\"\"\"{script}\"\"\""""

SHOT_DETAIL_TEMPLATE = """Stage 3: shot {index} of {total}: technical breakdown.
Summary: {summary}
Action segment: \"{action_segment}\"

Scene context (JSON, ground truth for outfits, props, environment and time):
{scene_context_json}

Production assets (mapping table):
{asset_table}

{continuity_block}

Produce the full visual_breakdown for this shot:
- scene (environment with reference_image, time, mood, color_palette)
- characters in frame, in order, each with reference_image, position, a stable blocking_id (e.g. "driver_seat"),
  appearance (description, expression), actions and lighting_effect
- objects with reference_image where an asset exists
- framing_composition, camera (lens, settings), lighting
- director_notes: short free text; mention assets only by their ref tag.
Use shot_id "{shot_id}"."""

MASTER_CONTINUITY_BLOCK = """This is the MASTER shot. It defines where everyone and everything sits in the set.
Later shots will be matched against it, so make positions and blocking ids explicit."""

SEQUENTIAL_CONTINUITY_BLOCK = """CONTINUITY: previous shot (JSON):
{previous_shot_json}

Keep outfits, props, time of day, lighting direction and blocking identical to the previous shot unless the
action segment explicitly changes them (e.g. "moves to", "stands up", "takes off").
{anchor_note}"""

ANCHOR_NOTE_TEMPLATE = "Attached images, in order: {labels}. Match faces, wardrobe and spatial layout to them."

CUSTOM_SHOT_TEMPLATE = """You are a cinematic director. Create a technical breakdown for this single, manually described shot.

User description: \"{description}\"

Production assets (mapping table):
{asset_table}

Instructions:
1. Create a detailed visual_breakdown for this one shot.
2. Use the "image N" ref tags from the mapping table in the reference_image fields of characters, objects and the environment.
3. If the description mentions a character, object or location from the table, you MUST use its ref tag.
Use shot_id "{shot_id}"."""

MASTER_REFERENCE_TEXT = (
    "MASTER SHOT REFERENCE [{tag}]: the establishing shot of this sequence. "
    "Preserve its spatial layout, set dressing and lighting direction."
)
PREVIOUS_REFERENCE_TEXT = (
    "PREVIOUS SHOT REFERENCE [{tag}]: the immediately preceding frame. "
    "Keep faces, wardrobe, props and character positions continuous with it."
)
ENVIRONMENT_REFERENCE_TEXT = "ENVIRONMENT REFERENCE [{tag}]: {name}. {description}"
CHARACTER_REFERENCE_TEXT = """CHARACTER IDENTITY [{tag}]: "{name}". Use the attached image for this character's face and build.
FRAME POSITION: {position}
EXPRESSION: {expression}
APPEARANCE: {appearance}
ACTION: {actions}
LIGHTING ON THEM: {lighting}"""
OBJECT_REFERENCE_TEXT = 'OBJECT/ITEM REFERENCE [{tag}]: "{name}". Details: {details}'

SHOT_RENDER_TEMPLATE = """SCENE CONTEXT: "{action_segment}"
SETTING: {environment} ({time})
SHOT TYPE: {shot_type}, {framing}, {perspective}
CAMERA DATA: Lens {focal_length}mm {lens_type}, Aperture {aperture}, Focus {focus}
LIGHTING: {lighting_key}, {lighting_quality}, {color_contrast}
ENVIRONMENT MOOD: {mood}, Palette: {palette}
{characters_without_reference}{director_notes}
FINAL STYLE: Cinematic film still, anamorphic lens, photorealistic, high-end production lighting.
IMPORTANT: Generate exactly one cinematic frame based on the technical breakdown and visual references provided. NO TEXT, LOGOS, OR CAPTIONS."""

EDIT_TEMPLATE = """You are a professional film colorist and VFX supervisor.
TASK: Modify the attached cinematic film still according to the instruction below.

ORIGINAL CONTEXT: {plan_type} - {action_segment}
EDIT INSTRUCTION: {instruction}

MAINTAIN: Keep the character identities, composition, and lens properties unless explicitly told to change them.
RESULT: Output a single cinematic frame. NO TEXT, LOGOS, OR CAPTIONS."""


def format_asset_table(assets: Iterable[Entity]) -> str:
    lines = [f'- {a.name} ({a.type}): USE REF TAG "{a.ref_tag}"' for a in assets]
    return "\n".join(lines) if lines else "(no production assets)"
