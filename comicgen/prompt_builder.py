"""
Comicgen - Prompt Builder.

Pure functions, no I/O. Turns a ComicRequest into:
- a story brief (title, synopsis, theme, per-panel scene beats)
- a deterministic fallback brief for when the LLM is unavailable
- the prompt text sent to the story LLM and the dialogue LLM
- the final image prompt for each panel
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Optional

from comicgen.errors import ConfigError
from comicgen.layouts import MAX_PAGES, MIN_PAGES, layout_for
from comicgen.models import ComicRequest, Project

logger = logging.getLogger(__name__)

GENRES = [
    "adventure", "fantasy", "sci-fi", "mystery", "horror", "comedy",
    "drama", "action", "romance", "superhero", "noir", "western",
]

STYLES = [
    "cinematic", "anime", "manga", "western", "realistic", "cartoon",
    "noir", "fantasy", "sci-fi", "horror", "watercolor", "sketch",
]

AUDIENCES = ["children", "teen", "young-adult", "adult", "general", "family"]

# Shot for each panel position, cycled for long comics
CAMERA_ANGLES = [
    "establishing-shot", "medium-shot", "close-up", "two-shot",
    "over-shoulder", "low-angle", "high-angle", "dutch-angle",
    "medium-shot", "close-up", "wide-shot", "bird-eye-view",
    "low-angle", "wide-shot",
]

FIXED_PROMPT_ELEMENTS = ["comic book style", "high quality", "detailed", "no text"]

# Story arc beats, spread over the panels after the cover
STORY_BEATS = [
    "setup: introduce the characters and the world",
    "mystery: something is not what it seems",
    "conflict: the problem becomes personal",
    "discovery: a hidden truth is revealed",
    "climax: the decisive confrontation",
    "resolution: the quiet aftermath",
]


@dataclass
class Scene:
    page: int
    panel: int
    description: str
    mood: str = "neutral"
    characters: list[str] = field(default_factory=list)


@dataclass
class StoryBrief:
    title: str
    synopsis: str
    theme: str
    scenes: list[Scene] = field(default_factory=list)
    character_notes: str = ""
    visual_style: str = ""
    characters: list[dict] = field(default_factory=list)   # [{"name", "description"}]


# ============================================================
# Validation
# ============================================================

def validate_request(request: ComicRequest):
    """Fail fast on requests no stage can use. Unknown vocabulary only warns."""
    if not isinstance(request.prompt, str) or not request.prompt.strip():
        raise ConfigError("prompt is required")

    if isinstance(request.page_count, bool) or not isinstance(request.page_count, int):
        raise ConfigError(f"pageCount must be an integer, got {request.page_count!r}")
    if not MIN_PAGES <= request.page_count <= MAX_PAGES:
        raise ConfigError(
            f"pageCount must be between {MIN_PAGES} and {MAX_PAGES}, got {request.page_count}"
        )

    if request.genre not in GENRES:
        logger.warning(f"Unknown genre '{request.genre}' - using it as free text")
    if request.art_style not in STYLES:
        logger.warning(f"Unknown art style '{request.art_style}' - using it as free text")
    if request.target_audience not in AUDIENCES:
        logger.warning(f"Unknown target audience '{request.target_audience}'")


# ============================================================
# Briefs
# ============================================================

def camera_angle_for(index: int) -> str:
    return CAMERA_ANGLES[index % len(CAMERA_ANGLES)]


def beat_for(position: int, total: int) -> str:
    """Map a non-cover panel position (0-based) onto the story arc."""
    if total <= 1:
        return STORY_BEATS[-1]
    return STORY_BEATS[round(position * (len(STORY_BEATS) - 1) / (total - 1))]


def build_brief(request: ComicRequest) -> StoryBrief:
    """Skeleton handed to the story LLM: one scene beat per layout slot."""
    layout = layout_for(request.page_count)
    panel_ids = layout.panel_ids
    story_panels = len(panel_ids) - 1

    scenes = []
    for i, panel_id in enumerate(panel_ids):
        page, _ = layout.slot_for(panel_id)
        if i == 0:
            description = f"Cover image: the central image of the story - {request.prompt}"
        else:
            description = f"{beat_for(i - 1, story_panels)} ({request.prompt})"
        scenes.append(Scene(page=page, panel=i + 1, description=description))

    return StoryBrief(
        title="",
        synopsis=request.prompt.strip(),
        theme=f"{request.genre} story told in a {request.tone} tone",
        scenes=scenes,
        visual_style=f"{request.art_style} comic art style",
    )


def fallback_brief(request: ComicRequest) -> StoryBrief:
    """Deterministic story used when the LLM fails: page_count x ceil(6/page_count) scenes."""
    per_page = math.ceil(6 / request.page_count)
    scenes = []
    for page in range(1, request.page_count + 1):
        for panel in range(1, per_page + 1):
            scenes.append(Scene(
                page=page,
                panel=panel,
                description=f"Scene based on: {request.prompt}",
                characters=["Main Character"],
            ))

    return StoryBrief(
        title="Generated Story",
        synopsis=f"A story based on: {request.prompt}",
        theme="Adventure and discovery",
        scenes=scenes,
        character_notes="Characters will be developed based on the story needs",
        visual_style=f"{request.art_style} comic art style",
    )


# ============================================================
# LLM prompts
# ============================================================

STORY_PROMPT = """You are a professional comic book writer and storyboard artist. Create a detailed story structure based on the user's prompt.

USER PROMPT: "{prompt}"

REQUIREMENTS:
- Genre: {genre}
- Tone: {tone}
- Art Style: {style}
- Pages: {pages}
- Target Audience: {audience}
- Exactly {panel_count} scenes, one per panel, in reading order

PANEL PLAN:
{plan}

Scene 1 is the COVER: a single striking image that sets up the whole story.
Every scene description must be self-contained and visual: who is in frame,
what they are doing, the setting, lighting and mood. The image generator has
no memory, so describe recurring characters with the same physical traits
every time.

Return ONLY valid JSON, no markdown fences, no commentary:

{{
  "title": "Story Title (3-5 words)",
  "synopsis": "Brief story summary",
  "theme": "Main theme or message",
  "scenes": [
    {{
      "page": 1,
      "panel": 1,
      "description": "Detailed visual scene description",
      "mood": "tense/action/comedy/etc",
      "characters": ["Character names"]
    }}
  ],
  "characters": [
    {{"name": "Character Name", "description": "Physical description: age, hair, clothing, distinguishing features"}}
  ],
  "characterNotes": "Notes about characters",
  "visualStyle": "Detailed visual style description"
}}
"""


def story_prompt(brief: StoryBrief, request: ComicRequest) -> str:
    plan = "\n".join(
        f"- Scene {i} (page {scene.page}): {scene.description}"
        for i, scene in enumerate(brief.scenes, 1)
    )
    return STORY_PROMPT.format(
        prompt=request.prompt.strip(),
        genre=request.genre,
        tone=request.tone,
        style=request.art_style,
        pages=request.page_count,
        audience=request.target_audience,
        panel_count=len(brief.scenes),
        plan=plan,
    )


DIALOGUE_PROMPT = """You are a cinematic screenwriter and comic book dialogue specialist.
Write the title, dialogue and narration for the comic panels below.

GENRE: {genre}
TONE: {tone}
STORY CONTEXT: {context}

CHARACTERS:
{characters}

STORY SEQUENCE (panel flow, in reading order):
{panels}

COVER (panel1):
- A dramatic title of 3-5 words that captures the story.
- NO dialogue and NO narration on the cover.

DIALOGUE RULES (panel2 onwards):
1. At most 2 dialogue lines per panel, 1 is often better.
2. Speakers must be one of these character ids: {character_ids}
3. Do NOT invent new characters or identifiers.
4. 8-10 words for normal moments, up to 14 words at emotional peaks.
5. Let the visuals carry meaning. Subtext over exposition.

NARRATION RULES:
1. Use EITHER dialogue OR narration in a panel, never both.
2. At most one narration box per panel, max 15 words.
3. Some panels should stay silent.

Return ONLY a valid JSON array with one entry per panel:
[
  {{
    "panelId": "panelX",
    "title": "string or null",
    "dialogue": [{{"speaker": "char_id", "text": "short cinematic line"}}],
    "narration": "string or null"
  }}
]

Generate entries for all {panel_count} panels now.
"""


def dialogue_prompt(project: Project) -> str:
    characters = "\n".join(
        f"{c.id} ({c.name}): {c.description}" for c in project.characters
    )
    panels = "\n".join(
        f"{p.id}: {p.description or p.prompt}" for p in project.panels
    )
    context = project.synopsis or project.user_prompt
    if project.theme:
        context = f"{context} Theme: {project.theme}"
    return DIALOGUE_PROMPT.format(
        genre=project.genre,
        tone=project.tone,
        context=context,
        characters=characters or "(none)",
        panels=panels,
        character_ids=", ".join(c.id for c in project.characters) or "(none)",
        panel_count=len(project.panels),
    )


def panel_prompt(
    description: str,
    camera_angle: str,
    style: str,
    visual_style: Optional[str] = None,
) -> str:
    """Final image prompt: scene, shot, art style, then the fixed quality tags."""
    parts = [description.strip().rstrip(".,"), f"{camera_angle} camera angle"]
    parts.append(visual_style or f"{style} comic art style")
    parts.extend(FIXED_PROMPT_ELEMENTS)
    return ", ".join(p for p in parts if p)


def character_prompt(name: str, description: str, style: str, visual_style: Optional[str] = None) -> str:
    """Full-body reference sheet for one character."""
    parts = [
        f"Character reference of {name}" + (f": {description.strip().rstrip('.,')}" if description.strip() else ""),
        "full body, front view, plain background",
        visual_style or f"{style} comic art style",
    ]
    parts.extend(FIXED_PROMPT_ELEMENTS)
    return ", ".join(p for p in parts if p)
