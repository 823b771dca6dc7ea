"""
Comicgen - Story Structurer.

Expands the prompt brief into a full story with Claude, then transcribes
it into the Project as Characters and Panels. Panel ids, page indices and
dimensions come from the layout template, so every layout slot always
resolves to a panel.

Never fails on bad model output: LLM errors and unparsable responses fall
back to the deterministic brief from the prompt builder.
"""

import logging
from typing import Optional

from comicgen.config import Settings
from comicgen.errors import StageError
from comicgen.layouts import layout_for
from comicgen.llm_client import LLMClient, parse_json_object
from comicgen.models import (
    DEFAULT_PANEL_HEIGHT,
    DEFAULT_PANEL_WIDTH,
    Character,
    ComicRequest,
    Panel,
    Project,
)
from comicgen.prompt_builder import (
    Scene,
    StoryBrief,
    build_brief,
    camera_angle_for,
    fallback_brief,
    panel_prompt,
    story_prompt,
)

logger = logging.getLogger(__name__)

DEFAULT_CHARACTER = "Main Character"


class StoryStructurer:
    """LLM story expansion with a deterministic fallback."""

    def __init__(self, llm: Optional[LLMClient] = None, settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        self.llm = llm or LLMClient(self.settings)

    async def structure(self, project: Project, request: ComicRequest) -> Project:
        """
        Fill project.characters and project.panels from the request.

        Returns:
            The same Project, mutated. project.extra["story_source"] records
            whether the LLM story or the fallback was used.
        """
        brief = build_brief(request)
        story = await self._request_story(brief, request)

        if story is None:
            logger.warning("Story LLM unavailable or unparsable - using fallback story")
            story = fallback_brief(request)
            characters = [{"name": DEFAULT_CHARACTER, "description": f"The protagonist of: {request.prompt}"}]
            scenes = story.scenes
            project.extra["story_source"] = "fallback"
        else:
            characters = self._characters_from(story)
            scenes = self._fit_scenes(story.scenes, brief.scenes)
            project.extra["story_source"] = "llm"

        project.title = story.title or "Generated Story"
        project.synopsis = story.synopsis
        project.theme = story.theme
        project.visual_style = story.visual_style

        project.characters = self._build_characters(characters, request.reference_images)
        project.panels = self._build_panels(scenes, request, story.visual_style)

        if not project.panels:
            raise StageError("Story structurer produced no panels")

        # Cover carries the title from the start; dialogue may refine it later
        project.panels[0].title = project.title

        logger.info(
            f"Story ready: '{project.title}' - {len(project.panels)} panels, "
            f"{len(project.characters)} characters ({project.extra['story_source']})"
        )
        return project

    async def _request_story(self, brief: StoryBrief, request: ComicRequest) -> Optional[StoryBrief]:
        """Ask the LLM for the story. None on any failure."""
        try:
            response = await self.llm.invoke(
                [{"role": "user", "content": story_prompt(brief, request)}],
            )
        except Exception as e:
            logger.error(f"Story generation failed: {e}")
            return None

        data = parse_json_object(response.get("content", ""))
        if data is None:
            logger.warning("Story response was not a JSON object")
            return None
        return self._validate(data)

    def _validate(self, data: dict) -> Optional[StoryBrief]:
        raw_scenes = data.get("scenes")
        if not isinstance(raw_scenes, list) or not raw_scenes:
            logger.warning("Story response has no scenes")
            return None

        scenes = []
        for i, raw in enumerate(raw_scenes, 1):
            if not isinstance(raw, dict) or not str(raw.get("description") or "").strip():
                logger.warning(f"Scene {i} has no description - dropped")
                continue
            names = raw.get("characters") or []
            page = raw.get("page")
            scenes.append(Scene(
                page=page if isinstance(page, int) and page > 0 else 1,
                panel=i,
                description=str(raw["description"]).strip(),
                mood=str(raw.get("mood") or "neutral"),
                characters=[str(n) for n in names] if isinstance(names, list) else [],
            ))

        if not scenes:
            return None

        characters = data.get("characters")
        return StoryBrief(
            title=str(data.get("title") or "").strip(),
            synopsis=str(data.get("synopsis") or "").strip(),
            theme=str(data.get("theme") or "").strip(),
            scenes=scenes,
            character_notes=str(data.get("characterNotes") or ""),
            visual_style=str(data.get("visualStyle") or "").strip(),
            characters=characters if isinstance(characters, list) else [],
        )

    def _characters_from(self, story: StoryBrief) -> list[dict]:
        """Character roster from the LLM, else from names mentioned in scenes."""
        roster = []
        seen = set()
        for raw in story.characters:
            if isinstance(raw, dict) and raw.get("name"):
                name = str(raw["name"]).strip()
                if name.lower() not in seen:
                    seen.add(name.lower())
                    roster.append({"name": name, "description": str(raw.get("description") or "")})

        if not roster:
            for scene in story.scenes:
                for name in scene.characters:
                    if name.strip() and name.strip().lower() not in seen:
                        seen.add(name.strip().lower())
                        roster.append({"name": name.strip(), "description": story.character_notes})

        if not roster:
            roster.append({"name": DEFAULT_CHARACTER, "description": story.character_notes})
        return roster

    def _fit_scenes(self, scenes: list[Scene], planned: list[Scene]) -> list[Scene]:
        """Truncate or pad the LLM scenes to exactly the layout's panel count."""
        target = len(planned)
        if len(scenes) > target:
            logger.info(f"Story has {len(scenes)} scenes, layout holds {target} - truncating")
            return scenes[:target]
        if len(scenes) < target:
            logger.info(f"Story has {len(scenes)} scenes, layout holds {target} - padding")
            return scenes + planned[len(scenes):]
        return scenes

    def _build_characters(self, roster: list[dict], reference_urls: list[str]) -> list[Character]:
        characters = [
            Character(id=f"char_{i}", name=entry["name"], description=entry.get("description", ""))
            for i, entry in enumerate(roster, 1)
        ]
        # Reference images attach in order; surplus ones go to the lead character
        for i, url in enumerate(reference_urls):
            target = characters[i] if i < len(characters) else characters[0]
            target.reference_urls.append(url)
        return characters

    def _build_panels(self, scenes: list[Scene], request: ComicRequest, visual_style: str) -> list[Panel]:
        layout = layout_for(request.page_count)
        panels = []
        for i, scene in enumerate(scenes):
            panel_id = f"panel{i + 1}"
            placement = layout.slot_for(panel_id)
            if placement:
                page_index, slot = placement
                width, height = slot.dimensions()
            else:
                # Not shown by this layout; still generated
                page_index = scene.page
                width, height = DEFAULT_PANEL_WIDTH, DEFAULT_PANEL_HEIGHT

            panels.append(Panel(
                id=panel_id,
                page_index=page_index,
                description=scene.description,
                prompt=panel_prompt(
                    scene.description,
                    camera_angle_for(i),
                    request.art_style,
                    visual_style or None,
                ),
                width=width,
                height=height,
                context_panel_ids=[f"panel{i}"] if i > 0 else [],
            ))
        return panels
