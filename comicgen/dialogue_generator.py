"""
Comicgen - Dialogue Generator.

One LLM call writes the cover title plus dialogue and narration for every
panel. The response is parsed tolerantly, normalised against the project
(known speakers only, short lines, cover rules) and merged by panel id.

A response that cannot be parsed leaves every panel untouched and sets
project.dialogue_failed; the comic still composes, just without text.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from comicgen.config import Settings
from comicgen.llm_client import LLMClient, parse_json_array
from comicgen.models import DialogueLine, Project, clamp_fraction
from comicgen.prompt_builder import dialogue_prompt

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Untitled Comic"
MAX_LINES_PER_PANEL = 2
MAX_WORDS_PER_LINE = 14
MAX_NARRATION_WORDS = 15

# Default placement: alternate left/right, stacking downward
LINE_X = (0.3, 0.7)
LINE_Y_START = 0.12
LINE_Y_STEP = 0.15


@dataclass
class PanelText:
    title: Optional[str]
    dialogue: list[DialogueLine]
    narration: Optional[str]


@dataclass
class DialogueResult:
    success: bool
    panels_updated: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error: Optional[str] = None


def truncate_words(text: str, limit: int) -> str:
    words = text.split()
    if len(words) <= limit:
        return " ".join(words)
    return " ".join(words[:limit]).rstrip(",;:") + "..."


def default_position(index: int) -> tuple[float, float]:
    return LINE_X[index % 2], LINE_Y_START + index * LINE_Y_STEP


class DialogueGenerator:
    """Generates and merges per-panel text."""

    def __init__(self, llm: Optional[LLMClient] = None, settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        self.llm = llm or LLMClient(self.settings)

    async def generate(self, project: Project) -> DialogueResult:
        """Run the LLM and merge its text into the project in place."""
        if not project.panels:
            return DialogueResult(success=False, error="Project has no panels")

        logger.info(f"Generating dialogue for {len(project.panels)} panels...")
        try:
            response = await self.llm.invoke(
                [{"role": "user", "content": dialogue_prompt(project)}],
            )
        except Exception as e:
            return self._fail(project, f"Dialogue LLM call failed: {e}")

        entries = parse_json_array(response.get("content", ""), wrapper_key="dialogue")
        if entries is None:
            return self._fail(project, "Dialogue response contained no JSON array")

        result = DialogueResult(success=True)
        texts = self.normalize(entries, project, result.warnings)
        result.panels_updated = self.merge(project, texts)
        project.dialogue_failed = False

        logger.info(
            f"Dialogue merged into {len(result.panels_updated)} panels"
            + (f" ({len(result.warnings)} warning(s))" if result.warnings else "")
        )
        return result

    def _fail(self, project: Project, message: str) -> DialogueResult:
        logger.error(message)
        project.dialogue_failed = True
        return DialogueResult(success=False, error=message)

    def normalize(self, entries: list, project: Project, warnings: list[str]) -> dict[str, PanelText]:
        """Validate raw LLM entries into PanelText keyed by panel id."""
        speakers = project.character_ids
        cover_id = project.panels[0].id
        texts: dict[str, PanelText] = {}

        for position, entry in enumerate(entries):
            if not isinstance(entry, dict):
                continue

            panel_id = entry.get("panelId")
            if project.get_panel(str(panel_id or "")) is None:
                if position >= len(project.panels):
                    warnings.append(f"Entry {position + 1} has unknown panel id {panel_id!r} - ignored")
                    continue
                fallback = project.panels[position].id
                if panel_id:
                    warnings.append(
                        f"Entry {position + 1} has unknown panel id {panel_id!r} - applied to {fallback} by position"
                    )
                panel_id = fallback
            panel_id = str(panel_id)

            lines = []
            for raw in entry.get("dialogue") or []:
                line = self._line(raw, panel_id, speakers, warnings)
                if line is not None:
                    lines.append(line)
            if len(lines) > MAX_LINES_PER_PANEL:
                warnings.append(f"{panel_id}: {len(lines)} dialogue lines - keeping {MAX_LINES_PER_PANEL}")
                lines = lines[:MAX_LINES_PER_PANEL]
            lines = [self._place(line, i) for i, line in enumerate(lines)]

            narration = entry.get("narration")
            narration = truncate_words(str(narration), MAX_NARRATION_WORDS) if narration else None
            title = entry.get("title")
            title = str(title).strip() if title else None

            if panel_id == cover_id:
                lines, narration = [], None
            elif lines and narration:
                # Dialogue wins over narration
                narration = None

            texts[panel_id] = PanelText(title=title, dialogue=lines, narration=narration)

        for warning in warnings:
            logger.warning(warning)
        return texts

    def _line(self, raw, panel_id: str, speakers: set[str], warnings: list[str]) -> Optional[tuple]:
        """(DialogueLine, raw x, raw y) or None when the line is unusable."""
        if not isinstance(raw, dict):
            return None
        speaker = str(raw.get("speaker") or "").strip()
        text = str(raw.get("text") or "").strip()
        if not text:
            return None
        if speaker not in speakers:
            warnings.append(f"{panel_id}: dropped line from unknown speaker '{speaker}'")
            return None

        line = DialogueLine(speaker=speaker, text=truncate_words(text, MAX_WORDS_PER_LINE))
        return line, raw.get("x"), raw.get("y")

    def _place(self, parsed: tuple, index: int) -> DialogueLine:
        """Explicit coordinates are clamped; missing ones get the default slot."""
        line, x, y = parsed
        default_x, default_y = default_position(index)
        line.x = clamp_fraction(x, default=default_x) if x is not None else default_x
        line.y = clamp_fraction(y, default=default_y) if y is not None else default_y
        return line

    def merge(self, project: Project, texts: dict[str, PanelText]) -> list[str]:
        """Overwrite title/dialogue/narration per panel. Other fields are preserved."""
        updated = []
        for panel in project.panels:
            text = texts.get(panel.id)
            if text is None:
                continue
            panel.title = text.title
            panel.dialogue = text.dialogue
            panel.narration = text.narration
            updated.append(panel.id)

        self._enforce_cover(project)
        return updated

    def _enforce_cover(self, project: Project):
        cover = project.panels[0]
        if not cover.title:
            cover.title = project.title or DEFAULT_TITLE
        cover.dialogue = []
        cover.narration = None
