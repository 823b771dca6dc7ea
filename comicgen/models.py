"""
Comicgen - Data models.

Dataclasses for the whole generation pipeline:
Character / Panel / DialogueLine → Project, plus the layout, page and
result types that move between stages.

Project documents are persisted as YAML (see project_store.py). Every
entity keeps the keys it does not recognise in ``extra`` so documents
written by newer stages survive a load/save cycle untouched. Entities
read from a document also remember which keys it had: a defaulted key
the document did not carry is not written back.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

# Panel dimensions accepted by the image service
MIN_PANEL_DIM = 100
MAX_PANEL_DIM = 2000

DEFAULT_PANEL_WIDTH = 832
DEFAULT_PANEL_HEIGHT = 1248

COVER_PANEL_ID = "panel1"


class PanelState(Enum):
    """Per-panel generation state machine."""

    PENDING = "pending"
    POLLING = "polling"
    DOWNLOADING = "downloading"
    UPLOADING = "uploading"
    DONE = "done"
    FAILED = "failed"


class ProjectStatus(Enum):
    CREATED = "created"
    STRUCTURING = "structuring"
    GENERATING_PANELS = "generating_panels"
    GENERATING_DIALOGUE = "generating_dialogue"
    COMPOSING = "composing"
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


def clamp_fraction(value, default: float = 0.5) -> float:
    """Coerce a placement coordinate into [0, 1]."""
    try:
        value = float(value)
    except (TypeError, ValueError):
        return default
    return min(1.0, max(0.0, value))


def clamp_dimension(value) -> int:
    """Coerce a panel dimension into the accepted pixel range."""
    try:
        value = int(value)
    except (TypeError, ValueError):
        return MIN_PANEL_DIM
    return min(MAX_PANEL_DIM, max(MIN_PANEL_DIM, value))


def panel_number(panel_id: str) -> Optional[int]:
    """'panel7' -> 7, anything else -> None."""
    if panel_id.startswith("panel") and panel_id[5:].isdigit():
        return int(panel_id[5:])
    return None


def _keeps(loaded_keys: Optional[frozenset], key: str, value, default) -> bool:
    """Whether a defaulted key belongs in the written document."""
    return loaded_keys is None or key in loaded_keys or value != default


# ============================================================
# Project document entities
# ============================================================

@dataclass
class DialogueLine:
    """One spoken line, placed at fractional panel coordinates."""
    speaker: str               # Character.id
    text: str
    x: float = 0.5
    y: float = 0.15
    extra: dict = field(default_factory=dict)
    loaded_keys: Optional[frozenset] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict:
        data = {"speaker": self.speaker, "text": self.text}
        if _keeps(self.loaded_keys, "x", self.x, 0.5):
            data["x"] = self.x
        if _keeps(self.loaded_keys, "y", self.y, 0.15):
            data["y"] = self.y
        data.update(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "DialogueLine":
        loaded_keys = frozenset(data)
        data = dict(data)
        return cls(
            speaker=str(data.pop("speaker", "")),
            text=str(data.pop("text", "")),
            x=clamp_fraction(data.pop("x", 0.5)),
            y=clamp_fraction(data.pop("y", 0.15), default=0.15),
            extra=data,
            loaded_keys=loaded_keys,
        )


@dataclass
class Character:
    """A recurring character. Ids are stable: char_1, char_2, ..."""
    id: str
    name: str
    description: str = ""
    reference_urls: list[str] = field(default_factory=list)   # User images, then the generated sheet
    image_id: Optional[str] = None         # Service-native id of the character sheet
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "references": list(self.reference_urls),
        }
        if self.image_id:
            data["imageId"] = self.image_id
        data.update(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Character":
        data = dict(data)
        return cls(
            id=str(data.pop("id")),
            name=str(data.pop("name", "")),
            description=str(data.pop("description", "") or ""),
            reference_urls=list(data.pop("references", []) or []),
            image_id=data.pop("imageId", None),
            extra=data,
        )


@dataclass
class Panel:
    """A single comic panel: one image generated by the external model."""
    id: str                                # panelN
    prompt: str                            # Full prompt sent to the image model
    page_index: int = 1
    description: str = ""                  # Scene text, fed to the dialogue LLM
    width: int = DEFAULT_PANEL_WIDTH
    height: int = DEFAULT_PANEL_HEIGHT
    context_panel_ids: list[str] = field(default_factory=list)
    generated_image_url: Optional[str] = None   # Filled by the panel generator
    generation_id: Optional[str] = None
    image_id: Optional[str] = None         # Service-native id, usable as context
    seed: Optional[int] = None
    title: Optional[str] = None            # Filled by the dialogue generator
    dialogue: list[DialogueLine] = field(default_factory=list)
    narration: Optional[str] = None
    narration_position: str = "bottom"     # "top" | "bottom"
    extra: dict = field(default_factory=dict)
    loaded_keys: Optional[frozenset] = field(default=None, repr=False, compare=False)

    @property
    def is_complete(self) -> bool:
        return bool(self.generated_image_url)

    @property
    def number(self) -> Optional[int]:
        return panel_number(self.id)

    def to_dict(self) -> dict:
        data = {"id": self.id}
        if _keeps(self.loaded_keys, "page", self.page_index, 1):
            data["page"] = self.page_index
        data["prompt"] = self.prompt
        if _keeps(self.loaded_keys, "description", self.description, ""):
            data["description"] = self.description
        data.update({
            "width": self.width,
            "height": self.height,
            "context_panel_ids": list(self.context_panel_ids),
            "dialogue": [line.to_dict() for line in self.dialogue],
        })
        # Optional keys are omitted when unset
        if self.generated_image_url:
            data["cloudinaryUrl"] = self.generated_image_url
        if self.generation_id:
            data["generationId"] = self.generation_id
        if self.image_id:
            data["imageId"] = self.image_id
        if self.seed is not None:
            data["seed"] = self.seed
        if self.title is not None:
            data["title"] = self.title
        if self.narration is not None:
            data["narration"] = self.narration
        if self.narration_position != "bottom":
            data["narrationPosition"] = self.narration_position
        data.update(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Panel":
        loaded_keys = frozenset(data)
        data = dict(data)
        return cls(
            id=str(data.pop("id")),
            page_index=int(data.pop("page", 1) or 1),
            prompt=str(data.pop("prompt", "") or ""),
            description=str(data.pop("description", "") or ""),
            width=int(data.pop("width", DEFAULT_PANEL_WIDTH)),
            height=int(data.pop("height", DEFAULT_PANEL_HEIGHT)),
            context_panel_ids=list(data.pop("context_panel_ids", []) or []),
            generated_image_url=data.pop("cloudinaryUrl", None) or None,
            generation_id=data.pop("generationId", None),
            image_id=data.pop("imageId", None),
            seed=data.pop("seed", None),
            title=data.pop("title", None),
            dialogue=[DialogueLine.from_dict(d) for d in data.pop("dialogue", []) or []],
            narration=data.pop("narration", None),
            narration_position=data.pop("narrationPosition", "bottom"),
            extra=data,
            loaded_keys=loaded_keys,
        )


@dataclass
class Project:
    """The evolving comic. Single source of truth for every stage."""
    id: str
    user_prompt: str
    title: str = ""
    genre: str = "adventure"
    style: str = "cinematic"
    tone: str = "dramatic"
    page_count: int = 3
    target_audience: str = "general"
    status: str = ProjectStatus.CREATED.value
    synopsis: str = ""
    theme: str = ""
    visual_style: str = ""
    dialogue_failed: bool = False
    characters: list[Character] = field(default_factory=list)
    panels: list[Panel] = field(default_factory=list)
    extra: dict = field(default_factory=dict)
    loaded_keys: Optional[frozenset] = field(default=None, repr=False, compare=False)

    def get_panel(self, panel_id: str) -> Optional[Panel]:
        for panel in self.panels:
            if panel.id == panel_id:
                return panel
        return None

    def panel_index(self, panel_id: str) -> int:
        """0-based position of a panel, -1 if unknown."""
        for i, panel in enumerate(self.panels):
            if panel.id == panel_id:
                return i
        return -1

    @property
    def character_ids(self) -> set[str]:
        return {c.id for c in self.characters}

    @property
    def cover(self) -> Optional[Panel]:
        return self.panels[0] if self.panels else None

    @property
    def completed_panels(self) -> list[Panel]:
        return [p for p in self.panels if p.is_complete]

    def source_map(self) -> dict[str, str]:
        """panel id -> uploaded image URL, for completed panels."""
        return {p.id: p.generated_image_url for p in self.panels if p.generated_image_url}

    def get_character(self, character_id: str) -> Optional[Character]:
        for character in self.characters:
            if character.id == character_id:
                return character
        return None

    def to_dict(self) -> dict:
        # A document stored without its id is keyed by file name only
        data = {}
        if self.loaded_keys is None or "id" in self.loaded_keys:
            data["id"] = self.id
        data.update({
            "title": self.title,
            "genre": self.genre,
            "style": self.style,
        })
        if _keeps(self.loaded_keys, "tone", self.tone, "dramatic"):
            data["tone"] = self.tone
        data.update({
            "pages": self.page_count,
            "target_audience": self.target_audience,
            "user_prompt": self.user_prompt,
            "status": self.status,
        })
        for key, value, default in (
            ("synopsis", self.synopsis, ""),
            ("theme", self.theme, ""),
            ("visual_style", self.visual_style, ""),
            ("dialogue_failed", self.dialogue_failed, False),
        ):
            if _keeps(self.loaded_keys, key, value, default):
                data[key] = value
        data["characters"] = [c.to_dict() for c in self.characters]
        data["panels"] = [p.to_dict() for p in self.panels]
        data.update(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: dict, default_id: Optional[str] = None) -> "Project":
        loaded_keys = frozenset(data)
        data = dict(data)
        if "id" not in data and default_id is None:
            raise KeyError("id")
        return cls(
            id=str(data.pop("id", default_id)),
            user_prompt=str(data.pop("user_prompt", "") or ""),
            title=str(data.pop("title", "") or ""),
            genre=data.pop("genre", "adventure"),
            style=data.pop("style", "cinematic"),
            tone=data.pop("tone", "dramatic"),
            page_count=int(data.pop("pages", 3)),
            target_audience=data.pop("target_audience", "general"),
            status=data.pop("status", ProjectStatus.CREATED.value),
            synopsis=data.pop("synopsis", "") or "",
            theme=data.pop("theme", "") or "",
            visual_style=data.pop("visual_style", "") or "",
            dialogue_failed=bool(data.pop("dialogue_failed", False)),
            characters=[Character.from_dict(c) for c in data.pop("characters", []) or []],
            panels=[Panel.from_dict(p) for p in data.pop("panels", []) or []],
            extra=data,
            loaded_keys=loaded_keys,
        )


# ============================================================
# Layout templates
# ============================================================

@dataclass(frozen=True)
class LayoutSlot:
    """Where one panel sits on a page. y, h and offset_x are fractions of the usable area."""
    panel_id: str
    size: str            # "WxH", gives the aspect ratio
    y: float
    h: float
    align: str = "center"   # left | center | right
    offset_x: float = 0.0

    def dimensions(self) -> tuple[int, int]:
        """Parse 'WxH' into integers."""
        w, h = self.size.lower().split("x")
        return int(w), int(h)


@dataclass(frozen=True)
class PageLayout:
    page_number: int
    slots: tuple[LayoutSlot, ...]


@dataclass(frozen=True)
class LayoutTemplate:
    name: str
    page_count: int
    pages: tuple[PageLayout, ...]

    @property
    def panel_ids(self) -> list[str]:
        """Panel ids in reading order, without duplicates."""
        seen = []
        for page in self.pages:
            for slot in page.slots:
                if slot.panel_id not in seen:
                    seen.append(slot.panel_id)
        return seen

    def slot_for(self, panel_id: str) -> Optional[tuple[int, LayoutSlot]]:
        """(page number, slot) of the first slot showing a panel."""
        for page in self.pages:
            for slot in page.slots:
                if slot.panel_id == panel_id:
                    return page.page_number, slot
        return None


# ============================================================
# Stage inputs and outputs
# ============================================================

@dataclass
class PageImage:
    """A composed page. Transient unless uploaded."""
    page_number: int
    image_bytes: bytes
    mime: str = "image/png"


@dataclass
class ComicRequest:
    """What the caller asked for."""
    prompt: str
    art_style: str = "cinematic"
    page_count: int = 3
    genre: str = "adventure"
    tone: str = "dramatic"
    target_audience: str = "general"
    reference_images: list[str] = field(default_factory=list)
    project_id: Optional[str] = None

    @classmethod
    def from_json(cls, payload: dict) -> "ComicRequest":
        """Build from the HTTP body (camelCase keys)."""
        page_count = payload.get("pageCount", 3)
        return cls(
            prompt=payload.get("prompt") or "",
            art_style=payload.get("artStyle") or "cinematic",
            page_count=page_count if page_count is not None else 3,
            genre=payload.get("genre") or "adventure",
            tone=payload.get("tone") or "dramatic",
            target_audience=payload.get("targetAudience") or "general",
            reference_images=list(payload.get("referenceImages") or []),
            project_id=payload.get("projectId"),
        )


@dataclass
class PanelBatchResult:
    """Outcome of one generate_panels() call."""
    successful: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)    # panel id -> error
    skipped: list[str] = field(default_factory=list)        # unknown ids
    source_map: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def requested(self) -> int:
        return len(self.successful) + len(self.failed) + len(self.skipped)


@dataclass
class ComicResult:
    """Outcome of generate_comic()."""
    status: str
    project: Optional[Project]
    pages: list[PageImage] = field(default_factory=list)
    page_urls: list[dict] = field(default_factory=list)    # [{"page": 1, "url": "..."}]
    errors: list[dict] = field(default_factory=list)

    def add_error(self, stage: str, message: str, panel_id: Optional[str] = None):
        error = {"stage": stage, "message": message}
        if panel_id:
            error["panelId"] = panel_id
        self.errors.append(error)
