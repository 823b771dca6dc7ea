"""
Comicgen - Page Composer.

Rasterises a Project onto page canvases according to a layout template:
- panel images cover-fitted into fractional layout slots
- 2px black panel borders
- cover title, narration and dialogue drawn from a fixed style table
- grey placeholders for panels without a usable image
- page number footer
- multi-page PDF output

Uses Pillow for all image manipulation. Given the same project, layout and
fetched image bytes, the output PNG bytes are identical across runs.
"""

import io
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from PIL import Image, ImageDraw, ImageFont

from comicgen.config import Settings
from comicgen.errors import CompositionError
from comicgen.models import (
    MAX_PANEL_DIM,
    MIN_PANEL_DIM,
    LayoutSlot,
    LayoutTemplate,
    PageImage,
    PageLayout,
    Panel,
    Project,
    clamp_dimension,
)
from comicgen.storage import ImageFetcher

logger = logging.getLogger(__name__)

BACKGROUND_COLOR = (255, 255, 255)
BORDER_COLOR = (0, 0, 0)
BORDER_WIDTH = 2
PLACEHOLDER_FILL = (200, 200, 200)
PLACEHOLDER_TEXT = (100, 100, 100)
FOOTER_COLOR = (102, 102, 102)
FOOTER_SIZE = 24

# Fractional anchors inside a panel
TITLE_POSITION = (0.5, 0.1)
TEXT_POSITIONS = {"top": (0.5, 0.1), "bottom": (0.5, 0.9)}

# Share of the panel width a text block may use before wrapping
TEXT_MAX_WIDTH = 0.9

FONTS_DIR = Path(__file__).parent / "assets" / "fonts"


@dataclass(frozen=True)
class TextStyle:
    font: str
    size: float              # Fraction of the panel box width
    fill: tuple
    stroke_fill: tuple
    stroke_width: int
    shadow: bool


TEXT_STYLES = {
    "title": TextStyle("sans-bold", 0.075, (255, 255, 255), (0, 0, 0), 6, True),
    "narration": TextStyle("sans-bold", 0.04, (255, 255, 255), (0, 0, 0), 2, True),
    "dialogue": TextStyle("sans-bold", 0.035, (0, 0, 0), (255, 255, 255), 1, False),
    "sfx": TextStyle("impact", 0.06, (255, 0, 0), (255, 255, 255), 3, True),
}

# Candidate font files per family, tried in order
FONT_FILES = {
    "sans-bold": [
        "DejaVuSans-Bold.ttf",
        "LiberationSans-Bold.ttf",
        "Arial Bold.ttf",
        "arialbd.ttf",
    ],
    "impact": [
        "Impact.ttf",
        "impact.ttf",
        "Anton-Regular.ttf",
        "DejaVuSans-Bold.ttf",
    ],
}

FONT_DIRS = [
    FONTS_DIR,
    Path("/usr/share/fonts/truetype/dejavu"),
    Path("/usr/share/fonts/truetype/liberation"),
    Path("/usr/share/fonts/dejavu"),
    Path("/usr/share/fonts/TTF"),
    Path("/usr/share/fonts"),
    Path("/Library/Fonts"),
    Path(os.environ.get("WINDIR", "C:\\Windows")) / "Fonts",
    Path.home() / ".local" / "share" / "fonts",
]


def slot_box(slot: LayoutSlot, canvas_w: int, canvas_h: int, margin: int) -> tuple[int, int, int, int]:
    """
    Absolute (x, y, width, height) of a slot on the canvas.

    y and height are fractions of the usable height; the width follows the
    slot's aspect ratio; x comes from the alignment plus offset_x (a fraction
    of the usable width).
    """
    usable_w = canvas_w - 2 * margin
    usable_h = canvas_h - 2 * margin

    pw, ph = slot.dimensions()
    if not (MIN_PANEL_DIM <= pw <= MAX_PANEL_DIM and MIN_PANEL_DIM <= ph <= MAX_PANEL_DIM):
        logger.warning(f"Slot {slot.panel_id}: size {slot.size} out of range - clamped")
        pw, ph = clamp_dimension(pw), clamp_dimension(ph)

    y = margin + slot.y * usable_h
    box_h = slot.h * usable_h
    box_w = box_h * (pw / ph)

    if slot.align == "left":
        x = margin
    elif slot.align == "right":
        x = canvas_w - margin - box_w
    else:
        x = margin + (usable_w - box_w) / 2
    x += slot.offset_x * usable_w

    return round(x), round(y), round(box_w), round(box_h)


class PageComposer:
    """Composes comic pages from a project and a layout template."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        fetcher: Optional[Callable[[str], bytes]] = None,
    ):
        self.settings = settings or Settings()
        self.width = self.settings.canvas_width
        self.height = self.settings.canvas_height
        self.margin = self.settings.page_margin
        self.fetcher = fetcher or ImageFetcher()
        self._fonts: dict[tuple[str, int], ImageFont.ImageFont] = {}

    # ============================================================
    # Fonts
    # ============================================================

    def _load_font(self, family: str, size: int):
        """Load a font, trying bundled -> system -> default."""
        key = (family, size)
        if key in self._fonts:
            return self._fonts[key]

        font = None
        for font_name in FONT_FILES.get(family, [family + ".ttf"]):
            for font_dir in FONT_DIRS:
                font_path = font_dir / font_name
                if font_path.exists():
                    font = ImageFont.truetype(str(font_path), size)
                    break
            if font is not None:
                break

        if font is None:
            logger.warning(
                f"Font '{family}' not found - using default. "
                f"Place .ttf files in {FONTS_DIR} for better results."
            )
            font = ImageFont.load_default(size=size)

        self._fonts[key] = font
        return font

    # ============================================================
    # Pages
    # ============================================================

    def compose_pages(self, project: Project, layout: LayoutTemplate) -> list[PageImage]:
        """
        Render every page of the layout.

        Raises:
            CompositionError: a slot names a panel the project does not have,
                or the canvas cannot be allocated.
        """
        missing = [
            slot.panel_id
            for page in layout.pages
            for slot in page.slots
            if project.get_panel(slot.panel_id) is None
        ]
        if missing:
            raise CompositionError(
                f"Layout '{layout.name}' references unknown panel(s): {', '.join(missing)}"
            )

        fetched: dict[str, Optional[bytes]] = {}
        pages = []
        for page_layout in layout.pages:
            image = self._render_page(project, page_layout, fetched)
            buffer = io.BytesIO()
            image.save(buffer, format="PNG")
            pages.append(PageImage(page_number=page_layout.page_number, image_bytes=buffer.getvalue()))
            logger.info(f"Page {page_layout.page_number}/{len(layout.pages)} composed")

        return pages

    def _render_page(self, project: Project, page_layout: PageLayout, fetched: dict) -> Image.Image:
        try:
            page = Image.new("RGB", (self.width, self.height), BACKGROUND_COLOR)
        except (ValueError, MemoryError) as e:
            raise CompositionError(f"Cannot allocate {self.width}x{self.height} canvas: {e}") from e
        draw = ImageDraw.Draw(page)

        for slot in page_layout.slots:
            panel = project.get_panel(slot.panel_id)
            x, y, w, h = slot_box(slot, self.width, self.height, self.margin)
            self._check_panel_dimensions(panel)

            panel_img = self._panel_image(panel, fetched)
            if panel_img is not None:
                page.paste(self._fit_image(panel_img, w, h), (x, y))
            else:
                self._draw_placeholder(draw, panel, x, y, w, h)

            draw.rectangle([x, y, x + w - 1, y + h - 1], outline=BORDER_COLOR, width=BORDER_WIDTH)
            self._draw_panel_text(draw, project, panel, x, y, w, h)

        footer = self._load_font("sans-bold", FOOTER_SIZE)
        draw.text(
            (self.width // 2, self.height - 10),
            f"Page {page_layout.page_number}",
            fill=FOOTER_COLOR,
            font=footer,
            anchor="ms",
        )
        return page

    def _check_panel_dimensions(self, panel: Panel):
        """Box size comes from the slot; out-of-range panel sizes are only reported."""
        if (clamp_dimension(panel.width), clamp_dimension(panel.height)) != (panel.width, panel.height):
            logger.warning(
                f"{panel.id}: size {panel.width}x{panel.height} outside "
                f"[{MIN_PANEL_DIM}, {MAX_PANEL_DIM}] - clamped"
            )

    def _panel_image(self, panel: Panel, fetched: dict) -> Optional[Image.Image]:
        """Fetched and decoded panel image, or None for a placeholder."""
        url = panel.generated_image_url
        if not url:
            logger.warning(f"{panel.id}: no image - drawing placeholder")
            return None

        if url not in fetched:
            try:
                fetched[url] = self.fetcher(url)
            except Exception as e:
                logger.warning(f"{panel.id}: image fetch failed ({e}) - drawing placeholder")
                fetched[url] = None
        data = fetched[url]
        if data is None:
            return None

        try:
            img = Image.open(io.BytesIO(data))
            return img.convert("RGB")
        except Exception as e:
            logger.warning(f"{panel.id}: image could not be decoded ({e}) - drawing placeholder")
            return None

    def _fit_image(self, img: Image.Image, target_w: int, target_h: int) -> Image.Image:
        """Resize and crop image to fit target dimensions (cover mode)."""
        # Boxes take the aspect ratio of the size the panel was generated at,
        # so only images that came back at another ratio lose an edge strip.
        scale = max(target_w / img.width, target_h / img.height)

        new_w = max(target_w, round(img.width * scale))
        new_h = max(target_h, round(img.height * scale))
        img = img.resize((new_w, new_h), Image.Resampling.LANCZOS)

        # Center crop
        left = (new_w - target_w) // 2
        top = (new_h - target_h) // 2
        return img.crop((left, top, left + target_w, top + target_h))

    def _draw_placeholder(self, draw: ImageDraw.ImageDraw, panel: Panel, x: int, y: int, w: int, h: int):
        draw.rectangle([x, y, x + w - 1, y + h - 1], fill=PLACEHOLDER_FILL)
        draw.text(
            (x + w // 2, y + h // 2),
            panel.id,
            fill=PLACEHOLDER_TEXT,
            font=self._load_font("sans-bold", max(12, w // 12)),
            anchor="mm",
        )

    # ============================================================
    # Text
    # ============================================================

    def _draw_panel_text(self, draw, project: Project, panel: Panel, x: int, y: int, w: int, h: int):
        is_cover = bool(project.panels) and panel.id == project.panels[0].id

        if is_cover:
            title = panel.title or project.title
            if title:
                tx, ty = TITLE_POSITION
                self._draw_text(draw, title, "title", x + tx * w, y + ty * h, w)
            return

        if panel.narration:
            tx, ty = TEXT_POSITIONS.get(panel.narration_position, TEXT_POSITIONS["bottom"])
            self._draw_text(draw, panel.narration, "narration", x + tx * w, y + ty * h, w)

        for line in panel.dialogue:
            role = "sfx" if line.extra.get("style") == "sfx" else "dialogue"
            self._draw_text(draw, line.text, role, x + line.x * w, y + line.y * h, w)

    def _draw_text(self, draw: ImageDraw.ImageDraw, text: str, role: str, cx: float, cy: float, box_w: int):
        """Draw a wrapped, centred text block whose middle sits at (cx, cy)."""
        style = TEXT_STYLES[role]
        size = max(8, round(style.size * box_w))
        font = self._load_font(style.font, size)

        lines = self._wrap(draw, text, font, box_w * TEXT_MAX_WIDTH)
        bbox = draw.textbbox((0, 0), "Ag", font=font)
        line_h = (bbox[3] - bbox[1]) + max(2, size // 5)
        top = cy - line_h * len(lines) / 2

        shadow_offset = max(2, size // 12)
        for i, line in enumerate(lines):
            position = (round(cx), round(top + i * line_h))
            if style.shadow:
                draw.text(
                    (position[0] + shadow_offset, position[1] + shadow_offset),
                    line,
                    fill=(0, 0, 0),
                    font=font,
                    anchor="mt",
                    stroke_width=style.stroke_width,
                    stroke_fill=(0, 0, 0),
                )
            draw.text(
                position,
                line,
                fill=style.fill,
                font=font,
                anchor="mt",
                stroke_width=style.stroke_width,
                stroke_fill=style.stroke_fill,
            )

    def _wrap(self, draw: ImageDraw.ImageDraw, text: str, font, max_width: float) -> list[str]:
        lines = []
        current = ""
        for word in text.split():
            candidate = f"{current} {word}" if current else word
            if current and draw.textlength(candidate, font=font) > max_width:
                lines.append(current)
                current = word
            else:
                current = candidate
        if current:
            lines.append(current)
        return lines or [""]

    # ============================================================
    # PDF
    # ============================================================

    def generate_pdf(self, pages: list[PageImage]) -> bytes:
        """Generate a multi-page PDF from composed pages."""
        if not pages:
            raise CompositionError("No composed pages to create PDF from")

        images = [Image.open(io.BytesIO(p.image_bytes)).convert("RGB") for p in pages]
        buffer = io.BytesIO()
        images[0].save(
            buffer,
            format="PDF",
            save_all=True,
            append_images=images[1:],
            resolution=150,
        )
        logger.info(f"PDF generated ({len(images)} pages, {buffer.tell():,} bytes)")
        return buffer.getvalue()

    def close(self):
        close = getattr(self.fetcher, "close", None)
        if close is not None:
            close()
