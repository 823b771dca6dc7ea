"""
Comicgen - Built-in layout templates.

Each template is a page-indexed list of slots. Slot geometry is fractional
(y, h and offset_x relative to the page's usable area) and the slot's
"WxH" size fixes the panel aspect ratio, so the composer can work out
absolute boxes for any canvas size.

Page 1 is always the full-page cover (panel1). The following pages mix a
three-panel page, a four-panel grid and two-panel pages.
"""

import math

from comicgen.errors import ConfigError
from comicgen.models import LayoutSlot, LayoutTemplate, PageLayout

MIN_PAGES = 1
MAX_PAGES = 5

# Slot sizes the image model renders well
PORTRAIT = "832x1248"
TALL = "944x1104"
LANDSCAPE = "1184x880"
WIDE = "1456x720"

# Offset that pulls left/right slots in from the margin
INSET = 0.042


def _cover(first: int = 1) -> tuple[LayoutSlot, ...]:
    return (LayoutSlot(f"panel{first}", PORTRAIT, y=0.02, h=0.96),)


def _four_grid(first: int) -> tuple[LayoutSlot, ...]:
    ids = [f"panel{first + i}" for i in range(4)]
    return (
        LayoutSlot(ids[0], PORTRAIT, y=0.05, h=0.41, align="left", offset_x=INSET),
        LayoutSlot(ids[1], TALL, y=0.05, h=0.41, align="right", offset_x=-INSET),
        LayoutSlot(ids[2], TALL, y=0.50, h=0.41, align="left", offset_x=INSET),
        LayoutSlot(ids[3], PORTRAIT, y=0.50, h=0.41, align="right", offset_x=-INSET),
    )


def _three_panel(first: int) -> tuple[LayoutSlot, ...]:
    return (
        LayoutSlot(f"panel{first}", LANDSCAPE, y=0.02, h=0.48),
        LayoutSlot(f"panel{first + 1}", TALL, y=0.52, h=0.41, align="left", offset_x=INSET),
        LayoutSlot(f"panel{first + 2}", PORTRAIT, y=0.52, h=0.41, align="right", offset_x=-INSET),
    )


def _wide_pair(first: int) -> tuple[LayoutSlot, ...]:
    return (
        LayoutSlot(f"panel{first}", WIDE, y=0.12, h=0.33),
        LayoutSlot(f"panel{first + 1}", WIDE, y=0.55, h=0.33),
    )


def _tall_pair(first: int) -> tuple[LayoutSlot, ...]:
    return (
        LayoutSlot(f"panel{first}", PORTRAIT, y=0.25, h=0.50, align="left"),
        LayoutSlot(f"panel{first + 1}", PORTRAIT, y=0.25, h=0.50, align="right"),
    )


def _build(name: str, *page_builders) -> LayoutTemplate:
    """Chain page builders, numbering panels continuously from panel1."""
    pages = []
    next_panel = 1
    for page_number, builder in enumerate(page_builders, 1):
        slots = builder(next_panel)
        next_panel += len(slots)
        pages.append(PageLayout(page_number=page_number, slots=slots))
    return LayoutTemplate(name=name, page_count=len(pages), pages=tuple(pages))


LAYOUTS: dict[int, LayoutTemplate] = {
    1: _build("cover", _cover),
    2: _build("cover-grid", _cover, _four_grid),
    3: _build("cover-feature-strips", _cover, _three_panel, _wide_pair),
    4: _build("cover-feature-strips-pair", _cover, _three_panel, _wide_pair, _tall_pair),
    5: _build("cover-feature-mixed", _cover, _three_panel, _wide_pair, _tall_pair, _wide_pair),
}


def panels_per_page(page_count: int) -> int:
    """Scene budget per page used by the deterministic fallback story."""
    return math.ceil(6 / page_count)


def layout_for(page_count: int) -> LayoutTemplate:
    """Return the built-in template for a page count."""
    if page_count not in LAYOUTS:
        raise ConfigError(
            f"No layout for {page_count} pages (supported: {MIN_PAGES}-{MAX_PAGES})"
        )
    return LAYOUTS[page_count]
