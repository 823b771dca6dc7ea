"""
Page Composer - Test Suite.

Composes pages from fixture images held in memory and inspects pixels of
the result. No network: the composer's fetcher is a dict lookup.

Usage:
    python test_page_composer.py
    pytest test_page_composer.py
"""

import io
import sys
import tempfile
from pathlib import Path

import httpx
from PIL import Image

sys.path.insert(0, str(Path(__file__).parent))

from comicgen.config import Settings
from comicgen.errors import CompositionError
from comicgen.layouts import layout_for
from comicgen.models import (
    DialogueLine,
    LayoutSlot,
    LayoutTemplate,
    PageLayout,
    Panel,
    Project,
)
from comicgen.page_composer import PLACEHOLDER_FILL, PageComposer, slot_box
from comicgen.storage import ImageFetcher

COLORS = {
    1: (20, 60, 120),
    2: (120, 30, 30),
    3: (30, 110, 40),
    4: (90, 40, 110),
    5: (60, 60, 20),
}


# ============================================================
# Helpers
# ============================================================

def make_png(color, size=(80, 120)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


class DictFetcher:
    """url -> bytes; unknown URLs raise like a failed download."""

    def __init__(self, images: dict):
        self.images = images
        self.calls = []

    def __call__(self, url: str) -> bytes:
        self.calls.append(url)
        if url not in self.images:
            raise RuntimeError(f"404 for {url}")
        return self.images[url]


def make_project(page_count=2) -> Project:
    layout = layout_for(page_count)
    panels = []
    for i, panel_id in enumerate(layout.panel_ids, 1):
        page, slot = layout.slot_for(panel_id)
        width, height = slot.dimensions()
        panels.append(Panel(
            id=panel_id,
            prompt=f"scene {i}",
            page_index=page,
            width=width,
            height=height,
            generated_image_url=f"https://img.test/panel{i}.png",
        ))
    panels[0].title = "Red Planet Signal"
    return Project(
        id="proj_pages",
        user_prompt="mars astronaut meets hologram",
        title="Red Planet Signal",
        page_count=page_count,
        panels=panels,
    )


def fixture_fetcher(count=5) -> DictFetcher:
    return DictFetcher({
        f"https://img.test/panel{i}.png": make_png(COLORS[i]) for i in range(1, count + 1)
    })


def open_page(page) -> Image.Image:
    return Image.open(io.BytesIO(page.image_bytes)).convert("RGB")


def bright_pixels(img, left, top, right, bottom) -> int:
    return sum(
        1
        for y in range(max(0, top), min(img.height, bottom), 2)
        for x in range(max(0, left), min(img.width, right), 2)
        if min(img.getpixel((x, y))) > 200
    )


def close_to(pixel, color, tolerance=3) -> bool:
    return all(abs(a - b) <= tolerance for a, b in zip(pixel, color))


def changed_pixels(img, left, top, right, bottom, color) -> int:
    """Pixels in the box that no longer show the panel's fill color."""
    return sum(
        1
        for y in range(top, bottom)
        for x in range(left, right)
        if not close_to(img.getpixel((x, y)), color, tolerance=10)
    )


# ============================================================
# Test 1: Geometry
# ============================================================

def test_slot_box():
    """Absolute boxes follow the fractional slot geometry."""
    cover = LayoutSlot("panel1", "832x1248", y=0.02, h=0.96)
    assert slot_box(cover, 1200, 1600, 40) == (114, 70, 973, 1459)

    right = LayoutSlot("panel3", "944x1104", y=0.05, h=0.41, align="right", offset_x=-0.042)
    assert slot_box(right, 1200, 1600, 40) == (580, 116, 533, 623)

    left = LayoutSlot("panel4", "832x1248", y=0.5, h=0.41, align="left", offset_x=0.042)
    assert slot_box(left, 1200, 1600, 40) == (87, 800, 415, 623)

    # Out-of-range sizes still produce a box
    huge = LayoutSlot("panel9", "5000x50", y=0.1, h=0.2)
    x, y, w, h = slot_box(huge, 1200, 1600, 40)
    assert w > 0 and h > 0

    print("  PASS: Slot boxes computed from fractions")


# ============================================================
# Test 2: Composition
# ============================================================

def test_compose_pages():
    """Images are cover-fitted into their slots, one PNG per page."""
    project = make_project(2)
    layout = layout_for(2)
    composer = PageComposer(Settings(), fetcher=fixture_fetcher())

    pages = composer.compose_pages(project, layout)

    assert [p.page_number for p in pages] == [1, 2]
    assert all(p.mime == "image/png" for p in pages)
    page2 = open_page(pages[1])
    assert page2.size == (1200, 1600)

    for slot in layout.pages[1].slots:
        x, y, w, h = slot_box(slot, 1200, 1600, 40)
        number = int(slot.panel_id[5:])
        assert close_to(page2.getpixel((x + w // 2, y + h // 2)), COLORS[number]), slot.panel_id
        # 2px black border
        assert page2.getpixel((x, y + h // 2)) == (0, 0, 0)
        assert page2.getpixel((x + 1, y + h // 2)) == (0, 0, 0)

    # Margin stays white
    assert page2.getpixel((10, 10)) == (255, 255, 255)

    print("  PASS: Pages composed from fixture images")


def test_fit_image():
    """Images fill their box; only a different aspect ratio loses edge strips."""
    composer = PageComposer(Settings(), fetcher=DictFetcher({}))

    # Wide image into a square box: the centre third survives, no background shows
    wide = Image.new("RGB", (300, 100), (255, 0, 0))
    wide.paste((0, 255, 0), (100, 0, 200, 100))
    wide.paste((0, 0, 255), (200, 0, 300, 100))
    fitted = composer._fit_image(wide, 100, 100)
    assert fitted.size == (100, 100)
    for point in [(0, 0), (99, 0), (50, 50), (0, 99), (99, 99)]:
        assert close_to(fitted.getpixel(point), (0, 255, 0)), point

    # Same aspect ratio as the box: scaled only, edges kept
    framed = Image.new("RGB", (200, 300), (0, 0, 255))
    framed.paste((255, 0, 0), (0, 0, 10, 300))
    fitted = composer._fit_image(framed, 100, 150)
    assert fitted.size == (100, 150)
    assert close_to(fitted.getpixel((0, 75)), (255, 0, 0))
    assert close_to(fitted.getpixel((99, 75)), (0, 0, 255))

    print("  PASS: Images scaled to fill, cropping only off-ratio edges")


def test_composition_is_deterministic():
    project = make_project(3)
    layout = layout_for(3)
    project.panels[1].narration = "The storm came at night."
    project.panels[2].dialogue = [DialogueLine(speaker="char_1", text="Keep walking.")]

    first = PageComposer(Settings(), fetcher=fixture_fetcher()).compose_pages(project, layout)
    second = PageComposer(Settings(), fetcher=fixture_fetcher()).compose_pages(project, layout)

    assert [p.image_bytes for p in first] == [p.image_bytes for p in second]

    print("  PASS: Same inputs give identical bytes")


def test_placeholder_for_missing_images():
    """No URL, failed fetch and undecodable bytes all become placeholders."""
    project = make_project(2)
    layout = layout_for(2)
    fetcher = fixture_fetcher(2)
    fetcher.images["https://img.test/panel5.png"] = b"not an image"
    project.panels[2].generated_image_url = None  # panel3: no URL
    # panel4: URL the fetcher does not know

    pages = PageComposer(Settings(), fetcher=fetcher).compose_pages(project, layout)
    page2 = open_page(pages[1])

    for slot in layout.pages[1].slots:
        x, y, w, h = slot_box(slot, 1200, 1600, 40)
        pixel = page2.getpixel((x + 10, y + 10))
        if slot.panel_id == "panel2":
            assert close_to(pixel, COLORS[2])
        else:
            assert pixel == PLACEHOLDER_FILL, slot.panel_id

    print("  PASS: Placeholders drawn for missing images")


def test_fetch_cache():
    """Each URL is fetched once per composition."""
    project = make_project(2)
    for panel in project.panels[1:]:
        panel.generated_image_url = "https://img.test/panel2.png"
    fetcher = fixture_fetcher()

    PageComposer(Settings(), fetcher=fetcher).compose_pages(project, layout_for(2))

    assert sorted(fetcher.calls) == ["https://img.test/panel1.png", "https://img.test/panel2.png"]

    print("  PASS: Images fetched once")


def test_unknown_slot_panel():
    project = make_project(1)
    layout = LayoutTemplate(
        name="broken",
        page_count=1,
        pages=(PageLayout(1, (LayoutSlot("panel9", "832x1248", y=0.02, h=0.96),)),),
    )
    try:
        PageComposer(Settings(), fetcher=fixture_fetcher()).compose_pages(project, layout)
        raise AssertionError("unknown slot panel should raise")
    except CompositionError as e:
        assert "panel9" in str(e)

    print("  PASS: Unknown slot panel raises CompositionError")


def test_single_page():
    project = make_project(1)
    pages = PageComposer(Settings(), fetcher=fixture_fetcher(1)).compose_pages(project, layout_for(1))
    assert len(pages) == 1
    assert pages[0].page_number == 1

    print("  PASS: One page for page_count = 1")


# ============================================================
# Test 3: Text
# ============================================================

def test_cover_title_position():
    project = make_project(2)
    layout = layout_for(2)
    pages = PageComposer(Settings(), fetcher=fixture_fetcher()).compose_pages(project, layout)
    cover = open_page(pages[0])
    x, y, w, h = slot_box(layout.pages[0].slots[0], 1200, 1600, 40)

    title_y = y + round(0.1 * h)
    assert bright_pixels(cover, x + 10, title_y - 30, x + w - 10, title_y + 30) > 0
    assert bright_pixels(cover, x + 10, y + h // 2 - 30, x + w - 10, y + h // 2 + 30) == 0

    print("  PASS: Cover title drawn near the top")


def test_narration_position():
    """Narration sits at the bottom by default, at the top on request."""
    layout = layout_for(2)
    for position, expected in (("bottom", 0.9), ("top", 0.1)):
        project = make_project(2)
        panel = project.get_panel("panel2")
        panel.narration = "The storm came at night."
        panel.narration_position = position

        pages = PageComposer(Settings(), fetcher=fixture_fetcher()).compose_pages(project, layout)
        page2 = open_page(pages[1])
        _, slot = layout.slot_for("panel2")
        x, y, w, h = slot_box(slot, 1200, 1600, 40)

        other = 0.9 if expected == 0.1 else 0.1
        band = lambda f: changed_pixels(
            page2, x + 5, y + round(f * h) - 20, x + w - 5, y + round(f * h) + 20, COLORS[2],
        )
        assert band(expected) > 0, position
        assert band(other) == 0, position

    print("  PASS: Narration placed top or bottom")


def test_dialogue_drawn_at_position():
    layout = layout_for(2)
    project = make_project(2)
    panel = project.get_panel("panel3")
    panel.dialogue = [DialogueLine(speaker="char_1", text="Keep walking.", x=0.5, y=0.5)]

    pages = PageComposer(Settings(), fetcher=fixture_fetcher()).compose_pages(project, layout)
    page2 = open_page(pages[1])
    _, slot = layout.slot_for("panel3")
    x, y, w, h = slot_box(slot, 1200, 1600, 40)

    assert changed_pixels(page2, x + 5, y + h // 2 - 20, x + w - 5, y + h // 2 + 20, COLORS[3]) > 0
    assert changed_pixels(page2, x + 5, y + 10, x + w - 5, y + h // 4, COLORS[3]) == 0

    print("  PASS: Dialogue drawn at its fractional position")


def test_page_footer():
    project = make_project(2)
    pages = PageComposer(Settings(), fetcher=fixture_fetcher()).compose_pages(project, layout_for(2))
    page2 = open_page(pages[1])

    dark = [
        page2.getpixel((x, y))
        for y in range(1560, 1592)
        for x in range(540, 660)
        if max(page2.getpixel((x, y))) < 160
    ]
    assert dark, "footer text not found"

    print("  PASS: Page number footer drawn")


# ============================================================
# Test 4: PDF and fetching
# ============================================================

def test_generate_pdf():
    project = make_project(2)
    composer = PageComposer(Settings(), fetcher=fixture_fetcher())
    pages = composer.compose_pages(project, layout_for(2))

    pdf = composer.generate_pdf(pages)
    assert pdf.startswith(b"%PDF")

    try:
        composer.generate_pdf([])
        raise AssertionError("empty page list should raise")
    except CompositionError:
        pass

    print("  PASS: Multi-page PDF generated")


def test_image_fetcher():
    png = make_png(COLORS[1])
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "panel one.png"
        path.write_bytes(png)
        fetcher = ImageFetcher()
        assert fetcher(path.resolve().as_uri()) == png

    def handler(request):
        if request.url.path == "/ok.png":
            return httpx.Response(200, content=png)
        return httpx.Response(404)

    fetcher = ImageFetcher(transport=httpx.MockTransport(handler))
    try:
        assert fetcher("https://img.test/ok.png") == png
        try:
            fetcher("https://img.test/missing.png")
            raise AssertionError("404 should raise")
        except RuntimeError as e:
            assert "404" in str(e)
    finally:
        fetcher.close()

    print("  PASS: Image fetcher reads files and HTTP")


# ============================================================
# Runner
# ============================================================

def main():
    tests = [
        test_slot_box,
        test_compose_pages,
        test_fit_image,
        test_composition_is_deterministic,
        test_placeholder_for_missing_images,
        test_fetch_cache,
        test_unknown_slot_panel,
        test_single_page,
        test_cover_title_position,
        test_narration_position,
        test_dialogue_drawn_at_position,
        test_page_footer,
        test_generate_pdf,
        test_image_fetcher,
    ]

    print("\nPage Composer Tests")
    print("=" * 50)

    failed = 0
    for test in tests:
        print(f"\n{test.__name__}:")
        try:
            test()
        except Exception as e:
            print(f"  FAIL: {e}")
            failed += 1

    print("\n" + "=" * 50)
    print(f"Results: {len(tests) - failed} passed, {failed} failed")
    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
