"""
Dialogue Generator - Test Suite.

Feeds canned LLM responses through DialogueGenerator and checks the merge
rules: known speakers only, short lines, cover without speech, dialogue
or narration but not both.

Usage:
    python test_dialogue_generator.py
    pytest test_dialogue_generator.py
"""

import asyncio
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from comicgen.dialogue_generator import (
    DEFAULT_TITLE,
    DialogueGenerator,
    default_position,
    truncate_words,
)
from comicgen.llm_client import parse_json_array, parse_json_object
from comicgen.models import Character, DialogueLine, Panel, Project


# ============================================================
# Helpers
# ============================================================

class CannedLLM:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.prompts = []

    async def invoke(self, messages, system="", max_tokens=None):
        self.prompts.append(messages[-1]["content"])
        if self.error:
            raise self.error
        return {"content": self.content, "usage": {}}

    async def close(self):
        pass


def make_project(title="Red Planet Signal") -> Project:
    panels = [
        Panel(
            id=f"panel{i}",
            prompt=f"scene {i}",
            description=f"Scene {i} description",
            generated_image_url=f"https://storage.test/panel_{i}.png",
        )
        for i in range(1, 5)
    ]
    panels[0].title = title or None
    return Project(
        id="proj_dialogue",
        user_prompt="mars astronaut meets hologram",
        title=title,
        characters=[
            Character(id="char_1", name="Ava", description="orange suit"),
            Character(id="char_2", name="Hologram", description="blue light"),
        ],
        panels=panels,
    )


def generate(project, content=None, error=None):
    llm = CannedLLM(content, error)
    result = asyncio.run(DialogueGenerator(llm=llm).generate(project))
    return result, llm


def entries(*items) -> str:
    return json.dumps(list(items))


# ============================================================
# Test 1: Merge
# ============================================================

def test_merge():
    """Lines land on their panels with default placement."""
    project = make_project()
    result, llm = generate(project, entries(
        {"panelId": "panel1", "title": "Signal From Below", "dialogue": [], "narration": None},
        {"panelId": "panel2", "dialogue": [
            {"speaker": "char_1", "text": "That light was not here yesterday."},
            {"speaker": "char_2", "text": "I have always been here."},
        ]},
        {"panelId": "panel3", "dialogue": [], "narration": "Something had been waiting."},
        {"panelId": "panel4", "dialogue": [], "narration": None},
    ))

    assert result.success
    assert result.panels_updated == ["panel1", "panel2", "panel3", "panel4"]
    assert not project.dialogue_failed
    assert "char_1, char_2" in llm.prompts[0]

    assert project.panels[0].title == "Signal From Below"
    lines = project.panels[1].dialogue
    assert [(l.speaker, l.text) for l in lines] == [
        ("char_1", "That light was not here yesterday."),
        ("char_2", "I have always been here."),
    ]
    assert (lines[0].x, lines[0].y) == default_position(0) == (0.3, 0.12)
    assert lines[1].x == 0.7
    assert abs(lines[1].y - 0.27) < 1e-9
    assert project.panels[2].narration == "Something had been waiting."
    assert project.panels[3].dialogue == [] and project.panels[3].narration is None

    # Image fields are preserved
    assert project.panels[1].generated_image_url == "https://storage.test/panel_2.png"

    print("  PASS: Dialogue merged by panel id")


def test_unknown_speaker_dropped():
    """Lines from speakers outside the cast are dropped with a warning."""
    project = make_project()
    result, _ = generate(project, entries(
        {"panelId": "panel1", "title": "Red Planet Signal"},
        {"panelId": "panel2", "dialogue": [{"speaker": "char_1", "text": "Who are you?"}]},
        {"panelId": "panel3", "dialogue": [
            {"speaker": "char_99", "text": "I am nobody."},
            {"speaker": "char_2", "text": "A witness."},
        ]},
    ))

    assert result.success
    assert [l.speaker for l in project.panels[2].dialogue] == ["char_2"]
    assert any("char_99" in w for w in result.warnings)
    known = project.character_ids
    for panel in project.panels:
        assert all(line.speaker in known for line in panel.dialogue)

    print("  PASS: Unknown speaker dropped")


def test_unparsable_response_leaves_panels_untouched():
    project = make_project()
    project.panels[1].dialogue = [DialogueLine(speaker="char_1", text="Old line")]
    project.panels[2].narration = "Old narration"
    before = [p.to_dict() for p in project.panels]

    result, _ = generate(project, "Sure! Here you go: the hero says hi and the hologram waves.")

    assert not result.success
    assert "no JSON array" in result.error
    assert project.dialogue_failed
    assert [p.to_dict() for p in project.panels] == before

    print("  PASS: Unparsable response changes nothing")


def test_llm_error():
    project = make_project()
    before = [p.to_dict() for p in project.panels]

    result, _ = generate(project, error=TimeoutError("deadline passed"))

    assert not result.success
    assert "deadline passed" in result.error
    assert project.dialogue_failed
    assert [p.to_dict() for p in project.panels] == before

    print("  PASS: LLM failure is recorded, panels untouched")


# ============================================================
# Test 2: Cover rules
# ============================================================

def test_cover_has_title_and_no_speech():
    project = make_project()
    generate(project, entries(
        {"panelId": "panel1", "title": "The Buried Cities",
         "dialogue": [{"speaker": "char_1", "text": "Look!"}], "narration": "It began here."},
    ))

    cover = project.panels[0]
    assert cover.title == "The Buried Cities"
    assert cover.dialogue == []
    assert cover.narration is None

    print("  PASS: Cover keeps its title and drops speech")


def test_cover_title_defaults():
    """A cover without a title gets the story title, else the default."""
    project = make_project()
    generate(project, entries({"panelId": "panel1", "title": None}))
    assert project.panels[0].title == "Red Planet Signal"

    project = make_project(title="")
    generate(project, entries({"panelId": "panel2", "dialogue": []}))
    assert project.panels[0].title == DEFAULT_TITLE

    print("  PASS: Cover title falls back to story title, then default")


# ============================================================
# Test 3: Normalisation
# ============================================================

def test_lengths_enforced():
    long_line = " ".join(f"word{i}" for i in range(20))
    project = make_project()
    result, _ = generate(project, entries(
        {"panelId": "panel2", "dialogue": [
            {"speaker": "char_1", "text": long_line},
            {"speaker": "char_2", "text": "Two."},
            {"speaker": "char_1", "text": "Three."},
        ]},
        {"panelId": "panel3", "narration": long_line},
    ))

    lines = project.panels[1].dialogue
    assert len(lines) == 2
    assert lines[0].text == " ".join(f"word{i}" for i in range(14)) + "..."
    assert project.panels[2].narration == " ".join(f"word{i}" for i in range(15)) + "..."
    assert any("keeping 2" in w for w in result.warnings)

    assert truncate_words("  short   line ", 14) == "short line"

    print("  PASS: Line count and word limits enforced")


def test_dialogue_or_narration():
    project = make_project()
    generate(project, entries(
        {"panelId": "panel2", "dialogue": [{"speaker": "char_1", "text": "Hello."}], "narration": "Meanwhile."},
    ))

    assert len(project.panels[1].dialogue) == 1
    assert project.panels[1].narration is None

    print("  PASS: Dialogue wins over narration")


def test_regeneration_replaces_text():
    """Running twice replaces lines instead of appending them."""
    project = make_project()
    response = entries({"panelId": "panel2", "dialogue": [{"speaker": "char_1", "text": "Again."}]})
    generate(project, response)
    generate(project, response)

    assert [l.text for l in project.panels[1].dialogue] == ["Again."]

    print("  PASS: Text replaced, not appended")


def test_explicit_positions_clamped():
    project = make_project()
    generate(project, entries(
        {"panelId": "panel2", "dialogue": [
            {"speaker": "char_1", "text": "Up here.", "x": 1.5, "y": -1},
            {"speaker": "char_2", "text": "Down there.", "x": "left", "y": 0.8},
        ]},
    ))

    first, second = project.panels[1].dialogue
    assert (first.x, first.y) == (1.0, 0.0)
    assert second.x == 0.7
    assert second.y == 0.8

    print("  PASS: Explicit positions clamped into the panel")


def test_positional_entries():
    """Entries without panel ids are matched by position."""
    project = make_project()
    result, _ = generate(project, entries(
        {"title": "By Position"},
        {"dialogue": [{"speaker": "char_2", "text": "Second panel."}]},
        {}, {}, {"dialogue": [{"speaker": "char_1", "text": "No such panel."}]},
    ))

    assert project.panels[0].title == "By Position"
    assert project.panels[1].dialogue[0].text == "Second panel."
    assert any("Entry 5" in w for w in result.warnings)
    assert not any("by position" in w for w in result.warnings)

    print("  PASS: Positional entries matched, extras ignored")


def test_unknown_panel_id_falls_back_with_warning():
    """An entry naming a panel that does not exist lands by position, with a warning."""
    project = make_project()
    result, _ = generate(project, entries(
        {"panelId": "panel1", "title": "Red Planet Signal"},
        {"panelId": "panel99", "dialogue": [{"speaker": "char_1", "text": "Misnumbered."}]},
    ))

    assert result.success
    assert project.panels[1].dialogue[0].text == "Misnumbered."
    assert any("'panel99'" in w and "panel2 by position" in w for w in result.warnings)

    print("  PASS: Unknown panel id applied by position with a warning")


# ============================================================
# Test 4: JSON extraction
# ============================================================

def test_parse_json_array():
    payload = [{"panelId": "panel1"}]
    text = json.dumps(payload)

    assert parse_json_array(f"Here you go:\n```json\n{text}\n```\nEnjoy!") == payload
    assert parse_json_array(f"Sure. {text} Hope that helps.") == payload
    assert parse_json_array(json.dumps({"dialogue": payload}), wrapper_key="dialogue") == payload
    assert parse_json_array("[]") is None
    assert parse_json_array("no array here") is None
    assert parse_json_array('{"dialogue": []}', wrapper_key="dialogue") is None

    assert parse_json_object('```json\n{"title": "x"}\n```') == {"title": "x"}
    assert parse_json_object('Story: {"title": "x"} done') == {"title": "x"}
    assert parse_json_object("[1, 2]") is None
    assert parse_json_object("nothing") is None

    print("  PASS: Tolerant JSON extraction")


def test_wrapped_response():
    project = make_project()
    result, _ = generate(project, json.dumps({"dialogue": [
        {"panelId": "panel4", "dialogue": [{"speaker": "char_1", "text": "Wrapped."}]},
    ]}))

    assert result.success
    assert project.panels[3].dialogue[0].text == "Wrapped."

    print("  PASS: Object-wrapped array accepted")


# ============================================================
# Runner
# ============================================================

def main():
    tests = [
        test_merge,
        test_unknown_speaker_dropped,
        test_unparsable_response_leaves_panels_untouched,
        test_llm_error,
        test_cover_has_title_and_no_speech,
        test_cover_title_defaults,
        test_lengths_enforced,
        test_dialogue_or_narration,
        test_regeneration_replaces_text,
        test_explicit_positions_clamped,
        test_positional_entries,
        test_unknown_panel_id_falls_back_with_warning,
        test_parse_json_array,
        test_wrapped_response,
    ]

    print("\nDialogue Generator Tests")
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
