"""
Generate a comic from the command line.

Usage:
    python generate_comic.py --prompt "mars astronaut meets hologram" --pages 3
    python generate_comic.py --prompt "..." --mock --output out/
    python generate_comic.py --regenerate panel4,panel7 --project comic_20260101_120000_ab12cd
    python generate_comic.py --edit panel3 --field narration --value "Night fell."
    python generate_comic.py --edit char_1 --field description --value "older, grey hair"
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    stream=sys.stdout,
)

from comicgen.comic_generator import ComicPipeline
from comicgen.config import Settings
from comicgen.errors import ComicError
from comicgen.models import ComicRequest


def parse_value(text: str):
    """JSON when it parses (null, lists, numbers), plain text otherwise."""
    try:
        return json.loads(text)
    except ValueError:
        return text


def write_outputs(pages, pdf: bytes, output_dir: str):
    """Write page_N.png files and comic.pdf into output_dir."""
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    for page in pages:
        (out / f"page_{page.page_number}.png").write_bytes(page.image_bytes)
    (out / "comic.pdf").write_bytes(pdf)
    print(f"Wrote {len(pages)} page(s) and comic.pdf to {out}")


async def run(args) -> int:
    settings = Settings.load(args.config)
    if args.mock:
        settings.mock_mode = True
    pipeline = ComicPipeline(settings=settings)

    try:
        if args.edit:
            summary = pipeline.edit_project(
                args.project,
                "character" if args.edit.startswith("char_") else "panel",
                args.edit,
                args.field,
                parse_value(args.value),
            )
            print(json.dumps(summary, indent=2))
            return 0

        if args.regenerate:
            summary = await pipeline.regenerate_panels(args.project, args.regenerate)
            print(json.dumps(summary, indent=2))
            if args.output and summary["success"]:
                pages, pdf = await pipeline.compose_project(summary["projectId"])
                write_outputs(pages, pdf, args.output)
            return 0 if summary["success"] else 1

        result = await pipeline.generate_comic(ComicRequest(
            prompt=args.prompt,
            art_style=args.style,
            page_count=args.pages,
            genre=args.genre,
            tone=args.tone,
            target_audience=args.audience,
            reference_images=args.reference or [],
        ))

        print("\n" + "=" * 60)
        print(f"PROJECT: {result.project.id}")
        print(f"TITLE: {result.project.title}")
        for character in result.project.characters:
            refs = ", ".join(character.reference_urls) or "(no references)"
            print(f"  {character.id} {character.name}: {refs}")
        print(f"STATUS: {result.status}")
        print(f"PAGES: {len(result.pages)}")
        for page in result.page_urls:
            print(f"  Page {page['page']}: {page['url']}")
        for error in result.errors:
            print(f"  ERROR [{error['stage']}] {error.get('panelId', '')} {error['message']}")
        print("=" * 60)

        if args.output and result.pages:
            pdf = pipeline.composer.generate_pdf(result.pages)
            write_outputs(result.pages, pdf, args.output)
        return 0 if result.pages else 1

    except ComicError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    finally:
        await pipeline.close()


def main():
    parser = argparse.ArgumentParser(description="Generate a multi-page comic from a prompt")
    parser.add_argument("--prompt", type=str, help="Story prompt")
    parser.add_argument("--pages", type=int, default=3, help="Page count, 1-5 (default: 3)")
    parser.add_argument("--style", type=str, default="cinematic", help="Art style (default: cinematic)")
    parser.add_argument("--genre", type=str, default="adventure", help="Genre (default: adventure)")
    parser.add_argument("--tone", type=str, default="dramatic", help="Tone (default: dramatic)")
    parser.add_argument("--audience", type=str, default="general", help="Target audience (default: general)")
    parser.add_argument("--reference", action="append", help="Reference image URL (repeatable)")
    parser.add_argument("--mock", action="store_true", help="Skip the image service, use placeholder images")
    parser.add_argument("--regenerate", type=str, help="Comma-separated panel ids to regenerate")
    parser.add_argument("--edit", type=str, help="Panel or character id to edit (panel3, char_1)")
    parser.add_argument("--field", type=str, help="Field to set with --edit (narration, title, dialogue, ...)")
    parser.add_argument("--value", type=str, help="New value for --field; JSON is parsed, null clears")
    parser.add_argument("--project", type=str, help="Project id for --regenerate or --edit (default: latest)")
    parser.add_argument("--output", type=str, help="Directory for page PNGs and comic.pdf")
    parser.add_argument("--config", type=str, default=None, help="YAML settings file")
    args = parser.parse_args()

    if args.edit and (not args.field or args.value is None):
        parser.error("--edit needs --field and --value")
    if not args.regenerate and not args.edit and not args.prompt:
        parser.error("--prompt is required unless --regenerate or --edit is given")

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
