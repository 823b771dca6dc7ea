"""
Comicgen - AI comic generation pipeline.

One prompt -> a multi-page comic:
1. Story and characters (Claude)
2. Panel artwork (Leonardo.ai), uploaded to object storage
3. Cover title, dialogue and narration (Claude)
4. Composed page images (PNG) and a multi-page PDF

Usage:
    from comicgen import ComicPipeline, ComicRequest

    pipeline = ComicPipeline()
    result = await pipeline.generate_comic(
        ComicRequest(prompt="mars astronaut meets hologram", page_count=3),
    )
"""

from comicgen.comic_generator import ComicPipeline
from comicgen.models import ComicRequest, ComicResult, Panel, Project

__all__ = [
    "ComicPipeline",
    "ComicRequest",
    "ComicResult",
    "Panel",
    "Project",
]
