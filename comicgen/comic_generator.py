"""
Comicgen - Main Orchestrator.

ComicPipeline ties all stages together:
  Request -> Story -> Character Sheets -> Panel Images -> Dialogue -> Pages (+ uploads) -> PDF

The Project document is owned by the pipeline for the whole request and is
persisted after every stage, so a crash loses at most one stage of work.

Failure policy:
- Config errors raise ConfigError before anything is written.
  A request naming an existing project id is a config error too.
- Single panel failures are collected into ComicResult.errors; the panel is
  drawn as a placeholder.
- Character sheet failures are collected too; the cover is drawn without
  them as context.
- Zero successful panels ends the run with status "failed" and no pages.
- Store, stage and composition errors end the run with status "failed"
  after persisting what exists.
- Cancellation ends the run with status "cancelled", never "failed".
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Callable, Optional

from comicgen.config import Settings
from comicgen.dialogue_generator import DialogueGenerator
from comicgen.errors import (
    CompositionError,
    ConfigError,
    EditTargetNotFound,
    PipelineCancelled,
    ProjectStoreError,
    StageError,
)
from comicgen.layouts import layout_for
from comicgen.leonardo_generator import (
    LeonardoPanelGenerator,
    MockPanelGenerator,
    PanelGenerator,
    parse_panel_ids,
)
from comicgen.llm_client import LLMClient
from comicgen.models import (
    Character,
    ComicRequest,
    ComicResult,
    PageImage,
    Panel,
    Project,
    ProjectStatus,
)
from comicgen.page_composer import PageComposer
from comicgen.project_store import ProjectStore
from comicgen.prompt_builder import validate_request
from comicgen.storage import Uploader, build_uploader
from comicgen.story_structurer import StoryStructurer

logger = logging.getLogger(__name__)


class ComicPipeline:
    """
    End-to-end comic generator.

    Usage:
        pipeline = ComicPipeline()
        result = await pipeline.generate_comic(
            ComicRequest(prompt="mars astronaut meets hologram", page_count=3),
        )
        # result.status, result.pages, result.page_urls, result.errors
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[ProjectStore] = None,
        llm: Optional[LLMClient] = None,
        panel_generator: Optional[PanelGenerator] = None,
        composer: Optional[PageComposer] = None,
        uploader: Optional[Uploader] = None,
    ):
        self.settings = settings or Settings.load()
        self.store = store or ProjectStore(self.settings.projects_dir)
        self.uploader = uploader or build_uploader(self.settings)
        self.llm = llm or LLMClient(self.settings)

        if panel_generator is not None:
            self.panel_generator = panel_generator
        elif self.settings.mock_mode:
            logger.info("Mock mode - panel images will not be generated")
            self.panel_generator = MockPanelGenerator(self.settings.mock_urls)
        else:
            self.panel_generator = LeonardoPanelGenerator(self.settings, uploader=self.uploader)

        self.story_structurer = StoryStructurer(self.llm, self.settings)
        self.dialogue_generator = DialogueGenerator(self.llm, self.settings)
        self.composer = composer or PageComposer(self.settings)

    async def generate_comic(
        self,
        request: ComicRequest,
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: Optional[Callable] = None,
    ) -> ComicResult:
        """
        Generate a complete comic.

        Args:
            request: What to draw
            cancel_event: Set it to cancel; the run stops at the next
                suspension point and reports status "cancelled"
            on_progress: Optional callback(stage: str, details: dict)

        Returns:
            ComicResult with pages, page URLs, the project and errors

        Raises:
            ConfigError: invalid request, missing credentials, or a project
                id that is already taken
        """
        validate_request(request)
        self.settings.validate()
        if request.project_id:
            self._check_new_project_id(request.project_id)

        project = Project(
            id=request.project_id or self._new_project_id(),
            user_prompt=request.prompt.strip(),
            genre=request.genre,
            style=request.art_style,
            tone=request.tone,
            page_count=request.page_count,
            target_audience=request.target_audience,
            status=ProjectStatus.STRUCTURING.value,
        )
        result = ComicResult(status=ProjectStatus.FAILED.value, project=project)
        layout = layout_for(request.page_count)

        logger.info("=" * 60)
        logger.info(f"COMIC PIPELINE: {request.prompt[:60]}")
        logger.info(f"  Project: {project.id} | {request.page_count} page(s) | {request.art_style}")
        logger.info("=" * 60)

        try:
            self.store.save(project)

            # === Stage 1: Story ===
            self._progress(on_progress, "story", {"project_id": project.id})
            await self.story_structurer.structure(project, request)
            self.store.save(project)
            self._check_cancelled(cancel_event)

            # === Stage 2: Character Sheets ===
            sheets = await self.panel_generator.generate_characters(project, cancel_event=cancel_event)
            for character_id, message in sheets.failed.items():
                result.add_error("characters", f"{character_id}: {message}")
            if sheets.successful:
                self.store.save(project)
            if sheets.cancelled:
                raise PipelineCancelled("Cancelled during character sheets")

            # === Stage 3: Panel Images ===
            self._progress(on_progress, "images", {"panel_count": len(project.panels)})
            project.status = ProjectStatus.GENERATING_PANELS.value
            self.store.save(project)

            batch = await self.panel_generator.generate_panels(project, cancel_event=cancel_event)
            for panel_id, message in batch.failed.items():
                result.add_error("panels", message, panel_id=panel_id)
            self.store.save(project)

            if batch.cancelled:
                raise PipelineCancelled("Cancelled during panel generation")

            panels_ok = len(project.completed_panels)
            logger.info(f"Images: {panels_ok}/{len(project.panels)} panels generated")
            if panels_ok == 0:
                logger.error("No panel images generated - aborting pipeline")
                result.add_error("panels", "No panel images were generated")
                return self._finish(result, ProjectStatus.FAILED)

            # === Stage 4: Dialogue ===
            self._progress(on_progress, "dialogue", {"panels_ok": panels_ok})
            project.status = ProjectStatus.GENERATING_DIALOGUE.value
            dialogue = await self.dialogue_generator.generate(project)
            if not dialogue.success:
                result.add_error("dialogue", dialogue.error or "Dialogue generation failed")
            self.store.save(project)
            self._check_cancelled(cancel_event)

            # === Stage 5: Pages ===
            self._progress(on_progress, "composition", {"pages": len(layout.pages)})
            project.status = ProjectStatus.COMPOSING.value
            self.store.save(project)

            result.pages = await asyncio.to_thread(self.composer.compose_pages, project, layout)
            self._check_cancelled(cancel_event)

            if self.settings.upload_pages:
                result.page_urls = await self._upload_pages(project, result.pages, result)

            layout_ids = set(layout.panel_ids)
            incomplete = [p.id for p in project.panels if p.id in layout_ids and not p.is_complete]
            status = ProjectStatus.PARTIAL if incomplete else ProjectStatus.COMPLETE

        except PipelineCancelled as e:
            logger.warning(f"Pipeline cancelled: {e}")
            return self._finish(result, ProjectStatus.CANCELLED)

        except (ProjectStoreError, StageError, CompositionError) as e:
            logger.error(f"Pipeline aborted: {e}")
            result.add_error(type(e).__name__, str(e))
            result.pages = []
            return self._finish(result, ProjectStatus.FAILED)

        self._finish(result, status)
        self._progress(on_progress, "complete", {"project_id": project.id, "status": result.status})

        logger.info("=" * 60)
        logger.info("COMIC PIPELINE COMPLETE")
        logger.info(f"  Title: {project.title}")
        logger.info(f"  Panels: {len(project.completed_panels)}/{len(project.panels)}")
        logger.info(f"  Pages: {len(result.pages)}")
        logger.info(f"  Status: {result.status}")
        logger.info(f"  Errors: {len(result.errors)}")
        logger.info("=" * 60)

        return result

    async def regenerate_panels(self, project_id: Optional[str], panel_ids) -> dict:
        """
        Regenerate selected panels of a stored project with fresh seeds.

        Panels not named are never touched. With zero resolvable ids nothing
        is generated and the project is not written.

        Raises:
            ProjectNotFound: no such project (or no projects at all)
        """
        project_id = project_id or self.store.latest_id()
        project = self.store.load(project_id)

        requested = parse_panel_ids(panel_ids)
        resolvable = [pid for pid in requested if project.get_panel(pid) is not None]
        skipped = [pid for pid in requested if pid not in resolvable]

        logger.info("=" * 60)
        logger.info(f"REGENERATE PANELS: {project.id} -> {', '.join(requested) or '(none)'}")
        logger.info("=" * 60)

        if not resolvable:
            return {
                "success": False,
                "projectId": project.id,
                "totalRequested": len(requested),
                "successfulPanels": 0,
                "failedPanels": 0,
                "failedPanelIds": [],
                "skippedPanelIds": skipped,
                "results": [],
                "sourceMap": {},
                "message": "No valid panel ids to regenerate",
            }

        batch = await self.panel_generator.generate_panels(project, resolvable, regenerate=True)
        self.store.save(project)

        results = []
        for pid in resolvable:
            if pid in batch.source_map:
                results.append({"panelId": pid, "success": True, "url": batch.source_map[pid]})
            else:
                results.append({
                    "panelId": pid,
                    "success": False,
                    "error": batch.failed.get(pid, "cancelled"),
                })

        failed_ids = [pid for pid in resolvable if pid not in batch.source_map]
        return {
            "success": len(batch.successful) > 0,
            "projectId": project.id,
            "totalRequested": len(requested),
            "successfulPanels": len(batch.successful),
            "failedPanels": len(failed_ids),
            "failedPanelIds": failed_ids,
            "skippedPanelIds": skipped,
            "results": results,
            "sourceMap": dict(batch.source_map),
            "message": (
                f"Regenerated {len(batch.successful)}/{len(resolvable)} panel(s)"
                + (f", {len(skipped)} unknown id(s) skipped" if skipped else "")
            ),
        }

    async def compose_project(self, project_id: str) -> tuple[list[PageImage], bytes]:
        """Re-compose a stored project. Returns (pages, pdf bytes)."""
        project = self.store.load(project_id)
        layout = layout_for(project.page_count)
        pages = await asyncio.to_thread(self.composer.compose_pages, project, layout)
        pdf = await asyncio.to_thread(self.composer.generate_pdf, pages)
        return pages, pdf

    def edit_project(
        self,
        project_id: Optional[str],
        target_type: str,
        target_id: str,
        field: str,
        value,
    ) -> dict:
        """
        Set one field of a panel or character in a stored project.

        Fields are document keys ("narration", "title", "dialogue",
        "description", ...); keys the document does not know are stored
        as-is. Everything else in the project is left untouched. Nothing is
        regenerated: a new prompt takes effect on the next regeneration.

        Raises:
            ConfigError: bad target type or field, or a value the panel rules reject
            ProjectNotFound: no such project (or no projects at all)
            EditTargetNotFound: no panel or character with that id
        """
        if target_type not in ("panel", "character"):
            raise ConfigError(f"targetType must be 'panel' or 'character', not {target_type!r}")
        if not target_id:
            raise ConfigError("targetId is required")
        if not field or field == "id":
            raise ConfigError(f"Field {field!r} cannot be edited")

        project_id = project_id or self.store.latest_id()
        previous = {}

        def apply(project: Project):
            items = project.panels if target_type == "panel" else project.characters
            index = next((i for i, item in enumerate(items) if item.id == target_id), -1)
            if index < 0:
                raise EditTargetNotFound(target_type, target_id, [item.id for item in items])

            data = items[index].to_dict()
            previous["value"] = data.get(field)
            data[field] = value
            try:
                if target_type == "panel":
                    edited = Panel.from_dict(data)
                    self._check_panel_edit(project, index, edited)
                else:
                    edited = Character.from_dict(data)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"Invalid value for {target_id}.{field}: {e}") from e
            items[index] = edited

        project = self.store.patch(project_id, apply)
        logger.info(f"Edited {project.id}: {target_id}.{field}")

        return {
            "success": True,
            "projectId": project.id,
            "targetType": target_type,
            "targetId": target_id,
            "field": field,
            "oldValue": previous["value"],
            "newValue": value,
            "message": f"Updated {target_id}.{field}",
        }

    def _check_panel_edit(self, project: Project, index: int, panel: Panel):
        unknown = [line.speaker for line in panel.dialogue if line.speaker not in project.character_ids]
        if unknown:
            raise ConfigError(f"{panel.id}: unknown speaker(s) {', '.join(unknown)}")
        if index == 0 and (panel.dialogue or panel.narration):
            raise ConfigError(f"{panel.id} is the cover: it carries a title only")

    def _check_new_project_id(self, project_id: str):
        try:
            taken = self.store.exists(project_id)
        except ProjectStoreError as e:
            raise ConfigError(str(e)) from e
        if taken:
            raise ConfigError(
                f"Project {project_id} already exists - regenerate or edit its panels instead"
            )

    async def close(self):
        """Clean up resources."""
        await self.panel_generator.close()
        await self.llm.close()
        self.composer.close()

    async def _upload_pages(self, project: Project, pages: list[PageImage], result: ComicResult) -> list[dict]:
        urls = []
        for page in pages:
            try:
                url = await self.uploader.upload(
                    page.image_bytes,
                    public_id=f"page_{page.page_number}",
                    folder=f"comic/{project.id}/pages",
                    content_type=page.mime,
                )
            except Exception as e:
                logger.error(f"Page {page.page_number} upload failed: {e}")
                result.add_error("upload", f"Page {page.page_number}: {e}")
                continue
            urls.append({"page": page.page_number, "url": url})
        return urls

    def _finish(self, result: ComicResult, status: ProjectStatus) -> ComicResult:
        """Record the final status and persist whatever project state exists."""
        result.status = status.value
        project = result.project
        project.status = status.value
        if result.page_urls:
            project.extra["page_urls"] = [dict(p) for p in result.page_urls]
        try:
            self.store.save(project)
        except ProjectStoreError as e:
            logger.error(f"Could not persist final project state: {e}")
            result.add_error("store", str(e))
        return result

    def _check_cancelled(self, cancel_event: Optional[asyncio.Event]):
        if cancel_event is not None and cancel_event.is_set():
            raise PipelineCancelled("Cancelled by caller")

    def _new_project_id(self) -> str:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return f"comic_{timestamp}_{uuid.uuid4().hex[:6]}"

    def _progress(self, callback, stage: str, details: dict):
        """Report progress if callback is set."""
        if callback:
            try:
                callback(stage, details)
            except Exception as e:
                logger.warning(f"Progress callback failed ({stage}): {e}")
