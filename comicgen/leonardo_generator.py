"""
Comicgen - Leonardo Panel Generator.

Generates panel images with the Leonardo.ai API and pushes them to object
storage. Each panel runs a small state machine:

    PENDING -> POLLING -> DOWNLOADING -> UPLOADING -> DONE
                 \\-> FAILED (service failure, timeout, rate limit, upload error)

Panels are processed one at a time with an inter-panel delay, which is the
backpressure knob for the service's rate limit. A failing panel never fails
the batch; it is reported in PanelBatchResult.failed.

Before the panels, generate_characters() draws one reference sheet per
character. Their image ids are passed as context for the cover panel.

MockPanelGenerator skips the service entirely and fills canned URLs.
"""

import asyncio
import logging
import random
from typing import Iterable, Optional, Union

import httpx

from comicgen.config import Settings
from comicgen.errors import (
    GenerationTimeout,
    PanelGenerationError,
    PipelineCancelled,
    RateLimitError,
)
from comicgen.models import (
    DEFAULT_PANEL_HEIGHT,
    DEFAULT_PANEL_WIDTH,
    MAX_PANEL_DIM,
    MIN_PANEL_DIM,
    PanelBatchResult,
    PanelState,
    Panel,
    Project,
    clamp_dimension,
)
from comicgen.prompt_builder import character_prompt
from comicgen.storage import Uploader, build_uploader

logger = logging.getLogger(__name__)

LEONARDO_BASE_URL = "https://cloud.leonardo.ai/api/rest/v1"

# Seed formulas
INITIAL_SEED_BASE = 17000
INITIAL_SEED_STEP = 17
REGEN_SEED_BASE = 18000
REGEN_SEED_STEP = 23
REGEN_SEED_JITTER = 10000

MOCK_URL_TEMPLATE = "https://picsum.photos/seed/{panel_id}/{width}/{height}"


def parse_panel_ids(value: Union[str, Iterable[str], None]) -> list[str]:
    """'panel4, panel7,,panel4' -> ['panel4', 'panel7'] (order kept, no duplicates)."""
    if value is None:
        return []
    parts = value.split(",") if isinstance(value, str) else list(value)
    ids = []
    for part in parts:
        part = str(part).strip()
        if part and part not in ids:
            ids.append(part)
    return ids


def initial_seed(index: int) -> int:
    """Stable per panel position so re-runs are reproducible."""
    return INITIAL_SEED_BASE + index * INITIAL_SEED_STEP


def regeneration_seed(index: int, prior: Optional[int] = None, rng: Optional[random.Random] = None) -> int:
    """Explore a different point of the model's space. Never the prior seed."""
    rng = rng or random
    seed = REGEN_SEED_BASE + index * REGEN_SEED_STEP + rng.randint(0, REGEN_SEED_JITTER - 1)
    if seed == prior:
        seed += 1
    return seed


def validate_context_ids(project: Project, panels: Optional[list[Panel]] = None) -> int:
    """Drop context references to self or later panels. Returns how many were dropped."""
    dropped = 0
    for panel in project.panels if panels is None else panels:
        index = project.panel_index(panel.id)
        kept = []
        for ref in panel.context_panel_ids:
            ref_index = project.panel_index(ref)
            if 0 <= ref_index < index:
                kept.append(ref)
            else:
                logger.warning(f"{panel.id}: dropping context reference '{ref}' (not an earlier panel)")
                dropped += 1
        panel.context_panel_ids = kept
    return dropped


class PanelGenerator:
    """
    Batch driver shared by the real and mock generators.

    Subclasses implement _generate_panel() for one panel; this class picks
    the targets, spaces them out, honours cancellation and collects results.
    """

    inter_panel_delay: float = 0.0

    def __init__(self):
        self.states: dict[str, PanelState] = {}

    def _set_state(self, panel: Panel, state: PanelState):
        self.states[panel.id] = state
        logger.debug(f"{panel.id}: {state.value}")

    async def close(self):
        pass

    async def generate_characters(
        self,
        project: Project,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PanelBatchResult:
        """Reference images for the cast. This generator draws none."""
        return PanelBatchResult()

    def _resolve_targets(self, project: Project, panel_ids, result: PanelBatchResult) -> list[Panel]:
        if panel_ids is None:
            return [p for p in project.panels if not p.is_complete]

        targets = []
        for panel_id in parse_panel_ids(panel_ids):
            panel = project.get_panel(panel_id)
            if panel is None:
                logger.warning(f"Unknown panel id '{panel_id}' - skipped")
                result.skipped.append(panel_id)
            else:
                targets.append(panel)
        return targets

    async def generate_panels(
        self,
        project: Project,
        panel_ids: Union[str, Iterable[str], None] = None,
        regenerate: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PanelBatchResult:
        """
        Generate images for panels of a project.

        Args:
            project: Project whose panels get their image URLs filled in place
            panel_ids: None for every panel without an image, or an explicit
                list / comma-separated string. Explicit panels are processed
                even when already complete; unknown ids are reported as skipped.
            regenerate: Use fresh seeds (selective regeneration)
            cancel_event: Set it to stop submitting and abandon the current poll

        Returns:
            PanelBatchResult (successful / failed / skipped / source_map / cancelled)
        """
        result = PanelBatchResult()
        targets = self._resolve_targets(project, panel_ids, result)
        validate_context_ids(project, targets)

        logger.info(
            f"Generating {len(targets)} panel(s) for project {project.id}"
            + (f" ({len(result.skipped)} unknown id(s) skipped)" if result.skipped else "")
        )

        for order, panel in enumerate(targets):
            if order > 0 and self.inter_panel_delay > 0:
                await _wait(self.inter_panel_delay, cancel_event)

            if cancel_event is not None and cancel_event.is_set():
                logger.warning("Cancelled - no further panels will be submitted")
                result.cancelled = True
                break

            self._set_state(panel, PanelState.PENDING)
            try:
                url = await self._generate_panel(project, panel, regenerate, cancel_event)
            except PipelineCancelled:
                logger.warning(f"{panel.id}: abandoned (cancelled)")
                self._set_state(panel, PanelState.FAILED)
                result.cancelled = True
                break
            except Exception as e:
                logger.error(f"{panel.id} generation failed: {e}")
                self._set_state(panel, PanelState.FAILED)
                result.failed[panel.id] = str(e) or type(e).__name__
                continue

            self._set_state(panel, PanelState.DONE)
            result.successful.append(panel.id)
            result.source_map[panel.id] = url

        logger.info(
            f"Panels: {len(result.successful)} ok, {len(result.failed)} failed, "
            f"{len(result.skipped)} skipped" + (" (cancelled)" if result.cancelled else "")
        )
        return result

    async def _generate_panel(
        self,
        project: Project,
        panel: Panel,
        regenerate: bool,
        cancel_event: Optional[asyncio.Event],
    ) -> str:
        raise NotImplementedError


async def _wait(seconds: float, cancel_event: Optional[asyncio.Event]):
    """Sleep, waking early if the cancel event is set."""
    if cancel_event is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


class LeonardoPanelGenerator(PanelGenerator):
    """Generates comic panel images via Leonardo.ai."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        uploader: Optional[Uploader] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        rng: Optional[random.Random] = None,
    ):
        super().__init__()
        self.settings = settings or Settings()
        self.api_key = self.settings.leonardo_api_key
        if not self.api_key:
            logger.warning("LEONARDO_API_KEY not set - image generation will fail")
        self.uploader = uploader or build_uploader(self.settings)
        self.inter_panel_delay = self.settings.inter_panel_delay
        self._transport = transport
        self._rng = rng or random.Random()
        self._client: Optional[httpx.AsyncClient] = None

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _get_client(self) -> httpx.AsyncClient:
        """Lazy-load the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=300, transport=self._transport)
        return self._client

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _generate_panel(self, project, panel, regenerate, cancel_event) -> str:
        """Submit -> poll -> download -> upload. Writes results into the panel only on success."""
        index = project.panel_index(panel.id)
        if regenerate or panel.seed is not None:
            seed = regeneration_seed(index, prior=panel.seed, rng=self._rng)
        else:
            seed = initial_seed(index)

        width, height = self._checked_dimensions(panel)
        payload = self._payload(panel.prompt, width, height, seed)
        context_images = self._context_images(project, panel)
        if context_images:
            payload["contextImages"] = context_images

        logger.info(
            f"Generating {panel.id} ({index + 1}/{len(project.panels)}, seed {seed}, "
            f"{len(context_images)} context image(s)): {panel.prompt[:60]}..."
        )

        public_url, generation_id, image_id = await self._render(
            payload,
            public_id=f"panel_{index + 1}",
            folder=f"comic/{project.id}/panels",
            cancel_event=cancel_event,
            panel=panel,
        )

        panel.generated_image_url = public_url
        panel.generation_id = generation_id
        panel.image_id = image_id
        panel.seed = seed
        return public_url

    async def generate_characters(
        self,
        project: Project,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PanelBatchResult:
        """
        Generate one reference sheet per character that has none yet.

        The sheet's image id becomes context for the cover panel and its URL
        is appended to the character's references. A failed sheet is
        reported in the result; the cover is then drawn without it.
        """
        result = PanelBatchResult()
        if not self.settings.character_sheets:
            return result

        targets = [c for c in project.characters if not c.image_id]
        logger.info(f"Generating {len(targets)} character sheet(s) for project {project.id}")

        for order, character in enumerate(targets):
            if order > 0 and self.inter_panel_delay > 0:
                await _wait(self.inter_panel_delay, cancel_event)
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                break

            index = project.characters.index(character)
            prompt = character_prompt(
                character.name, character.description, project.style, project.visual_style or None,
            )
            try:
                url, _, image_id = await self._render(
                    self._payload(prompt, DEFAULT_PANEL_WIDTH, DEFAULT_PANEL_HEIGHT, initial_seed(index)),
                    public_id=f"character_{index + 1}",
                    folder=f"comic/{project.id}/characters",
                    cancel_event=cancel_event,
                )
            except PipelineCancelled:
                logger.warning(f"{character.id}: sheet abandoned (cancelled)")
                result.cancelled = True
                break
            except Exception as e:
                logger.error(f"{character.id} sheet failed: {e}")
                result.failed[character.id] = str(e) or type(e).__name__
                continue

            character.image_id = image_id
            if url not in character.reference_urls:
                character.reference_urls.append(url)
            result.successful.append(character.id)
            result.source_map[character.id] = url

        return result

    def _payload(self, prompt: str, width: int, height: int, seed: int) -> dict:
        return {
            "prompt": prompt,
            "modelId": self.settings.leonardo_model_id,
            "width": width,
            "height": height,
            "num_images": 1,
            "seed": seed,
            "enhancePrompt": self.settings.enhance_prompt,
            "contrastRatio": self.settings.contrast_ratio,
        }

    async def _render(
        self,
        payload: dict,
        public_id: str,
        folder: str,
        cancel_event: Optional[asyncio.Event] = None,
        panel: Optional[Panel] = None,
    ) -> tuple[str, str, Optional[str]]:
        """Submit, poll, download, upload. Returns (public URL, generation id, image id)."""
        generation_id = await self._submit(payload)

        if panel is not None:
            self._set_state(panel, PanelState.POLLING)
        image_url, image_id = await self._poll_result(generation_id, cancel_event)

        if panel is not None:
            self._set_state(panel, PanelState.DOWNLOADING)
        data = await self._download_image(image_url)

        if panel is not None:
            self._set_state(panel, PanelState.UPLOADING)
        public_url = await self.uploader.upload(data, public_id=public_id, folder=folder)
        return public_url, generation_id, image_id

    def _checked_dimensions(self, panel: Panel) -> tuple[int, int]:
        width, height = clamp_dimension(panel.width), clamp_dimension(panel.height)
        if (width, height) != (panel.width, panel.height):
            logger.warning(
                f"{panel.id}: size {panel.width}x{panel.height} outside "
                f"[{MIN_PANEL_DIM}, {MAX_PANEL_DIM}] - clamped to {width}x{height}"
            )
        return width, height

    def _context_images(self, project: Project, panel: Panel) -> list[dict]:
        """
        Service-native image ids: character sheets for the cover, then
        earlier panels. Advisory: anything without a known id is skipped.
        """
        index = project.panel_index(panel.id)
        images = []
        if index == 0:
            images.extend(
                {"type": "GENERATED", "id": c.image_id} for c in project.characters if c.image_id
            )
        for ref in panel.context_panel_ids:
            ref_panel = project.get_panel(ref)
            if ref_panel is None or project.panel_index(ref) >= index:
                continue
            if not ref_panel.image_id:
                logger.debug(f"{panel.id}: context {ref} has no image id yet - skipped")
                continue
            images.append({"type": "GENERATED", "id": ref_panel.image_id})
        return images[: self.settings.max_context_images]

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """One HTTP call. On 429 wait poll_interval x 2 and retry once."""
        client = self._get_client()
        response = await client.request(method, url, **kwargs)
        if response.status_code != 429:
            return response

        backoff = self.settings.poll_interval * 2
        logger.warning(f"Leonardo rate limited - retrying in {backoff:.0f}s")
        await asyncio.sleep(backoff)
        response = await client.request(method, url, **kwargs)
        if response.status_code == 429:
            raise RateLimitError("Leonardo rate limit (429) persisted after retry")
        return response

    async def _submit(self, payload: dict) -> str:
        response = await self._request(
            "POST",
            f"{LEONARDO_BASE_URL}/generations",
            headers=self._headers(),
            json=payload,
        )
        if not response.is_success:
            raise PanelGenerationError(
                f"Leonardo submit failed ({response.status_code}): {response.text[:500]}"
            )

        try:
            generation_id = response.json()["sdGenerationJob"]["generationId"]
        except (ValueError, KeyError, TypeError) as e:
            raise PanelGenerationError(f"Leonardo submit returned no generation id: {e}") from e

        logger.info(f"Leonardo generation started: {generation_id}")
        return generation_id

    async def _poll_result(
        self,
        generation_id: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> tuple[str, Optional[str]]:
        """Poll until COMPLETE. Returns (image URL, service image id)."""
        interval = self.settings.poll_interval
        max_attempts = self.settings.max_attempts

        for attempt in range(1, max_attempts + 1):
            await _wait(interval, cancel_event)
            if cancel_event is not None and cancel_event.is_set():
                raise PipelineCancelled(f"Polling of {generation_id} abandoned")

            response = await self._request(
                "GET",
                f"{LEONARDO_BASE_URL}/generations/{generation_id}",
                headers=self._headers(),
            )
            if not response.is_success:
                logger.warning(f"Leonardo poll failed: {response.status_code} (attempt {attempt})")
                continue

            gen_info = response.json().get("generations_by_pk") or {}
            status = gen_info.get("status", "")

            if status == "COMPLETE":
                images = gen_info.get("generated_images") or []
                if not images or not images[0].get("url"):
                    raise PanelGenerationError("Leonardo returned no images")
                logger.info(f"Leonardo generation complete (attempt {attempt})")
                return images[0]["url"], images[0].get("id")

            if status == "FAILED":
                raise PanelGenerationError("Leonardo generation failed")

            logger.debug(f"Leonardo status: {status} (attempt {attempt}/{max_attempts})")

        raise GenerationTimeout(
            f"Leonardo timed out after {max_attempts} polls ({max_attempts * interval:.0f}s)"
        )

    async def _download_image(self, url: str) -> bytes:
        response = await self._request("GET", url)
        if not response.is_success:
            raise PanelGenerationError(f"Image download failed ({response.status_code})")
        logger.info(f"Image downloaded ({len(response.content):,} bytes)")
        return response.content


class MockPanelGenerator(PanelGenerator):
    """Fills panel URLs without calling the image service."""

    def __init__(self, urls: Optional[dict] = None):
        super().__init__()
        self.urls = dict(urls or {})

    async def _generate_panel(self, project, panel, regenerate, cancel_event) -> str:
        url = self.urls.get(panel.id) or MOCK_URL_TEMPLATE.format(
            panel_id=f"{project.id}-{panel.id}",
            width=panel.width,
            height=panel.height,
        )
        panel.generated_image_url = url
        logger.info(f"{panel.id}: mock image {url}")
        return url
