"""
Comicgen - Error types.

Config errors fail a request before any stage runs. Stage-internal
recoverable errors are caught at the stage boundary and accumulated;
the fatal ones below propagate up to the coordinator.
"""


class ComicError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(ComicError):
    """Missing credentials or an invalid request (surfaced as HTTP 400)."""


class ProjectStoreError(ComicError):
    """Project document could not be read or written."""


class ProjectNotFound(ProjectStoreError):
    """No project document exists for the given id."""

    def __init__(self, project_id: str):
        super().__init__(f"Project not found: {project_id}")
        self.project_id = project_id


class StageError(ComicError):
    """A stage left the project in a state the next stage cannot use."""


class CompositionError(ComicError):
    """Page composition cannot proceed (bad layout or canvas failure)."""


class PanelGenerationError(ComicError):
    """A single panel failed to generate, download or upload."""


class RateLimitError(PanelGenerationError):
    """The image service kept answering HTTP 429 after the retry."""


class GenerationTimeout(PanelGenerationError):
    """Polling ran out of attempts before the generation completed."""


class PipelineCancelled(ComicError):
    """The request was cancelled by the caller."""


class EditTargetNotFound(ComicError):
    """An edit named a panel or character the project does not have."""

    def __init__(self, target_type: str, target_id: str, available: list[str]):
        super().__init__(f"{target_type.capitalize()} not found: {target_id}")
        self.target_id = target_id
        self.available = available
