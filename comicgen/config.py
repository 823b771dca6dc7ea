"""
Comicgen - Settings.

Secrets come from the environment (populated from .env by the entry
points via python-dotenv). Tunables can be overridden from a YAML file,
config/comic.yaml by default or whatever COMIC_CONFIG points at.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Optional

import yaml

from comicgen.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_PATH = "config/comic.yaml"

# Leonardo Phoenix
DEFAULT_LEONARDO_MODEL = "6b645e3a-d64f-4341-a6d8-7a3690fbf042"
DEFAULT_LLM_MODEL = "claude-sonnet-4-20250514"

TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class Settings:
    """Everything the pipeline needs to run one request."""

    # Credentials
    leonardo_api_key: str = ""
    anthropic_api_key: str = ""
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""

    # Models
    leonardo_model_id: str = DEFAULT_LEONARDO_MODEL
    llm_model: str = DEFAULT_LLM_MODEL
    llm_timeout: float = 60.0
    llm_max_tokens: int = 4096

    # Panel generation
    poll_interval: float = 3.0
    max_attempts: int = 40
    inter_panel_delay: float = 3.0
    max_context_images: int = 4
    character_sheets: bool = True
    enhance_prompt: bool = True
    contrast_ratio: float = 0.5

    # Mock mode
    mock_mode: bool = False
    mock_urls: dict = field(default_factory=dict)

    # Storage
    data_dir: str = "data/comics"
    storage_bucket: Optional[str] = None
    storage_public_url: Optional[str] = None
    aws_region: str = "us-east-1"
    upload_pages: bool = True

    # Composition
    canvas_width: int = 1200
    canvas_height: int = 1600
    page_margin: int = 40

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Settings":
        """Build settings from YAML overrides plus the environment."""
        settings = cls()
        settings._apply_yaml(path or os.environ.get("COMIC_CONFIG", CONFIG_PATH))
        settings._apply_env()
        return settings

    def _apply_yaml(self, path: str):
        if not os.path.exists(path):
            return
        try:
            with open(path, "r", encoding="utf-8") as f:
                config = yaml.safe_load(f) or {}
        except Exception as e:
            logger.error(f"Failed to load config {path}: {e}")
            return

        known = {f.name for f in fields(self)}
        for key, value in config.items():
            if key in known:
                setattr(self, key, value)
            else:
                logger.warning(f"Unknown config key ignored: {key}")

    def _apply_env(self):
        env = os.environ
        self.leonardo_api_key = env.get("LEONARDO_API_KEY", self.leonardo_api_key)
        self.anthropic_api_key = env.get("ANTHROPIC_API_KEY", self.anthropic_api_key)
        self.aws_access_key_id = env.get("AWS_ACCESS_KEY_ID", self.aws_access_key_id)
        self.aws_secret_access_key = env.get("AWS_SECRET_ACCESS_KEY", self.aws_secret_access_key)
        self.llm_model = env.get("COMIC_LLM_MODEL", self.llm_model)
        self.data_dir = env.get("COMIC_DATA_DIR", self.data_dir)
        self.storage_bucket = env.get("COMIC_STORAGE_BUCKET", self.storage_bucket)
        self.storage_public_url = env.get("COMIC_STORAGE_PUBLIC_URL", self.storage_public_url)
        self.aws_region = env.get("AWS_REGION", self.aws_region)
        if "COMIC_MOCK_MODE" in env:
            self.mock_mode = env["COMIC_MOCK_MODE"].strip().lower() in TRUTHY

    @property
    def projects_dir(self) -> str:
        return os.path.join(self.data_dir, "projects")

    @property
    def assets_dir(self) -> str:
        """Local upload root when no bucket is configured."""
        return os.path.join(self.data_dir, "assets")

    def validate(self):
        """Fail fast on missing credentials before any stage runs."""
        if not self.mock_mode and not self.leonardo_api_key:
            raise ConfigError("LEONARDO_API_KEY not set (or enable COMIC_MOCK_MODE)")
        if not self.mock_mode and not self.anthropic_api_key:
            raise ConfigError("ANTHROPIC_API_KEY not set (or enable COMIC_MOCK_MODE)")
        if self.storage_bucket and not (self.aws_access_key_id and self.aws_secret_access_key):
            raise ConfigError("COMIC_STORAGE_BUCKET is set but AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY are missing")
        if self.canvas_width <= 2 * self.page_margin or self.canvas_height <= 2 * self.page_margin:
            raise ConfigError("Page margin leaves no usable canvas area")
        if self.poll_interval < 0 or self.max_attempts < 1:
            raise ConfigError("Invalid polling parameters")
