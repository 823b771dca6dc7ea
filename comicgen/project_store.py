"""
Comicgen - Project store.

One YAML document per project at <data_dir>/projects/<id>.yaml. Writes
replace the whole document atomically (temp file + os.replace in the same
directory), so a crash mid-write never leaves a torn file behind.
A document without an id key takes its file name as the id.
Concurrent pipelines must use distinct project ids; for a single id the
last writer wins.
"""

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Callable

import yaml

from comicgen.errors import ProjectNotFound, ProjectStoreError
from comicgen.models import Project

logger = logging.getLogger(__name__)

VALID_ID = re.compile(r"^[A-Za-z0-9_-]+$")


class ProjectStore:
    """YAML-backed key/value store of Project documents."""

    def __init__(self, root: str):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, project_id: str) -> Path:
        if not project_id or not VALID_ID.match(project_id):
            raise ProjectStoreError(f"Invalid project id: {project_id!r}")
        return self.root / f"{project_id}.yaml"

    def exists(self, project_id: str) -> bool:
        return self._path(project_id).exists()

    def load(self, project_id: str) -> Project:
        path = self._path(project_id)
        if not path.exists():
            raise ProjectNotFound(project_id)

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
            if not isinstance(data, dict):
                raise ValueError("document is not a mapping")
            return Project.from_dict(data, default_id=project_id)
        except (OSError, yaml.YAMLError, ValueError, KeyError, TypeError) as e:
            raise ProjectStoreError(f"Unreadable project {project_id}: {e}") from e

    def save(self, project: Project):
        path = self._path(project.id)
        data = project.to_dict()

        fd, tmp_path = tempfile.mkstemp(dir=self.root, prefix=f".{project.id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, sort_keys=False, allow_unicode=True)
            os.replace(tmp_path, path)
        except Exception as e:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise ProjectStoreError(f"Failed to save project {project.id}: {e}") from e

        logger.debug(f"Project saved: {path} (status={project.status})")

    def patch(self, project_id: str, mutator: Callable[[Project], None]) -> Project:
        """Load, apply mutator in place, save. Returns the saved project."""
        project = self.load(project_id)
        mutator(project)
        self.save(project)
        return project

    def list_ids(self) -> list[str]:
        """Project ids, most recently modified first."""
        paths = sorted(
            self.root.glob("*.yaml"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        return [p.stem for p in paths]

    def latest_id(self) -> str:
        ids = self.list_ids()
        if not ids:
            raise ProjectNotFound("(latest)")
        return ids[0]
