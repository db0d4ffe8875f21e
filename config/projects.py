"""
Monitored project configuration loader.

Reads the JSON document listing the GitLab projects and branches the feed
monitor polls, validated with the models in ``shared.models``.
"""

import json
import logging
from pathlib import Path
from typing import List, Optional, Union

from pydantic import ValidationError

from config.settings import settings
from shared.models import MonitorConfig, ProjectConfig, ProjectId


logger = logging.getLogger(__name__)


class MonitorConfigLoader:
    """
    Load and query the monitored projects file.

    Example:
        >>> loader = MonitorConfigLoader("config/projects.json")
        >>> config = loader.load()
        >>> for project in loader.get_enabled_projects():
        ...     print(project.name, project.branches)
    """

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        self.config_path = Path(config_path or settings.monitor.projects_file)
        self._config: Optional[MonitorConfig] = None

    def load(self) -> MonitorConfig:
        if not self.config_path.exists():
            raise ValueError(
                f"Configuration file not found: {self.config_path}\n"
                f"Please create it by copying config/projects.example.json"
            )

        try:
            content = self.config_path.read_text(encoding="utf-8")
            self._config = MonitorConfig.model_validate(json.loads(content))
        except (json.JSONDecodeError, ValidationError) as e:
            raise ValueError(f"Failed to load configuration: {e}") from e

        logger.info(
            f"Loaded {len(self._config.projects)} projects "
            f"({len(self._config.enabled_projects)} enabled) from {self.config_path}"
        )
        return self._config

    def reload(self) -> MonitorConfig:
        self._config = None
        return self.load()

    def get_config(self) -> MonitorConfig:
        if self._config is None:
            return self.load()
        return self._config

    def get_enabled_projects(self) -> List[ProjectConfig]:
        return self.get_config().enabled_projects

    def get_project(self, project_id: ProjectId) -> Optional[ProjectConfig]:
        """Find a project by id; ``42`` and ``"42"`` are equivalent."""
        for project in self.get_config().projects:
            if project.matches(project_id):
                return project
        return None

    def is_project_enabled(self, project_id: ProjectId) -> bool:
        project = self.get_project(project_id)
        return project is not None and project.enabled
