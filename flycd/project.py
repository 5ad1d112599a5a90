"""Configuration of a project: a named collection of apps and nested projects."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping

from .common_config import CommonAppConfig
from .source import ConfigError, Source, SourceType

# Only project names that are valid DNS subdomain prefixes are permitted.
_SUBDOMAIN_PREFIX = re.compile(r"[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?")


@dataclass
class ProjectConfig:
    """The contents of a project.yaml file."""

    project: str = ""
    source: Source = field(default_factory=Source)
    common: CommonAppConfig = field(default_factory=CommonAppConfig)

    @classmethod
    def from_dict(cls, data: Any) -> ProjectConfig:
        if data is None:
            data = {}
        if not isinstance(data, Mapping):
            raise ConfigError(f"project config must be a mapping, got {type(data).__name__}")
        name = data.get("project")
        if name is not None and not isinstance(name, (str, int, float)):
            raise ConfigError(f"field 'project' must be a string, got {type(name).__name__}")
        return cls(
            project="" if name is None else str(name),
            source=Source.from_dict(data.get("source")),
            common=CommonAppConfig.from_dict(data.get("common")),
        )

    def validate(self) -> None:
        """Raise ConfigError unless the project has a valid name and a local or git source."""
        if not self.project:
            raise ConfigError("project name is required")
        if not _SUBDOMAIN_PREFIX.fullmatch(self.project):
            raise ConfigError(f"project name '{self.project}' is not a valid subdomain prefix")
        try:
            self.source.validate()
        except ConfigError as err:
            raise ConfigError(f"project source is invalid: {err}") from err
        if self.source.type not in (SourceType.LOCAL, SourceType.GIT):
            raise ConfigError(f"project source type '{self.source.type}' is invalid/not allowed")