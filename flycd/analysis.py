"""The result of scanning a file tree for apps and projects, and the traversal context."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from .app_config import AppConfig, PreCalculatedAppConfig
from .common_config import CommonAppConfig
from .project import ProjectConfig
from .source import CloneSource

AppCallback = Callable[["TraverseContext", "AppAtFsNode"], None]
ProjectCallback = Callable[["TraverseContext", "ProjectAtFsNode"], None]
# Clones a repository into the given directory and returns the checked-out directory.
Cloner = Callable[[CloneSource, Path], "str | os.PathLike[str]"]


@dataclass
class AppAtFsNode:
    """An app.yaml found in the file tree, with its parsed config or the error parsing it."""

    path: str = ""
    app_yaml: str = ""
    app_config_untyped: dict[str, Any] = field(default_factory=dict)
    app_config: AppConfig = field(default_factory=AppConfig)
    app_config_err: Optional[BaseException] = None

    def to_pre_calculated_app_config(self) -> PreCalculatedAppConfig:
        return PreCalculatedAppConfig(typed=self.app_config, untyped=self.app_config_untyped)

    def err_cause(self) -> Optional[BaseException]:
        return self.app_config_err

    def is_app_node(self) -> bool:
        return self.app_yaml != ""

    def is_app_syntax_valid(self) -> bool:
        return self.is_app_node() and self.app_config.app != ""

    def is_valid_app(self) -> bool:
        return self.is_app_syntax_valid() and self.app_config_err is None


@dataclass
class ProjectAtFsNode:
    """A project.yaml found in the file tree, with its parsed config or the errors parsing it."""

    path: str = ""
    project_yaml: str = ""
    project_config: ProjectConfig = field(default_factory=ProjectConfig)
    project_config_syntax_err: Optional[BaseException] = None
    project_config_sem_err: Optional[BaseException] = None

    def err_cause(self) -> Optional[BaseException]:
        return self.project_config_sem_err or self.project_config_syntax_err

    def is_project_node(self) -> bool:
        return self.project_yaml != ""

    def is_project_syntax_valid(self) -> bool:
        return (
            self.is_project_node()
            and self.project_config.project != ""
            and self.project_config_syntax_err is None
        )

    def is_valid_project(self) -> bool:
        return self.is_project_syntax_valid() and self.project_config_sem_err is None


@dataclass
class FsNodeShallow:
    """What a single directory holds, without looking further down."""

    path: str
    has_app_yaml: bool = False
    has_project_yaml: bool = False
    has_projects_dir: bool = False
    traversable_candidates: list[str] = field(default_factory=list)


@dataclass
class FsNode:
    """A directory in the scanned tree, with the app and project it holds and its subdirectories."""

    path: str
    app: Optional[AppAtFsNode] = None
    project: Optional[ProjectAtFsNode] = None
    children: list[FsNode] = field(default_factory=list)

    def _walk(self) -> Iterator[FsNode]:
        yield self
        for child in self.children:
            yield from child._walk()

    def flatten(self) -> list[FsNode]:
        """All nodes of the tree, parents before their children."""
        return list(self._walk())

    def traverse(self, visit: Callable[[FsNode], None]) -> None:
        """Call visit on every node, parents before their children."""
        for node in self._walk():
            visit(node)

    def apps(self) -> list[AppAtFsNode]:
        return [node.app for node in self._walk() if node.has_app_node() and node.app is not None]

    def projects(self) -> list[ProjectAtFsNode]:
        return [
            node.project
            for node in self._walk()
            if node.has_project_node() and node.project is not None
        ]

    def has_app_node(self) -> bool:
        return self.app is not None and self.app.is_app_node()

    def has_project_node(self) -> bool:
        return self.project is not None and self.project.is_project_node()

    def is_app_syntax_valid(self) -> bool:
        return self.app is not None and self.app.is_app_syntax_valid()

    def is_valid_app(self) -> bool:
        return self.app is not None and self.app.is_valid_app()


@dataclass
class TraverseContext:
    """Callbacks and state carried through a traversal of an app tree.

    The seen sets are shared by every context derived from this one, so an app or
    project is visited only once however often it is referenced.
    """

    valid_app: Optional[AppCallback] = None
    invalid_app: Optional[AppCallback] = None
    skipped_app: Optional[AppCallback] = None
    begin_project: Optional[ProjectCallback] = None
    end_project: Optional[ProjectCallback] = None
    skipped_project: Optional[ProjectCallback] = None
    cloner: Optional[Cloner] = None
    seen_apps: set[str] = field(default_factory=set)
    seen_projects: set[str] = field(default_factory=set)
    parents: tuple[ProjectConfig, ...] = ()
    common_app_cfg: CommonAppConfig = field(default_factory=CommonAppConfig)