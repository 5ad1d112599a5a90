"""Walking a tree of app.yaml and project.yaml files, following projects into other folders and repos."""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

import yaml

from .analysis import (
    AppAtFsNode,
    FsNode,
    FsNodeShallow,
    ProjectAtFsNode,
    TraverseContext,
)
from .app_config import AppConfig
from .common_config import CommonAppConfig
from .project import ProjectConfig
from .source import ConfigError, SourceType

_log = logging.getLogger(__name__)

_IGNORED_DIRS = frozenset({".git", ".actions", ".idea", ".vscode"})

_N = TypeVar("_N")


class TraversalError(Exception):
    """Raised when the app tree cannot be read or a callback fails."""


def traverse_deep_app_tree(path: str | os.PathLike[str], ctx: Optional[TraverseContext] = None) -> None:
    """Visit every app and project reachable from path, calling the context's callbacks."""
    if ctx is None:
        ctx = TraverseContext()
    _traverse(os.path.abspath(os.fspath(path)), ctx)


def _invoke(callback: Optional[Callable[[TraverseContext, _N], None]], ctx: TraverseContext,
            node: _N, description: str) -> None:
    if callback is None:
        return
    try:
        callback(ctx, node)
    except Exception as err:
        raise TraversalError(f"error calling function for {description}: {err}") from err


def _traverse(path: str, ctx: TraverseContext) -> None:
    try:
        analysis = analyze_fs_tree(ctx, path)
    except TraversalError as err:
        raise TraversalError(f"error analysing {path}: {err}") from err

    # Projects go before apps so that apps are wrapped by their projects even with cyclic references.
    for project in analysis.projects():
        name = project.project_config.project
        if name in ctx.seen_projects:
            _invoke(ctx.skipped_project, ctx, project, f"skipped project {name} @ {project.path}")
            continue
        ctx.seen_projects.add(name)
        _traverse_project(ctx, project)

    for app in analysis.apps():
        name = app.app_config.app
        if app.is_valid_app():
            if name in ctx.seen_apps:
                _invoke(ctx.skipped_app, ctx, app, f"skipped app {name} @ {app.path}")
                continue
            ctx.seen_apps.add(name)
            _invoke(ctx.valid_app, ctx, app, f"valid app {name} @ {app.path}")
        else:
            _invoke(ctx.invalid_app, ctx, app, f"invalid app {name} @ {app.path}")


def _calc_common_app_cfg(parents: tuple[ProjectConfig, ...]) -> CommonAppConfig:
    common = CommonAppConfig()
    for parent in parents:
        try:
            parent.validate()
        except ConfigError as err:
            raise TraversalError(f"error validating project config {parent.project}: {err}") from err
        common = common.plus(parent.common)
    return common


def _traverse_project(ctx: TraverseContext, project: ProjectAtFsNode) -> None:
    cfg = project.project_config
    where = f"{cfg.project} @ {project.path}"
    _invoke(ctx.begin_project, ctx, project, f"valid project {where}")

    parents = (*ctx.parents, cfg)
    try:
        common = _calc_common_app_cfg(parents)
    except TraversalError as err:
        raise TraversalError(f"error calculating common app config for project {where}: {err}") from err
    inner = replace(ctx, parents=parents, common_app_cfg=common)

    try:
        if not project.is_valid_project():
            return
        if cfg.source.type == SourceType.LOCAL:
            source_path = cfg.source.path
            target = source_path if os.path.isabs(source_path) else os.path.join(project.path, source_path)
            try:
                _traverse(target, inner)
            except TraversalError as err:
                raise TraversalError(f"error traversing local project {where}: {err}") from err
        elif cfg.source.type == SourceType.GIT:
            _traverse_git_project(inner, project)
        else:
            _log.warning("BUG: illegal or unknown source type '%s' for project '%s' @ %s",
                         cfg.source.type, cfg.project, project.path)
    finally:
        if inner.end_project is not None:
            try:
                inner.end_project(inner, project)
            except Exception as err:  # reported, never raised, like a cleanup step
                _log.warning("error calling function for valid project %s: %s", where, err)


def _traverse_git_project(ctx: TraverseContext, project: ProjectAtFsNode) -> None:
    cfg = project.project_config
    where = f"{cfg.project} @ {project.path}"
    if ctx.cloner is None:
        raise TraversalError(f"cloning project {cfg.project}: no git cloner configured")
    with tempfile.TemporaryDirectory(prefix="flycd-temp-cloned-project") as temp_dir:
        try:
            cloned = ctx.cloner(cfg.source.as_git_clone_source(), Path(temp_dir))
        except Exception as err:
            raise TraversalError(f"cloning project {cfg.project}: {err}") from err
        try:
            _traverse(os.path.join(os.fspath(cloned), cfg.source.path), ctx)
        except TraversalError as err:
            raise TraversalError(f"error traversing cloned project {where}: {err}") from err


def _read(path: str, name: str) -> str:
    try:
        return Path(path, name).read_text(encoding="utf-8")
    except OSError as err:
        raise TraversalError(f"error reading {name}: {err}") from err


def _app_node(ctx: TraverseContext, path: str, app_yaml: str) -> AppAtFsNode:
    untyped: dict[str, Any] = {}
    err_cfg: Optional[BaseException] = None
    try:
        typed, untyped = ctx.common_app_cfg.make_app_config(app_yaml, validate=False)
    except ConfigError as err:
        typed, err_cfg = AppConfig(), err
    else:
        try:
            typed.validate()
        except ConfigError as err:
            err_cfg = ConfigError(f"error validating app.yaml: {err}")
            err_cfg.__cause__ = err
    return AppAtFsNode(
        path=path,
        app_yaml=app_yaml,
        app_config_untyped=untyped,
        app_config=typed,
        app_config_err=err_cfg,
    )


def _project_node(path: str, project_yaml: str) -> ProjectAtFsNode:
    try:
        raw = yaml.safe_load(project_yaml)
        config = ProjectConfig.from_dict(raw)
    except (yaml.YAMLError, ConfigError) as err:
        return ProjectAtFsNode(path=path, project_yaml=project_yaml, project_config_syntax_err=err)
    try:
        config.validate()
    except ConfigError as err:
        return ProjectAtFsNode(path=path, project_yaml=project_yaml, project_config_sem_err=err)
    return ProjectAtFsNode(path=path, project_yaml=project_yaml, project_config=config)


def analyze_fs_tree(ctx: TraverseContext, path: str | os.PathLike[str]) -> FsNode:
    """Scan path and its subdirectories for app.yaml and project.yaml files."""
    abs_path = os.path.abspath(os.fspath(path))
    try:
        info = analyse_fs_shallow(abs_path)
    except TraversalError as err:
        raise TraversalError(f"error analysing node '{abs_path}': {err}") from err
    node_path = info.path

    result = FsNode(path=os.fspath(path))
    if info.has_app_yaml:
        result.app = _app_node(ctx, node_path, _read(node_path, "app.yaml"))
    if info.has_project_yaml:
        result.project = _project_node(node_path, _read(node_path, "project.yaml"))

    child_names = ["projects"] if info.has_projects_dir else info.traversable_candidates
    for name in child_names:
        try:
            result.children.append(analyze_fs_tree(ctx, os.path.join(node_path, name)))
        except TraversalError as err:
            raise TraversalError(f"error analysing children of node '{node_path}': {err}") from err
    return result


def analyse_fs_shallow(path: str | os.PathLike[str]) -> FsNodeShallow:
    """Look at one directory, or at a single app.yaml or project.yaml file."""
    path = os.fspath(path)
    try:
        is_dir = os.path.isdir(path)
        os.stat(path)
    except OSError as err:
        raise TraversalError(f"error stating path '{path}': {err}") from err

    if not is_dir:
        if not path.endswith(".yaml"):
            raise TraversalError(f"unexpected file '{path}'")
        dir_path, file_name = os.path.dirname(path), os.path.basename(path)
        if file_name == "app.yaml":
            return FsNodeShallow(path=dir_path, has_app_yaml=True)
        if file_name == "project.yaml":
            return FsNodeShallow(path=dir_path, has_project_yaml=True)
        raise TraversalError(f"unexpected yaml file '{path}'")

    try:
        with os.scandir(path) as it:
            entries = sorted(it, key=lambda entry: entry.name)
    except OSError as err:
        raise TraversalError(f"error reading directory: {err}") from err

    result = FsNodeShallow(path=path)
    for entry in entries:
        # Symlinked directories are not followed.
        if entry.is_dir(follow_symlinks=False):
            if entry.name in _IGNORED_DIRS:
                continue
            if entry.name == "projects":
                result.has_projects_dir = True
            result.traversable_candidates.append(entry.name)
        elif entry.name == "app.yaml":
            result.has_app_yaml = True
        elif entry.name == "project.yaml":
            result.has_project_yaml = True

    if result.has_projects_dir:
        result.traversable_candidates = []
    return result