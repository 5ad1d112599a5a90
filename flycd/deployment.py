"""Deploying apps to fly.io from folders, inline configs and whole app trees."""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import shutil
import tempfile
from dataclasses import replace
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import tomli_w
import yaml

from .analysis import AppAtFsNode, Cloner, ProjectAtFsNode, TraverseContext
from .app_config import AppConfig, PreCalculatedAppConfig
from .common_config import CommonAppConfig
from .deploy import (
    AppDeployFailure,
    AppDeploySuccess,
    DeployConfig,
    DeployResult,
    ProjectProcessingFailure,
    SingleAppDeploySuccessType,
)
from .deploy_steps import (
    DeployError,
    DeployInput,
    FlyClient,
    run_intermediate_steps,
    run_post_deploy_steps,
)
from .source import ConfigError, SourceType
from .traversal import TraversalError, traverse_deep_app_tree

_log = logging.getLogger(__name__)

_INLINE_DOCKER_FILE = "inline-docker-file"

SKIPPED_ABORTED_EARLIER = DeployError("skipped: job aborted earlier")


def skipped_not_valid(cause: Optional[BaseException]) -> DeployError:
    """The failure recorded for an app or project whose config is not valid."""
    err = DeployError(f"skipped: not a valid app: {cause}")
    err.__cause__ = cause
    return err


def _type_value(value: Any) -> str:
    return str(getattr(value, "value", value) or "")


def hash_dir(path: str | os.PathLike[str]) -> str:
    """A content hash of every file below path, in the 'h1:' directory hash format."""
    root = Path(path)
    if not root.is_dir():
        raise DeployError(f"error getting local dir hash for '{root}': not a directory")
    files: list[tuple[str, Path]] = []
    for dir_path, _dir_names, file_names in os.walk(root):
        for name in file_names:
            full = Path(dir_path, name)
            files.append((full.relative_to(root).as_posix(), full))
    files.sort(key=lambda item: item[0].encode("utf-8"))

    summary = hashlib.sha256()
    for rel, full in files:
        if "\n" in rel:
            raise DeployError(f"error getting local dir hash for '{root}': filename with newline {rel!r}")
        try:
            digest = hashlib.sha256(full.read_bytes()).hexdigest()
        except OSError as err:
            raise DeployError(f"error getting local dir hash for '{root}': {err}") from err
        summary.update(f"{digest}  {rel}\n".encode("utf-8"))
    return "h1:" + base64.b64encode(summary.digest()).decode("ascii")


def read_app_configs(path: str | os.PathLike[str]) -> tuple[AppConfig, dict[str, Any]]:
    """Read and validate the app.yaml in a folder, returning typed and untyped forms."""
    try:
        app_yaml = Path(path, "app.yaml").read_text(encoding="utf-8")
    except OSError as err:
        raise DeployError(f"error reading app.yaml from folder {path}: {err}") from err
    try:
        return CommonAppConfig().make_app_config(app_yaml)
    except ConfigError as err:
        raise DeployError(f"error making app config from folder {path}: {err}") from err


def _plain(value: Any) -> Any:
    """Turn enums and str subclasses into plain values that yaml and toml can write."""
    if isinstance(value, Enum):
        return _plain(value.value)
    if isinstance(value, dict):
        return {str(_plain(key)): _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    if isinstance(value, str):
        return str(value)
    return value


def _tomlable(value: Any) -> Any:
    """Drop null values, which toml cannot hold."""
    if isinstance(value, dict):
        return {key: _tomlable(item) for key, item in value.items() if item is not None}
    if isinstance(value, list):
        return [_tomlable(item) for item in value if item is not None]
    return value


def _copy_contents(src: Path, dst: Path) -> None:
    shutil.copytree(src, dst, symlinks=True, dirs_exist_ok=True)


class DeployService:
    """Deploys apps through a fly.io client, cloning git sources with the given cloner."""

    def __init__(self, fly_client: FlyClient, cloner: Optional[Cloner] = None) -> None:
        self._fly_client = fly_client
        self._cloner = cloner

    def deploy_all(self, path: str | os.PathLike[str], deploy_cfg: DeployConfig) -> DeployResult:
        """Deploy every app reachable from path and report what happened to each."""
        result = DeployResult()

        def on_valid_app(_ctx: TraverseContext, node: AppAtFsNode) -> None:
            _log.info("Considering app %s @ %s", node.app_config.app, node.path)
            if deploy_cfg.abort_on_first_error and result.has_errors():
                _log.info("Aborted earlier, skipping!")
                result.failed_apps.append(AppDeployFailure(spec=node, cause=SKIPPED_ABORTED_EARLIER))
                return
            try:
                outcome = self.deploy_app_from_folder(
                    node.path, deploy_cfg, node.to_pre_calculated_app_config()
                )
            except Exception as err:
                result.failed_apps.append(AppDeployFailure(spec=node, cause=err))
            else:
                result.succeeded_apps.append(AppDeploySuccess(spec=node, success_type=outcome))

        def on_invalid_app(_ctx: TraverseContext, node: AppAtFsNode) -> None:
            result.failed_apps.append(AppDeployFailure(spec=node, cause=skipped_not_valid(node.err_cause())))

        def on_begin_project(_ctx: TraverseContext, node: ProjectAtFsNode) -> None:
            if deploy_cfg.abort_on_first_error and result.has_errors():
                result.failed_projects.append(
                    ProjectProcessingFailure(spec=node, cause=SKIPPED_ABORTED_EARLIER)
                )
            elif not node.is_valid_project():
                result.failed_projects.append(
                    ProjectProcessingFailure(spec=node, cause=skipped_not_valid(node.err_cause()))
                )
            else:
                result.processed_projects.append(node)

        ctx = TraverseContext(
            valid_app=on_valid_app,
            invalid_app=on_invalid_app,
            begin_project=on_begin_project,
            cloner=self._cloner,
        )
        try:
            traverse_deep_app_tree(path, ctx)
        except TraversalError as err:
            raise DeployError(f"error traversing app tree: {err}") from err
        return result

    def deploy_app_from_inline_config(
        self, deploy_cfg: DeployConfig, cfg: AppConfig
    ) -> SingleAppDeploySuccessType:
        """Deploy an app described only by a config object."""
        with tempfile.TemporaryDirectory(prefix=cfg.app) as cfg_dir:
            yaml_text = yaml.safe_dump(_plain(cfg.to_dict()), sort_keys=True)
            untyped = yaml.safe_load(yaml_text) or {}
            Path(cfg_dir, "app.yaml").write_text(yaml_text, encoding="utf-8")
            return self.deploy_app_from_folder(
                cfg_dir, deploy_cfg, PreCalculatedAppConfig(typed=cfg, untyped=untyped)
            )

    def deploy_app_from_folder(
        self,
        path: str | os.PathLike[str],
        deploy_cfg: DeployConfig,
        pre_calculated: Optional[PreCalculatedAppConfig] = None,
    ) -> SingleAppDeploySuccessType:
        """Deploy the app whose app.yaml lies in path, unless it is already up to date."""
        cfg_dir = Path(path)
        if pre_calculated is not None:
            try:
                pre_calculated.typed.validate()
            except ConfigError as err:
                raise DeployError(f"error validating app config: {err}") from err
            typed, untyped = pre_calculated.typed, dict(pre_calculated.untyped)
        else:
            typed, untyped = read_app_configs(cfg_dir)

        cfg_hash = hash_dir(cfg_dir)

        with tempfile.TemporaryDirectory(prefix=typed.app) as temp:
            try:
                app_hash, work_dir = self._fetch_app_fs(typed, cfg_dir, Path(temp))
            except Exception as err:
                raise DeployError(f"error preparing fs to deploy: {err}") from err

            try:
                _merge_cfg_and_app_fs(typed, cfg_dir, work_dir)
            except OSError as err:
                raise DeployError(f"error merging config and app fs: {err}") from err

            typed = _with_hashes(typed, untyped, app_hash, cfg_hash)

            try:
                _write_out_updated_config_files(untyped, work_dir)
            except (OSError, yaml.YAMLError, TypeError, ValueError) as err:
                raise DeployError(f"error writing out updated config files: {err}") from err

            try:
                _ensure_docker_ignore_exists(work_dir)
            except OSError as err:
                raise DeployError(f"error ensuring docker ignore exists: {err}") from err

            inp = DeployInput(
                fly_client=self._fly_client,
                deploy_cfg=deploy_cfg,
                cfg_typed=typed,
                temp_dir=work_dir,
                app_hash=app_hash,
                cfg_hash=cfg_hash,
            )
            return _deploy_app_to_fly(inp)

    def _fetch_app_fs(self, cfg: AppConfig, cfg_dir: Path, temp_dir: Path) -> tuple[str, Path]:
        """Put the app's files into temp_dir; return their hash and the directory to deploy from."""
        source = cfg.source
        kind = _type_value(source.type)

        if kind == SourceType.GIT.value:
            if self._cloner is None:
                raise DeployError("cloning git repo: no git cloner configured")
            try:
                cloned = Path(self._cloner(source.as_git_clone_source(), temp_dir))
            except Exception as err:
                raise DeployError(f"cloning git repo: {err}") from err
            return hash_dir(cloned).strip(), cloned

        if kind == SourceType.LOCAL.value:
            src = Path(source.path) if os.path.isabs(source.path) else cfg_dir / source.path
            if not src.exists():
                _log.info("Local path '%s' does not exist, trying as absolute path", source.path)
                src = Path(source.path)
                if not source.path or not src.exists():
                    raise DeployError(f"local path '{source.path}' does not exist")
            try:
                _copy_contents(src, temp_dir)
            except OSError as err:
                raise DeployError(f"error copying local folder {src}: {err}") from err
            return hash_dir(temp_dir).strip(), temp_dir

        if kind == _INLINE_DOCKER_FILE:
            try:
                (temp_dir / "Dockerfile").write_text(source.inline, encoding="utf-8")
                (temp_dir / ".dockerignore").write_text("", encoding="utf-8")
            except OSError as err:
                raise DeployError(f"error writing Dockerfile: {err}") from err
            return hash_dir(temp_dir).strip(), temp_dir

        raise DeployError(f"unknown source type {kind}")


def _merge_cfg_and_app_fs(cfg: AppConfig, cfg_dir: Path, work_dir: Path) -> None:
    if cfg.merge_cfg.all:
        _copy_contents(cfg_dir, work_dir)
        return
    for exact_path in cfg.merge_cfg.include:
        target = work_dir / exact_path
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(cfg_dir / exact_path, target)


def _with_hashes(cfg: AppConfig, untyped: dict[str, Any], app_hash: str, cfg_hash: str) -> AppConfig:
    source = cfg.source
    env = dict(cfg.env)
    env.update(
        {
            "FLYCD_CONFIG_VERSION": cfg_hash,
            "FLYCD_APP_VERSION": app_hash,
            "FLYCD_APP_SOURCE_TYPE": _type_value(source.type),
            "FLYCD_APP_SOURCE_PATH": source.path,
            "FLYCD_APP_SOURCE_REPO": source.repo,
            "FLYCD_APP_SOURCE_REF_BRANCH": source.ref.branch,
            "FLYCD_APP_SOURCE_REF_COMMIT": source.ref.commit,
            "FLYCD_APP_SOURCE_REF_TAG": source.ref.tag,
        }
    )
    untyped["env"] = dict(env)
    return replace(cfg, env=env)


def _write_out_updated_config_files(untyped: dict[str, Any], work_dir: Path) -> None:
    plain = _plain(untyped)
    (work_dir / "app.yaml").write_text(yaml.safe_dump(plain, sort_keys=True), encoding="utf-8")
    (work_dir / "fly.toml").write_text(tomli_w.dumps(_tomlable(plain)), encoding="utf-8")


def _ensure_docker_ignore_exists(work_dir: Path) -> None:
    # Without a .dockerignore the fly.io cli waits for user input.
    docker_ignore = work_dir / ".dockerignore"
    if docker_ignore.exists():
        return
    git_ignore = work_dir / ".gitignore"
    if git_ignore.exists():
        shutil.copyfile(git_ignore, docker_ignore)
    else:
        docker_ignore.write_text("", encoding="utf-8")


def _deploy_and_finish(inp: DeployInput) -> None:
    cfg = inp.cfg_typed
    run_intermediate_steps(inp)
    # fly.io does not create machines per region on deploy, so one deploy is enough.
    _log.info("Deploying app %s", cfg.app)
    inp.fly_client.deploy_existing_app(cfg, inp.temp_dir, inp.deploy_cfg, cfg.primary_region)
    run_post_deploy_steps(inp)


def _deploy_app_to_fly(inp: DeployInput) -> SingleAppDeploySuccessType:
    cfg = inp.cfg_typed
    client = inp.fly_client
    _log.info("Checking if the app %s exists", cfg.app)
    try:
        exists = client.exists_app(cfg.app)
    except Exception as err:
        raise DeployError(f"error checking if app {cfg.app} exists: {err}") from err

    if exists:
        try:
            deployed = client.get_deployed_app_config(cfg.app)
        except Exception as err:
            raise DeployError(f"error getting deployed app config: {err}") from err
        deployed_env = deployed.env or {}
        if (
            inp.deploy_cfg.force
            or deployed_env.get("FLYCD_APP_VERSION", "") != inp.app_hash
            or deployed_env.get("FLYCD_CONFIG_VERSION", "") != inp.cfg_hash
        ):
            _log.info("App %s needs to be re-deployed, doing it now!", cfg.app)
            _deploy_and_finish(inp)
            return SingleAppDeploySuccessType.UPDATED
        _log.info("App is already up to date, skipping deploy")
        return SingleAppDeploySuccessType.NO_CHANGE

    _log.info("App not found, creating it")
    try:
        client.create_new_app(cfg, inp.temp_dir, True)
    except Exception as err:
        raise DeployError(f"error creating new app: {err}") from err
    _deploy_and_finish(inp)
    return SingleAppDeploySuccessType.CREATED