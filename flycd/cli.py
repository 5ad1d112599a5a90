"""The flycd command line: converting fly.toml files and listing referenced repositories."""

from __future__ import annotations

import argparse
import errno
import json
import os
import sys
import tomllib
from pathlib import Path
from typing import Iterator, Optional, Sequence

import yaml

from .analysis import AppAtFsNode, ProjectAtFsNode, TraverseContext
from .source import ConfigError, Source, new_local_folder_source
from .traversal import TraversalError, traverse_deep_app_tree

VERSION = "v0.0.48"


def _walk_fly_tomls(path: Path) -> Iterator[Path]:
    """Every fly.toml at or below path, in lexical order, not following symlinks."""
    if path.is_symlink() or not path.is_dir():
        if path.name == "fly.toml":
            yield path
        return
    for child in sorted(path.iterdir(), key=lambda entry: entry.name):
        yield from _walk_fly_tomls(child)


def _convert_one(directory: Path, force: bool) -> bool:
    """Write app.yaml from fly.toml in directory; False if skipped."""
    app_yaml = directory / "app.yaml"
    if app_yaml.exists() and not force:
        print(f"app.yaml already exists, skipping conversion @ {directory}")
        return False

    try:
        toml_text = (directory / "fly.toml").read_text(encoding="utf-8")
    except OSError as err:
        raise ConfigError(f"Error reading fly.toml @ {directory}: {err}") from err
    try:
        config = tomllib.loads(toml_text)
    except tomllib.TOMLDecodeError as err:
        raise ConfigError(f"Error parsing fly.toml @ {directory}: {err}") from err

    config.setdefault("source", new_local_folder_source("").to_dict())
    # fly.toml holds its single mount as a table rather than a list.
    if isinstance(config.get("mounts"), dict):
        config["mounts"] = [config["mounts"]]

    try:
        yaml_text = yaml.safe_dump(config, sort_keys=True)
    except yaml.YAMLError as err:
        raise ConfigError(f"Error marshalling fly.toml @ {directory}: {err}") from err
    try:
        app_yaml.write_text(yaml_text, encoding="utf-8")
    except OSError as err:
        raise ConfigError(f"Error writing app.yaml @ {directory}: {err}") from err
    return True


def convert_tree(path: str | os.PathLike[str], force: bool = False) -> list[Path]:
    """Write an app.yaml next to every fly.toml below path and return the converted folders.

    Existing app.yaml files are kept unless force is set. Every folder is tried; if any
    failed, ConfigError is raised afterwards.
    """
    root = Path(os.path.abspath(os.fspath(path)))
    print(f"Preparing files inside: {root}")
    if not root.exists() and not root.is_symlink():
        raise FileNotFoundError(errno.ENOENT, "no such file or directory", str(root))

    converted: list[Path] = []
    failed: list[Path] = []
    for toml_file in _walk_fly_tomls(root):
        directory = toml_file.parent
        try:
            if _convert_one(directory, force):
                print(f"Converted fly.toml to app.yaml @ {directory}")
                converted.append(directory)
        except ConfigError as err:
            print(err)
            failed.append(directory)

    if failed:
        raise ConfigError("errors converting fly.toml in: " + ", ".join(str(d) for d in failed))
    return converted


def _source_json(source: Source) -> str:
    data: dict[str, object] = {}
    if source.repo:
        data["repo"] = source.repo
    if source.path:
        data["path"] = source.path
    data["ref"] = source.ref.to_dict()
    if source.type:
        data["type"] = str(source.type)
    if source.inline:
        data["inline"] = source.inline
    return json.dumps(data, separators=(",", ":"))


def list_repos(path: str | os.PathLike[str]) -> tuple[list[ProjectAtFsNode], list[AppAtFsNode]]:
    """Find the projects and apps below path whose source names a git repository."""
    root = os.path.abspath(os.fspath(path))
    print(f"Scanning for git repos referenced inside project @ {root}")
    project_repos: list[ProjectAtFsNode] = []
    app_repos: list[AppAtFsNode] = []

    def on_valid_app(_ctx: TraverseContext, node: AppAtFsNode) -> None:
        print(f"Checking app {node.app_config.app} @ {node.path}...")
        if node.app_config.source.repo:
            app_repos.append(node)

    def on_begin_project(_ctx: TraverseContext, node: ProjectAtFsNode) -> None:
        if node.is_valid_project():
            print(f"Checking project {node.project_config.project} @ {node.path}...")
            if node.project_config.source.repo:
                project_repos.append(node)
        else:
            print(f"Skipping project (invalid) {node.project_config.project} @ {node.path}")

    try:
        traverse_deep_app_tree(root, TraverseContext(valid_app=on_valid_app, begin_project=on_begin_project))
    finally:
        print("Found the following project repo references:")
        for project in project_repos:
            print(f" - {project.project_config.project} @ {_source_json(project.project_config.source)}")
        print("Found the following app repo references:")
        for app in app_repos:
            print(f" - {app.app_config.app} @ {_source_json(app.app_config.source)}")
    return project_repos, app_repos


def _run_convert(args: argparse.Namespace) -> int:
    try:
        convert_tree(args.path, force=args.force)
    except FileNotFoundError as err:
        print(f"Error walking path {args.path}: {err}")
        return 1
    except ConfigError:
        print("Errors encountered, see previous logs")
        return 1
    return 0


def _run_repos(args: argparse.Namespace) -> int:
    try:
        list_repos(args.path)
    except TraversalError as err:
        print(f"Error walking path {os.path.abspath(args.path)}: {err}")
        return 1
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flycd",
        description="flycd deployment of fly apps entirely from code",
    )
    commands = parser.add_subparsers(dest="command")

    convert = commands.add_parser("convert", help="Convert app/apps from fly.toml(s) to app.yaml(s)")
    convert.add_argument("path")
    convert.add_argument("-f", "--force", action="store_true", help="Force overwrite of existing files")
    convert.set_defaults(handler=_run_convert)

    repos = commands.add_parser(
        "repos",
        help="Traverse the project structure and list all git repos referenced",
    )
    repos.add_argument("path")
    repos.set_defaults(handler=_run_repos)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the command line and return its exit code."""
    print(f"Starting FlyCD {VERSION}...")
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_usage()
        return 1
    code = args.handler(args)
    if code == 0:
        print(f"FlyCD {VERSION} exiting normally, bye!")
    return code


if __name__ == "__main__":
    sys.exit(main())