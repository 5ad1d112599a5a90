"""Where an app's or project's code comes from: git, a local folder or an inline Dockerfile."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


class ConfigError(ValueError):
    """Raised when a configuration is missing required parts or is inconsistent."""


class SourceType(str, Enum):
    GIT = "git"
    LOCAL = "local"
    INLINE_DOCKER_FILE = "inline-docker-file"

    def __str__(self) -> str:
        return self.value


def _as_str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if isinstance(value, Enum):
        return str(value.value)
    if not isinstance(value, (str, int, float)) or isinstance(value, bool):
        raise ConfigError(f"field '{key}' must be a string, got {type(value).__name__}")
    return str(value)


def _as_mapping(data: Any, what: str) -> Mapping[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"{what} must be a mapping, got {type(data).__name__}")
    return data


@dataclass(frozen=True)
class GitRef:
    """A branch, tag or commit to check out."""

    branch: str = ""
    tag: str = ""
    commit: str = ""

    def is_empty(self) -> bool:
        return not (self.branch or self.tag or self.commit)

    @classmethod
    def from_dict(cls, data: Any) -> GitRef:
        data = _as_mapping(data, "ref")
        return cls(
            branch=_as_str(data, "branch"),
            tag=_as_str(data, "tag"),
            commit=_as_str(data, "commit"),
        )

    def to_dict(self) -> dict[str, str]:
        return {
            key: value
            for key, value in (("branch", self.branch), ("tag", self.tag), ("commit", self.commit))
            if value
        }


@dataclass(frozen=True)
class MergeCfg:
    """Which files of the config folder to merge into the app's file tree."""

    all: bool = False
    include: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Any) -> MergeCfg:
        data = _as_mapping(data, "merge_cfg")
        include = data.get("include") or ()
        if isinstance(include, str) or not isinstance(include, (list, tuple)):
            raise ConfigError("merge_cfg.include must be a list of strings")
        return cls(all=bool(data.get("all", False)), include=tuple(str(item) for item in include))

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.all:
            result["all"] = True
        if self.include:
            result["include"] = list(self.include)
        return result


@dataclass(frozen=True)
class CloneSource:
    """What to clone from a git repository."""

    repo: str = ""
    branch: str = ""
    tag: str = ""
    commit: str = ""


@dataclass(frozen=True)
class Source:
    """The location of an app's code or of a project's app configs."""

    repo: str = ""
    path: str = ""
    ref: GitRef = field(default_factory=GitRef)
    type: str = ""
    inline: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> Source:
        data = _as_mapping(data, "source")
        return cls(
            repo=_as_str(data, "repo"),
            path=_as_str(data, "path"),
            ref=GitRef.from_dict(data.get("ref")),
            type=_as_str(data, "type"),
            inline=_as_str(data, "inline"),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.repo:
            result["repo"] = self.repo
        if self.path:
            result["path"] = self.path
        if not self.ref.is_empty():
            result["ref"] = self.ref.to_dict()
        if self.type:
            result["type"] = str(self.type)
        if self.inline:
            result["inline"] = self.inline
        return result

    def validate(self) -> None:
        """Raise ConfigError unless the source is complete for its type."""
        if self == Source():
            raise ConfigError(".source is required")
        if self.type == SourceType.GIT:
            if not self.repo:
                raise ConfigError("repo is required")
        elif self.type == SourceType.LOCAL:
            pass
        elif self.type == SourceType.INLINE_DOCKER_FILE:
            if not self.inline:
                raise ConfigError("inline docker file is required")
        else:
            raise ConfigError(f"invalid source type: '{self.type}'")

    def as_git_clone_source(self) -> CloneSource:
        return CloneSource(
            repo=self.repo,
            branch=self.ref.branch,
            tag=self.ref.tag,
            commit=self.ref.commit,
        )


def new_inline_docker_file_source(inline: str) -> Source:
    return Source(type=SourceType.INLINE_DOCKER_FILE.value, inline=inline)


def new_local_folder_source(path: str) -> Source:
    return Source(type=SourceType.LOCAL.value, path=path)