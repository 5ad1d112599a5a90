"""Configuration shared by all apps of a project, and how it is applied to app.yaml files."""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

import yaml

from .app_config import AppConfig
from .source import ConfigError

_TEMPLATE_REF = re.compile(r"\$(?:\$|\{([A-Za-z0-9_]+)\}|([A-Za-z0-9_]+))")


def merge_maps(base: Mapping[Any, Any] | None, other: Mapping[Any, Any] | None) -> dict[Any, Any]:
    """Deep-merge other into a copy of base: maps merge, lists concatenate, other values win."""
    result: dict[Any, Any] = copy.deepcopy(dict(base or {}))
    for key, value in (other or {}).items():
        current = result.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            result[key] = merge_maps(current, value)
        elif isinstance(current, list) and isinstance(value, list):
            result[key] = current + copy.deepcopy(value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _mapping(value: Any, what: str) -> dict[Any, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{what} must be a mapping, got {type(value).__name__}")
    return dict(value)


def _format_value(value: Any) -> str:
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _expand(template: str, match: re.Match[str]) -> str:
    """Expand $1, ${1}, $name, ${name} and $$ in a replacement template."""

    def reference(ref: re.Match[str]) -> str:
        if ref.group(0) == "$$":
            return "$"
        name = ref.group(1) or ref.group(2)
        try:
            value = match.group(int(name) if name.isdigit() else name)
        except IndexError:
            return ""
        return value or ""

    return _TEMPLATE_REF.sub(reference, template)


@dataclass
class CommonAppConfig:
    """Defaults, text substitutions and overrides that a project applies to its apps."""

    app_defaults: dict[str, Any] = field(default_factory=dict)
    app_substitutions: dict[str, Any] = field(default_factory=dict)
    app_overrides: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> CommonAppConfig:
        data = _mapping(data, "common")
        return cls(
            app_defaults=_mapping(data.get("app_defaults"), "common.app_defaults"),
            app_substitutions=_mapping(data.get("substitutions"), "common.substitutions"),
            app_overrides=_mapping(data.get("app_overrides"), "common.app_overrides"),
        )

    def plus(self, other: CommonAppConfig) -> CommonAppConfig:
        """Combine with a nested project's common config."""
        return CommonAppConfig(
            app_defaults=merge_maps(self.app_defaults, other.app_defaults),
            app_substitutions=merge_maps(self.app_substitutions, other.app_substitutions),
            app_overrides=merge_maps(self.app_overrides, other.app_overrides),
        )

    def make_app_config(
        self, app_yaml: str | bytes, validate: bool = True
    ) -> tuple[AppConfig, dict[Any, Any]]:
        """Build an app config from raw app.yaml text, applying substitutions, defaults and overrides."""
        text = app_yaml.decode("utf-8") if isinstance(app_yaml, (bytes, bytearray)) else str(app_yaml)

        for pattern, replacement in self.app_substitutions.items():
            try:
                regex = re.compile(pattern)
            except re.error as err:
                raise ConfigError(f"error compiling common substitution regex '{pattern}': {err}") from err
            template = _format_value(replacement)
            text = regex.sub(lambda match, tpl=template: _expand(tpl, match), text)

        try:
            in_file = yaml.safe_load(text)
        except yaml.YAMLError as err:
            raise ConfigError(f"error unmarshalling app.yaml: {err}") from err
        if in_file is None:
            in_file = {}
        if not isinstance(in_file, dict):
            raise ConfigError(
                f"error unmarshalling app.yaml: expected a mapping, got {type(in_file).__name__}"
            )

        untyped = merge_maps({}, self.app_defaults)
        untyped = merge_maps(untyped, in_file)
        untyped = merge_maps(untyped, self.app_overrides)

        try:
            typed = AppConfig.from_dict(untyped)
        except ConfigError as err:
            raise ConfigError(f"error converting untyped app.yaml to typed: {err}") from err

        if validate:
            try:
                typed.validate()
            except ConfigError as err:
                raise ConfigError(f"error validating app.yaml: {err}") from err

        return typed, untyped