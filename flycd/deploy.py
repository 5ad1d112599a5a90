"""Deploy settings and the outcome of deploying a tree of apps and projects."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import timedelta
from enum import Enum
from typing import Any

_DEFAULT_ATTEMPT_TIMEOUT = timedelta(minutes=5)


@dataclass(frozen=True)
class DeployConfig:
    """How a deployment should behave."""

    force: bool = False
    retries: int = 2
    attempt_timeout: timedelta = _DEFAULT_ATTEMPT_TIMEOUT
    abort_on_first_error: bool = True

    def with_abort_on_first_error(self, state: bool = True) -> DeployConfig:
        return replace(self, abort_on_first_error=state)

    def with_force(self, force: bool = True) -> DeployConfig:
        return replace(self, force=force)

    def with_retries(self, retries: int = 5) -> DeployConfig:
        return replace(self, retries=retries)

    def with_attempt_timeout(self, timeout: timedelta = _DEFAULT_ATTEMPT_TIMEOUT) -> DeployConfig:
        return replace(self, attempt_timeout=timeout)


def new_default_deploy_config() -> DeployConfig:
    return DeployConfig()


class SingleAppDeploySuccessType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    NO_CHANGE = "no-change"

    def __str__(self) -> str:
        return self.value


@dataclass
class AppDeployFailure:
    spec: Any
    cause: BaseException


@dataclass
class ProjectProcessingFailure:
    spec: Any
    cause: BaseException


@dataclass
class AppDeploySuccess:
    spec: Any
    success_type: SingleAppDeploySuccessType


@dataclass
class DeployResult:
    """What happened to each app and project during a deployment."""

    succeeded_apps: list[AppDeploySuccess] = field(default_factory=list)
    failed_apps: list[AppDeployFailure] = field(default_factory=list)
    processed_projects: list[Any] = field(default_factory=list)
    failed_projects: list[ProjectProcessingFailure] = field(default_factory=list)

    def plus(self, other: DeployResult) -> DeployResult:
        return DeployResult(
            succeeded_apps=[*self.succeeded_apps, *other.succeeded_apps],
            failed_apps=[*self.failed_apps, *other.failed_apps],
            processed_projects=[*self.processed_projects, *other.processed_projects],
            failed_projects=[*self.failed_projects, *other.failed_projects],
        )

    def success(self) -> bool:
        return not self.failed_apps and not self.failed_projects

    def has_errors(self) -> bool:
        return bool(self.failed_apps or self.failed_projects)