"""Typed configuration of a single app, as read from app.yaml."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Mapping, TypeVar

from .resources import VolumeConfig
from .source import ConfigError, MergeCfg, Source

_T = TypeVar("_T")

# Only app names that are valid DNS subdomain prefixes are permitted.
_SUBDOMAIN_PREFIX = re.compile(r"[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?")


def _mapping(value: Any, what: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{what} must be a mapping, got {type(value).__name__}")
    return value


def _to_str(value: Any, what: str) -> str:
    if value is None:
        return ""
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    raise ConfigError(f"{what} must be a string, got {type(value).__name__}")


def _to_int(value: Any, what: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ConfigError(f"{what} must be an integer, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise ConfigError(f"{what} must be an integer, got {type(value).__name__}")


def _to_bool(value: Any, what: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    raise ConfigError(f"{what} must be a boolean, got {type(value).__name__}")


def _str_list(value: Any, what: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"{what} must be a list, got {type(value).__name__}")
    return [_to_str(item, what) for item in value]


def _object_list(value: Any, what: str, factory: Callable[[Any], _T]) -> list[_T]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"{what} must be a list, got {type(value).__name__}")
    return [factory(item) for item in value]


@dataclass(frozen=True)
class Concurrency:
    type: str = ""
    soft_limit: int = 0
    hard_limit: int = 0

    @classmethod
    def from_dict(cls, data: Any) -> Concurrency:
        data = _mapping(data, "concurrency")
        return cls(
            type=_to_str(data.get("type"), "concurrency.type"),
            soft_limit=_to_int(data.get("soft_limit"), "concurrency.soft_limit"),
            hard_limit=_to_int(data.get("hard_limit"), "concurrency.hard_limit"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "soft_limit": self.soft_limit, "hard_limit": self.hard_limit}


@dataclass
class Port:
    handlers: list[str] = field(default_factory=list)
    port: int = 0
    force_https: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> Port:
        data = _mapping(data, "port")
        return cls(
            handlers=_str_list(data.get("handlers"), "port.handlers"),
            port=_to_int(data.get("port"), "port.port"),
            force_https=_to_bool(data.get("force_https"), "port.force_https"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"handlers": list(self.handlers), "port": self.port, "force_https": self.force_https}


@dataclass
class Service:
    """A fly.io service section."""

    internal_port: int = 0
    protocol: str = ""
    force_https: bool = False
    auto_stop_machines: bool = False
    auto_start_machines: bool = False
    min_machines_running: int = 0
    concurrency: Concurrency = field(default_factory=Concurrency)
    ports: list[Port] = field(default_factory=list)
    processes: list[str] = field(default_factory=list)

    def with_min_scale(self, min_scale: int) -> Service:
        return replace(self, min_machines_running=min_scale)

    @classmethod
    def from_dict(cls, data: Any) -> Service:
        data = _mapping(data, "service")
        return cls(
            internal_port=_to_int(data.get("internal_port"), "service.internal_port"),
            protocol=_to_str(data.get("protocol"), "service.protocol"),
            force_https=_to_bool(data.get("force_https"), "service.force_https"),
            auto_stop_machines=_to_bool(data.get("auto_stop_machines"), "service.auto_stop_machines"),
            auto_start_machines=_to_bool(data.get("auto_start_machines"), "service.auto_start_machines"),
            min_machines_running=_to_int(data.get("min_machines_running"), "service.min_machines_running"),
            concurrency=Concurrency.from_dict(data.get("concurrency")),
            ports=_object_list(data.get("ports"), "service.ports", Port.from_dict),
            processes=_str_list(data.get("processes"), "service.processes"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "internal_port": self.internal_port,
            "protocol": self.protocol,
            "force_https": self.force_https,
            "auto_stop_machines": self.auto_stop_machines,
            "auto_start_machines": self.auto_start_machines,
            "min_machines_running": self.min_machines_running,
            "concurrency": self.concurrency.to_dict(),
            "ports": [port.to_dict() for port in self.ports],
            "processes": list(self.processes),
        }


@dataclass
class HttpService:
    """A fly.io http_service section."""

    internal_port: int = 0
    force_https: bool = False
    auto_stop_machines: bool = False
    auto_start_machines: bool = False
    min_machines_running: int = 0
    concurrency: Concurrency = field(default_factory=Concurrency)
    processes: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return (
            self.internal_port == 0
            and not self.force_https
            and not self.auto_stop_machines
            and not self.auto_start_machines
            and self.min_machines_running == 0
            and self.concurrency == Concurrency()
            and not self.processes
        )

    @classmethod
    def from_dict(cls, data: Any) -> HttpService:
        data = _mapping(data, "http_service")
        return cls(
            internal_port=_to_int(data.get("internal_port"), "http_service.internal_port"),
            force_https=_to_bool(data.get("force_https"), "http_service.force_https"),
            auto_stop_machines=_to_bool(data.get("auto_stop_machines"), "http_service.auto_stop_machines"),
            auto_start_machines=_to_bool(
                data.get("auto_start_machines"), "http_service.auto_start_machines"
            ),
            min_machines_running=_to_int(
                data.get("min_machines_running"), "http_service.min_machines_running"
            ),
            concurrency=Concurrency.from_dict(data.get("concurrency")),
            processes=_str_list(data.get("processes"), "http_service.processes"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "internal_port": self.internal_port,
            "force_https": self.force_https,
            "auto_stop_machines": self.auto_stop_machines,
            "auto_start_machines": self.auto_start_machines,
            "min_machines_running": self.min_machines_running,
            "concurrency": self.concurrency.to_dict(),
            "processes": list(self.processes),
        }


@dataclass(frozen=True)
class Mount:
    source: str = ""
    destination: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> Mount:
        data = _mapping(data, "mount")
        return cls(
            source=_to_str(data.get("source"), "mount.source"),
            destination=_to_str(data.get("destination"), "mount.destination"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"source": self.source, "destination": self.destination}


@dataclass
class MachineConfig:
    """Wanted machine count, size and cpu type."""

    count: int = 0
    count_per_region: dict[str, int] = field(default_factory=dict)
    ram_mb: int = 0
    cpu_cores: int = 0
    cpu_type: str = ""

    def count_in_region(self, region: str) -> int:
        return self.count_per_region.get(region, self.count)

    @classmethod
    def from_dict(cls, data: Any) -> MachineConfig:
        data = _mapping(data, "machines")
        per_region = _mapping(data.get("count_per_region"), "machines.count_per_region")
        return cls(
            count=_to_int(data.get("count"), "machines.count"),
            count_per_region={
                str(region): _to_int(count, f"machines.count_per_region.{region}")
                for region, count in per_region.items()
            },
            ram_mb=_to_int(data.get("ram_mb"), "machines.ram_mb"),
            cpu_cores=_to_int(data.get("cpu_cores"), "machines.cpu_cores"),
            cpu_type=_to_str(data.get("cpu_type"), "machines.cpu_type"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "count_per_region": dict(self.count_per_region),
            "ram_mb": self.ram_mb,
            "cpu_cores": self.cpu_cores,
            "cpu_type": self.cpu_type,
        }


class SecretSourceType(str, Enum):
    ENV = "env"
    RAW = "raw"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class SecretRef:
    """A named secret and where its value is read from."""

    name: str = ""
    type: str = ""
    env: str = ""
    raw: str = ""

    def get_secret_value(self) -> str:
        if self.type == SecretSourceType.ENV:
            var = self.env or self.name
            value = os.environ.get(var)
            if value is None:
                raise ConfigError(f"env var {var} for secret {self.name} does not exist")
            return value
        if self.type == SecretSourceType.RAW:
            return self.raw
        raise ConfigError(f"unknown secret type: {self.type}")

    @classmethod
    def from_dict(cls, data: Any) -> SecretRef:
        data = _mapping(data, "secret")
        return cls(
            name=_to_str(data.get("name"), "secret.name"),
            type=_to_str(data.get("type"), "secret.type"),
            env=_to_str(data.get("env"), "secret.env"),
            raw=_to_str(data.get("raw"), "secret.raw"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": str(self.type), "env": self.env, "raw": self.raw}


class IpVersion(str, Enum):
    V4 = "v4"
    V6 = "v6"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class IpConfig:
    """A wanted IP address allocation."""

    v: str = ""
    network: str = ""
    org: str = ""
    private: bool = False
    shared: bool = False
    region: str = ""

    def validate(self) -> None:
        if not self.v:
            raise ConfigError("ip config missing v")
        if self.v not in (IpVersion.V4, IpVersion.V6):
            raise ConfigError("ip config v must be either v4 or v6")
        if self.v == IpVersion.V4:
            if self.private:
                raise ConfigError("ip config v4 cannot be private")
            if self.network:
                raise ConfigError("ip config v4 cannot have network")
            if self.org:
                raise ConfigError("ip config v4 cannot have org")
            if self.region:
                raise ConfigError("ip config v4 cannot have region")
        if self.v == IpVersion.V6 and self.shared:
            raise ConfigError("ip config v6 cannot be shared")

    @classmethod
    def from_dict(cls, data: Any) -> IpConfig:
        data = _mapping(data, "ip")
        return cls(
            v=_to_str(data.get("v"), "ip.v"),
            network=_to_str(data.get("network"), "ip.network"),
            org=_to_str(data.get("org"), "ip.org"),
            private=_to_bool(data.get("private"), "ip.private"),
            shared=_to_bool(data.get("shared"), "ip.shared"),
            region=_to_str(data.get("region"), "ip.region"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "v": str(self.v),
            "network": self.network,
            "org": self.org,
            "private": self.private,
            "shared": self.shared,
            "region": self.region,
        }


@dataclass
class NetworkConfig:
    ips: list[IpConfig] = field(default_factory=list)
    auto_prune_ips: bool = False

    def validate(self) -> None:
        for ip in self.ips:
            ip.validate()

    def is_empty(self) -> bool:
        return not self.ips and not self.auto_prune_ips

    @classmethod
    def from_dict(cls, data: Any) -> NetworkConfig:
        data = _mapping(data, "network")
        return cls(
            ips=_object_list(data.get("ips"), "network.ips", IpConfig.from_dict),
            auto_prune_ips=_to_bool(data.get("auto_prune_ips"), "network.auto_prune_ips"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"ips": [ip.to_dict() for ip in self.ips], "auto_prune_ips": self.auto_prune_ips}


def _volume_from_dict(data: Any) -> VolumeConfig:
    return VolumeConfig.from_dict(_mapping(data, "volume"))


@dataclass
class AppConfig:
    """The full configuration of one app."""

    app: str = ""
    org: str = ""
    primary_region: str = ""
    extra_regions: list[str] = field(default_factory=list)
    source: Source = field(default_factory=Source)
    merge_cfg: MergeCfg = field(default_factory=MergeCfg)
    services: list[Service] = field(default_factory=list)
    http_service: HttpService | None = None
    launch_params: list[str] = field(default_factory=list)
    deploy_params: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    build: dict[str, Any] = field(default_factory=dict)
    mounts: list[Mount] = field(default_factory=list)
    volumes: list[VolumeConfig] = field(default_factory=list)
    machines: MachineConfig = field(default_factory=MachineConfig)
    secrets: list[SecretRef] = field(default_factory=list)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    kill_timeout: int | None = None

    @classmethod
    def from_dict(cls, data: Any) -> AppConfig:
        data = _mapping(data, "app config")
        http_service = data.get("http_service")
        kill_timeout = data.get("kill_timeout")
        return cls(
            app=_to_str(data.get("app"), "app"),
            org=_to_str(data.get("org"), "org"),
            primary_region=_to_str(data.get("primary_region"), "primary_region"),
            extra_regions=_str_list(data.get("extra_regions"), "extra_regions"),
            source=Source.from_dict(data.get("source")),
            merge_cfg=MergeCfg.from_dict(data.get("merge_cfg")),
            services=_object_list(data.get("services"), "services", Service.from_dict),
            http_service=None if http_service is None else HttpService.from_dict(http_service),
            launch_params=_str_list(data.get("launch_params"), "launch_params"),
            deploy_params=_str_list(data.get("deploy_params"), "deploy_params"),
            env={
                str(key): _to_str(value, f"env.{key}")
                for key, value in _mapping(data.get("env"), "env").items()
            },
            build=dict(_mapping(data.get("build"), "build")),
            mounts=_object_list(data.get("mounts"), "mounts", Mount.from_dict),
            volumes=_object_list(data.get("volumes"), "volumes", _volume_from_dict),
            machines=MachineConfig.from_dict(data.get("machines")),
            secrets=_object_list(data.get("secrets"), "secrets", SecretRef.from_dict),
            network=NetworkConfig.from_dict(data.get("network")),
            kill_timeout=None if kill_timeout is None else _to_int(kill_timeout, "kill_timeout"),
        )

    def to_dict(self) -> dict[str, Any]:
        """The app.yaml form of this config; empty optional sections are left out."""
        result: dict[str, Any] = {
            "app": self.app,
            "org": self.org,
            "primary_region": self.primary_region,
        }
        if self.extra_regions:
            result["extra_regions"] = list(self.extra_regions)
        source = self.source.to_dict()
        if source:
            result["source"] = source
        merge_cfg = self.merge_cfg.to_dict()
        if merge_cfg:
            result["merge_cfg"] = merge_cfg
        if self.services:
            result["services"] = [service.to_dict() for service in self.services]
        if self.http_service is not None:
            result["http_service"] = self.http_service.to_dict()
        if self.launch_params:
            result["launch_params"] = list(self.launch_params)
        if self.deploy_params:
            result["deploy_params"] = list(self.deploy_params)
        if self.env:
            result["env"] = dict(self.env)
        if self.build:
            result["build"] = dict(self.build)
        if self.mounts:
            result["mounts"] = [mount.to_dict() for mount in self.mounts]
        if self.volumes:
            result["volumes"] = [volume.to_dict() for volume in self.volumes]
        if self.machines != MachineConfig():
            result["machines"] = self.machines.to_dict()
        if self.secrets:
            result["secrets"] = [secret.to_dict() for secret in self.secrets]
        if self.network != NetworkConfig():
            result["network"] = self.network.to_dict()
        if self.kill_timeout is not None:
            result["kill_timeout"] = self.kill_timeout
        return result

    def with_kill_timeout(self, seconds: int) -> AppConfig:
        return replace(self, kill_timeout=seconds)

    def regions_w_primary_last(self) -> list[str]:
        """All regions, without duplicates, with the primary region placed last."""
        return list(dict.fromkeys([*self.extra_regions, self.primary_region]))

    def min_machines_from_services(self) -> int:
        http_min = self.http_service.min_machines_running if self.http_service is not None else 0
        services_min = max((service.min_machines_running for service in self.services), default=0)
        return max(http_min, services_min, 0)

    def validate(self, validate_source: bool = True) -> None:
        """Raise ConfigError if the config is invalid; fill in default launch params."""
        if not self.app:
            raise ConfigError("app name is required")
        if not self.primary_region:
            raise ConfigError("primary_region is required")
        try:
            self.network.validate()
        except ConfigError as err:
            raise ConfigError(f"network config validation failed: {err}") from err
        if not _SUBDOMAIN_PREFIX.fullmatch(self.app):
            raise ConfigError(f"app name '{self.app}' is not a valid subdomain prefix")
        if validate_source:
            self.source.validate()
        if not self.launch_params:
            self.launch_params = new_default_launch_params(self.app, self.org)


@dataclass
class PreCalculatedAppConfig:
    """An app config already read and merged, in typed and untyped form."""

    typed: AppConfig
    untyped: dict[str, Any]


def new_default_service_config() -> Service:
    return Service(
        internal_port=80,
        protocol="tcp",
        force_https=False,
        auto_stop_machines=True,
        auto_start_machines=True,
        min_machines_running=1,
        concurrency=Concurrency(type="requests", soft_limit=1_000_000_000, hard_limit=1_000_000_000),
        ports=[
            Port(handlers=["http"], port=80, force_https=True),
            Port(handlers=["tls", "http"], port=443),
        ],
    )


def new_default_launch_params(app_name: str, org_slug: str) -> list[str]:
    args = ["--ha=false", "--auto-confirm", "--now", "--copy-config", "--name", app_name]
    if org_slug:
        args += ["--org", org_slug]
    return args


def new_default_deploy_params() -> list[str]:
    return ["--ha=false"]