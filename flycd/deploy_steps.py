"""The steps around a deploy: volumes, secrets and IPs before it, and scaling after it."""

from __future__ import annotations

import ipaddress
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from itertools import groupby
from pathlib import Path
from typing import Iterable, Iterator, Protocol, Sequence

from .app_config import AppConfig, IpConfig, IpVersion
from .deploy import DeployConfig
from .resources import ScaleState, VolumeConfig, VolumeState, count_deployed_apps_per_region
from .source import ConfigError

_log = logging.getLogger(__name__)


class DeployError(Exception):
    """Raised when a step of deploying an app fails."""


@contextmanager
def _failing_as(message: str) -> Iterator[None]:
    """Re-raise any error inside the block as a DeployError prefixed with message."""
    try:
        yield
    except Exception as err:
        raise DeployError(f"{message}: {err}") from err


@dataclass(frozen=True)
class Secret:
    """A secret to store on an app."""

    name: str
    value: str


@dataclass(frozen=True)
class IpAddress:
    """An IP address allocated to a deployed app."""

    id: str = ""
    address: str = ""
    type: str = ""
    region: str = ""
    network: str = ""

    def ipv(self) -> IpVersion:
        kind = self.type.lower()
        if "v4" in kind:
            return IpVersion.V4
        if "v6" in kind:
            return IpVersion.V6
        try:
            version = ipaddress.ip_address(self.address).version
        except ValueError:
            return IpVersion.UNKNOWN
        return IpVersion.V4 if version == 4 else IpVersion.V6

    def is_private(self) -> bool:
        return self.type.lower().startswith("private")


class FlyClient(Protocol):
    """The operations on fly.io that deploying an app needs."""

    def exists_app(self, app_name: str) -> bool:
        """Whether an app with this name exists."""

    def get_deployed_app_config(self, app_name: str) -> AppConfig:
        """The config of the app as it is deployed."""

    def create_new_app(self, cfg: AppConfig, temp_dir: Path, deploy: bool) -> None:
        """Create the app from the files in temp_dir."""

    def deploy_existing_app(
        self, cfg: AppConfig, temp_dir: Path, deploy_cfg: DeployConfig, region: str
    ) -> None:
        """Deploy the files in temp_dir to an existing app."""

    def get_app_scale(self, app_name: str) -> list[ScaleState]:
        """The deployed scale of each process group of the app."""

    def scale_app(self, app_name: str, region: str, count: int) -> None:
        """Set the machine count of the app in a region."""

    def scale_app_vm(self, app_name: str, vm: str) -> None:
        """Set the vm size of the app's machines."""

    def scale_app_ram(self, app_name: str, ram_mb: int) -> None:
        """Set the memory of the app's machines."""

    def save_secrets(self, app_name: str, secrets: Sequence[Secret], stage: bool) -> None:
        """Store secrets on the app."""

    def list_ips(self, app_name: str) -> list[IpAddress]:
        """The IP addresses allocated to the app."""

    def create_ip(self, app_name: str, ip: IpConfig) -> None:
        """Allocate an IP address to the app."""

    def delete_ip(self, app_name: str, ip_id: str, address: str) -> None:
        """Release an IP address of the app."""

    def get_app_volumes(self, app_name: str) -> list[VolumeState]:
        """The volumes of the app."""

    def extend_volume(self, app_name: str, volume_id: str, size_gb: int) -> None:
        """Grow a volume to size_gb."""

    def create_volume(self, app_name: str, volume: VolumeConfig, region: str) -> VolumeState:
        """Create a volume in a region."""


@dataclass
class DeployInput:
    """Everything the deploy steps of one app work from."""

    fly_client: FlyClient
    deploy_cfg: DeployConfig
    cfg_typed: AppConfig
    temp_dir: Path
    app_hash: str = ""
    cfg_hash: str = ""


def _app_scales(deployed_scales: Iterable[ScaleState]) -> list[ScaleState]:
    keyed = sorted(deployed_scales, key=lambda scale: scale.process)
    groups = {process: list(scales) for process, scales in groupby(keyed, key=lambda s: s.process)}
    return groups.get("app", [])


def run_intermediate_steps(inp: DeployInput) -> None:
    """Bring volumes, secrets and IPs to the wanted state before deploying."""
    with _failing_as("error running intermediate volume steps"):
        run_intermediate_volume_steps(inp)
    with _failing_as("error running intermediate secrets steps"):
        run_intermediate_secrets_steps(inp)
    with _failing_as("error running intermediate networking steps"):
        run_intermediate_networking_steps(inp)


def run_post_deploy_steps(inp: DeployInput) -> None:
    """Scale machine counts, memory and vm size after deploying."""
    app = inp.cfg_typed.app
    with _failing_as(f"error getting app scale for app {app}"):
        deployed_scales = inp.fly_client.get_app_scale(app)
    with _failing_as("error during scale count step"):
        run_scale_count_post_deploy_step(inp, deployed_scales)
    with _failing_as("error during scale ram step"):
        run_scale_ram_post_deploy_step(inp, deployed_scales)
    with _failing_as("error during scale vm step"):
        run_scale_vm_post_deploy_step(inp, deployed_scales)


def run_scale_count_post_deploy_step(inp: DeployInput, deployed_scales: Sequence[ScaleState]) -> None:
    """Scale up every region that has fewer machines than wanted.

    All regions are tried; the error of the last scaling attempt, if it failed, is raised.
    """
    cfg = inp.cfg_typed
    min_svc = cfg.min_machines_from_services()
    if (
        not cfg.extra_regions
        and min_svc <= 1
        and not cfg.machines.count_per_region
        and cfg.machines.count <= 1
    ):
        _log.info("No need to scale up instance count: one region and at most 1 instance wanted")
        return

    current = count_deployed_apps_per_region(deployed_scales)
    last_error: DeployError | None = None
    for region in cfg.regions_w_primary_last():
        wanted = max(cfg.machines.count_in_region(region), min_svc)
        have = current.get(region, 0)
        if wanted <= have:
            _log.info("region %s has %d instances, which is >= %d; no need to scale up", region, have, wanted)
            continue
        _log.info("region %s has %d instances, but we want %d; scaling up", region, have, wanted)
        try:
            inp.fly_client.scale_app(cfg.app, region, wanted)
        except Exception as err:
            _log.warning("error scaling app %s to %d in region %s: %s", cfg.app, wanted, region, err)
            last_error = DeployError(f"error scaling app {cfg.app} to {wanted} in region {region}: {err}")
            last_error.__cause__ = err
        else:
            last_error = None
    if last_error is not None:
        raise last_error


def run_scale_vm_post_deploy_step(inp: DeployInput, deployed_scales: Sequence[ScaleState]) -> None:
    """Change the vm type when the 'app' process has other cpus than wanted."""
    cfg = inp.cfg_typed
    cores = cfg.machines.cpu_cores
    if cores <= 0:
        _log.info("No need to change vm type, no vm type specified")
        return

    cpu_type = cfg.machines.cpu_type
    need_to_scale = False
    for scale in _app_scales(deployed_scales):
        if (cpu_type and scale.cpu_kind != cpu_type) or scale.cpus != cores:
            need_to_scale = True
            if not cpu_type:
                cpu_type = scale.cpu_kind
            break

    if not need_to_scale:
        _log.info("No need to scale app %s to %s with %d cores", cfg.app, cpu_type, cores)
        return
    with _failing_as(f"error scaling app {cfg.app} to {cpu_type} with {cores} cores"):
        inp.fly_client.scale_app_vm(cfg.app, f"{cpu_type}-cpu-{cores}x")
    _log.info("scaled app %s to %s with %d cores", cfg.app, cpu_type, cores)


def run_scale_ram_post_deploy_step(inp: DeployInput, deployed_scales: Sequence[ScaleState]) -> None:
    """Change the memory when the 'app' process has another amount than wanted."""
    cfg = inp.cfg_typed
    ram = cfg.machines.ram_mb
    if ram <= 0:
        _log.info("No need to change ram per instance, no ram specified")
        return

    if not any(scale.memory_mb != ram for scale in _app_scales(deployed_scales)):
        _log.info("No need to scale app %s to %d ram", cfg.app, ram)
        return
    with _failing_as(f"error scaling app {cfg.app} to {ram} ram"):
        inp.fly_client.scale_app_ram(cfg.app, ram)
    _log.info("scaled app %s to %d ram", cfg.app, ram)


def run_intermediate_secrets_steps(inp: DeployInput) -> None:
    """Store all configured secrets; all are saved every time."""
    cfg = inp.cfg_typed
    if not cfg.secrets:
        return
    secrets = []
    for ref in cfg.secrets:
        try:
            value = ref.get_secret_value()
        except ConfigError as err:
            raise DeployError(f"error getting value for secret {ref.name} for app {cfg.app}: {err}") from err
        secrets.append(Secret(name=ref.name, value=value))
    with _failing_as(f"error saving secrets for app {cfg.app}"):
        inp.fly_client.save_secrets(cfg.app, secrets, True)


def _ip_matches(existing: IpAddress, wanted: IpConfig) -> bool:
    if existing.ipv() != wanted.v:
        return False
    if existing.is_private() != wanted.private:
        return False
    if existing.network.lower() != wanted.network.lower():
        return False
    if existing.region.lower() != wanted.region.lower():
        return wanted.region == "" and existing.region.lower() == "global"
    return True


def run_intermediate_networking_steps(inp: DeployInput) -> None:
    """Allocate missing IPs and, if asked, release the ones not configured."""
    cfg = inp.cfg_typed
    network = cfg.network
    if network.is_empty():
        return

    with _failing_as(f"error getting ips for app {cfg.app}"):
        current = inp.fly_client.list_ips(cfg.app)

    to_be_kept: set[str] = set()
    for wanted in network.ips:
        try:
            wanted.validate()
        except ConfigError as err:
            raise DeployError(f"error validating ip config {wanted}: {err}") from err
        kept = next((existing for existing in current if _ip_matches(existing, wanted)), None)
        if kept is not None:
            to_be_kept.add(kept.id)
            continue
        _log.info("Creating ip %s for app %s", wanted, cfg.app)
        with _failing_as(f"error creating ip {wanted} for app {cfg.app}"):
            inp.fly_client.create_ip(cfg.app, wanted)

    if not network.auto_prune_ips:
        _log.info("Not pruning ips for app %s", cfg.app)
        return
    _log.info("Pruning ips for app %s", cfg.app)
    for ip in current:
        if ip.id in to_be_kept:
            continue
        _log.info("Removing ip %s for app %s", ip.id, cfg.app)
        with _failing_as(f"error pruning ip {ip.address} for app {cfg.app}"):
            inp.fly_client.delete_ip(cfg.app, ip.id, ip.address)


def minimum_volume_count_per_region(inp: DeployInput) -> dict[str, int]:
    """How many volumes each region with deployed machines needs at least."""
    cfg = inp.cfg_typed
    min_base = max(1, cfg.min_machines_from_services())
    with _failing_as(f"error getting app scales for app {cfg.app}"):
        scales = inp.fly_client.get_app_scale(cfg.app)

    result = count_deployed_apps_per_region(scales)
    for region, count in list(result.items()):
        if count < min_base:
            result[region] = min_base
        wanted_machines = cfg.machines.count_in_region(region)
        if count < wanted_machines:
            result[region] = wanted_machines
    return result


def run_intermediate_volume_steps(inp: DeployInput) -> None:
    """Grow too small volumes and create missing ones in every region."""
    cfg = inp.cfg_typed
    if not cfg.volumes:
        return

    client = inp.fly_client
    with _failing_as(f"error getting deployed volumes for app {cfg.app}"):
        deployed = client.get_app_volumes(cfg.app)
    by_name_and_region: dict[tuple[str, str], list[VolumeState]] = {}
    for volume in deployed:
        by_name_and_region.setdefault((volume.name, volume.region), []).append(volume)

    with _failing_as(f"error getting minimum volume count for app {cfg.app}"):
        min_counts = minimum_volume_count_per_region(inp)

    extended = created = 0
    for region in cfg.regions_w_primary_last():
        for wanted in cfg.volumes:
            wanted_count = max(wanted.count, min_counts.get(region, 0))
            existing = by_name_and_region.get((wanted.name, region), [])
            _log.info("Volumes '%s': need %d x %d GB in region %s, %d deployed",
                      wanted.name, wanted_count, wanted.size_gb, region, len(existing))

            for volume in existing:
                if volume.size_gb < wanted.size_gb:
                    _log.info("Resizing volume %s of app %s from %d to %d GB in region %s",
                              volume.name, cfg.app, volume.size_gb, wanted.size_gb, region)
                    with _failing_as(f"error resizing volume {volume.id} for app {cfg.app} in region {region}"):
                        client.extend_volume(cfg.app, volume.id, wanted.size_gb)
                    extended += 1

            for _ in range(max(0, wanted_count - len(existing))):
                _log.info("Creating new %s volume for app %s in region %s", wanted.name, cfg.app, region)
                with _failing_as(f"error creating volume {wanted.name} for app {cfg.app} in region {region}"):
                    client.create_volume(cfg.app, wanted, region)
                created += 1

    if extended or created:
        _log.info("Extended %d volumes and created %d new volumes for app %s", extended, created, cfg.app)
    else:
        _log.info("No change of volumes needed for app %s", cfg.app)