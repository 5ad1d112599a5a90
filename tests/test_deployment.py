import tomllib
from pathlib import Path

import pytest
import yaml

from flycd.app_config import AppConfig
from flycd.deploy import SingleAppDeploySuccessType, new_default_deploy_config
from flycd.deploy_steps import DeployError
from flycd.deployment import (
    SKIPPED_ABORTED_EARLIER,
    DeployService,
    hash_dir,
    read_app_configs,
    skipped_not_valid,
)
from flycd.resources import ScaleState, VolumeState
from flycd.source import new_inline_docker_file_source


def _snapshot(temp_dir):
    root = Path(temp_dir)
    return {
        p.relative_to(root).as_posix(): p.read_text(encoding="utf-8")
        for p in root.rglob("*")
        if p.is_file()
    }


class FakeFlyClient:
    def __init__(self, exists=False, deployed_cfg=None, scales=None, volumes=None):
        self.exists = exists
        self.deployed_cfg = deployed_cfg if deployed_cfg is not None else AppConfig()
        self.scales = scales or []
        self.volumes = volumes or []
        self.calls = []
        self.snapshots = []

    def named(self, name):
        return [call for call in self.calls if call[0] == name]

    def exists_app(self, app_name):
        self.calls.append(("exists_app", app_name))
        return self.exists

    def get_deployed_app_config(self, app_name):
        self.calls.append(("get_deployed_app_config", app_name))
        return self.deployed_cfg

    def create_new_app(self, cfg, temp_dir, deploy):
        self.calls.append(("create_new_app", cfg.app, deploy))
        self.snapshots.append(_snapshot(temp_dir))

    def deploy_existing_app(self, cfg, temp_dir, deploy_cfg, region):
        self.calls.append(("deploy_existing_app", cfg, region))
        self.snapshots.append(_snapshot(temp_dir))

    def get_app_scale(self, app_name):
        self.calls.append(("get_app_scale", app_name))
        return list(self.scales)

    def scale_app(self, app_name, region, count):
        self.calls.append(("scale_app", app_name, region, count))

    def scale_app_vm(self, app_name, vm):
        self.calls.append(("scale_app_vm", app_name, vm))

    def scale_app_ram(self, app_name, ram_mb):
        self.calls.append(("scale_app_ram", app_name, ram_mb))

    def save_secrets(self, app_name, secrets, stage):
        self.calls.append(("save_secrets", app_name, list(secrets)))

    def list_ips(self, app_name):
        return []

    def create_ip(self, app_name, ip):
        self.calls.append(("create_ip", app_name, ip))

    def delete_ip(self, app_name, ip_id, address):
        self.calls.append(("delete_ip", app_name, ip_id))

    def get_app_volumes(self, app_name):
        self.calls.append(("get_app_volumes", app_name))
        return list(self.volumes)

    def extend_volume(self, app_name, volume_id, size_gb):
        self.calls.append(("extend_volume", app_name, volume_id, size_gb))

    def create_volume(self, app_name, volume, region):
        self.calls.append(("create_volume", app_name, volume, region))
        return VolumeState.from_dict(
            {"id": "new", "name": volume.name, "size_gb": volume.size_gb, "state": "created",
             "region": region, "encrypted": True, "created_at": "2023-07-02T20:00:41Z"}
        )


def _cfg():
    return new_default_deploy_config().with_abort_on_first_error(True).with_retries(0)


@pytest.fixture
def app1(tmp_path):
    app_dir = tmp_path / "apps" / "app1"
    app_dir.mkdir(parents=True)
    (app_dir / "app.yaml").write_text(
        "app: app1\norg: personal\nprimary_region: arn\nsource:\n  type: local\n", encoding="utf-8"
    )
    (app_dir / "Dockerfile").write_text("FROM nginx\n", encoding="utf-8")
    return app_dir


@pytest.fixture
def app2(tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    (src / "Dockerfile").write_text("FROM busybox\n", encoding="utf-8")
    (src / ".gitignore").write_text("node_modules\n", encoding="utf-8")
    app_dir = tmp_path / "apps" / "app2"
    app_dir.mkdir(parents=True)
    (app_dir / "app.yaml").write_text(
        "app: app2\nprimary_region: arn\nsource:\n  type: local\n  path: ../../src\n"
        "merge_cfg:\n  include:\n    - extra.conf\n",
        encoding="utf-8",
    )
    (app_dir / "extra.conf").write_text("merged=true\n", encoding="utf-8")
    return app_dir


def test_deploy_from_folder_new_app(app1):
    client = FakeFlyClient(exists=False)
    result = DeployService(client).deploy_app_from_folder(app1, _cfg(), None)
    assert result == SingleAppDeploySuccessType.CREATED
    assert client.named("create_new_app") == [("create_new_app", "app1", True)]
    deploys = client.named("deploy_existing_app")
    assert len(deploys) == 1
    assert deploys[0][2] == "arn"


def test_deploy_from_folder_existing_app(app1):
    client = FakeFlyClient(exists=True, deployed_cfg=AppConfig())
    result = DeployService(client).deploy_app_from_folder(app1, _cfg(), None)
    assert result == SingleAppDeploySuccessType.UPDATED
    assert client.named("create_new_app") == []
    assert [call[2] for call in client.named("deploy_existing_app")] == ["arn"]


def test_deploy_from_folder_app_merging_config(app2):
    client = FakeFlyClient(exists=True, deployed_cfg=AppConfig())
    result = DeployService(client).deploy_app_from_folder(app2, _cfg(), None)
    assert result == SingleAppDeploySuccessType.UPDATED
    files = client.snapshots[-1]
    assert files["Dockerfile"] == "FROM busybox\n"
    assert files["extra.conf"] == "merged=true\n"
    assert files[".dockerignore"] == "node_modules\n"


def test_deployed_config_files_carry_hashes(app1):
    client = FakeFlyClient(exists=False)
    DeployService(client).deploy_app_from_folder(app1, _cfg(), None)
    files = client.snapshots[-1]
    toml_cfg = tomllib.loads(files["fly.toml"])
    yaml_cfg = yaml.safe_load(files["app.yaml"])
    assert toml_cfg["app"] == "app1"
    assert toml_cfg["env"]["FLYCD_CONFIG_VERSION"] == hash_dir(app1)
    assert toml_cfg["env"]["FLYCD_APP_SOURCE_TYPE"] == "local"
    assert yaml_cfg["env"]["FLYCD_APP_VERSION"].startswith("h1:")
    deployed_cfg = client.named("deploy_existing_app")[0][1]
    assert deployed_cfg.env["FLYCD_CONFIG_VERSION"] == hash_dir(app1)


def test_up_to_date_app_is_not_redeployed(app1):
    # A local source with an empty path copies the config folder itself, so both hashes agree.
    digest = hash_dir(app1)
    deployed = AppConfig(env={"FLYCD_APP_VERSION": digest, "FLYCD_CONFIG_VERSION": digest})
    client = FakeFlyClient(exists=True, deployed_cfg=deployed)
    result = DeployService(client).deploy_app_from_folder(app1, _cfg(), None)
    assert result == SingleAppDeploySuccessType.NO_CHANGE
    assert client.named("deploy_existing_app") == []


def test_force_redeploys_up_to_date_app(app1):
    digest = hash_dir(app1)
    deployed = AppConfig(env={"FLYCD_APP_VERSION": digest, "FLYCD_CONFIG_VERSION": digest})
    client = FakeFlyClient(exists=True, deployed_cfg=deployed)
    result = DeployService(client).deploy_app_from_folder(app1, _cfg().with_force(True), None)
    assert result == SingleAppDeploySuccessType.UPDATED


VOLUME_APP_YAML = """\
app: nginx-with-volumes-test
primary_region: arn
source:
  type: inline-docker-file
  inline: FROM nginx
services:
  - internal_port: 80
    protocol: tcp
    min_machines_running: 3
volumes:
  - name: data
    size_gb: 10
"""


@pytest.mark.parametrize(
    "num_deployed_volumes, deployed_app_scale, num_extended, num_created",
    [
        (0, 4, 0, 4),  # create volumes - current app scale decides
        (0, 0, 0, 3),  # create volumes - minimum services count decides
        (2, 0, 2, 1),  # resize and create volumes
        (2, 0, 2, 1),  # create volumes when existing ones are in the wrong region
    ],
)
def test_deploy_from_folder_with_volumes(
    tmp_path, num_deployed_volumes, deployed_app_scale, num_extended, num_created
):
    app_dir = tmp_path / "app"
    app_dir.mkdir()
    (app_dir / "app.yaml").write_text(VOLUME_APP_YAML, encoding="utf-8")
    volumes = [
        VolumeState.from_dict(
            {"id": f"volume-{i}", "name": "data", "size_gb": 9, "state": "created",
             "region": "arn", "encrypted": True, "created_at": "2023-07-02T20:00:41Z"}
        )
        for i in range(num_deployed_volumes)
    ]
    scales = [
        ScaleState.from_dict(
            {"Process": "app", "Count": deployed_app_scale, "CPUKind": "shared", "CPUs": 1,
             "Memory": 256, "Regions": {"arn": deployed_app_scale}}
        )
    ]
    client = FakeFlyClient(exists=True, deployed_cfg=AppConfig(), scales=scales, volumes=volumes)

    result = DeployService(client).deploy_app_from_folder(app_dir, _cfg(), None)

    assert result == SingleAppDeploySuccessType.UPDATED
    created = client.named("create_volume")
    assert len(created) == num_created
    for _, app_name, volume, region in created:
        assert app_name == "nginx-with-volumes-test"
        assert (volume.name, volume.size_gb) == ("data", 10)
        assert region == "arn"
    extended = client.named("extend_volume")
    assert len(extended) == num_extended
    assert all(call[1] == "nginx-with-volumes-test" and call[3] == 10 for call in extended)
    scaled = client.named("scale_app")
    assert bool(scaled) == (num_created + num_extended != deployed_app_scale)
    assert [call[2] for call in client.named("deploy_existing_app")] == ["arn"]


def test_deploy_app_from_inline_config():
    client = FakeFlyClient(exists=False)
    cfg = AppConfig(
        app="inline-app",
        org="some-org",
        primary_region="arn",
        source=new_inline_docker_file_source("FROM nginx:latest"),
    )
    result = DeployService(client).deploy_app_from_inline_config(_cfg(), cfg)
    assert result == SingleAppDeploySuccessType.CREATED
    files = client.snapshots[0]
    assert files["Dockerfile"] == "FROM nginx:latest"
    assert files[".dockerignore"] == ""
    toml_cfg = tomllib.loads(files["fly.toml"])
    assert toml_cfg["app"] == "inline-app"
    assert toml_cfg["env"]["FLYCD_APP_SOURCE_TYPE"] == "inline-docker-file"


def test_git_source_without_cloner_fails(tmp_path):
    app_dir = tmp_path / "app"
    app_dir.mkdir()
    (app_dir / "app.yaml").write_text(
        "app: git-app\nprimary_region: arn\nsource:\n  type: git\n  repo: git@example.com:x/y.git\n",
        encoding="utf-8",
    )
    with pytest.raises(DeployError, match="no git cloner"):
        DeployService(FakeFlyClient()).deploy_app_from_folder(app_dir, _cfg(), None)


def test_git_source_uses_cloner(tmp_path):
    app_dir = tmp_path / "app"
    app_dir.mkdir()
    repo_url = "git@example.com:x/y.git"
    (app_dir / "app.yaml").write_text(
        f"app: git-app\nprimary_region: arn\nsource:\n  type: git\n  repo: {repo_url}\n",
        encoding="utf-8",
    )
    requested = []

    def cloner(clone_source, target):
        requested.append(clone_source.repo)
        repo_dir = Path(target) / "repo"
        repo_dir.mkdir()
        (repo_dir / "Dockerfile").write_text("FROM alpine\n", encoding="utf-8")
        return repo_dir

    client = FakeFlyClient(exists=False)
    result = DeployService(client, cloner).deploy_app_from_folder(app_dir, _cfg(), None)
    assert result == SingleAppDeploySuccessType.CREATED
    assert requested == [repo_url]
    files = client.snapshots[0]
    assert files["Dockerfile"] == "FROM alpine\n"
    assert tomllib.loads(files["fly.toml"])["env"]["FLYCD_APP_SOURCE_REPO"] == repo_url


def test_missing_local_source_fails(tmp_path):
    app_dir = tmp_path / "app"
    app_dir.mkdir()
    (app_dir / "app.yaml").write_text(
        "app: lost\nprimary_region: arn\nsource:\n  type: local\n  path: does-not-exist-anywhere\n",
        encoding="utf-8",
    )
    with pytest.raises(DeployError, match="does not exist"):
        DeployService(FakeFlyClient()).deploy_app_from_folder(app_dir, _cfg(), None)


def test_read_app_configs_missing_file(tmp_path):
    with pytest.raises(DeployError, match="error reading app.yaml"):
        read_app_configs(tmp_path)


def test_read_app_configs_invalid(tmp_path):
    (tmp_path / "app.yaml").write_text("app: x\nsource:\n  type: local\n", encoding="utf-8")
    with pytest.raises(DeployError, match="error making app config"):
        read_app_configs(tmp_path)


def test_read_app_configs_valid(app1):
    typed, untyped = read_app_configs(app1)
    assert typed.app == "app1"
    assert untyped["primary_region"] == "arn"


def test_hash_dir_of_empty_dir(tmp_path):
    assert hash_dir(tmp_path) == "h1:47DEQpj8HBSa+/TImW+5JCeuQeRkm5NMpJWZG3hSuFU="


def test_hash_dir_depends_only_on_contents(tmp_path):
    first, second = tmp_path / "a", tmp_path / "b"
    for root in (first, second):
        (root / "sub").mkdir(parents=True)
    (first / "x.txt").write_text("x", encoding="utf-8")
    (first / "sub" / "y.txt").write_text("y", encoding="utf-8")
    (second / "sub" / "y.txt").write_text("y", encoding="utf-8")
    (second / "x.txt").write_text("x", encoding="utf-8")
    assert hash_dir(first) == hash_dir(second)
    (second / "x.txt").write_text("changed", encoding="utf-8")
    assert hash_dir(first) != hash_dir(second)


def test_hash_dir_rejects_file(tmp_path):
    target = tmp_path / "f"
    target.write_text("", encoding="utf-8")
    with pytest.raises(DeployError):
        hash_dir(target)


def test_skipped_not_valid_message():
    cause = ValueError("bad")
    err = skipped_not_valid(cause)
    assert str(err) == "skipped: not a valid app: bad"
    assert err.__cause__ is cause


def _write_app(root, name, body):
    app_dir = root / name
    app_dir.mkdir(parents=True)
    (app_dir / "app.yaml").write_text(body, encoding="utf-8")
    return app_dir


def test_deploy_all_reports_valid_and_invalid_apps(tmp_path):
    _write_app(tmp_path, "a1", "app: good\nprimary_region: arn\nsource:\n  type: local\n")
    _write_app(tmp_path, "a2", "app: broken\nsource:\n  type: local\n")
    client = FakeFlyClient(exists=False)
    result = DeployService(client).deploy_all(tmp_path, _cfg())
    assert [s.spec.app_config.app for s in result.succeeded_apps] == ["good"]
    assert [s.success_type for s in result.succeeded_apps] == [SingleAppDeploySuccessType.CREATED]
    assert [f.spec.app_config.app for f in result.failed_apps] == ["broken"]
    assert "skipped: not a valid app" in str(result.failed_apps[0].cause)
    assert result.success() is False


def test_deploy_all_aborts_after_first_error(tmp_path):
    _write_app(tmp_path, "a-bad", "app: bad\nsource:\n  type: local\n")
    _write_app(tmp_path, "b-good", "app: good\nprimary_region: arn\nsource:\n  type: local\n")
    client = FakeFlyClient(exists=False)
    result = DeployService(client).deploy_all(tmp_path, _cfg())
    assert result.succeeded_apps == []
    assert [f.spec.app_config.app for f in result.failed_apps] == ["bad", "good"]
    assert result.failed_apps[1].cause is SKIPPED_ABORTED_EARLIER
    assert client.named("create_new_app") == []


def test_deploy_all_continues_when_not_aborting(tmp_path):
    _write_app(tmp_path, "a-bad", "app: bad\nsource:\n  type: local\n")
    _write_app(tmp_path, "b-good", "app: good\nprimary_region: arn\nsource:\n  type: local\n")
    client = FakeFlyClient(exists=False)
    result = DeployService(client).deploy_all(tmp_path, _cfg().with_abort_on_first_error(False))
    assert [s.spec.app_config.app for s in result.succeeded_apps] == ["good"]
    assert len(result.failed_apps) == 1


def test_deploy_all_records_projects(tmp_path):
    (tmp_path / "project.yaml").write_text(
        "project: proj\nsource:\n  type: local\n  path: apps\n", encoding="utf-8"
    )
    _write_app(tmp_path / "apps", "a1", "app: inproj\nprimary_region: arn\nsource:\n  type: local\n")
    client = FakeFlyClient(exists=False)
    result = DeployService(client).deploy_all(tmp_path, _cfg())
    assert [p.project_config.project for p in result.processed_projects] == ["proj"]
    assert [s.spec.app_config.app for s in result.succeeded_apps] == ["inproj"]
    assert result.success() is True


def test_deploy_all_missing_path(tmp_path):
    with pytest.raises(DeployError, match="error traversing app tree"):
        DeployService(FakeFlyClient()).deploy_all(tmp_path / "nope", _cfg())


def test_failing_client_becomes_failed_app(tmp_path):
    _write_app(tmp_path, "a1", "app: good\nprimary_region: arn\nsource:\n  type: local\n")

    class BrokenClient(FakeFlyClient):
        def exists_app(self, app_name):
            raise RuntimeError("api down")

    result = DeployService(BrokenClient()).deploy_all(tmp_path, _cfg())
    assert len(result.failed_apps) == 1
    assert "api down" in str(result.failed_apps[0].cause)