from pathlib import Path

import pytest
import yaml

from flycd.cli import convert_tree, list_repos, main
from flycd.source import ConfigError
from flycd.traversal import TraversalError

FLY_TOML = """
app = "demo"
primary_region = "arn"

[mounts]
source = "data"
destination = "/data"
"""


def _write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def _read_yaml(path: Path):
    return yaml.safe_load(path.read_text(encoding="utf-8"))


def test_convert_creates_app_yaml(tmp_path):
    _write(tmp_path / "svc" / "fly.toml", FLY_TOML)
    converted = convert_tree(tmp_path)
    assert converted == [tmp_path / "svc"]
    assert _read_yaml(tmp_path / "svc" / "app.yaml") == {
        "app": "demo",
        "primary_region": "arn",
        "mounts": [{"source": "data", "destination": "/data"}],
        "source": {"type": "local"},
    }


def test_convert_keeps_existing_source(tmp_path):
    _write(tmp_path / "fly.toml", 'app = "demo"\n[source]\ntype = "git"\nrepo = "https://example.com/r.git"\n')
    convert_tree(tmp_path)
    assert _read_yaml(tmp_path / "app.yaml")["source"] == {"type": "git", "repo": "https://example.com/r.git"}


def test_convert_skips_existing_unless_forced(tmp_path):
    _write(tmp_path / "fly.toml", FLY_TOML)
    _write(tmp_path / "app.yaml", "keep: true\n")
    assert convert_tree(tmp_path) == []
    assert _read_yaml(tmp_path / "app.yaml") == {"keep": True}
    assert convert_tree(tmp_path, force=True) == [tmp_path]
    assert _read_yaml(tmp_path / "app.yaml")["app"] == "demo"


def test_convert_reports_broken_toml_but_converts_others(tmp_path):
    _write(tmp_path / "a" / "fly.toml", "app = \n")
    _write(tmp_path / "b" / "fly.toml", FLY_TOML)
    with pytest.raises(ConfigError):
        convert_tree(tmp_path)
    assert not (tmp_path / "a" / "app.yaml").exists()
    assert _read_yaml(tmp_path / "b" / "app.yaml")["app"] == "demo"


def test_convert_missing_path(tmp_path):
    with pytest.raises(FileNotFoundError):
        convert_tree(tmp_path / "missing")


def test_convert_relative_path(tmp_path, monkeypatch):
    _write(tmp_path / "rel" / "fly.toml", FLY_TOML)
    monkeypatch.chdir(tmp_path)
    assert convert_tree("rel") == [tmp_path / "rel"]


def test_main_convert(tmp_path, capsys):
    _write(tmp_path / "fly.toml", FLY_TOML)
    assert main(["convert", str(tmp_path)]) == 0
    out = capsys.readouterr().out
    assert "Converted fly.toml to app.yaml" in out
    assert "Starting FlyCD v0.0.48..." in out
    assert (tmp_path / "app.yaml").exists()


def test_main_convert_with_errors(tmp_path):
    _write(tmp_path / "fly.toml", "app = \n")
    assert main(["convert", str(tmp_path)]) == 1


def test_main_without_command():
    assert main([]) == 1


def _repo_tree(root: Path) -> None:
    _write(
        root / "proj" / "project.yaml",
        "project: proj\nsource:\n  type: local\n  path: apps\n  repo: https://example.com/org/proj.git\n",
    )
    _write(
        root / "proj" / "apps" / "a1" / "app.yaml",
        "app: a1\nprimary_region: arn\nsource:\n  type: git\n  repo: https://example.com/org/a1.git\n",
    )
    _write(root / "standalone" / "app.yaml", "app: standalone\nprimary_region: arn\nsource:\n  type: local\n")


def test_list_repos(tmp_path):
    _repo_tree(tmp_path)
    projects, apps = list_repos(tmp_path)
    assert [p.project_config.project for p in projects] == ["proj"]
    assert [a.app_config.app for a in apps] == ["a1"]


def test_list_repos_prints_sources(tmp_path, capsys):
    _repo_tree(tmp_path)
    list_repos(tmp_path)
    out = capsys.readouterr().out
    assert ' - a1 @ {"repo":"https://example.com/org/a1.git","ref":{},"type":"git"}' in out
    assert "Found the following app repo references:" in out


def test_list_repos_invalid_project(tmp_path, capsys):
    _write(tmp_path / "project.yaml", "project: bad_name!\nsource:\n  type: local\n")
    with pytest.raises(TraversalError):
        list_repos(tmp_path)
    assert "Skipping project (invalid)" in capsys.readouterr().out


def test_main_repos(tmp_path):
    _repo_tree(tmp_path)
    assert main(["repos", str(tmp_path)]) == 0
    assert main(["repos", str(tmp_path / "missing")]) == 1