import os
import threading
from pathlib import Path

import pytest

from flycd.source import Source
from flycd.traversal import TraversalError
from flycd.webhook import (
    WebhookService,
    all_entries_with_and_without_git_suffix,
    matches_spec,
)


class FakeDeployService:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def deploy_app_from_folder(self, path, deploy_cfg, pre_calculated=None):
        self.calls.append((path, deploy_cfg, pre_calculated))
        if self.error is not None:
            raise self.error
        return "created"


def _payload():
    return {
        "ref": "refs/heads/main",
        "hook_id": 1,
        "repository": {
            "id": 123,
            "name": "Test Repo",
            "full_name": "Test User/Test Repo",
            "private": False,
            "html_url": "https://github.com/TestUser/TestRepo",
            "url": "https://github.com/TestUser/TestRepo",
            "git_url": "git://github.com/TestUser/TestRepo.git",
            "ssh_url": "ssh://example.com/TestUser/TestRepo.git",
            "clone_url": "https://github.com/TestUser/TestRepo.git",
            "svn_url": "https://svn.github.com/TestUser/TestRepo",
            "visibility": "public",
            "default_branch": "main",
            "master_branch": "main",
        },
        "pusher": {"name": "Test User", "email": "testuser@example.com"},
        "head_commit": {
            "id": "abc123",
            "tree_id": "def456",
            "message": "Test commit",
            "url": "https://github.com/TestUser/TestRepo/commit/abc123",
            "author": {"name": "Test User", "email": "testuser@example.com"},
        },
    }


def _payload_without_git_suffix():
    payload = _payload()
    payload["repository"]["git_url"] = "git://github.com/TestUser/TestRepo"
    payload["repository"]["ssh_url"] = "ssh://example.com/TestUser/TestRepo"
    return payload


def _write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def _app_yaml(name, repo):
    return f"app: {name}\nprimary_region: arn\nsource:\n  type: git\n  repo: {repo}\n"


@pytest.fixture
def service_and_deployer():
    deployer = FakeDeployService()
    service = WebhookService(deployer)
    service.start()
    yield service, deployer
    service.close_job_queue()


@pytest.fixture
def regular_tree(tmp_path):
    root = tmp_path / "regular"
    _write(root / "app1" / "app.yaml", _app_yaml("app1", "git://github.com/testuser/testrepo.git"))
    _write(root / "app2" / "app.yaml", _app_yaml("app2", "https://example.com/other/repo.git"))
    return root


@pytest.mark.parametrize("payload", [_payload(), _payload_without_git_suffix()],
                         ids=["regular payload", "payload missing .git in urls"])
def test_webhook_deploys_matching_app(service_and_deployer, regular_tree, payload):
    service, deployer = service_and_deployer
    future = service.handle_github_webhook(payload, str(regular_tree))
    assert future.result(timeout=5) is None
    assert [call[0] for call in deployer.calls] == [os.path.abspath(regular_tree / "app1")]
    deploy_cfg = deployer.calls[0][1]
    assert deploy_cfg.retries == 1
    assert deploy_cfg.force is False
    assert deployer.calls[0][2].typed.app == "app1"


def test_webhook_deploys_all_apps_of_matching_project(service_and_deployer, tmp_path):
    service, deployer = service_and_deployer
    root = tmp_path / "tree"
    _write(
        root / "proj" / "project.yaml",
        "project: proj\nsource:\n  type: local\n  path: apps\n  repo: https://github.com/TestUser/TestRepo\n",
    )
    _write(root / "proj" / "apps" / "inner" / "app.yaml",
           _app_yaml("inner", "https://example.com/other/inner.git"))
    _write(root / "outer" / "app.yaml", _app_yaml("outer", "https://example.com/other/outer.git"))

    future = service.handle_github_webhook(_payload(), str(root))
    assert future.result(timeout=5) is None
    assert [call[0] for call in deployer.calls] == [os.path.abspath(root / "proj" / "apps" / "inner")]


def test_webhook_deploy_errors_are_not_reported(regular_tree):
    deployer = FakeDeployService(error=RuntimeError("boom"))
    service = WebhookService(deployer)
    service.start()
    try:
        future = service.handle_github_webhook(_payload(), str(regular_tree))
        assert future.result(timeout=5) is None
        assert len(deployer.calls) == 1
    finally:
        service.close_job_queue()


def test_webhook_traversal_error_is_reported(service_and_deployer, tmp_path):
    service, deployer = service_and_deployer
    future = service.handle_github_webhook(_payload(), str(tmp_path / "missing"))
    with pytest.raises(TraversalError):
        future.result(timeout=5)
    assert deployer.calls == []


def test_jobs_run_in_order():
    service = WebhookService(FakeDeployService())
    done = threading.Event()
    seen = []
    for index in range(5):
        service.enqueue_job(lambda index=index: seen.append(index))
    service.enqueue_job(done.set)
    service.start()
    assert done.wait(5)
    assert seen == [0, 1, 2, 3, 4]
    service.close_job_queue()


def test_enqueue_after_close_fails():
    service = WebhookService(FakeDeployService())
    service.start()
    service.close_job_queue()
    with pytest.raises(RuntimeError):
        service.enqueue_job(lambda: None)
    with pytest.raises(RuntimeError):
        service.close_job_queue()


def test_all_entries_with_and_without_git_suffix():
    assert all_entries_with_and_without_git_suffix(["a.git", "b"]) == ["a", "b", "a.git", "b.git"]
    assert all_entries_with_and_without_git_suffix(["a", "a.git"]) == ["a", "a.git"]
    assert all_entries_with_and_without_git_suffix([]) == []


def test_matches_spec():
    assert matches_spec(Source(repo="HTTPS://GITHUB.COM/TESTUSER/TESTREPO.GIT"), _payload()) is True
    assert matches_spec(Source(repo="git://github.com/TestUser/TestRepo"), _payload()) is True
    assert matches_spec(Source(repo="https://example.com/other/repo"), _payload()) is False
    assert matches_spec(Source(repo=""), _payload()) is False
    assert matches_spec(Source(repo="https://github.com/TestUser/TestRepo"), {}) is False