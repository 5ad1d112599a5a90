"""Reacting to GitHub push webhooks by redeploying the apps and projects they concern."""

from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol

from .analysis import AppAtFsNode, Cloner, ProjectAtFsNode, TraverseContext
from .app_config import PreCalculatedAppConfig
from .deploy import DeployConfig, new_default_deploy_config
from .source import Source
from .traversal import traverse_deep_app_tree

_log = logging.getLogger(__name__)

_QUEUE_SIZE = 100
_REPO_URL_FIELDS = ("url", "clone_url", "html_url", "git_url", "svn_url", "ssh_url")
_CLOSED = object()

Job = Callable[[], None]


class _AppDeployer(Protocol):
    def deploy_app_from_folder(
        self, path: str, deploy_cfg: DeployConfig, pre_calculated: Optional[PreCalculatedAppConfig]
    ) -> Any:
        """Deploy the app whose app.yaml lies in path."""


def _repository(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    repo = payload.get("repository") if isinstance(payload, Mapping) else None
    return repo if isinstance(repo, Mapping) else {}


def all_entries_with_and_without_git_suffix(entries: Iterable[str]) -> list[str]:
    """Every entry once without a trailing '.git' and once with it, without duplicates."""
    normalized = [entry.removesuffix(".git") for entry in entries]
    with_suffix = [entry + ".git" for entry in normalized]
    return list(dict.fromkeys([*normalized, *with_suffix]))


def matches_spec(source: Source, payload: Mapping[str, Any]) -> bool:
    """Whether a push webhook payload is about the repository of source."""
    if not source.repo:
        return False
    repo = _repository(payload)
    remote_keys = all_entries_with_and_without_git_suffix(
        str(repo.get(name) or "").lower() for name in _REPO_URL_FIELDS
    )
    return source.repo.lower() in remote_keys


class WebhookService:
    """Runs webhook jobs one after another on a background worker."""

    def __init__(self, deploy_service: _AppDeployer) -> None:
        self._deploy_service = deploy_service
        self._jobs: queue.Queue[Any] = queue.Queue(maxsize=_QUEUE_SIZE)
        self._lock = threading.Lock()
        self._closed = False
        self._worker: Optional[threading.Thread] = None
        # Used to clone git projects met while looking for affected apps.
        self.cloner: Optional[Cloner] = None

    def start(self) -> None:
        """Start the worker that runs queued jobs; starting twice has no effect."""
        with self._lock:
            if self._worker is not None:
                return
            _log.info("Creating webhook service & worker")
            self._worker = threading.Thread(target=self._run, name="flycd-webhook-worker", daemon=True)
            self._worker.start()

    def _run(self) -> None:
        while True:
            job = self._jobs.get()
            if job is _CLOSED:
                _log.info("Work queue closed: stopping webhook worker")
                return
            try:
                job()
            except Exception:
                _log.exception("webhook job failed")

    def close_job_queue(self) -> None:
        """Let the worker finish the queued jobs and then stop; no more jobs are accepted."""
        with self._lock:
            if self._closed:
                raise RuntimeError("job queue is already closed")
            self._closed = True
        _log.info("Closing webhook service's job queue")
        self._jobs.put(_CLOSED)

    def enqueue_job(self, job: Job) -> None:
        """Queue a job, waiting while the queue is full."""
        with self._lock:
            if self._closed:
                raise RuntimeError("job queue is closed")
        self._jobs.put(job)

    def handle_github_webhook(self, payload: Mapping[str, Any], path: str) -> Future[None]:
        """Queue deploying every app under path that the push concerns.

        The returned future completes when the job has run, with the traversal error if any.
        Errors deploying single apps are logged, not reported.
        """
        future: Future[None] = Future()
        url = _repository(payload).get("url", "")
        hook_id = payload.get("hook_id") if isinstance(payload, Mapping) else None

        def task() -> None:
            if not future.set_running_or_notify_cancel():
                return
            _log.info("Start processing webhook %s for %s", hook_id, url)
            matched_projects = 0

            def on_valid_app(_ctx: TraverseContext, app: AppAtFsNode) -> None:
                if matched_projects > 0:
                    _log.info("App %s deploying because it is in a project that matches webhook %s",
                              app.app_config.app, url)
                elif matches_spec(app.app_config.source, payload):
                    _log.info("Found app %s matching webhook url %s. Deploying", app.app_config.app, url)
                else:
                    return
                deploy_cfg = new_default_deploy_config().with_retries(1).with_force(False)
                try:
                    self._deploy_service.deploy_app_from_folder(
                        app.path, deploy_cfg, app.to_pre_calculated_app_config()
                    )
                except Exception as err:
                    _log.error("Error deploying app %s: %s", app.app_config.app, err)

            # Any app below a matching project may be affected, so all of them are deployed.
            def on_begin_project(_ctx: TraverseContext, node: ProjectAtFsNode) -> None:
                nonlocal matched_projects
                if matches_spec(node.project_config.source, payload):
                    _log.info("Found project %s matching webhook url %s. Deploying all its apps",
                              node.project_config.project, url)
                    matched_projects += 1

            def on_end_project(_ctx: TraverseContext, node: ProjectAtFsNode) -> None:
                nonlocal matched_projects
                if matches_spec(node.project_config.source, payload):
                    matched_projects -= 1

            ctx = TraverseContext(
                valid_app=on_valid_app,
                begin_project=on_begin_project,
                end_project=on_end_project,
                cloner=self.cloner,
            )
            try:
                traverse_deep_app_tree(path, ctx)
            except Exception as err:
                _log.error("error traversing app tree: %s", err)
                future.set_exception(err)
            else:
                future.set_result(None)
            _log.info("Done processing webhook %s for %s", hook_id, url)

        self.enqueue_job(task)
        return future