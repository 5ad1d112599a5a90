# flycd

Describe your fly.io apps as code and bring the deployed state in line with
it. Each app lives in a folder with an `app.yaml`; apps can be grouped into
projects (`project.yaml`) that point at local folders or git repositories and
share defaults, text substitutions and overrides with every app beneath them.

## What it does

- Walks a tree of apps and projects (`flycd.traversal.traverse_deep_app_tree`),
  following projects into local folders or into git repositories cloned by a
  cloner you supply. Each app and each project name is handled once, so cyclic
  references do not loop. A folder that holds a `projects` directory is only
  searched through that directory; `.git`, `.actions`, `.idea`, `.vscode` and
  symlinked directories are skipped.
- Merges project-wide `app_defaults`, `substitutions` and `app_overrides` into
  each app's own configuration (`flycd.common_config.CommonAppConfig`).
  Substitutions are regular expressions applied to the raw `app.yaml` text;
  maps are merged deeply, lists are concatenated and other values are replaced.
- Validates app and project configs: names must be valid DNS subdomain
  prefixes, apps need a `primary_region` and a source, IP settings are checked.
- Deploys an app only when forced or when its source or its config folder has
  changed. Both are hashed (`flycd.deployment.hash_dir`) and stored in the
  app's environment as `FLYCD_APP_VERSION` and `FLYCD_CONFIG_VERSION`, and the
  merged config is written out as both `app.yaml` and `fly.toml`.
- Before a deploy, grows too small volumes and creates missing ones per
  region, stores secrets (read from environment variables or given raw), and
  allocates configured IP addresses, releasing unlisted ones when
  `auto_prune_ips` is set. After a deploy, scales machine counts per region,
  RAM and VM size up to what the config asks for (`flycd.deploy_steps`).
- Reacts to GitHub push webhook payloads (`flycd.webhook.WebhookService`) by
  redeploying the apps, or all apps of the projects, whose source repository
  matches the pushed one, with or without a `.git` suffix on the URL. Jobs
  run one at a time on a background worker.

## Command line

Convert every `fly.toml` below a folder into an `app.yaml`. A `source` of
type `local` is added when missing, and existing `app.yaml` files are kept
unless `--force` is given:

```
flycd convert path/to/apps
flycd convert --force path/to/apps
```

List every git repository referenced by the valid apps and projects below a
folder, which is handy when setting up webhooks:

```
flycd repos path/to/projects
```

Both commands exit with status 1 on errors.

## An app

```yaml
app: my-app
org: personal
primary_region: arn
source:
  type: local        # or: git (with repo, ref), inline-docker-file (with inline)
services:
  - internal_port: 80
    protocol: tcp
    min_machines_running: 1
volumes:
  - name: data
    size_gb: 10
    count: 1
secrets:
  - name: API_TOKEN
    type: env
```

## A project

```yaml
project: my-project
source:
  type: git
  repo: git@example.com:team/configs.git
  ref:
    branch: main
common:
  app_defaults:
    org: personal
  substitutions:
    "REGION": arn
  app_overrides:
    deploy_params: ["--ha=false"]
```

## As a library

```python
from flycd.common_config import CommonAppConfig
from flycd.deploy import new_default_deploy_config

with open("app.yaml", "rb") as f:
    typed, untyped = CommonAppConfig().make_app_config(f.read(), True)

cfg = new_default_deploy_config().with_force(True).with_retries(0)
```

`flycd.deployment.DeployService(fly_client, cloner)` deploys a single folder
(`deploy_app_from_folder`), an inline `AppConfig`
(`deploy_app_from_inline_config`) or a whole tree (`deploy_all`, which
returns a `DeployResult` and, with `abort_on_first_error`, skips everything
after the first failure). `traverse_deep_app_tree` reports apps and projects
through the callbacks of a `flycd.analysis.TraverseContext`. Errors are
raised as `ConfigError`, `TraversalError` or `DeployError`; progress is
reported through the `logging` module.

## What it does not do

- It does not talk to fly.io itself. `flycd.deploy_steps.FlyClient` is only
  an interface; you must provide an object that implements it.
- It does not clone git repositories itself. Git sources need a cloner: a
  callable taking a `CloneSource` and a target directory and returning the
  checked-out directory. Without one, git sources fail with an error.
- There is no HTTP server for webhooks; pass parsed payloads to
  `WebhookService.handle_github_webhook` from your own server.
- The command line has only `convert` and `repos`; there are no commands to
  install flycd into a fly.io account, to deploy, or to run as a monitor.