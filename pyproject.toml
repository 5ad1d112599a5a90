[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "flycd"
version = "0.0.48"
description = "Deploy fly.io apps from code: app and project trees described in YAML, deployed when their source or config changes."
requires-python = ">=3.11"
dependencies = [
    "pyyaml",
    "tomli-w",
]
keywords = [
    "fly.io",
    "deployment",
    "continuous-delivery",
    "gitops",
    "webhook",
    "yaml",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Software Distribution",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
flycd = "flycd.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["flycd"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
warn_redundant_casts = true
