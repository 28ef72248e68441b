[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "runnerctl"
version = "0.1.0"
description = "Reconciliation logic for self-hosted CI runners: runner pods, replica sets, deployments, runner sets and scheduled overrides"
requires-python = ">=3.10"
keywords = [
    "ci",
    "runners",
    "reconciler",
    "controller",
    "autoscaling",
    "schedule",
    "recurrence",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
]
dependencies = [
    "python-dateutil",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["runnerctl"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
