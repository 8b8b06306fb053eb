# runnerci_workflow.py
# Workflow for runnerci itself: lint, tests and a format check
from __future__ import annotations

from runnerci.dsl import build, job, wf

PYTHON = "python:3.12-slim"
TAGS = ["x86_64", "docker"]
SETUP = ["pip install -e '.[test]' ruff"]


def workflow():
    return wf(
        # Lint job - runs ruff on the codebase
        job(
            "lint",
            "ruff check src tests",
            image=PYTHON,
            tags=TAGS,
            before_script=SETUP,
        ),

        # Test job - runs pytest once lint is clean
        job(
            "test",
            "pytest -q",
            image=PYTHON,
            tags=TAGS,
            before_script=SETUP,
            needs=["lint"],
            timeout=15 * 60,
        ),

        # Format check job - reported but never blocks the pipeline
        build("format-check")
        .image(PYTHON)
        .tags(*TAGS)
        .setup(*SETUP)
        .run("ruff format --check .")
        .allow_failure()
        .build(),

        # Smoke test of the CLI against the bundled example
        job(
            "validate-example",
            "runnerci validate examples/gitlab-ci.yml",
            image=PYTHON,
            tags=TAGS,
            before_script=SETUP,
            needs=["test"],
        ),
    )
