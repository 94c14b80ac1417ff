# actionci_workflow.py
# Workflow for checking actionci itself: install, test, validate the config
from __future__ import annotations
from actionci import wf, job, sh, on_push, on_dispatch


def workflow():
    return wf(
        # Install once; later jobs reuse the environment
        job(
            "install",
            sh("Install package", "pip install -e '.[test]'"),
        ),

        # Test job - runs pytest on the codebase
        job(
            "test",
            sh("Run pytest", "python -m pytest -q"),
            needs=["install"],
            timeout_minutes=20,
        ),

        # Config check - validates project configuration
        job(
            "config-check",
            sh(
                "Validate pyproject.toml",
                "python -c 'import tomllib; tomllib.load(open(\"pyproject.toml\", \"rb\"))'",
                id="toml",
            ),
            sh("Validate own workflow", "actionci validate actionci_workflow.py"),
            needs=["install"],
            continue_on_error=True,
        ),
        name="actionci",
        on=[
            on_push(branches=["main"]),
            on_dispatch(),
        ],
    )
