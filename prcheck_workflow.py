# prcheck_workflow.py
# Workflow for checking prcheck itself: lint, format and tests per Python version
from __future__ import annotations
from prcheck.dsl import wf, pipeline, sh, cache


def workflow():
    return wf(
        pipeline(
            "verify",
            sh("Install package", "python3 -m pip install -e '.[test]'"),
            sh("Ruff check", "ruff check src tests"),
            sh("Ruff format check", "ruff format --check src tests"),
            sh("Run pytest", "pytest -q"),
            on=["pull_request", "push"],
            matrix={"python": ["3.11"], "platform": ["ubuntu-latest"]},
            caches=[
                cache("~/.cache/pip", "pip", hash_files=["pyproject.toml"]),
                cache(".pytest_cache", "pytest", hash_files=["tests/**/*.py"]),
            ],
            requires=["python3", "ruff"],
            shell="bash",
        ),
    )
