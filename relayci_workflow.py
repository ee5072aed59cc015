# relayci_workflow.py
# relayci's own pipeline: lint + tests on every push, wheels per platform,
# and a gated release of main when the project version is new.
from __future__ import annotations

from relayci import after_approved, matrix, sh, stage, wf, when


def workflow():
    return wf(
        "ci",
        stage(
            "lint",
            sh("Ruff check", "ruff check src tests"),
        ),
        stage(
            "test",
            sh("Install package", "pip install -e '.[test]'"),
            sh("Run pytest", "pytest -q"),
            needs=["lint"],
            matrix=matrix(py=["3.11", "3.12"]),
            fail_fast=True,
        ),
        stage(
            "dist",
            sh("Build wheel", "python -m build --wheel --outdir dist/$RELAYCI_MATRIX_OS"),
            sh("Record artifact", "echo \"artifact=dist/$RELAYCI_MATRIX_OS\" >> $RELAYCI_OUTPUT"),
            needs=["test"],
            outputs=["artifact"],
            matrix=matrix(os=["linux", "macos", "windows"]),
        ),
        # only runs on main, and only when pyproject's version is unpublished
        stage(
            "publish",
            sh("Tag release", "git tag $RELAYCI_INPUT_RELEASE_TAG"),
            sh("Push tag", "git push origin $RELAYCI_INPUT_RELEASE_TAG"),
            needs=["dist"],
            inputs=["release_tag"],
            when="startsWith(ref, 'refs/heads/main') && !fork",
            environment="release",
            release=True,
        ),
        stage(
            "deploy-docs",
            sh("Publish docs", "echo deploying docs for $RELAYCI_INPUT_RELEASE_TAG"),
            needs=["publish"],
            inputs=["release_tag"],
            environment="docs",
        ),
        on="event in ['push', 'pull_request', 'manual']",
        approvals={
            "release": when("actor == 'release-bot'"),
            "docs": after_approved("release"),
        },
    )
