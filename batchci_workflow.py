# batchci_workflow.py
# Container build, then the four checks in parallel on production linux agents.
# Skipped entirely for pull requests from forks.
from __future__ import annotations

from batchci.dsl import pipeline as _pipeline, shared, stage, wait

NOT_A_FORK = (
    "build.pull_request.repository.fork == null || "
    "build.pull_request.repository.fork == false"
)

BUILD_AGENT = shared(agents={"production": "true", "platform": "linux"})
BUILD_DOCKER = shared(
    env={
        "DOCKER_IMAGE": "gcr.io/opensourcecoin/radicle-link-seedling-build@sha256:a4bdc23594a970a155ac14045ec78290702bc0e6de746b4edbaf30f2b9719d9b",
        "DOCKER_FILE": ".buildkite/docker/rust/Dockerfile",
    }
)


def check(label: str, script: str):
    return stage(
        label,
        ".buildkite/env",
        script,
        if_=NOT_A_FORK,
        extends=["build-agent", "build-docker"],
        artifact_paths=["Cargo.lock"],
    )


def pipeline():
    return _pipeline(
        # Blocks everything else, so a DOCKER_IMAGE bump builds the image once.
        stage(
            "Build container",
            ".buildkite/env",
            ".buildkite/build-container",
            if_=NOT_A_FORK,
            extends=["build-agent", "build-docker"],
        ),
        wait(),
        check("Build + Test", "ci/build-test"),
        check("fmt + clip", "ci/clippy"),
        check("Deny", "ci/advisory"),
        check("Docs", "ci/docs"),
        shared={"build-agent": BUILD_AGENT, "build-docker": BUILD_DOCKER},
    )
