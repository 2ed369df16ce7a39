# context.py
from __future__ import annotations

import os
import subprocess
from typing import Any, Dict, Iterable, Mapping, Optional

from .git_facts.git import current_branch, head_sha
from .model import RunContext


def _set_path(tree: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    node = tree
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


def _parse_bool(value: str | None) -> Optional[bool]:
    if value is None or value.strip() == "":
        return None
    return value.strip().lower() in ("1", "true", "yes")


def parse_assignment(text: str) -> tuple[str, str]:
    """'build.branch=main' -> ('build.branch', 'main')"""
    key, sep, value = text.partition("=")
    if not sep or not key.strip():
        raise ValueError(f"expected key=value, got {text!r}")
    return key.strip(), value


def build_context(
    *,
    branch: str | None = None,
    commit: str | None = None,
    pull_request: str | None = None,
    fork: bool | None = None,
    pipeline_slug: str | None = None,
    overrides: Iterable[tuple[str, Any]] = (),
    environ: Optional[Mapping[str, str]] = None,
    use_git: bool = True,
) -> RunContext:
    """
    Snapshot of everything predicates may read.

    Explicit arguments win over BATCHCI_* variables, which win over facts
    read from git. A build that does not come from a pull request has
    `build.pull_request` = null, so `build.pull_request.repository.fork`
    reads as null too.
    """
    env = dict(os.environ if environ is None else environ)

    branch = branch or env.get("BATCHCI_BRANCH")
    commit = commit or env.get("BATCHCI_COMMIT")
    pull_request = pull_request or env.get("BATCHCI_PULL_REQUEST") or None
    if fork is None:
        fork = _parse_bool(env.get("BATCHCI_PULL_REQUEST_REPO_FORK"))

    if use_git and (branch is None or commit is None):
        try:
            branch = branch or current_branch()
            commit = commit or head_sha()
        except (subprocess.CalledProcessError, FileNotFoundError):
            # not a checkout, or no git: leave them null
            pass

    pr: Optional[Dict[str, Any]] = None
    if pull_request is not None or fork is not None:
        pr = {"id": pull_request, "repository": {"fork": fork}}

    values: Dict[str, Any] = {
        "build": {
            "branch": branch,
            "commit": commit,
            "pull_request": pr,
            "source": env.get("BATCHCI_BUILD_SOURCE", "local"),
        },
        "pipeline": {"slug": pipeline_slug or env.get("BATCHCI_PIPELINE_SLUG")},
        "organization": {"slug": env.get("BATCHCI_ORGANIZATION_SLUG")},
        "env": env,
    }
    for path, value in overrides:
        _set_path(values, path, value)

    return RunContext(values)
