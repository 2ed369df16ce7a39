from __future__ import annotations

import fnmatch
import threading
import time
from typing import Dict, List, Optional, Tuple

import pytest

from batchci.executor import CommandResult
from batchci.model import RunContext, StageState, Worker


class FakeBackend:
    """
    Scripted worker backend.

    exit_codes: command -> exit code (default 0)
    produces:   command -> {path: bytes} written into the running stage's files
    delays:     command -> seconds the command "runs"
    """

    def __init__(
        self,
        exit_codes: Optional[Dict[str, int]] = None,
        produces: Optional[Dict[str, Dict[str, bytes]]] = None,
        delays: Optional[Dict[str, float]] = None,
        default_delay: float = 0.0,
    ):
        self.exit_codes = dict(exit_codes or {})
        self.produces = dict(produces or {})
        self.delays = dict(delays or {})
        self.default_delay = default_delay
        self.calls: List[Tuple[str, str, str]] = []   # (worker, stage, command)
        self.envs: Dict[str, Dict[str, str]] = {}
        self.files: Dict[str, Dict[str, bytes]] = {}  # stage label -> files
        self._current: Dict[str, str] = {}            # worker -> stage label
        self._lock = threading.Lock()
        self._running = 0
        self.max_running = 0

    def run(self, worker, command, env, *, timeout, cancel) -> CommandResult:
        label = env["BATCHCI_STAGE_LABEL"]
        with self._lock:
            self.calls.append((worker.name, label, command))
            self.envs[label] = dict(env)
            self._current[worker.name] = label
            self._running += 1
            self.max_running = max(self.max_running, self._running)
        try:
            delay = self.delays.get(command, self.default_delay)
            deadline = time.monotonic() + delay
            while time.monotonic() < deadline:
                if cancel.is_set():
                    return CommandResult(exit_code=-15, cancelled=True)
                if timeout is not None and delay > timeout:
                    time.sleep(min(timeout, 0.01) if timeout else 0)
                    return CommandResult(exit_code=-9, timed_out=True)
                time.sleep(0.005)
            with self._lock:
                self.files.setdefault(label, {}).update(self.produces.get(command, {}))
            return CommandResult(exit_code=self.exit_codes.get(command, 0), output=f"ran {command}\n")
        finally:
            with self._lock:
                self._running -= 1

    def collect(self, worker, pattern) -> Dict[str, bytes]:
        with self._lock:
            label = self._current.get(worker.name)
            files = self.files.get(label, {})
            return {p: d for p, d in files.items() if fnmatch.fnmatch(p, pattern)}

    def commands_for(self, label: str) -> List[str]:
        return [c for _w, l, c in self.calls if l == label]


class TransitionLog:
    """Run listener recording every transition in order."""

    def __init__(self):
        self.events: List[Tuple[str, StageState]] = []
        self._lock = threading.Lock()

    def __call__(self, run, label, state) -> None:
        with self._lock:
            self.events.append((label, state))

    def index(self, label: str, state: StageState) -> int:
        return self.events.index((label, state))

    def states_of(self, label: str) -> List[StageState]:
        return [s for l, s in self.events if l == label]


NOT_A_FORK = (
    "build.pull_request.repository.fork == null || "
    "build.pull_request.repository.fork == false"
)


def radicle_steps() -> list:
    """The five-stage container-then-checks pipeline, as plain dicts."""
    def check(label, script):
        return {
            "label": label,
            "if": NOT_A_FORK,
            "commands": [".buildkite/env", script],
            "artifact_paths": ["Cargo.lock"],
            "extends": ["build-agent", "build-docker"],
        }

    return [
        {
            "label": "Build container",
            "if": NOT_A_FORK,
            "commands": [".buildkite/env", ".buildkite/build-container"],
            "extends": ["build-agent", "build-docker"],
        },
        "wait",
        check("Build + Test", "ci/build-test"),
        check("fmt + clip", "ci/clippy"),
        check("Deny", "ci/advisory"),
        check("Docs", "ci/docs"),
    ]


RADICLE_SHARED = {
    "build-agent": {"agents": {"production": "true", "platform": "linux"}},
    "build-docker": {"env": {"DOCKER_IMAGE": "seedling-build@sha256:a4bd", "DOCKER_FILE": "Dockerfile"}},
}

CHECK_SCRIPTS = ["ci/build-test", "ci/clippy", "ci/advisory", "ci/docs"]


@pytest.fixture
def production_workers() -> List[Worker]:
    tags = frozenset({"production=true", "platform=linux"})
    return [Worker("agent-1", tags), Worker("agent-2", tags)]


@pytest.fixture
def internal_context() -> RunContext:
    return RunContext({"build": {"branch": "main", "pull_request": None}})


@pytest.fixture
def fork_context() -> RunContext:
    return RunContext({"build": {"pull_request": {"id": "42", "repository": {"fork": True}}}})


@pytest.fixture
def lockfile_backend() -> FakeBackend:
    """Every check script leaves a Cargo.lock behind."""
    return FakeBackend(
        produces={s: {"Cargo.lock": b"# lock\n"} for s in CHECK_SCRIPTS},
        default_delay=0.02,
    )
