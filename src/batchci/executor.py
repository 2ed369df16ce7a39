# executor.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol

from .errors import StageFailure
from .model import Artifact, Outcome, Stage, StageState, Worker
from .pool import WorkerPool

OUTPUT_TAIL = 4000  # chars of stdout/stderr kept on an outcome


@dataclass
class CommandResult:
    exit_code: int
    output: str = ""
    timed_out: bool = False
    cancelled: bool = False


class WorkerBackend(Protocol):
    """
    Process-execution collaborator.

    How the command reaches the worker (local process, container, remote
    agent) is up to the implementation.
    """

    def run(
        self,
        worker: Worker,
        command: str,
        env: Mapping[str, str],
        *,
        timeout: float | None,
        cancel: threading.Event,
    ) -> CommandResult:
        ...

    def collect(self, worker: Worker, pattern: str) -> Dict[str, bytes]:
        """Files matching `pattern`, keyed by path relative to the worker's workspace."""
        ...


# ----------------------------------------------------------------------
# Local backend
# ----------------------------------------------------------------------

class LocalProcessBackend:
    """
    Runs every worker's commands as local shell processes.

    Each worker gets `workspace` as its working directory, so artifacts
    are looked up there too.
    """

    def __init__(self, workspace: str | Path = ".", *, poll_interval: float = 0.05, inherit_env: bool = True):
        self.workspace = Path(workspace).resolve()
        self.poll_interval = poll_interval
        self.inherit_env = inherit_env

    def run(self, worker, command, env, *, timeout, cancel) -> CommandResult:
        if not self.workspace.exists():
            raise FileNotFoundError(f"workspace not found: {self.workspace}")

        full_env = os.environ.copy() if self.inherit_env else {}
        full_env.update(env)

        proc = subprocess.Popen(
            command,
            shell=True,
            cwd=str(self.workspace),
            env=full_env,
            text=True,
            encoding="utf-8",
            errors="replace",
            start_new_session=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
        chunks: List[str] = []
        reader = threading.Thread(target=_drain, args=(proc, chunks), daemon=True)
        reader.start()

        deadline = time.monotonic() + timeout if timeout is not None else None
        timed_out = cancelled = False
        while proc.poll() is None:
            if cancel.is_set():
                cancelled = True
                break
            if deadline is not None and time.monotonic() >= deadline:
                timed_out = True
                break
            try:
                proc.wait(timeout=self.poll_interval)
            except subprocess.TimeoutExpired:
                continue

        if timed_out or cancelled:
            # the command runs in its own session; signal everything it spawned
            _signal_group(proc, signal.SIGTERM)
            try:
                proc.wait(timeout=2)
            except subprocess.TimeoutExpired:
                _signal_group(proc, signal.SIGKILL)
                proc.wait()
            else:
                _signal_group(proc, signal.SIGKILL)

        reader.join(timeout=2)
        return CommandResult(
            exit_code=proc.returncode,
            output="".join(chunks)[-OUTPUT_TAIL:],
            timed_out=timed_out,
            cancelled=cancelled,
        )

    def collect(self, worker, pattern) -> Dict[str, bytes]:
        out: Dict[str, bytes] = {}
        for p in _resolve_glob(self.workspace, pattern):
            rel = str(p.resolve().relative_to(self.workspace)).replace("\\", "/")
            out[rel] = p.read_bytes()
        return out


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass


def _drain(proc: subprocess.Popen, chunks: List[str]) -> None:
    assert proc.stdout is not None
    for line in proc.stdout:
        chunks.append(line)
    proc.stdout.close()


def _resolve_glob(root: Path, pattern: str) -> List[Path]:
    """
    Expand an artifact pattern relative to root.
    Supports a plain path ("Cargo.lock"), a directory ("target/doc/",
    every file beneath it), and globs ("dist/*.whl", "logs/**/*.txt").
    """
    pattern = pattern.strip()
    if not pattern:
        return []
    p = root / pattern
    if p.is_file():
        return [p]
    if p.is_dir():
        return sorted(f for f in p.rglob("*") if f.is_file())
    try:
        matches = sorted(root.glob(pattern))
    except (ValueError, NotImplementedError):
        matches = []
    files = [m for m in matches if m.is_file() and root in m.resolve().parents]
    return files


# ----------------------------------------------------------------------
# Stage execution
# ----------------------------------------------------------------------

class StageExecutor:
    """
    Runs one stage on its assigned worker and returns its terminal outcome.

    Commands run in order; the first non-zero exit stops the stage. Every
    declared artifact pattern must match at least one file, even when the
    commands succeeded. The worker goes back to the pool no matter what.
    """

    def __init__(self, backend: WorkerBackend, pool: WorkerPool, *, default_timeout: float | None = None):
        self.backend = backend
        self.pool = pool
        self.default_timeout = default_timeout

    def stage_env(self, stage: Stage, worker: Worker, run_id: str | None = None) -> Dict[str, str]:
        env = {
            "BATCHCI": "true",
            "BATCHCI_STAGE_LABEL": stage.label,
            "BATCHCI_WORKER_NAME": worker.name,
        }
        if run_id:
            env["BATCHCI_RUN_ID"] = run_id
        env.update(stage.env)
        return env

    def execute(
        self,
        stage: Stage,
        worker: Worker,
        cancel: Optional[threading.Event] = None,
        *,
        run_id: str | None = None,
    ) -> Outcome:
        cancel = cancel or threading.Event()
        started = time.monotonic()
        failure: StageFailure | None = None
        output: List[str] = []
        artifacts: List[Artifact] = []

        try:
            try:
                output = self._run_commands(stage, worker, cancel, run_id, started)
            except StageFailure as e:
                failure = e
                output = [e.output] if e.output else []

            missing: List[str] = []
            collected = set()
            for pattern in stage.artifact_paths:
                found = self.backend.collect(worker, pattern)
                if not found:
                    missing.append(pattern)
                for path in sorted(found):
                    # overlapping patterns of one stage name the same file once
                    if path in collected:
                        continue
                    collected.add(path)
                    artifacts.append(Artifact(stage=stage.label, path=path, data=found[path]))

            if failure is None and missing:
                failure = StageFailure(
                    stage=stage.label,
                    reason=f"declared artifact(s) not found: {', '.join(missing)}",
                    exit_code=0,
                )
        except Exception as e:
            # backend blew up (workspace gone, dispatch error, ...)
            failure = StageFailure(stage=stage.label, reason=f"{type(e).__name__}: {e}")
        finally:
            self.pool.release(worker)

        return Outcome(
            label=stage.label,
            state=StageState.FAILED if failure else StageState.SUCCEEDED,
            worker=worker.name,
            exit_code=failure.exit_code if failure else 0,
            command=failure.command if failure else None,
            reason=failure.reason if failure else None,
            output="".join(output)[-OUTPUT_TAIL:],
            artifacts=artifacts,
            duration=time.monotonic() - started,
        )

    def _run_commands(
        self,
        stage: Stage,
        worker: Worker,
        cancel: threading.Event,
        run_id: str | None,
        started: float,
    ) -> List[str]:
        env = self.stage_env(stage, worker, run_id)
        budget = stage.timeout if stage.timeout is not None else self.default_timeout
        output: List[str] = []

        for cmd in stage.commands:
            if cancel.is_set():
                raise StageFailure(stage.label, "cancelled", cmd, None, "".join(output))

            remaining = None
            if budget is not None:
                remaining = budget - (time.monotonic() - started)
                if remaining <= 0:
                    raise StageFailure(stage.label, f"timed out after {budget:g}s", cmd, None, "".join(output))

            result = self.backend.run(worker, cmd, env, timeout=remaining, cancel=cancel)
            output.append(result.output)

            if result.cancelled:
                raise StageFailure(stage.label, "cancelled", cmd, result.exit_code, "".join(output))
            if result.timed_out:
                reason = f"timed out after {budget:g}s" if budget is not None else "timed out"
                raise StageFailure(stage.label, reason, cmd, result.exit_code, "".join(output))
            if result.exit_code != 0:
                raise StageFailure(stage.label, "non-zero exit", cmd, result.exit_code, "".join(output))

        return output
