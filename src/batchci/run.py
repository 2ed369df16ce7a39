# run.py
from __future__ import annotations

import threading
import time
import uuid
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .dag import Graph
from .model import Outcome, RunContext, Stage, StageState, Worker

Listener = Callable[["Run", str, StageState], None]

_ALLOWED = {
    StageState.PENDING: {StageState.SKIPPED, StageState.ASSIGNED, StageState.CANCELLED},
    StageState.ASSIGNED: {StageState.RUNNING, StageState.FAILED, StageState.CANCELLED},
    StageState.RUNNING: {StageState.SUCCEEDED, StageState.FAILED},
}


class Run:
    """
    One pipeline invocation.

    Holds the stage graph, an immutable context snapshot and the evolving
    stage -> state/outcome map. The map is written from worker threads, so
    every access goes through one lock. Listeners are called outside it,
    in transition order per stage.
    """

    def __init__(
        self,
        graph: Graph,
        context: Optional[RunContext] = None,
        *,
        run_id: str | None = None,
        listeners: Iterable[Listener] = (),
    ):
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.graph = graph
        self.context = context or RunContext()
        self.listeners: List[Listener] = list(listeners)
        self.started_at: float | None = None
        self.finished_at: float | None = None

        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._states: Dict[str, StageState] = {s.label: StageState.PENDING for s in graph.stages}
        self._workers: Dict[str, str] = {}
        self._outcomes: Dict[str, Outcome] = {}

    @property
    def stages(self) -> List[Stage]:
        return self.graph.stages

    # ---- cancellation ----

    def cancel(self) -> None:
        """Ask the run to stop: queued stages never start, running ones are signalled."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    # ---- state ----

    def state(self, label: str) -> StageState:
        with self._lock:
            return self._states[label]

    def states(self) -> Dict[str, StageState]:
        with self._lock:
            return dict(self._states)

    def worker_of(self, label: str) -> str | None:
        with self._lock:
            return self._workers.get(label)

    def transition(self, label: str, state: StageState, worker: Worker | None = None) -> None:
        with self._lock:
            current = self._states[label]
            if state not in _ALLOWED.get(current, set()):
                raise ValueError(f"illegal transition for '{label}': {current.value} -> {state.value}")
            self._states[label] = state
            if worker is not None:
                self._workers[label] = worker.name
        self._notify(label, state)

    def finish(self, outcome: Outcome) -> None:
        """Move a stage into its terminal state and keep the outcome."""
        if not outcome.state.terminal:
            raise ValueError(f"outcome for '{outcome.label}' is not terminal: {outcome.state.value}")
        with self._lock:
            current = self._states[outcome.label]
            if outcome.state not in _ALLOWED.get(current, set()):
                raise ValueError(
                    f"illegal transition for '{outcome.label}': {current.value} -> {outcome.state.value}"
                )
            self._states[outcome.label] = outcome.state
            self._outcomes[outcome.label] = outcome
        self._notify(outcome.label, outcome.state)

    def outcome(self, label: str) -> Optional[Outcome]:
        with self._lock:
            return self._outcomes.get(label)

    def outcomes(self) -> List[Outcome]:
        """Outcomes in declared stage order (stages still in flight are left out)."""
        with self._lock:
            return [self._outcomes[s.label] for s in self.stages if s.label in self._outcomes]

    def has_failures(self, labels: Sequence[str] | None = None) -> bool:
        with self._lock:
            pool = labels if labels is not None else list(self._states)
            return any(self._states[l] == StageState.FAILED for l in pool)

    @property
    def complete(self) -> bool:
        with self._lock:
            return all(s.terminal for s in self._states.values())

    def mark_started(self) -> None:
        self.started_at = time.time()

    def mark_finished(self) -> None:
        self.finished_at = time.time()

    def _notify(self, label: str, state: StageState) -> None:
        for listener in self.listeners:
            listener(self, label, state)
