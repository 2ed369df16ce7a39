# aggregate.py
from __future__ import annotations

from typing import Dict, List

from .errors import AggregationError
from .model import Artifact, RunReport, StageState, Verdict
from .run import Run


def verdict_for(states: List[StageState]) -> Verdict:
    if any(s == StageState.FAILED for s in states):
        return Verdict.FAILED
    if any(s == StageState.CANCELLED for s in states):
        return Verdict.CANCELLED
    return Verdict.SUCCEEDED


def aggregate(run: Run) -> RunReport:
    """
    Fold a finished run into its report.

    The run fails if any stage failed. Artifacts of every stage are merged
    under "<label>/<path>"; two artifacts with the same key raise
    AggregationError and leave the recorded outcomes untouched.
    """
    if not run.complete:
        pending = sorted(l for l, s in run.states().items() if not s.terminal)
        raise ValueError(f"run {run.run_id} still has non-terminal stages: {pending}")

    outcomes = run.outcomes()
    artifacts: Dict[str, Artifact] = {}
    for outcome in outcomes:
        if outcome.state == StageState.SKIPPED:
            continue
        for artifact in outcome.artifacts:
            prior = artifacts.get(artifact.key)
            if prior is not None:
                raise AggregationError(key=artifact.key, stages=[prior.stage, artifact.stage])
            artifacts[artifact.key] = artifact

    return RunReport(
        run_id=run.run_id,
        verdict=verdict_for([o.state for o in outcomes]),
        outcomes=outcomes,
        artifacts=artifacts,
        started_at=run.started_at,
        finished_at=run.finished_at,
    )
