# serialize.py
from __future__ import annotations

import base64
import hashlib
from typing import Any, Dict

from batchci.model import Artifact, Outcome, RunReport


def artifact_to_dict(artifact: Artifact, *, include_data: bool = False) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "key": artifact.key,
        "stage": artifact.stage,
        "path": artifact.path,
        "size": artifact.size,
        "sha256": hashlib.sha256(artifact.data).hexdigest(),
    }
    if include_data:
        out["data_b64"] = base64.b64encode(artifact.data).decode("ascii")
    return out


def outcome_to_dict(outcome: Outcome, position: int) -> Dict[str, Any]:
    return {
        "label": outcome.label,
        "position": position,
        "state": outcome.state.value,
        "worker": outcome.worker,
        "exit_code": outcome.exit_code,
        "command": outcome.command,
        "reason": outcome.reason,
        "duration": round(outcome.duration, 3),
        "artifacts": [a.key for a in outcome.artifacts],
    }


def report_to_dict(report: RunReport, *, pipeline: str | None = None, include_data: bool = False) -> Dict[str, Any]:
    """
    JSON-ready form of a report.

    Artifact bytes are left out unless include_data is set; the archive
    only keeps digests.
    """
    return {
        "run_id": report.run_id,
        "pipeline": pipeline,
        "verdict": report.verdict.value,
        "started_at": report.started_at,
        "finished_at": report.finished_at,
        "stages": [outcome_to_dict(o, i) for i, o in enumerate(report.outcomes)],
        "artifacts": [
            artifact_to_dict(report.artifacts[k], include_data=include_data) for k in sorted(report.artifacts)
        ],
    }
