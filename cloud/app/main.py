from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import sqlalchemy as sa
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import selectinload

from .db import SessionLocal, init_schema
from .models import ArtifactRecord, Run, StageResult
from .notify import publish_report, recent_run_ids

app = FastAPI(title="BatchCI Report Archive")

VERDICTS = ("succeeded", "failed", "cancelled")
STATES = ("succeeded", "failed", "skipped", "cancelled")

# -------------------- Schemas --------------------

class StagePayload(BaseModel):
    label: str
    position: int
    state: str
    worker: str | None = None
    exit_code: int | None = None
    command: str | None = None
    reason: str | None = None
    duration: float = 0.0
    artifacts: list[str] = Field(default_factory=list)

class ArtifactPayload(BaseModel):
    key: str
    stage: str
    path: str
    size: int
    sha256: str

class ReportRequest(BaseModel):
    run_id: str
    pipeline: str | None = None
    verdict: str
    started_at: float | None = None
    finished_at: float | None = None
    stages: list[StagePayload]
    artifacts: list[ArtifactPayload] = Field(default_factory=list)

class ReportResponse(BaseModel):
    run_id: str

class RunSummary(BaseModel):
    run_id: str
    pipeline: str | None
    verdict: str
    created_at: datetime

class RunResponse(RunSummary):
    started_at: datetime | None
    finished_at: datetime | None
    stages: list[StagePayload]
    artifacts: list[ArtifactPayload]

# -------------------- Startup --------------------

@app.on_event("startup")
async def startup() -> None:
    await init_schema()

def from_epoch(ts: float | None) -> datetime | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)

def validate_report(req: ReportRequest) -> None:
    if req.verdict not in VERDICTS:
        raise HTTPException(status_code=400, detail=f"verdict must be one of {'|'.join(VERDICTS)}")
    labels = [s.label for s in req.stages]
    if len(set(labels)) != len(labels):
        raise HTTPException(status_code=400, detail="duplicate stage labels")
    for s in req.stages:
        if s.state not in STATES:
            raise HTTPException(status_code=400, detail=f"stage '{s.label}' has non-terminal state '{s.state}'")
    keys = [a.key for a in req.artifacts]
    if len(set(keys)) != len(keys):
        raise HTTPException(status_code=400, detail="duplicate artifact keys")

# -------------------- Endpoints --------------------

@app.post("/reports", response_model=ReportResponse)
async def create_report(req: ReportRequest):
    validate_report(req)

    async with SessionLocal() as s:
        async with s.begin():
            if await s.get(Run, req.run_id):
                raise HTTPException(status_code=409, detail=f"Run {req.run_id} already archived")

            run = Run(
                id=req.run_id,
                pipeline=req.pipeline,
                verdict=req.verdict,
                started_at=from_epoch(req.started_at),
                finished_at=from_epoch(req.finished_at),
                report=req.model_dump(),
            )
            s.add(run)
            for st in req.stages:
                s.add(StageResult(
                    run_id=req.run_id,
                    label=st.label,
                    position=st.position,
                    state=st.state,
                    worker=st.worker,
                    exit_code=st.exit_code,
                    command=st.command,
                    reason=st.reason,
                    duration=st.duration,
                ))
            for a in req.artifacts:
                s.add(ArtifactRecord(run_id=req.run_id, key=a.key, stage=a.stage, path=a.path, size=a.size, sha256=a.sha256))

    # notify after DB commit
    await publish_report(req.run_id, req.pipeline, req.verdict)

    return ReportResponse(run_id=req.run_id)

@app.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(run_id: str):
    """Get an archived run with stage outcomes and artifact digests."""
    async with SessionLocal() as s:
        q = (
            sa.select(Run)
            .where(Run.id == run_id)
            .options(selectinload(Run.stages), selectinload(Run.artifacts))
        )
        run = (await s.execute(q)).scalar_one_or_none()
        if not run:
            raise HTTPException(status_code=404, detail="Run not found")

        artifacts_by_stage: dict[str, list[str]] = {}
        for a in run.artifacts:
            artifacts_by_stage.setdefault(a.stage, []).append(a.key)

        return RunResponse(
            run_id=run.id,
            pipeline=run.pipeline,
            verdict=run.verdict,
            created_at=run.created_at,
            started_at=run.started_at,
            finished_at=run.finished_at,
            stages=[
                StagePayload(
                    label=st.label,
                    position=st.position,
                    state=st.state,
                    worker=st.worker,
                    exit_code=st.exit_code,
                    command=st.command,
                    reason=st.reason,
                    duration=st.duration,
                    artifacts=artifacts_by_stage.get(st.label, []),
                )
                for st in run.stages
            ],
            artifacts=[
                ArtifactPayload(key=a.key, stage=a.stage, path=a.path, size=a.size, sha256=a.sha256)
                for a in run.artifacts
            ],
        )

@app.get("/runs", response_model=list[RunSummary])
async def list_runs(limit: int = 20):
    """Most recently archived runs, newest first."""
    limit = max(1, min(limit, 100))
    run_ids = await recent_run_ids(limit)
    if not run_ids:
        return []

    async with SessionLocal() as s:
        rows = (await s.execute(sa.select(Run).where(Run.id.in_(run_ids)))).scalars().all()

    by_id: dict[str, Any] = {r.id: r for r in rows}
    return [
        RunSummary(run_id=r.id, pipeline=r.pipeline, verdict=r.verdict, created_at=r.created_at)
        for rid in run_ids
        if (r := by_id.get(rid)) is not None
    ]
