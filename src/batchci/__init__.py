
from .dsl import pipeline, stage, wait, shared, StageBuilder, build, Pipeline
from .runner import run_pipeline, load_workflow
from .model import Stage, StageState, Verdict, Worker, RunContext, RunReport

__all__ = [
    "pipeline",
    "stage",
    "wait",
    "shared",
    "StageBuilder",
    "build",
    "Pipeline",
    "run_pipeline",
    "load_workflow",
    "Stage",
    "StageState",
    "Verdict",
    "Worker",
    "RunContext",
    "RunReport",
]
