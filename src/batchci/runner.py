# runner.py
from __future__ import annotations

import json
import runpy
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from .aggregate import aggregate
from .dag import build_graph
from .dsl import Pipeline
from .errors import ConfigurationError
from .executor import LocalProcessBackend, StageExecutor, WorkerBackend
from .model import RunContext, RunReport, Worker
from .pool import WorkerPool, local_workers, parse_worker_spec
from .predicate import PredicateEvaluator
from .resolver import resolve_pipeline
from .run import Listener, Run
from .scheduler import BarrierPolicy, Scheduler

# raw steps -> resolve -> graph -> schedule (+ predicates) -> execute -> aggregate


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Pipeline:
    """
    Load an already-structured pipeline.

    A .py file must define either:
      - pipeline() -> Pipeline      (built with batchci.dsl helpers)
      - PIPELINE = Pipeline(...)

    A .json file must hold {"steps": [...], "shared": {...}}.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix == ".json":
        try:
            data = json.loads(wf_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"{wf_path.name} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"{wf_path.name} must hold a JSON object")
        return Pipeline.from_dict(data)

    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py or .json file, got: {wf_path.name}")

    module_name = f"batchci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    result: Any = None
    if "pipeline" in globals_dict and callable(globals_dict["pipeline"]) and not _is_dsl_helper(globals_dict["pipeline"]):
        result = globals_dict["pipeline"]()
    elif "PIPELINE" in globals_dict:
        result = globals_dict["PIPELINE"]

    if isinstance(result, Mapping):
        result = Pipeline.from_dict(result)
    if not isinstance(result, Pipeline):
        raise TypeError(
            "Workflow must return/define a Pipeline. "
            "Define pipeline() -> Pipeline or PIPELINE = pipeline(...)."
        )
    return result


def _is_dsl_helper(fn: Any) -> bool:
    # `from batchci import pipeline` puts the helper itself in the namespace
    return getattr(fn, "__module__", None) == "batchci.dsl"


# ----------------------------------------------------------------------
# Workers
# ----------------------------------------------------------------------

def workers_from_spec(spec: str | int | None, pipeline_tags: Iterable[str] = ()) -> List[Worker]:
    """
    "3"                          -> 3 local workers carrying every tag the pipeline asks for
    "a:production=true;b:linux"  -> explicitly tagged workers
    None                         -> one local worker, as above
    """
    if spec is None:
        return local_workers(1, pipeline_tags)
    if isinstance(spec, int):
        return local_workers(spec, pipeline_tags)
    spec = spec.strip()
    if spec.isdigit():
        count = int(spec)
        if count < 1:
            raise ValueError("worker count must be >= 1")
        return local_workers(count, pipeline_tags)
    return [parse_worker_spec(part, i) for i, part in enumerate(p for p in spec.split(";") if p.strip())]


# ----------------------------------------------------------------------
# Orchestration
# ----------------------------------------------------------------------

def prepare_run(
    pipeline: Pipeline | Sequence[Any],
    shared: Optional[Mapping[str, Any]] = None,
    *,
    context: RunContext | None = None,
    run_id: str | None = None,
    listeners: Iterable[Listener] = (),
) -> Run:
    """
    Resolve shared blocks, compile predicates and build the batch graph.

    Raises:
        ConfigurationError: anything wrong with the definitions. Nothing
            has run yet when this is raised.
    """
    if isinstance(pipeline, Pipeline):
        steps: Sequence[Any] = pipeline.steps
        shared = pipeline.shared if shared is None else shared
    else:
        steps = pipeline
    stages, waits = resolve_pipeline(steps, shared)
    graph = build_graph(stages, waits)
    return Run(graph, context, run_id=run_id, listeners=listeners)


def required_tags(run: Run) -> List[str]:
    """Every tag any stage of the run selects on."""
    tags = set()
    for stage in run.stages:
        tags |= stage.selector
    return sorted(tags)


class Orchestrator:
    """
    Wires the components of one pipeline invocation together.

    prepare() does everything that can fail on bad configuration, so a
    ConfigurationError always surfaces before a single command runs.
    """

    def __init__(
        self,
        pool: WorkerPool,
        backend: WorkerBackend,
        *,
        policy: BarrierPolicy = BarrierPolicy.CONTINUE,
        max_parallel: int | None = None,
        default_timeout: float | None = None,
        evaluator: PredicateEvaluator | None = None,
        poll_interval: float = 0.1,
    ):
        self.pool = pool
        self.backend = backend
        self.evaluator = evaluator or PredicateEvaluator()
        self.executor = StageExecutor(backend, pool, default_timeout=default_timeout)
        self.scheduler = Scheduler(
            self.executor,
            policy=policy,
            max_parallel=max_parallel,
            poll_interval=poll_interval,
        )

    def prepare(
        self,
        pipeline: Pipeline | Sequence[Any],
        shared: Optional[Mapping[str, Any]] = None,
        *,
        context: RunContext | None = None,
        run_id: str | None = None,
        listeners: Iterable[Listener] = (),
    ) -> Run:
        return prepare_run(pipeline, shared, context=context, run_id=run_id, listeners=listeners)

    def execute(self, run: Run) -> RunReport:
        run.mark_started()
        try:
            self.scheduler.schedule(run.graph, self.evaluator, self.pool, run.context, run)
        finally:
            run.mark_finished()
        return aggregate(run)


def run_pipeline(
    pipeline: Pipeline | Sequence[Any],
    shared: Optional[Mapping[str, Any]] = None,
    *,
    workers: Iterable[Worker] | WorkerPool,
    context: RunContext | None = None,
    backend: WorkerBackend | None = None,
    workspace: str | Path = ".",
    policy: BarrierPolicy = BarrierPolicy.CONTINUE,
    max_parallel: int | None = None,
    default_timeout: float | None = None,
    listeners: Iterable[Listener] = (),
    run_id: str | None = None,
) -> RunReport:
    """Resolve, schedule, execute and aggregate a pipeline in one call."""
    pool = workers if isinstance(workers, WorkerPool) else WorkerPool(workers)
    orchestrator = Orchestrator(
        pool,
        backend or LocalProcessBackend(workspace),
        policy=policy,
        max_parallel=max_parallel,
        default_timeout=default_timeout,
    )
    run = orchestrator.prepare(pipeline, shared, context=context, run_id=run_id, listeners=listeners)
    return orchestrator.execute(run)
