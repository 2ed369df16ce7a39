# scheduler.py
from __future__ import annotations

from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from enum import Enum
from typing import Deque, Dict

from .dag import Batch, Graph
from .errors import SchedulingStarvation
from .executor import StageExecutor
from .model import Outcome, RunContext, Stage, StageState, Worker
from .pool import WorkerPool
from .predicate import PredicateEvaluator
from .run import Run


class BarrierPolicy(str, Enum):
    CONTINUE = "continue"    # a wait only waits; failures never cancel later stages
    FAIL_FAST = "fail-fast"  # a wait after a failure cancels what follows it


class Scheduler:
    """
    Batch-by-batch dispatcher.

    - Runs batches strictly in order; batch i+1 starts only once every
      stage of batch i is terminal.
    - Inside a batch, stages whose predicate is false are skipped; the rest
      sit in a FIFO ready queue and are handed to idle matching workers as
      workers free up.
    - Failures never cancel siblings in the same batch.
    """

    def __init__(
        self,
        executor: StageExecutor,
        *,
        policy: BarrierPolicy = BarrierPolicy.CONTINUE,
        max_parallel: int | None = None,
        poll_interval: float = 0.1,
    ):
        if max_parallel is not None and max_parallel < 1:
            raise ValueError("max_parallel must be >= 1")
        self.executor = executor
        self.policy = BarrierPolicy(policy)
        self.max_parallel = max_parallel
        self.poll_interval = poll_interval

    def schedule(
        self,
        graph: Graph,
        evaluator: PredicateEvaluator,
        pool: WorkerPool,
        context: RunContext,
        run: Run,
    ) -> None:
        """
        Drive every stage of `run` to a terminal state.

        Raises:
            SchedulingStarvation: a stage that would run needs tags no worker
                has. Checked before anything executes.
        """
        self.check_starvation(graph, evaluator, pool, context)

        for batch in graph:
            if run.cancelled:
                self._cancel_batch(batch, run, "run cancelled")
                continue

            if self._barrier_blocks(batch, run):
                self._cancel_batch(batch, run, "blocked by failure before wait")
                continue

            self._run_batch(batch, evaluator, pool, context, run)

    def check_starvation(
        self,
        graph: Graph,
        evaluator: PredicateEvaluator,
        pool: WorkerPool,
        context: RunContext,
    ) -> None:
        for stage in graph.stages:
            if not evaluator.evaluate(stage.predicate, context):
                continue
            if not pool.can_satisfy(stage.selector):
                raise SchedulingStarvation(
                    stage=stage.label,
                    selector=sorted(stage.selector),
                    available=[sorted(w.tags) for w in pool.workers],
                )

    # ------------------------------------------------------------------

    def _barrier_blocks(self, batch: Batch, run: Run) -> bool:
        if self.policy is not BarrierPolicy.FAIL_FAST or batch.barrier is None:
            return False
        if batch.barrier.continue_on_failure:
            return False
        return run.has_failures()

    def _cancel_batch(self, batch: Batch, run: Run, reason: str) -> None:
        for stage in batch.stages:
            run.finish(Outcome(label=stage.label, state=StageState.CANCELLED, reason=reason))

    def _run_batch(
        self,
        batch: Batch,
        evaluator: PredicateEvaluator,
        pool: WorkerPool,
        context: RunContext,
        run: Run,
    ) -> None:
        ready: Deque[Stage] = deque()
        for stage in batch.stages:
            if evaluator.evaluate(stage.predicate, context):
                ready.append(stage)
            else:
                run.finish(Outcome(label=stage.label, state=StageState.SKIPPED, reason="condition is false"))

        if not ready:
            return

        threads = min(len(ready), max(1, len(pool)))
        if self.max_parallel is not None:
            threads = min(threads, self.max_parallel)

        in_flight: Dict[Future, Stage] = {}
        with ThreadPoolExecutor(max_workers=threads, thread_name_prefix=f"batch{batch.index}") as tp:
            while ready or in_flight:
                if run.cancelled and ready:
                    while ready:
                        stage = ready.popleft()
                        run.finish(Outcome(label=stage.label, state=StageState.CANCELLED, reason="run cancelled"))

                # hand out every idle matching worker, oldest stage first
                for stage in list(ready):
                    if run.cancelled:
                        break
                    if self.max_parallel is not None and len(in_flight) >= self.max_parallel:
                        break
                    worker = pool.try_acquire(stage.selector)
                    if worker is None:
                        continue
                    ready.remove(stage)
                    run.transition(stage.label, StageState.ASSIGNED, worker)
                    in_flight[tp.submit(self._execute, stage, worker, run)] = stage

                try:
                    if not in_flight:
                        if ready:
                            # workers are held by someone else sharing the pool
                            pool.wait_for_release(timeout=self.poll_interval)
                        continue

                    done, _ = wait(list(in_flight), timeout=self.poll_interval, return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    run.cancel()
                    continue

                for fut in done:
                    stage = in_flight.pop(fut)
                    try:
                        outcome = fut.result()
                    except Exception as e:
                        outcome = Outcome(
                            label=stage.label,
                            state=StageState.FAILED,
                            worker=run.worker_of(stage.label),
                            reason=f"{type(e).__name__}: {e}",
                        )
                    run.finish(outcome)

    def _execute(self, stage: Stage, worker: Worker, run: Run) -> Outcome:
        if run.cancelled:
            # assigned but never started
            self.executor.pool.release(worker)
            return Outcome(label=stage.label, state=StageState.CANCELLED, worker=worker.name, reason="run cancelled")
        run.transition(stage.label, StageState.RUNNING)
        return self.executor.execute(stage, worker, run.cancel_event, run_id=run.run_id)
