# pool.py
from __future__ import annotations

import threading
from typing import Dict, FrozenSet, Iterable, List, Optional

from .model import Worker


class WorkerPool:
    """
    The one shared resource of a run: a set of workers, each idle or busy.

    Every acquire/release happens under a single condition variable, so a
    worker can never be handed to two stages at once.
    """

    def __init__(self, workers: Iterable[Worker]):
        self._workers: List[Worker] = list(workers)
        names = [w.name for w in self._workers]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise ValueError(f"Duplicate worker names found: {dupes}")
        self._busy: Dict[str, bool] = {w.name: False for w in self._workers}
        self._cond = threading.Condition()

    def __len__(self) -> int:
        return len(self._workers)

    @property
    def workers(self) -> List[Worker]:
        return list(self._workers)

    def can_satisfy(self, selector: FrozenSet[str]) -> bool:
        """True if at least one worker (busy or not) could ever run this selector."""
        return any(w.matches(selector) for w in self._workers)

    def idle(self) -> List[Worker]:
        with self._cond:
            return [w for w in self._workers if not self._busy[w.name]]

    def is_busy(self, name: str) -> bool:
        with self._cond:
            return self._busy[name]

    def try_acquire(self, selector: FrozenSet[str]) -> Optional[Worker]:
        """Claim the first idle matching worker, or return None."""
        with self._cond:
            return self._claim(selector)

    def release(self, worker: Worker) -> None:
        with self._cond:
            if worker.name not in self._busy:
                raise KeyError(f"unknown worker: {worker.name}")
            self._busy[worker.name] = False
            self._cond.notify_all()

    def wait_for_release(self, timeout: float | None = None) -> None:
        with self._cond:
            self._cond.wait(timeout=timeout)

    def _claim(self, selector: FrozenSet[str]) -> Optional[Worker]:
        for w in self._workers:
            if not self._busy[w.name] and w.matches(selector):
                self._busy[w.name] = True
                return w
        return None


def parse_worker_spec(spec: str, index: int = 0) -> Worker:
    """
    Parse "name:tag,tag" (or just "tag,tag") into a Worker.

    Tags given as key=value are kept verbatim; a bare key becomes key=true.
    """
    spec = spec.strip()
    name, sep, tag_part = spec.partition(":")
    if not sep:
        name, tag_part = f"worker-{index + 1}", spec
    tags = set()
    for raw in tag_part.split(","):
        raw = raw.strip()
        if not raw:
            continue
        tags.add(raw if "=" in raw else f"{raw}=true")
    return Worker(name=name.strip() or f"worker-{index + 1}", tags=frozenset(tags))


def local_workers(count: int, tags: Iterable[str] = ()) -> List[Worker]:
    """`count` identical workers carrying `tags`."""
    tag_set = frozenset(tags)
    return [Worker(name=f"local-{i + 1}", tags=tag_set) for i in range(count)]
