# dag.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from .errors import ConfigurationError
from .model import Barrier, Stage


@dataclass(frozen=True)
class Batch:
    """Consecutive stages with no wait between them; they may run concurrently."""
    index: int
    stages: Tuple[Stage, ...]
    barrier: Optional[Barrier] = None  # the wait this batch sits behind

    @property
    def labels(self) -> List[str]:
        return [s.label for s in self.stages]


@dataclass(frozen=True)
class Graph:
    batches: Tuple[Batch, ...]

    @property
    def stages(self) -> List[Stage]:
        return [s for b in self.batches for s in b.stages]

    def __iter__(self) -> Iterator[Batch]:
        return iter(self.batches)

    def __len__(self) -> int:
        return len(self.batches)

    def batch_of(self, label: str) -> Batch:
        for b in self.batches:
            if label in b.labels:
                return b
        raise KeyError(label)

    def predecessors(self, label: str) -> List[str]:
        """Every stage that must be terminal before `label` may start."""
        idx = self.batch_of(label).index
        return [s.label for b in self.batches[:idx] for s in b.stages]


def build_graph(stages: Sequence[Stage], waits: Sequence[Barrier | int] = ()) -> Graph:
    """
    Cut the ordered stage list into batches at each wait position.

    Leading, trailing and repeated waits produce no empty batches. When
    several waits sit at the same position the first one's
    continue_on_failure flag is kept unless a later one sets it.

    Raises:
        ConfigurationError: empty stage list or a wait outside 0..len(stages).
    """
    stages = list(stages)
    if not stages:
        raise ConfigurationError("pipeline has no stages")

    by_pos: Dict[int, Barrier] = {}
    for w in waits:
        barrier = w if isinstance(w, Barrier) else Barrier(position=int(w))
        if barrier.position < 0 or barrier.position > len(stages):
            raise ConfigurationError(
                f"wait at position {barrier.position} is outside the stage list (0..{len(stages)})"
            )
        prior = by_pos.get(barrier.position)
        if prior is None or (barrier.continue_on_failure and not prior.continue_on_failure):
            by_pos[barrier.position] = barrier

    batches: List[Batch] = []
    current: List[Stage] = []
    pending_barrier: Optional[Barrier] = None

    for pos, stage in enumerate(stages):
        if pos > 0 and pos in by_pos:
            batches.append(Batch(len(batches), tuple(current), pending_barrier))
            current = []
            pending_barrier = by_pos[pos]
        current.append(stage)
    batches.append(Batch(len(batches), tuple(current), pending_barrier))

    return Graph(tuple(batches))
