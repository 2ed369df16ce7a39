from __future__ import annotations

import threading

import pytest

from batchci.model import Worker
from batchci.pool import WorkerPool, local_workers, parse_worker_spec

LINUX = frozenset({"platform=linux"})


def pool() -> WorkerPool:
    return WorkerPool([
        Worker("mac", frozenset({"platform=macos"})),
        Worker("linux-1", frozenset({"platform=linux", "production=true"})),
        Worker("linux-2", frozenset({"platform=linux"})),
    ])


def test_try_acquire_matches_tags_and_marks_busy() -> None:
    p = pool()
    w1 = p.try_acquire(LINUX)
    w2 = p.try_acquire(LINUX)
    assert {w1.name, w2.name} == {"linux-1", "linux-2"}
    assert p.try_acquire(LINUX) is None
    assert p.is_busy("linux-1") and p.is_busy("linux-2")
    assert [w.name for w in p.idle()] == ["mac"]


def test_empty_selector_matches_any_worker() -> None:
    p = pool()
    assert p.try_acquire(frozenset()).name == "mac"


def test_release_makes_worker_available_again() -> None:
    p = pool()
    w = p.try_acquire(frozenset({"production=true"}))
    assert p.try_acquire(frozenset({"production=true"})) is None
    p.release(w)
    assert p.try_acquire(frozenset({"production=true"})) == w


def test_release_unknown_worker() -> None:
    with pytest.raises(KeyError):
        pool().release(Worker("ghost"))


def test_can_satisfy_ignores_busy_state() -> None:
    p = pool()
    p.try_acquire(frozenset({"production=true"}))
    assert p.can_satisfy(frozenset({"production=true"}))
    assert not p.can_satisfy(frozenset({"platform=windows"}))


def test_duplicate_worker_names() -> None:
    with pytest.raises(ValueError, match="Duplicate worker names"):
        WorkerPool([Worker("a"), Worker("a")])


def test_concurrent_acquires_never_share_a_worker() -> None:
    p = WorkerPool(local_workers(3))
    claimed = []
    lock = threading.Lock()

    def grab():
        w = p.try_acquire(frozenset())
        with lock:
            claimed.append(w)

    threads = [threading.Thread(target=grab) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    got = [w.name for w in claimed if w is not None]
    assert sorted(got) == ["local-1", "local-2", "local-3"]


def test_parse_worker_spec() -> None:
    w = parse_worker_spec("agent-7: production=true, linux")
    assert w.name == "agent-7"
    assert w.tags == frozenset({"production=true", "linux=true"})

    anon = parse_worker_spec("platform=linux", index=2)
    assert anon.name == "worker-3"
    assert anon.tags == LINUX


def test_local_workers() -> None:
    workers = local_workers(2, ["production=true"])
    assert [w.name for w in workers] == ["local-1", "local-2"]
    assert all(w.tags == frozenset({"production=true"}) for w in workers)
