# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Set, Tuple

from .errors import DefinitionError
from .model import Job


def build_dag(jobs: Iterable[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: iterable[str] (names of jobs that must SUCCEED before this job)

    Returns (adj, indeg) where adj maps a job to the jobs that need it.
    """
    jobs = list(jobs)
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise DefinitionError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        for need in job.needs:
            if need not in name_set:
                raise DefinitionError(
                    f"Job '{job.name}' needs missing job '{need}'. "
                    f"Known jobs: {sorted(name_set)}",
                    job=job.name,
                )
            # Edge need -> job.name (need must succeed before job)
            if job.name not in adj[need]:
                adj[need].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Jobs within a stage have no dependency relation and may run in parallel.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise DefinitionError(
            f"needs graph has a cycle. Stuck jobs: {remaining}",
            details={"stuck": ",".join(remaining)},
        )

    return levels


def _closure(start: str, edges: Dict[str, Iterable[str]]) -> Set[str]:
    seen: Set[str] = set()
    q = deque(edges.get(start, ()))
    while q:
        node = q.popleft()
        if node in seen:
            continue
        seen.add(node)
        q.extend(edges.get(node, ()))
    return seen


def upstream(jobs: Iterable[Job], name: str) -> Set[str]:
    """Transitive `needs` closure of a job (everything it waits on)."""
    return _closure(name, {j.name: j.needs for j in jobs})


def downstream(jobs: Iterable[Job], name: str) -> Set[str]:
    """Every job whose transitive `needs` includes `name`."""
    adj, _ = build_dag(jobs)
    return _closure(name, adj)
