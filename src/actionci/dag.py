# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from .errors import CycleError, SchemaError
from .model import JobSpec


def build_dag(jobs: Mapping[str, JobSpec]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from job specs.

    Returns:
      adj:   job-id -> set of job-ids that need it (edge dep -> dependant)
      indeg: job-id -> number of distinct needs
    """
    adj: Dict[str, Set[str]] = {n: set() for n in jobs}
    indeg: Dict[str, int] = {n: 0 for n in jobs}

    for job_id, job in jobs.items():
        for dep in job.needs:
            if dep not in jobs:
                raise SchemaError(
                    f"Job '{job_id}' needs missing job '{dep}'",
                    job=job_id,
                    details={"known_jobs": sorted(jobs)},
                )
            if job_id not in adj[dep]:
                adj[dep].add(job_id)
                indeg[job_id] += 1

    return adj, indeg


def find_cycle(jobs: Mapping[str, JobSpec]) -> Optional[List[str]]:
    """Return one cycle as [a, b, ..., a] or None. Job order is declaration order."""
    WHITE, GRAY, BLACK = 0, 1, 2
    color: Dict[str, int] = {n: WHITE for n in jobs}
    stack: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        color[node] = GRAY
        stack.append(node)
        for dep in jobs[node].needs:
            if dep not in color:
                continue
            if color[dep] == GRAY:
                return stack[stack.index(dep):] + [dep]
            if color[dep] == WHITE:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        color[node] = BLACK
        return None

    for n in jobs:
        if color[n] == WHITE:
            found = visit(n)
            if found:
                # report in needs order: a needs b needs ... needs a
                return found
    return None


def validate_graph(jobs: Mapping[str, JobSpec]) -> None:
    """Needs must reference existing jobs and the graph must be acyclic."""
    build_dag(jobs)
    cycle = find_cycle(jobs)
    if cycle:
        raise CycleError(cycle)


def topo_levels(jobs: Mapping[str, JobSpec]) -> List[List[str]]:
    """
    Convert the needs-graph into topological "levels" (stages).
    Jobs within a level have no dependency on each other. Ordering inside
    a level follows declaration order.
    """
    adj, indeg = build_dag(jobs)
    indeg = dict(indeg)  # copy (we mutate it)
    order = {name: i for i, name in enumerate(jobs)}
    q = deque(n for n in jobs if indeg[n] == 0)

    levels: List[List[str]] = []
    processed = 0

    while q:
        level = list(q)
        q.clear()
        levels.append(level)
        processed += len(level)
        nxt: List[str] = []
        for node in level:
            for child in adj[node]:
                indeg[child] -= 1
                if indeg[child] == 0:
                    nxt.append(child)
        q.extend(sorted(nxt, key=order.__getitem__))

    if processed != len(indeg):
        raise CycleError(find_cycle(jobs) or sorted(n for n, d in indeg.items() if d > 0))

    return levels


def ancestors(jobs: Mapping[str, JobSpec], job_id: str) -> Set[str]:
    """Every job reachable through needs (transitively) from job_id."""
    seen: Set[str] = set()
    todo: List[str] = list(jobs[job_id].needs)
    while todo:
        n = todo.pop()
        if n in seen or n not in jobs:
            continue
        seen.add(n)
        todo.extend(jobs[n].needs)
    return seen


def is_topological(order: Iterable[str], jobs: Mapping[str, JobSpec]) -> bool:
    """True when every job appears after all of its needs."""
    position: Dict[str, int] = {}
    for i, name in enumerate(order):
        position.setdefault(name, i)
    for name, idx in position.items():
        for dep in jobs[name].needs:
            if dep not in position or position[dep] > idx:
                return False
    return True
