# runner.py
from __future__ import annotations

import os
import runpy
import threading
import uuid
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Set

from .actions import ActionRegistry
from .context import ExecutionContext, LogRecord, OutputsLedger, RunLog, SecretStore, StatusView
from .dag import ancestors, build_dag, topo_levels, validate_graph
from .errors import CIError, SchemaError
from .executor import JobExecutor
from .expressions import condition_uses_status_function, evaluate_condition, render, to_str
from .matrix import combination_label, expand_matrix, resolve_matrix
from .model import JobResult, JobSpec, JobState, Status, WorkflowDocument
from .schema import load_workflow_file, validate_document
from .triggers import Event, check_required_secrets, matching_trigger, resolve_inputs


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

@dataclass
class RunResult:
    workflow: str
    status: Status
    jobs: List[JobResult] = field(default_factory=list)
    dispatch_order: List[str] = field(default_factory=list)  # job ids, in the order they were resolved
    logs: List[LogRecord] = field(default_factory=list)
    run_name: Optional[str] = None
    run_id: str = ""
    secrets: Optional[SecretStore] = field(default=None, repr=False)

    def job(self, job_id: str) -> List[JobResult]:
        """All instances of a job, in matrix order."""
        return [j for j in self.jobs if j.job_id == job_id]

    def job_status(self, job_id: str) -> Optional[Status]:
        instances = self.job(job_id)
        if not instances:
            return None
        statuses = [j.status for j in instances]
        for s in (Status.FAILURE, Status.CANCELLED):
            if s in statuses:
                return s
        if all(s == Status.SKIPPED for s in statuses):
            return Status.SKIPPED
        return Status.SUCCESS

    def outputs(self, job_id: str) -> Dict[str, str]:
        merged: Dict[str, str] = {}
        for j in self.job(job_id):
            if j.status != Status.SUCCESS:
                continue
            for k, v in j.outputs.items():
                if v != "" or k not in merged:
                    merged[k] = v
        return merged

    @property
    def ok(self) -> bool:
        return self.status in (Status.SUCCESS, Status.SKIPPED)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "run_id": self.run_id,
            "workflow": self.workflow,
            "run_name": self.run_name,
            "status": self.status.value,
            "dispatch_order": list(self.dispatch_order),
            "jobs": [j.to_dict() for j in self.jobs],
            "logs": [r.to_dict() for r in self.logs],
        }
        return self.secrets.mask_data(data) if self.secrets else data


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

@dataclass
class JobInstance:
    """One concrete matrix combination of a job. Lives in the scheduler arena."""
    index: int
    job_id: str
    ordinal: int
    name: str
    matrix: Dict[str, Any]
    strategy: Dict[str, Any]
    ctx: Optional[ExecutionContext] = None
    state: JobState = JobState.PENDING
    result: Optional[JobResult] = None


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def _runs_on_labels(job: JobSpec, ctx: ExecutionContext) -> List[str]:
    raw = job.runs_on
    if isinstance(raw, str):
        value = render(raw, ctx)
        return [value] if value else []
    return [render(str(label), ctx) for label in raw]


class Scheduler:
    """
    Drives job instances through pending -> ready -> running -> terminal.

    All state transitions happen on the calling thread; workers only run
    JobExecutor.run() and hand back a JobResult.
    """

    def __init__(
        self,
        document: WorkflowDocument,
        executor: JobExecutor,
        base_ctx: ExecutionContext,
        log: RunLog,
        *,
        max_workers: Optional[int] = None,
        labels: Optional[Iterable[str]] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.document = document
        self.jobs = document.jobs
        self.executor = executor
        self.base_ctx = base_ctx
        self.log = log
        self.max_workers = max_workers or default_workers()
        self.labels: Optional[Set[str]] = set(labels) if labels is not None else None
        self.cancel_event = cancel_event or threading.Event()

        self.ledger = OutputsLedger()
        self.instances: List[JobInstance] = []
        self.by_job: Dict[str, List[int]] = {}
        self.dispatch_order: List[str] = []
        self._order = {name: i for i, name in enumerate(self.jobs)}
        self._fail_fast_tripped: Set[str] = set()
        self._running: Dict[str, int] = {}

    # ---- public ----

    def cancel(self) -> None:
        self.cancel_event.set()

    def run(self) -> List[JobResult]:
        adj, indeg = build_dag(self.jobs)
        remaining = dict(indeg)
        ready_jobs: Deque[str] = deque(n for n in self.jobs if remaining[n] == 0)
        queue: Deque[int] = deque()
        in_flight: Dict[Future, int] = {}
        done_jobs: Set[str] = set()

        def job_done(job_id: str) -> None:
            if job_id in done_jobs:
                return
            done_jobs.add(job_id)
            for nxt in sorted(adj[job_id], key=self._order.__getitem__):
                remaining[nxt] -= 1
                if remaining[nxt] == 0:
                    ready_jobs.append(nxt)

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            try:
                self._dispatch(pool, ready_jobs, queue, in_flight, job_done)
            except KeyboardInterrupt:
                # running jobs stop at their next step before the pool joins
                self.cancel()
                raise

        return [inst.result for inst in self.instances if inst.result is not None]

    def _dispatch(self, pool, ready_jobs, queue, in_flight, job_done) -> None:
        while ready_jobs or queue or in_flight:
            # resolve every job whose needs are all terminal
            while ready_jobs:
                job_id = ready_jobs.popleft()
                for idx in self._resolve(job_id):
                    queue.append(idx)
                if self._job_finished(job_id):
                    job_done(job_id)

            # schedule all currently runnable instances
            for idx in self._take_runnable(queue, self.max_workers - len(in_flight)):
                inst = self.instances[idx]
                if inst.state.terminal:
                    if self._job_finished(inst.job_id):
                        job_done(inst.job_id)
                    continue
                inst.state = JobState.RUNNING
                self._running[inst.job_id] = self._running.get(inst.job_id, 0) + 1
                fut = pool.submit(self._execute, inst)
                in_flight[fut] = idx

            if ready_jobs:
                continue
            if not in_flight:
                break

            # wait for one completion, then loop to schedule newly-ready jobs
            fut = next(as_completed(list(in_flight.keys())))
            idx = in_flight.pop(fut)
            inst = self.instances[idx]
            self._running[inst.job_id] -= 1
            try:
                result = fut.result()
            except Exception as e:
                result = JobResult(inst.job_id, inst.name, Status.FAILURE, dict(inst.matrix), error=str(e))
                self.log.emit(f"JOB FAILED: {e}", job=inst.name)
            self._finish(inst, result)
            if self._job_finished(inst.job_id):
                job_done(inst.job_id)

    # ---- internals ----

    def _execute(self, inst: JobInstance) -> JobResult:
        job = self.jobs[inst.job_id]
        return self.executor.run(job, inst.ctx, name=inst.name, matrix=inst.matrix, strategy=inst.strategy)

    def _job_finished(self, job_id: str) -> bool:
        idxs = self.by_job.get(job_id)
        return idxs is not None and all(self.instances[i].state.terminal for i in idxs)

    def _status_view(self, job_id: str) -> StatusView:
        results = [self.ledger.result(a) for a in ancestors(self.jobs, job_id)]
        return StatusView(
            success=all(r == Status.SUCCESS for r in results),
            failure=any(r == Status.FAILURE for r in results),
            cancelled=self.cancel_event.is_set(),
        )

    def _new_instance(self, job: JobSpec, ordinal: int, total: int, combo: Dict[str, Any], ctx: ExecutionContext) -> JobInstance:
        spec = job.matrix
        strategy = {
            "fail-fast": spec.fail_fast if spec else True,
            "job-index": ordinal,
            "job-total": total,
            "max-parallel": (spec.max_parallel if spec and spec.max_parallel else total),
        }
        ictx = ctx.with_matrix(combo, strategy)
        try:
            name = render(job.display_name, ictx)
        except CIError:
            name = job.display_name
        if combo and job.name is None:
            name = f"{name} ({combination_label(combo)})"
        inst = JobInstance(len(self.instances), job.id, ordinal, name, dict(combo), strategy, ictx)
        self.instances.append(inst)
        self.by_job.setdefault(job.id, []).append(inst.index)
        return inst

    def _settle(self, inst: JobInstance, status: Status, error: Optional[str] = None) -> None:
        """Terminal state for an instance that never ran."""
        result = JobResult(inst.job_id, inst.name, status, dict(inst.matrix), error=error)
        if status == Status.SKIPPED:
            self.log.emit(f"JOB SKIPPED: {inst.name}" + (f" ({error})" if error else ""), job=inst.name)
        elif status == Status.CANCELLED:
            self.log.emit(f"JOB CANCELLED: {inst.name}" + (f" ({error})" if error else ""), job=inst.name)
        else:
            self.log.emit(f"JOB FAILED: {inst.name}: {error}", job=inst.name)
        self._finish(inst, result)

    def _finish(self, inst: JobInstance, result: JobResult) -> None:
        inst.result = result
        inst.state = JobState.from_status(result.status)
        self.ledger.commit(inst.job_id, inst.ordinal, result.status, result.outputs)
        job = self.jobs[inst.job_id]
        if (
            result.status == Status.FAILURE
            and job.matrix is not None
            and job.matrix.fail_fast
            and len(self.by_job[inst.job_id]) > 1
        ):
            self._fail_fast_tripped.add(inst.job_id)

    def _resolve(self, job_id: str) -> List[int]:
        """
        Called once all needs are terminal: expand the matrix, evaluate the
        job condition per instance and return the instances left to run.
        """
        self.dispatch_order.append(job_id)
        job = self.jobs[job_id]
        status = self._status_view(job_id)
        ctx = self.base_ctx.with_needs(self.ledger.needs_view(job.needs), status)

        if self.cancel_event.is_set():
            self.ledger.expect(job_id, 1)
            self._settle(self._new_instance(job, 0, 1, {}, ctx), Status.CANCELLED, "run cancelled")
            return []

        try:
            spec = resolve_matrix(job.matrix, ctx, job_id=job_id) if job.matrix else None
            combos = expand_matrix(spec, job_id=job_id)
        except CIError as e:
            self.ledger.expect(job_id, 1)
            inst = self._new_instance(job, 0, 1, {}, ctx)
            if not status.success and not condition_uses_status_function(job.condition):
                self._settle(inst, Status.SKIPPED)
            else:
                self._settle(inst, Status.FAILURE, e.message)
            return []

        self.ledger.expect(job_id, len(combos))
        runnable: List[int] = []
        for ordinal, combo in enumerate(combos):
            inst = self._new_instance(job, ordinal, len(combos), combo, ctx)
            try:
                should_run = evaluate_condition(job.condition, inst.ctx)
                labels = _runs_on_labels(job, inst.ctx)
            except CIError as e:
                self._settle(inst, Status.FAILURE, e.message)
                continue
            if not should_run:
                self._settle(inst, Status.SKIPPED)
                continue
            if self.labels is not None and not set(labels) <= self.labels:
                missing = sorted(set(labels) - self.labels)
                self._settle(inst, Status.FAILURE, f"no runner with labels {missing}")
                continue
            inst.state = JobState.READY
            runnable.append(inst.index)
        return runnable

    def _take_runnable(self, queue: Deque[int], capacity: int) -> List[int]:
        """
        Pop instances allowed to start now (FIFO), honouring free workers and
        max-parallel. Instances cancelled by fail-fast or a run cancel are
        settled here and returned too so the caller can unblock dependants.
        """
        taken: List[int] = []
        held: List[int] = []
        planned: Dict[str, int] = {}
        while queue:
            idx = queue.popleft()
            inst = self.instances[idx]
            if self.cancel_event.is_set():
                self._settle(inst, Status.CANCELLED, "run cancelled")
                taken.append(idx)
                continue
            if inst.job_id in self._fail_fast_tripped:
                self._settle(inst, Status.CANCELLED, "fail-fast")
                taken.append(idx)
                continue
            spec = self.jobs[inst.job_id].matrix
            limit = spec.max_parallel if spec else None
            active = self._running.get(inst.job_id, 0) + planned.get(inst.job_id, 0)
            if capacity <= 0 or (limit and active >= limit):
                held.append(idx)
                continue
            planned[inst.job_id] = planned.get(inst.job_id, 0) + 1
            capacity -= 1
            taken.append(idx)
        queue.extend(held)
        return taken


# ----------------------------------------------------------------------
# Run entry point
# ----------------------------------------------------------------------

def github_context(
    document: WorkflowDocument,
    event: Event,
    *,
    workspace: Path,
    run_id: str,
    run_number: int,
    repository: str = "",
) -> Dict[str, Any]:
    return {
        "event_name": event.name,
        "event": dict(event.payload),
        "ref": event.ref,
        "ref_name": event.ref_name,
        "ref_type": event.ref_type,
        "sha": event.sha,
        "actor": event.actor,
        "base_ref": event.base_ref or "",
        "repository": repository,
        "workflow": document.name,
        "workspace": str(workspace),
        "run_id": run_id,
        "run_number": run_number,
        "run_attempt": 1,
    }


def _github_env(github: Mapping[str, Any]) -> Dict[str, str]:
    keys = ("event_name", "ref", "ref_name", "ref_type", "sha", "actor", "base_ref",
            "repository", "workflow", "workspace", "run_id", "run_number", "run_attempt")
    env = {f"GITHUB_{k.upper()}": to_str(github.get(k, "")) for k in keys}
    env["GITHUB_ACTIONS"] = "true"
    return env


def run_workflow(
    document: WorkflowDocument,
    event: Optional[Event] = None,
    *,
    secrets: Optional[Mapping[str, str]] = None,
    variables: Optional[Mapping[str, Any]] = None,
    registry: Optional[ActionRegistry] = None,
    workspace: str | Path = ".",
    max_workers: Optional[int] = None,
    labels: Optional[Iterable[str]] = None,
    listeners: Iterable[Callable[[LogRecord], None]] = (),
    cancel_event: Optional[threading.Event] = None,
    run_id: Optional[str] = None,
    run_number: int = 1,
    repository: str = "",
) -> RunResult:
    """
    Run a validated workflow for an event.

    Schema problems (cycles, bad inputs, missing required secrets) raise
    before any job starts. Everything that goes wrong afterwards ends up in
    job/step statuses of the returned RunResult.
    """
    validate_graph(document.jobs)
    workspace_p = Path(workspace).resolve()
    if event is None:
        if not document.triggers:
            raise SchemaError("workflow declares no triggers")
        event = Event(name=document.triggers[0].kind.value)
    run_id = run_id or uuid.uuid4().hex[:12]

    store = SecretStore(secrets)
    log = RunLog(store, listeners)

    trigger = matching_trigger(document, event)
    if trigger is None:
        log.emit(f"workflow '{document.name}' is not triggered by '{event.name}' on {event.ref}")
        return RunResult(document.name, Status.SKIPPED, logs=log.records(), run_id=run_id, secrets=store)

    inputs = resolve_inputs(trigger, event.inputs)
    check_required_secrets(trigger, store.names())

    github = github_context(
        document, event, workspace=workspace_p, run_id=run_id, run_number=run_number, repository=repository,
    )
    base_ctx = ExecutionContext.create(
        github=github,
        secrets=store,
        vars=variables,
        inputs=inputs,
        workspace=workspace_p,
    )
    run_name = document.name
    if document.run_name:
        try:
            run_name = render(document.run_name, base_ctx)
        except CIError as e:
            log.emit(f"could not evaluate run-name: {e.message}")

    log.emit(f"RUN STARTED: {run_name} ({len(document.jobs)} jobs, event={event.name})")

    cancel_event = cancel_event or threading.Event()
    executor = JobExecutor(
        document,
        registry=registry or ActionRegistry(),
        secrets=store,
        log=log,
        workspace=workspace_p,
        cancel_event=cancel_event,
        base_env=_github_env(github),
    )
    scheduler = Scheduler(
        document,
        executor,
        base_ctx,
        log,
        max_workers=max_workers,
        labels=labels,
        cancel_event=cancel_event,
    )
    results = scheduler.run()

    if cancel_event.is_set():
        status = Status.CANCELLED
    elif any(r.status in (Status.FAILURE, Status.CANCELLED) for r in results):
        status = Status.FAILURE
    else:
        status = Status.SUCCESS
    log.emit(f"RUN FINISHED: {status.value}")

    return RunResult(
        workflow=document.name,
        status=status,
        jobs=results,
        dispatch_order=scheduler.dispatch_order,
        logs=log.records(),
        run_name=run_name,
        run_id=run_id,
        secrets=store,
    )


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> WorkflowDocument:
    """
    Load a workflow from a YAML file or a python file.

    A python file must define either:
      - workflow() -> WorkflowDocument
      - WORKFLOW = WorkflowDocument(...)
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix in (".yml", ".yaml"):
        return load_workflow_file(wf_path)
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .yml, .yaml or .py file, got: {wf_path.name}")

    module_name = f"actionci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    doc = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            doc = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise TypeError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from actionci import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        doc = globals_dict["WORKFLOW"]

    if not isinstance(doc, WorkflowDocument):
        raise TypeError(
            "Workflow must return/define a WorkflowDocument. "
            "Define workflow() -> WorkflowDocument or WORKFLOW = wf(...)."
        )
    return validate_document(doc)


def plan_workflow(document: WorkflowDocument) -> List[List[Dict[str, Any]]]:
    """
    Topological stages of the workflow without running anything. A static
    matrix reports its instance count; a dynamic one reports None.
    """
    levels: List[List[Dict[str, Any]]] = []
    for level in topo_levels(document.jobs):
        entries: List[Dict[str, Any]] = []
        for job_id in level:
            job = document.jobs[job_id]
            if job.matrix is not None and job.matrix.dynamic:
                instances: Optional[int] = None
            else:
                instances = len(expand_matrix(job.matrix, job_id=job_id))
            entries.append({"id": job_id, "name": job.display_name, "needs": list(job.needs), "instances": instances})
        levels.append(entries)
    return levels
