# src/actionci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Union

from .errors import SchemaError
from .model import (
    DEFAULT_TIMEOUT_MINUTES,
    InputSpec,
    JobSpec,
    MatrixSpec,
    RunDefaults,
    StepSpec,
    Trigger,
    TriggerKind,
    WorkflowDocument,
)
from .schema import validate_document
from .triggers import validate_cron


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: Optional[str],
    cmd: str,
    *,
    id: Optional[str] = None,
    cwd: Optional[str] = None,
    shell: Optional[str] = None,
    if_: Optional[str] = None,
    env: Optional[Dict[str, Any]] = None,
    continue_on_error: Union[bool, str] = False,
    timeout_minutes: Optional[float] = None,
) -> StepSpec:
    """Create a shell step."""
    return StepSpec(
        id=id,
        name=name,
        run=cmd,
        shell=shell,
        working_directory=cwd,
        condition=if_,
        env=dict(env or {}),
        continue_on_error=continue_on_error,
        timeout_minutes=timeout_minutes,
    )


def uses(
    ref: str,
    *,
    name: Optional[str] = None,
    id: Optional[str] = None,
    with_: Optional[Dict[str, Any]] = None,
    if_: Optional[str] = None,
    env: Optional[Dict[str, Any]] = None,
    continue_on_error: Union[bool, str] = False,
    timeout_minutes: Optional[float] = None,
) -> StepSpec:
    """Create an action step (`uses: owner/name@version`)."""
    return StepSpec(
        id=id,
        name=name,
        uses=ref,
        with_=dict(with_ or {}),
        condition=if_,
        env=dict(env or {}),
        continue_on_error=continue_on_error,
        timeout_minutes=timeout_minutes,
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(
    *,
    include: Optional[List[Dict[str, Any]]] = None,
    exclude: Optional[List[Dict[str, Any]]] = None,
    fail_fast: bool = True,
    max_parallel: Optional[int] = None,
    **axes: Iterable[Any],
) -> MatrixSpec:
    """
    Example:
        matrix(os=["ubuntu", "macos"], py=["3.11", "3.12"], exclude=[{"os": "macos", "py": "3.11"}])
    """
    return MatrixSpec(
        axes={k: (v if isinstance(v, str) else list(v)) for k, v in axes.items()},
        include=[dict(e) for e in include or []],
        exclude=[dict(e) for e in exclude or []],
        fail_fast=fail_fast,
        max_parallel=max_parallel,
    )


# ---------------------------------------------------------------------
# Functional job helper
# ---------------------------------------------------------------------

def job(
    id: str,
    *steps: StepSpec,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[StepSpec]] = None,  # allow: job("x", steps_list=[...])
    name: Optional[str] = None,
    runs_on: Union[str, List[str]] = "ubuntu-latest",
    needs: Optional[List[str]] = None,
    matrix: Optional[MatrixSpec] = None,
    outputs: Optional[Dict[str, str]] = None,
    if_: Optional[str] = None,
    timeout_minutes: float = DEFAULT_TIMEOUT_MINUTES,
    continue_on_error: Union[bool, str] = False,
    env: Optional[Dict[str, Any]] = None,
    cwd: Optional[str] = None,  # defaults.run.working-directory
    shell: Optional[str] = None,  # defaults.run.shell
) -> JobSpec:
    steps_final: List[StepSpec] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise SchemaError(f"job({id!r}) must have at least one step", job=id)

    return JobSpec(
        id=id,
        name=name,
        steps=steps_final,
        runs_on=runs_on,
        needs=list(needs or []),
        matrix=matrix,
        outputs=dict(outputs or {}),
        condition=if_,
        timeout_minutes=timeout_minutes,
        continue_on_error=continue_on_error,
        env=dict(env or {}),
        defaults=RunDefaults(shell=shell, working_directory=cwd),
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, id: str):
        self.id = id
        self._spec = JobSpec(id=id, steps=[])

    def named(self, name: str):
        self._spec = replace(self._spec, name=name)
        return self

    def runs_on(self, *labels: str):
        self._spec = replace(self._spec, runs_on=labels[0] if len(labels) == 1 else list(labels))
        return self

    def depends_on(self, *job_ids: str):
        self._spec = replace(self._spec, needs=self._spec.needs + list(job_ids))
        return self

    def define_step(self, name: Optional[str], run: str, **kwargs: Any):
        self._spec = replace(self._spec, steps=self._spec.steps + [sh(name, run, **kwargs)])
        return self

    def use_action(self, ref: str, **kwargs: Any):
        self._spec = replace(self._spec, steps=self._spec.steps + [uses(ref, **kwargs)])
        return self

    def with_matrix(self, spec: MatrixSpec):
        self._spec = replace(self._spec, matrix=spec)
        return self

    def with_outputs(self, **outputs: str):
        self._spec = replace(self._spec, outputs={**self._spec.outputs, **outputs})
        return self

    def with_env(self, **env: Any):
        self._spec = replace(self._spec, env={**self._spec.env, **env})
        return self

    def when(self, condition: str):
        self._spec = replace(self._spec, condition=condition)
        return self

    def timeout(self, minutes: float):
        self._spec = replace(self._spec, timeout_minutes=minutes)
        return self

    def build(self) -> JobSpec:
        if not self._spec.steps:
            raise SchemaError(f"Job '{self.id}' has no steps", job=self.id)
        return self._spec


def build(id: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(id)


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

def on_push(
    *,
    branches: Optional[List[str]] = None,
    tags: Optional[List[str]] = None,
    paths: Optional[List[str]] = None,
) -> Trigger:
    return Trigger(TriggerKind.PUSH, branches=branches, tags=tags, paths=paths)


def on_pull_request(
    *,
    branches: Optional[List[str]] = None,
    types: Optional[List[str]] = None,
    paths: Optional[List[str]] = None,
) -> Trigger:
    return Trigger(TriggerKind.PULL_REQUEST, branches=branches, types=types, paths=paths)


def on_schedule(*crons: str) -> Trigger:
    for cron in crons:
        validate_cron(cron)
    return Trigger(TriggerKind.SCHEDULE, crons=list(crons))


def on_dispatch(**inputs: Union[InputSpec, Dict[str, Any]]) -> Trigger:
    """on_dispatch(target={"type": "choice", "options": ["dev", "prod"], "default": "dev"})"""
    specs: Dict[str, InputSpec] = {}
    for key, value in inputs.items():
        if isinstance(value, InputSpec):
            specs[key] = value
        else:
            options = tuple(str(o) for o in value.get("options", ()))
            specs[key] = InputSpec(
                name=key,
                type=value.get("type", "string"),
                description=value.get("description", ""),
                required=bool(value.get("required", False)),
                default=value.get("default"),
                options=options,
            )
    return Trigger(TriggerKind.WORKFLOW_DISPATCH, inputs=specs)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    *jobs: JobSpec,
    name: str = "workflow",
    on: Optional[List[Trigger]] = None,
    env: Optional[Dict[str, Any]] = None,
    run_name: Optional[str] = None,
) -> WorkflowDocument:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(job(...), job(...)).

    Users can write:
        from actionci import wf, job, sh

        def workflow():
            return wf(
                job("build", sh("Build", "make")),
                job("test", sh("Test", "make test"), needs=["build"]),
            )

    Or use WORKFLOW directly:
        WORKFLOW = wf(job(...), job(...))

    Without `on`, the workflow runs on push and workflow_dispatch.
    """
    by_id: Dict[str, JobSpec] = {}
    for j in jobs:
        if j.id in by_id:
            raise SchemaError(f"duplicate job id {j.id!r}", job=j.id)
        by_id[j.id] = j
    if not by_id:
        raise SchemaError("workflow must define at least one job")

    triggers = list(on) if on is not None else [Trigger(TriggerKind.PUSH), Trigger(TriggerKind.WORKFLOW_DISPATCH)]
    if not triggers:
        raise SchemaError("workflow must declare at least one trigger")

    doc = WorkflowDocument(
        name=name,
        triggers=triggers,
        jobs=by_id,
        run_name=run_name,
        env=dict(env or {}),
    )
    return validate_document(doc)
