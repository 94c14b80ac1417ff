# schema.py
"""
Workflow document parsing and validation.

Raw YAML is validated with pydantic models (unknown keys are rejected at
every level, hyphenated keys map through aliases) and then converted into
the frozen dataclasses of `actionci.model`. Every failure surfaces as
SchemaError, or CycleError for a needs cycle, before any job runs.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .dag import validate_graph
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
from .triggers import validate_cron

ID_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")


# ---------------------------------------------------------------------
# YAML
# ---------------------------------------------------------------------

class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that refuses duplicate mapping keys (e.g. two jobs with the same id)."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _value_node in node.value:
            # keys pulled in by `<<: *anchor` may be overridden
            if key_node.tag == "tag:yaml.org,2002:merge":
                continue
            key = self.construct_object(key_node, deep=deep)
            try:
                duplicate = key in seen
            except TypeError:
                continue
            if duplicate:
                raise SchemaError(
                    f"duplicate key {key!r}",
                    details={"line": key_node.start_mark.line + 1},
                )
            seen.add(key)
        self.flatten_mapping(node)
        return super().construct_mapping(node, deep=deep)


def load_yaml(text: str) -> Any:
    try:
        return yaml.load(text, Loader=_UniqueKeyLoader)
    except yaml.YAMLError as e:
        raise SchemaError(f"invalid YAML: {e}")


# ---------------------------------------------------------------------
# Pydantic models (wire format)
# ---------------------------------------------------------------------

def _as_list(value: Any) -> Any:
    if isinstance(value, str):
        return [value]
    return value


class _Model(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class InputModel(_Model):
    description: str = ""
    required: bool = False
    default: Any = None
    type: Literal["string", "boolean", "number", "choice", "environment"] = "string"
    options: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _choice_needs_options(self):
        if self.type == "choice" and not self.options:
            raise ValueError("choice inputs need 'options'")
        return self


class SecretModel(_Model):
    description: str = ""
    required: bool = False


class _RefFilters(_Model):
    branches: Optional[List[str]] = None
    branches_ignore: Optional[List[str]] = Field(None, alias="branches-ignore")
    paths: Optional[List[str]] = None
    paths_ignore: Optional[List[str]] = Field(None, alias="paths-ignore")

    @field_validator("branches", "branches_ignore", "paths", "paths_ignore", mode="before")
    @classmethod
    def _listify(cls, v):
        return _as_list(v)

    @model_validator(mode="after")
    def _exclusive(self):
        if self.branches is not None and self.branches_ignore is not None:
            raise ValueError("'branches' and 'branches-ignore' cannot be used together")
        if self.paths is not None and self.paths_ignore is not None:
            raise ValueError("'paths' and 'paths-ignore' cannot be used together")
        return self


class PushModel(_RefFilters):
    tags: Optional[List[str]] = None
    tags_ignore: Optional[List[str]] = Field(None, alias="tags-ignore")

    @field_validator("tags", "tags_ignore", mode="before")
    @classmethod
    def _listify_tags(cls, v):
        return _as_list(v)


class PullRequestModel(_RefFilters):
    types: Optional[List[str]] = None

    @field_validator("types", mode="before")
    @classmethod
    def _listify_types(cls, v):
        return _as_list(v)


class CronModel(_Model):
    cron: str


class DispatchModel(_Model):
    inputs: Dict[str, InputModel] = Field(default_factory=dict)


class CallModel(_Model):
    inputs: Dict[str, InputModel] = Field(default_factory=dict)
    secrets: Dict[str, Optional[SecretModel]] = Field(default_factory=dict)


class DefaultsRunModel(_Model):
    shell: Optional[str] = None
    working_directory: Optional[str] = Field(None, alias="working-directory")


class DefaultsModel(_Model):
    run: Optional[DefaultsRunModel] = None


class StepModel(_Model):
    id: Optional[str] = None
    name: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    shell: Optional[str] = None
    working_directory: Optional[str] = Field(None, alias="working-directory")
    if_: Optional[Union[bool, str]] = Field(None, alias="if")
    env: Dict[str, Any] = Field(default_factory=dict)
    continue_on_error: Union[bool, str] = Field(False, alias="continue-on-error")
    timeout_minutes: Optional[float] = Field(None, alias="timeout-minutes", gt=0)

    @model_validator(mode="after")
    def _run_xor_uses(self):
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        if self.run is not None and self.with_:
            raise ValueError("'with' is only valid on 'uses' steps")
        return self


class StrategyModel(_Model):
    matrix: Optional[Union[str, Dict[str, Any]]] = None
    fail_fast: bool = Field(True, alias="fail-fast")
    max_parallel: Optional[int] = Field(None, alias="max-parallel", gt=0)


class JobModel(_Model):
    name: Optional[str] = None
    runs_on: Union[str, List[str]] = Field(alias="runs-on")
    needs: List[str] = Field(default_factory=list)
    if_: Optional[Union[bool, str]] = Field(None, alias="if")
    steps: List[StepModel] = Field(min_length=1)
    outputs: Dict[str, str] = Field(default_factory=dict)
    env: Dict[str, Any] = Field(default_factory=dict)
    strategy: Optional[StrategyModel] = None
    timeout_minutes: float = Field(DEFAULT_TIMEOUT_MINUTES, alias="timeout-minutes", gt=0)
    continue_on_error: Union[bool, str] = Field(False, alias="continue-on-error")
    defaults: Optional[DefaultsModel] = None
    permissions: Any = None

    @field_validator("needs", mode="before")
    @classmethod
    def _listify_needs(cls, v):
        return _as_list(v)


class WorkflowModel(_Model):
    name: Optional[str] = None
    run_name: Optional[str] = Field(None, alias="run-name")
    on: Dict[str, Any]
    env: Dict[str, Any] = Field(default_factory=dict)
    defaults: Optional[DefaultsModel] = None
    permissions: Any = None
    jobs: Dict[str, JobModel] = Field(min_length=1)


# ---------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------

_EVENT_MODELS = {
    TriggerKind.PUSH: PushModel,
    TriggerKind.PULL_REQUEST: PullRequestModel,
    TriggerKind.WORKFLOW_DISPATCH: DispatchModel,
    TriggerKind.WORKFLOW_CALL: CallModel,
}


def _format_validation_error(e: ValidationError, prefix: str = "") -> SchemaError:
    problems = []
    for err in e.errors():
        loc = ".".join(str(p) for p in (prefix.split(".") if prefix else []) + list(err["loc"]))
        problems.append(f"{loc or '<root>'}: {err['msg']}")
    return SchemaError("invalid workflow document", details={"errors": "; ".join(problems)})


def _normalize_on(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, str):
        return {raw: None}
    if isinstance(raw, list):
        if not all(isinstance(e, str) for e in raw):
            raise SchemaError("'on' list entries must be event names")
        return {e: None for e in raw}
    if isinstance(raw, dict):
        return raw
    raise SchemaError("'on' must be an event name, a list of events or a mapping")


def _inputs(models: Dict[str, InputModel]) -> Dict[str, InputSpec]:
    return {
        name: InputSpec(
            name=name,
            type=m.type,
            description=m.description,
            required=m.required,
            default=m.default,
            options=tuple(m.options),
        )
        for name, m in models.items()
    }


def _parse_triggers(on: Dict[str, Any]) -> List[Trigger]:
    if not on:
        raise SchemaError("'on' declares no events")
    triggers: List[Trigger] = []
    for event, body in on.items():
        try:
            kind = TriggerKind(event)
        except ValueError:
            raise SchemaError(
                f"unsupported trigger event {event!r}",
                details={"supported": [k.value for k in TriggerKind]},
            )

        if kind == TriggerKind.SCHEDULE:
            if not isinstance(body, list) or not body:
                raise SchemaError("'schedule' must be a non-empty list of {cron: ...} entries")
            try:
                crons = [CronModel.model_validate(entry).cron for entry in body]
            except ValidationError as e:
                raise _format_validation_error(e, "on.schedule")
            for c in crons:
                validate_cron(c)
            triggers.append(Trigger(kind=kind, crons=crons))
            continue

        try:
            model = _EVENT_MODELS[kind].model_validate(body or {})
        except ValidationError as e:
            raise _format_validation_error(e, f"on.{event}")

        if isinstance(model, PushModel):
            triggers.append(Trigger(
                kind=kind,
                branches=model.branches,
                branches_ignore=model.branches_ignore,
                tags=model.tags,
                tags_ignore=model.tags_ignore,
                paths=model.paths,
                paths_ignore=model.paths_ignore,
            ))
        elif isinstance(model, PullRequestModel):
            triggers.append(Trigger(
                kind=kind,
                branches=model.branches,
                branches_ignore=model.branches_ignore,
                paths=model.paths,
                paths_ignore=model.paths_ignore,
                types=model.types,
            ))
        elif isinstance(model, CallModel):
            triggers.append(Trigger(
                kind=kind,
                inputs=_inputs(model.inputs),
                secrets={n: bool(s and s.required) for n, s in model.secrets.items()},
            ))
        else:
            triggers.append(Trigger(kind=kind, inputs=_inputs(model.inputs)))
    return triggers


def _defaults(model: Optional[DefaultsModel]) -> RunDefaults:
    if model is None or model.run is None:
        return RunDefaults()
    return RunDefaults(shell=model.run.shell, working_directory=model.run.working_directory)


def _condition(value: Optional[Union[bool, str]]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


def _parse_matrix(job_id: str, strategy: Optional[StrategyModel]) -> Optional[MatrixSpec]:
    if strategy is None or strategy.matrix is None:
        return None
    raw = strategy.matrix
    if isinstance(raw, str):
        return MatrixSpec(fail_fast=strategy.fail_fast, max_parallel=strategy.max_parallel, expression=raw)

    axes: Dict[str, Any] = {}
    include: List[Dict[str, Any]] = []
    exclude: List[Dict[str, Any]] = []
    for key, value in raw.items():
        if key in ("include", "exclude"):
            if not isinstance(value, list) or not all(isinstance(e, dict) for e in value):
                raise SchemaError(f"matrix '{key}' must be a list of mappings", job=job_id)
            (include if key == "include" else exclude).extend(dict(e) for e in value)
        elif isinstance(value, list):
            if not value:
                raise SchemaError(f"matrix axis {key!r} has no values", job=job_id)
            axes[key] = list(value)
        elif isinstance(value, str) and "${{" in value:
            axes[key] = value
        else:
            raise SchemaError(f"matrix axis {key!r} must be a list", job=job_id)

    if not axes and not include:
        raise SchemaError("matrix declares no axes and no include entries", job=job_id)
    for entry in exclude:
        unknown = sorted(set(entry) - set(axes))
        if unknown and not any(isinstance(v, str) for v in axes.values()):
            raise SchemaError(f"matrix exclude references unknown axes {unknown}", job=job_id)

    return MatrixSpec(
        axes=axes,
        include=include,
        exclude=exclude,
        fail_fast=strategy.fail_fast,
        max_parallel=strategy.max_parallel,
    )


def _step(m: StepModel) -> StepSpec:
    return StepSpec(
        id=m.id,
        name=m.name,
        run=m.run,
        uses=m.uses,
        with_=dict(m.with_),
        shell=m.shell,
        working_directory=m.working_directory,
        condition=_condition(m.if_),
        env=dict(m.env),
        continue_on_error=m.continue_on_error,
        timeout_minutes=m.timeout_minutes,
    )


def _job(job_id: str, m: JobModel) -> JobSpec:
    return JobSpec(
        id=job_id,
        name=m.name,
        runs_on=m.runs_on,
        needs=list(m.needs),
        steps=[_step(s) for s in m.steps],
        matrix=_parse_matrix(job_id, m.strategy),
        outputs=dict(m.outputs),
        condition=_condition(m.if_),
        timeout_minutes=m.timeout_minutes,
        continue_on_error=m.continue_on_error,
        env=dict(m.env),
        defaults=_defaults(m.defaults),
    )


def validate_document(doc: WorkflowDocument) -> WorkflowDocument:
    """Checks shared by YAML and DSL documents: ids, step ids, needs, cycles."""
    for job_id, job in doc.jobs.items():
        if not ID_PATTERN.match(job_id):
            raise SchemaError(f"invalid job id {job_id!r}", job=job_id)
        if job.id != job_id:
            raise SchemaError(f"job id mismatch: {job.id!r} registered as {job_id!r}", job=job_id)
        if not job.steps:
            raise SchemaError("job has no steps", job=job_id)
        seen_steps = set()
        for step in job.steps:
            if step.id is None:
                continue
            if not ID_PATTERN.match(step.id):
                raise SchemaError(f"invalid step id {step.id!r}", job=job_id)
            if step.id in seen_steps:
                raise SchemaError(f"duplicate step id {step.id!r}", job=job_id)
            seen_steps.add(step.id)
        if len(set(job.needs)) != len(job.needs):
            raise SchemaError("duplicate entries in needs", job=job_id)
    validate_graph(doc.jobs)
    return doc


def parse_workflow(data: Any, *, default_name: str = "workflow") -> WorkflowDocument:
    """Parse raw structured data (as loaded from YAML) into a WorkflowDocument."""
    if not isinstance(data, dict):
        raise SchemaError("workflow document must be a mapping")
    data = dict(data)
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in data:
        if "on" in data:
            raise SchemaError("duplicate key 'on'")
        data["on"] = data.pop(True)
    if "on" in data:
        data["on"] = _normalize_on(data["on"])

    bad_keys = [k for k in data if not isinstance(k, str)]
    if bad_keys:
        raise SchemaError(f"unexpected top-level keys {bad_keys!r}")

    try:
        model = WorkflowModel.model_validate(data)
    except ValidationError as e:
        raise _format_validation_error(e)

    doc = WorkflowDocument(
        name=model.name or default_name,
        run_name=model.run_name,
        triggers=_parse_triggers(model.on),
        jobs={job_id: _job(job_id, jm) for job_id, jm in model.jobs.items()},
        env=dict(model.env),
        defaults=_defaults(model.defaults),
        permissions=model.permissions,
    )
    return validate_document(doc)


def parse_workflow_text(text: str, *, default_name: str = "workflow") -> WorkflowDocument:
    return parse_workflow(load_yaml(text), default_name=default_name)


def load_workflow_file(path: str | Path) -> WorkflowDocument:
    p = Path(path)
    return parse_workflow_text(p.read_text(encoding="utf-8"), default_name=p.name)
