# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


DEFAULT_TIMEOUT_MINUTES = 360.0


class Status(str, Enum):
    """Result of a step, a job instance or a whole run (`needs.<id>.result`)."""
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value


class JobState(str, Enum):
    """Scheduler lifecycle of a job instance."""
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL

    @classmethod
    def from_status(cls, status: Status) -> "JobState":
        return _STATE_BY_STATUS[status]


_TERMINAL = {JobState.SUCCEEDED, JobState.FAILED, JobState.SKIPPED, JobState.CANCELLED}
_STATE_BY_STATUS = {
    Status.SUCCESS: JobState.SUCCEEDED,
    Status.FAILURE: JobState.FAILED,
    Status.SKIPPED: JobState.SKIPPED,
    Status.CANCELLED: JobState.CANCELLED,
}


class TriggerKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    SCHEDULE = "schedule"
    WORKFLOW_DISPATCH = "workflow_dispatch"
    WORKFLOW_CALL = "workflow_call"


# ---------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class InputSpec:
    """A `workflow_dispatch` / `workflow_call` input declaration."""
    name: str
    type: str = "string"
    description: str = ""
    required: bool = False
    default: Any = None
    options: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Trigger:
    """
    One entry of `on:`. Which filters are meaningful depends on `kind`:
      push:              branches/tags/paths (+ *-ignore)
      pull_request:      branches/paths (+ *-ignore), types
      schedule:          crons
      workflow_dispatch: inputs
      workflow_call:     inputs, secrets
    """
    kind: TriggerKind
    branches: Optional[List[str]] = None
    branches_ignore: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    tags_ignore: Optional[List[str]] = None
    paths: Optional[List[str]] = None
    paths_ignore: Optional[List[str]] = None
    types: Optional[List[str]] = None
    crons: List[str] = field(default_factory=list)
    inputs: Dict[str, InputSpec] = field(default_factory=dict)
    secrets: Dict[str, bool] = field(default_factory=dict)  # name -> required


@dataclass(frozen=True)
class RunDefaults:
    """`defaults.run` at workflow or job level."""
    shell: Optional[str] = None
    working_directory: Optional[str] = None


# A matrix (or one of its axes) may be an expression string resolved at dispatch time.
MatrixValues = Union[List[Any], str]


@dataclass(frozen=True)
class MatrixSpec:
    axes: Dict[str, MatrixValues] = field(default_factory=dict)
    include: List[Dict[str, Any]] = field(default_factory=list)
    exclude: List[Dict[str, Any]] = field(default_factory=list)
    fail_fast: bool = True
    max_parallel: Optional[int] = None
    expression: Optional[str] = None  # whole-matrix expression, e.g. ${{ fromJSON(...) }}

    @property
    def dynamic(self) -> bool:
        return self.expression is not None or any(isinstance(v, str) for v in self.axes.values())


@dataclass(frozen=True)
class StepSpec:
    """A single step: either a shell command (`run`) or an action (`uses`)."""
    id: Optional[str] = None
    name: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = field(default_factory=dict)
    shell: Optional[str] = None
    working_directory: Optional[str] = None
    condition: Optional[str] = None
    env: Dict[str, Any] = field(default_factory=dict)
    continue_on_error: Union[bool, str] = False
    timeout_minutes: Optional[float] = None

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.uses:
            return f"Run {self.uses}"
        first_line = (self.run or "").strip().splitlines()
        return f"Run {first_line[0]}" if first_line else "Run"


@dataclass(frozen=True)
class JobSpec:
    """
    A job: ordered steps + dependencies + scheduling metadata.

    `needs` holds job-ids that must reach a terminal state before this job
    becomes ready.
    """
    id: str
    steps: List[StepSpec]
    runs_on: Union[str, List[str]] = "ubuntu-latest"
    name: Optional[str] = None
    needs: List[str] = field(default_factory=list)
    matrix: Optional[MatrixSpec] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    condition: Optional[str] = None
    timeout_minutes: float = DEFAULT_TIMEOUT_MINUTES
    continue_on_error: Union[bool, str] = False
    env: Dict[str, Any] = field(default_factory=dict)
    defaults: RunDefaults = field(default_factory=RunDefaults)

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class WorkflowDocument:
    name: str
    triggers: List[Trigger]
    jobs: Dict[str, JobSpec]
    run_name: Optional[str] = None
    env: Dict[str, Any] = field(default_factory=dict)
    defaults: RunDefaults = field(default_factory=RunDefaults)
    permissions: Any = None

    def trigger(self, kind: TriggerKind) -> Optional[Trigger]:
        for t in self.triggers:
            if t.kind == kind:
                return t
        return None


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

@dataclass
class StepResult:
    """
    outcome: raw result of the step.
    conclusion: result after continue-on-error is applied.
    """
    name: str
    id: Optional[str]
    outcome: Status
    conclusion: Status
    outputs: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    duration: float = 0.0

    @property
    def status(self) -> Status:
        return self.conclusion

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "id": self.id,
            "outcome": self.outcome.value,
            "conclusion": self.conclusion.value,
            "outputs": dict(self.outputs),
            "error": self.error,
        }


@dataclass
class JobResult:
    job_id: str
    name: str
    status: Status
    matrix: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, str] = field(default_factory=dict)
    steps: List[StepResult] = field(default_factory=list)
    error: Optional[str] = None
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "name": self.name,
            "status": self.status.value,
            "matrix": dict(self.matrix),
            "outputs": dict(self.outputs),
            "steps": [s.to_dict() for s in self.steps],
            "error": self.error,
        }
