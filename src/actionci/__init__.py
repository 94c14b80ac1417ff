from .dsl import job, sh, uses, matrix, wf, JobBuilder, build, on_push, on_pull_request, on_schedule, on_dispatch
from .runner import run_workflow, load_workflow, RunResult
from .schema import parse_workflow, parse_workflow_text
from .triggers import Event
from .actions import ActionRegistry, ActionResult, ActionContext
from .model import JobSpec, StepSpec, MatrixSpec, WorkflowDocument, Status
from .errors import CIError, SchemaError, CycleError, EvalError, UndefinedContextError, ActionExecutionError, JobTimeoutError

__all__ = [
    "job", "sh", "uses", "matrix", "wf", "JobBuilder", "build",
    "on_push", "on_pull_request", "on_schedule", "on_dispatch",
    "run_workflow", "load_workflow", "RunResult", "parse_workflow", "parse_workflow_text", "Event",
    "ActionRegistry", "ActionResult", "ActionContext",
    "JobSpec", "StepSpec", "MatrixSpec", "WorkflowDocument", "Status",
    "CIError", "SchemaError", "CycleError", "EvalError", "UndefinedContextError",
    "ActionExecutionError", "JobTimeoutError",
]
