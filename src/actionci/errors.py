# errors.py
from __future__ import annotations

from typing import Any, Dict, List, Optional


class CIError(Exception):
    """
    Structured engine error with enough context for:
      - clean CLI output
      - run logs / job results
      - debugging without full tracebacks
    """

    kind = "ci_error"

    def __init__(
        self,
        message: str,
        *,
        job: Optional[str] = None,
        step: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.job = job
        self.step = step
        self.details = dict(details or {})

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class SchemaError(CIError):
    """Malformed workflow document or run request. The run never starts."""

    kind = "schema_error"


class CycleError(SchemaError):
    """The needs-graph contains a cycle."""

    kind = "cycle_error"

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(
            f"needs cycle detected: {' -> '.join(self.cycle)}",
            details={"cycle": self.cycle},
        )


class EvalError(CIError):
    """Expression syntax error, unknown function or bad function arguments."""

    kind = "eval_error"


class UndefinedContextError(CIError):
    """A context was accessed where it does not exist (e.g. `steps` outside a job)."""

    kind = "undefined_context"


class ActionExecutionError(CIError):
    """A command exited non-zero or an action handler failed."""

    kind = "action_failed"


class JobTimeoutError(CIError, TimeoutError):
    """A job or step ran past its `timeout-minutes`."""

    kind = "timeout"
