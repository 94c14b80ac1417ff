# context.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import UndefinedContextError
from .expressions import UNDEFINED
from .model import Status

MASK = "***"

# Contexts that only exist while a job is running.
JOB_SCOPED = ("job", "runner", "matrix", "strategy", "steps")


# ---------------------------------------------------------------------
# Secrets + redaction
# ---------------------------------------------------------------------

class SecretStore:
    """
    Secret values keyed by name, plus every other value registered as a mask
    (e.g. via `::add-mask::`). Values live only in memory for the run.
    """

    def __init__(self, secrets: Optional[Mapping[str, str]] = None):
        self._lock = threading.Lock()
        self._secrets: Dict[str, str] = {}
        self._masks: set[str] = set()
        self._ordered: Tuple[str, ...] = ()
        for name, value in (secrets or {}).items():
            self.add_secret(name, value)

    def add_secret(self, name: str, value: Any) -> None:
        value = "" if value is None else str(value)
        with self._lock:
            self._secrets[name] = value
        self.add_mask(value)

    def add_mask(self, value: Any) -> None:
        if value is None:
            return
        value = str(value)
        candidates = {value}
        # multi-line secrets: every line is masked on its own as well
        candidates.update(line for line in value.splitlines())
        with self._lock:
            for c in candidates:
                if c.strip():
                    self._masks.add(c)
            self._ordered = tuple(sorted(self._masks, key=len, reverse=True))

    def get(self, name: str) -> Any:
        with self._lock:
            if name in self._secrets:
                return self._secrets[name]
            folded = name.casefold()
            for k, v in self._secrets.items():
                if k.casefold() == folded:
                    return v
        return UNDEFINED

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._secrets)

    def as_mapping(self) -> Mapping[str, str]:
        with self._lock:
            return MappingProxyType(dict(self._secrets))

    def mask(self, text: str) -> str:
        """Replace every registered value occurring in text with the mask token."""
        if not text:
            return text
        for value in self._ordered:
            if value in text:
                text = text.replace(value, MASK)
        return text

    def mask_data(self, data: Any) -> Any:
        """Recursively mask strings inside dicts/lists."""
        if isinstance(data, str):
            return self.mask(data)
        if isinstance(data, Mapping):
            return {k: self.mask_data(v) for k, v in data.items()}
        if isinstance(data, (list, tuple)):
            return [self.mask_data(v) for v in data]
        return data


# ---------------------------------------------------------------------
# Log stream
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class LogRecord:
    timestamp: float
    job: Optional[str]
    step: Optional[str]
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp, "job": self.job, "step": self.step, "message": self.message}


class RunLog:
    """
    The run's log stream. Every line is masked at emission time, before it
    is stored or handed to listeners (the console).
    """

    def __init__(self, secrets: SecretStore, listeners: Iterable[Callable[[LogRecord], None]] = ()):
        self._secrets = secrets
        self._listeners = list(listeners)
        self._lock = threading.Lock()
        self._records: List[LogRecord] = []

    def emit(self, message: str, *, job: Optional[str] = None, step: Optional[str] = None) -> LogRecord:
        record = LogRecord(time.time(), job, step, self._secrets.mask(str(message)))
        with self._lock:
            self._records.append(record)
        for listener in self._listeners:
            listener(record)
        return record

    def records(self, job: Optional[str] = None) -> List[LogRecord]:
        with self._lock:
            if job is None:
                return list(self._records)
            return [r for r in self._records if r.job == job]

    def text(self, job: Optional[str] = None) -> str:
        return "\n".join(r.message for r in self.records(job))


# ---------------------------------------------------------------------
# Outputs ledger
# ---------------------------------------------------------------------

class OutputsLedger:
    """
    Append-only record of job results and outputs.

    Each job instance writes exactly once (its own slot). A job's view
    (`needs.<job>`) is readable only once every instance has committed, and
    exposes outputs of successful instances only.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._expected: Dict[str, int] = {}
        self._slots: Dict[str, Dict[int, Tuple[Status, Dict[str, str]]]] = {}

    def expect(self, job_id: str, instances: int) -> None:
        with self._lock:
            self._expected[job_id] = instances
            self._slots.setdefault(job_id, {})

    def commit(self, job_id: str, instance: int, status: Status, outputs: Mapping[str, str]) -> None:
        with self._lock:
            slots = self._slots.setdefault(job_id, {})
            if instance in slots:
                raise RuntimeError(f"outputs for {job_id}[{instance}] already committed")
            slots[instance] = (status, dict(outputs) if status == Status.SUCCESS else {})

    def complete(self, job_id: str) -> bool:
        with self._lock:
            expected = self._expected.get(job_id)
            return expected is not None and len(self._slots.get(job_id, {})) >= expected

    def result(self, job_id: str) -> Optional[Status]:
        """Aggregate result over instances; None while incomplete."""
        if not self.complete(job_id):
            return None
        with self._lock:
            statuses = [s for s, _ in self._slots[job_id].values()]
        if not statuses:
            return Status.SKIPPED
        for s in (Status.FAILURE, Status.CANCELLED):
            if s in statuses:
                return s
        if all(s == Status.SKIPPED for s in statuses):
            return Status.SKIPPED
        return Status.SUCCESS

    def outputs(self, job_id: str) -> Dict[str, str]:
        """Merged outputs; later instances win unless their value is empty."""
        if not self.complete(job_id):
            return {}
        merged: Dict[str, str] = {}
        with self._lock:
            for _idx, (_status, outs) in sorted(self._slots[job_id].items()):
                for k, v in outs.items():
                    if v != "" or k not in merged:
                        merged[k] = v
        return merged

    def needs_view(self, job_ids: Iterable[str]) -> Mapping[str, Any]:
        view: Dict[str, Any] = {}
        for jid in job_ids:
            result = self.result(jid)
            if result is None:
                continue
            view[jid] = MappingProxyType({
                "result": result.value,
                "outputs": MappingProxyType(self.outputs(jid)),
            })
        return MappingProxyType(view)


# ---------------------------------------------------------------------
# Execution context
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StatusView:
    """What success()/failure()/cancelled() see at the point of evaluation."""
    success: bool = True
    failure: bool = False
    cancelled: bool = False


def _freeze(data: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(data or {}))


@dataclass(frozen=True)
class ExecutionContext:
    """
    Immutable snapshot handed to the expression evaluator. Enrichment
    (entering a job, finishing a step) produces a new snapshot.
    """
    github: Mapping[str, Any]
    secrets: SecretStore
    vars: Mapping[str, Any] = field(default_factory=lambda: _freeze(None))
    inputs: Mapping[str, Any] = field(default_factory=lambda: _freeze(None))
    env: Mapping[str, Any] = field(default_factory=lambda: _freeze(None))
    needs: Mapping[str, Any] = field(default_factory=lambda: _freeze(None))
    workspace: Path = field(default_factory=Path.cwd)
    status: StatusView = field(default_factory=StatusView)
    # job scope (None outside a job)
    job: Optional[Mapping[str, Any]] = None
    runner: Optional[Mapping[str, Any]] = None
    matrix: Optional[Mapping[str, Any]] = None
    strategy: Optional[Mapping[str, Any]] = None
    steps: Optional[Mapping[str, Any]] = None

    @classmethod
    def create(
        cls,
        *,
        github: Mapping[str, Any],
        secrets: SecretStore,
        vars: Optional[Mapping[str, Any]] = None,
        inputs: Optional[Mapping[str, Any]] = None,
        env: Optional[Mapping[str, Any]] = None,
        workspace: str | Path = ".",
    ) -> "ExecutionContext":
        return cls(
            github=_freeze(github),
            secrets=secrets,
            vars=_freeze(vars),
            inputs=_freeze(inputs),
            env=_freeze(env),
            workspace=Path(workspace).resolve(),
        )

    def lookup(self, name: str) -> Any:
        name = name.lower()
        if name in JOB_SCOPED:
            value = getattr(self, name)
            if value is None:
                raise UndefinedContextError(f"'{name}' context is only available inside a job")
            return value
        if name == "secrets":
            return self.secrets.as_mapping()
        if name in ("github", "vars", "inputs", "env", "needs"):
            return getattr(self, name)
        return UNDEFINED

    # ---- enrichment (returns new snapshots) ----

    def with_needs(self, needs: Mapping[str, Any], status: StatusView) -> "ExecutionContext":
        return replace(self, needs=needs, status=status)

    def with_env(self, *layers: Optional[Mapping[str, Any]]) -> "ExecutionContext":
        merged = dict(self.env)
        for layer in layers:
            merged.update(layer or {})
        return replace(self, env=_freeze(merged))

    def with_matrix(self, matrix: Mapping[str, Any], strategy: Mapping[str, Any]) -> "ExecutionContext":
        """Matrix values visible to a job-level `if`, before the job starts."""
        return replace(self, matrix=_freeze(matrix), strategy=_freeze(strategy))

    def enter_job(
        self,
        *,
        job: Mapping[str, Any],
        runner: Mapping[str, Any],
        matrix: Mapping[str, Any],
        strategy: Mapping[str, Any],
    ) -> "ExecutionContext":
        return replace(
            self,
            job=_freeze(job),
            runner=_freeze(runner),
            matrix=_freeze(matrix),
            strategy=_freeze(strategy),
            steps=_freeze(None),
        )

    def with_step(self, step_id: str, outcome: Status, conclusion: Status, outputs: Mapping[str, str]) -> "ExecutionContext":
        steps = dict(self.steps or {})
        steps[step_id] = MappingProxyType({
            "outcome": outcome.value,
            "conclusion": conclusion.value,
            "outputs": MappingProxyType(dict(outputs)),
        })
        return replace(self, steps=MappingProxyType(steps))

    def with_status(self, status: StatusView) -> "ExecutionContext":
        return replace(self, status=status)

    def with_job_status(self, status: Status) -> "ExecutionContext":
        job = dict(self.job or {})
        job["status"] = status.value
        return replace(self, job=_freeze(job))
