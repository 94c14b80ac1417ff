# executor.py
from __future__ import annotations

import os
import platform
import shlex
import shutil
import signal
import subprocess
import sys
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .actions import ActionContext, ActionRegistry
from .context import ExecutionContext, RunLog, SecretStore, StatusView
from .errors import ActionExecutionError, CIError, EvalError, JobTimeoutError
from .expressions import evaluate_condition, evaluate_template, is_truthy, render, to_str
from .model import JobResult, JobSpec, Status, StepResult, StepSpec, WorkflowDocument


TOOL_HINTS = {
    "bash": "Install bash or set `shell: sh` on the step (or defaults.run.shell).",
    "sh": "No POSIX shell found on PATH.",
    "pwsh": "Install PowerShell (pwsh) or choose another shell.",
    "node": "Install Node.js or fix PATH.",
}

# shell name -> argv template; {0} is the script path
SHELLS: Dict[str, List[str]] = {
    "bash": ["bash", "--noprofile", "--norc", "-eo", "pipefail", "{0}"],
    "sh": ["sh", "-e", "{0}"],
    "python": [sys.executable, "{0}"],
    "pwsh": ["pwsh", "-command", ". '{0}'"],
}

_EXTENSIONS = {"python": ".py", "pwsh": ".ps1"}


def runner_context() -> Dict[str, Any]:
    """Values of the `runner` context for the local machine."""
    system = platform.system()
    os_name = {"Darwin": "macOS"}.get(system, system)
    machine = platform.machine().lower()
    arch = {"x86_64": "X64", "amd64": "X64", "arm64": "ARM64", "aarch64": "ARM64"}.get(machine, machine.upper())
    return {
        "name": platform.node() or "local",
        "os": os_name,
        "arch": arch,
        "temp": tempfile.gettempdir(),
        "tool_cache": os.path.join(tempfile.gettempdir(), "actionci-tool-cache"),
        "environment": "self-hosted",
    }


# ---------------------------------------------------------------------
# File commands / workflow commands
# ---------------------------------------------------------------------

def parse_file_command(text: str, *, what: str = "GITHUB_OUTPUT") -> Dict[str, str]:
    """
    Parse the key/value protocol used by GITHUB_OUTPUT and GITHUB_ENV:

        name=value
        name<<DELIM
        multi
        line
        DELIM
    """
    out: Dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            name, _, delim = line.partition("<<")
            if not name or not delim:
                raise ActionExecutionError(f"invalid {what} line: {line!r}")
            body: List[str] = []
            while i < len(lines) and lines[i] != delim:
                body.append(lines[i])
                i += 1
            if i >= len(lines):
                raise ActionExecutionError(f"{what}: missing delimiter {delim!r} for {name!r}")
            i += 1  # skip delimiter
            out[name] = "\n".join(body)
        elif "=" in line:
            name, _, value = line.partition("=")
            if not name:
                raise ActionExecutionError(f"invalid {what} line: {line!r}")
            out[name] = value
        else:
            raise ActionExecutionError(f"invalid {what} line: {line!r}")
    return out


def _unescape(value: str, *, prop: bool = False) -> str:
    value = value.replace("%0D", "\r").replace("%0A", "\n")
    if prop:
        value = value.replace("%3A", ":").replace("%2C", ",")
    return value.replace("%25", "%")


def parse_workflow_command(line: str) -> Optional[Tuple[str, Dict[str, str], str]]:
    """`::name key=v,k2=v2::message` -> (name, props, message); None if not a command."""
    stripped = line.strip()
    if not stripped.startswith("::"):
        return None
    head, sep, message = stripped[2:].partition("::")
    if not sep:
        return None
    name, _, raw_props = head.partition(" ")
    props: Dict[str, str] = {}
    for part in raw_props.split(","):
        if "=" in part:
            k, _, v = part.partition("=")
            props[k.strip()] = _unescape(v, prop=True)
    return name, props, _unescape(message)


# ---------------------------------------------------------------------
# Step plumbing
# ---------------------------------------------------------------------

@dataclass
class _StepRun:
    outputs: Dict[str, str] = field(default_factory=dict)
    env_updates: Dict[str, str] = field(default_factory=dict)


class _Deadline:
    def __init__(self, minutes: float):
        self.at = time.monotonic() + minutes * 60.0

    def remaining(self) -> float:
        return self.at - time.monotonic()

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0


def _kill_tree(proc: subprocess.Popen) -> None:
    if hasattr(os, "killpg"):
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except (ProcessLookupError, PermissionError):
            pass
    proc.kill()


def _continue_on_error(value: Any, ctx: ExecutionContext) -> bool:
    if isinstance(value, bool):
        return value
    return is_truthy(evaluate_template(value, ctx))


def _env_strings(env: Mapping[str, Any]) -> Dict[str, str]:
    return {str(k): to_str(v) for k, v in env.items()}


class JobExecutor:
    """
    Runs one job instance: its steps strictly in declared order on the
    calling thread.
    """

    def __init__(
        self,
        document: WorkflowDocument,
        *,
        registry: ActionRegistry,
        secrets: SecretStore,
        log: RunLog,
        workspace: str | Path = ".",
        cancel_event: Optional[threading.Event] = None,
        base_env: Optional[Mapping[str, str]] = None,
    ):
        self.document = document
        self.registry = registry
        self.secrets = secrets
        self.log = log
        self.workspace = Path(workspace).resolve()
        self.cancel_event = cancel_event or threading.Event()
        self.base_env = dict(base_env or {})

    # ---- public ----

    def run(
        self,
        job: JobSpec,
        ctx: ExecutionContext,
        *,
        name: Optional[str] = None,
        matrix: Optional[Mapping[str, Any]] = None,
        strategy: Optional[Mapping[str, Any]] = None,
    ) -> JobResult:
        name = name or job.display_name
        started = time.monotonic()
        deadline = _Deadline(job.timeout_minutes)
        result = JobResult(job_id=job.id, name=name, status=Status.SUCCESS, matrix=dict(matrix or {}))

        ctx = ctx.enter_job(
            job={"status": Status.SUCCESS.value, "id": job.id, "container": {}, "services": {}},
            runner=runner_context(),
            matrix=matrix or {},
            strategy=strategy or {},
        )
        self.log.emit(f"JOB STARTED: {name}", job=name)

        tmp = Path(tempfile.mkdtemp(prefix="actionci-"))
        try:
            ctx = ctx.with_env(self._render_env(self.document.env, ctx))
            ctx = ctx.with_env(self._render_env(job.env, ctx))
            job_coe = _continue_on_error(job.continue_on_error, ctx)
            self._run_steps(job, ctx, name, deadline, job_coe, tmp, result)
        except CIError as e:
            # env/continue-on-error evaluation failed before the first step
            result.status = Status.FAILURE
            result.error = str(e)
            self.log.emit(f"JOB FAILED: {e}", job=name)
        finally:
            shutil.rmtree(tmp, ignore_errors=True)

        result.duration = time.monotonic() - started
        self.log.emit(f"STATUS: {result.status.value}", job=name)
        return result

    # ---- steps ----

    def _run_steps(
        self,
        job: JobSpec,
        ctx: ExecutionContext,
        name: str,
        deadline: _Deadline,
        job_coe: bool,
        tmp: Path,
        result: JobResult,
    ) -> None:
        failed = False
        stop: Optional[Status] = None  # CANCELLED once cancelled or timed out

        for index, step in enumerate(job.steps):
            if stop is None:
                if self.cancel_event.is_set():
                    stop = Status.CANCELLED
                    result.error = "run cancelled"
                elif deadline.expired:
                    stop = Status.CANCELLED
                    result.error = str(JobTimeoutError(
                        f"job exceeded timeout of {job.timeout_minutes} minutes", job=job.id,
                    ))
            if stop is not None:
                result.steps.append(StepResult(step.display_name, step.id, stop, stop))
                continue

            ctx = ctx.with_status(StatusView(success=not failed, failure=failed, cancelled=False))
            step_name = self._step_name(step, ctx)
            step_started = time.monotonic()

            try:
                should_run = evaluate_condition(step.condition, ctx)
            except CIError as e:
                sr = self._failed(step, step_name, e, ctx, job_coe, name)
                failed = failed or sr.conclusion == Status.FAILURE
                result.steps.append(sr)
                ctx = self._record(ctx, step, sr)
                continue

            if not should_run:
                sr = StepResult(step_name, step.id, Status.SKIPPED, Status.SKIPPED)
                result.steps.append(sr)
                ctx = self._record(ctx, step, sr)
                self.log.emit(f"STEP SKIPPED: {step_name}", job=name, step=step_name)
                continue

            self.log.emit(f"STEP: {step_name}", job=name, step=step_name)
            try:
                run = self._execute(job, step, index, step_name, ctx, deadline, tmp, name)
            except JobTimeoutError as e:
                if e.details.get("scope") == "job":
                    stop = Status.CANCELLED
                    result.error = str(e)
                    self.log.emit(f"JOB CANCELLED: {e.message}", job=name, step=step_name)
                    result.steps.append(StepResult(step_name, step.id, Status.CANCELLED, Status.CANCELLED, error=e.message))
                    continue
                sr = self._failed(step, step_name, e, ctx, job_coe, name)
            except CIError as e:
                sr = self._failed(step, step_name, e, ctx, job_coe, name)
            else:
                sr = StepResult(step_name, step.id, Status.SUCCESS, Status.SUCCESS, outputs=run.outputs)
                if run.env_updates:
                    ctx = ctx.with_env(run.env_updates)

            sr.duration = time.monotonic() - step_started
            failed = failed or sr.conclusion == Status.FAILURE
            result.steps.append(sr)
            ctx = self._record(ctx, step, sr)

        if stop is not None:
            result.status = Status.CANCELLED
            return
        if failed:
            result.status = Status.FAILURE
            result.error = result.error or next((s.error for s in result.steps if s.conclusion == Status.FAILURE), None)
            return

        ctx = ctx.with_job_status(Status.SUCCESS)
        try:
            result.outputs = {k: to_str(evaluate_template(v, ctx)) for k, v in job.outputs.items()}
        except CIError as e:
            result.status = Status.FAILURE
            result.error = str(e)
            self.log.emit(f"JOB FAILED: could not evaluate outputs: {e}", job=name)

    def _failed(
        self,
        step: StepSpec,
        step_name: str,
        error: CIError,
        ctx: ExecutionContext,
        job_coe: bool,
        job_name: str,
    ) -> StepResult:
        try:
            coe = job_coe or _continue_on_error(step.continue_on_error, ctx)
        except CIError:
            coe = job_coe
        conclusion = Status.SUCCESS if coe else Status.FAILURE
        message = error.message
        self.log.emit(
            f"STEP FAILED: {step_name}: {message}" + (" (continue-on-error)" if coe else ""),
            job=job_name,
            step=step_name,
        )
        hint = error.details.get("hint")
        if hint:
            self.log.emit(f"Hint: {hint}", job=job_name, step=step_name)
        return StepResult(step_name, step.id, Status.FAILURE, conclusion, error=message)

    @staticmethod
    def _record(ctx: ExecutionContext, step: StepSpec, sr: StepResult) -> ExecutionContext:
        if step.id is None:
            return ctx
        return ctx.with_step(step.id, sr.outcome, sr.conclusion, sr.outputs)

    def _step_name(self, step: StepSpec, ctx: ExecutionContext) -> str:
        try:
            return render(step.display_name, ctx)
        except CIError:
            return step.display_name

    def _render_env(self, env: Mapping[str, Any], ctx: ExecutionContext) -> Dict[str, str]:
        return {str(k): to_str(evaluate_template(v, ctx)) for k, v in env.items()}

    def _execute(
        self,
        job: JobSpec,
        step: StepSpec,
        index: int,
        step_name: str,
        ctx: ExecutionContext,
        deadline: _Deadline,
        tmp: Path,
        job_name: str,
    ) -> _StepRun:
        ctx = ctx.with_env(self._render_env(step.env, ctx))
        if step.uses is not None:
            return self._run_action(job, step, step_name, ctx, deadline, job_name)
        return self._run_command(job, step, index, step_name, ctx, deadline, tmp, job_name)

    # ---- actions ----

    def _run_action(
        self,
        job: JobSpec,
        step: StepSpec,
        step_name: str,
        ctx: ExecutionContext,
        deadline: _Deadline,
        job_name: str,
    ) -> _StepRun:
        inputs = {k: to_str(evaluate_template(v, ctx)) for k, v in step.with_.items()}
        action_ctx = ActionContext(
            job=job.id,
            step=step_name,
            workspace=self.workspace,
            env=_env_strings(ctx.env),
            log=lambda msg: self.log.emit(str(msg), job=job_name, step=step_name),
            add_mask=self.secrets.add_mask,
        )
        ref = render(step.uses or "", ctx)
        result = self.registry.invoke(ref, inputs, action_ctx)
        if deadline.expired:
            raise JobTimeoutError(
                f"job exceeded timeout of {job.timeout_minutes} minutes",
                job=job.id,
                step=step_name,
                details={"scope": "job"},
            )
        return _StepRun(outputs={str(k): to_str(v) for k, v in result.outputs.items()})

    # ---- shell commands ----

    def _shell_argv(self, job: JobSpec, step: StepSpec, script: Path) -> List[str]:
        shell = step.shell or job.defaults.shell or self.document.defaults.shell
        if shell is None:
            shell = "bash" if shutil.which("bash") else "sh"
        if shell in SHELLS:
            template = SHELLS[shell]
        elif "{0}" in shell:
            template = shlex.split(shell)
        else:
            template = [shell, "{0}"]
        return [part.replace("{0}", str(script)) for part in template]

    def _working_directory(self, job: JobSpec, step: StepSpec, ctx: ExecutionContext) -> Path:
        wd = step.working_directory or job.defaults.working_directory or self.document.defaults.working_directory
        if not wd:
            return self.workspace
        path = Path(render(wd, ctx))
        return path if path.is_absolute() else (self.workspace / path).resolve()

    def _process_env(self, job: JobSpec, ctx: ExecutionContext, output_file: Path, env_file: Path) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(self.base_env)
        env.update({
            "CI": "true",
            "GITHUB_JOB": job.id,
            "GITHUB_WORKSPACE": str(self.workspace),
            "GITHUB_OUTPUT": str(output_file),
            "GITHUB_ENV": str(env_file),
            "RUNNER_OS": str(ctx.runner.get("os", "")) if ctx.runner else "",
            "RUNNER_ARCH": str(ctx.runner.get("arch", "")) if ctx.runner else "",
            "RUNNER_TEMP": str(output_file.parent),
        })
        env.update(_env_strings(ctx.env))
        return env

    def _run_command(
        self,
        job: JobSpec,
        step: StepSpec,
        index: int,
        step_name: str,
        ctx: ExecutionContext,
        deadline: _Deadline,
        tmp: Path,
        job_name: str,
    ) -> _StepRun:
        script_text = render(step.run or "", ctx)
        shell_key = step.shell or job.defaults.shell or self.document.defaults.shell or "bash"
        script = tmp / f"step_{index}{_EXTENSIONS.get(shell_key, '.sh')}"
        script.write_text(script_text, encoding="utf-8")
        output_file = tmp / f"output_{index}"
        env_file = tmp / f"env_{index}"
        output_file.touch()
        env_file.touch()

        cwd = self._working_directory(job, step, ctx)
        if not cwd.is_dir():
            raise ActionExecutionError(
                f"working-directory not found: {cwd}", job=job.id, step=step_name,
            )

        argv = self._shell_argv(job, step, script)
        job_remaining = deadline.remaining()
        step_limit = step.timeout_minutes * 60.0 if step.timeout_minutes else None
        timeout = job_remaining if step_limit is None else min(step_limit, job_remaining)
        if timeout <= 0:
            raise JobTimeoutError(
                f"job exceeded timeout of {job.timeout_minutes} minutes",
                job=job.id, step=step_name, details={"scope": "job"},
            )

        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(cwd),
                env=self._process_env(job, ctx, output_file, env_file),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                start_new_session=True,
            )
        except FileNotFoundError:
            tool = argv[0]
            raise ActionExecutionError(
                f"shell '{tool}' is not available",
                job=job.id,
                step=step_name,
                details={"hint": TOOL_HINTS.get(Path(tool).name, f"Install {tool} or fix PATH.")},
            )

        timed_out = False
        try:
            stdout, _ = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            _kill_tree(proc)
            stdout, _ = proc.communicate()
            timed_out = True

        run = _StepRun()
        self._handle_stdout(stdout or "", run, job_name, step_name)

        if timed_out:
            if step_limit is not None and step_limit < job_remaining:
                raise JobTimeoutError(
                    f"step exceeded timeout of {step.timeout_minutes} minutes",
                    job=job.id, step=step_name, details={"scope": "step"},
                )
            raise JobTimeoutError(
                f"job exceeded timeout of {job.timeout_minutes} minutes",
                job=job.id, step=step_name, details={"scope": "job"},
            )

        if proc.returncode != 0:
            raise ActionExecutionError(
                f"process exited with code {proc.returncode}",
                job=job.id,
                step=step_name,
                details={"exit_code": proc.returncode},
            )

        run.outputs.update(parse_file_command(output_file.read_text(encoding="utf-8"), what="GITHUB_OUTPUT"))
        run.env_updates.update(parse_file_command(env_file.read_text(encoding="utf-8"), what="GITHUB_ENV"))
        return run

    def _handle_stdout(self, stdout: str, run: _StepRun, job_name: str, step_name: str) -> None:
        lines = stdout.splitlines()
        commands = [parse_workflow_command(line) for line in lines]

        # register masks first so no line of this step leaks them
        for cmd in commands:
            if cmd and cmd[0] == "add-mask":
                self.secrets.add_mask(cmd[2])

        for line, cmd in zip(lines, commands):
            if cmd is None:
                self.log.emit(line, job=job_name, step=step_name)
                continue
            name, props, message = cmd
            if name == "add-mask":
                continue
            if name == "set-output":
                if "name" not in props:
                    raise EvalError("::set-output:: requires a name property", step=step_name)
                run.outputs[props["name"]] = message
            elif name in ("error", "warning", "notice"):
                self.log.emit(f"{name.upper()}: {message}", job=job_name, step=step_name)
            elif name == "debug":
                continue
            else:
                self.log.emit(line, job=job_name, step=step_name)
