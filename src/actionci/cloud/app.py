from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional, Union

from fastapi import BackgroundTasks, FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from ..actions import ActionRegistry
from ..context import SecretStore
from ..errors import CIError
from ..model import WorkflowDocument
from ..runner import run_workflow
from ..schema import parse_workflow, parse_workflow_text
from ..triggers import Event, check_required_secrets, matching_trigger, resolve_inputs
from . import settings
from .db import make_engine, make_sessionmaker
from .models import Base, JobRecord, Run

# -------------------- Schemas --------------------

class EventIn(BaseModel):
    name: str = "push"
    ref: str = "refs/heads/main"
    sha: str = ""
    actor: str = ""
    base_ref: Optional[str] = None
    action: Optional[str] = None
    changed_files: Optional[list[str]] = None
    schedule: Optional[str] = None
    inputs: dict[str, Any] = Field(default_factory=dict)
    payload: dict[str, Any] = Field(default_factory=dict)

    def to_event(self) -> Event:
        return Event(**self.model_dump())


class CreateRunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    workflow: Union[str, dict[str, Any]]  # YAML text or the parsed mapping
    event: EventIn = Field(default_factory=EventIn)
    secrets: dict[str, str] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict, alias="vars")
    labels: Optional[list[str]] = None


class CreateRunResponse(BaseModel):
    run_id: str
    status: str


class JobResponse(BaseModel):
    job_id: str
    name: str
    status: str
    matrix: dict[str, Any]
    outputs: dict[str, Any]
    steps: list[dict[str, Any]]
    error: Optional[str]


class RunResponse(BaseModel):
    run_id: str
    workflow: str
    run_name: Optional[str]
    event: str
    status: str
    error: Optional[str]
    dispatch_order: list[str]
    created_at: datetime
    finished_at: Optional[datetime]
    jobs: list[JobResponse]


class LogsResponse(BaseModel):
    run_id: str
    logs: list[dict[str, Any]]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _schema_error(e: CIError) -> HTTPException:
    return HTTPException(
        status_code=422,
        detail={"kind": e.kind, "message": e.message, "job": e.job, "details": e.details},
    )


def _job_response(job: JobRecord) -> JobResponse:
    return JobResponse(
        job_id=job.job_id,
        name=job.name,
        status=job.status,
        matrix=job.matrix,
        outputs=job.outputs,
        steps=job.steps,
        error=job.error,
    )


# -------------------- App --------------------

def create_app(
    database_url: Optional[str] = None,
    *,
    registry: Optional[ActionRegistry] = None,
    workspace: Optional[str] = None,
    max_workers: Optional[int] = None,
) -> FastAPI:
    """
    Build the run service. Runs execute as background tasks after the
    create request has been answered; the stored result is already masked.
    """
    engine = make_engine(database_url or settings.DATABASE_URL)
    SessionLocal = make_sessionmaker(engine)
    Base.metadata.create_all(engine)

    registry = registry or ActionRegistry()
    workspace = workspace or settings.WORKSPACE
    max_workers = max_workers or settings.MAX_WORKERS

    app = FastAPI(title="actionci run service")

    def execute(run_id: str, document: WorkflowDocument, req: CreateRunRequest) -> None:
        with SessionLocal() as s, s.begin():
            run = s.get(Run, run_id)
            run.status = "running"

        try:
            result = run_workflow(
                document,
                req.event.to_event(),
                secrets=req.secrets,
                variables=req.variables,
                registry=registry,
                workspace=workspace,
                max_workers=max_workers,
                labels=req.labels,
                run_id=run_id,
            )
        except Exception as e:
            with SessionLocal() as s, s.begin():
                run = s.get(Run, run_id)
                run.status = "failure"
                run.error = SecretStore(req.secrets).mask(str(e))
                run.finished_at = now_utc()
            if isinstance(e, CIError):
                return
            raise

        data = result.to_dict()
        with SessionLocal() as s, s.begin():
            run = s.get(Run, run_id)
            run.status = data["status"]
            run.run_name = data["run_name"]
            run.dispatch_order = data["dispatch_order"]
            run.logs = data["logs"]
            run.finished_at = now_utc()
            for position, job in enumerate(data["jobs"]):
                s.add(JobRecord(
                    run_id=run_id,
                    position=position,
                    job_id=job["job_id"],
                    name=job["name"],
                    status=job["status"],
                    matrix=job["matrix"],
                    outputs=job["outputs"],
                    steps=job["steps"],
                    error=job["error"],
                ))

    @app.post("/runs", response_model=CreateRunResponse, status_code=201)
    def create_run(req: CreateRunRequest, background: BackgroundTasks):
        try:
            if isinstance(req.workflow, str):
                document = parse_workflow_text(req.workflow, default_name="workflow")
            else:
                document = parse_workflow(req.workflow, default_name="workflow")
            # input / secret problems are rejected before the run is recorded
            event = req.event.to_event()
            trigger = matching_trigger(document, event)
            resolve_inputs(trigger, event.inputs)
            check_required_secrets(trigger, list(req.secrets))
        except CIError as e:
            raise _schema_error(e)

        run_id = uuid.uuid4().hex
        with SessionLocal() as s, s.begin():
            s.add(Run(id=run_id, workflow=document.name, event=event.name, status="queued", created_at=now_utc()))

        background.add_task(execute, run_id, document, req)
        return CreateRunResponse(run_id=run_id, status="queued")

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        with SessionLocal() as s:
            run = s.get(Run, run_id)
            if not run:
                raise HTTPException(status_code=404, detail="Run not found")
            return RunResponse(
                run_id=run.id,
                workflow=run.workflow,
                run_name=run.run_name,
                event=run.event,
                status=run.status,
                error=run.error,
                dispatch_order=run.dispatch_order,
                created_at=run.created_at,
                finished_at=run.finished_at,
                jobs=[_job_response(j) for j in run.jobs],
            )

    @app.get("/runs/{run_id}/jobs", response_model=list[JobResponse])
    def get_run_jobs(run_id: str):
        with SessionLocal() as s:
            run = s.get(Run, run_id)
            if not run:
                raise HTTPException(status_code=404, detail="Run not found")
            return [_job_response(j) for j in run.jobs]

    @app.get("/runs/{run_id}/logs", response_model=LogsResponse)
    def get_run_logs(run_id: str):
        """Redacted log stream of a run."""
        with SessionLocal() as s:
            run = s.get(Run, run_id)
            if not run:
                raise HTTPException(status_code=404, detail="Run not found")
            return LogsResponse(run_id=run.id, logs=run.logs)

    return app
