from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from ..config import Settings
from ..coordinator import RunCoordinator, RunReport
from ..definition import parse_definition
from ..errors import DefinitionError, RunNotFound, TriggerFilteredOut
from ..model import TriggerEvent

# -------------------- Schemas --------------------

class TriggerModel(BaseModel):
    ref: str
    before: str = ""
    after: str = ""
    actor: str = ""

class CreateRunRequest(BaseModel):
    definition: dict[str, Any]
    trigger: TriggerModel

class CreateRunResponse(BaseModel):
    run_id: int

class JobStatus(BaseModel):
    state: str
    started_at: datetime | None = None
    finished_at: datetime | None = None
    detail: str = ""
    error_kind: str | None = None
    attempts: int = 0

class RunStatusResponse(BaseModel):
    run_id: int
    pipeline: str
    status: str
    ref: str
    sha: str
    actor: str
    created_at: datetime | None = None
    finished_at: datetime | None = None
    jobs: dict[str, JobStatus] = Field(default_factory=dict)

class CancelResponse(BaseModel):
    run_id: int
    cancelled: bool

class JobResponse(BaseModel):
    run_id: int
    job_name: str
    state: str
    logs: str | None

# -------------------- App --------------------

def _status_response(report: RunReport) -> RunStatusResponse:
    return RunStatusResponse.model_validate(report.to_dict())


def get_coordinator(request: Request) -> RunCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        coordinator = RunCoordinator(Settings.from_env())
        request.app.state.coordinator = coordinator
    return coordinator


def create_app(coordinator: Optional[RunCoordinator] = None) -> FastAPI:
    """Control plane over a RunCoordinator; built from STAGECI_* settings when none is given."""
    app = FastAPI(title="stageci Control Plane")
    app.state.coordinator = coordinator

    # -------------------- Endpoints --------------------

    @app.post("/runs", response_model=CreateRunResponse)
    def create_run(req: CreateRunRequest, coord: RunCoordinator = Depends(get_coordinator)):
        try:
            definition = parse_definition(req.definition)
            run_id = coord.submit_run(
                definition,
                TriggerEvent(**req.trigger.model_dump()),
                wait=False,
            )
        except DefinitionError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except TriggerFilteredOut as e:
            raise HTTPException(status_code=409, detail=str(e))
        return CreateRunResponse(run_id=run_id)

    @app.get("/runs", response_model=list[int])
    def list_runs(coord: RunCoordinator = Depends(get_coordinator)):
        return coord.store.run_ids()

    @app.get("/runs/{run_id}", response_model=RunStatusResponse)
    def get_run(run_id: int, coord: RunCoordinator = Depends(get_coordinator)):
        try:
            return _status_response(coord.get_run_status(run_id))
        except RunNotFound:
            raise HTTPException(status_code=404, detail="Run not found")

    @app.post("/runs/{run_id}/cancel", response_model=CancelResponse)
    def cancel_run(run_id: int, coord: RunCoordinator = Depends(get_coordinator)):
        try:
            cancelled = coord.cancel_run(run_id)
        except RunNotFound:
            raise HTTPException(status_code=404, detail="Run not found")
        return CancelResponse(run_id=run_id, cancelled=cancelled)

    @app.get("/runs/{run_id}/jobs/{job_name}", response_model=JobResponse)
    def get_job(run_id: int, job_name: str, coord: RunCoordinator = Depends(get_coordinator)):
        """Get job state including its (masked) logs."""
        try:
            run = coord.ledger.snapshot(run_id)
        except RunNotFound:
            raise HTTPException(status_code=404, detail="Run not found")
        ex = run.executions.get(job_name)
        if ex is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return JobResponse(run_id=run_id, job_name=job_name, state=ex.state.value, logs=ex.log or None)

    return app


app = create_app()
