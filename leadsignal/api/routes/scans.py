"""Start, resume and inspect scans."""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from leadsignal.api.errors import to_http_exception
from leadsignal.services.errors import PipelineError
from leadsignal.services.orchestrator import Runner
from leadsignal.services.pipeline import Pipeline, get_pipeline

router = APIRouter()
logger = logging.getLogger(__name__)


class RunScanRequest(BaseModel):
    scan_log_id: UUID | None = Field(
        default=None, description="Existing scan to continue; omit to start a new scan."
    )
    skip_fetch: bool = False


class RunScanResponse(BaseModel):
    success: bool = True
    scan_log_id: UUID
    status: str


class ScanRunView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    status: str
    items_fetched: int
    items_analyzed: int
    signals_created: int
    batches_run: int
    invocations: int
    started_at: datetime
    completed_at: datetime | None = None
    error_message: str | None = None


class BackgroundTaskDispatcher:
    """Run the invocation after the response has been sent."""

    def __init__(self, background_tasks: BackgroundTasks) -> None:
        self._background_tasks = background_tasks

    def dispatch(self, scan_id: UUID, *, skip_fetch: bool, runner: Runner) -> None:
        self._background_tasks.add_task(runner, scan_id, skip_fetch)


@router.post("/scans/run", response_model=RunScanResponse, status_code=status.HTTP_202_ACCEPTED)
def run_scan(
    payload: RunScanRequest,
    background_tasks: BackgroundTasks,
    pipeline: Pipeline = Depends(get_pipeline),
) -> RunScanResponse:
    """Start a new scan, or continue an existing one."""
    dispatcher = BackgroundTaskDispatcher(background_tasks)
    try:
        if payload.scan_log_id is None:
            scan = pipeline.orchestrator.start_scan(dispatcher=dispatcher)
        else:
            scan = pipeline.orchestrator.resume_scan(
                payload.scan_log_id, skip_fetch=payload.skip_fetch, dispatcher=dispatcher
            )
    except PipelineError as exc:
        logger.error(
            "scan.api_error",
            extra={"scan_id": str(payload.scan_log_id), "code": exc.code},
        )
        raise to_http_exception(exc) from exc
    return RunScanResponse(scan_log_id=scan.id, status=scan.status)


@router.get("/scans/{scan_id}", response_model=ScanRunView)
def get_scan(scan_id: UUID, pipeline: Pipeline = Depends(get_pipeline)) -> ScanRunView:
    scan = pipeline.repository.get_scan(scan_id)
    if scan is None:
        raise HTTPException(status_code=404, detail="Scan not found.")
    return ScanRunView.model_validate(scan)


@router.get("/scans", response_model=list[ScanRunView])
def list_scans(
    stale: bool = Query(False, description="Only running scans past the stale threshold."),
    stale_after_minutes: int | None = Query(
        None, ge=1, description="Only running scans older than this with no live lease."
    ),
    limit: int = Query(20, ge=1, le=200),
    pipeline: Pipeline = Depends(get_pipeline),
) -> list[ScanRunView]:
    scans = pipeline.orchestrator.list_scans(
        stale=stale, stale_after_minutes=stale_after_minutes, limit=limit
    )
    return [ScanRunView.model_validate(scan) for scan in scans]
