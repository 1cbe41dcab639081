"""Enrichment launch and reconciliation endpoints, plus engager intake."""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, ConfigDict, Field, model_validator

from leadsignal.api.errors import to_http_exception
from leadsignal.models import LinkedInEngager, OwnerType
from leadsignal.services.errors import PipelineError
from leadsignal.services.pipeline import Pipeline, get_pipeline

router = APIRouter()
logger = logging.getLogger(__name__)


class LaunchRequest(BaseModel):
    owner_id: UUID
    owner_type: OwnerType = OwnerType.SIGNAL


class CheckRequest(BaseModel):
    owner_id: UUID | None = None
    owner_type: OwnerType = OwnerType.SIGNAL
    batch: bool = False

    @model_validator(mode="after")
    def _require_target(self) -> "CheckRequest":
        if not self.batch and self.owner_id is None:
            raise ValueError("owner_id is required unless batch is true.")
        return self


class EngagerCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    linkedin_url: str = Field(min_length=1, max_length=1024)
    headline: str | None = None
    company: str | None = None
    engagement_type: str = "like"
    post_url: str = ""
    auto_enrich: bool = False


class EngagerView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    headline: str | None = None
    company: str | None = None
    linkedin_url: str
    engagement_type: str
    post_url: str
    enrichment_status: str
    contact_id: UUID | None = None


@router.post("/enrichment/launch")
def launch_enrichment(payload: LaunchRequest, pipeline: Pipeline = Depends(get_pipeline)) -> dict:
    try:
        result = pipeline.launcher.launch(payload.owner_id, payload.owner_type)
    except PipelineError as exc:
        logger.error(
            "enrichment.api_error",
            extra={"owner_id": str(payload.owner_id), "code": exc.code},
        )
        raise to_http_exception(exc) from exc
    return {"success": True, **result.as_dict()}


@router.post("/enrichment/check")
def check_enrichment(payload: CheckRequest, pipeline: Pipeline = Depends(get_pipeline)) -> dict:
    try:
        if payload.batch:
            return {"success": True, **pipeline.reconciler.check_all().as_dict()}
        result = pipeline.reconciler.check(payload.owner_id, payload.owner_type)
    except PipelineError as exc:
        logger.error(
            "enrichment.api_error",
            extra={"owner_id": str(payload.owner_id), "code": exc.code},
        )
        raise to_http_exception(exc) from exc
    return {"success": True, **result.as_dict()}


@router.post("/engagers", status_code=status.HTTP_201_CREATED)
def create_engager(
    payload: EngagerCreate,
    response: Response,
    pipeline: Pipeline = Depends(get_pipeline),
) -> dict:
    """Record an engagement event; repeats for the same profile and post return the stored row."""
    engager, created = pipeline.repository.add_engager(
        LinkedInEngager(**payload.model_dump(exclude={"auto_enrich"}))
    )
    if not created:
        response.status_code = status.HTTP_200_OK

    enrichment = None
    if payload.auto_enrich and created:
        try:
            enrichment = pipeline.launcher.launch(engager.id, OwnerType.ENGAGER).as_dict()
        except PipelineError as exc:
            raise to_http_exception(exc) from exc
        engager = pipeline.repository.get_engager(engager.id) or engager
    return {
        "success": True,
        "created": created,
        "engager": EngagerView.model_validate(engager).model_dump(mode="json"),
        "enrichment": enrichment,
    }
