"""Manual triggers for individual pipeline stages."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from leadsignal.api.errors import to_http_exception
from leadsignal.services.errors import PipelineError
from leadsignal.services.pipeline import Pipeline, get_pipeline

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/sources/fetch")
def fetch_sources(pipeline: Pipeline = Depends(get_pipeline)) -> dict:
    """Run the fetcher once over every active query."""
    try:
        result = pipeline.fetcher.fetch()
    except PipelineError as exc:
        logger.error("fetch.api_error", extra={"code": exc.code})
        raise to_http_exception(exc) from exc
    return {"success": True, **result.as_dict()}


@router.post("/signals/analyze")
def analyze_signals(pipeline: Pipeline = Depends(get_pipeline)) -> dict:
    """Analyze one batch of unprocessed items."""
    try:
        result = pipeline.extractor.analyze_batch()
    except PipelineError as exc:
        logger.error("extraction.api_error", extra={"code": exc.code})
        raise to_http_exception(exc) from exc
    return {
        "success": True,
        "items_processed": result.processed_count,
        "signals_created": result.created_count,
        "auto_enriched": result.auto_enriched,
        "skipped_invalid": result.skipped_invalid,
        "duplicates": result.duplicates,
    }


@router.post("/registry/anniversaries")
def import_anniversaries(
    exact_day: bool = Query(False, description="Search the exact creation day, not the month."),
    pipeline: Pipeline = Depends(get_pipeline),
) -> dict:
    """Store anniversary signals for companies found in the company registry."""
    try:
        result = pipeline.registry.import_anniversaries(exact_day=exact_day)
    except PipelineError as exc:
        logger.error("registry.api_error", extra={"code": exc.code})
        raise to_http_exception(exc) from exc
    return {"success": True, **result.as_dict()}
