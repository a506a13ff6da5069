"""
API Routes for the Affinity Laboratory

Thin HTTP layer over RunOrchestrator:
- POST /analyze/stream         single recipe, Server-Sent Events progress
- POST /audiences/run-batch    start an asynchronous batch (phase 1)
- GET  /audiences/status       advance the batch one step, return its status
- POST /audiences/stop         request cancellation
- GET  /audiences/results      latest per-recipe summaries
- GET  /audiences/catalog      predefined audiences
"""

import functools
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse, StreamingResponse

from affinity_lab.api.models.laboratory import AnalyzeRequest, BatchRunRequest, StopRequest
from affinity_lab.core.context import build_context
from affinity_lab.core.orchestrator import RunOrchestrator
from affinity_lab.core.progress import ProgressStream
from affinity_lab.core.results import load_audience_results
from affinity_lab.utils.errors import ConfigurationError, LaboratoryError, RunInProgressError, UnknownAudienceError
from affinity_lab.utils.run_id import generate_run_id

# Create router
router = APIRouter()
logger = logging.getLogger(__name__)


@functools.lru_cache(maxsize=1)
def get_orchestrator() -> RunOrchestrator:
    """Process-wide orchestrator; its context owns the warmed geocoding caches."""
    return RunOrchestrator(build_context())


@router.post("/analyze/stream")
def analyze_stream(request: AnalyzeRequest, orchestrator: RunOrchestrator = Depends(get_orchestrator)):
    """
    Run one recipe and stream progress as Server-Sent Events.

    The analysis runs on a worker thread; it finishes and persists its
    result even when the client goes away mid-stream.
    """
    settings = orchestrator.settings
    try:
        config = request.to_config(settings.scoring.min_visits_per_zipcode, settings.spatial.radius_m)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    run_id = generate_run_id()
    logger.info(f"Streamed analysis {run_id}: recipe {config.recipe.id} on {config.dataset_id}/{config.country}")

    def work(report):
        result = orchestrator.run_single(config, report)
        return result.to_dict(segment_limit=settings.run.segment_preview_limit)

    stream = ProgressStream(run_id, work, heartbeat_seconds=settings.run.heartbeat_seconds)
    return StreamingResponse(
        stream.frames(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/audiences/run-batch")
def run_batch(request: BatchRunRequest, orchestrator: RunOrchestrator = Depends(get_orchestrator)):
    """Submit phase 1 of an asynchronous batch and return the new run status."""
    try:
        recipes = request.resolve_recipes(orchestrator.ctx.catalog)
    except (UnknownAudienceError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not recipes:
        raise HTTPException(status_code=400, detail="No audiences or recipes requested")

    try:
        status = orchestrator.start_batch_async(
            request.dataset_id,
            request.country,
            recipes,
            date_from=request.date_from,
            date_to=request.date_to,
            radius_m=request.radius_m,
            min_visits=request.min_visits_per_zipcode,
        )
    except RunInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except LaboratoryError as e:
        logger.error(f"Batch start failed for {request.dataset_id}/{request.country}: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    return JSONResponse(content=status.to_dict())


@router.get("/audiences/status")
def batch_status(
    dataset_id: str = Query(...),
    country: str = Query(..., min_length=2, max_length=2),
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    """Advance the batch state machine by one step and return the run record."""
    status = orchestrator.advance_batch(dataset_id, country.upper())
    if status is None:
        raise HTTPException(status_code=404, detail=f"No run found for {dataset_id}/{country.upper()}")
    return JSONResponse(content=status.to_dict())


@router.post("/audiences/stop")
def stop_batch(request: StopRequest, orchestrator: RunOrchestrator = Depends(get_orchestrator)):
    status = orchestrator.stop(request.dataset_id, request.country)
    if status is None:
        raise HTTPException(status_code=404, detail="No running batch to stop")
    return JSONResponse(content=status.to_dict())


@router.get("/audiences/results")
def batch_results(
    dataset_id: str = Query(...),
    country: str = Query(..., min_length=2, max_length=2),
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    results = load_audience_results(orchestrator.ctx.blobs, dataset_id, country.upper())
    return JSONResponse(content={"results": [r.to_dict() for r in results]})


@router.get("/audiences/catalog")
def audience_catalog(orchestrator: RunOrchestrator = Depends(get_orchestrator)):
    catalog = orchestrator.ctx.catalog
    return JSONResponse(content={
        "groups": catalog.group_labels,
        "audiences": [a.to_dict() for a in catalog.all()],
    })
