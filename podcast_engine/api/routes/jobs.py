"""Job endpoints: create, process chunks, reconcile, inspect, assemble."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from podcast_engine.api.models import (
    AssembleResponse,
    CreateJobFromArticlesRequest,
    CreateJobRequest,
    CreateJobResponse,
    JobStatusResponse,
    ProcessChunkRequest,
    ProcessChunkResponse,
    ReconciliationResponse,
    ResetStalledResponse,
    dump,
)
from podcast_engine.errors import (
    JobNotFoundError,
    JobNotReadyError,
    ScriptGenerationError,
    StorageError,
    ValidationError,
)
from podcast_engine.jobs.assembly import assemble_podcast
from podcast_engine.jobs.engine import Engine, build_engine
from podcast_engine.jobs.script import estimate_minutes

logger = logging.getLogger(__name__)

router = APIRouter()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return build_engine()


EngineDep = Annotated[Engine, Depends(get_engine)]


@router.post("/api/jobs", response_model=CreateJobResponse, status_code=201)
def create_job(body: CreateJobRequest, engine: EngineDep) -> CreateJobResponse:
    """Chunk a script and start processing it in the background."""
    try:
        job_id = engine.orchestrator.start_job(body.script, body.estimated_minutes, user_id=body.user_id)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    job = engine.store.get_job(job_id)
    return CreateJobResponse(
        job_id=job_id,
        total_chunks=job.total_chunks,
        estimated_minutes=body.estimated_minutes,
    )


@router.post("/api/jobs/from-articles", response_model=CreateJobResponse, status_code=201)
def create_job_from_articles(body: CreateJobFromArticlesRequest, engine: EngineDep) -> CreateJobResponse:
    """Generate a script for the articles with Claude, then start a job for it."""
    articles = [a.model_dump() for a in body.articles]
    minutes = estimate_minutes(len(articles))
    try:
        script = engine.script_generator.generate(articles)
        job_id = engine.orchestrator.start_job(script, minutes, user_id=body.user_id)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ScriptGenerationError as exc:
        logger.error("Script generation failed: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    job = engine.store.get_job(job_id)
    return CreateJobResponse(job_id=job_id, total_chunks=job.total_chunks, estimated_minutes=minutes)


@router.post(
    "/api/jobs/{job_id}/chunks/{chunk_index}/process",
    response_model=ProcessChunkResponse,
)
def process_chunk(
    job_id: str,
    chunk_index: int,
    engine: EngineDep,
    body: ProcessChunkRequest | None = None,
) -> ProcessChunkResponse:
    """Run one chunk synchronously and schedule whatever comes next."""
    retry_count = body.retry_count if body else 0
    try:
        result = engine.orchestrator.process_chunk(job_id, chunk_index, retry_count)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ProcessChunkResponse(**dump(result))


@router.post("/api/jobs/{job_id}/reconcile", response_model=ReconciliationResponse)
def reconcile_job(job_id: str, engine: EngineDep) -> ReconciliationResponse:
    try:
        report = engine.auditor.reconcile(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
    return ReconciliationResponse(**dump(report))


@router.get("/api/jobs/{job_id}", response_model=JobStatusResponse)
def get_job(job_id: str, engine: EngineDep) -> JobStatusResponse:
    try:
        status = engine.orchestrator.job_status(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
    return JobStatusResponse(**status)


@router.post("/api/jobs/{job_id}/assemble", response_model=AssembleResponse)
def assemble_job(job_id: str, engine: EngineDep) -> AssembleResponse:
    """Concatenate the completed chunks into the final episode."""
    try:
        url = assemble_podcast(engine.store, engine.object_store, job_id, engine.config)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
    except JobNotReadyError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except StorageError as exc:
        logger.error("Assembly of job %s failed: %s", job_id, exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return AssembleResponse(job_id=job_id, audio_reference=url)


@router.post("/api/maintenance/reset-stalled", response_model=ResetStalledResponse)
def reset_stalled(engine: EngineDep, threshold_seconds: float | None = None) -> ResetStalledResponse:
    """Return chunks stuck in processing to pending, then re-dispatch idle jobs."""
    reset = engine.orchestrator.reset_stalled_chunks(threshold_seconds)
    resumed = engine.orchestrator.resume_idle_jobs(threshold_seconds)
    return ResetStalledResponse(reset=reset, resumed=resumed)
