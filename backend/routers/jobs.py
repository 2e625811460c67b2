"""
Jobs router

Handles job creation, the job progress read model and cancellation:
- POST /api/jobs
- GET /api/jobs/{job_id}
- POST /api/jobs/{job_id}/cancel
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Body, Depends, Path

from dependencies import get_job_store, get_sequencer
from schemas import CancelRequest, ErrorResponse, JobCreateRequest, JobResponse
from services.job_store import JobStore
from workers.scene_sequencer import SceneSequencer

logger = structlog.get_logger()

router = APIRouter(prefix="/api/jobs", tags=["Jobs"])


@router.post(
    "",
    response_model=JobResponse,
    status_code=201,
    responses={
        201: {"description": "Job created and first scene dispatched"},
        422: {"model": ErrorResponse, "description": "Invalid scene configuration"},
        500: {"model": ErrorResponse, "description": "Internal server error"}
    },
    summary="Create Multi-Scene Job",
    description="Persist an ordered list of scene specs and start generating the first scene"
)
async def create_job(
    request: JobCreateRequest,
    store: JobStore = Depends(get_job_store),
    sequencer: SceneSequencer = Depends(get_sequencer)
):
    """
    Create a job and start it immediately.

    Scenes are generated one at a time in `order`. Once every scene has
    produced a clip, multi-scene jobs are trimmed, joined with their
    transitions and encoded into a single MP4. Single-scene jobs complete
    with the scene's own output.

    **Validation (422):**
    - `order` values must be exactly 0..n-1
    - `trim_end` must be greater than `trim_start` and within the clip
    - a transition can not be longer than either adjacent trimmed scene

    **Response:**
    The job read model. If the first scene could not be submitted the job
    is already `failed` and `error` says why.
    """
    logger.info("job_create_request", num_scenes=len(request.scenes), aspect_ratio=request.aspect_ratio)

    job = store.create_job(
        request.scenes,
        aspect_ratio=request.aspect_ratio,
        negative_prompt=request.negative_prompt,
        seed=request.seed,
        model=request.model,
    )
    await sequencer.start_job(job.id)

    job = store.get_job(job.id)
    logger.info("job_create_completed", job_id=job.id, status=job.status)
    return JobResponse(**job.to_dict())


@router.get(
    "/{job_id}",
    response_model=JobResponse,
    status_code=200,
    responses={
        200: {"description": "Job retrieved successfully"},
        404: {"model": ErrorResponse, "description": "Job not found"}
    },
    summary="Get Job",
    description="Retrieve status, progress and outputs of a job"
)
async def get_job(
    job_id: str = Path(..., description="Unique job identifier (UUID)"),
    store: JobStore = Depends(get_job_store)
):
    """
    Get the progress read model of a job.

    **Status Values:**
    - `queued`: Persisted, first scene not yet dispatched
    - `running`: Scenes are being generated (`progress.message` names the scene)
    - `encoding`: All scenes produced, final video being composed
    - `completed`: `outputs` holds exactly one artifact URL
    - `failed`: `error` holds a human-readable reason; produced scene outputs are kept
    """
    job = store.get_job(job_id)
    logger.debug("job_retrieved", job_id=job_id, status=job.status)
    return JobResponse(**job.to_dict())


@router.post(
    "/{job_id}/cancel",
    response_model=JobResponse,
    status_code=200,
    responses={
        200: {"description": "Job cancelled"},
        404: {"model": ErrorResponse, "description": "Job not found"},
        409: {"model": ErrorResponse, "description": "Job already completed or failed"}
    },
    summary="Cancel Job",
    description="Fail a running job; later prediction results for it are ignored"
)
async def cancel_job(
    job_id: str = Path(..., description="Unique job identifier (UUID)"),
    request: Optional[CancelRequest] = Body(None),
    sequencer: SceneSequencer = Depends(get_sequencer)
):
    """
    Cancel a non-terminal job.

    The live prediction (if any) is not aborted at the provider; its result
    is discarded when it arrives.
    """
    reason = request.reason if request else None
    job = sequencer.cancel_job(job_id, reason=reason)
    return JobResponse(**job.to_dict())
