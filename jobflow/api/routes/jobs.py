"""
Job management routes.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Query, status

from jobflow.api.deps import JobServiceDep
from jobflow.constants import API_JOBS_PREFIX, JobStatus, JobType
from jobflow.types.api import CreateJobRequest, JobListResponse, JobResponse
from jobflow.types.job import JobState, JobStats

logger = logging.getLogger(__name__)

router = APIRouter(prefix=API_JOBS_PREFIX, tags=["Jobs"])


def _page(jobs: list[JobState], total: int, page: int, page_size: int) -> JobListResponse:
    return JobListResponse(
        jobs=[JobResponse.from_state(job) for job in jobs],
        total=total,
        page=page,
        page_size=page_size,
        has_next=(page * page_size) < total,
    )


@router.post(
    "",
    response_model=JobResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a job",
    description="Create a job and publish it to the workers.",
)
async def create_job(request: CreateJobRequest, service: JobServiceDep) -> JobResponse:
    """
    Create a new job.

    Args:
        request: Job creation request.
        service: Job service.

    Returns:
        JobResponse for the PENDING job.
    """
    job = await service.create(request)
    return JobResponse.from_state(job)


@router.get(
    "",
    response_model=JobListResponse,
    summary="List jobs",
    description="List jobs, newest first, with optional status and type filters.",
)
async def list_jobs(
    service: JobServiceDep,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    status: JobStatus | None = Query(default=None),
    type: JobType | None = Query(default=None),
) -> JobListResponse:
    jobs, total = await service.list(status=status, job_type=type, page=page, page_size=page_size)
    return _page(jobs, total, page, page_size)


@router.get(
    "/search",
    response_model=JobListResponse,
    summary="Search jobs by name",
)
async def search_jobs(
    service: JobServiceDep,
    name: str = Query(..., min_length=1),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
) -> JobListResponse:
    jobs, total = await service.search(name, page=page, page_size=page_size)
    return _page(jobs, total, page, page_size)


@router.get(
    "/stats",
    response_model=JobStats,
    summary="Get job statistics",
    description="Job counts per status and the average execution time of completed jobs.",
)
async def get_job_stats(service: JobServiceDep) -> JobStats:
    return await service.stats()


@router.get(
    "/{job_id}",
    response_model=JobResponse,
    summary="Get job details",
)
async def get_job(job_id: UUID, service: JobServiceDep) -> JobResponse:
    """
    Get job details by ID.

    Raises:
        JobNotFoundError: Mapped to 404.
    """
    job = await service.get(job_id)
    return JobResponse.from_state(job)


@router.delete(
    "/{job_id}",
    response_model=JobResponse,
    summary="Cancel a job",
    description="Cancel a job that has not been picked up by a worker yet.",
)
async def cancel_job(job_id: UUID, service: JobServiceDep) -> JobResponse:
    """
    Cancel a PENDING job.

    Raises:
        JobNotFoundError: Mapped to 404.
        InvalidTransitionError: The job is not PENDING; mapped to 409.
    """
    job = await service.cancel(job_id)
    logger.info("Job cancelled via API", extra={"job_id": str(job_id)})
    return JobResponse.from_state(job)
