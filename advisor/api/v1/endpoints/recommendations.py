"""
Recommendation request endpoints: enqueue a job, then poll it by id.
"""
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
import time
from advisor.api.deps import get_job_services
from advisor.config import RETENTION_SETTINGS
from advisor.jobs import JobServices, JobStatus
from advisor.models.schemas import EnqueueResponse, JobAge, JobStatusResponse, UserProfile
from advisor.utils import get_logger, log_business_event, log_performance
from advisor.utils.time import format_age, utc_now

router = APIRouter()
logger = get_logger(__name__)

@router.post(
    "",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue a recommendation run"
)
async def create_recommendation(
    profile: UserProfile,
    request: Request,
    immediate: bool = Query(True, description="Dispatch now instead of waiting for the next poll tick"),
    services: JobServices = Depends(get_job_services)
) -> EnqueueResponse:
    """Store the profile as a pending job and return its id for polling."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")

    job_id = services.store.add_job(profile.model_dump(by_alias=True))
    dispatched = services.processor.process_job_immediately(job_id) if immediate else False

    log_business_event(
        "recommendation_requested",
        {"risk_tolerance": profile.risk_tolerance, "dispatched": dispatched},
        job_id=job_id,
        request_id=request_id
    )
    log_performance("enqueue_recommendation", (time.time() - start_time) * 1000, {"job_id": job_id})
    return EnqueueResponse(request_id=job_id, status="pending", dispatched=dispatched)

@router.get(
    "/latest",
    summary="Most recent completed recommendation"
)
async def get_latest_recommendation(
    services: JobServices = Depends(get_job_services)
):
    completed = services.store.get_jobs_by_status(JobStatus.COMPLETED)
    if not completed:
        raise HTTPException(status_code=404, detail="No completed recommendations found")
    latest = max(completed, key=lambda j: (j.updated_at, j.created_at))
    return {
        "requestId": latest.id,
        "status": latest.status.value,
        "completedAt": latest.updated_at,
        "result": latest.result,
    }

@router.get(
    "/{job_id}",
    response_model=JobStatusResponse,
    response_model_exclude_none=True,
    summary="Poll a recommendation job"
)
async def get_recommendation(
    job_id: str,
    request: Request,
    services: JobServices = Depends(get_job_services)
) -> JobStatusResponse:
    """Return the job state; terminal jobs are deleted after the retention grace period."""
    request_id = request.headers.get("X-Request-ID", "unknown")
    try:
        job = services.store.get_job(job_id)
    except ValueError:
        # malformed ids cannot name a stored job
        job = None
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")

    age = job.age_seconds(utc_now())
    minutes = int(age // 60)
    response = JobStatusResponse(
        request_id=job.id,
        status=job.status.value,
        created_at=job.created_at,
        updated_at=job.updated_at,
        job_age=JobAge(seconds=int(round(age)), minutes=minutes, human_readable=format_age(age)),
    )

    if job.status == JobStatus.COMPLETED:
        response.result = job.result
        services.schedule_cleanup(job.id)
    elif job.status == JobStatus.FAILED:
        response.error = job.error
        services.schedule_cleanup(job.id)
    elif job.status == JobStatus.PROCESSING:
        response.message = "Recommendation generation in progress..."
        if age > float(RETENTION_SETTINGS["processing_warning_seconds"]):
            response.warning = f"Job has been processing for {minutes} minutes. This may indicate a system issue."
            logger.warning("Long-running job polled", job_id=job.id, age=format_age(age), request_id=request_id)
    else:
        response.message = "Recommendation generation queued, waiting to start..."
        if age > float(RETENTION_SETTINGS["pending_warning_seconds"]):
            response.warning = f"Job has been pending for {minutes} minutes. This may indicate a system issue."
            logger.warning("Long-pending job polled", job_id=job.id, age=format_age(age), request_id=request_id)

    logger.debug("Job polled", job_id=job.id, status=job.status.value, request_id=request_id)
    return response
