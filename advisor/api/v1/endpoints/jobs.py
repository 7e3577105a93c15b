"""
Job queue administration: status overview, processor restart, forced processing.
"""
from fastapi import APIRouter, Depends, HTTPException, Request
from advisor.api.deps import get_job_services
from advisor.config import JOB_STORE_SETTINGS, RETENTION_SETTINGS
from advisor.jobs import JobServices, JobStatus
from advisor.models.schemas import QueueStatusResponse, ResponseBase, StuckJob
from advisor.utils import get_logger, log_business_event
from advisor.utils.time import utc_now

router = APIRouter()
logger = get_logger(__name__)

@router.get(
    "/status",
    response_model=QueueStatusResponse,
    summary="Queue counts, stuck jobs and processor health"
)
async def get_queue_status(
    services: JobServices = Depends(get_job_services)
) -> QueueStatusResponse:
    store = services.store
    now = utc_now()
    threshold = float(RETENTION_SETTINGS["stuck_report_seconds"])

    counts = store.count_by_status()
    stuck: list[StuckJob] = []
    for state in (JobStatus.PENDING, JobStatus.PROCESSING):
        for job in store.get_jobs_by_status(state):
            age = job.age_seconds(now)
            if age > threshold:
                stuck.append(StuckJob(id=job.id, status=job.status.value, age_minutes=int(age // 60)))

    if stuck:
        logger.warning("Stuck jobs reported", stuck=len(stuck))
    processor = services.processor.health(pending_count=counts.get(JobStatus.PENDING.value, 0))
    processor["restart_count"] = services.restart_count
    processor["pending_cleanups"] = services.pending_cleanups
    return QueueStatusResponse(
        counts=counts,
        total_jobs=sum(counts.values()),
        store_backend=getattr(store, "backend", str(JOB_STORE_SETTINGS["backend"])),
        stuck_jobs=stuck,
        processor=processor,
        recommendation=(
            "Consider restarting the job processor or checking market data connectivity"
            if stuck or not processor["healthy"]
            else "No stuck jobs detected"
        ),
        timestamp=now,
    )

@router.post(
    "/restart",
    response_model=ResponseBase,
    summary="Restart the job processor"
)
async def restart_processor(
    request: Request,
    services: JobServices = Depends(get_job_services)
) -> ResponseBase:
    request_id = request.headers.get("X-Request-ID", "unknown")
    processor = services.restart()
    log_business_event("processor_restarted", {"restart_count": services.restart_count}, request_id=request_id)
    return ResponseBase(
        message="Job processor restarted",
        data={"restart_count": services.restart_count, "processor": processor.status()},
    )

@router.post(
    "/{job_id}/process",
    response_model=ResponseBase,
    summary="Process one job immediately"
)
async def process_job_now(
    job_id: str,
    request: Request,
    services: JobServices = Depends(get_job_services)
) -> ResponseBase:
    """Dispatch a pending job without waiting for the next poll tick."""
    request_id = request.headers.get("X-Request-ID", "unknown")
    try:
        job = services.store.get_job(job_id)
    except ValueError:
        job = None
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.status != JobStatus.PENDING:
        raise HTTPException(status_code=409, detail=f"Job is {job.status.value}, only pending jobs can be processed")

    dispatched = services.processor.process_job_immediately(job_id)
    log_business_event("job_forced", {"dispatched": dispatched}, job_id=job_id, request_id=request_id)
    return ResponseBase(
        message="Job dispatched" if dispatched else "Job already processing",
        data={"requestId": job_id, "dispatched": dispatched},
    )
