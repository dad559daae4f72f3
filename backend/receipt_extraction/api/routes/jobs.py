"""API routes for inspecting queued extraction jobs.

Read-only view of the job ledger, scoped to the caller's own jobs.
Finished jobs leave the ledger, so only waiting, delayed, running and
dead-lettered jobs are listed.
"""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException

from receipt_extraction.api.deps import get_current_user_id, get_queue
from receipt_extraction.models.enums import JobPartition
from receipt_extraction.models.schemas import QueuedJobRead
from receipt_extraction.services.job_queue import JobQueue

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("", response_model=List[QueuedJobRead])
async def list_jobs(
    partition: Optional[JobPartition] = None,
    user_id: str = Depends(get_current_user_id),
    queue: JobQueue = Depends(get_queue),
) -> List[QueuedJobRead]:
    """List the caller's jobs, optionally limited to one partition."""
    return [QueuedJobRead.model_validate(job) for job in queue.list_jobs(partition, user_id=user_id)]


@router.get("/{extraction_id}", response_model=QueuedJobRead)
async def get_job_status(
    extraction_id: str,
    user_id: str = Depends(get_current_user_id),
    queue: JobQueue = Depends(get_queue),
) -> QueuedJobRead:
    """Where the job for one extraction currently sits in the queue."""
    job = queue.find_job(extraction_id)
    if job is None or job.user_id != user_id:
        raise HTTPException(status_code=404, detail="Job not found")
    return QueuedJobRead.model_validate(job)
