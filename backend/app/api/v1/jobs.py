from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from storyboard.src.errors import JobNotFoundError
from storyboard.src.jobs.registry import JobRegistry

from ... import schemas
from ...deps import get_job_registry

router = APIRouter()


@router.get("/jobs/{job_id}", response_model=schemas.JobRead)
def get_job(job_id: str, jobs: JobRegistry = Depends(get_job_registry)):
    try:
        job = jobs.poll(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return schemas.JobRead(
        id=job.id,
        kind=job.kind,
        status=job.status,
        progress=job.progress,
        data=job.data,
        error_message=job.error,
        error_code=job.error_code,
    )
