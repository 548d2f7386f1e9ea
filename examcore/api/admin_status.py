from fastapi import APIRouter, Depends
from rq.exceptions import NoSuchJobError
from rq.job import Job
from examcore.core.auth import require_roles
from examcore.core.errors import ResourceNotFoundError
from examcore.jobs.queue import redis
from examcore.models.schemas import CamelModel

router = APIRouter()

class RescoreStatus(CamelModel):
    state: str
    current: int
    total: int
    test_id: str | None = None
    result: dict | None = None
    error: str | None = None

@router.get("/rescore/status", response_model=RescoreStatus, dependencies=[Depends(require_roles("admin"))])
def rescore_status(job_id: str):
    try:
        job = Job.fetch(job_id, connection=redis)
    except NoSuchJobError:
        raise ResourceNotFoundError("Job", job_id)
    meta = job.meta or {}
    status = job.get_status()
    state = meta.get("state") or getattr(status, "value", status)
    return RescoreStatus(
        state=state,
        current=int(meta.get("current") or 0),
        total=int(meta.get("total") or 0),
        test_id=meta.get("test_id"),
        result=job.result if state == "done" else None,
        error=meta.get("error"),
    )
