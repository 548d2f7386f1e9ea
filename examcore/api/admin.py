from fastapi import APIRouter, Depends
from typing import Optional
from examcore.core.auth import require_roles
from examcore.core.cache import get_redis
from examcore.jobs.queue import queue
from examcore.jobs.rescore_job import rescore_test_job, expire_overdue_job
from examcore.models.schemas import CamelModel
from examcore.services.notifications import publish_entitlement_change

router = APIRouter()

class StartRescore(CamelModel):
    test_id: str

@router.post("/rescore/start", dependencies=[Depends(require_roles("admin"))])
def start_rescore(payload: StartRescore):
    job = queue.enqueue(rescore_test_job, payload.test_id, job_timeout=3600)
    return {"jobId": job.get_id()}

@router.post("/attempts/expire", dependencies=[Depends(require_roles("admin"))])
def start_expiry_sweep():
    job = queue.enqueue(expire_overdue_job, job_timeout=600)
    return {"jobId": job.get_id()}

class EntitlementNotice(CamelModel):
    educator_id: str
    student_id: Optional[str] = None
    kind: str = "subscription"

@router.post("/entitlement/notify", dependencies=[Depends(require_roles("admin"))])
def notify_entitlement(payload: EntitlementNotice, client=Depends(get_redis)):
    receivers = publish_entitlement_change(client, payload.educator_id, payload.student_id, payload.kind)
    return {"receivers": receivers}
