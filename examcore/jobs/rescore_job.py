import logging
from rq import get_current_job
from examcore.core.database import SessionLocal
from examcore.services.attempts import expire_overdue, rescore_test

logger = logging.getLogger(__name__)


def _meta(job, **kw):
    if job is None:
        return
    job.meta.update(kw)
    job.save_meta()


def rescore_test_job(test_id, session_factory=None):
    """Re-score every finished attempt of a test, e.g. after its answer key was corrected."""
    job = get_current_job()
    _meta(job, state="running", current=0, total=0, test_id=test_id)
    db = (session_factory or SessionLocal)()
    try:
        result = rescore_test(db, test_id, progress=lambda i, n: _meta(job, current=i, total=n))
        _meta(job, state="done")
        logger.info(f"Rescored test {test_id}: {result['rescored']} attempts, {len(result['changed'])} changed")
        return result
    except Exception as e:
        db.rollback()
        _meta(job, state="failed", error=str(e))
        logger.error(f"Rescore of test {test_id} failed: {e}", exc_info=True)
        raise
    finally:
        db.close()


def expire_overdue_job(session_factory=None):
    job = get_current_job()
    _meta(job, state="running")
    db = (session_factory or SessionLocal)()
    try:
        expired = expire_overdue(db)
        _meta(job, state="done", expired=len(expired))
        return {"expired": expired}
    except Exception:
        db.rollback()
        _meta(job, state="failed")
        raise
    finally:
        db.close()
