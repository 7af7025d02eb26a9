"""
Housekeeping tasks
"""
import logging
from datetime import datetime
from typing import Dict, Any, Optional

from sqlalchemy import delete
from sqlalchemy.orm import Session

from roboclub.celery_app import celery_app
from roboclub.models.otp_code import OtpCode
from roboclub.tasks.base import get_task_db, record_task_result

logger = logging.getLogger(__name__)


def purge_expired_otps(db: Session, now: Optional[datetime] = None) -> int:
    """Delete codes past their expiry; returns how many went"""
    cutoff = now or datetime.utcnow()
    result = db.execute(delete(OtpCode).where(OtpCode.expires_at < cutoff))
    db.commit()
    return result.rowcount or 0


@celery_app.task(
    name="roboclub.tasks.cleanup_tasks.purge_expired_otps_task",
    bind=True,
)
def purge_expired_otps_task(self) -> Dict[str, Any]:
    """Periodic purge of expired one-time codes"""
    task_id = self.request.id
    start_time = datetime.now()

    logger.info(f"[{task_id}] purging expired one-time codes")

    db = get_task_db()
    try:
        deleted_count = purge_expired_otps(db)
        duration = (datetime.now() - start_time).total_seconds()
        return record_task_result(
            task_id=task_id,
            task_name="purge_expired_otps",
            status="success",
            result={"deleted_count": deleted_count},
            duration=duration,
        )
    except Exception as e:
        logger.error(f"[{task_id}] expired code purge failed: {e}")
        db.rollback()
        duration = (datetime.now() - start_time).total_seconds()
        record_task_result(
            task_id=task_id,
            task_name="purge_expired_otps",
            status="failed",
            error=str(e),
            duration=duration,
        )
        raise
    finally:
        db.close()
