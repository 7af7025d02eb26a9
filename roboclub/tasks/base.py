"""
Celery task helpers

- sync database sessions for worker processes
- uniform task result logging
"""
import logging
from datetime import datetime
from typing import Dict, Any, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from roboclub.config import get_settings

logger = logging.getLogger(__name__)

_sync_engine = None
_SessionLocal: Optional[sessionmaker] = None


def _sync_database_url(url: str) -> str:
    return (
        url.replace("postgresql+asyncpg://", "postgresql://")
        .replace("sqlite+aiosqlite://", "sqlite://")
    )


def _get_sync_sessionmaker() -> sessionmaker:
    global _sync_engine, _SessionLocal
    if _SessionLocal is None:
        settings = get_settings()
        _sync_engine = create_engine(
            _sync_database_url(settings.database_url),
            pool_pre_ping=True,
        )
        _SessionLocal = sessionmaker(bind=_sync_engine)
    return _SessionLocal


def get_task_db() -> Session:
    """
    Sync session for a task; workers run outside the API's event loop
    """
    return _get_sync_sessionmaker()()


def record_task_result(
    task_id: str,
    task_name: str,
    status: str,
    result: Optional[Any] = None,
    error: Optional[str] = None,
    duration: float = 0,
) -> Dict[str, Any]:
    """
    Log and return a task outcome

    Args:
        task_id: Celery task id
        task_name: short task name
        status: success / failed
        result: task result payload
        error: error text on failure
        duration: runtime in seconds
    """
    log_data = {
        "task_id": task_id,
        "task_name": task_name,
        "status": status,
        "duration": f"{duration:.2f}s",
        "timestamp": datetime.now().isoformat(),
    }

    if error:
        log_data["error"] = error
        logger.error(f"Task failed: {log_data}")
    else:
        log_data["result"] = result
        logger.info(f"Task completed: {log_data}")

    return log_data
