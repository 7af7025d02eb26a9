"""
Celery tasks

- cleanup_tasks: expired one-time code purge
"""
from roboclub.celery_app import celery_app

__all__ = ["celery_app"]
