"""
Celery application for asynchronous analysis runs.

Usage:
    # Start a worker for analysis runs
    celery -A scan_analysis.celery_app worker -Q analysis --loglevel=info --concurrency=2
"""

import logging

from celery import Celery

from .config import AppConfig

logger = logging.getLogger(__name__)

ANALYSIS_QUEUE = "analysis"
RUN_ANALYSIS_TASK = "scan_analysis.tasks.run_analysis_task"

celery_app = Celery("scan_analysis", include=["scan_analysis.tasks"])


def configure_celery(config: AppConfig) -> Celery:
    """Apply broker, routing and worker settings from ``config``."""
    celery_app.conf.update(
        broker_url=config.celery_broker_url,
        result_backend=config.celery_result_backend,

        # Task settings
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
        result_expires=config.celery_result_expires,

        # Stay under the reclaim timeout so the worker records the failure itself
        task_soft_time_limit=config.celery_task_soft_time_limit,
        task_time_limit=config.celery_task_time_limit,

        # Worker settings
        worker_concurrency=config.worker_count,
        worker_prefetch_multiplier=1,

        task_default_queue="default",
        task_routes={RUN_ANALYSIS_TASK: {"queue": ANALYSIS_QUEUE}},

        task_track_started=True,
        task_acks_late=True,
        task_reject_on_worker_lost=True,

        # Runs execute inside the calling process
        task_always_eager=config.celery_always_eager,
        task_eager_propagates=False,
    )
    logger.debug(
        f"Celery configured (broker {config.celery_broker_url}, eager={config.celery_always_eager})"
    )
    return celery_app


def revoke_task(task_id: str, terminate: bool = False) -> bool:
    """
    Cancel a queued or running task.

    Args:
        task_id: The Celery task ID
        terminate: If True, forcefully terminate a task that already started

    Returns:
        True if revocation was sent
    """
    celery_app.control.revoke(task_id, terminate=terminate)
    return True


configure_celery(AppConfig())
