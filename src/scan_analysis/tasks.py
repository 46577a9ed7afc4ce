"""
Celery tasks for analysis runs.

A worker process builds its own pipeline on the first task it receives. An
application that builds a pipeline registers it here, so tasks executed
eagerly in that process run against the same components.
"""

import logging
from typing import Any, Dict

from .celery_app import RUN_ANALYSIS_TASK, celery_app
from .services.dispatcher import WorkItem

logger = logging.getLogger(__name__)

_pipeline = None


def bind_pipeline(pipeline) -> None:
    """Make ``pipeline`` the one tasks in this process run against."""
    global _pipeline
    _pipeline = pipeline


def get_worker_pipeline():
    """Return the bound pipeline, building one from the environment if none is bound."""
    global _pipeline
    if _pipeline is None:
        from .pipeline import build_pipeline
        logger.info("Building analysis pipeline for worker process")
        _pipeline = build_pipeline()
    return _pipeline


@celery_app.task(bind=True, name=RUN_ANALYSIS_TASK)
def run_analysis_task(self, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Execute one admitted analysis run.

    The outcome is written to the record store by the orchestrator; the
    returned dict only reports which run this task carried.
    """
    item = WorkItem.from_dict(payload)
    logger.info(f"Task {self.request.id} running {item.analysis_type} for scan {item.scan_id}")

    get_worker_pipeline().dispatcher.run_item(item)

    return {
        "status": "done",
        "scan_id": item.scan_id,
        "run_id": item.run_id,
        "task_id": self.request.id,
    }
