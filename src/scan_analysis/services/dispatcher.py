"""
Celery dispatcher for analysis work items.

Each admitted run is published as one Celery task whose id is the run id.
The request that submits an item returns as soon as the task is queued; a
worker runs the bound handler and writes the outcome to the record store.

The dispatcher keeps the runs it published until their task finishes, which
bounds the amount of admitted work and lets completion listeners fire in the
submitting process even when the task ran in a separate worker.
"""

import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from celery import Celery, states
from celery.result import AsyncResult
from kombu.exceptions import OperationalError

from ..celery_app import celery_app, revoke_task
from ..models.database import ScanStatus, utcnow
from ..utils.error_handler import CapacityError

logger = logging.getLogger(__name__)


@dataclass
class WorkItem:
    """One admitted analysis run waiting for a worker."""
    scan_id: str
    run_id: str
    analysis_id: str
    image_index: int
    analysis_type: str
    previous_status: ScanStatus
    submitted_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["previous_status"] = self.previous_status.value
        data["submitted_at"] = self.submitted_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkItem":
        return cls(
            scan_id=data["scan_id"],
            run_id=data["run_id"],
            analysis_id=data["analysis_id"],
            image_index=int(data["image_index"]),
            analysis_type=data["analysis_type"],
            previous_status=ScanStatus(data["previous_status"]),
            submitted_at=datetime.fromisoformat(data["submitted_at"]),
        )


class TaskDispatcher:
    """Publishes WorkItems as Celery tasks and tracks them until they finish."""

    def __init__(self, app: Optional[Celery] = None, queue_size: int = 50,
                 handler: Optional[Callable[[WorkItem], None]] = None):
        if queue_size < 1:
            raise ValueError("queue_size must be at least 1")
        self.app = app or celery_app
        self.queue_size = queue_size
        self._handler = handler
        self._listeners: List[Callable[[WorkItem], None]] = []
        # run id -> item published but not yet seen finished
        self._inflight: Dict[str, WorkItem] = {}
        self._lock = threading.Lock()
        self._closed = False

    def bind(self, handler: Callable[[WorkItem], None]) -> None:
        """Set the callable that executes each work item."""
        self._handler = handler

    def add_completion_listener(self, listener: Callable[[WorkItem], None]) -> None:
        """Register a callable invoked after every item finishes, success or not."""
        self._listeners.append(listener)

    @property
    def running(self) -> bool:
        return not self._closed

    def submit(self, item: WorkItem) -> None:
        """
        Publish a work item without waiting for it to run.

        Raises:
            CapacityError: If too many runs are in flight or the broker is unreachable.
        """
        if self._closed:
            raise CapacityError("Analysis dispatcher is shutting down")
        if self._handler is None:
            raise RuntimeError("TaskDispatcher has no handler bound")

        self.collect_finished()
        with self._lock:
            if len(self._inflight) >= self.queue_size:
                logger.warning(f"{len(self._inflight)} runs in flight; rejecting scan {item.scan_id}")
                raise CapacityError("Analysis queue is full, try again later")
            self._inflight[item.run_id] = item

        try:
            self._send(item)
        except OperationalError as e:
            with self._lock:
                self._inflight.pop(item.run_id, None)
            logger.error(f"Could not publish run {item.run_id} for scan {item.scan_id}: {e}")
            raise CapacityError("Analysis broker is unavailable, try again later")

        logger.debug(f"Published run {item.run_id} for scan {item.scan_id}")

    def run_item(self, item: WorkItem) -> None:
        """Execute ``item`` in this process and notify the completion listeners."""
        try:
            self._handler(item)
        except Exception as e:
            logger.error(f"Unhandled error in work item for scan {item.scan_id}: {e}", exc_info=True)
        finally:
            with self._lock:
                self._inflight.pop(item.run_id, None)
            self._notify(item)

    def collect_finished(self) -> List[WorkItem]:
        """Notify the completion listeners of runs whose task finished elsewhere."""
        with self._lock:
            candidates = list(self._inflight.values())

        finished = []
        for item in candidates:
            if self._state(item.run_id) not in states.READY_STATES:
                continue
            with self._lock:
                if self._inflight.pop(item.run_id, None) is None:
                    continue
            finished.append(item)
            self._notify(item)

        return finished

    def cancel_pending(self) -> List[WorkItem]:
        """Revoke every published item that no worker has started yet."""
        with self._lock:
            candidates = list(self._inflight.values())

        dropped = []
        for item in candidates:
            if self._state(item.run_id) != states.PENDING:
                continue
            self._revoke(item.run_id)
            with self._lock:
                if self._inflight.pop(item.run_id, None) is not None:
                    dropped.append(item)

        if dropped:
            logger.info(f"Revoked {len(dropped)} queued work items")
        return dropped

    def pending_count(self) -> int:
        """Number of published items whose task has not started."""
        with self._lock:
            candidates = list(self._inflight)
        return sum(1 for run_id in candidates if self._state(run_id) == states.PENDING)

    def shutdown(self) -> None:
        """Stop accepting new items; published tasks stay with the broker."""
        self._closed = True
        logger.info("Analysis dispatcher stopped")

    def _send(self, item: WorkItem) -> None:
        from ..tasks import run_analysis_task
        run_analysis_task.apply_async(args=[item.to_dict()], task_id=item.run_id)

    def _state(self, task_id: str) -> str:
        return AsyncResult(task_id, app=self.app).state

    def _revoke(self, task_id: str) -> None:
        revoke_task(task_id)

    def _notify(self, item: WorkItem) -> None:
        for listener in self._listeners:
            try:
                listener(item)
            except Exception as e:
                logger.error(f"Completion listener failed for scan {item.scan_id}: {e}")
