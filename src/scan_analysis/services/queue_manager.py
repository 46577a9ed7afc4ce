"""
Queue manager for pending scans.

The queue is not stored anywhere: it is the set of scans whose persisted
status is ``pending``, served by priority tier and then by age. What the
manager does keep in memory is the admission registry, the scan ids that
currently have a run admitted to the task dispatcher. Runs that finished in
a worker process are collected from the dispatcher before the registry is read.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Set

from ..models.database import Scan, ScanStatus
from .access import require_administrator
from .dispatcher import TaskDispatcher, WorkItem
from .record_store import RecordStore

logger = logging.getLogger(__name__)

CLEARED_REASON = "Queued analysis cleared by administrator"


def queue_order_key(scan: Scan):
    """Highest priority first, then oldest first."""
    return (-scan.priority_rank, scan.created_at)


class QueueView:
    """
    Ordered, read-only view of the pending scans.

    Each iteration runs a fresh query, so a view can be iterated any number
    of times and always reflects the current state of the record store.
    """

    def __init__(self, store: RecordStore):
        self._store = store

    def __iter__(self) -> Iterator[Scan]:
        scans = self._store.list_scans(status=ScanStatus.PENDING)
        for scan in sorted(scans, key=queue_order_key):
            yield scan

    def __len__(self) -> int:
        return self._store.count_scans(ScanStatus.PENDING)

    def ids(self) -> List[str]:
        return [scan.id for scan in self]


@dataclass
class QueueStats:
    """Snapshot of queue depth and expected wait."""
    depth: int
    estimated_wait_seconds: int
    processing: int
    admitted: int
    by_priority: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "depth": self.depth,
            "estimated_wait_seconds": self.estimated_wait_seconds,
            "processing": self.processing,
            "admitted": self.admitted,
            "by_priority": dict(self.by_priority),
        }


class QueueManager:
    """Admission guard, queue listing and administrative queue operations."""

    def __init__(self, store: RecordStore, dispatcher: TaskDispatcher,
                 service_time_seconds: int = 300):
        self.store = store
        self.dispatcher = dispatcher
        self.service_time_seconds = service_time_seconds
        # scan id -> run id of the admitted run
        self._active: Dict[str, str] = {}
        self._lock = threading.Lock()

    def admit(self, scan_id: str, run_id: str) -> bool:
        """
        Register ``run_id`` as the active run of ``scan_id``.

        Returns:
            False if the scan already has an admitted run.
        """
        self.dispatcher.collect_finished()
        with self._lock:
            if scan_id in self._active:
                return False
            self._active[scan_id] = run_id
            return True

    def release(self, scan_id: str, run_id: Optional[str] = None) -> None:
        """Forget the admission of ``scan_id``, only if it belongs to ``run_id`` when given."""
        with self._lock:
            if run_id is None or self._active.get(scan_id) == run_id:
                self._active.pop(scan_id, None)

    def observe_completion(self, item: WorkItem) -> None:
        """Completion listener for the dispatcher."""
        self.release(item.scan_id, item.run_id)
        logger.debug(f"Released admission for scan {item.scan_id} (run {item.run_id})")

    def active_scan_ids(self) -> Set[str]:
        self.dispatcher.collect_finished()
        with self._lock:
            return set(self._active)

    def list_queue(self) -> QueueView:
        return QueueView(self.store)

    def queue_stats(self) -> QueueStats:
        by_priority = self.store.count_by_priority(ScanStatus.PENDING)
        depth = sum(by_priority.values())

        return QueueStats(
            depth=depth,
            estimated_wait_seconds=depth * self.service_time_seconds,
            processing=self.store.count_scans(ScanStatus.PROCESSING),
            admitted=len(self.active_scan_ids()),
            by_priority=by_priority,
        )

    def clear_queue(self, caller: Optional[Dict[str, Any]]) -> int:
        """
        Revoke admitted work that no worker has started yet.

        Each dropped run is rolled back so its scan returns to the status it
        had before admission. Persisted pending scans are left untouched.

        Raises:
            AuthorizationError: If the caller is not an administrator.

        Returns:
            Number of work items cleared.
        """
        require_administrator(caller, "clear the analysis queue")

        dropped = self.dispatcher.cancel_pending()
        for item in dropped:
            rolled_back = self.store.rollback_run(
                item.scan_id, item.run_id, item.analysis_id,
                item.previous_status, CLEARED_REASON
            )
            if not rolled_back:
                logger.warning(f"Scan {item.scan_id} no longer held run {item.run_id} when cleared")
            self.release(item.scan_id, item.run_id)

        logger.info(f"Queue cleared by {caller.get('username')}: {len(dropped)} work items dropped")
        return len(dropped)
