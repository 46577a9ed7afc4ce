"""
Tests for queue ordering, statistics, admission and administrative clearing.
"""

from unittest.mock import patch

import pytest
from celery import states

from scan_analysis.models.database import AnalysisStatus, ScanPriority, ScanStatus
from scan_analysis.services.dispatcher import WorkItem
from scan_analysis.utils.error_handler import AuthorizationError


class TestQueueView:

    def test_priority_before_age(self, pipeline, make_scan):
        """An urgent scan created now is served before an older medium scan."""
        s2 = make_scan(priority=ScanPriority.MEDIUM, age_seconds=10)
        s1 = make_scan(priority=ScanPriority.URGENT)

        assert pipeline.queue_manager.list_queue().ids() == [s1.id, s2.id]

    def test_age_within_tier(self, pipeline, make_scan):
        newer = make_scan(priority=ScanPriority.HIGH, age_seconds=5)
        older = make_scan(priority=ScanPriority.HIGH, age_seconds=50)
        low = make_scan(priority=ScanPriority.LOW, age_seconds=500)
        urgent = make_scan(priority=ScanPriority.URGENT, age_seconds=1)

        assert pipeline.queue_manager.list_queue().ids() == [urgent.id, older.id, newer.id, low.id]

    def test_only_pending_scans_are_listed(self, pipeline, store, make_scan):
        pending = make_scan()
        archived = make_scan()
        store.transition_scan(archived.id, [ScanStatus.PENDING], ScanStatus.ARCHIVED)

        assert pipeline.queue_manager.list_queue().ids() == [pending.id]

    def test_view_is_restartable_and_live(self, pipeline, make_scan):
        view = pipeline.queue_manager.list_queue()
        first = make_scan()

        assert [scan.id for scan in view] == [first.id]
        assert [scan.id for scan in view] == [first.id]

        second = make_scan(priority=ScanPriority.URGENT)
        assert [scan.id for scan in view] == [second.id, first.id]
        assert len(view) == 2

    def test_empty_queue(self, pipeline):
        assert list(pipeline.queue_manager.list_queue()) == []


class TestQueueStats:

    def test_stats(self, pipeline, make_scan):
        make_scan(priority=ScanPriority.URGENT)
        make_scan(priority=ScanPriority.LOW)
        make_scan(priority=ScanPriority.LOW)
        processing = make_scan()
        pipeline.orchestrator.analyze(processing.id)

        stats = pipeline.queue_manager.queue_stats()

        assert stats.depth == 3
        assert stats.estimated_wait_seconds == 3 * 300
        assert stats.processing == 1
        assert stats.admitted == 1
        assert stats.by_priority == {"low": 2, "medium": 0, "high": 0, "urgent": 1}
        assert stats.to_dict()["depth"] == 3


class TestAdmission:

    def test_admit_is_exclusive_per_scan(self, pipeline):
        manager = pipeline.queue_manager

        assert manager.admit("scan-1", "run-1") is True
        assert manager.admit("scan-1", "run-2") is False
        assert manager.admit("scan-2", "run-3") is True
        assert manager.active_scan_ids() == {"scan-1", "scan-2"}

    def test_release_ignores_other_runs(self, pipeline):
        manager = pipeline.queue_manager
        manager.admit("scan-1", "run-2")

        manager.observe_completion(WorkItem(
            scan_id="scan-1", run_id="run-1", analysis_id="a", image_index=0,
            analysis_type="brain_tumor", previous_status=ScanStatus.PENDING,
        ))
        assert manager.active_scan_ids() == {"scan-1"}

        manager.release("scan-1", "run-2")
        assert manager.active_scan_ids() == set()

    def test_run_finished_in_worker_releases_admission(self, pipeline, make_scan):
        scan = make_scan()
        pipeline.orchestrator.analyze(scan.id)
        assert pipeline.queue_manager.active_scan_ids() == {scan.id}

        with patch.object(pipeline.dispatcher, "_state", return_value=states.SUCCESS):
            assert pipeline.queue_manager.active_scan_ids() == set()

        assert pipeline.dispatcher.pending_count() == 0


class TestClearQueue:

    def test_requires_administrator(self, pipeline, clinician):
        with pytest.raises(AuthorizationError):
            pipeline.queue_manager.clear_queue(clinician)

        with pytest.raises(PermissionError):
            pipeline.queue_manager.clear_queue(None)

    def test_clears_unstarted_runs_only(self, pipeline, store, make_scan, admin, inference_session):
        never_run = make_scan(priority=ScanPriority.URGENT)
        first = make_scan()
        retried = make_scan()
        store.transition_scan(retried.id, [ScanStatus.PENDING], ScanStatus.FAILED)

        pipeline.orchestrator.analyze(first.id)
        pipeline.orchestrator.analyze(retried.id)

        cleared = pipeline.queue_manager.clear_queue(admin)

        assert cleared == 2
        assert len(pipeline.dispatcher.revoked) == 2
        assert store.get_scan(first.id).status == ScanStatus.PENDING
        assert store.get_scan(retried.id).status == ScanStatus.FAILED
        assert store.get_scan(never_run.id).status == ScanStatus.PENDING
        assert store.get_scan(first.id).analyses[0].status == AnalysisStatus.PENDING
        assert pipeline.queue_manager.active_scan_ids() == set()
        assert pipeline.dispatcher.run_pending() == 0
        assert inference_session.calls == []

    def test_clear_leaves_pending_queue_intact(self, pipeline, make_scan, admin):
        scans = [make_scan() for _ in range(3)]

        assert pipeline.queue_manager.clear_queue(admin) == 0
        assert set(pipeline.queue_manager.list_queue().ids()) == {scan.id for scan in scans}

    def test_cleared_scan_can_be_analyzed_again(self, pipeline, make_scan, admin):
        scan = make_scan()
        pipeline.orchestrator.analyze(scan.id)
        pipeline.queue_manager.clear_queue(admin)

        ack = pipeline.orchestrator.analyze(scan.id)

        assert ack.status == "processing"
