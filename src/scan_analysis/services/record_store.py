"""
Record store for scans and analyses.

All status mutations go through conditional UPDATE statements so that two
callers racing on the same scan cannot both move it into PROCESSING, and a
run whose lease was reclaimed cannot overwrite the outcome of a newer run.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, or_, update
from sqlalchemy.orm import selectinload

from ..models.database import (
    Analysis, AnalysisStatus, Scan, ScanPriority, ScanStatus, ScanType, utcnow
)
from ..utils.database import DatabaseManager, db_manager
from ..utils.error_handler import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

# Fields a user may edit on a scan; status is owned by the orchestrator
SCAN_METADATA_FIELDS = {"scan_type", "body_part", "priority", "notes", "image_keys"}

ANALYSIS_FIELDS = {
    "status", "confidence", "result", "error_message",
    "processing_time_ms", "model_version", "analysis_type", "image_index"
}


def coerce_enum(enum_cls, value: Any, field_name: str):
    """Convert a raw value into ``enum_cls`` or raise ValidationError."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {field_name}: {value!r} (expected one of: {allowed})")


class RecordStore:
    """Durable storage for Scan and Analysis entities."""

    def __init__(self, manager: Optional[DatabaseManager] = None):
        self.db = manager or db_manager

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    def create_scan(
        self,
        scan_type: Any,
        body_part: str,
        image_keys: Iterable[str],
        priority: Any = ScanPriority.MEDIUM,
        created_by: Optional[str] = None,
        notes: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Scan:
        """Create a pending scan for already stored images."""
        if not body_part:
            raise ValidationError("body_part is required")

        scan = Scan(
            scan_type=coerce_enum(ScanType, scan_type, "scan_type"),
            body_part=body_part,
            priority=coerce_enum(ScanPriority, priority, "priority"),
            image_keys=list(image_keys),
            created_by=created_by,
            notes=notes,
        )
        if created_at is not None:
            scan.created_at = created_at
            scan.updated_at = created_at

        with self.db.session_scope() as session:
            session.add(scan)
            session.flush()
            session.refresh(scan, attribute_names=["analyses"])

        logger.info(f"Created scan {scan.id} ({scan.scan_type.value} {scan.body_part}, {scan.priority.value})")
        return scan

    def get_scan(self, scan_id: str) -> Optional[Scan]:
        """Return the scan with its analyses loaded, or None."""
        with self.db.session_scope() as session:
            return (
                session.query(Scan)
                .options(selectinload(Scan.analyses))
                .filter(Scan.id == scan_id)
                .first()
            )

    def require_scan(self, scan_id: str) -> Scan:
        scan = self.get_scan(scan_id)
        if scan is None:
            raise NotFoundError(f"Scan not found: {scan_id}")
        return scan

    def update_scan(self, scan_id: str, **fields: Any) -> Scan:
        """Edit scan metadata. Status changes are rejected."""
        if "status" in fields:
            raise ConflictError("Scan status can only be changed by the analysis pipeline")

        unknown = set(fields) - SCAN_METADATA_FIELDS
        if unknown:
            raise ValidationError(f"Unknown scan fields: {', '.join(sorted(unknown))}")

        if "scan_type" in fields:
            fields["scan_type"] = coerce_enum(ScanType, fields["scan_type"], "scan_type")
        if "priority" in fields:
            fields["priority"] = coerce_enum(ScanPriority, fields["priority"], "priority")
        if "image_keys" in fields:
            fields["image_keys"] = list(fields["image_keys"])

        with self.db.session_scope() as session:
            scan = (
                session.query(Scan)
                .options(selectinload(Scan.analyses))
                .filter(Scan.id == scan_id)
                .first()
            )
            if not scan:
                raise NotFoundError(f"Scan not found: {scan_id}")

            for name, value in fields.items():
                setattr(scan, name, value)

            logger.info(f"Updated scan {scan_id} fields: {', '.join(sorted(fields))}")
            return scan

    def delete_scan(self, scan_id: str) -> None:
        """Delete a scan and, by cascade, its analyses."""
        with self.db.session_scope() as session:
            scan = session.query(Scan).filter(Scan.id == scan_id).first()
            if not scan:
                raise NotFoundError(f"Scan not found: {scan_id}")
            session.delete(scan)

        logger.info(f"Deleted scan {scan_id}")

    def list_scans(
        self,
        status: Optional[ScanStatus] = None,
        scan_type: Optional[ScanType] = None,
        ids: Optional[Iterable[str]] = None,
    ) -> List[Scan]:
        """List scans with their analyses, newest first."""
        with self.db.session_scope() as session:
            query = session.query(Scan).options(selectinload(Scan.analyses))

            if status is not None:
                query = query.filter(Scan.status == status)
            if scan_type is not None:
                query = query.filter(Scan.scan_type == scan_type)
            if ids is not None:
                query = query.filter(Scan.id.in_(list(ids)))

            return query.order_by(Scan.created_at.desc()).all()

    def count_scans(self, status: ScanStatus) -> int:
        with self.db.session_scope() as session:
            return session.query(func.count(Scan.id)).filter(Scan.status == status).scalar() or 0

    def count_by_priority(self, status: ScanStatus) -> Dict[str, int]:
        """Count scans in ``status`` grouped by priority value."""
        with self.db.session_scope() as session:
            rows = (
                session.query(Scan.priority, func.count(Scan.id))
                .filter(Scan.status == status)
                .group_by(Scan.priority)
                .all()
            )
        counts = {priority.value: 0 for priority in ScanPriority}
        for priority, count in rows:
            counts[priority.value] = count
        return counts

    def transition_scan(
        self,
        scan_id: str,
        from_statuses: Iterable[ScanStatus],
        to_status: ScanStatus,
        **values: Any,
    ) -> bool:
        """
        Move a scan to ``to_status`` only if it is currently in one of
        ``from_statuses``.

        Returns:
            True if the row was updated, False if its status did not match.
        """
        with self.db.session_scope() as session:
            result = session.execute(
                update(Scan)
                .where(Scan.id == scan_id, Scan.status.in_(list(from_statuses)))
                .values(status=to_status, **values)
                .execution_options(synchronize_session=False)
            )
            updated = result.rowcount == 1

        if updated:
            logger.info(f"Scan {scan_id} moved to {to_status.value}")
        return updated

    def find_stuck_scans(self, started_before: datetime) -> List[Scan]:
        """Scans processing since before ``started_before``."""
        with self.db.session_scope() as session:
            return (
                session.query(Scan)
                .filter(
                    Scan.status == ScanStatus.PROCESSING,
                    or_(
                        Scan.processing_started_at.is_(None),
                        Scan.processing_started_at < started_before,
                    ),
                )
                .all()
            )

    # ------------------------------------------------------------------
    # Analyses
    # ------------------------------------------------------------------

    def get_analyses_by_scan(self, scan_id: str) -> List[Analysis]:
        with self.db.session_scope() as session:
            return (
                session.query(Analysis)
                .filter(Analysis.scan_id == scan_id)
                .order_by(Analysis.image_index, Analysis.created_at)
                .all()
            )

    def find_analysis(self, scan_id: str, image_index: int, analysis_type: str) -> Optional[Analysis]:
        with self.db.session_scope() as session:
            return (
                session.query(Analysis)
                .filter(
                    Analysis.scan_id == scan_id,
                    Analysis.image_index == image_index,
                    Analysis.analysis_type == analysis_type,
                )
                .first()
            )

    def create_analysis(self, **fields: Any) -> Analysis:
        unknown = set(fields) - ANALYSIS_FIELDS - {"scan_id", "id"}
        if unknown:
            raise ValidationError(f"Unknown analysis fields: {', '.join(sorted(unknown))}")

        analysis = Analysis(**fields)
        with self.db.session_scope() as session:
            session.add(analysis)
        return analysis

    def update_analysis(self, analysis_id: str, **fields: Any) -> Analysis:
        unknown = set(fields) - ANALYSIS_FIELDS
        if unknown:
            raise ValidationError(f"Unknown analysis fields: {', '.join(sorted(unknown))}")

        with self.db.session_scope() as session:
            analysis = session.query(Analysis).filter(Analysis.id == analysis_id).first()
            if not analysis:
                raise NotFoundError(f"Analysis not found: {analysis_id}")

            for name, value in fields.items():
                setattr(analysis, name, value)
            return analysis

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def start_run(
        self,
        scan_id: str,
        allowed_from: Iterable[ScanStatus],
        image_index: int,
        analysis_type: str,
        run_id: str,
    ) -> Analysis:
        """
        Atomically move the scan into PROCESSING under ``run_id`` and put the
        analysis for (image_index, analysis_type) into PROCESSING, creating it
        if needed.

        Raises:
            ConflictError: If the scan's status is not in ``allowed_from``.
        """
        with self.db.session_scope() as session:
            result = session.execute(
                update(Scan)
                .where(Scan.id == scan_id, Scan.status.in_(list(allowed_from)))
                .values(
                    status=ScanStatus.PROCESSING,
                    run_id=run_id,
                    processing_started_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError(f"Scan {scan_id} cannot start analysis from its current status")

            analysis = (
                session.query(Analysis)
                .filter(
                    Analysis.scan_id == scan_id,
                    Analysis.image_index == image_index,
                    Analysis.analysis_type == analysis_type,
                )
                .first()
            )
            if analysis is None:
                analysis = Analysis(
                    scan_id=scan_id,
                    image_index=image_index,
                    analysis_type=analysis_type,
                )
                session.add(analysis)

            analysis.status = AnalysisStatus.PROCESSING
            analysis.confidence = None
            analysis.result = None
            analysis.error_message = None
            analysis.processing_time_ms = None
            session.flush()

        logger.info(f"Scan {scan_id} processing (run {run_id}, analysis {analysis.id})")
        return analysis

    def finish_run(
        self,
        scan_id: str,
        run_id: str,
        analysis_id: str,
        scan_status: ScanStatus,
        **analysis_fields: Any,
    ) -> bool:
        """
        Write the outcome of run ``run_id`` in one transaction.

        Returns:
            False if the scan no longer holds this run's lease, in which case
            nothing is written.
        """
        with self.db.session_scope() as session:
            result = session.execute(
                update(Scan)
                .where(
                    Scan.id == scan_id,
                    Scan.status == ScanStatus.PROCESSING,
                    Scan.run_id == run_id,
                )
                .values(status=scan_status, run_id=None, processing_started_at=None)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False

            analysis = session.query(Analysis).filter(Analysis.id == analysis_id).first()
            if analysis is None:
                logger.error(f"Analysis {analysis_id} vanished while run {run_id} was in flight")
            else:
                for name, value in analysis_fields.items():
                    setattr(analysis, name, value)

        logger.info(f"Scan {scan_id} run {run_id} finished as {scan_status.value}")
        return True

    def rollback_run(
        self,
        scan_id: str,
        run_id: str,
        analysis_id: str,
        previous_status: ScanStatus,
        reason: str,
    ) -> bool:
        """Undo an admission whose work item never started."""
        with self.db.session_scope() as session:
            result = session.execute(
                update(Scan)
                .where(
                    Scan.id == scan_id,
                    Scan.status == ScanStatus.PROCESSING,
                    Scan.run_id == run_id,
                )
                .values(status=previous_status, run_id=None, processing_started_at=None)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False

            analysis = session.query(Analysis).filter(Analysis.id == analysis_id).first()
            if analysis is not None:
                analysis.status = AnalysisStatus.PENDING
                analysis.error_message = reason

        logger.info(f"Rolled back run {run_id}; scan {scan_id} returned to {previous_status.value}")
        return True

    def fail_stale_run(self, scan_id: str, run_id: Optional[str], reason: str) -> bool:
        """Mark a run that never reported back as failed, with its analyses."""
        with self.db.session_scope() as session:
            condition = [Scan.id == scan_id, Scan.status == ScanStatus.PROCESSING]
            if run_id is None:
                condition.append(Scan.run_id.is_(None))
            else:
                condition.append(Scan.run_id == run_id)

            result = session.execute(
                update(Scan)
                .where(*condition)
                .values(status=ScanStatus.FAILED, run_id=None, processing_started_at=None)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False

            stale = (
                session.query(Analysis)
                .filter(
                    Analysis.scan_id == scan_id,
                    Analysis.status == AnalysisStatus.PROCESSING,
                )
                .all()
            )
            for analysis in stale:
                analysis.status = AnalysisStatus.FAILED
                analysis.confidence = None
                analysis.result = None
                analysis.error_message = reason

        logger.warning(f"Reclaimed stuck scan {scan_id}: {reason}")
        return True

    def archive_scan(self, scan_id: str, reason: str) -> bool:
        """
        Archive a scan and fail any analysis its discarded run left processing.

        Returns:
            False if the scan is missing or already archived.
        """
        with self.db.session_scope() as session:
            result = session.execute(
                update(Scan)
                .where(Scan.id == scan_id, Scan.status != ScanStatus.ARCHIVED)
                .values(status=ScanStatus.ARCHIVED, run_id=None, processing_started_at=None)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False

            discarded = (
                session.query(Analysis)
                .filter(
                    Analysis.scan_id == scan_id,
                    Analysis.status == AnalysisStatus.PROCESSING,
                )
                .all()
            )
            for analysis in discarded:
                analysis.status = AnalysisStatus.FAILED
                analysis.confidence = None
                analysis.result = None
                analysis.error_message = reason

        logger.info(f"Archived scan {scan_id}; {len(discarded)} running analyses discarded")
        return True
