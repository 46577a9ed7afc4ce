"""
Analysis orchestrator.

Owns the Scan/Analysis state machine:

    pending | failed | completed  --analyze-->  processing
    processing  --inference ok-->  completed
    processing  --any error-->     failed
    any (but archived)  --archive-->  archived

``analyze`` admits a run and returns at once; the run itself is executed by
a dispatcher worker calling ``execute``. Every write of a run's outcome is
conditional on the scan still holding that run's ``run_id``, so a run that
was reclaimed as stuck cannot overwrite a newer one.
"""

import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from celery.exceptions import SoftTimeLimitExceeded

from ..models.database import Analysis, AnalysisStatus, Scan, ScanStatus, utcnow
from ..utils.error_handler import (
    CapacityError, ConflictError, InferenceError, ScanAnalysisError, StorageError, ValidationError
)
from .access import require_administrator
from .dispatcher import TaskDispatcher, WorkItem
from .image_store import ImageStore, artifact_filename, detect_content_type
from .inference_client import AUTO_ANALYSIS, InferenceClient, InferenceResult, resolve_analysis_type
from .queue_manager import QueueManager
from .record_store import RecordStore

logger = logging.getLogger(__name__)

# Statuses from which a new run may start
ANALYZABLE_STATUSES = (ScanStatus.PENDING, ScanStatus.FAILED, ScanStatus.COMPLETED)

STUCK_REASON = "Analysis did not finish within {timeout} seconds"
ARCHIVED_REASON = "Scan archived while the analysis was running"


@dataclass
class AnalysisAcknowledgement:
    """Immediate answer to an analyze request."""
    scan_id: str
    analysis_id: str
    analysis_type: str
    image_index: int
    status: str
    estimated_time_seconds: int
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AnalysisOrchestrator:
    """Drives scans through analysis runs."""

    def __init__(
        self,
        store: RecordStore,
        image_store: ImageStore,
        inference_client: InferenceClient,
        queue_manager: QueueManager,
        dispatcher: TaskDispatcher,
        estimated_analysis_seconds: int = 60,
        model_version: str = "v2.1",
        enable_llm_report: bool = True,
    ):
        self.store = store
        self.image_store = image_store
        self.inference_client = inference_client
        self.queue_manager = queue_manager
        self.dispatcher = dispatcher
        self.estimated_analysis_seconds = estimated_analysis_seconds
        self.model_version = model_version
        self.enable_llm_report = enable_llm_report

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    def analyze(
        self,
        scan_id: str,
        analysis_type: Optional[str] = AUTO_ANALYSIS,
        image_index: int = 0,
        force: bool = False,
    ) -> AnalysisAcknowledgement:
        """
        Admit an analysis run for one image of a scan.

        Args:
            scan_id: Scan to analyze
            analysis_type: Inference task, or ``auto`` to pick one from the body part
            image_index: Index into the scan's image_keys
            force: Re-run even if a completed analysis already exists

        Returns:
            AnalysisAcknowledgement with status ``processing``, or the cached
            ``completed`` analysis when one exists and ``force`` is false

        Raises:
            NotFoundError: The scan does not exist
            ConflictError: The scan is archived or already processing
            ValidationError: Bad image_index or no matching analysis type
            CapacityError: The dispatcher queue is full
        """
        scan = self.store.require_scan(scan_id)

        if scan.status == ScanStatus.ARCHIVED:
            raise ConflictError(f"Scan {scan_id} is archived")
        if scan.status == ScanStatus.PROCESSING:
            raise ConflictError(f"Scan {scan_id} is already being analyzed")

        image_keys = scan.image_keys or []
        if not isinstance(image_index, int) or not 0 <= image_index < len(image_keys):
            raise ValidationError(
                f"image_index {image_index} out of range for scan {scan_id} with {len(image_keys)} images"
            )

        resolved_type = resolve_analysis_type(scan.scan_type.value, scan.body_part, analysis_type)

        existing = self._find_analysis(scan, image_index, resolved_type)
        if existing is not None and existing.status == AnalysisStatus.COMPLETED and not force:
            logger.info(f"Returning cached {resolved_type} analysis {existing.id} for scan {scan_id}")
            return AnalysisAcknowledgement(
                scan_id=scan_id,
                analysis_id=existing.id,
                analysis_type=resolved_type,
                image_index=image_index,
                status=AnalysisStatus.COMPLETED.value,
                estimated_time_seconds=0,
                cached=True,
            )

        run_id = str(uuid.uuid4())
        if not self.queue_manager.admit(scan_id, run_id):
            raise ConflictError(f"Scan {scan_id} is already being analyzed")

        try:
            analysis = self.store.start_run(scan_id, ANALYZABLE_STATUSES, image_index, resolved_type, run_id)
        except ScanAnalysisError:
            self.queue_manager.release(scan_id, run_id)
            raise

        item = WorkItem(
            scan_id=scan_id,
            run_id=run_id,
            analysis_id=analysis.id,
            image_index=image_index,
            analysis_type=resolved_type,
            previous_status=scan.status,
        )

        try:
            self.dispatcher.submit(item)
        except CapacityError as e:
            self.store.rollback_run(scan_id, run_id, analysis.id, scan.status, e.message)
            self.queue_manager.release(scan_id, run_id)
            raise

        logger.info(f"Admitted {resolved_type} run {run_id} for scan {scan_id} image {image_index}")
        return AnalysisAcknowledgement(
            scan_id=scan_id,
            analysis_id=analysis.id,
            analysis_type=resolved_type,
            image_index=image_index,
            status=ScanStatus.PROCESSING.value,
            estimated_time_seconds=self.estimated_analysis_seconds,
        )

    def analysis_status(self, scan_id: str, image_index: Optional[int] = None) -> Dict[str, Any]:
        """Current status of a scan and its most recently updated analysis."""
        scan = self.store.require_scan(scan_id)

        analyses = [
            analysis for analysis in scan.analyses
            if image_index is None or analysis.image_index == image_index
        ]
        latest = max(analyses, key=lambda a: a.updated_at, default=None)
        result = (latest.result if latest else None) or {}

        return {
            "scan_id": scan.id,
            "scan_status": scan.status.value,
            "analysis_id": latest.id if latest else None,
            "analysis_type": latest.analysis_type if latest else None,
            "image_index": latest.image_index if latest else image_index,
            "analysis_status": latest.status.value if latest else None,
            "confidence": latest.confidence if latest else None,
            "findings": result.get("findings"),
            "recommendations": result.get("recommendations"),
            "error_message": latest.error_message if latest else None,
            "processing_time_ms": latest.processing_time_ms if latest else None,
            "model_version": latest.model_version if latest else None,
            "updated_at": (latest.updated_at if latest else scan.updated_at).isoformat(),
        }

    def archive_scan(self, scan_id: str, caller: Optional[Dict[str, Any]]) -> Scan:
        """
        Move a scan to the terminal archived status.

        Raises:
            AuthorizationError: The caller is not an administrator
            NotFoundError: The scan does not exist
            ConflictError: The scan is already archived
        """
        require_administrator(caller, "archive scans")
        scan = self.store.require_scan(scan_id)

        if scan.status == ScanStatus.ARCHIVED:
            raise ConflictError(f"Scan {scan_id} is already archived")

        if not self.store.archive_scan(scan_id, ARCHIVED_REASON):
            raise ConflictError(f"Scan {scan_id} was archived concurrently")

        if scan.run_id:
            self.queue_manager.release(scan_id, scan.run_id)

        logger.info(f"Scan {scan_id} archived by {caller.get('username')}")
        return self.store.require_scan(scan_id)

    def reclaim_stuck(self, timeout_seconds: int) -> List[str]:
        """
        Fail every scan that has been processing for longer than ``timeout_seconds``.

        Returns:
            Ids of the reclaimed scans.
        """
        cutoff = utcnow() - timedelta(seconds=timeout_seconds)
        reason = STUCK_REASON.format(timeout=timeout_seconds)

        reclaimed = []
        for scan in self.store.find_stuck_scans(cutoff):
            if self.store.fail_stale_run(scan.id, scan.run_id, reason):
                self.queue_manager.release(scan.id, scan.run_id)
                reclaimed.append(scan.id)

        if reclaimed:
            logger.warning(f"Reclaimed {len(reclaimed)} stuck scans: {', '.join(reclaimed)}")
        return reclaimed

    # ------------------------------------------------------------------
    # Worker path
    # ------------------------------------------------------------------

    def execute(self, item: WorkItem) -> None:
        """
        Run one admitted analysis and record its outcome.

        Errors are recorded on the run, or logged when the record store itself
        fails, so this never raises.
        """
        start_time = time.time()

        try:
            scan = self.store.get_scan(item.scan_id)
            if scan is None or scan.run_id != item.run_id:
                logger.warning(f"Skipping run {item.run_id}: scan {item.scan_id} no longer holds it")
                return

            image_key = scan.image_keys[item.image_index]
            image_data = self.image_store.read_image_artifact(image_key)

            inference = self.inference_client.analyze(
                image_data,
                artifact_filename(image_key),
                detect_content_type(image_data),
                item.analysis_type,
            )
            confidence, result = self._build_result(scan, item, inference)

        except Exception as e:
            self._record_failure(item, e, start_time)
            return

        processing_time_ms = int((time.time() - start_time) * 1000)
        try:
            written = self.store.finish_run(
                item.scan_id,
                item.run_id,
                item.analysis_id,
                ScanStatus.COMPLETED,
                status=AnalysisStatus.COMPLETED,
                confidence=confidence,
                result=result,
                error_message=None,
                processing_time_ms=processing_time_ms,
                model_version=self.model_version,
            )
        except Exception as e:
            # Try to record the run as failed instead
            self._record_failure(item, e, start_time)
            return

        if written:
            logger.info(
                f"Scan {item.scan_id} {item.analysis_type} analysis completed in {processing_time_ms} ms "
                f"(confidence {confidence:.2f})"
            )
        else:
            logger.warning(f"Discarded result of stale run {item.run_id} for scan {item.scan_id}")

    def _build_result(self, scan: Scan, item: WorkItem, inference: InferenceResult):
        raw = inference.raw_without_images()

        # A completed analysis always carries findings and a confidence
        findings = inference.findings or json.dumps(raw, sort_keys=True, default=str)
        confidence = inference.confidence if inference.confidence is not None else 0.0

        llm_report = self._generate_report(scan, item, findings, confidence) if self.enable_llm_report else None
        recommendations = llm_report or inference.recommendations or findings

        result = {
            "analysis_type": item.analysis_type,
            "findings": findings,
            "recommendations": recommendations,
            "confidence_scores": inference.confidence_scores,
            "llm_report": llm_report,
            "output_images": self._store_output_images(item, inference),
            "metrics": inference.metrics,
            "raw": raw,
        }
        return confidence, result

    def _generate_report(self, scan: Scan, item: WorkItem, findings: str, confidence: float) -> Optional[str]:
        summary = {
            "analysis_type": item.analysis_type,
            "scan_type": scan.scan_type.value,
            "body_part": scan.body_part,
            "findings": findings,
            "confidence": confidence,
        }
        try:
            return self.inference_client.generate_report(summary)
        except InferenceError as e:
            logger.warning(f"Report generation failed for scan {item.scan_id}, using inference text: {e}")
            return None

    def _store_output_images(self, item: WorkItem, inference: InferenceResult) -> Dict[str, str]:
        stored = {}
        for name, encoded in inference.output_images.items():
            try:
                stored[name] = self.image_store.write_output_artifact(
                    item.scan_id, item.analysis_type, item.image_index, name, encoded
                )
            except StorageError as e:
                logger.warning(f"Could not store output image {name} for scan {item.scan_id}: {e}")
        return stored

    def _record_failure(self, item: WorkItem, error: Exception, start_time: float) -> None:
        if isinstance(error, ScanAnalysisError):
            logger.error(f"Analysis of scan {item.scan_id} failed: {error}")
            message = error.message
        elif isinstance(error, SoftTimeLimitExceeded):
            logger.error(f"Analysis of scan {item.scan_id} exceeded the task time limit")
            message = "Analysis exceeded its time limit"
        else:
            logger.error(f"Unexpected error analyzing scan {item.scan_id}: {error}", exc_info=True)
            message = f"Unexpected error: {error}"

        try:
            written = self.store.finish_run(
                item.scan_id,
                item.run_id,
                item.analysis_id,
                ScanStatus.FAILED,
                status=AnalysisStatus.FAILED,
                confidence=None,
                result=None,
                error_message=message,
                processing_time_ms=int((time.time() - start_time) * 1000),
                model_version=self.model_version,
            )
        except Exception as e:
            # The scan stays processing until reclaim_stuck fails it
            logger.error(f"Could not record failure of run {item.run_id} for scan {item.scan_id}: {e}",
                         exc_info=True)
            return

        if not written:
            logger.warning(f"Discarded failure of stale run {item.run_id} for scan {item.scan_id}")

    @staticmethod
    def _find_analysis(scan: Scan, image_index: int, analysis_type: str) -> Optional[Analysis]:
        for analysis in scan.analyses:
            if analysis.image_index == image_index and analysis.analysis_type == analysis_type:
                return analysis
        return None
