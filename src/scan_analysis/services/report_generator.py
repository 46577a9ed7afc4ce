"""
CSV and JSON exports of analysis results.
"""

import csv
import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from ..models.database import AnalysisStatus, Scan

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = [
    "Scan ID",
    "Scan Type",
    "Body Part",
    "Analysis ID",
    "Analysis Type",
    "Image Index",
    "AI Status",
    "Confidence (%)",
    "AI Findings",
    "Recommendations",
    "Priority",
    "Notes",
    "Uploaded By",
    "Created At",
]


def format_confidence(confidence: Optional[float]) -> str:
    if confidence is None:
        return "N/A"
    return f"{confidence * 100:.1f}"


class ReportGenerator:
    """Flattens scans and their analyses into export rows."""

    def build_rows(
        self,
        scans: Iterable[Scan],
        analysis_status: Optional[AnalysisStatus] = None,
    ) -> List[Dict[str, Any]]:
        """One row per analysis; scans without analyses are skipped."""
        rows = []
        for scan in scans:
            for analysis in scan.analyses:
                if analysis_status is not None and analysis.status != analysis_status:
                    continue

                result = analysis.result or {}
                rows.append({
                    "scan_id": scan.id,
                    "scan_type": scan.scan_type.value,
                    "body_part": scan.body_part,
                    "analysis_id": analysis.id,
                    "analysis_type": analysis.analysis_type,
                    "image_index": analysis.image_index,
                    "status": analysis.status.value,
                    "confidence": analysis.confidence,
                    "findings": result.get("findings"),
                    "recommendations": result.get("recommendations"),
                    "priority": scan.priority.value,
                    "notes": scan.notes,
                    "created_by": scan.created_by,
                    "created_at": scan.created_at.isoformat() if scan.created_at else None,
                    "model_version": analysis.model_version,
                    "processing_time_ms": analysis.processing_time_ms,
                })
        return rows

    def to_csv(self, rows: List[Dict[str, Any]]) -> str:
        """Render rows with the export column headers; every cell is quoted."""
        df = pd.DataFrame([
            {
                "Scan ID": row["scan_id"],
                "Scan Type": row["scan_type"],
                "Body Part": row["body_part"],
                "Analysis ID": row["analysis_id"],
                "Analysis Type": row["analysis_type"],
                "Image Index": row["image_index"],
                "AI Status": row["status"],
                "Confidence (%)": format_confidence(row["confidence"]),
                "AI Findings": row["findings"] or "N/A",
                "Recommendations": row["recommendations"] or "N/A",
                "Priority": row["priority"],
                "Notes": row["notes"] or "N/A",
                "Uploaded By": row["created_by"] or "N/A",
                "Created At": row["created_at"],
            }
            for row in rows
        ], columns=EXPORT_COLUMNS)

        logger.info(f"Exporting {len(df)} analyses as CSV")
        return df.to_csv(index=False, quoting=csv.QUOTE_ALL)

    def to_json(self, rows: List[Dict[str, Any]]) -> str:
        logger.info(f"Exporting {len(rows)} analyses as JSON")
        return json.dumps({"count": len(rows), "analyses": rows}, default=str, indent=2)

    @staticmethod
    def export_filename(extension: str) -> str:
        return f"analysis-reports-{datetime.now().strftime('%Y-%m-%d')}.{extension}"
