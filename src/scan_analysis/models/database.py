"""
SQLAlchemy models for scans and their AI analyses.

A Scan is an uploaded imaging study (one or more stored images). Each image
of a scan can carry one Analysis per analysis type. The scan status tracks
the orchestration lifecycle; the analysis status tracks a single inference
run against one image.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON, Column, DateTime, Enum as SAEnum, Float, ForeignKey, Integer,
    String, Text, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every timestamp column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class ScanType(Enum):
    """Imaging modality of a scan."""
    XRAY = "X-Ray"
    CT = "CT"
    MRI = "MRI"
    ULTRASOUND = "Ultrasound"
    PET = "PET"
    OTHER = "Other"


class ScanPriority(Enum):
    """Triage priority of a scan."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


# Higher rank is served first
PRIORITY_RANK = {
    ScanPriority.URGENT: 4,
    ScanPriority.HIGH: 3,
    ScanPriority.MEDIUM: 2,
    ScanPriority.LOW: 1,
}


class ScanStatus(Enum):
    """Lifecycle status of a scan."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    ARCHIVED = "archived"


class AnalysisStatus(Enum):
    """Status of a single analysis run."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Scan(Base):
    """An uploaded imaging study awaiting or undergoing analysis."""

    __tablename__ = "scans"

    id = Column(String(36), primary_key=True)
    scan_type = Column(
        SAEnum(ScanType, values_callable=_enum_values, native_enum=False, name="scan_type"),
        nullable=False
    )
    body_part = Column(String(100), nullable=False)
    priority = Column(
        SAEnum(ScanPriority, values_callable=_enum_values, native_enum=False, name="scan_priority"),
        nullable=False,
        default=ScanPriority.MEDIUM
    )
    status = Column(
        SAEnum(ScanStatus, values_callable=_enum_values, native_enum=False, name="scan_status"),
        nullable=False,
        default=ScanStatus.PENDING,
        index=True
    )
    image_keys = Column(JSON, nullable=False, default=list)
    created_by = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)

    # Lease of the run currently holding the scan in PROCESSING
    run_id = Column(String(36), nullable=True)
    processing_started_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    analyses = relationship(
        "Analysis",
        back_populates="scan",
        cascade="all, delete-orphan",
        order_by="Analysis.image_index"
    )

    def __init__(self, **kwargs):
        kwargs.setdefault("id", str(uuid.uuid4()))
        kwargs.setdefault("status", ScanStatus.PENDING)
        kwargs.setdefault("priority", ScanPriority.MEDIUM)
        kwargs.setdefault("image_keys", [])
        super().__init__(**kwargs)

    def __repr__(self) -> str:
        return (
            f"<Scan(id={self.id}, status={self.status.value}, "
            f"priority={self.priority.value})>"
        )

    @property
    def priority_rank(self) -> int:
        return PRIORITY_RANK.get(self.priority, PRIORITY_RANK[ScanPriority.MEDIUM])

    def to_dict(self, include_analyses: bool = False) -> Dict[str, Any]:
        """Convert the scan to a JSON-serializable dictionary."""
        data = {
            "id": self.id,
            "scan_type": self.scan_type.value,
            "body_part": self.body_part,
            "priority": self.priority.value,
            "status": self.status.value,
            "image_keys": list(self.image_keys or []),
            "created_by": self.created_by,
            "notes": self.notes,
            "processing_started_at": _isoformat(self.processing_started_at),
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }
        if include_analyses:
            data["analyses"] = [analysis.to_dict() for analysis in self.analyses]
        return data


class Analysis(Base):
    """Result of running one analysis type against one image of a scan."""

    __tablename__ = "analyses"
    __table_args__ = (
        UniqueConstraint("scan_id", "image_index", "analysis_type", name="uq_analysis_scan_image_type"),
    )

    id = Column(String(36), primary_key=True)
    scan_id = Column(String(36), ForeignKey("scans.id", ondelete="CASCADE"), nullable=False, index=True)
    image_index = Column(Integer, nullable=False, default=0)
    analysis_type = Column(String(50), nullable=False)
    status = Column(
        SAEnum(AnalysisStatus, values_callable=_enum_values, native_enum=False, name="analysis_status"),
        nullable=False,
        default=AnalysisStatus.PENDING
    )
    confidence = Column(Float, nullable=True)
    result = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    model_version = Column(String(50), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    scan = relationship("Scan", back_populates="analyses")

    def __init__(self, **kwargs):
        kwargs.setdefault("id", str(uuid.uuid4()))
        kwargs.setdefault("status", AnalysisStatus.PENDING)
        kwargs.setdefault("image_index", 0)
        super().__init__(**kwargs)

    def __repr__(self) -> str:
        return (
            f"<Analysis(id={self.id}, scan_id={self.scan_id}, "
            f"image_index={self.image_index}, status={self.status.value})>"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert the analysis to a JSON-serializable dictionary."""
        return {
            "id": self.id,
            "scan_id": self.scan_id,
            "image_index": self.image_index,
            "analysis_type": self.analysis_type,
            "status": self.status.value,
            "confidence": self.confidence,
            "result": self.result,
            "error_message": self.error_message,
            "processing_time_ms": self.processing_time_ms,
            "model_version": self.model_version,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }
