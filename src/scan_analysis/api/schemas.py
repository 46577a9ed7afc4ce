"""
Pydantic models for API requests and responses.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..models.database import ScanPriority, ScanType


class Token(BaseModel):
    """Model for token response."""
    access_token: str
    token_type: str
    expires_in: int
    user_id: str
    name: str
    role: str


class ScanCreate(BaseModel):
    """Model for registering a scan whose images are already stored."""
    scan_type: ScanType
    body_part: str = Field(..., min_length=1, max_length=100)
    image_keys: List[str] = Field(..., min_length=1)
    priority: ScanPriority = ScanPriority.MEDIUM
    notes: Optional[str] = None


class AnalysisResponse(BaseModel):
    id: str
    scan_id: str
    image_index: int
    analysis_type: str
    status: str
    confidence: Optional[float] = None
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    processing_time_ms: Optional[int] = None
    model_version: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ScanResponse(BaseModel):
    """Model for scan response."""
    id: str
    scan_type: str
    body_part: str
    priority: str
    status: str
    image_keys: List[str]
    created_by: Optional[str] = None
    notes: Optional[str] = None
    processing_started_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ScanDetailResponse(ScanResponse):
    """Model for scan response including its analyses."""
    analyses: List[AnalysisResponse] = []


class AnalyzeRequest(BaseModel):
    analysis_type: str = "auto"
    image_index: int = Field(0, ge=0)
    force: bool = False


class AnalyzeResponse(BaseModel):
    """Acknowledgement of an analyze request."""
    scan_id: str
    analysis_id: str
    analysis_type: str
    image_index: int
    status: str
    estimated_time_seconds: int
    cached: bool = False


class AnalysisStatusResponse(BaseModel):
    scan_id: str
    scan_status: str
    analysis_id: Optional[str] = None
    analysis_type: Optional[str] = None
    image_index: Optional[int] = None
    analysis_status: Optional[str] = None
    confidence: Optional[float] = None
    findings: Optional[str] = None
    recommendations: Optional[str] = None
    error_message: Optional[str] = None
    processing_time_ms: Optional[int] = None
    model_version: Optional[str] = None
    updated_at: str


class QueueStatsResponse(BaseModel):
    depth: int
    estimated_wait_seconds: int
    processing: int
    admitted: int
    by_priority: Dict[str, int]


class QueueEntry(BaseModel):
    position: int
    scan_id: str
    scan_type: str
    body_part: str
    priority: str
    created_at: str
    estimated_wait_seconds: int


class QueueResponse(BaseModel):
    """Model for the ordered queue with its statistics."""
    queue: List[QueueEntry]
    stats: QueueStatsResponse


class ClearQueueResponse(BaseModel):
    status: str
    cleared: int


class ReclaimResponse(BaseModel):
    status: str
    reclaimed: List[str]


class HealthResponse(BaseModel):
    status: str
    database: bool
    workers_running: bool
    pending_work_items: int
