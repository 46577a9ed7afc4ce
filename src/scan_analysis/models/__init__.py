"""
Data models for the scan analysis service.
"""

from .database import (
    Base, Scan, Analysis, ScanType, ScanPriority, ScanStatus,
    AnalysisStatus, PRIORITY_RANK, utcnow
)

__all__ = [
    'Base',
    'Scan',
    'Analysis',
    'ScanType',
    'ScanPriority',
    'ScanStatus',
    'AnalysisStatus',
    'PRIORITY_RANK',
    'utcnow'
]
