"""
Services making up the scan analysis pipeline.
"""

from .dispatcher import TaskDispatcher, WorkItem
from .image_store import ImageStore
from .inference_client import InferenceClient, InferenceResult, resolve_analysis_type
from .orchestrator import AnalysisAcknowledgement, AnalysisOrchestrator
from .queue_manager import QueueManager, QueueStats, QueueView
from .record_store import RecordStore
from .report_generator import ReportGenerator

__all__ = [
    'AnalysisAcknowledgement',
    'AnalysisOrchestrator',
    'ImageStore',
    'InferenceClient',
    'InferenceResult',
    'QueueManager',
    'QueueStats',
    'QueueView',
    'RecordStore',
    'ReportGenerator',
    'TaskDispatcher',
    'WorkItem',
    'resolve_analysis_type',
]
