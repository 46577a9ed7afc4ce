"""
Wiring of the analysis pipeline components.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .celery_app import configure_celery
from .config import AppConfig
from .services.dispatcher import TaskDispatcher
from .services.image_store import ImageStore
from .services.inference_client import InferenceClient
from .services.orchestrator import AnalysisOrchestrator
from .services.queue_manager import QueueManager
from .services.record_store import RecordStore
from .services.report_generator import ReportGenerator
from .tasks import bind_pipeline
from .utils.database import DatabaseManager

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    """The connected components serving one application instance."""
    config: AppConfig
    store: RecordStore
    image_store: ImageStore
    inference_client: InferenceClient
    dispatcher: TaskDispatcher
    queue_manager: QueueManager
    orchestrator: AnalysisOrchestrator
    reports: ReportGenerator

    def shutdown(self) -> None:
        self.dispatcher.shutdown()


def build_pipeline(
    config: Optional[AppConfig] = None,
    manager: Optional[DatabaseManager] = None,
    image_store: Optional[ImageStore] = None,
    inference_client: Optional[InferenceClient] = None,
    dispatcher: Optional[TaskDispatcher] = None,
) -> Pipeline:
    """
    Build the pipeline from configuration.

    Any component passed in is used as is, which lets tests swap the image
    store, inference client or dispatcher.
    """
    config = config or AppConfig()
    store = RecordStore(manager)

    image_store = image_store or ImageStore(
        local_root=config.local_image_root,
        output_bucket=config.output_bucket,
        region_name=config.aws_region,
    )
    inference_client = inference_client or InferenceClient(
        config.inference_base_url,
        timeout_seconds=config.inference_timeout_seconds,
        conversion_timeout_seconds=config.conversion_timeout_seconds,
    )
    celery_app = configure_celery(config)
    dispatcher = dispatcher or TaskDispatcher(celery_app, queue_size=config.worker_queue_size)

    queue_manager = QueueManager(store, dispatcher, config.queue_service_time_seconds)
    orchestrator = AnalysisOrchestrator(
        store,
        image_store,
        inference_client,
        queue_manager,
        dispatcher,
        estimated_analysis_seconds=config.estimated_analysis_seconds,
        model_version=config.model_version,
        enable_llm_report=config.enable_llm_report,
    )

    dispatcher.bind(orchestrator.execute)
    dispatcher.add_completion_listener(queue_manager.observe_completion)

    pipeline = Pipeline(
        config=config,
        store=store,
        image_store=image_store,
        inference_client=inference_client,
        dispatcher=dispatcher,
        queue_manager=queue_manager,
        orchestrator=orchestrator,
        reports=ReportGenerator(),
    )
    bind_pipeline(pipeline)

    logger.info(
        f"Analysis pipeline ready (broker {config.celery_broker_url}, inference at {config.inference_base_url})"
    )
    return pipeline
