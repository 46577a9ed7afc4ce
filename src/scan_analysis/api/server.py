"""
API server for the scan analysis pipeline.

Exposes scan registration, analysis admission and status polling, the
pending queue and its administrative operations, and analysis exports.
"""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security import OAuth2PasswordRequestForm

from ..config import AppConfig
from ..models.database import AnalysisStatus, ScanType
from ..pipeline import Pipeline, build_pipeline
from ..services.record_store import coerce_enum
from ..utils.error_handler import ErrorContext, ErrorHandler, ScanAnalysisError
from .auth import DEMO_USERS, authenticate_user, create_access_token, get_admin_user, get_current_user
from .schemas import (
    AnalysisStatusResponse, AnalyzeRequest, AnalyzeResponse, ClearQueueResponse, HealthResponse,
    QueueEntry, QueueResponse, QueueStatsResponse, ReclaimResponse, ScanCreate, ScanDetailResponse,
    Token
)

logger = logging.getLogger(__name__)


def get_pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


def create_app(pipeline: Optional[Pipeline] = None, config: Optional[AppConfig] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        pipeline: Prebuilt pipeline; built from ``config`` on startup when omitted
        config: Application configuration (defaults to the environment)
    """
    config = config or (pipeline.config if pipeline else AppConfig())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.pipeline is None:
            app.state.pipeline = build_pipeline(config)
            app.state.owns_pipeline = True

        current = app.state.pipeline
        current.store.db.create_tables()
        reclaimed = current.orchestrator.reclaim_stuck(config.processing_timeout_seconds)
        if reclaimed:
            logger.warning(f"Startup reclaimed {len(reclaimed)} scans left processing")

        yield

        if app.state.owns_pipeline:
            current.shutdown()

    app = FastAPI(
        title="Scan Analysis API",
        description="Orchestrates AI analysis of uploaded medical scans",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.pipeline = pipeline
    app.state.owns_pipeline = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, restrict this to specific origins
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ScanAnalysisError)
    async def scan_analysis_error_handler(request: Request, exc: ScanAnalysisError):
        handler = ErrorHandler(ErrorContext(
            function_name="api_server",
            operation=f"{request.method} {request.url.path}",
        ))
        response = handler.create_error_response(exc)
        return JSONResponse(
            status_code=response['statusCode'],
            content=response['body'],
            headers=response['headers'],
        )

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:
    """Attach every endpoint to ``app``."""

    @app.post("/api/token", response_model=Token)
    def login_for_access_token(request: Request, form_data: OAuth2PasswordRequestForm = Depends()):
        """Exchange demo credentials for a bearer token."""
        if not authenticate_user(form_data.username, form_data.password):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Incorrect username or password",
                headers={"WWW-Authenticate": "Bearer"},
            )

        config = request.app.state.config
        user = DEMO_USERS[form_data.username]
        access_token = create_access_token(
            data={"sub": form_data.username, "role": user["role"]},
            secret_key=config.jwt_secret_key,
            expires_delta=timedelta(minutes=config.jwt_expiration_minutes),
        )

        return Token(
            access_token=access_token,
            token_type="bearer",
            expires_in=config.jwt_expiration_minutes * 60,
            user_id=form_data.username,
            name=user["name"],
            role=user["role"],
        )

    @app.post("/api/scans", response_model=ScanDetailResponse, status_code=status.HTTP_201_CREATED)
    def create_scan(
        scan: ScanCreate,
        pipeline: Pipeline = Depends(get_pipeline),
        current_user: dict = Depends(get_current_user),
    ):
        """Register a pending scan for images that are already stored."""
        created = pipeline.store.create_scan(
            scan_type=scan.scan_type,
            body_part=scan.body_part,
            image_keys=scan.image_keys,
            priority=scan.priority,
            created_by=current_user["username"],
            notes=scan.notes,
        )
        return created.to_dict(include_analyses=True)

    @app.get("/api/scans/{scan_id}", response_model=ScanDetailResponse)
    def get_scan(
        scan_id: str,
        pipeline: Pipeline = Depends(get_pipeline),
        current_user: dict = Depends(get_current_user),
    ):
        return pipeline.store.require_scan(scan_id).to_dict(include_analyses=True)

    @app.post("/api/scans/{scan_id}/analyze", response_model=AnalyzeResponse,
              status_code=status.HTTP_202_ACCEPTED)
    def analyze_scan(
        scan_id: str,
        analyze_request: Optional[AnalyzeRequest] = None,
        pipeline: Pipeline = Depends(get_pipeline),
        current_user: dict = Depends(get_current_user),
    ):
        """
        Admit an analysis run. Returns at once; poll analysis-status for the outcome.
        """
        analyze_request = analyze_request or AnalyzeRequest()
        logger.info(f"User {current_user['username']} requested analysis of scan {scan_id}")

        ack = pipeline.orchestrator.analyze(
            scan_id,
            analysis_type=analyze_request.analysis_type,
            image_index=analyze_request.image_index,
            force=analyze_request.force,
        )
        return ack.to_dict()

    @app.get("/api/scans/{scan_id}/analysis-status", response_model=AnalysisStatusResponse)
    def get_analysis_status(
        scan_id: str,
        image_index: Optional[int] = Query(None, ge=0),
        pipeline: Pipeline = Depends(get_pipeline),
        current_user: dict = Depends(get_current_user),
    ):
        return pipeline.orchestrator.analysis_status(scan_id, image_index)

    @app.post("/api/scans/{scan_id}/archive", response_model=ScanDetailResponse)
    def archive_scan(
        scan_id: str,
        pipeline: Pipeline = Depends(get_pipeline),
        admin_user: dict = Depends(get_admin_user),
    ):
        return pipeline.orchestrator.archive_scan(scan_id, admin_user).to_dict(include_analyses=True)

    @app.get("/api/queue", response_model=QueueResponse)
    def get_queue(
        pipeline: Pipeline = Depends(get_pipeline),
        current_user: dict = Depends(get_current_user),
    ):
        """Pending scans in service order, with queue statistics."""
        service_time = pipeline.queue_manager.service_time_seconds
        entries = [
            QueueEntry(
                position=position + 1,
                scan_id=scan.id,
                scan_type=scan.scan_type.value,
                body_part=scan.body_part,
                priority=scan.priority.value,
                created_at=scan.created_at.isoformat(),
                estimated_wait_seconds=position * service_time,
            )
            for position, scan in enumerate(pipeline.queue_manager.list_queue())
        ]
        stats = pipeline.queue_manager.queue_stats()
        return QueueResponse(queue=entries, stats=QueueStatsResponse(**stats.to_dict()))

    @app.get("/api/queue/stats", response_model=QueueStatsResponse)
    def get_queue_stats(
        pipeline: Pipeline = Depends(get_pipeline),
        current_user: dict = Depends(get_current_user),
    ):
        return pipeline.queue_manager.queue_stats().to_dict()

    @app.post("/api/queue/clear", response_model=ClearQueueResponse)
    def clear_queue(
        pipeline: Pipeline = Depends(get_pipeline),
        admin_user: dict = Depends(get_admin_user),
    ):
        """Revoke admitted runs that no worker has started."""
        cleared = pipeline.queue_manager.clear_queue(admin_user)
        return ClearQueueResponse(status="success", cleared=cleared)

    @app.post("/api/queue/reclaim", response_model=ReclaimResponse)
    def reclaim_stuck(
        timeout_seconds: Optional[int] = Query(None, ge=0),
        pipeline: Pipeline = Depends(get_pipeline),
        admin_user: dict = Depends(get_admin_user),
    ):
        """Fail scans stuck in processing so they can be analyzed again."""
        if timeout_seconds is None:
            timeout_seconds = pipeline.config.processing_timeout_seconds
        reclaimed = pipeline.orchestrator.reclaim_stuck(timeout_seconds)
        return ReclaimResponse(status="success", reclaimed=reclaimed)

    @app.get("/api/analyses/export")
    def export_analyses(
        export_format: str = Query("csv", alias="format", pattern="^(csv|json)$"),
        status_filter: Optional[str] = Query(None, alias="status"),
        scan_type: Optional[str] = None,
        ids: Optional[str] = None,
        pipeline: Pipeline = Depends(get_pipeline),
        current_user: dict = Depends(get_current_user),
    ):
        """Export analyses as a CSV or JSON attachment."""
        analysis_status = coerce_enum(AnalysisStatus, status_filter, "status") if status_filter else None
        scan_type_filter = coerce_enum(ScanType, scan_type, "scan_type") if scan_type else None
        id_list: Optional[List[str]] = (
            [scan_id.strip() for scan_id in ids.split(",") if scan_id.strip()] if ids else None
        )

        scans = pipeline.store.list_scans(scan_type=scan_type_filter, ids=id_list)
        rows = pipeline.reports.build_rows(scans, analysis_status)

        if export_format == "json":
            content, media_type = pipeline.reports.to_json(rows), "application/json"
        else:
            content, media_type = pipeline.reports.to_csv(rows), "text/csv"

        filename = pipeline.reports.export_filename(export_format)
        return Response(
            content=content,
            media_type=media_type,
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.get("/api/health", response_model=HealthResponse)
    def health(pipeline: Pipeline = Depends(get_pipeline)):
        database_ok = pipeline.store.db.health_check()
        return HealthResponse(
            status="healthy" if database_ok else "degraded",
            database=database_ok,
            workers_running=pipeline.dispatcher.running,
            pending_work_items=pipeline.dispatcher.pending_count(),
        )


app = create_app()


def start_server():
    """Start the API server."""
    config = app.state.config
    uvicorn.run(
        "scan_analysis.api.server:app",
        host=config.api_host,
        port=config.api_port,
        reload=config.debug_mode,
    )


if __name__ == "__main__":
    start_server()
