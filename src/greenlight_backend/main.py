from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .analysis import AnalysisClient, AnalysisError
from .configuration import Settings, build_config_metadata, load_settings
from .database import InvalidSubmissionId, StoreError, StoreUnavailable, SubmissionDatabase
from .models import (
    BookDetails,
    BookDetailsRequest,
    BookMetadata,
    BookMetadataRequest,
    ConfigMetadata,
    ConnectionCheck,
    ConnectionReport,
    ProcessResponse,
    SignupRequest,
    SignupResponse,
    SubmissionDetail,
    SubmissionStatus,
    UploadResponse,
)
from .pdf import PdfValidationError
from .submission_manager import InvalidSubmission, SubmissionManager, SubmissionNotFound

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_SIZE = 1024 * 1024


@dataclass
class AppContext:
    """Everything a request handler needs, built once per application."""

    settings: Settings
    store: SubmissionDatabase
    analyzer: Any
    manager: SubmissionManager

    @classmethod
    def build(cls, settings: Settings, analyzer: Any = None) -> "AppContext":
        store = SubmissionDatabase(settings.database.path)
        analyzer = analyzer or AnalysisClient(settings.openai)
        manager = SubmissionManager(store, analyzer, settings)
        return cls(settings=settings, store=store, analyzer=analyzer, manager=manager)

    def close(self) -> None:
        self.manager.shutdown()


async def _reconcile_periodically(manager: SubmissionManager, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(manager.reconcile)
        except Exception:
            logger.exception("Reconcile sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    context: AppContext = app.state.context
    try:
        await run_in_threadpool(context.manager.reconcile)
    except Exception:
        logger.exception("Startup reconcile sweep failed")

    task = None
    interval = context.settings.lifecycle.reconcile_interval_seconds
    if interval > 0:
        task = asyncio.create_task(_reconcile_periodically(context.manager, interval))
    try:
        yield
    finally:
        try:
            if task is not None:
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        finally:
            context.close()


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_manager(context: AppContext = Depends(get_context)) -> SubmissionManager:
    return context.manager


def _describe_validation_error(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
    if first.get("type") == "missing":
        return "Missing required fields" + (f": {location}" if location else "")
    return f"Invalid request: {location} {first.get('msg', '')}".strip()


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse({"error": _describe_validation_error(exc)}, status_code=400)

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse({"error": "Internal server error"}, status_code=500)


def _register_routes(app: FastAPI) -> None:
    @app.get("/healthz")
    def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/config/defaults", response_model=ConfigMetadata)
    def get_config_defaults(context: AppContext = Depends(get_context)) -> ConfigMetadata:
        return build_config_metadata(context.settings)

    @app.post("/api/upload", response_model=UploadResponse)
    async def upload_manuscript(
        file: Optional[UploadFile] = File(None),
        synopsis: Optional[str] = Form(None),
        context: AppContext = Depends(get_context),
    ) -> UploadResponse:
        if file is None or synopsis is None:
            raise HTTPException(status_code=400, detail="Missing required fields")

        filename = file.filename or ""
        limits = context.settings.limits
        chunks = []
        total = 0
        try:
            while chunk := await file.read(UPLOAD_CHUNK_SIZE):
                total += len(chunk)
                if total > limits.max_file_size_bytes:
                    raise HTTPException(status_code=400, detail=f"File size exceeds {limits.max_file_size_mb:g}MB limit")
                chunks.append(chunk)
        finally:
            await file.close()

        try:
            submission_id = await run_in_threadpool(context.manager.submit, b"".join(chunks), filename, synopsis)
        except (InvalidSubmission, PdfValidationError) as exc:
            logger.warning(f"Upload rejected: {exc}")
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except StoreUnavailable as exc:
            logger.error(f"Upload could not be stored: {exc}")
            raise HTTPException(status_code=500, detail="Failed to save submission") from exc

        return UploadResponse(submission_id=submission_id)

    @app.post("/api/process/{submission_id}", response_model=ProcessResponse, response_model_exclude_none=True)
    def process_submission(submission_id: str, manager: SubmissionManager = Depends(get_manager)):
        try:
            outcome = manager.process(submission_id)
        except InvalidSubmissionId as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except SubmissionNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except StoreUnavailable as exc:
            logger.error(f"Processing {submission_id} failed: {exc}")
            raise HTTPException(status_code=500, detail="Internal server error") from exc

        if outcome.status is SubmissionStatus.COMPLETED:
            return ProcessResponse(message="Analysis completed", status=outcome.status, analysis=outcome.analysis)

        if outcome.status is SubmissionStatus.ERROR:
            if not outcome.ran_analysis:
                raise HTTPException(status_code=409, detail=f"Submission analysis already failed: {outcome.error}")
            if isinstance(outcome.failure, AnalysisError):
                raise HTTPException(status_code=502, detail="Error during analysis")
            raise HTTPException(status_code=500, detail="Error during analysis")

        body = ProcessResponse(message="Analysis in progress", status=outcome.status)
        return JSONResponse(status_code=202, content=body.model_dump(mode="json", exclude_none=True))

    def _read_submission(submission_id: str, manager: SubmissionManager) -> SubmissionDetail:
        try:
            return manager.get_status(submission_id)
        except InvalidSubmissionId as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except SubmissionNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except StoreUnavailable as exc:
            logger.error(f"Reading {submission_id} failed: {exc}")
            raise HTTPException(status_code=500, detail="Internal server error") from exc

    @app.get("/api/results/{submission_id}", response_model=SubmissionDetail, response_model_exclude_none=True)
    def get_results(submission_id: str, manager: SubmissionManager = Depends(get_manager)) -> SubmissionDetail:
        return _read_submission(submission_id, manager)

    @app.get("/api/submissions/{submission_id}", response_model=SubmissionDetail, response_model_exclude_none=True)
    def get_submission(submission_id: str, manager: SubmissionManager = Depends(get_manager)) -> SubmissionDetail:
        return _read_submission(submission_id, manager)

    @app.post("/api/signup", response_model=SignupResponse)
    def signup(payload: SignupRequest, manager: SubmissionManager = Depends(get_manager)) -> SignupResponse:
        try:
            manager.signup(payload.email, payload.submission_id)
        except (InvalidSubmission, InvalidSubmissionId) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except StoreUnavailable as exc:
            logger.error(f"Signup could not be stored: {exc}")
            raise HTTPException(status_code=500, detail="Signup failed") from exc
        return SignupResponse(success=True)

    @app.post("/api/book-metadata", response_model=BookMetadata, response_model_exclude_none=True)
    def book_metadata(payload: BookMetadataRequest, context: AppContext = Depends(get_context)) -> BookMetadata:
        try:
            return context.analyzer.get_cached_book_metadata(payload.title)
        except AnalysisError as exc:
            raise HTTPException(status_code=502, detail="Failed to fetch book metadata") from exc

    @app.post("/api/book-details", response_model=BookDetails)
    def book_details(payload: BookDetailsRequest, context: AppContext = Depends(get_context)) -> BookDetails:
        try:
            return context.analyzer.get_book_details(payload.text)
        except AnalysisError as exc:
            logger.warning(f"Book details lookup failed: {exc}")
            raise HTTPException(status_code=502, detail="Failed to fetch book details") from exc

    @app.get("/api/diagnostics/connections", response_model=ConnectionReport)
    def test_connections(context: AppContext = Depends(get_context)) -> ConnectionReport:
        try:
            context.store.ping()
            database = ConnectionCheck(success=True)
        except StoreError as exc:
            database = ConnectionCheck(success=False, error=str(exc))

        try:
            context.analyzer.check_connection()
            completion = ConnectionCheck(success=True)
        except AnalysisError as exc:
            completion = ConnectionCheck(success=False, error=str(exc))

        return ConnectionReport(
            database=database,
            openai=completion,
            env={
                "has_openai_api_key": bool(context.settings.openai.api_key),
                "has_database_path": bool(str(context.settings.database.path)),
            },
        )


def create_app(settings: Optional[Settings] = None, context: Optional[AppContext] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        settings: Settings to use; loaded from defaults and the environment if omitted
        context: Pre-built context, for callers that supply their own analyzer
    """
    if context is None:
        context = AppContext.build(settings or load_settings())
    settings = context.settings

    logging.getLogger("greenlight_backend").setLevel(settings.server.log_level.upper())

    app = FastAPI(title="Greenlight API", version="0.1.0", lifespan=lifespan)
    app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_error_handlers(app)
    _register_routes(app)
    return app


app = create_app()
