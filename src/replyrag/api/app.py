"""FastAPI application exposing the replyrag engine."""

from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from replyrag.api.schemas import (
    AnswerRequestModel,
    BatchAnswerRequestModel,
    ContentItemIndexRequest,
    DocumentIngestionRequest,
    EnvelopeModel,
    PoolBuildRequest,
    RetrieveRequest,
)
from replyrag.config import Settings, get_settings
from replyrag.metrics.observability import bind_correlation_id, clear_correlation_id, configure_logging, get_logger
from replyrag.models import OperationResult
from replyrag.services.engine import RetrievalEngine, build_engine

STATUS_BY_KIND = {
    "validation": status.HTTP_400_BAD_REQUEST,
    "not_found": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
    "answer_format": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "dependency": status.HTTP_503_SERVICE_UNAVAILABLE,
    "not_ready": status.HTTP_503_SERVICE_UNAVAILABLE,
    "internal": status.HTTP_500_INTERNAL_SERVER_ERROR,
}

_FLAG_FIELDS = {"include_transcripts", "include_catalog", "include_comments", "temperature"}


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", None) or uuid4().hex


def envelope_response(request: Request, result: OperationResult, success_status: int = status.HTTP_200_OK) -> JSONResponse:
    content = result.to_dict()
    content["correlation_id"] = _correlation_id(request)
    if result.success:
        return JSONResponse(status_code=success_status, content=content)
    kind = result.error.kind if result.error else "internal"
    return JSONResponse(status_code=STATUS_BY_KIND.get(kind, 500), content=content)


def create_app(*, settings: Settings | None = None, engine: RetrievalEngine | None = None) -> FastAPI:
    settings = settings or get_settings()
    engine = engine or build_engine(settings)

    configure_logging()
    logger = get_logger("api")
    app = FastAPI(title="replyrag API", version="0.1.0")
    app.state.engine = engine

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    def require_api_key(request: Request) -> None:
        expected = settings.api_key
        if not expected:
            return
        provided = request.headers.get("X-API-Key")
        if provided != expected:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        return envelope_response(request, OperationResult.fail("validation", problems))

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        correlation_id = _correlation_id(request)
        logger.error("unhandled.error", correlation_id=correlation_id, detail=str(exc))
        return envelope_response(request, OperationResult.fail("internal", "Internal Server Error"))

    def get_engine(request: Request) -> RetrievalEngine:
        return request.app.state.engine

    @app.post("/documents/{source_type}", response_model=EnvelopeModel, dependencies=[Depends(require_api_key)])
    def ingest_documents(
        source_type: str,
        payload: DocumentIngestionRequest,
        request: Request,
        engine: RetrievalEngine = Depends(get_engine),
    ) -> JSONResponse:
        if payload.items is not None:
            result = engine.ingest_documents(source_type, payload.items, overwrite=payload.overwrite)
        else:
            result = engine.ingest_document(source_type, payload.payload or {}, overwrite=payload.overwrite)
        return envelope_response(request, result, status.HTTP_201_CREATED)

    @app.delete(
        "/documents/{source_type}/{source_id}",
        response_model=EnvelopeModel,
        dependencies=[Depends(require_api_key)],
    )
    def delete_document(
        source_type: str,
        source_id: str,
        request: Request,
        engine: RetrievalEngine = Depends(get_engine),
    ) -> JSONResponse:
        return envelope_response(request, engine.delete_document(source_type, source_id))

    @app.post(
        "/content-items/{content_item_id}/index",
        response_model=EnvelopeModel,
        dependencies=[Depends(require_api_key)],
    )
    def index_content_item(
        content_item_id: str,
        payload: ContentItemIndexRequest,
        request: Request,
        engine: RetrievalEngine = Depends(get_engine),
    ) -> JSONResponse:
        body: dict[str, Any] = payload.model_dump(exclude={"overwrite"})
        body["content_item_id"] = content_item_id
        return envelope_response(request, engine.index_content_item(body, overwrite=payload.overwrite))

    @app.get("/content-items/{content_item_id}/status", response_model=EnvelopeModel)
    def content_item_status(
        content_item_id: str,
        request: Request,
        engine: RetrievalEngine = Depends(get_engine),
    ) -> JSONResponse:
        return envelope_response(request, engine.content_item_status(content_item_id))

    @app.post("/retrieve", response_model=EnvelopeModel, dependencies=[Depends(require_api_key)])
    def retrieve(
        payload: RetrieveRequest,
        request: Request,
        engine: RetrievalEngine = Depends(get_engine),
    ) -> JSONResponse:
        filters = payload.model_dump(exclude={"query"}, exclude_none=True)
        return envelope_response(request, engine.retrieve(payload.query, filters))

    @app.post("/pools", response_model=EnvelopeModel, dependencies=[Depends(require_api_key)])
    def build_all_pools(
        request: Request,
        payload: PoolBuildRequest | None = None,
        engine: RetrievalEngine = Depends(get_engine),
    ) -> JSONResponse:
        options = (payload or PoolBuildRequest()).model_dump(exclude_none=True)
        return envelope_response(request, engine.build_all_pools(options))

    @app.post("/pools/{content_item_id}", response_model=EnvelopeModel, dependencies=[Depends(require_api_key)])
    def build_pool(
        content_item_id: str,
        request: Request,
        payload: PoolBuildRequest | None = None,
        engine: RetrievalEngine = Depends(get_engine),
    ) -> JSONResponse:
        options = (payload or PoolBuildRequest()).model_dump(exclude_none=True)
        return envelope_response(request, engine.build_pool(content_item_id, options))

    @app.get("/pools/{content_item_id}", response_model=EnvelopeModel)
    def pool_stats(
        content_item_id: str,
        request: Request,
        top_k: int | None = None,
        engine: RetrievalEngine = Depends(get_engine),
    ) -> JSONResponse:
        return envelope_response(request, engine.pool_stats(content_item_id, top_k=top_k))

    @app.post("/answer", response_model=EnvelopeModel, dependencies=[Depends(require_api_key)])
    def answer(
        payload: AnswerRequestModel,
        request: Request,
        engine: RetrievalEngine = Depends(get_engine),
    ) -> JSONResponse:
        flags = payload.model_dump(include=_FLAG_FIELDS | {"query_id"}, exclude_none=True)
        return envelope_response(request, engine.answer(payload.query, payload.content_item_id, flags))

    @app.post("/answer/batch", response_model=EnvelopeModel, dependencies=[Depends(require_api_key)])
    def answer_batch(
        payload: BatchAnswerRequestModel,
        request: Request,
        engine: RetrievalEngine = Depends(get_engine),
    ) -> JSONResponse:
        flags = payload.model_dump(include=_FLAG_FIELDS, exclude_none=True)
        queries = [query.model_dump() for query in payload.queries]
        return envelope_response(request, engine.batch_answer(payload.content_item_id, queries, flags))

    @app.get("/stats", response_model=EnvelopeModel)
    def stats(request: Request, engine: RetrievalEngine = Depends(get_engine)) -> JSONResponse:
        return envelope_response(request, engine.stats())

    @app.get("/metrics")
    async def metrics() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    def healthcheck(request: Request, engine: RetrievalEngine = Depends(get_engine)) -> JSONResponse:
        result = engine.health()
        if result.success:
            result.data["environment"] = settings.environment
        return envelope_response(request, result)

    @app.get("/livez")
    async def liveness() -> dict[str, str]:
        return {"status": "alive"}

    return app


app = create_app()
