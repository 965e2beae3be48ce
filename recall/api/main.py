"""
HTTP surface for the engine: content ingestion, search, autocomplete,
cache statistics, maintenance triggers and tag classification.
"""

from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from .schemas import (
    BackfillRequest,
    CacheStatsResponse,
    ClassifyRequest,
    ClassifyResponse,
    ContentRequest,
    ContentResponse,
    DedupRequest,
    DeleteResponse,
    HealthResponse,
    MaintenanceRunResponse,
    OrphanCleanupRequest,
    SearchRequest,
    SearchResponseModel,
    SearchResultModel,
    SuggestResponse,
    TagMatchModel,
    WarmupRequest,
    WarmupResponse,
)
from ..core.config import VERSION, debug_enabled, validate_settings
from ..core.engine import Engine
from ..core.errors import MaintenanceError, ValidationError
from ..core.models import ContentItem, MaintenanceRun, SearchFilters
from ..core.tagging import classify, primary_category
from util.logging import logger


def get_engine(request: Request) -> Engine:
    """Dependency returning the engine created in the app lifespan."""
    return request.app.state.engine


def create_app(engine: Engine = None) -> FastAPI:
    """Build the FastAPI application. An engine passed in is used instead of one built from settings."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.engine = engine or Engine.from_settings()
        try:
            yield
        finally:
            app.state.engine.close()

    app = FastAPI(
        title="Recall API",
        version=VERSION,
        description="Semantic search and knowledge maintenance engine",
        docs_url="/docs" if debug_enabled() else None,
        redoc_url="/redoc" if debug_enabled() else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(MaintenanceError)
    async def maintenance_error_handler(request: Request, exc: MaintenanceError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.get("/health", response_model=HealthResponse)
    def health_check_endpoint(engine: Engine = Depends(get_engine)):
        """Check system health."""
        issues = validate_settings(engine.settings)
        return HealthResponse(
            status="healthy" if not issues else "degraded",
            version=VERSION,
            model_version=engine.pipeline.model_version,
            content_counts=engine.content_store.count_by_status(),
            vector_records=len(engine.vector_store.list_records()),
            config_issues=issues,
        )

    @app.post("/content", response_model=ContentResponse)
    def add_content(req: ContentRequest, engine: Engine = Depends(get_engine)):
        item = ContentItem(
            id=req.id,
            scope_id=req.scope_id,
            type=req.type,
            text=req.text,
            details=req.metadata,
            created_at=req.created_at,
        )
        result = engine.add_content(item, embed=req.embed, timeout=req.timeout_sec)
        if result is None:
            return ContentResponse(id=item.id, status=item.embedding_status.value)
        return ContentResponse(
            id=result.item_id,
            status=result.status.value,
            chunks=result.chunks,
            cache_hits=result.cache_hits,
            reason=result.reason,
            timed_out=result.timed_out,
        )

    @app.delete("/content/{item_id}", response_model=DeleteResponse)
    def delete_content(item_id: str, engine: Engine = Depends(get_engine)):
        if not engine.delete_content(item_id):
            raise HTTPException(status_code=404, detail=f"Content '{item_id}' not found")
        return DeleteResponse(success=True, id=item_id)

    @app.post("/search", response_model=SearchResponseModel)
    def search(req: SearchRequest, engine: Engine = Depends(get_engine)):
        filters = SearchFilters(
            types=req.types,
            scope=req.scope,
            date_from=req.date_from,
            date_to=req.date_to,
            project_id=req.project_id,
        )
        response = engine.search(req.query, filters, limit=req.limit, min_similarity=req.min_similarity,
                                 boosts=req.boosts)
        return SearchResponseModel(
            query=req.query,
            results=[
                SearchResultModel(
                    content_id=r.content_id,
                    type=r.type.value,
                    score=r.score,
                    snippet=r.snippet,
                    metadata=r.metadata,
                    created_at=r.created_at,
                )
                for r in response.results
            ],
            diagnostics=response.diagnostics,
        )

    @app.get("/suggest", response_model=SuggestResponse)
    def suggest(q: str = Query(""), scope: str = Query(None), limit: int = Query(8, ge=1, le=50),
                engine: Engine = Depends(get_engine)):
        return SuggestResponse(suggestions=engine.suggest(q, scope=scope, limit=limit))

    @app.get("/cache/stats", response_model=CacheStatsResponse)
    def cache_stats(engine: Engine = Depends(get_engine)):
        return CacheStatsResponse(**engine.cache.stats())

    @app.post("/cache/warmup", response_model=WarmupResponse)
    def warmup_cache(req: WarmupRequest, engine: Engine = Depends(get_engine)):
        embedded = engine.warmup(req.texts)
        return WarmupResponse(requested=len(req.texts), embedded=embedded, cache_size=len(engine.cache))

    @app.post("/maintenance/backfill", response_model=MaintenanceRunResponse)
    def run_backfill(req: BackfillRequest, engine: Engine = Depends(get_engine)):
        run = engine.maintenance.run_backfill(
            content_type=req.type,
            scope=req.scope,
            batch_size=req.batch_size,
            dry_run=req.dry_run,
            limit=req.limit,
        )
        return _run_response(run)

    @app.post("/maintenance/dedup", response_model=MaintenanceRunResponse)
    def run_dedup(req: DedupRequest, engine: Engine = Depends(get_engine)):
        run = engine.maintenance.run_dedup_scan(req.type, scope=req.scope, threshold=req.threshold)
        return _run_response(run)

    @app.post("/maintenance/orphans", response_model=MaintenanceRunResponse)
    def run_orphan_cleanup(req: OrphanCleanupRequest = None, engine: Engine = Depends(get_engine)):
        run = engine.maintenance.run_orphan_cleanup(dry_run=bool(req and req.dry_run))
        return _run_response(run)

    @app.post("/tags/classify", response_model=ClassifyResponse)
    def classify_text(req: ClassifyRequest):
        matches = classify(req.text)
        return ClassifyResponse(
            primary_category=primary_category(req.text),
            matches=[TagMatchModel(category=m.category, confidence=m.confidence,
                                   matched_keywords=m.matched_keywords) for m in matches],
        )

    return app


def _run_response(run: MaintenanceRun) -> MaintenanceRunResponse:
    data = run.to_dict()
    data["started_at"] = run.started_at
    data["completed_at"] = run.completed_at or datetime.now()
    logger.log_operation("api.maintenance", "success", {"run_id": run.run_id, "operation": run.operation})
    return MaintenanceRunResponse(**data)


app = create_app()
