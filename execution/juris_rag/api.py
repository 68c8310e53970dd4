"""
FastAPI boundary for the retrieval engine.

Turns engine outcomes into HTTP semantics: an empty result is a 200 with
empty lists, an infrastructure failure is a 503 carrying the error category,
and invalid input is a 422. Answer generation consumes /search.

Run with: uvicorn execution.juris_rag.api:app --host 0.0.0.0 --port 8000
"""

import os
import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

from . import __version__
from .api_models import (
    DocumentResponse,
    ErrorResponse,
    HealthResponse,
    HierarchyOut,
    IngestionStatusResponse,
    ResultItem,
    SearchRequest,
    SearchResponse,
)
from .citation import format_formal_citation, format_short_citation
from .documents import DocumentFamily
from .errors import JurisRagError, QueryValidationError
from .retriever import HybridRetriever, RetrievalConfig, RetrievedItem, get_retriever

load_dotenv()
logger = logging.getLogger(__name__)


def _item_out(item: RetrievedItem) -> ResultItem:
    document = item.document
    return ResultItem(
        document_id=document.document_id,
        family=document.family.value,
        title=document.title,
        document_kind=document.document_kind,
        issuing_body=document.issuing_body,
        era=document.era,
        source_url=document.source_url,
        fragment=item.fragment.text,
        fragment_type=item.fragment.role.value,
        relevance_score=item.relevance_score,
        vector_score=item.vector_score,
        text_score=item.text_score,
        hierarchy=HierarchyOut(**item.hierarchy.to_dict()),
        short_citation=format_short_citation(document),
        long_citation=format_formal_citation(document),
    )


def create_app(retriever: Optional[HybridRetriever] = None) -> FastAPI:
    """
    Build the API around an injected retriever.

    Args:
        retriever: Shared retriever. Built from the environment on first
            request when omitted.
    """
    app = FastAPI(
        title="Jurisprudence Retrieval API",
        description="Hybrid retrieval over SCJN tesis and precedentes",
        version=__version__,
    )
    app.state.retriever = retriever

    cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in cors_origins],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_app_retriever(request: Request) -> HybridRetriever:
        if request.app.state.retriever is None:
            request.app.state.retriever = get_retriever()
        return request.app.state.retriever

    @app.exception_handler(QueryValidationError)
    async def validation_error_handler(request: Request, exc: QueryValidationError):
        return JSONResponse(status_code=422, content=exc.to_dict())

    @app.exception_handler(JurisRagError)
    async def engine_error_handler(request: Request, exc: JurisRagError):
        logger.error(f"{request.url.path} failed ({exc.category.value}): {exc.message}")
        return JSONResponse(status_code=503, content=exc.to_dict())

    @app.get("/api/v1/health", response_model=HealthResponse)
    def health_check(retriever: HybridRetriever = Depends(get_app_retriever)):
        """Health check endpoint."""
        connected = retriever.store.ping()
        return HealthResponse(
            status="ok" if connected else "degraded",
            version=__version__,
            database="connected" if connected else "unavailable",
        )

    @app.post(
        "/api/v1/search",
        response_model=SearchResponse,
        responses={422: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    )
    def search(request: SearchRequest, retriever: HybridRetriever = Depends(get_app_retriever)):
        """Ranked tesis and precedentes for a query."""
        base = retriever.config
        config = RetrievalConfig(
            max_results=base.max_results,
            final_limit=base.final_limit,
            min_similarity=(
                request.min_similarity if request.min_similarity is not None else base.min_similarity
            ),
            vector_weight=base.vector_weight,
            text_weight=base.text_weight,
            deduplicate=base.deduplicate,
            include_precedents=request.include_precedents,
            use_flexible_limits=request.flexible_limits,
            max_opinions=base.max_opinions,
            max_precedents=base.max_precedents,
            max_total_results=base.max_total_results,
            quality_threshold=base.quality_threshold,
            offset=request.offset,
            limit=request.limit,
            min_query_length=base.min_query_length,
        )
        result = retriever.retrieve(request.query, config)
        opinions = [_item_out(item) for item in result.opinions]
        precedents = [_item_out(item) for item in result.precedents]
        return SearchResponse(
            opinions=opinions,
            precedents=precedents,
            total=len(opinions) + len(precedents),
            latency_ms=result.latency_ms,
        )

    @app.get(
        "/api/v1/documents/{family}/{document_id}",
        response_model=DocumentResponse,
        responses={404: {"model": ErrorResponse}},
    )
    def get_document(
        family: str,
        document_id: str,
        retriever: HybridRetriever = Depends(get_app_retriever),
    ):
        """Full text and citations of one document."""
        document = retriever.lookup_by_id(document_id, DocumentFamily.parse(family))
        if document is None:
            raise HTTPException(status_code=404, detail="Document not found")
        data = document.to_dict()
        data.pop("body_full")
        data["body"] = document.main_body
        return DocumentResponse(
            **data,
            short_citation=format_short_citation(document),
            long_citation=format_formal_citation(document),
        )

    @app.get("/api/v1/ingestion/status", response_model=list[IngestionStatusResponse])
    def ingestion_status(retriever: HybridRetriever = Depends(get_app_retriever)):
        """Index counters for both families."""
        return [
            IngestionStatusResponse(**retriever.store.ingestion_status(family))
            for family in DocumentFamily
        ]

    return app


app = create_app()
