"""
Pydantic models for the retrieval HTTP API.
"""

from typing import Optional
from pydantic import BaseModel, Field


class SearchRequest(BaseModel):
    """Request body for the search endpoint."""
    query: str = Field(..., min_length=1, max_length=2000)
    include_precedents: bool = True
    flexible_limits: bool = True
    offset: int = Field(default=0, ge=0)
    limit: Optional[int] = Field(default=None, ge=1, le=50)
    min_similarity: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class HierarchyOut(BaseModel):
    level: int
    kind_weight: int
    issuer_weight: int
    era_weight: int
    is_binding: bool


class ResultItem(BaseModel):
    """One retrieved document with its best fragment and citations."""
    document_id: str
    family: str
    title: str
    document_kind: str = ""
    issuing_body: str = ""
    era: str = ""
    source_url: str = ""
    fragment: str
    fragment_type: str
    relevance_score: float
    vector_score: Optional[float] = None
    text_score: Optional[float] = None
    hierarchy: HierarchyOut
    short_citation: str
    long_citation: str


class SearchResponse(BaseModel):
    """Response body for the search endpoint."""
    opinions: list[ResultItem]
    precedents: list[ResultItem]
    total: int
    latency_ms: float


class DocumentResponse(BaseModel):
    """Full document returned by the lookup endpoint."""
    document_id: str
    family: str
    title: str
    abstract: str = ""
    body: str = ""
    issuing_body: str = ""
    document_kind: str = ""
    era: str = ""
    subjects: str = ""
    publication_date: str = ""
    source_url: str = ""
    locator: str = ""
    extra: dict = {}
    short_citation: str
    long_citation: str


class IngestionStatusResponse(BaseModel):
    """Per-family index counters."""
    family: str
    documents: int
    fragments: int
    embedded_fragments: int
    pending_fragments: int
    degraded_fragments: int
    embedded_documents: int


class ErrorResponse(BaseModel):
    """Body of every non-2xx response raised by the engine."""
    error: str
    detail: str


class HealthResponse(BaseModel):
    """Response body for health check."""
    status: str
    version: str
    database: str
