"""
Juris RAG - Hybrid Retrieval for Mexican Case Law

This module provides the retrieval engine behind legal question answering:
- Ingesting tesis and precedentes from the scraper exports
- Structure-aware segmentation into exact-offset fragments
- Per-family hybrid search (pgvector + Spanish full-text)
- Hierarchy-aware ranking and formal citations

The answer-generation layer consumes HybridRetriever results; it is not
part of this package.
"""

__version__ = "0.1.0"

from .documents import DocumentFamily, LegalDocument, load_documents
from .chunker import LegalChunker
from .embeddings import get_embedding_service
from .vector_store import VectorStore
from .retriever import HybridRetriever, RetrievalConfig
from .ingestion import IngestionPipeline
from .citation import Citation

__all__ = [
    "DocumentFamily",
    "LegalDocument",
    "load_documents",
    "LegalChunker",
    "get_embedding_service",
    "VectorStore",
    "HybridRetriever",
    "RetrievalConfig",
    "IngestionPipeline",
    "Citation",
]
