"""
Hybrid Retriever for Mexican Case Law

Queries opinions (tesis) and precedents concurrently through the index
store's hybrid search, keeps the best fragment per document, and orders the
survivors by legal hierarchy before relevance, filling per-family and
combined quotas.

Pipeline:
    1. Embed the query once
    2. Hybrid search per family, in parallel
    3. Similarity floor + per-document deduplication
    4. Flexible limits (quality threshold, hierarchy order, quotas)
       or legacy per-family truncation
    5. Optional offset/limit over the relevance-sorted union
    6. Batch-load the full documents for the final items
"""

import time
import logging
from typing import Optional
from dataclasses import dataclass, field
from concurrent.futures import ThreadPoolExecutor, as_completed

from .chunker import Fragment
from .documents import DocumentFamily, LegalDocument
from .embeddings import BaseEmbeddingService, get_embedding_service
from .errors import ErrorCategory, JurisRagError, QueryValidationError, RetrievalError
from .hierarchy import HierarchyInfo, document_hierarchy, hierarchy_for, hierarchy_sort_key
from .vector_store import HybridSearchResult, VectorStore, VectorStoreConfig

logger = logging.getLogger(__name__)


@dataclass
class RetrievalConfig:
    """Configuration for a retrieval call."""
    max_results: int = 100          # Candidates fetched per family
    final_limit: int = 10           # Per-family cap when flexible limits are off
    min_similarity: float = 0.2
    vector_weight: float = 0.8
    text_weight: float = 0.2
    deduplicate: bool = True
    include_precedents: bool = True
    # Flexible limits: hierarchy-ordered quotas over quality results
    use_flexible_limits: bool = True
    max_opinions: int = 8
    max_precedents: int = 8
    max_total_results: int = 10
    quality_threshold: float = 0.60
    # Pagination over the final relevance-sorted union
    offset: int = 0
    limit: Optional[int] = None
    min_query_length: int = 3

    def validate(self) -> None:
        if self.max_results < 1 or self.final_limit < 1:
            raise QueryValidationError("max_results and final_limit must be positive")
        if self.offset < 0 or (self.limit is not None and self.limit < 0):
            raise QueryValidationError("offset and limit must not be negative")
        if self.vector_weight < 0 or self.text_weight < 0 or (
            self.vector_weight + self.text_weight <= 0
        ):
            raise QueryValidationError("Search weights must be non-negative and not both zero")


@dataclass
class RetrievedItem:
    """A document with its best-matching fragment for one query."""
    document: LegalDocument
    fragment: Fragment
    vector_score: Optional[float]
    text_score: Optional[float]
    relevance_score: float
    hierarchy: HierarchyInfo

    @property
    def document_id(self) -> str:
        return self.document.document_id

    @property
    def family(self) -> DocumentFamily:
        return self.document.family

    def to_dict(self) -> dict:
        return {
            "document": self.document.to_dict(),
            "fragment": self.fragment.to_dict(),
            "vector_score": self.vector_score,
            "text_score": self.text_score,
            "relevance_score": self.relevance_score,
            "hierarchy": self.hierarchy.to_dict(),
        }


@dataclass
class RetrievalResult:
    """Ranked items per family. Empty lists mean no evidence, not failure."""
    opinions: list[RetrievedItem] = field(default_factory=list)
    precedents: list[RetrievedItem] = field(default_factory=list)
    latency_ms: float = 0.0

    @property
    def is_empty(self) -> bool:
        return not self.opinions and not self.precedents

    def all_items(self) -> list[RetrievedItem]:
        return self.opinions + self.precedents

    def to_dict(self) -> dict:
        return {
            "opinions": [item.to_dict() for item in self.opinions],
            "precedents": [item.to_dict() for item in self.precedents],
            "latency_ms": self.latency_ms,
        }


@dataclass
class _Candidate:
    """A fused hit plus the hierarchy weights read from its joined metadata."""
    hit: HybridSearchResult
    hierarchy: HierarchyInfo

    @property
    def family(self) -> DocumentFamily:
        return self.hit.family

    @property
    def relevance_score(self) -> float:
        return self.hit.combined_score


class HybridRetriever:
    """
    Retrieval orchestrator over both document families.

    Stateless between calls: the store and embedding service are injected
    and every call builds its own results.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        embedding_service: BaseEmbeddingService,
        config: Optional[RetrievalConfig] = None,
    ):
        self.store = vector_store
        self.embeddings = embedding_service
        self.config = config or RetrievalConfig()

    # =========================================================================
    # Public API
    # =========================================================================

    def retrieve(self, query: str, config: Optional[RetrievalConfig] = None) -> RetrievalResult:
        """
        Find the most authoritative relevant documents for a query.

        Args:
            query: Free-text question or search terms.
            config: Per-call configuration; defaults to the retriever's.

        Returns:
            RetrievalResult with opinions and precedents.

        Raises:
            QueryValidationError: query too short or invalid configuration.
            RetrievalError: embedding or search failed. Partial results
                are never returned when one family fails.
        """
        cfg = config or self.config
        cfg.validate()
        text = (query or "").strip()
        if len(text) < cfg.min_query_length:
            raise QueryValidationError(
                f"Query must be at least {cfg.min_query_length} characters long"
            )

        start = time.time()
        try:
            query_embedding = self.embeddings.embed_query(text)
        except JurisRagError as e:
            logger.error(f"Query embedding failed ({e.category.value}): {e.message}")
            raise RetrievalError("Could not embed the query", e.category) from e

        families = [DocumentFamily.OPINIONS]
        if cfg.include_precedents:
            families.append(DocumentFamily.PRECEDENTS)

        hits = self._search_families(families, query_embedding, text, cfg)
        candidates = {
            family: self._candidates(family, hits[family], cfg) for family in families
        }

        if not any(candidates.values()):
            logger.info(f"No results above {cfg.min_similarity} for query ({len(text)} chars)")
            return RetrievalResult(latency_ms=(time.time() - start) * 1000)

        if cfg.use_flexible_limits:
            selected = self._apply_flexible_limits(candidates, cfg)
        else:
            selected = {
                family: items[:cfg.final_limit] for family, items in candidates.items()
            }

        selected = self._paginate(selected, cfg)
        result = self._materialize(selected)
        result.latency_ms = (time.time() - start) * 1000

        logger.info(
            f"Retrieved {len(result.opinions)} opinions and {len(result.precedents)} "
            f"precedents in {result.latency_ms:.0f}ms"
        )
        return result

    def lookup_by_id(self, document_id: str, family) -> Optional[LegalDocument]:
        """
        Fetch one document by identifier.

        Returns:
            The document, or None when it does not exist.
        """
        if not document_id or not str(document_id).strip():
            raise QueryValidationError("Document identifier is required")
        family = DocumentFamily.parse(family)
        return self.store.get_document(family, str(document_id).strip())

    # =========================================================================
    # Stages
    # =========================================================================

    def _search_families(
        self,
        families: list[DocumentFamily],
        query_embedding: list[float],
        query_text: str,
        cfg: RetrievalConfig,
    ) -> dict[DocumentFamily, list[HybridSearchResult]]:
        """Hybrid search every family concurrently; any failure fails the call."""
        results: dict[DocumentFamily, list[HybridSearchResult]] = {}
        failures: dict[DocumentFamily, Exception] = {}

        with ThreadPoolExecutor(max_workers=len(families)) as executor:
            future_map = {
                executor.submit(
                    self.store.hybrid_search,
                    family,
                    query_embedding,
                    query_text,
                    top_k=cfg.max_results,
                    vector_weight=cfg.vector_weight,
                    text_weight=cfg.text_weight,
                ): family
                for family in families
            }
            for future in as_completed(future_map):
                family = future_map[future]
                try:
                    results[family] = future.result()
                except Exception as e:
                    logger.error(f"Hybrid search failed for {family.value}: {e}")
                    failures[family] = e

        if failures:
            family, exc = next(iter(failures.items()))
            category = exc.category if isinstance(exc, JurisRagError) else ErrorCategory.UNKNOWN
            failed = ", ".join(f.value for f in failures)
            raise RetrievalError(f"Search failed for {failed}", category) from exc

        return results

    def _candidates(
        self,
        family: DocumentFamily,
        hits: list[HybridSearchResult],
        cfg: RetrievalConfig,
    ) -> list[_Candidate]:
        """Apply the similarity floor and keep the best fragment per document."""
        kept: dict[str, HybridSearchResult] = {}
        ordered: list[HybridSearchResult] = []
        for hit in hits:
            if hit.combined_score < cfg.min_similarity:
                continue
            if not cfg.deduplicate:
                ordered.append(hit)
                continue
            best = kept.get(hit.document_id)
            if best is None or hit.combined_score > best.combined_score:
                kept[hit.document_id] = hit
        if cfg.deduplicate:
            ordered = list(kept.values())

        ordered.sort(key=lambda h: h.combined_score, reverse=True)
        candidates = []
        for hit in ordered:
            meta = hit.result.metadata
            candidates.append(_Candidate(
                hit=hit,
                hierarchy=hierarchy_for(
                    family,
                    document_kind=meta.get("document_kind") or "",
                    issuing_body=meta.get("issuing_body") or "",
                    era=meta.get("era") or "",
                ),
            ))
        return candidates

    def _apply_flexible_limits(
        self,
        candidates: dict[DocumentFamily, list[_Candidate]],
        cfg: RetrievalConfig,
    ) -> dict[DocumentFamily, list[_Candidate]]:
        """Quality threshold, hierarchy-then-relevance order, greedy quotas."""
        quotas = {
            DocumentFamily.OPINIONS: cfg.max_opinions,
            DocumentFamily.PRECEDENTS: cfg.max_precedents,
        }
        pool = [
            candidate
            for items in candidates.values()
            for candidate in items
            if candidate.relevance_score >= cfg.quality_threshold
        ]
        pool.sort(key=hierarchy_sort_key)

        selected: dict[DocumentFamily, list[_Candidate]] = {family: [] for family in candidates}
        total = 0
        for candidate in pool:
            if total >= cfg.max_total_results:
                break
            if len(selected[candidate.family]) >= quotas[candidate.family]:
                continue
            selected[candidate.family].append(candidate)
            total += 1

        logger.debug(
            f"Flexible limits: {len(pool)} above {cfg.quality_threshold}, "
            f"selected {total}"
        )
        return selected

    def _paginate(
        self,
        selected: dict[DocumentFamily, list[_Candidate]],
        cfg: RetrievalConfig,
    ) -> dict[DocumentFamily, list[_Candidate]]:
        """Slice the relevance-sorted union and split it back per family."""
        if cfg.limit is None and cfg.offset == 0:
            return selected

        flat = [candidate for items in selected.values() for candidate in items]
        flat.sort(key=lambda c: c.relevance_score, reverse=True)
        end = None if cfg.limit is None else cfg.offset + cfg.limit
        page = flat[cfg.offset:end]

        paged: dict[DocumentFamily, list[_Candidate]] = {family: [] for family in selected}
        for candidate in page:
            paged[candidate.family].append(candidate)
        return paged

    def _materialize(self, selected: dict[DocumentFamily, list[_Candidate]]) -> RetrievalResult:
        """Load the full documents and build the final items in order."""
        result = RetrievalResult()
        for family, items in selected.items():
            if not items:
                continue
            try:
                documents = self.store.get_documents(family, [c.hit.document_id for c in items])
            except JurisRagError as e:
                raise RetrievalError(f"Could not load {family.value} documents", e.category) from e

            built = []
            for candidate in items:
                document = documents.get(candidate.hit.document_id)
                if document is None:
                    logger.warning(
                        f"{family.value}/{candidate.hit.document_id} matched but is missing"
                    )
                    continue
                built.append(RetrievedItem(
                    document=document,
                    fragment=candidate.hit.result.to_fragment(),
                    vector_score=candidate.hit.vector_score,
                    text_score=candidate.hit.text_score,
                    relevance_score=candidate.relevance_score,
                    hierarchy=document_hierarchy(document),
                ))

            if family is DocumentFamily.OPINIONS:
                result.opinions = built
            else:
                result.precedents = built
        return result


def get_retriever(
    vector_store: Optional[VectorStore] = None,
    embedding_service: Optional[BaseEmbeddingService] = None,
    config: Optional[RetrievalConfig] = None,
) -> HybridRetriever:
    """
    Get configured retriever instance.

    Args:
        vector_store: Store instance; a new one reads DATABASE_URL when
            omitted.
        embedding_service: Embedding service; EMBEDDING_PROVIDER when omitted.
        config: Default retrieval configuration.

    Returns:
        Configured HybridRetriever instance
    """
    embedding_service = embedding_service or get_embedding_service()
    if vector_store is None:
        # Stored vectors must match the provider's dimension
        vector_store = VectorStore(
            VectorStoreConfig(embedding_dimensions=embedding_service.dimensions)
        )
    return HybridRetriever(vector_store, embedding_service, config)


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    from .citation import format_short_citation

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    retriever = get_retriever()
    query = " ".join(sys.argv[1:]) or "suspensión del acto reclamado en amparo indirecto"
    print(f"Query: {query}")

    result = retriever.retrieve(query)
    for label, items in (("Tesis", result.opinions), ("Precedentes", result.precedents)):
        print(f"\n{label} ({len(items)}):")
        for item in items:
            print(
                f"  [{item.hierarchy.level}] {item.relevance_score:.3f} "
                f"{format_short_citation(item.document)}"
            )
    retriever.store.close()
