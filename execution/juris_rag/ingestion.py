"""
Batch ingestion of tesis and precedentes into the index store.

For every document: upsert the row, segment it, embed all fragments in one
batched call, and store each fragment with its vector. Documents run
sequentially inside fixed-size batches with short pauses so neither the
database nor the embedding provider is flooded. One document's failure is
recorded in the run statistics and the batch moves on.

Resuming an interrupted run: pass ``skip_existing=True`` (or call
``filter_pending``) to skip documents that already have embedded fragments.
``filter_degraded`` selects documents stored with hash-fallback vectors so
they can be ingested again once the provider is healthy.
"""

import time
import logging
from datetime import datetime, timezone
from typing import Iterable, Optional
from dataclasses import dataclass, field

from .chunker import LegalChunker
from .documents import DocumentFamily, LegalDocument
from .embeddings import BaseEmbeddingService
from .errors import (
    DataIntegrityError,
    EmbeddingError,
    ErrorCategory,
    IngestionError,
    JurisRagError,
    QueryValidationError,
)
from .retry import RetryPolicy, is_transient_ingestion_error, retry_with_backoff
from .vector_store import VectorStore

logger = logging.getLogger(__name__)


@dataclass
class IngestionConfig:
    """Configuration for an ingestion run."""
    batch_size: int = 10
    embedding_batch_size: int = 50
    continue_on_error: bool = True
    log_progress: bool = True
    # Per-document retries on connection, timeout and auth-transient errors
    max_retries: int = 3
    retry_base_delay: float = 2.0
    retry_max_delay: float = 30.0
    document_pause: float = 0.1
    batch_pause: float = 0.5
    skip_existing: bool = False


@dataclass
class DocumentOutcome:
    """Result of ingesting one document."""
    document_id: str
    family: DocumentFamily
    success: bool
    fragments_created: int = 0
    fragments_failed: int = 0
    fragments_degraded: int = 0
    error: Optional[str] = None
    category: Optional[ErrorCategory] = None


@dataclass
class IngestionStats:
    """Counters for one ingestion run. Only ever increase during the run."""
    documents_attempted: int = 0
    documents_succeeded: int = 0
    documents_failed: int = 0
    documents_skipped: int = 0
    fragments_created: int = 0
    fragments_failed: int = 0
    fragments_degraded: int = 0
    errors: list[dict] = field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def start(self) -> None:
        self.start_time = datetime.now(timezone.utc)

    def finish(self) -> None:
        self.end_time = datetime.now(timezone.utc)

    @property
    def duration_seconds(self) -> float:
        if not self.start_time:
            return 0.0
        end = self.end_time or datetime.now(timezone.utc)
        return (end - self.start_time).total_seconds()

    @property
    def success_rate(self) -> float:
        if not self.documents_attempted:
            return 0.0
        return self.documents_succeeded / self.documents_attempted

    def record(self, outcome: DocumentOutcome) -> None:
        self.documents_attempted += 1
        if outcome.success:
            self.documents_succeeded += 1
        else:
            self.documents_failed += 1
            self.errors.append({
                "document_id": outcome.document_id,
                "family": outcome.family.value,
                "category": outcome.category.value if outcome.category else None,
                "error": outcome.error,
            })
        self.fragments_created += outcome.fragments_created
        self.fragments_failed += outcome.fragments_failed
        self.fragments_degraded += outcome.fragments_degraded

    def to_dict(self) -> dict:
        return {
            "documents_attempted": self.documents_attempted,
            "documents_succeeded": self.documents_succeeded,
            "documents_failed": self.documents_failed,
            "documents_skipped": self.documents_skipped,
            "fragments_created": self.fragments_created,
            "fragments_failed": self.fragments_failed,
            "fragments_degraded": self.fragments_degraded,
            "errors": list(self.errors),
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": round(self.duration_seconds, 3),
        }


class IngestionPipeline:
    """
    Segment, embed and store documents.

    The pipeline owns no connections; the store and embedding service are
    injected so a driver can share them with other work.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        embedding_service: BaseEmbeddingService,
        chunker: Optional[LegalChunker] = None,
        config: Optional[IngestionConfig] = None,
    ):
        self.store = vector_store
        self.embeddings = embedding_service
        self.chunker = chunker or LegalChunker()
        self.config = config or IngestionConfig()
        self._sleep = time.sleep

    def filter_pending(self, documents: Iterable[LegalDocument]) -> list[LegalDocument]:
        """Drop documents whose identifiers already have embedded fragments."""
        documents = list(documents)
        embedded: dict[DocumentFamily, set[str]] = {}
        for family in {d.family for d in documents}:
            embedded[family] = self.store.get_embedded_document_ids(family)

        pending = [
            d for d in documents
            if str(d.document_id) not in embedded[d.family]
        ]
        skipped = len(documents) - len(pending)
        if skipped:
            logger.info(f"Skipping {skipped} already embedded documents, {len(pending)} pending")
        return pending

    def filter_degraded(self, documents: Iterable[LegalDocument]) -> list[LegalDocument]:
        """Keep only documents holding hash-fallback vectors, for re-embedding."""
        documents = list(documents)
        degraded: dict[DocumentFamily, set[str]] = {}
        for family in {d.family for d in documents}:
            degraded[family] = self.store.get_degraded_document_ids(family)

        selected = [d for d in documents if str(d.document_id) in degraded[d.family]]
        logger.info(f"{len(selected)} of {len(documents)} documents have degraded vectors")
        return selected

    def ingest_batch(
        self,
        documents: Iterable[LegalDocument],
        config: Optional[IngestionConfig] = None,
    ) -> IngestionStats:
        """
        Ingest a set of documents.

        Args:
            documents: Opinions and/or precedents.
            config: Per-run configuration; defaults to the pipeline's.

        Returns:
            Statistics for the whole run.

        Raises:
            IngestionError: a document failed and ``continue_on_error`` is
                off. The partial statistics travel on the exception.
        """
        cfg = config or self.config
        stats = IngestionStats()
        stats.start()

        documents = list(documents)
        if cfg.skip_existing:
            pending = self.filter_pending(documents)
            stats.documents_skipped = len(documents) - len(pending)
            documents = pending

        batch_size = max(cfg.batch_size, 1)
        batches = [documents[i:i + batch_size] for i in range(0, len(documents), batch_size)]
        logger.info(f"Ingesting {len(documents)} documents in {len(batches)} batches")

        for batch_idx, batch in enumerate(batches):
            for doc_idx, document in enumerate(batch):
                if doc_idx > 0 and cfg.document_pause > 0:
                    self._sleep(cfg.document_pause)

                outcome = self.ingest_document(document, cfg)
                stats.record(outcome)

                if not outcome.success and not cfg.continue_on_error:
                    stats.finish()
                    raise IngestionError(
                        f"Ingestion stopped at {document.family.value}/{document.document_id}: "
                        f"{outcome.error}",
                        document_id=document.document_id,
                        category=outcome.category,
                        stats=stats,
                    )

            if cfg.log_progress:
                logger.info(
                    f"Batch {batch_idx + 1}/{len(batches)}: "
                    f"{stats.documents_succeeded} ok, {stats.documents_failed} failed, "
                    f"{stats.fragments_created} fragments"
                )
            if batch_idx < len(batches) - 1 and cfg.batch_pause > 0:
                self._sleep(cfg.batch_pause)

        stats.finish()
        logger.info(
            f"Ingestion finished in {stats.duration_seconds:.1f}s: "
            f"{stats.documents_succeeded}/{stats.documents_attempted} documents, "
            f"{stats.fragments_created} fragments created, {stats.fragments_failed} failed"
            + (f", {stats.fragments_degraded} degraded" if stats.fragments_degraded else "")
        )
        return stats

    def ingest_document(
        self,
        document: LegalDocument,
        config: Optional[IngestionConfig] = None,
    ) -> DocumentOutcome:
        """Ingest one document with per-document retries. Never raises."""
        cfg = config or self.config
        try:
            document.validate()
        except QueryValidationError as e:
            logger.warning(f"Rejected document: {e}")
            return DocumentOutcome(
                document_id=str(document.document_id),
                family=document.family,
                success=False,
                error=e.message,
                category=e.category,
            )

        policy = RetryPolicy(
            max_attempts=cfg.max_retries,
            base_delay=cfg.retry_base_delay,
            max_delay=cfg.retry_max_delay,
        )
        try:
            return retry_with_backoff(
                lambda: self._ingest_once(document, cfg),
                is_retryable=is_transient_ingestion_error,
                policy=policy,
                label=f"ingest {document.family.value}/{document.document_id}",
                sleep=self._sleep,
            )
        except Exception as e:
            category = e.category if isinstance(e, JurisRagError) else ErrorCategory.UNKNOWN
            logger.error(
                f"Failed to ingest {document.family.value}/{document.document_id} "
                f"({category.value}): {e}"
            )
            if isinstance(e, (DataIntegrityError, EmbeddingError)):
                self._discard_fragments(document)
            return DocumentOutcome(
                document_id=document.document_id,
                family=document.family,
                success=False,
                error=str(e),
                category=category,
            )

    def _ingest_once(self, document: LegalDocument, cfg: IngestionConfig) -> DocumentOutcome:
        self.store.upsert_document(document)

        fragments = self.chunker.chunk(document)
        if not fragments:
            removed = self.store.prune_fragments(document.family, document.document_id, keep=0)
            logger.info(
                f"{document.family.value}/{document.document_id}: no fragments "
                f"({removed} stale removed)"
            )
            return DocumentOutcome(document.document_id, document.family, success=True)

        embedded = self.embeddings.embed_documents_detailed(
            [f.text for f in fragments],
            batch_size=cfg.embedding_batch_size,
        )
        if len(embedded.vectors) != len(fragments):
            raise DataIntegrityError(
                f"Got {len(embedded.vectors)} embeddings for {len(fragments)} fragments "
                f"of {document.document_id}"
            )

        created = failed = degraded = 0
        for index, (fragment, vector) in enumerate(zip(fragments, embedded.vectors)):
            is_degraded = embedded.is_degraded(index)
            try:
                self.store.insert_fragment(document.family, fragment, vector, degraded=is_degraded)
            except JurisRagError as e:
                if not cfg.continue_on_error:
                    raise
                failed += 1
                logger.warning(
                    f"Fragment {fragment.chunk_index} of {document.document_id} not stored: {e}"
                )
                continue
            created += 1
            if is_degraded:
                degraded += 1

        self.store.prune_fragments(document.family, document.document_id, keep=len(fragments))

        return DocumentOutcome(
            document_id=document.document_id,
            family=document.family,
            success=created > 0,
            fragments_created=created,
            fragments_failed=failed,
            fragments_degraded=degraded,
            error=None if created else "No fragment could be stored",
            category=None if created else ErrorCategory.UNKNOWN,
        )

    def _discard_fragments(self, document: LegalDocument) -> None:
        """Remove half-written fragments so a resumed run picks the document up."""
        try:
            self.store.delete_fragments(document.family, document.document_id)
        except JurisRagError as e:
            logger.warning(f"Could not discard fragments of {document.document_id}: {e}")
