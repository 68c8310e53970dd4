"""
Index Store with PostgreSQL + pgvector

Stores opinions and precedents with their embedded fragments and exposes,
per document family:
- Vector similarity search (HNSW, cosine)
- Spanish full-text search (GIN over to_tsvector)
- Hybrid search fusing both rankings

Both families use structurally identical tables, so every operation takes a
DocumentFamily and resolves its table names instead of duplicating code.
"""

import os
import json
import time
import logging
import threading
from typing import Optional
from dataclasses import dataclass, field
from contextlib import contextmanager
from concurrent.futures import ThreadPoolExecutor

import psycopg2
import psycopg2.extensions
import psycopg2.extras
import psycopg2.pool

from .chunker import Fragment, FragmentRole
from .documents import DocumentFamily, LegalDocument
from .errors import DataIntegrityError, ErrorCategory, StoreError
from .language_config import LanguageConfig, VALID_FTS_CONFIGS
from .retry import RetryPolicy, is_transient_db_error, retry_with_backoff

logger = logging.getLogger(__name__)

_FAMILY_TABLES = {
    DocumentFamily.OPINIONS: ("opinions", "opinion_fragments"),
    DocumentFamily.PRECEDENTS: ("precedents", "precedent_fragments"),
}

_DOCUMENT_COLUMNS = (
    "id", "title", "abstract", "body", "body_full", "issuing_body",
    "document_kind", "era", "subjects", "publication_date", "source_url",
    "locator", "metadata",
)


@dataclass
class VectorStoreConfig:
    """Configuration for the index store."""
    connection_string: Optional[str] = None
    table_prefix: str = ""
    embedding_dimensions: int = 1536
    fts_language: Optional[str] = None  # Defaults to FTS_LANGUAGE / spanish
    # Small pool: the backing database is shared with the scrapers
    pool_min_connections: int = 1
    pool_max_connections: int = 5
    connect_timeout: int = 10
    statement_timeout_ms: int = 60000
    # Connection-class retries
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0
    # HNSW parameters
    hnsw_m: int = 16
    hnsw_ef_construction: int = 64
    hnsw_ef_search: int = 40
    # Vector search over-fetch before the similarity floor is applied
    vector_overfetch: int = 3
    max_vector_fetch: int = 300
    hybrid_min_similarity: float = 0.3


@dataclass
class SearchResult:
    """A single fragment hit with its score and owning-document metadata."""
    fragment_id: str
    document_id: str
    family: DocumentFamily
    content: str
    chunk_index: int
    chunk_type: str
    score: float
    metadata: dict = field(default_factory=dict)

    def to_fragment(self) -> Fragment:
        """Rebuild the Fragment this hit was stored from."""
        return Fragment(
            document_id=self.document_id,
            text=self.content,
            chunk_index=self.chunk_index,
            role=FragmentRole(self.chunk_type),
            char_start=self.metadata.get("char_start") or 0,
            char_end=self.metadata.get("char_end") or len(self.content),
            token_count=self.metadata.get("token_count") or 0,
            metadata={"fragment_id": self.fragment_id},
        )

    def to_dict(self) -> dict:
        return {
            "fragment_id": self.fragment_id,
            "document_id": self.document_id,
            "family": self.family.value,
            "content": self.content,
            "chunk_index": self.chunk_index,
            "chunk_type": self.chunk_type,
            "score": self.score,
            "metadata": self.metadata,
        }


@dataclass
class HybridSearchResult:
    """A fused hit. Either sub-score is None when that search missed it."""
    result: SearchResult
    combined_score: float
    vector_score: Optional[float] = None
    text_score: Optional[float] = None

    @property
    def fragment_id(self) -> str:
        return self.result.fragment_id

    @property
    def document_id(self) -> str:
        return self.result.document_id

    @property
    def family(self) -> DocumentFamily:
        return self.result.family

    def to_dict(self) -> dict:
        data = self.result.to_dict()
        data.update({
            "combined_score": self.combined_score,
            "vector_score": self.vector_score,
            "text_score": self.text_score,
        })
        return data


# =============================================================================
# Score fusion
# =============================================================================

def rank_boost(position: int, window: int = 10, max_boost: float = 0.05) -> float:
    """Additive bonus for the top ``window`` positions of a single ranking."""
    if position >= window:
        return 0.0
    return max_boost / (window + position + 1)


def fuse_hybrid_results(
    vector_results: list[SearchResult],
    text_results: list[SearchResult],
    top_k: int,
    vector_weight: float = 0.7,
    text_weight: float = 0.3,
    boost_window: int = 10,
    max_boost: float = 0.05,
) -> list[HybridSearchResult]:
    """
    Fuse a vector ranking and a full-text ranking into one list.

    Vector scores are cosine similarities; text scores are ts_rank values
    min-max normalized across the text results so the best match is 1.0.
    Each ranking gets a small position boost near the top. Fragments found by
    both searches get the weighted average of their scores; fragments found
    by one search keep that score unweighted. A text hit that carries its own
    cosine similarity in ``metadata["vector_score"]`` (it fell under the
    vector floor) is averaged with that similarity, unboosted, so raising a
    fragment's similarity never lowers its fused score. Final scores are
    clamped to [0, 1] and sorted descending.

    Args:
        vector_results: Vector hits, best first.
        text_results: Text hits, best first.
        top_k: Number of fused results to keep.
        vector_weight: Relative weight of the vector score.
        text_weight: Relative weight of the text score.

    Returns:
        Up to ``top_k`` fused results.
    """
    if vector_weight < 0 or text_weight < 0 or vector_weight + text_weight <= 0:
        raise ValueError("Hybrid weights must be non-negative and not both zero")
    total_weight = vector_weight + text_weight
    wv = vector_weight / total_weight
    wt = text_weight / total_weight

    entries: dict[str, dict] = {}
    for position, hit in enumerate(vector_results):
        if hit.fragment_id in entries:
            continue
        boosted = min(1.0, hit.score + rank_boost(position, boost_window, max_boost))
        entries[hit.fragment_id] = {"hit": hit, "vector": boosted, "text": None}

    if text_results:
        ranks = [hit.score for hit in text_results]
        lowest, highest = min(ranks), max(ranks)
        spread = highest - lowest
        for position, hit in enumerate(text_results):
            normalized = (hit.score - lowest) / spread if spread > 0 else 1.0
            boosted = min(1.0, normalized + rank_boost(position, boost_window, max_boost))
            entry = entries.get(hit.fragment_id)
            if entry is None:
                similarity = (hit.metadata or {}).get("vector_score")
                if similarity is not None:
                    similarity = max(0.0, min(1.0, float(similarity)))
                entry = entries[hit.fragment_id] = {"hit": hit, "vector": similarity, "text": None}
            if entry["text"] is None:
                entry["text"] = boosted

    fused = []
    for entry in entries.values():
        vector_score, text_score = entry["vector"], entry["text"]
        if vector_score is not None and text_score is not None:
            combined = wv * vector_score + wt * text_score
        elif vector_score is not None:
            combined = vector_score
        else:
            combined = text_score
        fused.append(HybridSearchResult(
            result=entry["hit"],
            combined_score=max(0.0, min(1.0, combined)),
            vector_score=vector_score,
            text_score=text_score,
        ))

    # Stable sort keeps vector order among exact ties
    fused.sort(
        key=lambda r: (r.combined_score, r.vector_score if r.vector_score is not None else -1.0),
        reverse=True,
    )
    return fused[:top_k]


# =============================================================================
# Store
# =============================================================================

class VectorStore:
    """
    PostgreSQL index store with pgvector.

    Features:
    - Connection pool with statement timeout
    - Classified retries with pool reset on connection errors
    - Per-family vector, keyword and hybrid search
    - Idempotent document and fragment upserts
    """

    def __init__(self, config: Optional[VectorStoreConfig] = None):
        """
        Initialize the store. No connection is opened until first use.

        Args:
            config: Optional configuration. Uses env vars if not provided.
        """
        self.config = config or VectorStoreConfig()
        self._pool = None
        # Guards pool creation, reset and the bookkeeping below
        self._pool_lock = threading.RLock()
        self._borrowed = {}      # id(conn) -> pool it was taken from
        self._retired = []       # replaced pools still lending connections
        self._sleep = time.sleep
        self._connection_string = (
            self.config.connection_string or
            os.getenv("DATABASE_URL") or
            os.getenv("POSTGRES_URL") or
            "postgresql://localhost:5432/juris_rag"
        )
        self._fts_language = (
            self.config.fts_language or LanguageConfig.from_env().fts_language
        )
        if self._fts_language not in VALID_FTS_CONFIGS:
            raise ValueError(
                f"Invalid FTS language {self._fts_language!r}; "
                f"expected one of {sorted(VALID_FTS_CONFIGS)}"
            )

    # =========================================================================
    # Connections
    # =========================================================================

    def connect(self) -> None:
        """Create the connection pool if it does not exist yet."""
        if self._pool is not None:
            return
        with self._pool_lock:
            if self._pool is not None:
                return
            try:
                self._pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self.config.pool_min_connections,
                    maxconn=self.config.pool_max_connections,
                    dsn=self._connection_string,
                    cursor_factory=psycopg2.extras.RealDictCursor,
                    connect_timeout=self.config.connect_timeout,
                    options=f"-c statement_timeout={int(self.config.statement_timeout_ms)}",
                )
            except psycopg2.Error as e:
                logger.error(f"Database connection failed: {e}")
                raise
        logger.info(
            f"Connection pool initialized (min={self.config.pool_min_connections}, "
            f"max={self.config.pool_max_connections})"
        )

    def _close_pool(self, pool) -> None:
        try:
            pool.closeall()
        except psycopg2.pool.PoolError as e:
            logger.debug(f"Pool already closed: {e}")

    def close(self) -> None:
        """Close every pooled connection."""
        with self._pool_lock:
            pools = self._retired + ([self._pool] if self._pool is not None else [])
            for pool in pools:
                self._close_pool(pool)
            self._retired = []
            self._borrowed = {}
            if self._pool is not None:
                self._pool = None
                logger.info("Connection pool closed")

    def reset(self, stale=None) -> None:
        """
        Replace the pool. Recovery path for connection errors.

        Args:
            stale: The pool the failing connection came from. When another
                thread has already replaced it, this call does nothing.
        """
        with self._pool_lock:
            if stale is not None and stale is not self._pool:
                logger.debug("Connection pool already reset")
                return
            logger.warning("Resetting database connection pool")
            old, self._pool = self._pool, None
            if old is not None:
                if any(pool is old for pool in self._borrowed.values()):
                    # Closed once its last borrowed connection comes back
                    self._retired.append(old)
                else:
                    self._close_pool(old)
            self.connect()

    def _get_connection(self):
        with self._pool_lock:
            if self._pool is None:
                self.connect()
            pool = self._pool
            conn = pool.getconn()
            self._borrowed[id(conn)] = pool
            return conn

    def _release_connection(self, conn) -> None:
        """Return a connection to the pool it came from, discarding it if broken."""
        if conn is None:
            return
        with self._pool_lock:
            pool = self._borrowed.pop(id(conn), self._pool)
            if pool is None:
                return
            try:
                pool.putconn(conn, close=bool(conn.closed))
            except psycopg2.pool.PoolError as e:
                logger.debug(f"Could not return connection to pool: {e}")
            if any(p is pool for p in self._retired) and not any(
                p is pool for p in self._borrowed.values()
            ):
                self._retired = [p for p in self._retired if p is not pool]
                self._close_pool(pool)

    @contextmanager
    def get_connection(self):
        """
        Context manager for a pooled connection.

        Usage:
            with store.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
        """
        conn = self._get_connection()
        try:
            yield conn
        finally:
            self._release_connection(conn)

    def ping(self) -> bool:
        """True when a pooled connection answers a trivial query."""
        try:
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
            return True
        except psycopg2.Error as e:
            logger.warning(f"Database ping failed: {e}")
            return False

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError):
            pass

    def _execute_with_retry(self, operation, label: str = "db_operation"):
        """Execute a DB operation, retrying connection-class failures.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
            label: Human-readable name for logging.

        Returns:
            Whatever ``operation`` returns.

        Raises:
            StoreError: once retries are exhausted or on a non-transient
                database error.
        """
        source = {"pool": None}

        def _attempt():
            source["pool"] = self._pool
            conn = self._get_connection()
            source["pool"] = self._borrowed.get(id(conn), source["pool"])
            try:
                result = operation(conn)
            except Exception:
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise
            self._release_connection(conn)
            return result

        def _on_retry(exc, attempt):
            # An exhausted pool is healthy; resetting it would kill busy connections
            if not isinstance(exc, psycopg2.pool.PoolError):
                self.reset(stale=source["pool"])

        policy = RetryPolicy(
            max_attempts=self.config.max_retries,
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
        )
        try:
            return retry_with_backoff(
                _attempt,
                is_retryable=is_transient_db_error,
                policy=policy,
                on_retry=_on_retry,
                label=label,
                sleep=self._sleep,
            )
        except psycopg2.extensions.QueryCanceledError as e:
            logger.error(f"{label}: statement timeout: {e}")
            raise StoreError(f"{label} timed out", ErrorCategory.TIMEOUT) from e
        except (psycopg2.OperationalError, psycopg2.InterfaceError, psycopg2.pool.PoolError) as e:
            logger.error(f"{label}: database unavailable: {e}")
            raise StoreError(f"{label} failed: database unavailable", ErrorCategory.CONNECTION) from e
        except (psycopg2.ProgrammingError, psycopg2.DataError) as e:
            logger.error(f"{label}: rejected by database: {e}")
            raise StoreError(f"{label} failed: invalid query", ErrorCategory.INVALID_REQUEST) from e
        except psycopg2.Error as e:
            logger.error(f"{label}: database error: {e}")
            raise StoreError(f"{label} failed", ErrorCategory.UNKNOWN) from e

    # =========================================================================
    # Schema
    # =========================================================================

    def _tables(self, family) -> tuple[str, str]:
        """(documents table, fragments table) for a family."""
        documents, fragments = _FAMILY_TABLES[DocumentFamily.parse(family)]
        prefix = self.config.table_prefix
        return f"{prefix}{documents}", f"{prefix}{fragments}"

    def _schema_sql(self, family: DocumentFamily) -> str:
        documents, fragments = self._tables(family)
        cfg = self.config
        return f"""
        CREATE TABLE IF NOT EXISTS {documents} (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            abstract TEXT,
            body TEXT,
            body_full TEXT,
            issuing_body TEXT,
            document_kind TEXT,
            era TEXT,
            subjects TEXT,
            publication_date TEXT,
            source_url TEXT,
            locator TEXT,
            metadata JSONB DEFAULT '{{}}',
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS {fragments} (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            document_id TEXT NOT NULL REFERENCES {documents}(id) ON DELETE CASCADE,
            content TEXT NOT NULL,
            chunk_index INT NOT NULL,
            chunk_type TEXT NOT NULL,
            char_start INT,
            char_end INT,
            token_count INT,
            embedding VECTOR({cfg.embedding_dimensions}),
            degraded BOOLEAN DEFAULT FALSE,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            UNIQUE (document_id, chunk_index)
        );

        CREATE INDEX IF NOT EXISTS idx_{fragments}_embedding
            ON {fragments}
            USING hnsw (embedding vector_cosine_ops)
            WITH (m = {int(cfg.hnsw_m)}, ef_construction = {int(cfg.hnsw_ef_construction)});

        CREATE INDEX IF NOT EXISTS idx_{fragments}_fts
            ON {fragments}
            USING GIN (to_tsvector('{self._fts_language}', content));

        CREATE INDEX IF NOT EXISTS idx_{fragments}_degraded
            ON {fragments}(document_id) WHERE degraded;
        """

    def initialize_schema(self) -> None:
        """Create the extension, tables and indexes for both families."""
        statements = ["CREATE EXTENSION IF NOT EXISTS vector"]
        statements.extend(self._schema_sql(family) for family in DocumentFamily)

        def _op(conn):
            with conn.cursor() as cur:
                for sql in statements:
                    cur.execute(sql)
            conn.commit()

        self._execute_with_retry(_op, "initialize_schema")
        logger.info("Schema initialized successfully")

    # =========================================================================
    # Writes
    # =========================================================================

    def upsert_document(self, document: LegalDocument) -> None:
        """Insert or update a document row keyed on its identifier."""
        document.validate()
        documents, _ = self._tables(document.family)
        columns = ", ".join(_DOCUMENT_COLUMNS)
        placeholders = ", ".join(["%s"] * len(_DOCUMENT_COLUMNS))
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in _DOCUMENT_COLUMNS if c != "id")
        sql = f"""
        INSERT INTO {documents} ({columns})
        VALUES ({placeholders})
        ON CONFLICT (id) DO UPDATE SET
            {updates},
            updated_at = NOW()
        """
        params = (
            document.document_id,
            document.title,
            document.abstract or None,
            document.body or None,
            document.body_full or None,
            document.issuing_body or None,
            document.document_kind or None,
            document.era or None,
            document.subjects or None,
            document.publication_date or None,
            document.source_url or None,
            document.locator or None,
            json.dumps(document.extra or {}, ensure_ascii=False, default=str),
        )

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
            conn.commit()

        self._execute_with_retry(_op, "upsert_document")

    def insert_fragment(
        self,
        family,
        fragment: Fragment,
        embedding: list[float],
        degraded: bool = False,
    ) -> str:
        """
        Store one fragment with its embedding.

        Upserts on (document_id, chunk_index), so re-ingesting a document
        overwrites its fragments instead of duplicating them.

        Returns:
            The fragment's row id.
        """
        if len(embedding) != self.config.embedding_dimensions:
            raise DataIntegrityError(
                f"Embedding for {fragment.document_id}#{fragment.chunk_index} has "
                f"{len(embedding)} dimensions, expected {self.config.embedding_dimensions}"
            )
        _, fragments = self._tables(family)
        sql = f"""
        INSERT INTO {fragments}
            (document_id, content, chunk_index, chunk_type, char_start, char_end,
             token_count, embedding, degraded)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s::vector, %s)
        ON CONFLICT (document_id, chunk_index) DO UPDATE SET
            content = EXCLUDED.content,
            chunk_type = EXCLUDED.chunk_type,
            char_start = EXCLUDED.char_start,
            char_end = EXCLUDED.char_end,
            token_count = EXCLUDED.token_count,
            embedding = EXCLUDED.embedding,
            degraded = EXCLUDED.degraded
        RETURNING id
        """
        params = (
            fragment.document_id,
            fragment.text,
            fragment.chunk_index,
            fragment.role.value,
            fragment.char_start,
            fragment.char_end,
            fragment.token_count,
            list(embedding),
            degraded,
        )

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            conn.commit()
            return str(dict(row)["id"])

        return self._execute_with_retry(_op, "insert_fragment")

    def prune_fragments(self, family, document_id: str, keep: int) -> int:
        """Delete fragments with an index at or beyond ``keep``."""
        _, fragments = self._tables(family)
        sql = f"DELETE FROM {fragments} WHERE document_id = %s AND chunk_index >= %s"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (document_id, keep))
                deleted = cur.rowcount
            conn.commit()
            return deleted

        deleted = self._execute_with_retry(_op, "prune_fragments")
        if deleted:
            logger.info(f"Pruned {deleted} stale fragments of {document_id}")
        return deleted

    def delete_fragments(self, family, document_id: str) -> int:
        """Delete every fragment of a document, leaving the document row."""
        return self.prune_fragments(family, document_id, keep=0)

    def cleanup_incomplete_fragments(self, family) -> int:
        """Delete fragments left without an embedding by an interrupted run."""
        _, fragments = self._tables(family)

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(f"DELETE FROM {fragments} WHERE embedding IS NULL")
                deleted = cur.rowcount
            conn.commit()
            return deleted

        deleted = self._execute_with_retry(_op, "cleanup_incomplete_fragments")
        logger.info(f"Removed {deleted} incomplete fragments from {fragments}")
        return deleted

    # =========================================================================
    # Search
    # =========================================================================

    def _hit_from_row(self, family: DocumentFamily, row) -> SearchResult:
        row_dict = dict(row)
        hit = SearchResult(
            fragment_id=str(row_dict["fragment_id"]),
            document_id=str(row_dict["document_id"]),
            family=family,
            content=row_dict["content"],
            chunk_index=row_dict["chunk_index"],
            chunk_type=row_dict["chunk_type"],
            score=float(row_dict["score"]),
            metadata={
                "title": row_dict.get("title"),
                "document_kind": row_dict.get("document_kind"),
                "issuing_body": row_dict.get("issuing_body"),
                "era": row_dict.get("era"),
                "char_start": row_dict.get("char_start"),
                "char_end": row_dict.get("char_end"),
                "token_count": row_dict.get("token_count"),
            },
        )
        if row_dict.get("vector_score") is not None:
            hit.metadata["vector_score"] = float(row_dict["vector_score"])
        return hit

    def _select_columns(self) -> str:
        return """
            c.id AS fragment_id,
            c.document_id,
            c.content,
            c.chunk_index,
            c.chunk_type,
            c.char_start,
            c.char_end,
            c.token_count,
            d.title,
            d.document_kind,
            d.issuing_body,
            d.era
        """

    def vector_search(
        self,
        family,
        query_embedding: list[float],
        top_k: int = 10,
        min_similarity: float = 0.0,
    ) -> list[SearchResult]:
        """
        Cosine similarity search over embedded fragments.

        Over-fetches before applying ``min_similarity`` so the floor does not
        starve the result list.

        Args:
            family: Document family to search.
            query_embedding: Query vector.
            top_k: Number of results to return.
            min_similarity: Minimum cosine similarity (0-1).

        Returns:
            Up to ``top_k`` results, most similar first.
        """
        family = DocumentFamily.parse(family)
        documents, fragments = self._tables(family)
        fetch_limit = max(top_k, min(top_k * self.config.vector_overfetch, self.config.max_vector_fetch))
        # HNSW never returns more than ef_search rows
        ef_search = max(self.config.hnsw_ef_search, fetch_limit)

        sql = f"""
        SELECT
            {self._select_columns()},
            1 - (c.embedding <=> %s::vector) AS score
        FROM {fragments} c
        JOIN {documents} d ON d.id = c.document_id
        WHERE c.embedding IS NOT NULL
        ORDER BY c.embedding <=> %s::vector
        LIMIT %s
        """
        params = (list(query_embedding), list(query_embedding), fetch_limit)

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(f"SET LOCAL hnsw.ef_search = {int(ef_search)}")
                cur.execute(sql, params)
                rows = cur.fetchall()

            results = []
            for row in rows:
                hit = self._hit_from_row(family, row)
                if hit.score >= min_similarity:
                    results.append(hit)
            return results[:top_k]

        return self._execute_with_retry(_op, f"vector_search[{family.value}]")

    def keyword_search(
        self,
        family,
        query: str,
        top_k: int = 10,
        query_embedding: Optional[list[float]] = None,
    ) -> list[SearchResult]:
        """
        Full-text search using PostgreSQL ts_rank.

        Args:
            family: Document family to search.
            query: Free-text query, parsed with plainto_tsquery.
            top_k: Number of results to return.
            query_embedding: When given, each hit also carries its cosine
                similarity to this vector in ``metadata["vector_score"]``.

        Returns:
            Results ordered by ts_rank, best first. ``score`` is the raw rank.
        """
        family = DocumentFamily.parse(family)
        if not query or not query.strip():
            return []
        documents, fragments = self._tables(family)
        fts = self._fts_language

        similarity_column = ""
        params = [query]
        if query_embedding is not None:
            similarity_column = ",\n            1 - (c.embedding <=> %s::vector) AS vector_score"
            params.append(list(query_embedding))
        params.extend([query, top_k])

        sql = f"""
        SELECT
            {self._select_columns()},
            ts_rank(to_tsvector('{fts}', c.content), plainto_tsquery('{fts}', %s)) AS score{similarity_column}
        FROM {fragments} c
        JOIN {documents} d ON d.id = c.document_id
        WHERE to_tsvector('{fts}', c.content) @@ plainto_tsquery('{fts}', %s)
        ORDER BY score DESC
        LIMIT %s
        """
        params = tuple(params)

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            return [self._hit_from_row(family, row) for row in rows]

        return self._execute_with_retry(_op, f"keyword_search[{family.value}]")

    def hybrid_search(
        self,
        family,
        query_embedding: list[float],
        query_text: str,
        top_k: int = 10,
        vector_weight: float = 0.7,
        text_weight: float = 0.3,
        min_similarity: Optional[float] = None,
    ) -> list[HybridSearchResult]:
        """
        Run vector and keyword search concurrently and fuse the rankings.

        Args:
            family: Document family to search.
            query_embedding: Query vector.
            query_text: Query text for full-text search.
            top_k: Number of fused results to return.
            vector_weight: Weight of the vector score when both are present.
            text_weight: Weight of the text score when both are present.
            min_similarity: Floor for the vector sub-search
                (default ``hybrid_min_similarity``).

        Returns:
            Fused results, best first (see ``fuse_hybrid_results``).
        """
        family = DocumentFamily.parse(family)
        floor = self.config.hybrid_min_similarity if min_similarity is None else min_similarity
        fetch = top_k * 2

        with ThreadPoolExecutor(max_workers=2) as executor:
            vector_future = executor.submit(
                self.vector_search, family, query_embedding, fetch, floor,
            )
            text_future = executor.submit(
                self.keyword_search, family, query_text, fetch, query_embedding,
            )
            vector_results = vector_future.result()
            text_results = text_future.result()

        fused = fuse_hybrid_results(
            vector_results,
            text_results,
            top_k=top_k,
            vector_weight=vector_weight,
            text_weight=text_weight,
        )
        logger.debug(
            f"hybrid_search[{family.value}]: {len(vector_results)} vector, "
            f"{len(text_results)} text, {len(fused)} fused"
        )
        return fused

    # =========================================================================
    # Lookups and status
    # =========================================================================

    def get_document(self, family, document_id: str) -> Optional[LegalDocument]:
        """Point lookup of one document, or None."""
        found = self.get_documents(family, [document_id])
        return found.get(str(document_id))

    def get_documents(self, family, document_ids: list[str]) -> dict[str, LegalDocument]:
        """Batch lookup keyed by document id; missing ids are simply absent."""
        family = DocumentFamily.parse(family)
        ids = [str(d) for d in dict.fromkeys(document_ids)]
        if not ids:
            return {}
        documents, _ = self._tables(family)
        sql = f"SELECT {', '.join(_DOCUMENT_COLUMNS)} FROM {documents} WHERE id = ANY(%s)"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (ids,))
                rows = cur.fetchall()
            result = {}
            for row in rows:
                document = LegalDocument.from_row(family, dict(row))
                result[document.document_id] = document
            return result

        return self._execute_with_retry(_op, f"get_documents[{family.value}]")

    def get_embedded_document_ids(self, family) -> set[str]:
        """Identifiers of documents that already have embedded fragments."""
        _, fragments = self._tables(family)
        sql = f"SELECT DISTINCT document_id FROM {fragments} WHERE embedding IS NOT NULL"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql)
                return {str(dict(row)["document_id"]) for row in cur.fetchall()}

        return self._execute_with_retry(_op, "get_embedded_document_ids")

    def get_degraded_document_ids(self, family) -> set[str]:
        """Documents holding hash-fallback vectors that should be re-embedded."""
        _, fragments = self._tables(family)
        sql = f"SELECT DISTINCT document_id FROM {fragments} WHERE degraded"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql)
                return {str(dict(row)["document_id"]) for row in cur.fetchall()}

        return self._execute_with_retry(_op, "get_degraded_document_ids")

    def ingestion_status(self, family) -> dict:
        """Document and fragment counts for one family."""
        family = DocumentFamily.parse(family)
        documents, fragments = self._tables(family)
        sql = f"""
        SELECT
            (SELECT COUNT(*) FROM {documents}) AS documents,
            COUNT(*) AS fragments,
            COUNT(*) FILTER (WHERE embedding IS NOT NULL) AS embedded_fragments,
            COUNT(*) FILTER (WHERE embedding IS NULL) AS pending_fragments,
            COUNT(*) FILTER (WHERE degraded) AS degraded_fragments,
            COUNT(DISTINCT document_id) FILTER (WHERE embedding IS NOT NULL) AS embedded_documents
        FROM {fragments}
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql)
                row = dict(cur.fetchone())
            return {key: int(value or 0) for key, value in row.items()}

        status = self._execute_with_retry(_op, f"ingestion_status[{family.value}]")
        status["family"] = family.value
        return status
