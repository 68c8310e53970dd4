"""
Batch ingestion of SCJN tesis and precedentes into the retrieval index.

Reads a scraper export (JSON array or JSON lines) for one document family,
segments and embeds every document, and stores the fragments in
PostgreSQL + pgvector.

Usage:
    python ingest_corpus.py --file data/tesis.jsonl --family tesis --init-schema
    python ingest_corpus.py --file data/precedentes.json --family precedentes --resume
    python ingest_corpus.py --status
    python ingest_corpus.py --cleanup --family tesis
    python ingest_corpus.py --file data/tesis.jsonl --family tesis --reembed-degraded
"""

import sys
import argparse
import logging
from pathlib import Path
from dotenv import load_dotenv

# Ensure project root is on path
PROJECT_ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(PROJECT_ROOT))
load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def print_status(store) -> None:
    """Print per-family index counters."""
    from execution.juris_rag.documents import DocumentFamily

    print("\n" + "=" * 60)
    print("INDEX STATUS")
    print("=" * 60)
    for family in DocumentFamily:
        status = store.ingestion_status(family)
        print(f"{family.value}:")
        print(f"  Documents:           {status['documents']}")
        print(f"  Embedded documents:  {status['embedded_documents']}")
        print(f"  Fragments:           {status['fragments']}")
        print(f"  Pending fragments:   {status['pending_fragments']}")
        print(f"  Degraded fragments:  {status['degraded_fragments']}")
    print("=" * 60)


def main():
    arg_parser = argparse.ArgumentParser(description="Ingest SCJN tesis and precedentes")
    arg_parser.add_argument("--file", type=str, help="Scraper export to ingest (JSON or JSONL)")
    arg_parser.add_argument(
        "--family",
        type=str,
        default="tesis",
        help="Document family: tesis/opinions or precedentes/precedents (default: tesis)",
    )
    arg_parser.add_argument(
        "--resume",
        action="store_true",
        help="Skip documents that already have embedded fragments",
    )
    arg_parser.add_argument(
        "--reembed-degraded",
        action="store_true",
        help="Only re-ingest documents stored with hash-fallback vectors",
    )
    arg_parser.add_argument("--status", action="store_true", help="Print index counters and exit")
    arg_parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Delete fragments left without embeddings by an interrupted run",
    )
    arg_parser.add_argument("--batch-size", type=int, default=10, help="Documents per batch")
    arg_parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Create tables and indexes before ingesting",
    )
    args = arg_parser.parse_args()

    from execution.juris_rag.documents import DocumentFamily, load_documents
    from execution.juris_rag.embeddings import get_embedding_service
    from execution.juris_rag.errors import IngestionError, JurisRagError
    from execution.juris_rag.ingestion import IngestionConfig, IngestionPipeline
    from execution.juris_rag.vector_store import VectorStore, VectorStoreConfig

    try:
        family = DocumentFamily.parse(args.family)
    except JurisRagError as e:
        logger.error(e.message)
        sys.exit(2)

    embedding_service = get_embedding_service()
    store = VectorStore(VectorStoreConfig(embedding_dimensions=embedding_service.dimensions))
    store.connect()
    if args.init_schema:
        store.initialize_schema()

    if args.status:
        print_status(store)
        store.close()
        return

    if args.cleanup:
        removed = store.cleanup_incomplete_fragments(family)
        logger.info(f"Removed {removed} incomplete {family.value} fragments")
        if not args.file:
            store.close()
            return

    if not args.file:
        logger.error("--file is required unless --status or --cleanup is given")
        store.close()
        sys.exit(1)

    input_file = Path(args.file)
    if not input_file.exists():
        logger.error(f"File not found: {input_file}")
        store.close()
        sys.exit(1)

    documents = load_documents(str(input_file), family)
    if not documents:
        logger.error(f"No valid {family.value} found in {input_file}")
        store.close()
        sys.exit(1)

    logger.info(f"Embedding model: {embedding_service.config.model} ({embedding_service.dimensions} dims)")

    pipeline = IngestionPipeline(
        store,
        embedding_service,
        config=IngestionConfig(
            batch_size=args.batch_size,
            # Degraded documents already have embedded fragments
            skip_existing=args.resume and not args.reembed_degraded,
        ),
    )

    if args.reembed_degraded:
        documents = pipeline.filter_degraded(documents)
        if not documents:
            logger.info(f"No degraded {family.value} to re-embed")
            store.close()
            return

    try:
        stats = pipeline.ingest_batch(documents)
    except IngestionError as e:
        logger.error(f"Ingestion aborted: {e.message}")
        stats = e.stats
    finally:
        store.close()

    # Summary
    print("\n" + "=" * 60)
    print("INGESTION COMPLETE")
    print("=" * 60)
    if stats is not None:
        print(
            f"Documents:       {stats.documents_succeeded}/{stats.documents_attempted} "
            f"({stats.documents_failed} failed, {stats.documents_skipped} skipped)"
        )
        print(f"Fragments:       {stats.fragments_created} ({stats.fragments_failed} failed)")
        if stats.fragments_degraded:
            print(f"Degraded:        {stats.fragments_degraded} (hash fallback, re-embed later)")
        print(f"Time elapsed:    {stats.duration_seconds:.1f}s")
    print(f"Family:          {family.value}")
    print("=" * 60)


if __name__ == "__main__":
    main()
