"""
Shared fixtures and test utilities for Juris RAG tests.

Provides fake services and sample tesis/precedentes so that all tests can
run without API keys, databases, or external network access.
"""

import re
import sys
import math
import hashlib
from pathlib import Path

import pytest
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

from execution.juris_rag.chunker import ChunkConfig, LegalChunker  # noqa: E402
from execution.juris_rag.documents import DocumentFamily, LegalDocument  # noqa: E402
from execution.juris_rag.embeddings import EmbeddingResult  # noqa: E402
from execution.juris_rag.errors import (  # noqa: E402
    DataIntegrityError,
    EmbeddingError,
    ErrorCategory,
)
from execution.juris_rag.vector_store import SearchResult, fuse_hybrid_results  # noqa: E402


def _terms(text):
    """Content words: four letters or longer, lowercased."""
    return [t for t in re.findall(r"\w+", (text or "").lower()) if len(t) >= 4]


# ---------------------------------------------------------------------------
# Sample documents
# ---------------------------------------------------------------------------

SUSPENSION_BODY = """La suspensión del acto reclamado en el juicio de amparo indirecto tiene por objeto conservar la materia del juicio mientras se resuelve el fondo del asunto.

Cuando el acto reclamado es de ejecución continua, la suspensión procede respecto de los efectos que aún no se han consumado, pues de otra manera el amparo quedaría sin materia.

El juzgador debe ponderar la apariencia del buen derecho y el peligro en la demora, sin prejuzgar sobre la constitucionalidad del acto reclamado.

La suspensión definitiva conserva sus efectos hasta que cause ejecutoria la sentencia dictada en el amparo indirecto."""

PROVISIONAL_BODY = """La suspensión provisional en materia administrativa se concede cuando el acto reclamado pueda causar perjuicios de difícil reparación al quejoso.

El órgano jurisdiccional debe analizar la naturaleza del acto reclamado y el interés social antes de otorgar la suspensión solicitada."""

ALIMENTOS_BODY = """Para fijar la pensión alimenticia, el juzgador considera los ingresos comprobados del deudor alimentario y las necesidades reales de los acreedores.

Cuando el deudor carece de ingresos fijos, su capacidad económica puede inferirse del nivel de vida que lleva y de los bienes que posee."""

PRECEDENT_BODY = """La Primera Sala resolvió que la suspensión del acto reclamado en amparo indirecto no puede negarse cuando la ejecución del acto dejaría sin materia el juicio.

Se revocó la resolución recurrida y se concedió la suspensión definitiva solicitada por la quejosa."""


def make_opinion(**overrides):
    data = dict(
        document_id="2012345",
        family=DocumentFamily.OPINIONS,
        title="SUSPENSIÓN DEL ACTO RECLAMADO EN EL AMPARO INDIRECTO. PROCEDE CONTRA ACTOS DE EJECUCIÓN CONTINUA.",
        body=SUSPENSION_BODY,
        issuing_body="Segunda Sala",
        document_kind="Jurisprudencia",
        era="Décima Época",
        subjects="Común",
        publication_date="2016-05-20",
        source_url="https://sjf2.scjn.gob.mx/detalle/tesis/2012345",
        locator="Libro 30, Tomo II, página 1234",
        extra={
            "tesis_numero": "2a./J. 45/2016 (10a.)",
            "fuente": "Gaceta del Semanario Judicial de la Federación",
            "localizacion_libro": "30",
            "localizacion_tomo": "II",
            "localizacion_mes": "mayo",
            "localizacion_anio": "2016",
            "localizacion_pagina": "1234",
        },
    )
    data.update(overrides)
    return LegalDocument(**data)


def make_precedent(**overrides):
    data = dict(
        document_id="30100",
        family=DocumentFamily.PRECEDENTS,
        title="SUSPENSIÓN EN AMPARO INDIRECTO CONTRA ACTOS QUE DEJARÍAN SIN MATERIA EL JUICIO.",
        body=PRECEDENT_BODY,
        issuing_body="Primera Sala",
        document_kind="Amparo en Revisión",
        subjects="Suspensión, Amparo indirecto",
        publication_date="2023-05-12",
        source_url="https://bj.scjn.gob.mx/doc/sentencias_pub/30100",
        locator="Semanario Judicial de la Federación, mayo de 2023",
        extra={
            "ius": "30100",
            "tipo_asunto_expediente": "Amparo en revisión 123/2022",
            "promovente": "Comercializadora del Norte, S.A. de C.V.",
        },
    )
    data.update(overrides)
    return LegalDocument(**data)


@pytest.fixture
def opinion_document():
    """Binding jurisprudencia of the Segunda Sala, Décima Época."""
    return make_opinion()


@pytest.fixture
def persuasive_opinion():
    """Tesis aislada from a collegiate court, Novena Época."""
    return make_opinion(
        document_id="2020001",
        title="SUSPENSIÓN PROVISIONAL EN MATERIA ADMINISTRATIVA. REQUISITOS PARA SU OTORGAMIENTO.",
        body=PROVISIONAL_BODY,
        issuing_body="Tribunales Colegiados de Circuito",
        document_kind="Tesis Aislada",
        era="Novena Época",
        extra={"tesis_numero": "I.4o.A.12 A"},
    )


@pytest.fixture
def unrelated_opinion():
    """Shares no content word with suspension queries."""
    return make_opinion(
        document_id="2030003",
        title="PENSIÓN ALIMENTICIA. CÁLCULO CONFORME A LOS INGRESOS DEL DEUDOR.",
        body=ALIMENTOS_BODY,
        issuing_body="Primera Sala",
        subjects="Civil",
        extra={},
    )


@pytest.fixture
def precedent_document():
    return make_precedent()


@pytest.fixture
def corpus(opinion_document, persuasive_opinion, unrelated_opinion, precedent_document):
    return [opinion_document, persuasive_opinion, unrelated_opinion, precedent_document]


@pytest.fixture
def chunker():
    """Default segmenter."""
    return LegalChunker()


@pytest.fixture
def small_chunker():
    """Segmenter sized for the short sample bodies."""
    return LegalChunker(ChunkConfig(max_tokens=120, overlap_tokens=20, min_tokens=5))


# ---------------------------------------------------------------------------
# Fake embedding service
# ---------------------------------------------------------------------------

class FakeEmbeddingService:
    """Bag-of-words hashing embeddings -- never calls external APIs.

    Texts sharing no content word get (almost) orthogonal vectors, so
    similarity behaves predictably in ranking tests.
    """

    def __init__(self, dimensions=1024):
        self._dimensions = dimensions
        self.fail_on = None          # substring that makes a batch fail
        self.fail_category = ErrorCategory.TRANSIENT_SERVER
        self.degrade = False         # report every vector as degraded
        self.drop_last = False       # return one vector too few
        self.document_calls = 0
        self.query_calls = 0

    def _vector(self, text):
        vector = [0.0] * self._dimensions
        for term in _terms(text):
            slot = int(hashlib.sha256(term.encode()).hexdigest()[:8], 16) % self._dimensions
            vector[slot] += 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        return [v / norm for v in vector] if norm else vector

    def embed_documents_detailed(self, texts, batch_size=None):
        self.document_calls += 1
        if self.fail_on and any(self.fail_on in t for t in texts):
            raise EmbeddingError("Embedding provider is temporarily unavailable", self.fail_category)
        vectors = [self._vector(t) for t in texts]
        if self.drop_last:
            vectors = vectors[:-1]
        degraded = list(range(len(vectors))) if self.degrade else []
        return EmbeddingResult(vectors=vectors, degraded_indices=degraded)

    def embed_documents(self, texts):
        return self.embed_documents_detailed(texts).vectors

    def embed_query(self, query):
        self.query_calls += 1
        return self._vector(query)

    @property
    def dimensions(self):
        return self._dimensions


@pytest.fixture
def fake_embeddings():
    return FakeEmbeddingService()


# ---------------------------------------------------------------------------
# In-memory index store (no database needed)
# ---------------------------------------------------------------------------

class InMemoryIndexStore:
    """In-memory stand-in for VectorStore with the same search contract."""

    def __init__(self, dimensions=1024):
        self.dimensions = dimensions
        self.documents = {family: {} for family in DocumentFamily}
        self.fragments = {family: {} for family in DocumentFamily}
        self.fail_search = {}        # family -> exception raised by hybrid_search
        self.deleted = []

    def ping(self):
        return True

    def close(self):
        pass

    def upsert_document(self, document):
        document.validate()
        self.documents[document.family][document.document_id] = document

    def insert_fragment(self, family, fragment, embedding, degraded=False):
        family = DocumentFamily.parse(family)
        if len(embedding) != self.dimensions:
            raise DataIntegrityError(
                f"Embedding has {len(embedding)} dimensions, expected {self.dimensions}"
            )
        key = (fragment.document_id, fragment.chunk_index)
        self.fragments[family][key] = {
            "fragment": fragment,
            "embedding": list(embedding),
            "degraded": degraded,
        }
        return f"{fragment.document_id}:{fragment.chunk_index}"

    def prune_fragments(self, family, document_id, keep):
        family = DocumentFamily.parse(family)
        stale = [k for k in self.fragments[family] if k[0] == document_id and k[1] >= keep]
        for key in stale:
            del self.fragments[family][key]
        return len(stale)

    def delete_fragments(self, family, document_id):
        self.deleted.append((DocumentFamily.parse(family), document_id))
        return self.prune_fragments(family, document_id, keep=0)

    def fragments_of(self, family, document_id):
        family = DocumentFamily.parse(family)
        return sorted(
            (entry for key, entry in self.fragments[family].items() if key[0] == document_id),
            key=lambda e: e["fragment"].chunk_index,
        )

    def get_embedded_document_ids(self, family):
        return {key[0] for key in self.fragments[DocumentFamily.parse(family)]}

    def get_degraded_document_ids(self, family):
        return {
            key[0] for key, entry in self.fragments[DocumentFamily.parse(family)].items()
            if entry["degraded"]
        }

    def get_document(self, family, document_id):
        return self.documents[DocumentFamily.parse(family)].get(str(document_id))

    def get_documents(self, family, document_ids):
        family = DocumentFamily.parse(family)
        return {
            doc_id: self.documents[family][doc_id]
            for doc_id in document_ids
            if doc_id in self.documents[family]
        }

    def _hit(self, family, entry, score):
        fragment = entry["fragment"]
        document = self.documents[family][fragment.document_id]
        return SearchResult(
            fragment_id=f"{fragment.document_id}:{fragment.chunk_index}",
            document_id=fragment.document_id,
            family=family,
            content=fragment.text,
            chunk_index=fragment.chunk_index,
            chunk_type=fragment.role.value,
            score=score,
            metadata={
                "title": document.title,
                "document_kind": document.document_kind,
                "issuing_body": document.issuing_body,
                "era": document.era,
                "char_start": fragment.char_start,
                "char_end": fragment.char_end,
                "token_count": fragment.token_count,
            },
        )

    def vector_search(self, family, query_embedding, top_k=10, min_similarity=0.0):
        family = DocumentFamily.parse(family)
        hits = []
        for entry in self.fragments[family].values():
            score = sum(a * b for a, b in zip(query_embedding, entry["embedding"]))
            if score >= min_similarity:
                hits.append(self._hit(family, entry, score))
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:top_k]

    def keyword_search(self, family, query, top_k=10, query_embedding=None):
        family = DocumentFamily.parse(family)
        wanted = set(_terms(query))
        hits = []
        for entry in self.fragments[family].values():
            matched = wanted & set(_terms(entry["fragment"].text))
            if matched:
                hit = self._hit(family, entry, float(len(matched)))
                if query_embedding is not None:
                    hit.metadata["vector_score"] = sum(
                        a * b for a, b in zip(query_embedding, entry["embedding"])
                    )
                hits.append(hit)
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:top_k]

    def hybrid_search(self, family, query_embedding, query_text, top_k=10,
                      vector_weight=0.7, text_weight=0.3, min_similarity=None):
        family = DocumentFamily.parse(family)
        if family in self.fail_search:
            raise self.fail_search[family]
        floor = 0.0 if min_similarity is None else min_similarity
        return fuse_hybrid_results(
            self.vector_search(family, query_embedding, top_k * 2, floor),
            self.keyword_search(family, query_text, top_k * 2, query_embedding),
            top_k=top_k,
            vector_weight=vector_weight,
            text_weight=text_weight,
        )

    def ingestion_status(self, family):
        family = DocumentFamily.parse(family)
        entries = list(self.fragments[family].values())
        return {
            "family": family.value,
            "documents": len(self.documents[family]),
            "fragments": len(entries),
            "embedded_fragments": len(entries),
            "pending_fragments": 0,
            "degraded_fragments": sum(1 for e in entries if e["degraded"]),
            "embedded_documents": len(self.get_embedded_document_ids(family)),
        }


@pytest.fixture
def memory_store():
    return InMemoryIndexStore()
