"""
Tests for execution/juris_rag/chunker.py

Covers: estimate_tokens, paragraph/sentence span helpers, LegalChunker
        roles, exact-slice offsets, overlap, token budgets, min-size drops,
        and the precedent metadata fragment.
"""

import pytest

from execution.juris_rag.chunker import (
    ChunkConfig,
    Fragment,
    FragmentRole,
    LegalChunker,
    estimate_tokens,
    paragraph_spans,
    sentence_spans,
)
from execution.juris_rag.documents import DocumentFamily, LegalDocument


def _source_for(document, fragment):
    if fragment.role is FragmentRole.TITLE:
        return document.title
    if fragment.role is FragmentRole.ABSTRACT:
        return document.abstract
    if fragment.role is FragmentRole.METADATA:
        return LegalChunker.metadata_summary(document)
    return document.main_body


def _long_body(paragraphs=8):
    return "\n\n".join(
        (f"Párrafo {i}. " + "texto jurídico " * 12).strip() for i in range(paragraphs)
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestEstimateTokens:

    def test_four_chars_per_token_rounded_up(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_custom_ratio(self):
        assert estimate_tokens("abcdef", chars_per_token=3) == 2


class TestSpans:

    def test_paragraph_spans_skip_blank_runs(self):
        text = "uno\n\n  \n dos "
        spans = paragraph_spans(text)
        assert [text[s:e] for s, e in spans] == ["uno", "dos"]

    def test_paragraph_spans_single_paragraph(self):
        text = "  una sola línea  "
        assert [text[s:e] for s, e in paragraph_spans(text)] == ["una sola línea"]

    def test_sentence_spans_split_on_terminal_punctuation(self):
        text = "Primera. Segunda; tercera? Cuarta"
        spans = sentence_spans(text, 0, len(text))
        assert [text[s:e] for s, e in spans] == ["Primera.", "Segunda;", "tercera?", "Cuarta"]

    def test_sentence_spans_respect_bounds(self):
        text = "Fuera. Dentro uno. Dentro dos. Fuera."
        start = text.index("Dentro")
        end = text.index(" Fuera")
        spans = sentence_spans(text, start, end)
        assert [text[s:e] for s, e in spans] == ["Dentro uno.", "Dentro dos."]


# ---------------------------------------------------------------------------
# LegalChunker
# ---------------------------------------------------------------------------

class TestChunkRoles:

    def test_opinion_gets_title_and_body(self, small_chunker, opinion_document):
        fragments = small_chunker.chunk(opinion_document)
        roles = {f.role for f in fragments}
        assert FragmentRole.TITLE in roles
        assert FragmentRole.BODY in roles
        assert FragmentRole.METADATA not in roles

    def test_precedent_gets_metadata_fragment(self, small_chunker, precedent_document):
        fragments = small_chunker.chunk(precedent_document)
        metadata = [f for f in fragments if f.role is FragmentRole.METADATA]
        assert len(metadata) == 1
        assert "Sala: Primera Sala" in metadata[0].text
        assert "Expediente: Amparo en revisión 123/2022" in metadata[0].text

    def test_metadata_summary_empty_for_opinions(self, opinion_document):
        assert LegalChunker.metadata_summary(opinion_document) == ""

    def test_short_title_is_skipped(self, small_chunker):
        doc = LegalDocument(
            document_id="1", family="tesis", title="Tesis",
            body="Cuerpo suficientemente largo para producir un fragmento.",
        )
        roles = [f.role for f in small_chunker.chunk(doc)]
        assert FragmentRole.TITLE not in roles

    def test_empty_document_yields_nothing(self, chunker):
        doc = LegalDocument(document_id="1", family="tesis", title="Tesis")
        assert chunker.chunk(doc) == []

    def test_body_below_min_tokens_is_dropped(self, chunker):
        doc = LegalDocument(
            document_id="1", family="tesis",
            title="AMPARO DIRECTO. PROCEDENCIA CONTRA SENTENCIAS DEFINITIVAS.",
            body="Texto breve.",
        )
        assert [f.role for f in chunker.chunk(doc)] == [FragmentRole.TITLE]

    def test_body_full_preferred_over_body(self, small_chunker, opinion_document):
        opinion_document.body_full = "Texto íntegro de la ejecutoria con todas sus consideraciones."
        bodies = [f for f in small_chunker.chunk(opinion_document) if f.role is FragmentRole.BODY]
        assert len(bodies) == 1
        assert bodies[0].text == opinion_document.body_full


class TestChunkOffsets:

    def test_every_fragment_is_exact_slice(self, small_chunker, corpus):
        for document in corpus:
            for fragment in small_chunker.chunk(document):
                source = _source_for(document, fragment)
                assert source[fragment.char_start:fragment.char_end] == fragment.text

    def test_indices_are_contiguous(self, small_chunker, precedent_document):
        fragments = small_chunker.chunk(precedent_document)
        assert [f.chunk_index for f in fragments] == list(range(len(fragments)))

    def test_fragments_belong_to_document(self, small_chunker, opinion_document):
        assert all(f.document_id == "2012345" for f in small_chunker.chunk(opinion_document))


class TestChunkPacking:

    @pytest.fixture
    def long_document(self):
        return LegalDocument(
            document_id="77", family=DocumentFamily.OPINIONS,
            title="CONCEPTOS DE VIOLACIÓN. SU ESTUDIO EN EL AMPARO DIRECTO.",
            body=_long_body(),
        )

    def test_body_split_into_several_fragments(self, small_chunker, long_document):
        bodies = [f for f in small_chunker.chunk(long_document) if f.role is FragmentRole.BODY]
        assert len(bodies) > 1

    def test_body_fragments_within_budget(self, small_chunker, long_document):
        for fragment in small_chunker.chunk(long_document):
            assert fragment.token_count <= 120
            assert fragment.token_count == estimate_tokens(fragment.text)

    def test_consecutive_body_fragments_overlap(self, small_chunker, long_document):
        bodies = [f for f in small_chunker.chunk(long_document) if f.role is FragmentRole.BODY]
        for previous, current in zip(bodies, bodies[1:]):
            assert current.char_start < previous.char_end
            assert previous.char_end - current.char_start <= 20 * 4

    def test_body_is_fully_covered(self, small_chunker, long_document):
        bodies = [f for f in small_chunker.chunk(long_document) if f.role is FragmentRole.BODY]
        body = long_document.body
        assert bodies[0].char_start == 0
        assert bodies[-1].char_end == len(body)
        for previous, current in zip(bodies, bodies[1:]):
            assert current.char_start <= previous.char_end

    def test_oversized_paragraph_split_into_sentences(self, small_chunker):
        sentence = "La autoridad responsable debe rendir su informe justificado dentro del plazo legal. "
        body = (sentence * 12).strip()
        doc = LegalDocument(
            document_id="88", family="tesis",
            title="INFORME JUSTIFICADO. PLAZO PARA RENDIRLO.", body=body,
        )
        bodies = [f for f in small_chunker.chunk(doc) if f.role is FragmentRole.BODY]
        assert len(bodies) > 1
        for fragment in bodies:
            assert fragment.token_count <= 120
            assert body[fragment.char_start:fragment.char_end] == fragment.text

    def test_abstract_uses_tighter_budget(self, chunker):
        paragraph = "La tesis sostiene que el amparo procede contra actos de autoridad. " * 5
        doc = LegalDocument(
            document_id="99", family="tesis",
            title="ACTOS DE AUTORIDAD. CONCEPTO PARA EFECTOS DEL AMPARO.",
            abstract="\n\n".join([paragraph.strip()] * 6),
        )
        abstracts = [f for f in chunker.chunk(doc) if f.role is FragmentRole.ABSTRACT]
        assert abstracts
        assert all(f.token_count <= 300 for f in abstracts)


class TestFragmentToDict:

    def test_keys(self):
        fragment = Fragment(
            document_id="1", text="texto", chunk_index=0, role=FragmentRole.BODY,
            char_start=0, char_end=5, token_count=2,
        )
        data = fragment.to_dict()
        assert data["content"] == "texto"
        assert data["chunk_type"] == "body"
        assert data["char_end"] == 5


class TestChunkConfig:

    def test_defaults(self):
        cfg = ChunkConfig()
        assert cfg.max_tokens == 600
        assert cfg.overlap_tokens == 75
        assert cfg.min_tokens == 100
        assert cfg.overlap_chars == 300
