"""
Tests for execution/juris_rag/citation.py

Covers: short and formal citations for tesis and precedentes, skipping of
        missing fields, and the Citation dataclass.
"""

from execution.juris_rag.citation import (
    Citation,
    format_formal_citation,
    format_short_citation,
)
from execution.juris_rag.documents import LegalDocument


class TestShortCitation:

    def test_opinion(self, opinion_document):
        citation = format_short_citation(opinion_document)
        assert citation.startswith('"SUSPENSIÓN DEL ACTO RECLAMADO')
        assert "Jurisprudencia" in citation
        assert "Segunda Sala" in citation
        assert "Décima Época" in citation
        assert citation.endswith("Tomo II, página 1234")

    def test_precedent(self, precedent_document):
        citation = format_short_citation(precedent_document)
        assert "Primera Sala" in citation
        assert "Amparo en revisión 123/2022" in citation

    def test_missing_fields_skipped(self):
        doc = LegalDocument(document_id="5", family="tesis", title="AMPARO DIRECTO.")
        assert format_short_citation(doc) == '"AMPARO DIRECTO."'


class TestFormalCitation:

    def test_opinion_layout(self, opinion_document):
        heading, meta = format_formal_citation(opinion_document).split("\n")
        assert heading == opinion_document.title.upper()
        assert "Libro 30, Tomo II, mayo de 2016, página 1234" in meta
        assert "Tesis: 2a./J. 45/2016 (10a.)" in meta
        assert "Materia(s): Común" in meta
        assert meta.endswith("Registro digital: 2012345.")

    def test_precedent_layout(self, precedent_document):
        text = format_formal_citation(precedent_document)
        assert "Amparo en Revisión: Amparo en revisión 123/2022" in text
        assert "Promovente: Comercializadora del Norte" in text
        assert "Fecha de publicación: 2023-05-12" in text
        assert text.endswith("Registro IUS: 30100.")

    def test_no_empty_segments(self):
        doc = LegalDocument(document_id="5", family="precedentes", title="Suspensión")
        text = format_formal_citation(doc)
        assert text == "SUSPENSIÓN"
        assert "None" not in text
        assert ". ." not in text


class TestCitation:

    def test_from_document(self, opinion_document):
        citation = Citation.from_document(opinion_document, relevance_score=0.82)
        assert citation.short_format() == format_short_citation(opinion_document)
        assert citation.long_format() == format_formal_citation(opinion_document)
        data = citation.to_dict()
        assert data["family"] == "opinions"
        assert data["relevance_score"] == 0.82
        assert data["source_url"].endswith("2012345")
