"""
Tests for execution/juris_rag/documents.py

Covers: DocumentFamily parsing, LegalDocument validation and serialization,
        store-row mapping, scraper record mapping, and export loading.
"""

import json

import pytest

from execution.juris_rag.documents import (
    DocumentFamily,
    LegalDocument,
    load_documents,
    opinion_from_record,
    precedent_from_record,
)
from execution.juris_rag.errors import QueryValidationError


TESIS_RECORD = {
    "registro": 2012345,
    "rubro": "SUSPENSIÓN DEL ACTO RECLAMADO. PROCEDE CONTRA ACTOS DE EJECUCIÓN CONTINUA.",
    "texto": "La suspensión procede respecto de los efectos que aún no se consuman.",
    "tipo": "Jurisprudencia",
    "epoca": "Décima Época",
    "instancia": "Segunda Sala",
    "materias": ["Común", "Administrativa"],
    "fuente": "Gaceta del Semanario Judicial de la Federación",
    "tesis_numero": "2a./J. 45/2016 (10a.)",
    "localizacion_libro": "30",
    "localizacion_tomo": "II",
    "localizacion_pagina": "1234",
    "url": "https://sjf2.scjn.gob.mx/detalle/tesis/2012345",
    "notas": "",
}

PRECEDENTE_RECORD = {
    "ius": 30100,
    "rubro": "SUSPENSIÓN EN AMPARO INDIRECTO.",
    "texto_publicacion": "La Primera Sala resolvió conceder la suspensión.",
    "sala": "Primera Sala",
    "tipo_asunto": "Amparo en Revisión",
    "tipo_asunto_expediente": "Amparo en revisión 123/2022",
    "promovente": "Comercializadora del Norte, S.A. de C.V.",
    "temas": ["Suspensión"],
    "localizacion": "Semanario Judicial de la Federación, mayo de 2023",
    "fecha_publicacion": "2023-05-12",
    "url_origen": "https://bj.scjn.gob.mx/doc/sentencias_pub/30100",
}


class TestDocumentFamily:

    @pytest.mark.parametrize("value,expected", [
        ("opinions", DocumentFamily.OPINIONS),
        ("tesis", DocumentFamily.OPINIONS),
        (" Tesis ", DocumentFamily.OPINIONS),
        ("precedentes", DocumentFamily.PRECEDENTS),
        ("precedent", DocumentFamily.PRECEDENTS),
        (DocumentFamily.PRECEDENTS, DocumentFamily.PRECEDENTS),
    ])
    def test_parse(self, value, expected):
        assert DocumentFamily.parse(value) is expected

    def test_unknown_family(self):
        with pytest.raises(QueryValidationError):
            DocumentFamily.parse("leyes")


class TestLegalDocument:

    def test_family_coerced(self):
        doc = LegalDocument(document_id="1", family="tesis", title="T")
        assert doc.family is DocumentFamily.OPINIONS

    def test_main_body_prefers_full_text(self):
        doc = LegalDocument(document_id="1", family="tesis", title="T", body="corto", body_full="completo")
        assert doc.main_body == "completo"
        doc.body_full = ""
        assert doc.main_body == "corto"

    def test_validate_requires_id_and_title(self):
        with pytest.raises(QueryValidationError):
            LegalDocument(document_id="", family="tesis", title="T").validate()
        with pytest.raises(QueryValidationError):
            LegalDocument(document_id="1", family="tesis", title="   ").validate()

    def test_to_dict(self, opinion_document):
        data = opinion_document.to_dict()
        assert data["family"] == "opinions"
        assert data["extra"]["tesis_numero"] == "2a./J. 45/2016 (10a.)"

    def test_from_row_parses_json_metadata(self):
        doc = LegalDocument.from_row("precedentes", {
            "id": 30100, "title": "SUSPENSIÓN.", "body": None,
            "metadata": json.dumps({"ius": "30100"}),
        })
        assert doc.document_id == "30100"
        assert doc.body == ""
        assert doc.extra == {"ius": "30100"}
        assert doc.family is DocumentFamily.PRECEDENTS


class TestRecordMapping:

    def test_opinion_from_record(self):
        doc = opinion_from_record(TESIS_RECORD)
        assert doc.document_id == "2012345"
        assert doc.title.startswith("SUSPENSIÓN DEL ACTO RECLAMADO")
        assert doc.document_kind == "Jurisprudencia"
        assert doc.era == "Décima Época"
        assert doc.issuing_body == "Segunda Sala"
        assert doc.subjects == "Común, Administrativa"
        assert doc.locator == "30, II, 1234"
        assert doc.extra["fuente"] == "Gaceta del Semanario Judicial de la Federación"
        assert "notas" not in doc.extra

    def test_precedent_from_record(self):
        doc = precedent_from_record(PRECEDENTE_RECORD)
        assert doc.document_id == "30100"
        assert doc.family is DocumentFamily.PRECEDENTS
        assert doc.body == "La Primera Sala resolvió conceder la suspensión."
        assert doc.issuing_body == "Primera Sala"
        assert doc.document_kind == "Amparo en Revisión"
        assert doc.source_url.endswith("/30100")
        assert doc.extra["promovente"].startswith("Comercializadora")


class TestLoadDocuments:

    def test_json_array(self, tmp_path):
        path = tmp_path / "tesis.json"
        path.write_text(json.dumps([TESIS_RECORD]), encoding="utf-8")
        docs = load_documents(str(path), "tesis")
        assert [d.document_id for d in docs] == ["2012345"]

    def test_json_lines_skips_invalid(self, tmp_path):
        path = tmp_path / "precedentes.jsonl"
        lines = [
            json.dumps(PRECEDENTE_RECORD, ensure_ascii=False),
            "",
            json.dumps({"ius": 1, "rubro": ""}),
        ]
        path.write_text("\n".join(lines), encoding="utf-8")
        docs = load_documents(str(path), DocumentFamily.PRECEDENTS)
        assert [d.document_id for d in docs] == ["30100"]
