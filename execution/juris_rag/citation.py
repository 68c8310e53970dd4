"""
Citation Formatting for Tesis and Precedentes

Renders a LegalDocument's stored metadata as:
- a short inline citation: "RUBRO". Jurisprudencia. Segunda Sala. Décima Época...
- a formal citation block following the Semanario Judicial layout

Pure functions over the document; missing fields are skipped rather than
rendered empty.
"""

from dataclasses import dataclass

from .documents import DocumentFamily, LegalDocument


def _join(parts, separator: str) -> str:
    return separator.join(str(p).strip() for p in parts if p and str(p).strip())


def _opinion_location(extra: dict, long_form: bool) -> str:
    """Libro/Tomo/month/year/page portion of a tesis citation."""
    tomo = extra.get("localizacion_tomo")
    pagina = extra.get("localizacion_pagina")
    if not long_form:
        return _join([
            f"Tomo {tomo}" if tomo else "",
            f"página {pagina}" if pagina else "",
        ], ", ")

    libro = extra.get("localizacion_libro")
    mes = extra.get("localizacion_mes")
    anio = extra.get("localizacion_anio")
    if mes and anio:
        fecha = f"{mes} de {anio}"
    else:
        fecha = anio or ""
    return _join([
        f"Libro {libro}" if libro else "",
        f"Tomo {tomo}" if tomo else "",
        fecha,
        f"página {pagina}" if pagina else "",
    ], ", ")


def format_short_citation(document: LegalDocument) -> str:
    """One-line citation suitable for inline references."""
    extra = document.extra or {}
    if document.family is DocumentFamily.PRECEDENTS:
        return _join([
            f'"{document.title}"',
            document.issuing_body,
            document.document_kind,
            extra.get("tipo_asunto_expediente"),
            document.locator,
        ], ". ")

    return _join([
        f'"{document.title}"',
        document.document_kind,
        extra.get("organo_jurisdiccional") or document.issuing_body,
        document.era,
        extra.get("fuente"),
        _opinion_location(extra, long_form=False),
    ], ". ")


def format_formal_citation(document: LegalDocument) -> str:
    """Multi-line formal citation: uppercase heading, then the metadata line."""
    extra = document.extra or {}
    heading = (document.title or "").strip().upper()

    if document.family is DocumentFamily.PRECEDENTS:
        expediente = extra.get("tipo_asunto_expediente")
        asunto = (
            f"{document.document_kind}: {expediente}"
            if document.document_kind and expediente
            else document.document_kind or expediente
        )
        meta = [
            document.issuing_body,
            asunto,
            f"Promovente: {extra['promovente']}" if extra.get("promovente") else "",
            document.locator,
            f"Fecha de publicación: {document.publication_date}" if document.publication_date else "",
            f"Registro IUS: {extra['ius']}" if extra.get("ius") else "",
        ]
    else:
        organo = extra.get("organo_jurisdiccional")
        meta = [
            document.document_kind,
            document.issuing_body,
            organo if organo and organo != document.issuing_body else "",
            document.era,
            extra.get("fuente"),
            _opinion_location(extra, long_form=True),
            f"Tesis: {extra['tesis_numero']}" if extra.get("tesis_numero") else "",
            f"Materia(s): {document.subjects}" if document.subjects else "",
            f"Registro digital: {document.document_id}",
        ]

    meta_line = _join(meta, ". ")
    return _join([heading, f"{meta_line}." if meta_line else ""], "\n")


@dataclass
class Citation:
    """A formatted citation for one retrieved document."""
    document_id: str
    family: DocumentFamily
    title: str
    short: str
    formal: str
    source_url: str = ""
    relevance_score: float = 0.0

    @classmethod
    def from_document(cls, document: LegalDocument, relevance_score: float = 0.0) -> "Citation":
        return cls(
            document_id=document.document_id,
            family=document.family,
            title=document.title,
            short=format_short_citation(document),
            formal=format_formal_citation(document),
            source_url=document.source_url,
            relevance_score=relevance_score,
        )

    def short_format(self) -> str:
        """Short inline citation format."""
        return self.short

    def long_format(self) -> str:
        """Formal citation block."""
        return self.formal

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "family": self.family.value,
            "title": self.title,
            "source_url": self.source_url,
            "relevance_score": self.relevance_score,
            "short_citation": self.short_format(),
            "long_citation": self.long_format(),
        }
