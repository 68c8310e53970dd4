"""
Legal document model for the two corpus families.

Opinions (tesis) and precedents (precedentes) share one LegalDocument shape
tagged with a DocumentFamily; the handful of fields only one family carries
live in ``extra``. Records coming from the scraper exports use the Spanish
field names of the source corpus and are mapped here.
"""

import json
import logging
from enum import Enum
from pathlib import Path
from typing import Any
from dataclasses import dataclass, field

from .errors import QueryValidationError

logger = logging.getLogger(__name__)


class DocumentFamily(str, Enum):
    """The two structurally parallel corpora."""
    OPINIONS = "opinions"
    PRECEDENTS = "precedents"

    @classmethod
    def parse(cls, value: "str | DocumentFamily") -> "DocumentFamily":
        """Accept enum members, canonical names, and the Spanish aliases."""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        aliases = {
            "opinions": cls.OPINIONS,
            "opinion": cls.OPINIONS,
            "tesis": cls.OPINIONS,
            "precedents": cls.PRECEDENTS,
            "precedent": cls.PRECEDENTS,
            "precedentes": cls.PRECEDENTS,
        }
        if normalized not in aliases:
            raise QueryValidationError(f"Unknown document family: {value!r}")
        return aliases[normalized]


# Per-family metadata extension keys, kept in ``LegalDocument.extra``
OPINION_EXTRA_FIELDS = (
    "tesis_numero", "organo_jurisdiccional", "fuente",
    "localizacion_libro", "localizacion_tomo", "localizacion_mes",
    "localizacion_anio", "localizacion_pagina",
    "clave", "notas", "formas_integracion", "extra_sections",
)
PRECEDENT_EXTRA_FIELDS = (
    "ius", "tipo_asunto_expediente", "promovente",
    "votos", "votacion", "semanal",
)


@dataclass
class LegalDocument:
    """A single opinion or precedent as stored and retrieved."""
    document_id: str
    family: DocumentFamily
    title: str
    abstract: str = ""
    body: str = ""
    body_full: str = ""
    issuing_body: str = ""      # instancia / sala
    document_kind: str = ""     # Jurisprudencia / Tesis Aislada / tipo de asunto
    era: str = ""               # época
    subjects: str = ""          # materias / temas
    publication_date: str = ""
    source_url: str = ""
    locator: str = ""           # localización
    extra: dict = field(default_factory=dict)

    def __post_init__(self):
        self.family = DocumentFamily.parse(self.family)

    @property
    def main_body(self) -> str:
        """Most complete body variant available."""
        return self.body_full or self.body or ""

    def validate(self) -> None:
        """Reject documents missing the fields every later stage relies on."""
        if not self.document_id or not str(self.document_id).strip():
            raise QueryValidationError("Document is missing its identifier")
        if not self.title or not self.title.strip():
            raise QueryValidationError(
                f"Document {self.document_id} is missing its title"
            )

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "family": self.family.value,
            "title": self.title,
            "abstract": self.abstract,
            "body": self.body,
            "body_full": self.body_full,
            "issuing_body": self.issuing_body,
            "document_kind": self.document_kind,
            "era": self.era,
            "subjects": self.subjects,
            "publication_date": self.publication_date,
            "source_url": self.source_url,
            "locator": self.locator,
            "extra": dict(self.extra),
        }

    @classmethod
    def from_row(cls, family: DocumentFamily, row: dict) -> "LegalDocument":
        """Build a document from a store row (see VectorStore schema)."""
        metadata = row.get("metadata") or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return cls(
            document_id=str(row["id"]),
            family=family,
            title=row.get("title") or "",
            abstract=row.get("abstract") or "",
            body=row.get("body") or "",
            body_full=row.get("body_full") or "",
            issuing_body=row.get("issuing_body") or "",
            document_kind=row.get("document_kind") or "",
            era=row.get("era") or "",
            subjects=row.get("subjects") or "",
            publication_date=row.get("publication_date") or "",
            source_url=row.get("source_url") or "",
            locator=row.get("locator") or "",
            extra=metadata,
        )


# =============================================================================
# Scraper export records
# =============================================================================

def _text(value: Any) -> str:
    """Normalize scalar or list values from the exports into a string."""
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v).strip() for v in value if str(v).strip())
    return str(value).strip()


def _pick(record: dict, *keys: str) -> str:
    for key in keys:
        value = _text(record.get(key))
        if value:
            return value
    return ""


def opinion_from_record(record: dict) -> LegalDocument:
    """Map a tesis export record onto a LegalDocument."""
    localizacion = ", ".join(
        part for part in (
            _pick(record, "localizacion_libro"),
            _pick(record, "localizacion_tomo"),
            _pick(record, "localizacion_pagina"),
        ) if part
    )
    extra = {}
    for key in OPINION_EXTRA_FIELDS:
        value = record.get(key)
        if value not in (None, "", [], {}):
            extra[key] = value

    return LegalDocument(
        document_id=_pick(record, "id", "registro", "ius"),
        family=DocumentFamily.OPINIONS,
        title=_pick(record, "title", "rubro"),
        abstract=_pick(record, "abstract"),
        body=_pick(record, "body", "texto"),
        body_full=_pick(record, "body_full"),
        issuing_body=_pick(record, "instancia", "organo_jurisdiccional"),
        document_kind=_pick(record, "tipo"),
        era=_pick(record, "epoca"),
        subjects=_pick(record, "materias"),
        publication_date=_pick(record, "fecha_publicacion"),
        source_url=_pick(record, "url"),
        locator=_pick(record, "localizacion") or localizacion,
        extra=extra,
    )


def precedent_from_record(record: dict) -> LegalDocument:
    """Map a precedente export record onto a LegalDocument."""
    extra = {}
    for key in PRECEDENT_EXTRA_FIELDS:
        value = record.get(key)
        if value not in (None, "", [], {}):
            extra[key] = value

    return LegalDocument(
        document_id=_pick(record, "id", "ius"),
        family=DocumentFamily.PRECEDENTS,
        title=_pick(record, "rubro", "title"),
        body=_pick(record, "texto_publicacion", "body"),
        issuing_body=_pick(record, "sala"),
        document_kind=_pick(record, "tipo_asunto"),
        era="",
        subjects=_pick(record, "temas"),
        publication_date=_pick(record, "fecha_publicacion"),
        source_url=_pick(record, "url_origen", "url"),
        locator=_pick(record, "localizacion"),
        extra=extra,
    )


_RECORD_PARSERS = {
    DocumentFamily.OPINIONS: opinion_from_record,
    DocumentFamily.PRECEDENTS: precedent_from_record,
}


def load_documents(path: str, family: "str | DocumentFamily") -> list[LegalDocument]:
    """
    Load an export file into documents.

    Accepts a JSON array or JSON-lines file. Records without an identifier or
    title are skipped with a warning instead of aborting the whole load.

    Args:
        path: File to read.
        family: Which corpus the file belongs to.

    Returns:
        Parsed documents in file order.
    """
    family = DocumentFamily.parse(family)
    parser = _RECORD_PARSERS[family]
    file_path = Path(path)
    raw = file_path.read_text(encoding="utf-8")

    stripped = raw.lstrip()
    if stripped.startswith("["):
        records = json.loads(stripped)
    else:
        records = [json.loads(line) for line in raw.splitlines() if line.strip()]

    documents = []
    skipped = 0
    for record in records:
        document = parser(record)
        try:
            document.validate()
        except QueryValidationError as e:
            skipped += 1
            logger.warning(f"Skipping record in {file_path.name}: {e}")
            continue
        documents.append(document)

    logger.info(
        f"Loaded {len(documents)} {family.value} from {file_path.name}"
        + (f" ({skipped} skipped)" if skipped else "")
    )
    return documents

