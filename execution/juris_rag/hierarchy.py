"""
Legal hierarchy weighting.

Mexican case law is not equally authoritative: binding jurisprudencia beats
tesis aisladas, the Pleno of the Supreme Court beats its Salas, which beat
collegiate circuit courts, and newer épocas supersede older ones. The ranker
orders results by this weight first and by relevance second.
"""

import unicodedata
from dataclasses import dataclass
from functools import cmp_to_key

from .documents import DocumentFamily, LegalDocument

BINDING_KIND_WEIGHT = 3
PERSUASIVE_KIND_WEIGHT = 1
DEFAULT_LEVEL = 1
# Precedents are current-era by construction
PRECEDENT_ERA_WEIGHT = 4

# Most specific first: "pleno en materia" must not match the bare "pleno"
ISSUER_LEVELS = (
    ("pleno de la suprema corte", 5),
    ("pleno en materia", 4),
    ("primera sala", 4),
    ("segunda sala", 4),
    ("sala superior", 3),
    ("tribunales colegiados", 2),
    ("tribunal colegiado", 2),
    ("pleno", 5),
)

# "undecima" contains "decima", so it goes first
ERA_LEVELS = (
    ("undecima", 5),
    ("11a.", 5),
    ("decima", 4),
    ("10a.", 4),
    ("novena", 3),
    ("9a.", 3),
    ("octava", 2),
    ("8a.", 2),
)


def _normalize(value: str) -> str:
    """Lowercase and strip accents so "Décima" and "decima" compare equal."""
    decomposed = unicodedata.normalize("NFKD", value or "")
    return "".join(c for c in decomposed if not unicodedata.combining(c)).lower()


def _ladder_level(value: str, ladder: tuple) -> int:
    normalized = _normalize(value)
    for needle, level in ladder:
        if needle in normalized:
            return level
    return DEFAULT_LEVEL


def issuer_weight(issuing_body: str) -> int:
    return _ladder_level(issuing_body, ISSUER_LEVELS)


def era_weight(era: str) -> int:
    return _ladder_level(era, ERA_LEVELS)


def is_binding_kind(document_kind: str) -> bool:
    return "jurisprudencia" in _normalize(document_kind)


@dataclass(frozen=True)
class HierarchyInfo:
    """Authority weights of one document."""
    kind_weight: int
    issuer_weight: int
    era_weight: int
    is_binding: bool

    @property
    def level(self) -> int:
        """Total hierarchy weight used for ordering."""
        return self.kind_weight + self.issuer_weight + self.era_weight

    def to_dict(self) -> dict:
        return {
            "level": self.level,
            "kind_weight": self.kind_weight,
            "issuer_weight": self.issuer_weight,
            "era_weight": self.era_weight,
            "is_binding": self.is_binding,
        }


def hierarchy_for(
    family,
    document_kind: str = "",
    issuing_body: str = "",
    era: str = "",
) -> HierarchyInfo:
    """Weights from the raw metadata fields of either family."""
    family = DocumentFamily.parse(family)
    if family is DocumentFamily.PRECEDENTS:
        return HierarchyInfo(
            kind_weight=BINDING_KIND_WEIGHT,
            issuer_weight=issuer_weight(issuing_body),
            era_weight=PRECEDENT_ERA_WEIGHT,
            is_binding=True,
        )

    binding = is_binding_kind(document_kind)
    return HierarchyInfo(
        kind_weight=BINDING_KIND_WEIGHT if binding else PERSUASIVE_KIND_WEIGHT,
        issuer_weight=issuer_weight(issuing_body),
        era_weight=era_weight(era),
        is_binding=binding,
    )


def document_hierarchy(document: LegalDocument) -> HierarchyInfo:
    return hierarchy_for(
        document.family,
        document_kind=document.document_kind,
        issuing_body=document.issuing_body,
        era=document.era,
    )


def compare_by_hierarchy(a, b) -> int:
    """
    Comparator for objects exposing ``hierarchy`` and ``relevance_score``.

    Negative when ``a`` ranks first. A strictly higher hierarchy level wins
    regardless of relevance; equal levels fall back to relevance.
    """
    if a.hierarchy.level != b.hierarchy.level:
        return b.hierarchy.level - a.hierarchy.level
    if a.relevance_score != b.relevance_score:
        return -1 if a.relevance_score > b.relevance_score else 1
    return 0


hierarchy_sort_key = cmp_to_key(compare_by_hierarchy)
