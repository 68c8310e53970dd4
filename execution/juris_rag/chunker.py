"""
Fragment Segmenter for Legal Opinions and Precedents

Splits a LegalDocument's fields into overlapping fragments sized for
embedding models:
- Title: one fragment when longer than a few words
- Abstract: packed with a tighter budget when present
- Body: paragraphs greedily packed up to the token budget, with a trailing
  overlap of the previous fragment seeding the next one
- Metadata summary: one fragment for precedents (sala, asunto, expediente...)

Every fragment's text is an exact slice of its source field, so
``source[char_start:char_end] == fragment.text`` always holds.
"""

import re
import math
import logging
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional

from .documents import DocumentFamily, LegalDocument

logger = logging.getLogger(__name__)

# Blank line (optionally holding whitespace) between paragraphs
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
# Whitespace following sentence-ending punctuation
_SENTENCE_BREAK = re.compile(r"(?<=[.!?;])\s+")


class FragmentRole(str, Enum):
    """Structural role of a fragment within its document."""
    TITLE = "title"
    ABSTRACT = "abstract"
    BODY = "body"
    METADATA = "metadata"


@dataclass
class Fragment:
    """A contiguous slice of one document field, sized for embedding."""
    document_id: str
    text: str
    chunk_index: int
    role: FragmentRole
    char_start: int
    char_end: int
    token_count: int
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "content": self.text,
            "chunk_index": self.chunk_index,
            "chunk_type": self.role.value,
            "char_start": self.char_start,
            "char_end": self.char_end,
            "token_count": self.token_count,
            "metadata": self.metadata,
        }


@dataclass
class ChunkConfig:
    """Configuration for fragment sizing."""
    max_tokens: int = 600
    overlap_tokens: int = 75
    min_tokens: int = 100          # Packed fragments below this are dropped
    chars_per_token: int = 4
    abstract_max_tokens: int = 300
    # Single-fragment fields need more characters than this
    min_title_chars: int = 10
    min_abstract_chars: int = 50
    min_metadata_chars: int = 50

    @property
    def overlap_chars(self) -> int:
        return self.overlap_tokens * self.chars_per_token


def estimate_tokens(text: str, chars_per_token: int = 4) -> int:
    """Rough token estimate used for every budget decision."""
    return math.ceil(len(text) / chars_per_token)


def _trim_span(text: str, start: int, end: int) -> tuple[int, int]:
    """Shrink [start, end) so it does not begin or end on whitespace."""
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return start, end


def paragraph_spans(text: str) -> list[tuple[int, int]]:
    """Character spans of the non-empty paragraphs in ``text``."""
    spans = []
    pos = 0
    for match in _PARAGRAPH_BREAK.finditer(text):
        spans.append(_trim_span(text, pos, match.start()))
        pos = match.end()
    spans.append(_trim_span(text, pos, len(text)))
    return [(s, e) for s, e in spans if e > s]


def sentence_spans(text: str, start: int, end: int) -> list[tuple[int, int]]:
    """Character spans of the sentences inside text[start:end]."""
    spans = []
    pos = start
    for match in _SENTENCE_BREAK.finditer(text, start, end):
        spans.append(_trim_span(text, pos, match.start()))
        pos = match.end()
    spans.append(_trim_span(text, pos, end))
    return [(s, e) for s, e in spans if e > s]


class LegalChunker:
    """
    Segments opinions and precedents into role-tagged fragments.

    Pure function of the input document and configuration; no I/O.
    """

    def __init__(self, config: Optional[ChunkConfig] = None):
        self.config = config or ChunkConfig()

    def _estimate(self, text: str) -> int:
        return estimate_tokens(text, self.config.chars_per_token)

    def chunk(self, document: LegalDocument) -> list[Fragment]:
        """
        Split a document into fragments.

        Args:
            document: Opinion or precedent to segment.

        Returns:
            Fragments renumbered 0..n-1 in emission order. Empty documents
            yield an empty list.
        """
        fragments: list[Fragment] = []
        cfg = self.config

        title = document.title or ""
        if len(title.strip()) > cfg.min_title_chars:
            fragments.extend(self._single(document.document_id, title, FragmentRole.TITLE))

        abstract = document.abstract or ""
        if len(abstract.strip()) > cfg.min_abstract_chars:
            fragments.extend(self._pack(
                document.document_id,
                abstract,
                FragmentRole.ABSTRACT,
                max_tokens=min(cfg.max_tokens, cfg.abstract_max_tokens),
            ))

        body = document.main_body
        if body.strip():
            fragments.extend(self._pack(
                document.document_id, body, FragmentRole.BODY, max_tokens=cfg.max_tokens,
            ))

        summary = self.metadata_summary(document)
        if len(summary) > cfg.min_metadata_chars:
            fragments.extend(self._single(document.document_id, summary, FragmentRole.METADATA))

        for index, fragment in enumerate(fragments):
            fragment.chunk_index = index

        logger.debug(
            f"Segmented {document.family.value}/{document.document_id} "
            f"into {len(fragments)} fragments"
        )
        return fragments

    @staticmethod
    def metadata_summary(document: LegalDocument) -> str:
        """Labelled metadata line for precedents; opinions carry none."""
        if document.family is not DocumentFamily.PRECEDENTS:
            return ""
        extra = document.extra
        parts = [
            ("Sala", document.issuing_body),
            ("Tipo de asunto", document.document_kind),
            ("Expediente", extra.get("tipo_asunto_expediente")),
            ("Promovente", extra.get("promovente")),
            ("Localización", document.locator),
            ("Fecha", document.publication_date),
        ]
        return ". ".join(f"{label}: {value}" for label, value in parts if value)

    def _single(self, document_id: str, text: str, role: FragmentRole) -> list[Fragment]:
        start, end = _trim_span(text, 0, len(text))
        piece = text[start:end]
        return [Fragment(
            document_id=document_id,
            text=piece,
            chunk_index=0,
            role=role,
            char_start=start,
            char_end=end,
            token_count=self._estimate(piece),
        )]

    def _units(self, text: str, max_tokens: int) -> list[tuple[int, int]]:
        """Paragraph spans, with oversized paragraphs expanded into sentences.

        A paragraph is oversized when it would not fit alongside a full
        overlap seed.
        """
        limit = max(max_tokens - self.config.overlap_tokens, 1)
        units = []
        for start, end in paragraph_spans(text):
            if self._estimate(text[start:end]) > limit:
                units.extend(sentence_spans(text, start, end))
            else:
                units.append((start, end))
        return units

    def _pack(
        self,
        document_id: str,
        text: str,
        role: FragmentRole,
        max_tokens: int,
    ) -> list[Fragment]:
        """Greedily pack units into fragments up to ``max_tokens``."""
        cfg = self.config
        fragments = []
        max_chars = max_tokens * cfg.chars_per_token
        cur_start: Optional[int] = None
        cur_end = 0

        for start, end in self._units(text, max_tokens):
            if cur_start is None:
                cur_start, cur_end = start, end
                continue

            if self._estimate(text[cur_start:end]) <= max_tokens:
                cur_end = end
                continue

            self._emit(fragments, document_id, text, role, cur_start, cur_end)

            # Seed with the previous tail, shortened if the unit leaves no room
            seed_start = max(cur_start, cur_end - cfg.overlap_chars)
            seed_start = min(max(seed_start, end - max_chars), start)
            cur_start, cur_end = seed_start, end

        if cur_start is not None:
            self._emit(fragments, document_id, text, role, cur_start, cur_end)

        return fragments

    def _emit(
        self,
        fragments: list[Fragment],
        document_id: str,
        text: str,
        role: FragmentRole,
        start: int,
        end: int,
    ) -> None:
        piece = text[start:end]
        tokens = self._estimate(piece)
        if tokens < self.config.min_tokens:
            logger.debug(f"Dropping {role.value} fragment of {tokens} tokens from {document_id}")
            return
        fragments.append(Fragment(
            document_id=document_id,
            text=piece,
            chunk_index=len(fragments),
            role=role,
            char_start=start,
            char_end=end,
            token_count=tokens,
        ))
