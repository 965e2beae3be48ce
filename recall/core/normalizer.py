"""
Content normalization and chunking.

Turns a content item into canonical text (type prefix + whitespace-normalized
body) and, when the token estimate is over the limit, an ordered list of
overlapping fixed-size chunks. Pure functions of their input.
"""

import math
import re
import unicodedata
from typing import List

from .errors import ValidationError
from .models import (
    Chunk,
    ContentItem,
    ContentType,
    FileContent,
    KnowledgeContent,
    MessageContent,
    NormalizedContent,
    TranscriptContent,
)

_WHITESPACE = re.compile(r"[ \t\r\f\v]+")
_BLANK_LINES = re.compile(r"\n{3,}")

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Rough token estimate (about four characters per token)."""
    if not text:
        return 0
    return max(1, math.ceil(len(text) / CHARS_PER_TOKEN))


def clean_text(text: str) -> str:
    """Unicode-normalize and collapse whitespace, keeping paragraph breaks."""
    text = unicodedata.normalize("NFKC", text)
    lines = [_WHITESPACE.sub(" ", line).strip() for line in text.split("\n")]
    joined = "\n".join(lines).strip()
    return _BLANK_LINES.sub("\n\n", joined)


def cache_form(text: str) -> str:
    """Form of a text used for cache keys: cleaned and lower-cased."""
    return clean_text(text).lower()


class ContentNormalizer:
    """Build canonical text and chunk lists for content items."""

    def __init__(self, max_tokens: int = 500, chunk_size: int = 1000, chunk_overlap: int = 200):
        if chunk_overlap >= chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        self.max_tokens = max_tokens
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    def normalize(self, item: ContentItem) -> NormalizedContent:
        """Canonical text and chunks for a content item."""
        self.validate(item)

        body = clean_text(item.text)
        canonical = self._prefix(item) + body

        if estimate_tokens(canonical) <= self.max_tokens:
            chunks = [Chunk(0, canonical, 0, len(canonical), estimate_tokens(canonical))]
        else:
            chunks = self.chunk(canonical)

        return NormalizedContent(canonical_text=canonical, chunks=chunks)

    def normalize_query(self, text: str) -> str:
        """Queries are short and never chunked or prefixed."""
        if text is None or not text.strip():
            raise ValidationError("Query text cannot be empty")
        return clean_text(text)

    def validate(self, item: ContentItem) -> None:
        if item is None:
            raise ValidationError("Content item is required")
        if not item.id or not str(item.id).strip():
            raise ValidationError("Content item id cannot be empty")
        if not item.scope_id or not str(item.scope_id).strip():
            raise ValidationError("Content item scope cannot be empty")
        ContentType.parse(item.type)
        if item.text is None or not item.text.strip():
            raise ValidationError(f"Content item {item.id} has empty text")

    def chunk(self, text: str) -> List[Chunk]:
        """Fixed character window with overlap. The last window ends at the end of the text."""
        if len(text) <= self.chunk_size:
            return [Chunk(0, text, 0, len(text), estimate_tokens(text))]

        step = self.chunk_size - self.chunk_overlap
        chunks = []
        start = 0
        while start < len(text):
            end = min(start + self.chunk_size, len(text))
            piece = text[start:end]
            chunks.append(Chunk(len(chunks), piece, start, end, estimate_tokens(piece)))
            if end == len(text):
                break
            start += step
        return chunks

    def _prefix(self, item: ContentItem) -> str:
        details = item.details
        if isinstance(details, MessageContent):
            return f"{details.role}: "
        if isinstance(details, FileContent):
            return f"File: {details.filename} ({details.mime_type})\n\n"
        if isinstance(details, TranscriptContent):
            prefix = f"Transcription: {details.filename}"
            if details.speakers:
                prefix += f"\nSpeakers: {', '.join(details.speakers)}"
            return prefix + "\n\n"
        if isinstance(details, KnowledgeContent):
            lines = [f"Title: {details.title}", f"Category: {details.category}"]
            if details.tags:
                lines.append(f"Tags: {', '.join(details.tags)}")
            return "\n".join(lines) + "\n\n"
        return ""
