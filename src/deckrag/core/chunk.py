"""Chunking strategies: one chunk per page, fixed window with overlap, and section-aware semantic."""

import logging
import math
import re
from dataclasses import dataclass
from typing import List, Optional, Pattern, Sequence, Tuple

from .errors import ChunkBoundaryError
from .extract import PAGE_SEPARATOR
from .models import Chunk, ChunkMetadata, ChunkOptions, ChunkStrategy, ExtractedPage

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 500
DEFAULT_OVERLAP_TOKENS = 50
CHARS_PER_TOKEN = 4  # Rough estimate, never a real tokenizer
SENTENCE_TERMINATOR = ". "
PAGE_SEPARATOR_LENGTH = len(PAGE_SEPARATOR)

_PARAGRAPH_BREAK_RE = re.compile(r"\n[ \t\r\f\v]*\n\s*")

Span = Tuple[int, int]


@dataclass(frozen=True)
class SectionPattern:
    """A named heading heuristic."""
    kind: str
    regex: Pattern[str]


# Tried in order; when two patterns match at the same offset the earlier one wins
SECTION_PATTERNS: Tuple[SectionPattern, ...] = (
    SectionPattern("markdown", re.compile(r"^#{1,3}[ \t]+(.+?)[ \t]*$", re.MULTILINE)),
    SectionPattern("all_caps", re.compile(r"^([A-Z][A-Z \t]+)$", re.MULTILINE)),
    SectionPattern("numbered", re.compile(r"^\d+\.[ \t]+([A-Z].*)$", re.MULTILINE)),
    SectionPattern("title_case", re.compile(r"^([A-Z][a-z]+(?: [A-Z][a-z]+)*):?$", re.MULTILINE)),
)


@dataclass(frozen=True)
class Section:
    """A titled slice of the document; ``start`` is the absolute offset of ``content``."""
    title: Optional[str]
    content: str
    start: int


def estimate_token_count(text: str) -> int:
    """Approximate token count from character length, rounded up."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def find_page_number(char_position: int, pages: Sequence[ExtractedPage]) -> Optional[int]:
    """Find which page a character position of the full text belongs to."""
    accumulated = 0
    for page in pages:
        accumulated += page.char_count + PAGE_SEPARATOR_LENGTH
        if char_position < accumulated:
            return page.page_number

    return pages[-1].page_number if pages else None


def _strip_span(text: str, start: int, end: int) -> Optional[Span]:
    """Shrink [start, end) to its non-whitespace content; None when blank."""
    segment = text[start:end]
    stripped = segment.strip()
    if not stripped:
        return None
    leading = len(segment) - len(segment.lstrip())
    return start + leading, start + leading + len(stripped)


def _make_chunk(
    index: int,
    text: str,
    span: Span,
    pages: Sequence[ExtractedPage],
    section: Optional[str] = None,
) -> Chunk:
    start, end = span
    content = text[start:end]
    token_count = estimate_token_count(content)
    return Chunk(
        index=index,
        content=content,
        page_number=find_page_number(start, pages),
        section=section,
        token_count=token_count,
        metadata=ChunkMetadata(start_char=start, end_char=end, token_count=token_count),
    )


# -----------------------------
# Span builders (offsets relative to the text they are given)
# -----------------------------
def _sentence_cut(text: str, start: int, end: int, max_chars: int) -> int:
    """Pull a window end back to the last sentence terminator, if that keeps half the window."""
    terminator = text.rfind(SENTENCE_TERMINATOR, start, end + 1)
    if terminator == -1:
        # No terminators at all (tables, code): keep the raw cut
        return end
    if terminator <= start + max_chars / 2:
        return end
    return terminator + 1


def _fixed_spans(text: str, max_tokens: int, overlap_tokens: int) -> List[Span]:
    max_chars = max(max_tokens * CHARS_PER_TOKEN, 1)
    overlap_chars = max(overlap_tokens * CHARS_PER_TOKEN, 0)
    text_length = len(text)

    spans: List[Span] = []
    start = 0
    while start < text_length:
        end = min(start + max_chars, text_length)
        chunk_end = _sentence_cut(text, start, end, max_chars) if end < text_length else end

        span = _strip_span(text, start, chunk_end)
        if span is not None:
            spans.append(span)

        if chunk_end >= text_length:
            break

        next_start = chunk_end - overlap_chars
        if next_start <= start:
            next_start = chunk_end
        start = next_start

    return spans


def _paragraph_spans(text: str) -> List[Span]:
    """Non-blank paragraphs separated by blank lines."""
    spans: List[Span] = []
    position = 0
    for paragraph_break in _PARAGRAPH_BREAK_RE.finditer(text):
        span = _strip_span(text, position, paragraph_break.start())
        if span is not None:
            spans.append(span)
        position = paragraph_break.end()

    span = _strip_span(text, position, len(text))
    if span is not None:
        spans.append(span)
    return spans


def _packed_paragraph_spans(text: str, max_tokens: int, overlap_tokens: int) -> List[Span]:
    """Greedily pack paragraphs up to max_tokens; oversized paragraphs use the fixed window."""
    spans: List[Span] = []
    current: Optional[Span] = None

    for paragraph_start, paragraph_end in _paragraph_spans(text):
        if current is not None:
            if estimate_token_count(text[current[0]:paragraph_end]) <= max_tokens:
                current = (current[0], paragraph_end)
                continue
            spans.append(current)
            current = None

        paragraph = text[paragraph_start:paragraph_end]
        if estimate_token_count(paragraph) > max_tokens:
            for sub_start, sub_end in _fixed_spans(paragraph, max_tokens, overlap_tokens):
                spans.append((paragraph_start + sub_start, paragraph_start + sub_end))
        else:
            current = (paragraph_start, paragraph_end)

    if current is not None:
        spans.append(current)
    return spans


# -----------------------------
# Strategies
# -----------------------------
def chunk_by_page(pages: Sequence[ExtractedPage]) -> List[Chunk]:
    """
    One chunk per non-blank page, never split.

    Best for pitch decks where each slide is a complete thought.
    """
    chunks: List[Chunk] = []
    offset = 0
    for page in pages:
        span = _strip_span(page.content, 0, len(page.content))
        if span is not None:
            content = page.content[span[0]:span[1]]
            token_count = estimate_token_count(content)
            chunks.append(Chunk(
                index=len(chunks),
                content=content,
                page_number=page.page_number,
                token_count=token_count,
                metadata=ChunkMetadata(
                    start_char=offset + span[0],
                    end_char=offset + span[1],
                    token_count=token_count,
                ),
            ))
        offset += page.char_count + PAGE_SEPARATOR_LENGTH

    return chunks


def chunk_by_fixed_size(
    text: str,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
    pages: Sequence[ExtractedPage] = (),
) -> List[Chunk]:
    """Slide a max_tokens window across the text with overlap_tokens of repeated context."""
    spans = _fixed_spans(text, max_tokens, overlap_tokens)
    return [_make_chunk(index, text, span, pages) for index, span in enumerate(spans)]


def chunk_by_paragraphs(
    text: str,
    pages: Sequence[ExtractedPage] = (),
    max_tokens: int = DEFAULT_MAX_TOKENS,
    overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
) -> List[Chunk]:
    """Pack blank-line separated paragraphs into chunks of at most max_tokens."""
    spans = _packed_paragraph_spans(text, max_tokens, overlap_tokens)
    return [_make_chunk(index, text, span, pages) for index, span in enumerate(spans)]


def identify_sections(text: str) -> List[Section]:
    """Carve the text into sections at heading-like lines."""
    matches: List[Tuple[int, int, str]] = []
    for order, pattern in enumerate(SECTION_PATTERNS):
        for match in pattern.regex.finditer(text):
            title = (match.group(1) or match.group(0)).strip()
            if title:
                matches.append((match.start(), order, title))

    matches.sort()

    headings: List[Tuple[int, str]] = []
    seen_offsets = set()
    for offset, _order, title in matches:
        if offset in seen_offsets:
            continue
        seen_offsets.add(offset)
        headings.append((offset, title))

    sections: List[Section] = []
    for i, (offset, title) in enumerate(headings):
        end = headings[i + 1][0] if i + 1 < len(headings) else len(text)
        span = _strip_span(text, offset, end)
        if span is not None:
            sections.append(Section(title=title, content=text[span[0]:span[1]], start=span[0]))

    return sections


def _chunk_sections(
    text: str,
    sections: Sequence[Section],
    pages: Sequence[ExtractedPage],
    max_tokens: int,
    overlap_tokens: int,
) -> List[Chunk]:
    chunks: List[Chunk] = []

    for section in sections:
        section_length = len(section.content)
        if estimate_token_count(section.content) <= max_tokens:
            span = (section.start, section.start + section_length)
            chunks.append(_make_chunk(len(chunks), text, span, pages, section.title))
            continue

        for sub_start, sub_end in _packed_paragraph_spans(section.content, max_tokens, overlap_tokens):
            if sub_start < 0 or sub_end > section_length:
                raise ChunkBoundaryError(
                    f"Chunk [{sub_start}, {sub_end}) exceeds section '{section.title}' "
                    f"of length {section_length}"
                )
            span = (section.start + sub_start, section.start + sub_end)
            chunks.append(_make_chunk(len(chunks), text, span, pages, section.title))

    return chunks


def chunk_by_semantic(
    text: str,
    pages: Sequence[ExtractedPage] = (),
    max_tokens: int = DEFAULT_MAX_TOKENS,
    overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
) -> List[Chunk]:
    """Chunk within detected sections, or by paragraphs when the text has fewer than two headings."""
    sections = identify_sections(text)

    if len(sections) < 2:
        return chunk_by_paragraphs(text, pages, max_tokens, overlap_tokens)

    logger.debug(f"Detected {len(sections)} sections")
    preamble = _strip_span(text, 0, sections[0].start)
    if preamble is not None:
        sections.insert(0, Section(title=None, content=text[preamble[0]:preamble[1]], start=preamble[0]))

    return _chunk_sections(text, sections, pages, max_tokens, overlap_tokens)


def chunk_document(
    full_text: str,
    pages: Sequence[ExtractedPage],
    options: Optional[ChunkOptions] = None,
) -> List[Chunk]:
    """
    Chunk a document using the requested strategy.

    Args:
        full_text: Extracted text of the whole document
        pages: Extracted pages, used for the page strategy and page mapping
        options: Strategy and size limits (semantic, 500 tokens, 50 overlap by default)

    Returns:
        Chunks with dense 0-based indices; empty for a blank document
    """
    options = options or ChunkOptions()

    if options.strategy == ChunkStrategy.PAGE:
        chunks = chunk_by_page(pages)
    elif options.strategy == ChunkStrategy.FIXED:
        chunks = chunk_by_fixed_size(full_text, options.max_tokens, options.overlap_tokens, pages)
    else:
        chunks = chunk_by_semantic(full_text, pages, options.max_tokens, options.overlap_tokens)

    logger.info(f"Created {len(chunks)} chunks using {options.strategy.value} strategy")
    return chunks
