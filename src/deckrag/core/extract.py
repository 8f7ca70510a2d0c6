"""PDF text extraction: PyMuPDF -> per-page text (ordered fallback chain) -> metadata."""

import logging
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import fitz  # PyMuPDF

from .errors import ExtractionError, InvalidFormatError
from .models import DocumentMetadata, ExtractedDocument, ExtractedPage

logger = logging.getLogger(__name__)

PDF_SIGNATURE = b"%PDF"
PAGE_BREAK_MARKER = "\f"
PAGE_SEPARATOR = "\n"

_PDF_DATE_RE = re.compile(
    r"^(?:D:)?(\d{4})(\d{2})?(\d{2})?(\d{2})?(\d{2})?(\d{2})?"
    r"(?:([Zz+\-])(\d{2})?'?(\d{2})?'?)?"
)


@dataclass
class ParsedPdf:
    """Raw parser output before the page fallback chain runs."""
    text: str
    page_count: int
    page_texts: Optional[List[str]] = None
    info: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PageSplit:
    """Pages produced by one fallback tier; full text is the pages joined by PAGE_SEPARATOR."""
    tier: str
    pages: List[str]


class PdfParser(ABC):
    """Seam between the extractor and a concrete PDF library."""

    @abstractmethod
    def parse(self, buffer: bytes) -> ParsedPdf:
        """Parse text, page breakdown and info dictionary."""

    @abstractmethod
    def read_info(self, buffer: bytes) -> Tuple[Dict[str, Any], int]:
        """Read the info dictionary and page count without extracting text."""


class PyMuPDFParser(PdfParser):
    """PdfParser backed by PyMuPDF."""

    def _open(self, buffer: bytes) -> fitz.Document:
        try:
            doc = fitz.open(stream=buffer, filetype="pdf")
        except Exception as e:
            raise ExtractionError(f"Invalid or corrupted PDF file: {e}", e) from e

        if doc.needs_pass:
            doc.close()
            raise ExtractionError("PDF is password-protected and cannot be parsed")
        return doc

    def parse(self, buffer: bytes) -> ParsedPdf:
        doc = self._open(buffer)
        try:
            page_texts = [page.get_text() for page in doc]
            return ParsedPdf(
                text=PAGE_BREAK_MARKER.join(page_texts),
                page_count=doc.page_count,
                page_texts=page_texts,
                info=dict(doc.metadata or {}),
            )
        finally:
            doc.close()

    def read_info(self, buffer: bytes) -> Tuple[Dict[str, Any], int]:
        doc = self._open(buffer)
        try:
            return dict(doc.metadata or {}), doc.page_count
        finally:
            doc.close()


# -----------------------------
# Page fallback chain
# -----------------------------
def pages_from_parser(parsed: ParsedPdf) -> Optional[PageSplit]:
    """Tier 1: the parser's own per-page breakdown."""
    if not parsed.page_texts:
        return None
    return PageSplit(tier="parser", pages=list(parsed.page_texts))


def pages_from_marker(parsed: ParsedPdf) -> Optional[PageSplit]:
    """Tier 2: split on the form-feed page break; only trusted when counts agree."""
    if PAGE_BREAK_MARKER not in parsed.text:
        return None

    pieces = parsed.text.split(PAGE_BREAK_MARKER)
    # A marker after the last page leaves an empty tail
    if len(pieces) == parsed.page_count + 1 and not pieces[-1].strip():
        pieces = pieces[:-1]

    if len(pieces) != parsed.page_count:
        logger.debug(
            f"Page marker split produced {len(pieces)} pieces for {parsed.page_count} pages"
        )
        return None
    return PageSplit(tier="marker", pages=pieces)


def pages_by_even_split(parsed: ParsedPdf) -> PageSplit:
    """Tier 3: divide the text into page_count slices of equal character length."""
    text = parsed.text.replace(PAGE_BREAK_MARKER, PAGE_SEPARATOR)
    page_count = parsed.page_count
    if page_count <= 0:
        page_count = 1 if text.strip() else 0

    if page_count == 0:
        return PageSplit(tier="even_split", pages=[])

    size = math.ceil(len(text) / page_count)
    pages = [text[i * size:(i + 1) * size] for i in range(page_count)]
    return PageSplit(tier="even_split", pages=pages)


PAGE_FALLBACK_CHAIN: Tuple[Callable[[ParsedPdf], Optional[PageSplit]], ...] = (
    pages_from_parser,
    pages_from_marker,
    pages_by_even_split,
)


def split_pages(parsed: ParsedPdf) -> PageSplit:
    """Run the fallback chain; the first tier that returns a split wins."""
    for tier in PAGE_FALLBACK_CHAIN:
        split = tier(parsed)
        if split is not None:
            logger.info(f"Page text resolved by '{split.tier}' tier: {len(split.pages)} pages")
            return split
    # pages_by_even_split never declines
    raise ExtractionError("No page extraction tier produced pages")


# -----------------------------
# Metadata
# -----------------------------
def parse_pdf_date(value: Any) -> Optional[datetime]:
    """Parse a PDF date string such as ``D:20240131120000+01'00'``."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value

    match = _PDF_DATE_RE.match(str(value).strip())
    if not match:
        return None

    year, month, day, hour, minute, second, sign, tz_hours, tz_minutes = match.groups()
    try:
        parsed = datetime(
            int(year), int(month or 1), int(day or 1),
            int(hour or 0), int(minute or 0), int(second or 0)
        )
    except ValueError:
        return None

    if sign in ("Z", "z"):
        return parsed.replace(tzinfo=timezone.utc)
    if sign in ("+", "-"):
        offset = timedelta(hours=int(tz_hours or 0), minutes=int(tz_minutes or 0))
        return parsed.replace(tzinfo=timezone(-offset if sign == "-" else offset))
    return parsed


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def build_metadata(info: Dict[str, Any]) -> DocumentMetadata:
    """Map a PDF info dictionary (any key casing) onto DocumentMetadata."""
    normalized = {str(key).lower(): value for key, value in (info or {}).items()}
    return DocumentMetadata(
        title=_clean(normalized.get("title")),
        author=_clean(normalized.get("author")),
        subject=_clean(normalized.get("subject")),
        keywords=_clean(normalized.get("keywords")),
        creator=_clean(normalized.get("creator")),
        producer=_clean(normalized.get("producer")),
        creation_date=parse_pdf_date(normalized.get("creationdate")),
        modification_date=parse_pdf_date(normalized.get("moddate")),
    )


# -----------------------------
# Extractor
# -----------------------------
def is_valid_format(buffer: bytes) -> bool:
    """Check the PDF byte signature without parsing."""
    if buffer is None or len(buffer) < 5:
        return False
    return bytes(buffer[:len(PDF_SIGNATURE)]) == PDF_SIGNATURE


def _wrap_parser_error(error: Exception) -> ExtractionError:
    if isinstance(error, ExtractionError):
        return error

    message = str(error)
    lowered = message.lower()
    if "password" in lowered:
        return ExtractionError("PDF is password-protected and cannot be parsed", error)
    if "encrypt" in lowered:
        return ExtractionError("PDF is encrypted and cannot be parsed", error)
    return ExtractionError(f"Failed to parse PDF: {message}", error)


class PDFTextExtractor:
    """Turns a raw PDF buffer into an ExtractedDocument."""

    def __init__(self, parser: Optional[PdfParser] = None):
        self.parser = parser or PyMuPDFParser()

    def extract(self, buffer: bytes) -> ExtractedDocument:
        """
        Extract full text, pages and metadata from a PDF buffer.

        Args:
            buffer: Raw file bytes

        Returns:
            ExtractedDocument with 1-based contiguous pages

        Raises:
            InvalidFormatError: buffer does not start with the PDF signature
            ExtractionError: the parser failed (password, encryption, corrupt data)
        """
        if not is_valid_format(buffer):
            raise InvalidFormatError("File does not appear to be a valid PDF (missing PDF header)")

        try:
            parsed = self.parser.parse(buffer)
        except Exception as e:
            raise _wrap_parser_error(e) from e

        split = split_pages(parsed)
        pages = [
            ExtractedPage(page_number=number, content=content, char_count=len(content))
            for number, content in enumerate(split.pages, start=1)
        ]
        full_text = PAGE_SEPARATOR.join(split.pages)
        page_count = parsed.page_count if parsed.page_count > 0 else len(pages)

        logger.info(
            f"Extracted {len(full_text)} characters from {page_count} pages ({split.tier} tier)"
        )
        return ExtractedDocument(
            full_text=full_text,
            pages=pages,
            metadata=build_metadata(parsed.info),
            page_count=page_count,
        )

    def get_metadata(self, buffer: bytes) -> Tuple[DocumentMetadata, int]:
        """Cheap preflight: metadata and page count without text extraction."""
        if not is_valid_format(buffer):
            raise InvalidFormatError("File does not appear to be a valid PDF (missing PDF header)")

        try:
            info, page_count = self.parser.read_info(buffer)
        except Exception as e:
            raise _wrap_parser_error(e) from e
        return build_metadata(info), page_count


def extract(buffer: bytes, parser: Optional[PdfParser] = None) -> ExtractedDocument:
    """Extract a PDF buffer with the default (or given) parser."""
    return PDFTextExtractor(parser).extract(buffer)


def get_metadata(buffer: bytes, parser: Optional[PdfParser] = None) -> Tuple[DocumentMetadata, int]:
    """Read PDF metadata and page count with the default (or given) parser."""
    return PDFTextExtractor(parser).get_metadata(buffer)
