"""
Document Parsers

Extract text from uploaded files as a stream of pieces (blocks, pages,
paragraphs) so the chunker never needs the whole document in memory.

Design decisions:
- One parser per format behind a common interface
- Format libraries are imported lazily
- Every piece is sanitized (NUL and carriage returns removed) because
  PostgreSQL text columns reject NUL characters
"""

from abc import ABC, abstractmethod
from collections.abc import Iterator
from pathlib import Path

from kbengine.core.exceptions import ParseError


def sanitize_text(text: str) -> str:
    """Remove characters that cannot be stored or embedded."""
    return text.replace("\x00", "").replace("\r\n", "\n").replace("\r", "\n")


class DocumentParser(ABC):
    """Abstract document parser."""

    @abstractmethod
    def supports(self, filename: str) -> bool:
        """Check if this parser handles the file."""

    @abstractmethod
    def iter_text(self, path: str | Path) -> Iterator[str]:
        """
        Yield the document's text in order.

        Raises:
            ParseError: If the file is corrupt or unreadable
        """


class TextParser(DocumentParser):
    """Plain text, Markdown, CSV and JSON files, read in blocks."""

    SUFFIXES = {".txt", ".text", ".md", ".markdown", ".csv", ".json", ""}

    def __init__(self, block_size: int = 64 * 1024, encoding: str = "utf-8"):
        self._block_size = block_size
        self._encoding = encoding

    def supports(self, filename: str) -> bool:
        return Path(filename).suffix.lower() in self.SUFFIXES

    def iter_text(self, path: str | Path) -> Iterator[str]:
        try:
            with open(path, encoding=self._encoding, errors="replace", newline="") as f:
                while block := f.read(self._block_size):
                    yield sanitize_text(block)
        except OSError as e:
            raise ParseError(f"Cannot read {path}: {e}", context={"path": str(path)}, cause=e) from e


class PDFParser(DocumentParser):
    """
    PDF files, one page at a time.

    Requires pypdf package.
    """

    def supports(self, filename: str) -> bool:
        return Path(filename).suffix.lower() == ".pdf"

    def iter_text(self, path: str | Path) -> Iterator[str]:
        try:
            from pypdf import PdfReader
            from pypdf.errors import PyPdfError
        except ImportError:
            raise ImportError("pypdf required for PDF parsing. Install with: pip install pypdf")

        try:
            reader = PdfReader(str(path))
            for page in reader.pages:
                text = page.extract_text() or ""
                if text.strip():
                    yield sanitize_text(text) + "\n\n"
        except (PyPdfError, OSError, ValueError) as e:
            raise ParseError(f"Corrupt or unreadable PDF {path}: {e}", context={"path": str(path)}, cause=e) from e


class DocxParser(DocumentParser):
    """
    Word documents, paragraph by paragraph, followed by table rows.

    Requires python-docx package.
    """

    def supports(self, filename: str) -> bool:
        return Path(filename).suffix.lower() == ".docx"

    def iter_text(self, path: str | Path) -> Iterator[str]:
        try:
            from docx import Document
        except ImportError:
            raise ImportError("python-docx required for Word parsing. Install with: pip install python-docx")

        try:
            doc = Document(str(path))
        except Exception as e:  # noqa: BLE001
            # python-docx surfaces zip, xml and key errors for bad files
            raise ParseError(f"Corrupt or unreadable Word file {path}: {e}", context={"path": str(path)}, cause=e) from e

        for paragraph in doc.paragraphs:
            if paragraph.text.strip():
                yield sanitize_text(paragraph.text) + "\n"

        for table in doc.tables:
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells]
                if any(cells):
                    yield sanitize_text(" | ".join(cells)) + "\n"


DEFAULT_PARSERS: tuple[DocumentParser, ...] = (PDFParser(), DocxParser(), TextParser())


def parser_for(filename: str, parsers: tuple[DocumentParser, ...] = DEFAULT_PARSERS) -> DocumentParser:
    """
    Pick the parser for a file.

    Raises:
        ParseError: If no parser supports the file
    """
    for parser in parsers:
        if parser.supports(filename):
            return parser
    raise ParseError(f"Unsupported file type: {filename}", context={"filename": filename})
