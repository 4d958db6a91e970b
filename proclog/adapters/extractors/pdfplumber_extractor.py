"""pdfplumber Text Position Extractor.

Reads the text layer of a logbook export and returns positioned fragments,
one list per page, in text-layer order.

pdfplumber reports word boxes with a top-left origin (``top``/``bottom``
grow downward). Fragments are converted to PDF document space (origin
bottom-left) using the baseline: ``y = page.height - bottom``.
"""

import io
import logging
from pathlib import Path
from typing import Union

import pdfplumber

from proclog.domain.ports import (
    DocumentParseError,
    SourceNotFoundError,
    TextExtractionPort,
    TextFragment,
    UnsupportedSourceError,
)

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF-"


class PdfPlumberExtractor(TextExtractionPort):
    """TextExtractionPort backed by pdfplumber.

    Parameters:
        x_tolerance: Horizontal gap (PDF units) below which characters join one word
        y_tolerance: Vertical gap below which characters share a line
    """

    def __init__(self, x_tolerance: float = 3.0, y_tolerance: float = 3.0):
        self.x_tolerance = x_tolerance
        self.y_tolerance = y_tolerance

    def can_extract(self, source: Union[str, bytes]) -> bool:
        """Check if this extractor can handle the given source.

        Bytes are sniffed for the PDF header; paths are checked by extension.
        """
        if not source:
            return False
        if isinstance(source, bytes):
            return source.lstrip()[:5] == PDF_MAGIC
        return Path(source).suffix.lower() == ".pdf"

    def extract(self, source: Union[str, bytes]) -> list[list[TextFragment]]:
        """Read every page's words with their positions.

        Raises:
            SourceNotFoundError: If a path source does not exist
            UnsupportedSourceError: If the source is not a PDF
            DocumentParseError: If the PDF cannot be opened or has no text layer
        """
        label = "<bytes>" if isinstance(source, bytes) else str(source)

        if not isinstance(source, bytes) and not Path(source).exists():
            raise SourceNotFoundError(f"Document not found: {source}", source=label)
        if not self.can_extract(source):
            raise UnsupportedSourceError(
                f"Not a PDF document: {label}",
                source=label,
                adapter=type(self).__name__,
            )

        stream = io.BytesIO(source) if isinstance(source, bytes) else source
        pages: list[list[TextFragment]] = []
        try:
            with pdfplumber.open(stream) as pdf:
                for page in pdf.pages:
                    words = page.extract_words(
                        x_tolerance=self.x_tolerance,
                        y_tolerance=self.y_tolerance,
                        keep_blank_chars=False,
                    )
                    pages.append([
                        TextFragment(
                            text=word["text"],
                            x=float(word["x0"]),
                            y=float(page.height) - float(word["bottom"]),
                        )
                        for word in words
                    ])
        except Exception as e:
            raise DocumentParseError(f"Failed to read PDF {label}: {str(e)}", source=label) from e

        fragment_count = sum(len(page) for page in pages)
        if fragment_count == 0:
            raise DocumentParseError(f"PDF has no text layer: {label}", source=label)

        logger.info(f"Extracted {fragment_count} text fragments from {len(pages)} pages")
        return pages
