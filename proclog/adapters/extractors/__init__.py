"""Text extraction adapters implementing TextExtractionPort."""

from proclog.adapters.extractors.pdfplumber_extractor import PdfPlumberExtractor

__all__ = ["PdfPlumberExtractor"]
