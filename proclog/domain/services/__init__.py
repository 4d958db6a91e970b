"""Domain Services.

Parsing, ingestion and analytics logic without infrastructure dependencies.
"""

from proclog.domain.services.complication_rate import compute_pcr_series, phaco_summary
from proclog.domain.services.esr_aggregator import build_esr_grid, resolve_window
from proclog.domain.services.field_classifier import classify_row, classify_rows
from proclog.domain.services.ingestion_service import IngestionService
from proclog.domain.services.row_clusterer import cluster_pages, cluster_rows

__all__ = [
    "IngestionService",
    "build_esr_grid",
    "classify_row",
    "classify_rows",
    "cluster_pages",
    "cluster_rows",
    "compute_pcr_series",
    "phaco_summary",
    "resolve_window",
]
