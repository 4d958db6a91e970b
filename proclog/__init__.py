"""proclog: surgical logbook ingestion and analytics.

Reads logbook PDF exports, reconstructs procedure records, keeps them in a
deduplicated store and derives the ESR summary grid and PCR rate series.
"""

__version__ = "0.1.0"
