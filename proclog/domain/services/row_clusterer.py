"""Row Clustering Service.

Groups positioned text fragments from one PDF page into logical table rows.

The logbook export has no row delimiters in its text layer; fragments that
belong to the same table row share (almost) the same baseline. Fragments are
assigned greedily to the first cluster whose representative y lies within a
fixed tolerance, clusters are ordered top-to-bottom (descending y, since the
PDF origin is bottom-left) and each row is read left-to-right.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable

from proclog.domain.ports import TextFragment

logger = logging.getLogger(__name__)

ROW_TOLERANCE = 3.0
MIN_ROW_TOKENS = 4


@dataclass
class _RowCluster:
    y: float
    fragments: list[TextFragment] = field(default_factory=list)


def cluster_fragments(
    fragments: Iterable[TextFragment],
    tolerance: float = ROW_TOLERANCE,
) -> list[list[TextFragment]]:
    """Group fragments into rows ordered top-to-bottom, each ordered left-to-right.

    Clustering is first-match in input order; fragments are not re-sorted
    before assignment, so a fixed input yields a fixed output.

    Parameters:
        fragments: Fragments of a single page
        tolerance: Maximum |y - cluster.y| for a fragment to join a cluster

    Returns:
        list[list[TextFragment]]: Rows of fragments
    """
    clusters: list[_RowCluster] = []
    for fragment in fragments:
        for cluster in clusters:
            if abs(cluster.y - fragment.y) <= tolerance:
                cluster.fragments.append(fragment)
                break
        else:
            clusters.append(_RowCluster(y=fragment.y, fragments=[fragment]))

    # sorted() is stable: equal keys keep first-seen order
    ordered = sorted(clusters, key=lambda c: -c.y)
    return [sorted(c.fragments, key=lambda f: f.x) for c in ordered]


def cluster_rows(
    fragments: Iterable[TextFragment],
    tolerance: float = ROW_TOLERANCE,
    min_tokens: int = MIN_ROW_TOKENS,
) -> list[list[str]]:
    """Cluster a page's fragments and return token rows.

    Blank fragments are dropped. Rows with fewer than ``min_tokens`` tokens
    are header/footer noise and are discarded.

    Parameters:
        fragments: Fragments of a single page
        tolerance: Vertical clustering tolerance in PDF units
        min_tokens: Minimum tokens for a row to be kept

    Returns:
        list[list[str]]: Ordered rows of token strings
    """
    rows: list[list[str]] = []
    discarded = 0
    for row in cluster_fragments(
        (f for f in fragments if f.text and f.text.strip()),
        tolerance=tolerance,
    ):
        tokens = [f.text.strip() for f in row]
        if len(tokens) < min_tokens:
            discarded += 1
            continue
        rows.append(tokens)

    if discarded:
        logger.debug(f"Discarded {discarded} short rows (< {min_tokens} tokens)")
    return rows


def cluster_pages(
    pages: Iterable[Iterable[TextFragment]],
    tolerance: float = ROW_TOLERANCE,
    min_tokens: int = MIN_ROW_TOKENS,
) -> list[list[str]]:
    """Cluster every page independently and concatenate rows in page order."""
    rows: list[list[str]] = []
    for page_number, page in enumerate(pages, start=1):
        page_rows = cluster_rows(page, tolerance=tolerance, min_tokens=min_tokens)
        logger.debug(f"Page {page_number}: {len(page_rows)} candidate rows")
        rows.extend(page_rows)
    return rows
