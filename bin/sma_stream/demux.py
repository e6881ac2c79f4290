"""Split basecalled records by barcode."""
from __future__ import annotations

import re

from sma_stream.models import Record

UNCLASSIFIED = "unclassified"

_BARCODE_RE = re.compile(r"(barcode\d+)$")


def normalize_barcode(tag: str | None) -> str:
    """Map a dorado ``BC`` value to ``barcodeNN`` or ``unclassified``.

    Dorado may prefix the barcode with the kit name
    (``SQK-NBD114-24_barcode05``); only the trailing barcode is kept.
    """
    if not tag:
        return UNCLASSIFIED
    m = _BARCODE_RE.search(tag)
    if not m:
        return UNCLASSIFIED
    return m.group(1)


def split_by_barcode(records: list[Record]) -> dict[str, list[Record]]:
    """Group records by barcode, keeping input order within each group."""
    groups: dict[str, list[Record]] = {}
    for rec in records:
        groups.setdefault(normalize_barcode(rec.barcode), []).append(rec)
    return groups
