"""Pass/fail routing by mean Q-score."""
from __future__ import annotations

from sma_stream.config import DEFAULT_QSCORE_THRESHOLD
from sma_stream.models import Record

PASS = "pass"
FAIL = "fail"


def classify(record: Record, threshold: float = DEFAULT_QSCORE_THRESHOLD) -> str:
    """Return ``pass`` when the mean Q-score reaches *threshold* (inclusive)."""
    return PASS if record.mean_qscore >= threshold else FAIL


def split_pass_fail(
    records: list[Record], threshold: float = DEFAULT_QSCORE_THRESHOLD,
) -> dict[str, list[Record]]:
    """Route records into pass and fail lists, preserving order."""
    streams: dict[str, list[Record]] = {PASS: [], FAIL: []}
    for rec in records:
        streams[classify(rec, threshold)].append(rec)
    return streams
