"""Read basecalled records out of dorado BAM output."""
from __future__ import annotations

from pathlib import Path

import numpy as np
import pysam

from sma_stream.models import Alignment, Record

MAX_QSCORE = 60.0


def mean_qscore(quals) -> float:
    """Mean Q-score computed in error-probability space.

    Averaging Phred scores directly overstates quality, so each score is
    converted to an error probability, averaged, and converted back.
    """
    q = np.asarray(quals, dtype=np.float64)
    if q.size == 0:
        return 0.0
    mean_err = np.mean(np.power(10.0, -q / 10.0))
    if mean_err <= 0:
        return MAX_QSCORE
    return float(min(-10.0 * np.log10(mean_err), MAX_QSCORE))


def record_from_segment(
    seg: pysam.AlignedSegment, chunk_id: int = -1, pair_tag: str = "pc",
) -> Record:
    """Convert one BAM segment into a Record.

    Uses the basecaller's ``qs`` tag for the mean Q-score when present,
    ``BC`` for the barcode, ``dx`` to mark duplex reads and *pair_tag* for
    the complementary-strand candidate.
    """
    quals = list(seg.query_qualities) if seg.query_qualities is not None else []
    if seg.has_tag("qs"):
        qscore = float(seg.get_tag("qs"))
    else:
        qscore = mean_qscore(quals)

    alignment = None
    if not seg.is_unmapped:
        alignment = Alignment(
            reference_name=seg.reference_name,
            reference_start=seg.reference_start,
            cigar=seg.cigarstring or "",
            mapping_quality=seg.mapping_quality,
            is_reverse=seg.is_reverse,
        )

    is_duplex = seg.has_tag("dx") and seg.get_tag("dx") == 1
    parents: tuple[str, ...] = ()
    if is_duplex and ";" in seg.query_name:
        parents = tuple(seg.query_name.split(";"))

    return Record(
        read_id=seg.query_name,
        sequence=seg.query_sequence or "",
        qualities=quals,
        mean_qscore=qscore,
        chunk_id=chunk_id,
        alignment=alignment,
        barcode=str(seg.get_tag("BC")) if seg.has_tag("BC") else None,
        pair_id=str(seg.get_tag(pair_tag)) if seg.has_tag(pair_tag) else None,
        is_duplex=is_duplex,
        parents=parents,
        tags=dict(seg.get_tags()),
    )


def read_records(bam_path: Path, chunk_id: int = -1, pair_tag: str = "pc") -> list[Record]:
    """Read primary records from *bam_path*, keeping file order."""
    records: list[Record] = []
    with pysam.AlignmentFile(str(bam_path), check_sq=False) as af:
        for seg in af:
            if seg.is_secondary or seg.is_supplementary:
                continue
            records.append(record_from_segment(seg, chunk_id, pair_tag))
    return records
