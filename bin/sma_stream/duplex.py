"""Duplex pairing of complementary strands across nearby chunks.

Each candidate strand carries the read id of its complement in a BAM
tag. A strand waits in memory until its complement shows up, or until
every chunk within ``window`` chunk ids of its own chunk has been
observed, whichever comes first. Chunks may be observed in any order;
the outcome depends only on which strands fall within the window.
Strands that age out, or whose complement arrives from a chunk too far
away, are reported as unpaired candidates.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field

from sma_stream.models import PairingRecord, Record


@dataclass
class PairingResult:
    """Pairing outcomes and merged duplex records from one observation."""

    pairings: list[PairingRecord] = field(default_factory=list)
    duplex: list[Record] = field(default_factory=list)

    @property
    def paired(self) -> int:
        return sum(1 for p in self.pairings if p.paired)

    @property
    def unpaired(self) -> int:
        return sum(1 for p in self.pairings if not p.paired)


def merge_pair(template: Record, complement: Record) -> Record:
    """Build the duplex record for a successful pair.

    The higher-quality strand provides sequence and qualities; the read
    id follows the ``template;complement`` convention.
    """
    best = complement if complement.mean_qscore > template.mean_qscore else template
    return Record(
        read_id=f"{template.read_id};{complement.read_id}",
        sequence=best.sequence,
        qualities=list(best.qualities),
        mean_qscore=best.mean_qscore,
        chunk_id=max(template.chunk_id, complement.chunk_id),
        alignment=best.alignment,
        is_duplex=True,
        parents=(template.read_id, complement.read_id),
        tags={"dx": 1},
    )


class DuplexPairer:
    """Tracks duplex candidates across chunks with a bounded chunk window."""

    def __init__(self, window: int = 1) -> None:
        self.window = window
        self._waiting: dict[str, Record] = {}
        self._observed: set[int] = set()
        # every chunk id below this one has been observed
        self._complete_below = 0
        self._lock = threading.Lock()

    @property
    def waiting(self) -> int:
        with self._lock:
            return len(self._waiting)

    def observe(self, chunk_id: int, records: list[Record]) -> PairingResult:
        """Match the candidate strands in one chunk's records.

        Failed chunks are observed with no records so that strands from
        their neighbours can still age out.
        """
        result = PairingResult()
        with self._lock:
            self._mark_observed(chunk_id)
            for rec in records:
                if rec.pair_id is None or rec.is_duplex:
                    continue
                partner = self._waiting.pop(rec.pair_id, None)
                if partner is None:
                    self._waiting[rec.read_id] = rec
                elif abs(partner.chunk_id - rec.chunk_id) <= self.window:
                    result.pairings.append(PairingRecord(
                        read_id=partner.read_id,
                        partner_id=rec.read_id,
                        paired=True,
                        chunk_ids=(partner.chunk_id, rec.chunk_id),
                    ))
                    result.duplex.append(merge_pair(partner, rec))
                else:
                    result.pairings.append(_unpaired(partner))
                    result.pairings.append(_unpaired(rec))
            result.pairings.extend(self._evict())
        return result

    def flush(self) -> PairingResult:
        """Give up on every strand still waiting (end of run)."""
        with self._lock:
            pairings = [_unpaired(rec) for rec in self._waiting.values()]
            self._waiting.clear()
        return PairingResult(pairings=pairings)

    def _mark_observed(self, chunk_id: int) -> None:
        if chunk_id >= self._complete_below:
            self._observed.add(chunk_id)
        while self._complete_below in self._observed:
            self._observed.discard(self._complete_below)
            self._complete_below += 1

    def _evict(self) -> list[PairingRecord]:
        expired = [
            rid for rid, rec in self._waiting.items()
            if rec.chunk_id + self.window < self._complete_below
        ]
        return [_unpaired(self._waiting.pop(rid)) for rid in expired]


def _unpaired(rec: Record) -> PairingRecord:
    return PairingRecord(
        read_id=rec.read_id,
        partner_id=rec.pair_id,
        paired=False,
        chunk_ids=(rec.chunk_id,),
    )
