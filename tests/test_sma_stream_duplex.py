"""Tests for duplex pairing across chunks."""
from __future__ import annotations

import itertools

import pytest

from sma_stream.models import Record


def _strand(rid: str, chunk: int, partner: str | None, q: float = 12.0, seq: str = "ACGT") -> Record:
    return Record(read_id=rid, sequence=seq, qualities=[int(q)] * len(seq),
                  mean_qscore=q, chunk_id=chunk, pair_id=partner)


class TestMergePair:

    def test_best_strand_wins(self):
        from sma_stream.duplex import merge_pair
        t = _strand("t", 0, "c", q=12.0, seq="AAAA")
        c = _strand("c", 1, "t", q=18.0, seq="CCCC")
        d = merge_pair(t, c)
        assert d.read_id == "t;c"
        assert d.is_duplex
        assert d.sequence == "CCCC"
        assert d.mean_qscore == 18.0
        assert d.parents == ("t", "c")
        assert d.chunk_id == 1
        assert d.tags == {"dx": 1}


class TestDuplexPairer:

    def test_pair_within_chunk(self):
        from sma_stream.duplex import DuplexPairer
        p = DuplexPairer(window=0)
        res = p.observe(0, [_strand("t", 0, "c"), _strand("x", 0, None), _strand("c", 0, "t")])
        assert res.paired == 1
        assert res.unpaired == 0
        assert [d.read_id for d in res.duplex] == ["t;c"]
        assert p.waiting == 0

    def test_pair_across_adjacent_chunks(self):
        from sma_stream.duplex import DuplexPairer
        p = DuplexPairer(window=1)
        first = p.observe(0, [_strand("t", 0, "c")])
        assert first.pairings == []
        assert p.waiting == 1
        second = p.observe(1, [_strand("c", 1, "t")])
        assert second.paired == 1
        assert second.pairings[0].chunk_ids == (0, 1)

    def test_partner_outside_window_is_unpaired(self):
        from sma_stream.duplex import DuplexPairer
        p = DuplexPairer(window=1)
        p.observe(0, [_strand("t", 0, "c")])
        res = p.observe(3, [_strand("c", 3, "t")])
        assert res.paired == 0
        assert res.unpaired == 2
        assert p.waiting == 0
        assert p.flush().unpaired == 0

    def test_strand_ages_out_once_window_observed(self):
        from sma_stream.duplex import DuplexPairer
        p = DuplexPairer(window=1)
        p.observe(0, [_strand("t", 0, "c")])
        assert p.observe(2, []).unpaired == 0
        assert p.waiting == 1
        assert p.observe(1, []).unpaired == 1
        assert p.waiting == 0

    def test_later_chunk_finishing_first_keeps_pair(self):
        from sma_stream.duplex import DuplexPairer
        p = DuplexPairer(window=1)
        p.observe(0, [_strand("t", 0, "c")])
        p.observe(2, [])
        res = p.observe(1, [_strand("c", 1, "t")])
        assert res.paired == 1
        assert [d.read_id for d in res.duplex] == ["t;c"]

    @pytest.mark.parametrize("order", list(itertools.permutations(range(4))))
    def test_totals_independent_of_completion_order(self, order):
        from sma_stream.duplex import DuplexPairer
        chunks = {
            0: [_strand("t", 0, "c")],
            1: [_strand("c", 1, "t"), _strand("u", 1, "v")],
            2: [],
            3: [_strand("v", 3, "u")],
        }
        p = DuplexPairer(window=1)
        results = [p.observe(cid, chunks[cid]) for cid in order]
        results.append(p.flush())
        assert sum(r.paired for r in results) == 1
        assert sum(r.unpaired for r in results) == 2
        assert p.waiting == 0

    def test_window_zero_requires_same_chunk(self):
        from sma_stream.duplex import DuplexPairer
        p = DuplexPairer(window=0)
        p.observe(0, [_strand("t", 0, "c")])
        res = p.observe(1, [_strand("c", 1, "t")])
        assert res.paired == 0

    def test_larger_window_pairs_further(self):
        from sma_stream.duplex import DuplexPairer
        p = DuplexPairer(window=3)
        p.observe(0, [_strand("t", 0, "c")])
        p.observe(1, [])
        p.observe(2, [])
        res = p.observe(3, [_strand("c", 3, "t")])
        assert res.paired == 1

    def test_duplex_records_ignored(self):
        from sma_stream.duplex import DuplexPairer
        dx = _strand("a;b", 0, "b")
        dx.is_duplex = True
        p = DuplexPairer()
        res = p.observe(0, [dx])
        assert res.pairings == []
        assert p.waiting == 0

    def test_flush_reports_leftovers(self):
        from sma_stream.duplex import DuplexPairer
        p = DuplexPairer(window=5)
        p.observe(0, [_strand("a", 0, "b"), _strand("c", 0, "d")])
        res = p.flush()
        assert res.unpaired == 2
        assert {r.read_id for r in res.pairings} == {"a", "c"}
        assert p.waiting == 0
