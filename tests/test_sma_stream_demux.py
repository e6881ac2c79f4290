"""Tests for barcode splitting."""
from __future__ import annotations

import pytest

from sma_stream.models import Record


def _rec(rid: str, barcode: str | None) -> Record:
    return Record(read_id=rid, sequence="ACGT", qualities=[20] * 4, mean_qscore=20.0, barcode=barcode)


class TestDemux:

    @pytest.mark.parametrize("tag,expected", [
        ("SQK-NBD114-24_barcode05", "barcode05"),
        ("barcode12", "barcode12"),
        ("unclassified", "unclassified"),
        (None, "unclassified"),
        ("", "unclassified"),
    ])
    def test_normalize_barcode(self, tag, expected):
        from sma_stream.demux import normalize_barcode
        assert normalize_barcode(tag) == expected

    def test_split_by_barcode(self):
        from sma_stream.demux import split_by_barcode
        recs = [
            _rec("a", "kit_barcode01"),
            _rec("b", None),
            _rec("c", "kit_barcode02"),
            _rec("d", "kit_barcode01"),
        ]
        groups = split_by_barcode(recs)
        assert list(groups) == ["barcode01", "unclassified", "barcode02"]
        assert [r.read_id for r in groups["barcode01"]] == ["a", "d"]
