"""Tests for reference preparation and the dorado aligner wrapper."""
from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest


def _fasta(tmp_path: Path) -> Path:
    ref = tmp_path / "ref.fa"
    ref.write_text(">chr1\n" + "ACGT" * 50 + "\n>chr2\n" + "GGCC" * 10 + "\n")
    return ref


def _fake_minimap2(cmd, **kwargs):
    Path(cmd[cmd.index("-d") + 1]).write_bytes(b"MMI")
    return subprocess.CompletedProcess(cmd, 0)


class TestPrepareReference:

    def test_builds_indexes(self, tmp_path):
        from sma_stream.align import prepare_reference
        ref = _fasta(tmp_path)
        with patch("sma_stream.align.subprocess.run", side_effect=_fake_minimap2) as mock_run:
            index = prepare_reference(ref, tmp_path / "idx")
        assert Path(f"{ref}.fai").exists()
        assert index.names == ("chr1", "chr2")
        assert index.lengths == (200, 40)
        assert index.mmi == tmp_path / "idx" / "ref.mmi"
        cmd = mock_run.call_args[0][0]
        assert cmd[:4] == ["minimap2", "-x", "map-ont", "-d"]
        assert index.sq_lines() == [{"SN": "chr1", "LN": 200}, {"SN": "chr2", "LN": 40}]

    def test_reuses_existing_index(self, tmp_path):
        from sma_stream.align import prepare_reference
        ref = _fasta(tmp_path)
        with patch("sma_stream.align.subprocess.run", side_effect=_fake_minimap2) as mock_run:
            prepare_reference(ref, tmp_path / "idx")
            prepare_reference(ref, tmp_path / "idx")
        assert mock_run.call_count == 1


class TestAligner:

    def test_passthrough_without_reference(self, tmp_path):
        from sma_stream.align import Aligner
        aligner = Aligner()
        assert not aligner.enabled
        bam = tmp_path / "calls.bam"
        with patch("sma_stream.align.subprocess.run") as mock_run:
            assert aligner.align(bam, tmp_path / "aligned.bam") == bam
        mock_run.assert_not_called()
        assert "SQ" not in aligner.header()

    def test_runs_dorado_aligner(self, tmp_path):
        from sma_stream.align import Aligner, ReferenceIndex
        index = ReferenceIndex(tmp_path / "ref.fa", tmp_path / "ref.mmi", ("chr1",), (100,))
        aligner = Aligner(index, dorado_path="/opt/dorado")

        def fake_run(cmd, stdout=None, **kwargs):
            stdout.write(b"ALIGNED")
            return subprocess.CompletedProcess(cmd, 0)

        out = tmp_path / "work" / "aligned.bam"
        with patch("sma_stream.align.subprocess.run", side_effect=fake_run) as mock_run:
            result = aligner.align(tmp_path / "calls.bam", out)
        assert result == out
        assert out.read_bytes() == b"ALIGNED"
        assert mock_run.call_args[0][0] == [
            "/opt/dorado", "aligner", str(tmp_path / "ref.mmi"), str(tmp_path / "calls.bam"),
        ]
        assert aligner.header()["SQ"] == [{"SN": "chr1", "LN": 100}]

    def test_failure_raises_alignment_error(self, tmp_path):
        from sma_stream.align import Aligner, AlignmentError, ReferenceIndex
        index = ReferenceIndex(tmp_path / "ref.fa", tmp_path / "ref.mmi", ("chr1",), (100,))
        err = subprocess.CalledProcessError(1, ["dorado"], stderr=b"[error] bad index\n")
        with patch("sma_stream.align.subprocess.run", side_effect=err):
            with pytest.raises(AlignmentError, match="bad index"):
                Aligner(index, "dorado").align(tmp_path / "calls.bam", tmp_path / "a.bam")
        assert not (tmp_path / ".a.bam.tmp").exists()
