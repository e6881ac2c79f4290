"""Reference preparation and per-chunk alignment with dorado aligner."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

import pysam

from sma_stream.basecall import find_dorado
from sma_stream.models import log


class AlignmentError(Exception):
    """Raised when the aligner fails on a chunk."""


@dataclass(frozen=True)
class ReferenceIndex:
    """A prepared reference: FASTA, its faidx cache and a minimap2 index."""

    fasta: Path
    mmi: Path
    names: tuple[str, ...]
    lengths: tuple[int, ...]

    def sq_lines(self) -> list[dict]:
        return [{"SN": n, "LN": ln} for n, ln in zip(self.names, self.lengths)]


def prepare_reference(reference: Path, index_dir: Path) -> ReferenceIndex:
    """Build (or reuse) the ``.fai`` and ``.mmi`` indexes for *reference*."""
    fai = Path(f"{reference}.fai")
    if not fai.exists():
        log(f"Indexing reference {reference.name}")
        pysam.faidx(str(reference))

    with pysam.FastaFile(str(reference)) as fa:
        names = tuple(fa.references)
        lengths = tuple(fa.lengths)

    index_dir.mkdir(parents=True, exist_ok=True)
    mmi = index_dir / f"{reference.stem}.mmi"
    if not mmi.exists():
        log(f"Building minimap2 index {mmi.name}")
        subprocess.run(
            ["minimap2", "-x", "map-ont", "-d", str(mmi), str(reference)],
            check=True, capture_output=True,
        )

    return ReferenceIndex(fasta=reference, mmi=mmi, names=names, lengths=lengths)


class Aligner:
    """Aligns chunk BAMs, or passes them through when there is no reference."""

    def __init__(self, reference: ReferenceIndex | None = None,
                 dorado_path: str | None = None) -> None:
        self.reference = reference
        self.dorado_path = dorado_path

    @property
    def enabled(self) -> bool:
        return self.reference is not None

    def header(self) -> dict:
        """SAM header for output streams."""
        header: dict = {"HD": {"VN": "1.6", "SO": "unknown"}}
        if self.reference is not None:
            header["SQ"] = self.reference.sq_lines()
        return header

    def align(self, input_bam: Path, output_bam: Path) -> Path:
        """Align *input_bam* into *output_bam*; returns the BAM to read records from."""
        if self.reference is None:
            return input_bam

        dorado = self.dorado_path or find_dorado()
        cmd = [dorado, "aligner", str(self.reference.mmi), str(input_bam)]
        output_bam.parent.mkdir(parents=True, exist_ok=True)
        tmp_bam = output_bam.with_name(f".{output_bam.name}.tmp")
        try:
            with open(tmp_bam, "wb") as out_fh:
                subprocess.run(cmd, stdout=out_fh, stderr=subprocess.PIPE, check=True)
        except subprocess.CalledProcessError as exc:
            tmp_bam.unlink(missing_ok=True)
            stderr = exc.stderr.decode("utf-8", errors="replace") if exc.stderr else ""
            lines = stderr.strip().splitlines()
            raise AlignmentError(
                f"dorado aligner failed on {input_bam.name}: "
                f"{lines[-1] if lines else f'exit code {exc.returncode}'}"
            ) from exc
        tmp_bam.replace(output_bam)
        return output_bam
