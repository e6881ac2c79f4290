"""Per-chunk stream writers and the end-of-run merge."""
from __future__ import annotations

import array
import shutil
from pathlib import Path

import pysam

from sma_stream.models import Record, log

EXTENSIONS = {"bam": "bam", "cram": "cram", "fastq": "fastq"}
_WRITE_MODES = {"bam": "wb", "cram": "wc"}
STAGED_SUFFIX = ".staged"


def stream_name(status: str, barcode: str | None = None) -> str:
    """Directory name of an output stream, e.g. ``pass`` or ``barcode01/pass``."""
    return f"{barcode}/{status}" if barcode else status


def record_to_segment(rec: Record, header: pysam.AlignmentHeader) -> pysam.AlignedSegment:
    seg = pysam.AlignedSegment(header)
    seg.query_name = rec.read_id
    seg.query_sequence = rec.sequence
    seg.query_qualities = array.array("B", rec.qualities)
    if rec.alignment is None:
        seg.flag = 4
    else:
        seg.flag = 16 if rec.alignment.is_reverse else 0
        seg.reference_name = rec.alignment.reference_name
        seg.reference_start = rec.alignment.reference_start
        seg.cigarstring = rec.alignment.cigar
        seg.mapping_quality = rec.alignment.mapping_quality
    if rec.tags:
        seg.set_tags(list(rec.tags.items()))
    return seg


def fastq_entry(rec: Record) -> str:
    quals = "".join(chr(q + 33) for q in rec.qualities)
    return f"@{rec.read_id}\tqs:f:{rec.mean_qscore:.2f}\n{rec.sequence}\n+\n{quals}\n"


def write_records(
    records: list[Record],
    path: Path,
    fmt: str,
    header: dict,
    reference: Path | None = None,
) -> Path:
    """Write *records* in order to *path* in the given container format."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    if fmt == "fastq":
        with open(tmp, "w") as fh:
            for rec in records:
                fh.write(fastq_entry(rec))
    else:
        kwargs = {}
        if fmt == "cram":
            kwargs["reference_filename"] = str(reference)
        hdr = pysam.AlignmentHeader.from_dict(header)
        with pysam.AlignmentFile(str(tmp), _WRITE_MODES[fmt], header=hdr, **kwargs) as af:
            for rec in records:
                af.write(record_to_segment(rec, hdr))
    tmp.replace(path)
    return path


def staged_path(path: Path) -> Path:
    """Hidden name a chunk file is written under until its chunk resolves."""
    return path.with_name(f".{path.name}{STAGED_SUFFIX}")


def write_chunk_streams(
    chunk_name: str,
    streams: dict[str, list[Record]],
    output_dir: Path,
    fmt: str,
    header: dict,
    reference: Path | None = None,
) -> dict[str, Path]:
    """Stage one file per non-empty stream under ``<output_dir>/<stream>/``.

    Files keep a hidden staging name, which ``merge_streams`` never
    picks up, until :func:`commit_chunk_streams` moves them into place.
    If any write fails, the files already staged for the chunk are
    removed before the error propagates.
    """
    staged: dict[str, Path] = {}
    try:
        for name, records in streams.items():
            if not records:
                continue
            path = output_dir / name / f"{chunk_name}.{EXTENSIONS[fmt]}"
            staged[name] = write_records(records, staged_path(path), fmt, header, reference)
    except Exception:
        discard_chunk_streams(staged)
        raise
    return staged


def commit_chunk_streams(staged: dict[str, Path]) -> dict[str, Path]:
    """Move staged chunk files to the names ``merge_streams`` collects."""
    committed: dict[str, Path] = {}
    for name, path in staged.items():
        final = path.with_name(path.name[1:-len(STAGED_SUFFIX)])
        path.replace(final)
        committed[name] = final
    return committed


def discard_chunk_streams(staged: dict[str, Path]) -> None:
    for path in staged.values():
        path.unlink(missing_ok=True)


def merge_streams(
    output_dir: Path,
    streams: list[str],
    sample: str,
    fmt: str,
    aligned: bool = False,
    reference: Path | None = None,
    remove_chunks: bool = True,
) -> dict[str, Path]:
    """Concatenate each stream's chunk files into ``<sample>.<stream>.<ext>``.

    Chunk files are concatenated in chunk order, so record order is kept
    within each chunk. Aligned BAM/CRAM outputs are then coordinate
    sorted and indexed.
    """
    ext = EXTENSIONS[fmt]
    merged: dict[str, Path] = {}
    for name in sorted(streams):
        parts = sorted((output_dir / name).glob(f"chunk_*.{ext}"))
        if not parts:
            continue
        out = output_dir / f"{sample}.{name.replace('/', '.')}.{ext}"
        log(f"Merging {len(parts)} chunk file(s) -> {out.name}")
        _merge_files(parts, out, fmt, aligned, reference)
        merged[name] = out
        if remove_chunks:
            for p in parts:
                p.unlink()
    return merged


def _merge_files(parts: list[Path], out: Path, fmt: str, aligned: bool,
                 reference: Path | None) -> None:
    if fmt == "fastq":
        with open(out, "wb") as out_fh:
            for p in parts:
                with open(p, "rb") as in_fh:
                    shutil.copyfileobj(in_fh, out_fh)
        return

    ref_args = ["--reference", str(reference)] if fmt == "cram" and reference else []
    if not aligned:
        pysam.cat("-o", str(out), *[str(p) for p in parts])
        return

    unsorted = out.with_name(f".{out.name}.unsorted")
    pysam.cat("-o", str(unsorted), *[str(p) for p in parts])
    pysam.sort(*ref_args, "-O", fmt.upper(), "-o", str(out), str(unsorted))
    unsorted.unlink()
    pysam.index(str(out))
