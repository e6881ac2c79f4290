"""Dorado basecaller wrapper with failure classification."""
from __future__ import annotations

import re
import shutil
import subprocess
from pathlib import Path

from sma_stream.models import Chunk

TRANSIENT_PATTERNS = re.compile(
    r"out of memory|cuda error|cudaerror|device busy|devices unavailable"
    r"|resource temporarily unavailable|no cuda-capable device",
    re.IGNORECASE,
)


class TransientJobError(Exception):
    """Basecaller failure worth retrying (device busy, out of memory)."""


class FatalJobError(Exception):
    """Basecaller failure that retrying cannot fix (corrupt or unreadable input)."""


def find_dorado() -> str:
    """Find the dorado binary, checking PATH then common locations."""
    dorado_in_path = shutil.which("dorado")
    if dorado_in_path:
        return dorado_in_path

    home = Path.home()
    candidates = [
        home / "dorado" / "bin" / "dorado",
        home / ".local" / "bin" / "dorado",
        Path("/usr/local/bin/dorado"),
    ]
    for candidate in candidates:
        if candidate.exists():
            return str(candidate)

    return "dorado"


def stage_chunk_input(chunk: Chunk, work_dir: Path) -> Path:
    """Return a path dorado can read for *chunk*.

    Single-file chunks are passed directly; multi-file chunks are
    symlinked into ``<work_dir>/<chunk>/input``, each under an index prefix
    so files sharing a name in different subdirectories are all kept.
    """
    if len(chunk.files) == 1:
        return chunk.files[0]
    input_dir = work_dir / chunk.name / "input"
    input_dir.mkdir(parents=True, exist_ok=True)
    for i, f in enumerate(chunk.files):
        link = input_dir / f"{i:04d}_{f.name}"
        if not link.exists():
            link.symlink_to(f.resolve())
    return input_dir


def build_basecall_command(
    model: str,
    input_path: Path,
    device: str = "cuda:all",
    dorado_path: str | None = None,
    duplex: bool = False,
    barcode_kit: str | None = None,
) -> list[str]:
    """Build the dorado command line for one chunk."""
    dorado = dorado_path or find_dorado()
    cmd = [
        dorado, "duplex" if duplex else "basecaller",
        model,
        str(input_path),
        "--device", device,
    ]
    if barcode_kit:
        cmd.extend(["--kit-name", barcode_kit])
    return cmd


def classify_failure(returncode: int, stderr: str) -> Exception:
    """Map a failed dorado run onto a transient or fatal error."""
    lines = [ln for ln in stderr.strip().splitlines() if ln.strip()]
    detail = lines[-1] if lines else f"exit code {returncode}"
    if TRANSIENT_PATTERNS.search(stderr):
        return TransientJobError(detail)
    return FatalJobError(detail)


def basecall_chunk(
    chunk: Chunk,
    output_bam: Path,
    model: str,
    device: str = "cuda:all",
    dorado_path: str | None = None,
    duplex: bool = False,
    barcode_kit: str | None = None,
    work_dir: Path | None = None,
) -> Path:
    """Basecall *chunk* to an unaligned BAM.

    The BAM is written to a temporary name and moved into place only on
    success, so a partially written file is never picked up.

    Raises:
        TransientJobError: the device was busy or ran out of memory.
        FatalJobError: any other dorado failure.
    """
    output_bam.parent.mkdir(parents=True, exist_ok=True)
    input_path = stage_chunk_input(chunk, work_dir or output_bam.parent)
    cmd = build_basecall_command(
        model, input_path, device, dorado_path, duplex, barcode_kit,
    )

    tmp_bam = output_bam.with_name(f".{output_bam.name}.tmp")
    with open(tmp_bam, "wb") as out_fh:
        result = subprocess.run(cmd, stdout=out_fh, stderr=subprocess.PIPE)
    stderr = result.stderr.decode("utf-8", errors="replace") if result.stderr else ""

    if result.returncode != 0:
        tmp_bam.unlink(missing_ok=True)
        raise classify_failure(result.returncode, stderr)

    tmp_bam.replace(output_bam)
    return output_bam
