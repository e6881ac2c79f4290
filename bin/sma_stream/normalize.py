"""Convert legacy fast5 chunks to POD5."""
from __future__ import annotations

import hashlib
import subprocess
from pathlib import Path

import pod5 as p5

from sma_stream.config import CANONICAL_FORMAT
from sma_stream.models import Chunk, log


class NormalizationError(Exception):
    """Raised when a chunk cannot be converted to POD5."""


class FormatNormalizer:
    """Produces a POD5 equivalent of each chunk.

    Converted files are cached as ``<cache_dir>/<chunk>-<key>.pod5``, where
    the key hashes the resolved path, size and mtime of every source file,
    so a cached file is only reused for exactly the same sources. POD5
    chunks, and every chunk when conversion is disabled, are returned
    unchanged.
    """

    def __init__(self, cache_dir: Path, enabled: bool = True) -> None:
        self.cache_dir = cache_dir
        self.enabled = enabled

    def target_path(self, chunk: Chunk) -> Path:
        return self.cache_dir / f"{chunk.name}-{source_key(chunk)}.pod5"

    def normalize(self, chunk: Chunk) -> Chunk:
        if not self.enabled or chunk.source_format == CANONICAL_FORMAT:
            return chunk

        output = self.target_path(chunk)
        if not _is_cached(output):
            self._convert(chunk, output)

        return Chunk(
            chunk_id=chunk.chunk_id,
            files=(output,),
            source_format=CANONICAL_FORMAT,
        )

    def _convert(self, chunk: Chunk, output: Path) -> None:
        output.parent.mkdir(parents=True, exist_ok=True)
        tmp = output.with_name(f".{output.stem}.tmp.pod5")
        cmd = [
            "pod5", "convert", "fast5",
            *[str(f) for f in chunk.files],
            "--output", str(tmp),
            "--force-overwrite",
        ]
        log(f"Converting {len(chunk.files)} fast5 file(s) for {chunk.name}")
        try:
            subprocess.run(cmd, check=True, capture_output=True, text=True)
        except subprocess.CalledProcessError as exc:
            tmp.unlink(missing_ok=True)
            detail = (exc.stderr or "").strip().splitlines()
            raise NormalizationError(
                f"pod5 convert failed for {chunk.name}: "
                f"{detail[-1] if detail else f'exit code {exc.returncode}'}"
            ) from exc

        n_reads = count_pod5_reads(tmp)
        if n_reads == 0:
            tmp.unlink(missing_ok=True)
            raise NormalizationError(f"No reads recovered from {chunk.name}")
        tmp.replace(output)


def _is_cached(output: Path) -> bool:
    return output.exists() and output.stat().st_size > 0


def source_key(chunk: Chunk) -> str:
    """Digest identifying the exact source files of *chunk*."""
    hash_obj = hashlib.md5()
    for f in chunk.files:
        st = f.stat()
        hash_obj.update(f"{f.resolve()}\0{st.st_size}\0{st.st_mtime_ns}\n".encode())
    return hash_obj.hexdigest()[:16]


def count_pod5_reads(path: Path) -> int:
    """Number of reads stored in a POD5 file (0 if it cannot be opened)."""
    try:
        with p5.Reader(path) as reader:
            return reader.num_reads
    except (OSError, RuntimeError):
        return 0
