"""Pydantic configuration models for sma-stream.

The pipeline configuration is a small tree of models: scheduler limits,
chunking, watch-mode behaviour and duplex pairing, plus the top-level
run settings. Configurations can be loaded from and written to TOML.
``check_config`` is the fail-fast gate run before any chunk is created.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Literal

import tomli_w
from pydantic import BaseModel, Field, field_validator

from sma_stream.models import warn

CANONICAL_FORMAT = "pod5"
LEGACY_FORMAT = "fast5"
SIGNAL_SUFFIXES = {CANONICAL_FORMAT: ".pod5", LEGACY_FORMAT: ".fast5"}

# Q10 == 90% per-base accuracy
DEFAULT_QSCORE_THRESHOLD = 10.0


class ConfigurationError(Exception):
    """Raised when the requested pipeline configuration cannot run."""


class SchedulerConfig(BaseModel):
    """GPU admission and retry settings."""

    max_concurrency: int = 1
    max_retries: int = 3
    base_delay: float = 5.0
    max_delay: float = 60.0

    @field_validator("max_concurrency")
    @classmethod
    def _positive_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_concurrency must be at least 1")
        return v

    @field_validator("max_retries")
    @classmethod
    def _non_negative_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_retries must be >= 0")
        return v

    def backoff(self, attempt: int) -> float:
        """Delay before retry number *attempt* (1-based), exponential and capped."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


class ChunkConfig(BaseModel):
    """Chunk size limits. A chunk closes when either limit would be exceeded."""

    max_files: int = 1
    max_bytes: int | None = None

    @field_validator("max_files")
    @classmethod
    def _positive_files(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_files must be at least 1")
        return v


class WatchConfig(BaseModel):
    """Real-time (watch mode) behaviour."""

    poll_interval: float = 10.0
    stability_wait: float = 5.0
    grace_period: float = 30.0
    drain_timeout: float | None = None
    read_limit: int | None = None
    stop_marker: str = "STOP_BASECALLING"


class DuplexConfig(BaseModel):
    """Duplex pairing settings.

    ``window`` is the largest chunk-id distance at which two strands can
    still be paired; ``pair_tag`` is the BAM tag carrying the id of the
    complementary candidate strand.
    """

    enabled: bool = False
    window: int = 1
    pair_tag: str = "pc"

    @field_validator("window")
    @classmethod
    def _non_negative_window(cls, v: int) -> int:
        if v < 0:
            raise ValueError("window must be >= 0")
        return v


class PipelineConfig(BaseModel):
    """Top-level sma-stream run configuration."""

    input_dir: Path
    output_dir: Path
    basecaller_model: str = "hac"
    device: str = "cuda:all"
    dorado_path: str | None = None
    input_format: Literal["auto", "pod5", "fast5"] = "auto"
    convert_legacy: bool = True
    reference: Path | None = None
    barcode_kit: str | None = None
    qscore_threshold: float = DEFAULT_QSCORE_THRESHOLD
    output_format: Literal["bam", "cram", "fastq"] = "bam"
    sample_name: str = "sample"
    workers: int = 4
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    chunking: ChunkConfig = Field(default_factory=ChunkConfig)
    watch: WatchConfig = Field(default_factory=WatchConfig)
    duplex: DuplexConfig = Field(default_factory=DuplexConfig)

    @property
    def demultiplex(self) -> bool:
        return bool(self.barcode_kit)

    @property
    def stop_marker_path(self) -> Path:
        return self.input_dir / self.watch.stop_marker

    def input_suffixes(self) -> tuple[str, ...]:
        if self.input_format == "auto":
            return tuple(SIGNAL_SUFFIXES.values())
        return (SIGNAL_SUFFIXES[self.input_format],)


def read_config_data(path: Path) -> dict:
    """Raw TOML contents of a config file, before validation."""
    with open(path, "rb") as fh:
        return tomllib.load(fh)


def load_config(path: Path | None = None, **overrides) -> PipelineConfig:
    """Load a TOML config (if any), applying non-None keyword overrides on top.

    Dict overrides update the matching section key by key, so
    ``scheduler={"max_concurrency": 2}`` keeps the file's other
    scheduler settings.
    """
    data = read_config_data(path) if path is not None else {}
    for key, value in overrides.items():
        if value is None:
            continue
        if isinstance(value, dict):
            data.setdefault(key, {}).update(value)
        else:
            data[key] = value
    return PipelineConfig.model_validate(data)


def save_config(config: PipelineConfig, path: Path) -> None:
    """Write *config* as TOML, dropping unset optional values."""
    data = config.model_dump(mode="json", exclude_none=True)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as fh:
        tomli_w.dump(data, fh)


def check_config(config: PipelineConfig) -> PipelineConfig:
    """Validate a configuration before the pipeline starts.

    Raises:
        ConfigurationError: for combinations the pipeline cannot run.

    Returns:
        The effective configuration (fastq output is replaced by bam when
        a reference is given, with a warning).
    """
    if config.duplex.enabled and config.demultiplex:
        raise ConfigurationError(
            "Duplex basecalling cannot be combined with barcode demultiplexing"
        )
    if (config.duplex.enabled and not config.convert_legacy
            and config.input_format != CANONICAL_FORMAT):
        raise ConfigurationError(
            "Duplex basecalling requires POD5 input; enable convert_legacy "
            "to convert fast5 files, or set input_format = \"pod5\""
        )
    if not config.input_dir.is_dir():
        raise ConfigurationError(f"Input directory not found: {config.input_dir}")
    if config.reference is not None and not config.reference.is_file():
        raise ConfigurationError(f"Reference file not found: {config.reference}")
    if config.output_format == "cram" and config.reference is None:
        raise ConfigurationError("CRAM output requires a reference")
    if config.watch.read_limit is not None and config.watch.read_limit < 1:
        raise ConfigurationError("read_limit must be a positive number of reads")

    if config.output_format == "fastq" and config.reference is not None:
        warn("FASTQ output cannot hold alignments; writing BAM instead")
        config = config.model_copy(update={"output_format": "bam"})
    return config
