"""CLI entry point for sma-stream."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

from pydantic import ValidationError

from sma_stream.config import (
    ConfigurationError, PipelineConfig, check_config, load_config, save_config,
)
from sma_stream.pipeline import RunFailedError, run_batch


def _add_run_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("input_dir", type=Path, nargs="?", default=None,
                   help="Directory of POD5/fast5 signal files")
    p.add_argument("-o", "--output", type=Path, default=None, help="Output directory")
    p.add_argument("-c", "--config", type=Path, default=None,
                   help="TOML configuration file (command-line options override it)")
    p.add_argument("--model", default=None, help="Basecaller model (default: hac)")
    p.add_argument("--device", default=None, help="Dorado device (default: cuda:all)")
    p.add_argument("--dorado", default=None, help="Path to dorado binary")
    p.add_argument("--reference", type=Path, default=None, help="Reference FASTA for alignment")
    p.add_argument("--kit", default=None, help="Barcode kit name (enables demultiplexing)")
    p.add_argument("--min-qscore", type=float, default=None,
                   help="Mean Q-score threshold for the pass stream (default: 10)")
    p.add_argument("--format", choices=["bam", "cram", "fastq"], default=None,
                   help="Output format (default: bam)")
    p.add_argument("--input-format", choices=["auto", "pod5", "fast5"], default=None,
                   help="Signal files to pick up (default: auto)")
    p.add_argument("--no-convert", action="store_true",
                   help="Do not convert fast5 input to POD5")
    p.add_argument("--sample", default=None, help="Sample name used for output files")
    p.add_argument("--duplex", action="store_true", help="Run duplex basecalling and pairing")
    p.add_argument("--duplex-window", type=int, default=None,
                   help="Max chunk distance between paired strands (default: 1)")
    p.add_argument("--max-gpu-jobs", type=int, default=None,
                   help="Concurrent basecaller jobs on the device (default: 1)")
    p.add_argument("--max-retries", type=int, default=None,
                   help="Retries for transient GPU failures (default: 3)")
    p.add_argument("--chunk-files", type=int, default=None,
                   help="Max signal files per chunk (default: 1)")
    p.add_argument("--chunk-bytes", type=int, default=None, help="Max bytes per chunk")
    p.add_argument("--workers", type=int, default=None,
                   help="Worker threads for per-chunk processing (default: 4)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sma-stream",
        description="Streaming nanopore basecalling: chunk, basecall, align, classify and summarise.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Process every signal file currently in a directory")
    _add_run_options(run)

    watch = sub.add_parser("watch", help="Process signal files as they arrive until stopped")
    _add_run_options(watch)
    watch.add_argument("--poll-interval", type=float, default=None,
                       help="Seconds between directory scans (default: 10)")
    watch.add_argument("--stability-wait", type=float, default=None,
                       help="Seconds a file must stay unchanged before it is used (default: 5)")
    watch.add_argument("--read-limit", type=int, default=None,
                       help="Stop after this many reads")
    watch.add_argument("--drain-timeout", type=float, default=None,
                       help="Give up on in-flight chunks this many seconds after stopping")

    check = sub.add_parser("check", help="Validate a configuration without running it")
    _add_run_options(check)
    check.add_argument("--write", type=Path, default=None,
                       help="Write the effective configuration to this TOML file")

    return parser


def _set(data: dict, section: str | None, key: str, value) -> None:
    if value is None:
        return
    target = data.setdefault(section, {}) if section else data
    target[key] = value


def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    """Build the run configuration from an optional TOML file plus CLI options."""
    data: dict = {}
    _set(data, None, "input_dir", args.input_dir)
    _set(data, None, "output_dir", args.output)
    _set(data, None, "basecaller_model", args.model)
    _set(data, None, "device", args.device)
    _set(data, None, "dorado_path", args.dorado)
    _set(data, None, "reference", args.reference)
    _set(data, None, "barcode_kit", args.kit)
    _set(data, None, "qscore_threshold", args.min_qscore)
    _set(data, None, "output_format", args.format)
    _set(data, None, "input_format", args.input_format)
    _set(data, None, "sample_name", args.sample)
    _set(data, None, "workers", args.workers)
    if args.no_convert:
        data["convert_legacy"] = False
    if args.duplex:
        _set(data, "duplex", "enabled", True)
    _set(data, "duplex", "window", args.duplex_window)
    _set(data, "scheduler", "max_concurrency", args.max_gpu_jobs)
    _set(data, "scheduler", "max_retries", args.max_retries)
    _set(data, "chunking", "max_files", args.chunk_files)
    _set(data, "chunking", "max_bytes", args.chunk_bytes)
    _set(data, "watch", "poll_interval", getattr(args, "poll_interval", None))
    _set(data, "watch", "stability_wait", getattr(args, "stability_wait", None))
    _set(data, "watch", "read_limit", getattr(args, "read_limit", None))
    _set(data, "watch", "drain_timeout", getattr(args, "drain_timeout", None))

    return load_config(args.config, **data)


def cmd_run(config: PipelineConfig) -> None:
    final = run_batch(config)
    print(f"Done! {final.total_reads} read(s) in {config.output_dir}")


def cmd_watch(config: PipelineConfig) -> None:
    from sma_stream.watch import WatchController

    final = WatchController(config).run()
    print(f"Done! {final.total_reads} read(s) in {config.output_dir}")


def cmd_check(config: PipelineConfig, write: Path | None) -> None:
    print(f"Configuration OK: {config.input_dir} -> {config.output_dir}")
    print(f"  model={config.basecaller_model} device={config.device} "
          f"format={config.output_format} duplex={config.duplex.enabled} "
          f"kit={config.barcode_kit or '-'}")
    if write is not None:
        save_config(config, write)
        print(f"Wrote {write}")


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = check_config(config_from_args(args))
    except ValidationError as exc:
        print(f"ERROR: invalid configuration:\n{exc}", file=sys.stderr)
        sys.exit(2)
    except ConfigurationError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(2)

    try:
        if args.command == "run":
            cmd_run(config)
        elif args.command == "watch":
            cmd_watch(config)
        elif args.command == "check":
            cmd_check(config, args.write)
    except RunFailedError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
