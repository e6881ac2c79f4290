"""Tests for sma-stream configuration models and fail-fast checks."""
from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError


def _config(tmp_path: Path, **kwargs):
    from sma_stream.config import PipelineConfig
    input_dir = tmp_path / "in"
    input_dir.mkdir(exist_ok=True)
    return PipelineConfig(input_dir=input_dir, output_dir=tmp_path / "out", **kwargs)


class TestDefaults:

    def test_scheduler_defaults(self, tmp_path):
        cfg = _config(tmp_path)
        assert cfg.scheduler.max_concurrency == 1
        assert cfg.scheduler.max_retries == 3
        assert cfg.device == "cuda:all"
        assert cfg.qscore_threshold == 10.0
        assert cfg.output_format == "bam"

    def test_demultiplex_follows_kit(self, tmp_path):
        assert not _config(tmp_path).demultiplex
        assert _config(tmp_path, barcode_kit="SQK-NBD114-24").demultiplex

    def test_stop_marker_in_input_dir(self, tmp_path):
        cfg = _config(tmp_path)
        assert cfg.stop_marker_path == tmp_path / "in" / "STOP_BASECALLING"

    def test_input_suffixes(self, tmp_path):
        assert set(_config(tmp_path).input_suffixes()) == {".pod5", ".fast5"}
        assert _config(tmp_path, input_format="fast5").input_suffixes() == (".fast5",)


class TestValidation:

    def test_zero_concurrency_rejected(self, tmp_path):
        with pytest.raises(ValidationError):
            _config(tmp_path, scheduler={"max_concurrency": 0})

    def test_negative_window_rejected(self, tmp_path):
        with pytest.raises(ValidationError):
            _config(tmp_path, duplex={"enabled": True, "window": -1})

    def test_backoff_is_exponential_and_capped(self):
        from sma_stream.config import SchedulerConfig
        sc = SchedulerConfig(base_delay=2.0, max_delay=10.0)
        assert [sc.backoff(n) for n in (1, 2, 3, 4, 5)] == [2.0, 4.0, 8.0, 10.0, 10.0]


class TestCheckConfig:

    def test_duplex_with_demux_is_fatal(self, tmp_path):
        from sma_stream.config import ConfigurationError, check_config
        cfg = _config(tmp_path, barcode_kit="SQK-NBD114-24", duplex={"enabled": True})
        with pytest.raises(ConfigurationError, match="demultiplexing"):
            check_config(cfg)

    def test_duplex_with_unconverted_fast5_is_fatal(self, tmp_path):
        from sma_stream.config import ConfigurationError, check_config
        cfg = _config(tmp_path, input_format="fast5", convert_legacy=False,
                      duplex={"enabled": True})
        with pytest.raises(ConfigurationError, match="POD5"):
            check_config(cfg)

    def test_duplex_with_auto_format_and_no_conversion_is_fatal(self, tmp_path):
        from sma_stream.config import ConfigurationError, check_config
        cfg = _config(tmp_path, convert_legacy=False, duplex={"enabled": True})
        (cfg.input_dir / "r.fast5").write_bytes(b"fast5")
        assert cfg.input_format == "auto"
        with pytest.raises(ConfigurationError, match="POD5"):
            check_config(cfg)

    def test_duplex_with_pod5_only_and_no_conversion_ok(self, tmp_path):
        from sma_stream.config import check_config
        cfg = _config(tmp_path, input_format="pod5", convert_legacy=False,
                      duplex={"enabled": True})
        assert check_config(cfg) == cfg

    def test_duplex_with_converted_fast5_ok(self, tmp_path):
        from sma_stream.config import check_config
        cfg = _config(tmp_path, input_format="fast5", duplex={"enabled": True})
        assert check_config(cfg) == cfg

    def test_missing_input_dir(self, tmp_path):
        from sma_stream.config import ConfigurationError, PipelineConfig, check_config
        cfg = PipelineConfig(input_dir=tmp_path / "nope", output_dir=tmp_path / "out")
        with pytest.raises(ConfigurationError, match="Input directory"):
            check_config(cfg)

    def test_missing_reference(self, tmp_path):
        from sma_stream.config import ConfigurationError, check_config
        cfg = _config(tmp_path, reference=tmp_path / "missing.fa")
        with pytest.raises(ConfigurationError, match="Reference"):
            check_config(cfg)

    def test_cram_needs_reference(self, tmp_path):
        from sma_stream.config import ConfigurationError, check_config
        with pytest.raises(ConfigurationError, match="CRAM"):
            check_config(_config(tmp_path, output_format="cram"))

    def test_fastq_with_reference_becomes_bam(self, tmp_path, capsys):
        from sma_stream.config import check_config
        ref = tmp_path / "ref.fa"
        ref.write_text(">chr1\nACGT\n")
        cfg = _config(tmp_path, output_format="fastq", reference=ref)
        effective = check_config(cfg)
        assert effective.output_format == "bam"
        assert cfg.output_format == "fastq"
        assert "writing BAM instead" in capsys.readouterr().err


class TestToml:

    def test_save_and_load(self, tmp_path):
        from sma_stream.config import load_config, save_config
        cfg = _config(tmp_path, sample_name="run7", duplex={"enabled": True, "window": 2})
        path = tmp_path / "cfg.toml"
        save_config(cfg, path)
        loaded = load_config(path)
        assert loaded.sample_name == "run7"
        assert loaded.duplex.window == 2
        assert loaded.reference is None

    def test_overrides_win(self, tmp_path):
        from sma_stream.config import load_config
        path = tmp_path / "cfg.toml"
        path.write_text(
            f'input_dir = "{tmp_path}"\noutput_dir = "{tmp_path / "out"}"\n'
            'basecaller_model = "sup"\n'
        )
        cfg = load_config(path, basecaller_model="hac", device=None)
        assert cfg.basecaller_model == "hac"
        assert cfg.device == "cuda:all"

    def test_section_overrides_merge(self, tmp_path):
        from sma_stream.config import load_config
        path = tmp_path / "cfg.toml"
        path.write_text(
            f'input_dir = "{tmp_path}"\noutput_dir = "{tmp_path / "out"}"\n'
            '[scheduler]\nmax_concurrency = 2\nmax_retries = 5\n'
        )
        cfg = load_config(path, scheduler={"max_concurrency": 3})
        assert cfg.scheduler.max_concurrency == 3
        assert cfg.scheduler.max_retries == 5

    def test_without_file(self, tmp_path):
        from sma_stream.config import load_config
        cfg = load_config(None, input_dir=tmp_path, output_dir=tmp_path / "out", workers=2)
        assert cfg.workers == 2
