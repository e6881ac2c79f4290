"""Tests for the sma-stream CLI."""
from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest


class TestBuildParser:

    def test_run_args(self):
        from sma_stream.cli import build_parser
        args = build_parser().parse_args(["run", "/data/in", "-o", "/data/out", "--duplex",
                                          "--max-gpu-jobs", "2"])
        assert args.command == "run"
        assert args.input_dir == Path("/data/in")
        assert args.output == Path("/data/out")
        assert args.duplex
        assert args.max_gpu_jobs == 2

    def test_watch_only_args(self):
        from sma_stream.cli import build_parser
        parser = build_parser()
        args = parser.parse_args(["watch", "in", "-o", "out", "--read-limit", "1000"])
        assert args.read_limit == 1000
        with pytest.raises(SystemExit):
            parser.parse_args(["run", "in", "-o", "out", "--read-limit", "5"])

    def test_requires_command(self):
        from sma_stream.cli import build_parser
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestConfigFromArgs:

    def test_flags_map_to_config(self, tmp_path):
        from sma_stream.cli import build_parser, config_from_args
        args = build_parser().parse_args([
            "watch", str(tmp_path), "-o", str(tmp_path / "out"), "--duplex",
            "--duplex-window", "3", "--chunk-files", "4", "--poll-interval", "2.5",
            "--min-qscore", "12", "--no-convert",
        ])
        cfg = config_from_args(args)
        assert cfg.duplex.enabled and cfg.duplex.window == 3
        assert cfg.chunking.max_files == 4
        assert cfg.watch.poll_interval == 2.5
        assert cfg.qscore_threshold == 12.0
        assert cfg.convert_legacy is False

    def test_cli_overrides_toml(self, tmp_path):
        from sma_stream.cli import build_parser, config_from_args
        toml = tmp_path / "run.toml"
        toml.write_text(
            f'input_dir = "{tmp_path}"\n'
            f'output_dir = "{tmp_path / "out"}"\n'
            'basecaller_model = "sup"\n'
            '[scheduler]\nmax_concurrency = 2\nmax_retries = 5\n'
        )
        args = build_parser().parse_args(["run", "--config", str(toml), "--max-gpu-jobs", "3"])
        cfg = config_from_args(args)
        assert cfg.basecaller_model == "sup"
        assert cfg.scheduler.max_concurrency == 3
        assert cfg.scheduler.max_retries == 5


class TestMain:

    def test_duplex_with_kit_fails_before_any_chunk(self, tmp_path, capsys):
        from sma_stream.cli import main
        (tmp_path / "in").mkdir()
        (tmp_path / "in" / "a.pod5").write_bytes(b"signal")
        with patch("sma_stream.cli.run_batch") as mock_run, pytest.raises(SystemExit) as exc:
            main(["run", str(tmp_path / "in"), "-o", str(tmp_path / "out"),
                  "--duplex", "--kit", "SQK-NBD114-24"])
        assert exc.value.code == 2
        mock_run.assert_not_called()
        assert not (tmp_path / "out").exists()
        assert "demultiplexing" in capsys.readouterr().err

    def test_invalid_value(self, tmp_path, capsys):
        from sma_stream.cli import main
        with pytest.raises(SystemExit) as exc:
            main(["run", str(tmp_path), "-o", str(tmp_path / "out"), "--max-gpu-jobs", "0"])
        assert exc.value.code == 2
        assert "invalid configuration" in capsys.readouterr().err

    def test_run_failed_exits_1(self, tmp_path):
        from sma_stream.cli import main
        from sma_stream.pipeline import RunFailedError
        with patch("sma_stream.cli.run_batch", side_effect=RunFailedError("all failed")), \
             pytest.raises(SystemExit) as exc:
            main(["run", str(tmp_path), "-o", str(tmp_path / "out")])
        assert exc.value.code == 1

    def test_check_writes_config(self, tmp_path, capsys):
        from sma_stream.cli import main
        from sma_stream.config import load_config
        out_toml = tmp_path / "effective.toml"
        main(["check", str(tmp_path), "-o", str(tmp_path / "out"), "--model", "sup",
              "--write", str(out_toml)])
        assert "Configuration OK" in capsys.readouterr().out
        assert load_config(out_toml).basecaller_model == "sup"

    def test_run_calls_batch(self, tmp_path):
        from sma_stream.aggregate import StatsSnapshot
        from sma_stream.cli import main
        with patch("sma_stream.cli.run_batch", return_value=StatsSnapshot()) as mock_run:
            main(["run", str(tmp_path), "-o", str(tmp_path / "out"), "--sample", "s9"])
        cfg = mock_run.call_args[0][0]
        assert cfg.sample_name == "s9"
        assert cfg.input_dir == tmp_path
