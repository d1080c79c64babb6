#!/usr/bin/env python3
"""
Tests for the lsp-bench command line interface.
"""

import json
from unittest.mock import AsyncMock, patch

import pytest

from benchmark_config import BenchmarkConfig
from benchmark_report import BenchmarkAggregator
from benchmark_runner import EXIT_INTERRUPTED, LanguageRunResult
from errors import ConfigurationError
from language_config import Language
from lsp_bench_cli import build_config, build_parser, main, parse_languages
from tests.fixtures import fake_server_overrides


def write_config(tmp_path, **values):
    path = tmp_path / "bench.json"
    path.write_text(json.dumps(values))
    return path


class TestParseLanguages:
    """Test --language handling."""

    def test_repeated_and_comma_separated(self):
        languages = parse_languages(["rust,python", "go", "python"])

        assert languages == [Language.RUST, Language.PYTHON, Language.GO]

    def test_unknown_language(self):
        with pytest.raises(ConfigurationError):
            parse_languages(["python,klingon"])

    def test_empty_values(self):
        with pytest.raises(ConfigurationError):
            parse_languages([" , "])


class TestBuildConfig:
    """Test combining the config file with command line options."""

    def test_defaults_without_options(self):
        args = build_parser().parse_args(["/project", "-l", "python"])

        assert build_config(args) == BenchmarkConfig()

    def test_command_line_wins_over_file(self, tmp_path):
        path = write_config(tmp_path, request_timeout=12.0, max_concurrency=8)
        args = build_parser().parse_args(
            ["/project", "-l", "python", "--config", str(path), "--concurrency", "2", "--include", "src/*"]
        )

        config = build_config(args)

        assert config.request_timeout == 12.0
        assert config.max_concurrency == 2
        assert config.include_glob == "src/*"

    def test_invalid_option_value(self):
        args = build_parser().parse_args(["/project", "-l", "python", "--timeout", "0"])

        with pytest.raises(ConfigurationError):
            build_config(args)


class TestMainExitCodes:
    """Test exit statuses of argument and setup errors."""

    def test_missing_language_is_usage_error(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main([str(tmp_path)])

        assert exc_info.value.code == 2

    def test_unknown_language(self, tmp_path, capsys):
        assert main([str(tmp_path), "-l", "cobol"]) == 2
        assert "Unsupported language" in capsys.readouterr().err

    def test_invalid_config_file(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{")

        assert main([str(tmp_path), "-l", "python", "--config", str(path)]) == 2

    def test_unknown_server_override(self, tmp_path):
        path = write_config(tmp_path, servers={"python": {"binary": "pylsp"}})

        assert main([str(tmp_path), "-l", "python", "--config", str(path)]) == 2

    def test_missing_project_path(self, tmp_path, capsys):
        assert main([str(tmp_path / "missing"), "-l", "python"]) == 1
        assert "not a directory" in capsys.readouterr().err


@pytest.mark.slow
class TestMainRuns:
    """Full runs through the CLI with the fake server."""

    def test_json_report(self, python_project, tmp_path, capsys):
        config = write_config(tmp_path, servers=fake_server_overrides(), request_timeout=5.0)
        output = tmp_path / "report.json"

        exit_code = main(
            [
                str(python_project),
                "--language",
                "python",
                "--config",
                str(config),
                "--format",
                "json",
                "--output",
                str(output),
            ]
        )

        assert exit_code == 0
        report = json.loads(capsys.readouterr().out)
        assert report["languages"] == ["python"]
        assert report["summary"]["outcomes"] == {"success": 10}
        assert len(report["records"]) == 10
        assert json.loads(output.read_text()) == report

    def test_table_report(self, python_project, tmp_path, capsys):
        config = write_config(tmp_path, servers=fake_server_overrides())

        exit_code = main([str(python_project), "-l", "python", "--config", str(config), "--max-symbols", "4"])

        assert exit_code == 0
        out = capsys.readouterr().out
        assert "success=4" in out
        assert "ops/sec" in out

    def test_spawn_failure_exits_one(self, python_project, tmp_path):
        config = write_config(tmp_path, servers={"python": {"command": "definitely-not-an-lsp-server-7f3a"}})

        assert main([str(python_project), "-l", "python", "--config", str(config)]) == 1


class TestMainWithMockedRun:
    """Test rendering and exit status without spawning servers."""

    def result(self, tmp_path, language, exit_code):
        report = BenchmarkAggregator(str(tmp_path), [language.value]).finalize()
        return LanguageRunResult(language, report, exit_code)

    def test_interrupted_run_still_prints_report(self, tmp_path, capsys):
        results = [self.result(tmp_path, Language.PYTHON, EXIT_INTERRUPTED)]

        with patch("lsp_bench_cli.run_many", AsyncMock(return_value=results)) as run_many:
            exit_code = main([str(tmp_path), "-l", "python"])

        assert exit_code == 130
        assert run_many.await_count == 1
        assert "Call hierarchy benchmark" in capsys.readouterr().out

    def test_json_for_several_languages_is_a_list(self, tmp_path, capsys):
        results = [
            self.result(tmp_path, Language.PYTHON, 0),
            self.result(tmp_path, Language.RUST, 0),
        ]

        with patch("lsp_bench_cli.run_many", AsyncMock(return_value=results)) as run_many:
            exit_code = main([str(tmp_path), "-l", "python,rust", "--format", "json"])

        assert exit_code == 0
        _, languages = run_many.await_args.args
        assert languages == [Language.PYTHON, Language.RUST]
        payload = json.loads(capsys.readouterr().out)
        assert [report["languages"] for report in payload] == [["python"], ["rust"]]

    def test_unwritable_output(self, tmp_path):
        results = [self.result(tmp_path, Language.PYTHON, 0)]
        output = tmp_path / "missing-dir" / "report.txt"

        with patch("lsp_bench_cli.run_many", AsyncMock(return_value=results)):
            assert main([str(tmp_path), "-l", "python", "--output", str(output)]) == 1
