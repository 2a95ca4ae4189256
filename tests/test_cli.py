"""Tests for the pipeline CLI: imports, argument parsing and commands."""

import sys
from unittest import mock

import pytest

from src.pipeline.cli import build_parser, main


class TestCLIModuleImports:
    def test_cli_module_imports(self):
        """CLI module imports without error."""
        from src.pipeline import cli  # noqa: F401

    def test_cli_main_module_imports(self):
        """CLI __main__ module imports without error.

        The __main__ module calls main() at import time, which prints help
        and exits 1 when no subcommand is given.
        """
        sys.modules.pop("src.pipeline.__main__", None)

        with mock.patch("sys.argv", ["__main__.py"]):
            with pytest.raises(SystemExit):
                import importlib
                import src.pipeline.__main__  # noqa: F401
                importlib.reload(src.pipeline.__main__)

    def test_pipeline_init_exports(self):
        """All src.pipeline exports are importable."""
        import src.pipeline

        for name in src.pipeline.__all__:
            assert hasattr(src.pipeline, name), f"Missing export: {name}"

    def test_workspace_init_exports(self):
        import src.workspace

        for name in src.workspace.__all__:
            assert hasattr(src.workspace, name), f"Missing export: {name}"


class TestParser:
    def test_run_step_arguments(self):
        args = build_parser().parse_args([
            "run-step", "/repo", "--title", "Add service", "--id", "s-9", "--mock",
        ])
        assert args.command == "run-step"
        assert args.root == "/repo"
        assert args.step_id == "s-9"
        assert args.mock is True
        assert args.max_retries is None

    def test_build_arguments(self):
        args = build_parser().parse_args(["build", ".", "--no-fix", "--max-retries", "2"])
        assert args.no_fix is True
        assert args.max_retries == 2

    def test_run_step_requires_title(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["run-step", "."])


class TestCommands:
    def test_no_command_exits_1(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 1

    def test_context(self, tmp_path, capsys):
        (tmp_path / "app.py").write_text("print('hi')\n")
        (tmp_path / "pyproject.toml").write_text("[project]\nname = 'x'\n")

        main(["context", str(tmp_path)])

        out = capsys.readouterr().out
        assert "Language:       python" in out
        assert "Build tool:     python" in out
        assert "Test framework: (none detected)" in out

    def test_build_without_build_tool(self, tmp_path, capsys):
        (tmp_path / "notes.txt").write_text("nothing to build")
        main(["build", str(tmp_path), "--mock"])
        assert "UNDETERMINED" in capsys.readouterr().out

    def test_test_without_framework(self, tmp_path, capsys):
        main(["test", str(tmp_path), "--mock"])
        assert "No test framework detected" in capsys.readouterr().out

    def test_run_step_with_mocks(self, tmp_path, capsys):
        main(["run-step", str(tmp_path), "--title", "Add mock", "--mock"])

        out = capsys.readouterr().out
        assert "Phase: ANALYZING (attempt 1)" in out
        assert "Step cli-step: SUCCESS" in out
        assert "[CREATED] mock_file.py" in out
        assert (tmp_path / "mock_file.py").exists()

    def test_failed_step_exits_1_and_rolls_back(self, tmp_path, capsys):
        config = tmp_path / "pipeline.yaml"
        config.write_text("require_build_tool: true\nretry_delay_seconds: 0\n")
        repo = tmp_path / "repo"
        repo.mkdir()

        with pytest.raises(SystemExit) as exc_info:
            main([
                "run-step", str(repo), "--title", "x", "--mock",
                "--config", str(config), "--max-retries", "0",
            ])

        assert exc_info.value.code == 1
        captured = capsys.readouterr()
        assert "Changes were rolled back." in captured.out
        assert "No build tool detected" in captured.err
        assert not (repo / "mock_file.py").exists()

    def test_bad_config_reports_error(self, tmp_path, capsys):
        config = tmp_path / "pipeline.yaml"
        config.write_text("max_retires: 3\n")

        with pytest.raises(SystemExit) as exc_info:
            main(["context", str(tmp_path), "--config", str(config)])

        assert exc_info.value.code == 1
        assert "Error: Unknown config keys: max_retires" in capsys.readouterr().err
