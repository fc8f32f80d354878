"""
Smoke Tests for CLI Commands.

These tests verify that CLI commands run without errors and produce output.
They don't validate correctness deeply - just that commands work.

Usage:
    pytest tests/smoke/test_cli_commands.py -v
    pytest tests/smoke/test_cli_commands.py -v -m smoke
"""

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

# Mark all tests in this module as smoke tests
pytestmark = pytest.mark.smoke

# Project root
PROJECT_ROOT = Path(__file__).parent.parent.parent


@pytest.fixture
def run_cli(tmp_path):
    """
    Run a CLI command against a throwaway state directory.

    Returns:
        Callable taking the arguments and returning (exit_code, stdout, stderr)
    """
    env = {
        **os.environ,
        "STATE_DIR": str(tmp_path / "state"),
        "STATE_BACKEND": "json",
        "STITCHES_PER_TUBE": "5",
        "LOG_LEVEL": "WARNING",
        "CONTENT_API_URL": "",
    }

    def run(*args: str, timeout: int = 30) -> tuple[int, str, str]:
        result = subprocess.run(
            [sys.executable, "-m", "src.cli.main", *args],
            cwd=PROJECT_ROOT,
            env=env,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return result.returncode, result.stdout, result.stderr

    return run


class TestCLIHelp:
    """Test that help commands work."""

    def test_main_help(self, run_cli):
        """Main help should list the commands."""
        code, stdout, stderr = run_cli("--help")

        assert code == 0, f"Help failed: {stderr}"
        assert "Commands" in stdout
        for command in ("show", "complete", "advance", "repair", "export"):
            assert command in stdout

    def test_complete_help(self, run_cli):
        code, stdout, stderr = run_cli("complete", "--help")

        assert code == 0, f"Help failed: {stderr}"
        assert "--advance" in stdout


class TestCLIState:
    """Commands that read and write learner state."""

    def test_show_seeds_new_learner(self, run_cli):
        code, stdout, stderr = run_cli("--user", "smoke", "show")

        assert code == 0, f"show failed: {stderr}"
        assert "Tube 1" in stdout
        assert "stitch-T1-001" in stdout

    def test_ready_defaults_to_active_tube(self, run_cli):
        code, stdout, stderr = run_cli("ready")

        assert code == 0, f"ready failed: {stderr}"
        assert "Tube 1: stitch-T1-001" in stdout

    def test_perfect_completion(self, run_cli):
        code, stdout, stderr = run_cli("complete", "1", "stitch-T1-001", "5", "5")

        assert code == 0, f"complete failed: {stderr}"
        assert "Perfect" in stdout
        assert "stitch-T1-002" in stdout

    def test_stale_completion_is_not_an_error(self, run_cli):
        code, stdout, stderr = run_cli("complete", "2", "stitch-T2-004", "5", "5")

        assert code == 0, f"complete failed: {stderr}"
        assert "not the ready stitch" in stdout

    def test_invalid_tube_is_rejected(self, run_cli):
        code, _, _ = run_cli("complete", "7", "stitch-T1-001", "5", "5")
        assert code == 2

    def test_advance_and_select(self, run_cli):
        code, stdout, stderr = run_cli("advance")
        assert code == 0, f"advance failed: {stderr}"
        assert "1 -> 2" in stdout

        code, stdout, stderr = run_cli("select", "3")
        assert code == 0, f"select failed: {stderr}"
        assert "Active tube: 3" in stdout

    def test_repair_reports_healthy_tubes(self, run_cli):
        code, stdout, stderr = run_cli("repair")

        assert code == 0, f"repair failed: {stderr}"
        assert stdout.count("ok") == 3

    def test_export_is_json(self, run_cli):
        run_cli("complete", "1", "stitch-T1-001", "5", "5", "--advance")

        code, stdout, stderr = run_cli("export")

        assert code == 0, f"export failed: {stderr}"
        document = json.loads(stdout)
        assert document["active_tube"] == 2
        assert document["tubes"]["1"]["positions"][0]["stitch_id"] == "stitch-T1-002"

    def test_reset_with_yes(self, run_cli):
        run_cli("advance")

        code, stdout, stderr = run_cli("reset", "--yes")

        assert code == 0, f"reset failed: {stderr}"
        assert "T1=stitch-T1-001" in stdout
