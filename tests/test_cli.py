"""Tests for the jjdag CLI."""

from pathlib import Path
from unittest.mock import patch

import click.testing
import pytest

from conftest import FakeJJ, make_scooped, make_unscooped, store_file_of
from jjdag.cli import jjdag
from jjdag.config import Config
from jjdag.errors import EXIT_ERROR, EXIT_NOT_READY, EXIT_PARTIAL, EXIT_USAGE, ConfigError
from jjdag.store import encode_record


@pytest.fixture
def mock_config() -> Config:
    return Config()


def invoke(runner: click.testing.CliRunner, args: list[str], fake: FakeJJ, config: Config):
    """Run the CLI with a fake jj, resolving the workspace to ``-R`` as given."""
    with patch("jjdag.cli.get_config", return_value=config):
        with patch("jjdag.cli.find_repository", side_effect=lambda start, jj_bin: start):
            return runner.invoke(jjdag, args, obj={"runner": fake})


class TestWorkspaceList:
    def test_lists_name_and_path(self, runner, tmp_path: Path, mock_config: Config):
        root = make_scooped(tmp_path / "proj")
        result = invoke(runner, ["-R", str(root / "default"), "workspace", "list"], FakeJJ(), mock_config)

        assert result.exit_code == 0
        assert result.output.splitlines() == [
            f"default: {root / 'default'}",
            f"feature: {root / 'feature'}",
        ]

    def test_table(self, runner, tmp_path: Path, mock_config: Config):
        root = make_scooped(tmp_path / "proj")
        result = invoke(
            runner, ["-R", str(root / "default"), "workspace", "list", "--table"], FakeJJ(), mock_config
        )

        assert result.exit_code == 0
        assert "NAME" in result.output
        assert f"Project root: {root} (scooped)" in result.output

    def test_warns_about_mismatches(self, runner, tmp_path: Path, mock_config: Config):
        root = make_scooped(tmp_path / "proj")
        store = store_file_of(root / "default")
        store.write_bytes(store.read_bytes() + encode_record("ghost", str(root / "ghost")))

        result = invoke(runner, ["-R", str(root / "default"), "workspace", "list"], FakeJJ(), mock_config)

        assert result.exit_code == 0
        assert f"ghost: {root / 'ghost'}" in result.output
        assert "Warning: 1 workspace mismatch(es)" in result.output
        assert not (root / "ghost").exists()

    def test_listing_failure_exit_code(self, runner, tmp_path: Path, mock_config: Config):
        root = make_unscooped(tmp_path / "proj")
        fake = FakeJJ()
        fake.fail("list", stderr="Error: locked")

        result = invoke(runner, ["-R", str(root), "workspace", "list"], fake, mock_config)

        assert result.exit_code == EXIT_NOT_READY
        assert "locked" in result.output


class TestTopologyCommands:
    def test_add_plan_is_dry_run(self, runner, tmp_path: Path, mock_config: Config):
        root = make_unscooped(tmp_path / "proj")
        fake = FakeJJ()

        result = invoke(runner, ["-R", str(root), "workspace", "add", "feature", "--plan"], fake, mock_config)

        assert result.exit_code == 0
        assert "DRY RUN: Would add workspace 'feature'" in result.output
        assert f"1. move {root} -> {root / 'default'}" in result.output
        assert not (root / "default").exists()
        assert [args[2] for args, _ in fake.calls] == ["list"]

    def test_add_then_forget(self, runner, tmp_path: Path, mock_config: Config):
        root = make_unscooped(tmp_path / "proj")
        fake = FakeJJ()

        added = invoke(runner, ["-R", str(root), "workspace", "add", "feature"], fake, mock_config)
        assert added.exit_code == 0, added.output
        assert "Done: add workspace 'feature'" in added.output
        assert (root / "default" / "README.md").exists()

        forgot = invoke(
            runner, ["-R", str(root / "default"), "workspace", "forget", "feature"], fake, mock_config
        )
        assert forgot.exit_code == 0, forgot.output
        assert f"default: {root}" in forgot.output
        assert not (root / "feature").exists()

    def test_forget_keep_files(self, runner, tmp_path: Path, mock_config: Config):
        root = make_scooped(tmp_path / "proj", names=("default", "feature", "bugfix"))
        result = invoke(
            runner,
            ["-R", str(root / "default"), "workspace", "forget", "feature", "--keep-files"],
            FakeJJ(),
            mock_config,
        )
        assert result.exit_code == 0, result.output
        assert (root / "feature").is_dir()

    def test_rename(self, runner, tmp_path: Path, mock_config: Config):
        root = make_scooped(tmp_path / "proj")
        result = invoke(
            runner,
            ["-R", str(root / "default"), "workspace", "rename", "feature", "topic"],
            FakeJJ(),
            mock_config,
        )
        assert result.exit_code == 0, result.output
        assert (root / "topic" / "README.md").exists()
        assert f"topic: {root / 'topic'}" in result.output

    def test_rejected_intent_exit_code(self, runner, tmp_path: Path, mock_config: Config):
        root = make_scooped(tmp_path / "proj")
        result = invoke(
            runner, ["-R", str(root / "default"), "workspace", "add", "feature"], FakeJJ(), mock_config
        )
        assert result.exit_code == EXIT_USAGE
        assert "already exists" in result.output

    def test_plan_failure_report(self, runner, tmp_path: Path, mock_config: Config):
        root = make_unscooped(tmp_path / "proj")
        fake = FakeJJ()
        fake.fail("add", stderr="Error: boom")

        result = invoke(runner, ["-R", str(root), "workspace", "add", "feature"], fake, mock_config)

        assert result.exit_code == EXIT_PARTIAL
        assert "FAILED at step 3" in result.output
        assert "All applied steps were rolled back." in result.output
        assert not (root / "default").exists()


class TestCheck:
    def test_consistent(self, runner, tmp_path: Path, mock_config: Config):
        root = make_scooped(tmp_path / "proj")
        result = invoke(runner, ["-R", str(root / "default"), "check"], FakeJJ(), mock_config)
        assert result.exit_code == 0
        assert "agree" in result.output

    def test_drift(self, runner, tmp_path: Path, mock_config: Config):
        root = make_scooped(tmp_path / "proj")
        store = store_file_of(root / "default")

        store.write_bytes(store.read_bytes() + encode_record("ghost", str(root / "ghost")))

        result = invoke(runner, ["-R", str(root / "default"), "check"], FakeJJ(), mock_config)

        assert result.exit_code == EXIT_NOT_READY
        assert "MISSING ON DISK" in result.output
        assert "ghost" in result.output


class TestMisc:
    def test_root(self, runner, tmp_path: Path, mock_config: Config):
        root = make_unscooped(tmp_path / "proj")
        result = invoke(runner, ["-R", str(root / "src"), "root"], FakeJJ(), mock_config)
        assert result.exit_code == 0
        assert result.output.strip() == str(root)

    def test_update_stale(self, runner, tmp_path: Path, mock_config: Config):
        root = make_unscooped(tmp_path / "proj")
        result = invoke(runner, ["-R", str(root), "workspace", "update-stale"], FakeJJ(), mock_config)
        assert result.exit_code == 0
        assert "$ jj workspace update-stale" in result.output
        assert "Working copy already up to date" in result.output

    def test_not_a_workspace(self, runner, tmp_path: Path, mock_config: Config):
        with patch("jjdag.cli.get_config", return_value=mock_config):
            with patch(
                "jjdag.cli.find_repository",
                side_effect=RuntimeError(f"Not a jj workspace: {tmp_path}"),
            ):
                result = runner.invoke(jjdag, ["-R", str(tmp_path), "workspace", "list"], obj={})

        assert result.exit_code == EXIT_ERROR
        assert "Not a jj workspace" in result.output

    def test_bad_config(self, runner, tmp_path: Path):
        with patch("jjdag.cli.get_config", side_effect=ConfigError("Invalid config file x")):
            result = runner.invoke(jjdag, ["-R", str(tmp_path), "workspace", "list"], obj={})

        assert result.exit_code == EXIT_ERROR
        assert "Invalid config file" in result.output
