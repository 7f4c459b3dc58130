"""Tests for the click entry point.

These tests validate:
1. activity / verify on a fresh repository
2. archive done, list, restore, export and import
3. spec new, list and show
4. Init failures exit with code 1
"""

from __future__ import annotations

from pathlib import Path

import pytest
from click.testing import CliRunner

from taskwing.cli import main
from taskwing.config import load_config
from taskwing.store.archive_store import ArchiveStore
from taskwing.store.task_store import TaskStore


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def tasks(repo: Path) -> TaskStore:
    cfg = load_config(repo)
    return TaskStore(cfg.tasks_file, cfg.current_task_file)


# ===================================================================
# activity / verify
# ===================================================================

class TestReadOnlyCommands:
    def test_activity_empty(self, runner: CliRunner, repo: Path):
        result = runner.invoke(main, ["activity", str(repo)])
        assert result.exit_code == 0, result.output
        assert "Recent Activity" in result.output
        assert "0 entries" in result.output

    def test_verify_without_findings(self, runner: CliRunner, repo: Path):
        result = runner.invoke(main, ["verify", str(repo)])
        assert result.exit_code == 0
        assert "No stored findings." in result.output

    def test_version(self, runner: CliRunner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert result.output.startswith("taskwing")


# ===================================================================
# archive
# ===================================================================

class TestArchiveCommands:
    def test_done_moves_tasks(self, runner: CliRunner, repo: Path, tasks: TaskStore):
        tasks.create_tasks([{"title": "Login page", "status": "done"}, {"title": "Still open"}])
        result = runner.invoke(main, ["archive", "done", str(repo), "--tag", "auth", "--lessons", "ship small"])
        assert result.exit_code == 0, result.output
        assert "archived 1 task(s), removed 1" in result.output
        assert [t.title for t in tasks.snapshot()] == ["Still open"]

        [item] = ArchiveStore(load_config(repo).archive_dir).list()
        assert item.title == "Login page" and item.tags == ["auth"]

    def test_list_and_restore(self, runner: CliRunner, repo: Path, tasks: TaskStore):
        tasks.create_task(title="Login page", status="done")
        runner.invoke(main, ["archive", "done", str(repo)])
        entry_id = ArchiveStore(load_config(repo).archive_dir).list()[0].id

        listed = runner.invoke(main, ["archive", "list", str(repo)])
        assert entry_id[:8] in listed.output and "Login page" in listed.output

        restored = runner.invoke(main, ["archive", "restore", entry_id[:8], str(repo)])
        assert restored.exit_code == 0, restored.output
        assert "restored as" in restored.output
        assert [t.status.value for t in tasks.snapshot()] == ["todo"]

    def test_restore_unknown(self, runner: CliRunner, repo: Path):
        result = runner.invoke(main, ["archive", "restore", "deadbeef", str(repo)])
        assert result.exit_code == 1

    def test_export_then_import(self, runner: CliRunner, repo: Path, tmp_path: Path, tasks: TaskStore):
        tasks.create_task(title="Login page", status="done")
        runner.invoke(main, ["archive", "done", str(repo)])
        bundle = tmp_path / "bundle.json"
        exported = runner.invoke(main, ["archive", "export", str(bundle), str(repo)])
        assert "exported 1 entry" in exported.output

        other = tmp_path / "other"
        other.mkdir()
        imported = runner.invoke(main, ["archive", "import", str(bundle), str(other)])
        assert imported.exit_code == 0, imported.output
        assert "imported 1 entry" in imported.output
        assert len(ArchiveStore(load_config(other).archive_dir).list()) == 1

    def test_purge_dry_run(self, runner: CliRunner, repo: Path, tasks: TaskStore):
        tasks.create_task(title="Login page", status="done")
        runner.invoke(main, ["archive", "done", str(repo)])
        result = runner.invoke(main, ["archive", "purge", str(repo), "--max-size", "1", "--dry-run"])
        assert "would delete 1 of 1 entry" in result.output
        assert len(ArchiveStore(load_config(repo).archive_dir).list()) == 1


# ===================================================================
# spec
# ===================================================================

class TestSpecCommands:
    def test_new_list_show(self, runner: CliRunner, repo: Path):
        created = runner.invoke(main, ["spec", "new", "Auth Flow", str(repo), "-d", "Let users sign in."])
        assert created.exit_code == 0, created.output
        assert "specs/auth-flow/" in created.output

        listed = runner.invoke(main, ["spec", "list", str(repo)])
        assert "auth-flow" in listed.output and "draft" in listed.output

        shown = runner.invoke(main, ["spec", "show", "auth-flow", str(repo)])
        assert shown.output.startswith("# Auth Flow\n")
        assert "Let users sign in." in shown.output

    def test_show_missing(self, runner: CliRunner, repo: Path):
        assert runner.invoke(main, ["spec", "show", "nope", str(repo)]).exit_code == 1


# ===================================================================
# Init failures
# ===================================================================

class TestInitFailure:
    def test_bad_config_exits_one(self, runner: CliRunner, repo: Path, monkeypatch):
        monkeypatch.delenv("TASKWING_LLM_PROVIDER", raising=False)
        (repo / ".taskwing").mkdir(exist_ok=True)
        (repo / ".taskwing" / "config.yaml").write_text("llm: [broken\n", encoding="utf-8")
        result = runner.invoke(main, ["mcp", str(repo)])
        assert result.exit_code == 1
