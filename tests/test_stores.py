"""Tests for the finding, archive and spec stores.

These tests validate:
1. Finding ingestion: dedup by key, persistence, notifications
2. Archive slugs, summaries and entry layout
3. Archive lookup, search and restore
4. Archive export/import bundles and purging
5. Spec persistence and markdown rendering
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock
from unittest.mock import MagicMock

import pytest

from taskwing.core.models import Finding, FindingType
from taskwing.core.notifier import LiveUpdateNotifier
from taskwing.errors import InvalidInputError, TaskNotFoundError, TaskWingError
from taskwing.store.archive_store import ArchiveEntry, ArchiveStore, slugify, summarize
from taskwing.store.finding_store import FindingStore
from taskwing.store.spec_store import Spec, SpecStatus, SpecStore, SpecTask, spec_slug, spec_to_markdown
from taskwing.store.task_store import Task, TaskStatus, TaskStore


def _finding(title: str, **kw) -> Finding:
    return Finding(type=kw.pop("type", FindingType.FEATURE), title=title, **kw)


def _write_bundle(path: Path, entries: list[ArchiveEntry]) -> Path:
    path.write_text(json.dumps({"entries": [e.to_json() for e in entries]}), encoding="utf-8")
    return path


def _old_entry(title: str, day: int, **kw) -> ArchiveEntry:
    return ArchiveEntry(title=title, archived_at=datetime(2024, 1, day, 12, tzinfo=timezone.utc), **kw)


# ===================================================================
# Finding store
# ===================================================================

class TestFindingStore:
    @pytest.fixture
    def notifier(self):
        return MagicMock(spec=LiveUpdateNotifier)

    @pytest.fixture
    def store(self, tmp_path: Path, notifier) -> FindingStore:
        return FindingStore(tmp_path / "findings.json", notifier)

    def test_new_findings_get_ids(self, store: FindingStore):
        summary = store.ingest([_finding("Watch mode"), _finding("Plan export")], "doc", 1.5)
        assert (summary.new_findings, summary.updated_count, summary.total_findings) == (2, 0, 2)
        assert summary.agent_name == "doc" and summary.duration == 1.5
        assert all(f.id and f.source_agent == "doc" for f in store.list())

    def test_same_key_updates_in_place(self, store: FindingStore):
        store.ingest([_finding("Watch mode", description="old")], "doc")
        original_id = store.list()[0].id
        summary = store.ingest([_finding("  WATCH   mode ", description="new")], "doc")
        assert (summary.new_findings, summary.updated_count) == (0, 1)
        [only] = store.list()
        assert only.id == original_id
        assert only.description == "new"

    def test_other_agent_is_a_new_key(self, store: FindingStore):
        store.ingest([_finding("Watch mode")], "doc")
        store.ingest([_finding("Watch mode")], "code")
        assert len(store) == 2

    def test_persisted(self, store: FindingStore):
        store.ingest([_finding("Watch mode")], "doc")
        again = FindingStore(store.path)
        assert [f.title for f in again.list()] == ["Watch mode"]

    def test_invalid_records_skipped(self, tmp_path: Path):
        path = tmp_path / "findings.json"
        path.write_text(json.dumps([
            {"type": "feature", "title": "Good", "source_agent": "doc"},
            {"type": "nonsense", "title": "Bad"},
        ]), encoding="utf-8")
        assert [f.title for f in FindingStore(path).list()] == ["Good"]

    def test_notifications(self, store: FindingStore, notifier):
        store.ingest([_finding("Watch mode")], "doc")
        store.ingest([_finding("Watch mode"), _finding("Export")], "doc")
        assert notifier.notify_finding_added.call_count == 2
        notifier.notify_finding_updated.assert_called_once()
        assert notifier.notify_batch_complete.call_count == 2
        last = notifier.notify_batch_complete.call_args.args[0]
        assert (last.new_findings, last.updated_count, last.total_findings) == (1, 1, 2)

    def test_get_and_remove(self, store: FindingStore, notifier):
        store.ingest([_finding("Watch mode")], "doc")
        fid = store.list()[0].id
        assert store.get(fid).title == "Watch mode"
        assert store.remove(fid) is True
        assert store.remove(fid) is False
        assert store.get(fid) is None
        notifier.notify_finding_removed.assert_called_once_with(fid)

    def test_snapshot_is_a_copy(self, store: FindingStore):
        store.ingest([_finding("Watch mode")], "doc")
        store.list()[0].title = "mutated"
        assert store.list()[0].title == "Watch mode"

    def test_failed_write_leaves_store_unchanged(self, store: FindingStore, notifier):
        store.ingest([_finding("Watch mode", description="old")], "doc")
        with mock.patch("taskwing.store.finding_store.write_json_atomic", side_effect=OSError("disk full")):
            with pytest.raises(TaskWingError) as exc_info:
                store.ingest([_finding("Watch mode", description="new"), _finding("Export")], "doc")
        assert exc_info.value.code == "IntegrityViolation"
        assert [(f.title, f.description) for f in store.list()] == [("Watch mode", "old")]
        assert notifier.notify_batch_complete.call_count == 1


# ===================================================================
# Archive helpers and layout
# ===================================================================

class TestArchiveHelpers:
    @pytest.mark.parametrize("title, expected", [
        ("Hello, World!", "hello-world"),
        ("  Fix   login -- bug ", "fix-login-bug"),
        ("", "task"),
        ("!!!", "task"),
    ])
    def test_slugify(self, title, expected):
        assert slugify(title) == expected

    def test_slugify_cuts_at_word_boundary(self):
        slug = slugify(" ".join(["word"] * 20))
        assert slug == "-".join(["word"] * 12)
        assert len(slug) <= 64

    def test_summarize(self):
        assert summarize("  short  ") == "short"
        assert summarize("x" * 200) == "x" * 140 + "…"


class TestArchiveCreate:
    @pytest.fixture
    def archive(self, tmp_path: Path) -> ArchiveStore:
        return ArchiveStore(tmp_path / "archive")

    def test_empty_index_written(self, archive: ArchiveStore):
        data = json.loads(archive.index_path.read_text(encoding="utf-8"))
        assert data == {"archives": [], "statistics": {"totalArchives": 0, "totalTasksArchived": 0}}

    def test_entry_layout(self, archive: ArchiveStore):
        task = Task(title="Login page", description="form", status=TaskStatus.DONE)
        entry = archive.create_from_task(task, "  keep forms small ", ["auth"])
        assert entry.task_id == task.id
        assert entry.lessons_learned == "keep forms small"
        assert entry.completed_at == task.completed_at

        [item] = archive.list()
        stamp = entry.archived_at
        assert item.file_path == f"{stamp:%Y}/{stamp:%m}/{stamp:%Y-%m-%d}_login-page-{entry.id[:8]}.json"
        stored = json.loads((archive.base_dir / item.file_path).read_text(encoding="utf-8"))
        assert stored["taskId"] == task.id and stored["lessonsLearned"] == "keep forms small"

        index = json.loads(archive.index_path.read_text(encoding="utf-8"))
        assert index["archives"][0]["filePath"] == item.file_path
        assert index["statistics"]["totalArchives"] == 1

    def test_index_newest_first(self, archive: ArchiveStore, tmp_path: Path):
        archive.import_bundle(_write_bundle(tmp_path / "b.json", [
            _old_entry("Oldest", 1), _old_entry("Newest", 20), _old_entry("Middle", 10),
        ]))
        assert [i.title for i in archive.list()] == ["Newest", "Middle", "Oldest"]


# ===================================================================
# Archive lookup, search and restore
# ===================================================================

class TestArchiveLookup:
    @pytest.fixture
    def archive(self, tmp_path: Path) -> ArchiveStore:
        store = ArchiveStore(tmp_path / "archive")
        store.import_bundle(_write_bundle(tmp_path / "seed.json", [
            _old_entry("Login page", 1, id="aaaa1111-0000-4000-8000-000000000001",
                       description="email form", tags=["Auth"], priority="high"),
            _old_entry("Signup flow", 10, id="aaaa2222-0000-4000-8000-000000000002",
                       lessons_learned="use retries for mail"),
            _old_entry("Write docs", 20, id="bbbb3333-0000-4000-8000-000000000003", tags=["docs"]),
        ]))
        return store

    def test_get_by_full_id_and_prefix(self, archive: ArchiveStore):
        entry, path = archive.get_by_id("bbbb3333")
        assert entry.title == "Write docs"
        assert path.is_file()
        assert archive.get_by_id("aaaa1111-0000-4000-8000-000000000001")[0].title == "Login page"

    def test_ambiguous_prefix(self, archive: ArchiveStore):
        with pytest.raises(InvalidInputError) as exc_info:
            archive.get_by_id("aaaa")
        assert len(exc_info.value.details["candidates"]) == 2

    @pytest.mark.parametrize("ref", ["", "zzzz"])
    def test_not_found(self, archive: ArchiveStore, ref):
        with pytest.raises(TaskNotFoundError):
            archive.get_by_id(ref)

    def test_search_title_and_summary(self, archive: ArchiveStore):
        assert [i.title for i in archive.search("LOGIN")] == ["Login page"]
        assert [i.title for i in archive.search("email")] == ["Login page"]

    def test_search_lessons(self, archive: ArchiveStore):
        assert [i.title for i in archive.search("retries")] == ["Signup flow"]

    def test_search_tags_case_insensitive(self, archive: ArchiveStore):
        assert [i.title for i in archive.search(tags=["auth"])] == ["Login page"]

    def test_search_date_range(self, archive: ArchiveStore):
        titles = [i.title for i in archive.search(
            date_from=datetime(2024, 1, 5, tzinfo=timezone.utc),
            date_to=datetime(2024, 1, 15, tzinfo=timezone.utc),
        )]
        assert titles == ["Signup flow"]

    def test_restore_creates_todo_task(self, archive: ArchiveStore, tmp_path: Path):
        tasks = TaskStore(tmp_path / "tasks.json")
        task = archive.restore("aaaa1111", tasks)
        assert task.title == "Login page"
        assert task.status == TaskStatus.TODO
        assert task.priority.value == "high"
        assert len(tasks) == 1


# ===================================================================
# Archive bundles and purge
# ===================================================================

class TestArchiveBundles:
    def test_export_import_preserves_ids(self, tmp_path: Path):
        source = ArchiveStore(tmp_path / "a")
        source.create_from_task(Task(title="Login page"), tags=["auth"])
        source.create_from_task(Task(title="Signup flow"))
        bundle = tmp_path / "bundle.json"
        assert source.export(bundle) == 2
        data = json.loads(bundle.read_text(encoding="utf-8"))
        assert data["version"] == "1" and len(data["index"]) == 2

        target = ArchiveStore(tmp_path / "b")
        assert target.import_bundle(bundle) == 2
        assert [i.id for i in target.list()] == [i.id for i in source.list()]
        assert [i.file_path for i in target.list()] == [i.file_path for i in source.list()]

    def test_import_skips_known_ids(self, tmp_path: Path):
        archive = ArchiveStore(tmp_path / "a")
        bundle = _write_bundle(tmp_path / "b.json", [_old_entry("Login page", 1)])
        assert archive.import_bundle(bundle) == 1
        assert archive.import_bundle(bundle) == 0
        assert len(archive.list()) == 1

    def test_import_rejects_non_bundle(self, tmp_path: Path):
        path = tmp_path / "b.json"
        path.write_text("[1, 2]", encoding="utf-8")
        with pytest.raises(InvalidInputError):
            ArchiveStore(tmp_path / "a").import_bundle(path)


class TestArchivePurge:
    @pytest.fixture
    def archive(self, tmp_path: Path) -> ArchiveStore:
        store = ArchiveStore(tmp_path / "archive")
        store.import_bundle(_write_bundle(tmp_path / "seed.json", [
            _old_entry("Oldest", 1), _old_entry("Middle", 10),
        ]))
        store.create_from_task(Task(title="Fresh task"))
        return store

    def _files(self, archive: ArchiveStore) -> list[Path]:
        return sorted(p for p in archive.base_dir.rglob("*.json") if p.name != "index.json")

    def test_older_than(self, archive: ArchiveStore):
        res = archive.purge(older_than=timedelta(days=30))
        assert (res.files_considered, res.files_deleted) == (3, 2)
        assert res.bytes_freed > 0
        assert [i.title for i in archive.list()] == ["Fresh task"]
        assert len(self._files(archive)) == 1

    def test_dry_run_changes_nothing(self, archive: ArchiveStore):
        res = archive.purge(older_than=timedelta(days=30), dry_run=True)
        assert res.dry_run and res.files_deleted == 2
        assert len(archive.list()) == 3
        assert len(self._files(archive)) == 3

    def test_max_total_size_drops_oldest_first(self, archive: ArchiveStore):
        newest = archive.list()[0]
        limit = (archive.base_dir / newest.file_path).stat().st_size
        res = archive.purge(max_total_size=limit)
        assert res.files_deleted == 2
        assert [i.title for i in archive.list()] == ["Fresh task"]

    def test_nothing_to_purge(self, archive: ArchiveStore):
        res = archive.purge()
        assert (res.files_considered, res.files_deleted, res.bytes_freed) == (3, 0, 0)


# ===================================================================
# Spec store
# ===================================================================

class TestSpecStore:
    @pytest.fixture
    def specs(self, tmp_path: Path) -> SpecStore:
        return SpecStore(tmp_path / "specs")

    @pytest.mark.parametrize("title, expected", [
        ("Auth Flow!", "auth-flow"),
        ("OAuth 2 / PKCE", "oauth-2--pkce"),
        ("???", "spec"),
    ])
    def test_slug(self, title, expected):
        assert spec_slug(title) == expected

    def test_create_writes_json_and_markdown(self, specs: SpecStore):
        spec = specs.create_spec("Auth Flow", "Let users sign in.")
        spec_dir = specs.base_dir / "auth-flow"
        assert json.loads((spec_dir / "spec.json").read_text(encoding="utf-8"))["id"] == spec.id
        assert (spec_dir / "spec.md").read_text(encoding="utf-8").startswith("# Auth Flow\n")
        assert not (spec_dir / "tasks.json").exists()

    def test_save_with_tasks_writes_tasks_file(self, specs: SpecStore):
        spec = specs.create_spec("Auth Flow")
        spec.tasks = [SpecTask(title="Login form", spec_id=spec.id)]
        spec_dir = specs.save_spec(spec)
        tasks = json.loads((spec_dir / "tasks.json").read_text(encoding="utf-8"))
        assert [t["title"] for t in tasks] == ["Login form"]

    def test_get_by_slug_and_id(self, specs: SpecStore):
        spec = specs.create_spec("Auth Flow")
        assert specs.get_spec("auth-flow").id == spec.id
        assert specs.get_spec(spec.id).title == "Auth Flow"

    def test_get_missing(self, specs: SpecStore):
        with pytest.raises(TaskNotFoundError):
            specs.get_spec("nope")

    def test_list_newest_first(self, specs: SpecStore):
        specs.save_spec(Spec(title="Older", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc)))
        newer = Spec(title="Newer", created_at=datetime(2024, 6, 1, tzinfo=timezone.utc))
        newer.tasks = [SpecTask(title="One"), SpecTask(title="Two")]
        specs.save_spec(newer)
        listed = specs.list_specs()
        assert [(s.slug, s.task_count) for s in listed] == [("newer", 2), ("older", 0)]

    def test_markdown(self):
        spec = Spec(
            title="Auth Flow",
            description="Sign in.",
            status=SpecStatus.APPROVED,
            created_at=datetime(2024, 3, 4, tzinfo=timezone.utc),
            analysis={"technical_design": "Use sessions.", "risks": ""},
            tasks=[
                SpecTask(title="Form", estimate="2h", description="fields", status=SpecStatus.DONE),
                SpecTask(title="Backend", estimate="1d", status=SpecStatus.IN_PROGRESS),
                SpecTask(title="Docs", estimate="1h"),
            ],
        )
        md = spec_to_markdown(spec)
        assert "**Status:** approved" in md
        assert "**Created:** 2024-03-04" in md
        assert "# Technical Design\n\nUse sessions." in md
        assert "# Risks" not in md
        assert "- [x] **Form** (2h) - fields" in md
        assert "- [/] **Backend** (1d) - " in md
        assert "- [ ] **Docs** (1h) - " in md
