"""Tests for the watch pipeline: watcher, engine intake and dispatch.

These tests validate:
1. Watch set, event translation and delivery in the watcher
2. Raw event filtering (ignored paths, unchanged content, deletes)
3. Category grouping on flush
4. Dispatcher routing, batching and verification
5. End-to-end: a burst of edits becomes one agent run
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from unittest import mock

import pytest
from watchdog.events import (
    DirDeletedEvent,
    DirModifiedEvent,
    FileCreatedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from conftest import FakeChatModel
from taskwing.agents.base import Agent, AgentCore, AgentInput, AgentOutput
from taskwing.agents.code_agent import CodeAgent
from taskwing.agents.deps_agent import DepsAgent
from taskwing.agents.dispatcher import AgentDispatcher
from taskwing.agents.doc_agent import DocAgent
from taskwing.config import load_config
from taskwing.core.activity_log import ActivityLog
from taskwing.core.models import (
    Evidence,
    FileCategory,
    FileChangeEvent,
    FileOperation,
    Finding,
    FindingType,
    VerificationStatus,
)
from taskwing.core.watcher import FileWatcher, WatchEvent, translate
from taskwing.engine import WatchEngine


# ===================================================================
# Fixtures
# ===================================================================

class RecordingAgent(Agent):
    """Returns one finding about the first changed file."""

    def __init__(self, evidence_snippet: str = "func Handler() {}") -> None:
        self.core = AgentCore(name="code", description="records inputs")
        self.inputs: list[AgentInput] = []
        self.snippet = evidence_snippet

    async def run(self, inp: AgentInput) -> AgentOutput:
        self.inputs.append(inp)
        f = Finding(
            type=FindingType.DECISION, title="Handler", confidence_score=0.7,
            evidence=[Evidence(file_path="internal/x.go", snippet=self.snippet)],
        )
        return AgentOutput(agent_name=self.name, findings=[f])


class Handler:
    def __init__(self) -> None:
        self.calls: list[tuple[list[Finding], str]] = []

    def __call__(self, findings, agent_name, duration):
        self.calls.append((findings, agent_name))


@pytest.fixture
def handler() -> Handler:
    return Handler()


@pytest.fixture
def engine(config, handler) -> WatchEngine:
    return WatchEngine(config, handler=handler)


def _raw(root: Path, rel: str, op: FileOperation = FileOperation.MODIFY, is_dir: bool = False) -> WatchEvent:
    return WatchEvent(str(root / rel), op, is_dir=is_dir)


def _change(path: str, category: FileCategory, op: FileOperation = FileOperation.MODIFY) -> FileChangeEvent:
    return FileChangeEvent(path=path, operation=op, category=category)


# ===================================================================
# Watcher
# ===================================================================

class TestFileWatcher:
    """Watch set, event translation and delivery."""

    def test_translate(self, repo: Path):
        a, b, pkg = str(repo / "a.go"), str(repo / "b.go"), str(repo / "pkg")
        assert translate(FileCreatedEvent(a)) == [WatchEvent(a, FileOperation.CREATE)]
        assert translate(FileModifiedEvent(a)) == [WatchEvent(a, FileOperation.MODIFY)]
        assert translate(DirModifiedEvent(str(repo))) == []
        assert translate(DirDeletedEvent(pkg)) == [WatchEvent(pkg, FileOperation.DELETE, is_dir=True)]
        assert translate(FileMovedEvent(a, b)) == [
            WatchEvent(a, FileOperation.RENAME), WatchEvent(b, FileOperation.CREATE),
        ]

    def test_watch_set_skips_ignored(self, repo: Path):
        watcher = FileWatcher(repo, use_polling=True)
        watcher.add_watch(repo)
        dirs = watcher.watched_dirs
        assert {str(repo), str(repo / "docs"), str(repo / "internal")} <= dirs
        assert str(repo / "node_modules") not in dirs

    def test_new_directory_tree_added(self, repo: Path):
        watcher = FileWatcher(repo, use_polling=True)
        watcher.add_watch(repo)
        (repo / "pkg" / "sub").mkdir(parents=True)
        (repo / "pkg" / "node_modules").mkdir()
        watcher.add_watch(repo / "pkg")
        assert {str(repo / "pkg"), str(repo / "pkg" / "sub")} <= watcher.watched_dirs
        assert str(repo / "pkg" / "node_modules") not in watcher.watched_dirs

    def test_removed_directory_unwatched(self, repo: Path):
        watcher = FileWatcher(repo, use_polling=True)
        watcher.add_watch(repo)
        watcher.on_fs_event(DirDeletedEvent(str(repo / "internal")))
        assert str(repo / "internal") not in watcher.watched_dirs

    @pytest.mark.asyncio
    async def test_events_inside_ignored_dirs_dropped(self, repo: Path):
        watcher = FileWatcher(repo, use_polling=True)
        await watcher.start()
        watcher.on_fs_event(FileModifiedEvent(str(repo / "node_modules" / "pkg.js")))
        watcher.on_fs_event(FileModifiedEvent(str(repo / "README.md")))
        await watcher.stop()
        assert [e async for e in watcher] == [WatchEvent(str(repo / "README.md"), FileOperation.MODIFY)]

    @pytest.mark.asyncio
    async def test_file_change_delivered(self, repo: Path):
        async def next_named(name: str) -> WatchEvent:
            while True:
                event = await watcher.events.get()
                if event is not None and Path(event.path).name == name:
                    return event

        watcher = FileWatcher(repo, interval=0.05, use_polling=True)
        await watcher.start()
        try:
            (repo / "internal" / "y.go").write_text("package internal\n", encoding="utf-8")
            event = await asyncio.wait_for(next_named("y.go"), timeout=5)
        finally:
            await watcher.stop()
        assert event.operation == FileOperation.CREATE

    @pytest.mark.asyncio
    async def test_start_stop_closes_iteration(self, repo: Path):
        watcher = FileWatcher(repo, interval=0.01, use_polling=True)
        await watcher.start()
        await watcher.stop()
        await watcher.stop()
        assert watcher.closed
        assert [e async for e in watcher] == []

    @pytest.mark.asyncio
    async def test_missing_root(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            await FileWatcher(tmp_path / "nope").start()


# ===================================================================
# Intake
# ===================================================================

class TestToChangeEvent:
    """Filtering and classification of raw events."""

    def test_code_file_accepted(self, engine: WatchEngine, repo: Path):
        ev = engine.to_change_event(_raw(repo, "internal/x.go"))
        assert (ev.path, ev.operation, ev.category) == ("internal/x.go", FileOperation.MODIFY, FileCategory.CODE)

    def test_ignored_path_dropped(self, engine: WatchEngine, repo: Path):
        assert engine.to_change_event(_raw(repo, "node_modules/pkg.js")) is None

    def test_unchanged_content_dropped(self, engine: WatchEngine, repo: Path):
        assert engine.to_change_event(_raw(repo, "README.md")) is not None
        assert engine.to_change_event(_raw(repo, "README.md")) is None
        (repo / "README.md").write_text("# Demo\n\nv2\n", encoding="utf-8")
        assert engine.to_change_event(_raw(repo, "README.md")).category == FileCategory.DOCS

    def test_delete_forgets_digest(self, engine: WatchEngine, repo: Path):
        engine.to_change_event(_raw(repo, "go.mod"))
        assert str(repo / "go.mod") in engine.tracker
        ev = engine.to_change_event(_raw(repo, "go.mod", FileOperation.DELETE))
        assert ev.operation == FileOperation.DELETE
        assert ev.category == FileCategory.DEPS
        assert str(repo / "go.mod") not in engine.tracker

    def test_directory_events_add_watch(self, engine: WatchEngine, repo: Path):
        (repo / "pkg").mkdir()
        assert engine.to_change_event(_raw(repo, "pkg", FileOperation.CREATE, is_dir=True)) is None
        assert str(repo / "pkg") in engine.watcher.watched_dirs

    @pytest.mark.asyncio
    async def test_handle_event_queues_in_debouncer(self, engine: WatchEngine, repo: Path):
        ev = await engine.handle_event(_raw(repo, "internal/x.go"))
        assert ev is not None
        assert engine.accepted == 1
        assert engine.debouncer.pending_count == 1
        assert len(engine.activity) == 1
        engine.debouncer.stop()


# ===================================================================
# Flush and dispatch
# ===================================================================

class TestFlush:
    @pytest.mark.asyncio
    async def test_groups_by_category(self, engine: WatchEngine):
        seen: list[tuple[FileCategory, int]] = []

        def fake_dispatch(events, category):
            seen.append((category, len(events)))
            return None

        batch = [
            _change("a.go", FileCategory.CODE),
            _change("README.md", FileCategory.DOCS),
            _change("b.go", FileCategory.CODE),
            _change("Makefile", FileCategory.CONFIG),
        ]
        with mock.patch.object(engine.dispatcher, "dispatch", side_effect=fake_dispatch):
            engine.flush(batch)
        assert seen == [(FileCategory.CODE, 2), (FileCategory.DOCS, 1), (FileCategory.CONFIG, 1)]


class TestAgentDispatcher:
    """Routing, deletes and verification."""

    @pytest.mark.parametrize("category, cls", [
        (FileCategory.CODE, CodeAgent),
        (FileCategory.DOCS, DocAgent),
        ("deps", DepsAgent),
    ])
    def test_routes(self, config, category, cls):
        agent = AgentDispatcher(config).agent_for(category)
        assert isinstance(agent, cls)

    @pytest.mark.parametrize("category", [FileCategory.CONFIG, FileCategory.GIT, FileCategory.IGNORE])
    def test_other_categories_are_no_ops(self, config, category):
        dispatcher = AgentDispatcher(config)
        assert dispatcher.agent_for(category) is None
        assert dispatcher.dispatch([_change("x", category)], category) is None

    @pytest.mark.asyncio
    async def test_deletes_never_reach_agent(self, config, handler):
        agent = RecordingAgent()
        dispatcher = AgentDispatcher(config, handler=handler)
        batch = [
            _change("internal/x.go", FileCategory.CODE),
            _change("internal/gone.go", FileCategory.CODE, FileOperation.DELETE),
            _change("internal/x.go", FileCategory.CODE),
        ]
        await dispatcher.run_batch(batch, agent)
        assert agent.inputs[0].changed_files == ["internal/x.go"]

    @pytest.mark.asyncio
    async def test_delete_only_batch_skipped(self, config, handler):
        agent = RecordingAgent()
        out = await AgentDispatcher(config, handler=handler).run_batch(
            [_change("gone.go", FileCategory.CODE, FileOperation.DELETE)], agent,
        )
        assert out is None
        assert agent.inputs == [] and handler.calls == []

    @pytest.mark.asyncio
    async def test_findings_verified_before_handler(self, config, handler):
        dispatcher = AgentDispatcher(config, handler=handler)
        await dispatcher.run_batch([_change("internal/x.go", FileCategory.CODE)], RecordingAgent())
        findings, agent_name = handler.calls[0]
        assert agent_name == "code"
        assert findings[0].verification_status == VerificationStatus.VERIFIED

    @pytest.mark.asyncio
    async def test_verification_can_be_disabled(self, repo: Path, handler):
        cfg = load_config(repo, verify_findings=False)
        dispatcher = AgentDispatcher(cfg, handler=handler)
        await dispatcher.run_batch([_change("internal/x.go", FileCategory.CODE)], RecordingAgent("nope"))
        assert handler.calls[0][0][0].verification_status == VerificationStatus.PENDING

    @pytest.mark.asyncio
    async def test_async_handler_awaited(self, config):
        received: list[int] = []

        async def ahandler(findings, agent_name, duration):
            await asyncio.sleep(0)
            received.append(len(findings))

        dispatcher = AgentDispatcher(config, handler=ahandler)
        await dispatcher.run_batch([_change("internal/x.go", FileCategory.CODE)], RecordingAgent())
        assert received == [1]

    @pytest.mark.asyncio
    async def test_handler_failure_is_recorded(self, config):
        def broken(findings, agent_name, duration):
            raise OSError("disk full")

        activity = ActivityLog(None)
        dispatcher = AgentDispatcher(config, activity=activity, handler=broken)
        out = await dispatcher.run_batch([_change("internal/x.go", FileCategory.CODE)], RecordingAgent())

        assert "disk full" in out.error
        newest, *_, oldest = activity.get_recent(10)
        assert oldest.details["status"] == "started"
        assert newest.type == "error"
        assert "disk full" in newest.message


# ===================================================================
# End to end
# ===================================================================

class TestBurst:
    """Ten saves inside one debounce window produce a single agent run."""

    @pytest.mark.asyncio
    async def test_ten_go_files_one_code_run(self, repo: Path, handler):
        for i in range(10):
            (repo / "internal" / f"f{i}.go").write_text(f"package internal\n\nfunc F{i}() {{}}\n", encoding="utf-8")
        reply = json.dumps({"decisions": [{
            "title": "Functions per file", "what": "one function per file",
            "evidence": [{"file_path": "internal/f0.go", "snippet": "func F0() {}"}],
        }]})
        model = FakeChatModel(reply)
        cfg = load_config(repo, watch={"default_delay": 0.05})
        engine = WatchEngine(cfg, model=model, handler=handler)

        for i in range(10):
            await engine.handle_event(_raw(repo, f"internal/f{i}.go", FileOperation.CREATE))
        assert engine.debouncer.pending_count == 10

        await asyncio.sleep(0.2)
        await engine.dispatcher.wait_idle()

        assert len(model.calls) == 1
        prompt = model.calls[0][-1].content
        assert all(f"internal/f{i}.go" in prompt for i in range(10))
        assert len(handler.calls) == 1
        findings, agent_name = handler.calls[0]
        assert agent_name == "code"
        assert findings[0].verification_status == VerificationStatus.VERIFIED
        await engine.stop()

    @pytest.mark.asyncio
    async def test_default_handler_persists(self, repo: Path):
        (repo / "README.md").write_text("## Auth: JWT\n", encoding="utf-8")
        reply = json.dumps({"features": [{"name": "Auth: JWT",
                                          "evidence": [{"file_path": "README.md", "snippet": "Auth: JWT"}]}]})
        cfg = load_config(repo, watch={"docs_delay": 0.01})
        engine = WatchEngine(cfg, model=FakeChatModel(reply))

        await engine.handle_event(_raw(repo, "README.md"))
        engine.debouncer.flush_now()
        await engine.dispatcher.wait_idle()

        assert [f.title for f in engine.findings.list()] == ["Auth: JWT"]
        assert os.path.exists(cfg.findings_file)
        await engine.stop()
