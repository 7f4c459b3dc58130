"""taskwing CLI — watch a repository, bootstrap findings, serve tools over stdio.

Usage:
    taskwing watch [PATH]
    taskwing mcp [PATH]
    taskwing bootstrap [PATH] [--agent doc --agent git ...]
    taskwing activity [PATH] [-n 20]
    taskwing verify [PATH]
    taskwing archive done|list|restore|export|import|purge
    taskwing spec new|list|show
"""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import timedelta
from typing import Any, Optional

import click
from rich.console import Console
from rich.table import Table as RichTable

from . import __version__
from .agents import BOOTSTRAP_AGENTS, AgentInput, AgentMode, create_many, registered_ids, run_all
from .config import TaskWingConfig, load_config
from .core.activity_log import ActivityLog
from .core.debug_log import DebugLogger
from .core.models import VerificationStatus
from .core.stream import StreamingOutput, console_observer
from .core.verifier import EvidenceVerifier
from .engine import WatchEngine
from .errors import ModelUnavailableError, TaskWingError
from .llm.chat_model import ChatModel, SUPPORTED_PROVIDERS, get_chat_model
from .server.protocol import EXIT_INIT_FAILURE, run_stdio
from .store.archive_store import ArchiveStore
from .store.finding_store import FindingStore
from .store.spec_store import SpecStore, spec_slug, spec_to_markdown
from .store.task_store import TaskStore

console = Console()
err_console = Console(stderr=True)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _load(
    path: str,
    config_path: Optional[str],
    provider: Optional[str],
    model: Optional[str],
    base_url: Optional[str],
    api_key: Optional[str],
    **overrides: Any,
) -> TaskWingConfig:
    llm = {k: v for k, v in {
        "provider": provider, "model": model, "base_url": base_url, "api_key": api_key,
    }.items() if v}
    if llm:
        overrides["llm"] = llm
    return load_config(path, config_path, **overrides)


def _model_or_none(cfg: TaskWingConfig, out: Console) -> ChatModel | None:
    try:
        return get_chat_model(cfg.llm)
    except ModelUnavailableError as exc:
        out.print(f"[yellow]⚠[/] No chat model: {exc.message}")
        return None


def _common_options(fn):
    """PATH argument plus config and model options shared by every command."""
    options = [
        click.argument("path", type=click.Path(exists=True, file_okay=False), default="."),
        click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
                     help="Config file (default: .taskwing/config.yaml)."),
        click.option("--provider", type=click.Choice(SUPPORTED_PROVIDERS, case_sensitive=False),
                     envvar="TASKWING_LLM_PROVIDER", default=None, help="LLM provider."),
        click.option("--model", "model_name", envvar="TASKWING_LLM_MODEL", default=None,
                     help="LLM model name."),
        click.option("--base-url", envvar="TASKWING_LLM_BASE_URL", default=None,
                     help="Custom OpenAI-compatible API base URL."),
        click.option("--api-key", envvar="TASKWING_LLM_API_KEY", default=None,
                     help="API key (defaults to OPENAI_API_KEY / ANTHROPIC_API_KEY)."),
        click.option("-v", "--verbose", is_flag=True, default=False, help="Debug logging."),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


@click.group()
@click.version_option(version=__version__, prog_name="taskwing")
def main():
    """taskwing — continuous codebase analysis and task tracking."""
    pass


# ---------------------------------------------------------------------------
# watch
# ---------------------------------------------------------------------------

@main.command()
@_common_options
@click.option("--no-verify", is_flag=True, default=False, help="Skip evidence verification.")
@click.option("--polling", is_flag=True, default=False,
              help="Scan periodically instead of using native change notification.")
@click.option("--interval", type=float, default=None, help="Seconds between scans when polling.")
def watch(path, config_path, provider, model_name, base_url, api_key, verbose, no_verify, polling, interval):
    """Watch PATH and analyse changes as they happen."""
    _setup_logging(verbose)
    overrides: dict[str, Any] = {}
    if no_verify:
        overrides["verify_findings"] = False
    watch_overrides: dict[str, Any] = {}
    if polling:
        watch_overrides["use_polling"] = True
    if interval:
        watch_overrides["poll_interval"] = interval
    if watch_overrides:
        overrides["watch"] = watch_overrides
    try:
        cfg = _load(path, config_path, provider, model_name, base_url, api_key, **overrides)
        debug_log = DebugLogger(cfg.logs_dir, enable_stderr=cfg.log_stderr,
                                retention_count=cfg.log_retention, component="watch")
    except (TaskWingError, OSError) as exc:
        err_console.print(f"[red]✗[/] {exc}")
        raise SystemExit(EXIT_INIT_FAILURE)

    handler = debug_log.attach_to(logging.getLogger("taskwing"))
    engine = WatchEngine(cfg, model=_model_or_none(cfg, err_console))
    engine.stream.add_observer(console_observer(err_console))
    engine.banner()
    try:
        asyncio.run(engine.run())
    except KeyboardInterrupt:
        err_console.print("\n[bold yellow]⏹  Watcher stopped.[/]")
    finally:
        logging.getLogger("taskwing").removeHandler(handler)
        debug_log.close()


# ---------------------------------------------------------------------------
# mcp
# ---------------------------------------------------------------------------

@main.command()
@_common_options
def mcp(path, config_path, provider, model_name, base_url, api_key, verbose):
    """Serve tasks and findings over stdio (JSON-RPC, one message per line)."""
    _setup_logging(verbose)
    try:
        cfg = _load(path, config_path, provider, model_name, base_url, api_key)
    except TaskWingError as exc:
        err_console.print(f"[red]✗[/] {exc}")
        raise SystemExit(EXIT_INIT_FAILURE)
    raise SystemExit(run_stdio(cfg))


# ---------------------------------------------------------------------------
# bootstrap
# ---------------------------------------------------------------------------

async def _bootstrap(cfg: TaskWingConfig, agent_ids: tuple[str, ...], model: ChatModel | None) -> int:
    stream = StreamingOutput(cfg.stream_buffer)
    stream.add_observer(console_observer(err_console))
    activity = ActivityLog(cfg.activity_file, cfg.activity_max_entries)
    store = FindingStore(cfg.findings_file)
    verifier = EvidenceVerifier(cfg.root) if cfg.verify_findings else None

    agents = create_many(agent_ids, cfg, model=model, stream=stream)
    inp = AgentInput(base_path=str(cfg.root), project_name=cfg.project_name, mode=AgentMode.BOOTSTRAP)
    result = await run_all(agents, inp, stream)

    new = 0
    for out in result.outputs:
        activity.log_agent_run(out.agent_name, len(out.findings), out.duration, out.error)
        if not out.findings:
            continue
        if verifier is not None:
            out.findings = await verifier.averify_findings(out.findings)
        summary = store.ingest(out.findings, out.agent_name, out.duration)
        new += summary.new_findings
        for f in out.findings:
            activity.log_finding(out.agent_name, f.type.value, f.title)
    await activity.flush()
    await stream.wait_observers()
    stream.close()

    result.render(console)
    console.print(
        f"[green]✓[/] {len(result.findings)} finding(s), {new} new, "
        f"{len(store)} stored in {cfg.findings_file.relative_to(cfg.root)}"
    )
    return 1 if result.outputs and len(result.failed) == len(result.outputs) else 0


@main.command()
@_common_options
@click.option("--agent", "agent_ids", multiple=True, type=click.Choice(registered_ids()),
              help="Agent to run (repeatable; default: doc, code, git, deps).")
@click.option("--no-verify", is_flag=True, default=False, help="Skip evidence verification.")
def bootstrap(path, config_path, provider, model_name, base_url, api_key, verbose, agent_ids, no_verify):
    """Run the analyzer agents over the whole of PATH once."""
    _setup_logging(verbose)
    try:
        cfg = _load(path, config_path, provider, model_name, base_url, api_key,
                    **({"verify_findings": False} if no_verify else {}))
    except TaskWingError as exc:
        err_console.print(f"[red]✗[/] {exc}")
        raise SystemExit(EXIT_INIT_FAILURE)
    model = _model_or_none(cfg, console)
    raise SystemExit(asyncio.run(_bootstrap(cfg, agent_ids or BOOTSTRAP_AGENTS, model)))


# ---------------------------------------------------------------------------
# activity / verify
# ---------------------------------------------------------------------------

@main.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False), default=".")
@click.option("-n", "count", type=int, default=20, help="Number of entries (default: 20).")
def activity(path: str, count: int):
    """Show recent activity, newest first."""
    cfg = load_config(path)
    log = ActivityLog(cfg.activity_file, cfg.activity_max_entries)

    table = RichTable(title="Recent Activity", show_lines=False)
    table.add_column("Time", style="dim")
    table.add_column("Type", style="bold cyan")
    table.add_column("Agent")
    table.add_column("Message")
    for e in log.get_recent(count):
        table.add_row(e.timestamp, e.type, e.agent, e.message)
    console.print(table)

    s = log.summary()
    console.print(
        f"[dim]{s['total_entries']} entries: {s['file_changes']} changes, "
        f"{s['agent_runs']} runs, {s['findings']} findings, {s['errors']} errors[/]"
    )


@main.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False), default=".")
def verify(path: str):
    """Re-verify every stored finding against the working tree."""
    cfg = load_config(path)
    store = FindingStore(cfg.findings_file)
    findings = store.list()
    if not findings:
        console.print("[dim]No stored findings.[/]")
        return

    verified = EvidenceVerifier(cfg.root).verify_findings(findings)
    by_agent: dict[str, list] = {}
    for f in verified:
        by_agent.setdefault(f.source_agent or "unknown", []).append(f)
    for agent_name, group in by_agent.items():
        store.ingest(group, agent_name)

    counts = {s.value: 0 for s in VerificationStatus}
    for f in verified:
        counts[f.verification_status.value] += 1
    table = RichTable(title="Verification", show_lines=False)
    table.add_column("Status", style="bold")
    table.add_column("Findings", justify="right")
    for status, n in counts.items():
        table.add_row(status, str(n))
    console.print(table)


# ---------------------------------------------------------------------------
# archive
# ---------------------------------------------------------------------------

@main.group()
def archive():
    """Archive completed tasks and manage the archive."""
    pass


def _archive_store(path: str) -> ArchiveStore:
    return ArchiveStore(load_config(path).archive_dir)


@archive.command("done")
@click.argument("path", type=click.Path(exists=True, file_okay=False), default=".")
@click.option("--lessons", default="", help="Lessons learned, stored with every entry.")
@click.option("--tag", "tags", multiple=True, help="Tag for the entries (repeatable).")
def archive_done(path: str, lessons: str, tags: tuple[str, ...]):
    """Move every done task into the archive."""
    cfg = load_config(path)
    tasks = TaskStore(cfg.tasks_file, cfg.current_task_file)
    store = ArchiveStore(cfg.archive_dir)
    done = tasks.list_tasks(status="done")
    for t in done:
        store.create_from_task(t, lessons, list(tags))
    removed = tasks.clear("done")
    console.print(f"[green]✓[/] archived {len(done)} task(s), removed {removed}")


@archive.command("list")
@click.argument("path", type=click.Path(exists=True, file_okay=False), default=".")
@click.option("-q", "--query", default="", help="Text to search for.")
@click.option("--tag", "tags", multiple=True, help="Only entries with this tag (repeatable).")
def archive_list(path: str, query: str, tags: tuple[str, ...]):
    """List archived tasks, newest first."""
    items = _archive_store(path).search(query, tags=list(tags))
    table = RichTable(title="Archive", show_lines=False)
    table.add_column("Id", style="dim")
    table.add_column("Date")
    table.add_column("Title", style="bold")
    table.add_column("Tags", style="cyan")
    for item in items:
        table.add_row(item.id[:8], item.date, item.title, ", ".join(item.tags))
    console.print(table)


@archive.command("restore")
@click.argument("entry_id")
@click.argument("path", type=click.Path(exists=True, file_okay=False), default=".")
def archive_restore(entry_id: str, path: str):
    """Re-create an archived task as a new todo task."""
    cfg = load_config(path)
    try:
        task = ArchiveStore(cfg.archive_dir).restore(entry_id, TaskStore(cfg.tasks_file, cfg.current_task_file))
    except TaskWingError as exc:
        err_console.print(f"[red]✗[/] {exc}")
        raise SystemExit(1)
    console.print(f"[green]✓[/] restored as {task.short_id()} {task.title}")


@archive.command("export")
@click.argument("bundle", type=click.Path(dir_okay=False))
@click.argument("path", type=click.Path(exists=True, file_okay=False), default=".")
def archive_export(bundle: str, path: str):
    """Write the whole archive to BUNDLE."""
    n = _archive_store(path).export(bundle)
    console.print(f"[green]✓[/] exported {n} entr{'y' if n == 1 else 'ies'} to {bundle}")


@archive.command("import")
@click.argument("bundle", type=click.Path(exists=True, dir_okay=False))
@click.argument("path", type=click.Path(exists=True, file_okay=False), default=".")
def archive_import(bundle: str, path: str):
    """Load entries from BUNDLE, skipping ones already archived."""
    try:
        n = _archive_store(path).import_bundle(bundle)
    except (TaskWingError, ValueError) as exc:
        err_console.print(f"[red]✗[/] {exc}")
        raise SystemExit(1)
    console.print(f"[green]✓[/] imported {n} entr{'y' if n == 1 else 'ies'}")


@archive.command("purge")
@click.argument("path", type=click.Path(exists=True, file_okay=False), default=".")
@click.option("--older-than", "days", type=int, default=None, help="Drop entries older than N days.")
@click.option("--max-size", type=int, default=0, help="Then drop oldest entries until under N bytes.")
@click.option("--dry-run", is_flag=True, default=False, help="Report without deleting.")
def archive_purge(path: str, days: Optional[int], max_size: int, dry_run: bool):
    """Remove old archive entries."""
    res = _archive_store(path).purge(
        older_than=timedelta(days=days) if days is not None else None,
        max_total_size=max_size,
        dry_run=dry_run,
    )
    verb = "would delete" if dry_run else "deleted"
    console.print(
        f"{verb} {res.files_deleted} of {res.files_considered} entr{'y' if res.files_considered == 1 else 'ies'}"
        f" ({res.bytes_freed}B)"
    )


# ---------------------------------------------------------------------------
# spec
# ---------------------------------------------------------------------------

@main.group()
def spec():
    """Feature specs under .taskwing/specs/."""
    pass


@spec.command("new")
@click.argument("title")
@click.argument("path", type=click.Path(exists=True, file_okay=False), default=".")
@click.option("-d", "--description", default="", help="Spec description.")
def spec_new(title: str, path: str, description: str):
    """Create a draft spec titled TITLE."""
    store = SpecStore(load_config(path).specs_dir)
    created = store.create_spec(title, description)
    console.print(f"[green]✓[/] {created.id} -> specs/{spec_slug(created.title)}/")


@spec.command("list")
@click.argument("path", type=click.Path(exists=True, file_okay=False), default=".")
def spec_list(path: str):
    """List specs, newest first."""
    table = RichTable(title="Specs", show_lines=False)
    table.add_column("Slug", style="bold")
    table.add_column("Title")
    table.add_column("Status", style="cyan")
    table.add_column("Tasks", justify="right")
    for s in SpecStore(load_config(path).specs_dir).list_specs():
        table.add_row(s.slug, s.title, s.status.value, str(s.task_count))
    console.print(table)


@spec.command("show")
@click.argument("ref")
@click.argument("path", type=click.Path(exists=True, file_okay=False), default=".")
def spec_show(ref: str, path: str):
    """Print the markdown rendering of spec REF (slug or id)."""
    try:
        found = SpecStore(load_config(path).specs_dir).get_spec(ref)
    except TaskWingError as exc:
        err_console.print(f"[red]✗[/] {exc}")
        raise SystemExit(1)
    click.echo(spec_to_markdown(found), nl=False)


if __name__ == "__main__":
    main()
