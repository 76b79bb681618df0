"""Typer CLI entrypoint for Lead Crawler."""

from __future__ import annotations

import json
from dataclasses import dataclass
from threading import Event
from typing import Optional, Sequence

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from .config import ConfigRepository, GlobalConfig
from .engine import ThreadPoolManager
from .errors import LeadCrawlerError, TaskNotFoundError
from .infra import SQLiteManager, TaskStore
from .logging_conf import available_task_logs, configure_logging, logs_dir, tail_log
from .models import PersistedContact, Task, TaskKind
from .orchestrator import PipelineFactory
from .scheduler import APSchedulerAdapter, TaskWorker
from .services import ApifyClient, OpenAIQueryGenerator, build_scrape_client
from .ui import ProgressWatcher, TaskProgressReporter
from .ui.remote import ApiTaskClient

app = typer.Typer(
    help="Lead Crawler command line tool",
    no_args_is_help=True,
    rich_markup_mode=None,
)
task_app = typer.Typer(name="task", help="Create, inspect and follow tasks", no_args_is_help=True)
contacts_app = typer.Typer(name="contacts", help="Browse saved contacts", no_args_is_help=True)
log_app = typer.Typer(name="log", help="Inspect log files", no_args_is_help=True)

console = Console()


@dataclass
class AppState:
    repository: ConfigRepository
    config: GlobalConfig
    storage: SQLiteManager
    store: TaskStore
    thread_pool: ThreadPoolManager


def build_state(verbose: bool) -> AppState:
    repository = ConfigRepository()
    global_config = repository.load_global_config()
    configure_logging(verbose=verbose)
    storage = SQLiteManager()
    store = TaskStore(storage, repository.database_path())
    thread_pool = ThreadPoolManager(global_config.thread_pool_workers)
    return AppState(
        repository=repository,
        config=global_config,
        storage=storage,
        store=store,
        thread_pool=thread_pool,
    )


def build_worker(state: AppState) -> TaskWorker:
    config = state.config
    apify = ApifyClient(config.services, results_per_query=config.pipeline.results_per_query)
    factory = PipelineFactory(
        state.store,
        state.thread_pool,
        config,
        query_generator=OpenAIQueryGenerator(config.services),
        search_client=apify,
        scrape_client=build_scrape_client(config, apify=apify),
    )
    return TaskWorker(
        state.store,
        factory,
        state.thread_pool,
        config.worker,
        scheduler=APSchedulerAdapter(),
    )


def _get_state(ctx: typer.Context) -> AppState:
    state = ctx.obj
    if state is None:
        state = build_state(verbose=False)
        ctx.obj = state
    return state


def _render_tasks_table(tasks: Sequence[Task]) -> Table:
    table = Table(title=f"Tasks · {len(tasks)}", box=box.SIMPLE_HEAD)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Kind", style="magenta")
    table.add_column("Name", overflow="fold")
    table.add_column("Status", style="green")
    table.add_column("Stage", style="yellow")
    table.add_column("Progress", justify="right")
    table.add_column("Message", style="dim", overflow="fold")
    for task in tasks:
        table.add_row(
            task.task_id,
            task.kind.value,
            task.name,
            task.status.value,
            task.stage,
            f"{task.progress.current}/{task.progress.total}",
            task.error or task.progress.message,
        )
    return table


def _render_contacts_table(contacts: Sequence[PersistedContact]) -> Table:
    table = Table(title=f"Contacts · {len(contacts)}", box=box.SIMPLE_HEAD)
    table.add_column("Email", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Website", style="green", overflow="fold")
    table.add_column("Task", style="dim")
    for contact in contacts:
        table.add_row(contact.email, contact.name, contact.source_url, contact.task_id or "-")
    return table


app.add_typer(task_app, name="task", help="Create, inspect and follow tasks")
app.add_typer(contacts_app, name="contacts", help="Browse saved contacts")
app.add_typer(log_app, name="log", help="Inspect log files")


@app.callback()
def main(
    ctx: typer.Context, verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging", is_flag=True)
) -> None:
    ctx.obj = build_state(verbose)


@app.command("serve", help="Run the HTTP API together with the background worker.")
def serve(
    ctx: typer.Context,
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (defaults to config)."),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port (defaults to config)."),
    with_worker: bool = typer.Option(True, "--worker/--no-worker", help="Also run the task worker."),
) -> None:
    import uvicorn

    from .api import create_app

    state = _get_state(ctx)
    worker = build_worker(state) if with_worker else None
    api = create_app(state.store, worker)
    if worker is not None:
        worker.start()
    try:
        uvicorn.run(api, host=host or state.config.api.host, port=port or state.config.api.port)
    finally:
        if worker is not None:
            worker.stop(wait=False)
        state.thread_pool.shutdown()


@app.command("worker", help="Run only the background worker until interrupted.")
def run_worker(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    worker = build_worker(state)
    worker.start()
    console.print(
        f"Worker polling every {state.config.worker.poll_interval_seconds}s "
        f"(max {state.config.worker.max_concurrent} concurrent). Ctrl+C to stop.",
        style="cyan",
    )
    try:
        Event().wait()
    except KeyboardInterrupt:
        console.print("Stopping worker…", style="yellow")
    finally:
        worker.stop(wait=True)
        state.thread_pool.shutdown()


@task_app.command("create", help="Queue a query-search or direct-url task.")
def task_create(
    ctx: typer.Context,
    owner: str = typer.Option(..., "--owner", help="Owner (user id) of the task."),
    query: Optional[str] = typer.Option(None, "--query", help="Search intent for a query-search task."),
    url: Optional[str] = typer.Option(None, "--url", help="Website for a direct-url task."),
    name: Optional[str] = typer.Option(None, "--name", help="Display name."),
    count: Optional[int] = typer.Option(None, "--count", help="Keep at most this many of the most relevant contacts."),
) -> None:
    state = _get_state(ctx)
    if bool(query) == bool(url):
        console.print("Pass exactly one of --query or --url.", style="red")
        raise typer.Exit(code=2)
    kind = TaskKind.QUERY_SEARCH if query else TaskKind.DIRECT_URL
    try:
        task = state.store.create(kind, owner, query=query, url=url, name=name, result_count=count)
    except LeadCrawlerError as exc:
        console.print(str(exc), style="red")
        raise typer.Exit(code=2) from exc
    console.print(f"Task created: {task.task_id}", style="green")
    console.print(_render_tasks_table([task]))


@task_app.command("list", help="List an owner's most recent tasks.")
def task_list(
    ctx: typer.Context,
    owner: str = typer.Option(..., "--owner", help="Owner (user id)."),
    limit: int = typer.Option(20, "--limit", help="Maximum rows."),
    active: bool = typer.Option(False, "--active", help="Only pending and running tasks.", is_flag=True),
) -> None:
    state = _get_state(ctx)
    tasks = state.store.list_active(owner) if active else state.store.list_for_owner(owner, limit=limit)
    if not tasks:
        console.print("No tasks yet.", style="dim")
        return
    console.print(_render_tasks_table(tasks))


@task_app.command("show", help="Show one task with its result and run summary.")
def task_show(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task id."),
    owner: str = typer.Option(..., "--owner", help="Owner (user id)."),
) -> None:
    state = _get_state(ctx)
    task = state.store.get_for_owner(task_id, owner)
    if task is None:
        console.print(f"Task {task_id} not found.", style="red")
        raise typer.Exit(code=1)
    console.print(_render_tasks_table([task]))
    if task.summary:
        console.print("Summary:", style="cyan")
        console.print(json.dumps(task.summary, indent=2, ensure_ascii=False))
    if task.result:
        table = Table(title="Result", box=box.SIMPLE_HEAD)
        table.add_column("Name")
        table.add_column("Email", style="cyan")
        table.add_column("Website", style="green", overflow="fold")
        for candidate in task.result:
            table.add_row(candidate.name, candidate.contact_email or "-", candidate.source_url)
        console.print(table)


@task_app.command("cancel", help="Cancel a pending or running task.")
def task_cancel(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task id."),
    owner: str = typer.Option(..., "--owner", help="Owner (user id)."),
) -> None:
    state = _get_state(ctx)
    if state.store.get_for_owner(task_id, owner) is None:
        console.print(f"Task {task_id} not found.", style="red")
        raise typer.Exit(code=1)
    try:
        task = state.store.cancel(task_id)
    except LeadCrawlerError as exc:
        console.print(str(exc), style="yellow")
        raise typer.Exit(code=1) from exc
    console.print(f"Task {task.task_id} cancelled.", style="green")


@task_app.command("watch", help="Follow a task through a running API until it finishes.")
def task_watch(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task id."),
    owner: str = typer.Option(..., "--owner", help="Owner (user id)."),
    api_url: Optional[str] = typer.Option(None, "--api-url", help="API base url (defaults to config)."),
    push: bool = typer.Option(True, "--push/--no-push", help="Use the server-sent event stream."),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Give up after N seconds."),
) -> None:
    state = _get_state(ctx)
    base_url = api_url or f"http://{state.config.api.host}:{state.config.api.port}"
    client = ApiTaskClient(base_url, owner)
    reporter = TaskProgressReporter(enabled=state.config.progress.enable_progress_bar)
    watcher = ProgressWatcher(
        client.get_task,
        subscribe=client.subscribe if push else None,
        poll_interval=state.config.progress.poll_interval_seconds,
        on_update=reporter.update,
    )
    reporter.start(task_id)
    try:
        snapshot = watcher.watch(task_id, timeout=timeout)
    except TaskNotFoundError as exc:
        console.print(f"Task {task_id} not found.", style="red")
        raise typer.Exit(code=1) from exc
    except TimeoutError as exc:
        console.print(str(exc), style="yellow")
        raise typer.Exit(code=1) from exc
    finally:
        reporter.close()
        client.close()
    style = "green" if snapshot.status == "completed" else "red"
    console.print(f"{snapshot.status}: {snapshot.error or snapshot.message}", style=style)


@contacts_app.command("list", help="List contacts saved for an owner.")
def contacts_list(
    ctx: typer.Context,
    owner: str = typer.Option(..., "--owner", help="Owner (user id)."),
    limit: int = typer.Option(50, "--limit", help="Maximum rows."),
) -> None:
    state = _get_state(ctx)
    contacts = state.store.list_contacts(owner, limit=limit)
    if not contacts:
        console.print("No contacts saved yet.", style="dim")
        return
    console.print(_render_contacts_table(contacts))


@log_app.command("list", help="List per-task log files.")
def log_list() -> None:
    logs = list(available_task_logs())
    if not logs:
        console.print("No task logs yet.", style="dim")
        return
    table = Table(box=box.SIMPLE_HEAD)
    table.add_column("File", style="green")
    for path in logs:
        table.add_row(path.name)
    console.print(table)


@log_app.command("tail", help="Show the last lines of the worker log or a task log.")
def log_tail(
    task_id: Optional[str] = typer.Option(None, "--task", help="Task id (defaults to the worker log)."),
    lines: int = typer.Option(100, "--lines", help="Number of lines."),
    errors: bool = typer.Option(False, "--errors", help="Show error.log instead.", is_flag=True),
) -> None:
    base_dir = logs_dir()
    if task_id:
        path = base_dir / "tasks" / f"{task_id}.log"
    elif errors:
        path = base_dir / "error.log"
    else:
        path = base_dir / "worker.log"
    content = tail_log(path, lines)
    if not content:
        console.print("Log is empty.", style="dim")
        return
    console.print(f"{path.name} · last {len(content)} lines", style="cyan")
    console.print("".join(content), markup=False, highlight=False)


def cli() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    cli()
