"""Command-line interface for leetcli_py."""

from concurrent import futures
from pathlib import Path
from typing import List, Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .client import Difficulty, JobMode, ListOp, LeetCodeClient, PersonalList, ProblemStatus
from .config import Language, LocalConfig
from .engine import ChangeEvent, ChangeKind, Engine, JobState, ProblemFilter, SubmissionJob
from .errors import LeetCliError
from .utils import choose_index, configure_logging, create_table, format_difficulty, format_result_color, format_status


console = Console()

_LOUD_EVENTS = {
    ChangeKind.SYNC_FAILED: "yellow",
    ChangeKind.SYNC_PAUSED: "red",
    ChangeKind.CACHE_RECOVERED: "yellow",
    ChangeKind.LIST_ROLLBACK: "red",
}


def _print_event(event: ChangeEvent) -> None:
    color = _LOUD_EVENTS.get(event.kind)
    if color and event.message:
        console.print(f"[{color}]{event.message}[/{color}]")


def _open_engine(ctx: click.Context) -> Optional[Engine]:
    """Log in, load the cache and start syncing. Returns None if login failed."""
    client = LeetCodeClient()

    if not client.auto_login():
        console.print("[yellow]Not logged in. Please login first.[/yellow]")
        if not client.login():
            return None

    engine = Engine.open(client, local_config=ctx.obj["local_config"], start=False)
    engine.subscribe(_print_event)
    with console.status("[bold green]Loading problem catalog..."):
        engine.start()
    return engine


def _cached_lists(engine: Engine) -> List[PersonalList]:
    """Lists from the cache, waiting for the first lists sync if there are none yet."""
    if not engine.lists():
        with console.status("[cyan]Fetching lists...[/cyan]"):
            engine.wait_idle(timeout=30)
    return engine.lists()


def _resolve_list(engine: Engine, name_or_id: str) -> Optional[PersonalList]:
    lists = _cached_lists(engine)
    for personal_list in lists:
        if personal_list.id == name_or_id:
            return personal_list
    matches = [pl for pl in lists if pl.name.lower() == name_or_id.lower()]
    if not matches:
        console.print(f"[red]No list named {name_or_id}[/red]")
        return None
    if len(matches) == 1:
        return matches[0]

    console.print(f"[yellow]Several lists are named {name_or_id}:[/yellow]")
    for i, personal_list in enumerate(matches):
        console.print(f"  [cyan]{i}[/cyan]: {personal_list.name} ({personal_list.id}, {len(personal_list.problem_ids)} problems)")
    idx = choose_index("Select list", matches)
    return matches[idx] if idx is not None else None


def _problem_from_file(engine: Engine, file: Path) -> Optional[str]:
    """Guess the problem from names like ``1.two-sum.py`` or ``two-sum.py``."""
    stem = file.stem
    for candidate in [stem] + stem.split("."):
        if candidate and engine.find_problem(candidate) is not None:
            return candidate
    return None


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, default=False, help="Show debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool):
    """leetcli_py - terminal client for LeetCode."""
    local_config = LocalConfig.load() or LocalConfig()
    configure_logging(local_config.engine_config().log_path, verbose=verbose)
    ctx.obj = {"local_config": local_config, "verbose": verbose}


@cli.command()
def login():
    """Save LeetCode session cookies for future use."""
    client = LeetCodeClient()
    client.login()


@cli.command()
@click.pass_context
def sync(ctx: click.Context):
    """Refresh the local cache now."""
    engine = _open_engine(ctx)
    if engine is None:
        return

    with engine:
        engine.refresh()
        with console.status("[bold green]Syncing with LeetCode..."):
            idle = engine.wait_idle(timeout=300)

        if not idle:
            console.print("[yellow]Sync is still running in the background.[/yellow]")
        for task in engine.sync.tasks():
            if task.last_error:
                console.print(f"[red]{task.key}: {task.last_error}[/red]")
            elif task.last_success is not None:
                console.print(f"[green]{task.key}: up to date[/green]")

        console.print(f"[bold cyan]Problems cached:[/bold cyan] {len(engine.index)}")
        console.print(f"[bold cyan]Lists cached:[/bold cyan] {len(engine.lists())}")


@cli.command()
@click.option("-s", "--search", default="", help="Title text or problem number")
@click.option(
    "-d",
    "--difficulty",
    multiple=True,
    type=click.Choice([d.value for d in Difficulty], case_sensitive=False),
    help="Only these difficulties",
)
@click.option(
    "--status",
    multiple=True,
    type=click.Choice([s.value for s in ProblemStatus], case_sensitive=False),
    help="Only problems with this status",
)
@click.option("-t", "--tag", multiple=True, help="Only problems with this tag slug")
@click.option("--no-paid", is_flag=True, default=False, help="Hide paid-only problems")
@click.option("-n", "--limit", type=int, default=50, help="Rows to show (default: 50)")
@click.pass_context
def problems(
    ctx: click.Context,
    search: str,
    difficulty: Tuple[str, ...],
    status: Tuple[str, ...],
    tag: Tuple[str, ...],
    no_paid: bool,
    limit: int,
):
    """Search the problem catalog."""
    engine = _open_engine(ctx)
    if engine is None:
        return

    with engine:
        problem_filter = ProblemFilter(
            text=search,
            difficulties=frozenset(Difficulty(d.capitalize()) for d in difficulty),
            statuses=frozenset(ProblemStatus(s.capitalize()) for s in status),
            tags=frozenset(tag),
            include_paid=not no_paid,
            limit=limit,
        )
        result = engine.get_problem_list(problem_filter)

        if not result.problems:
            console.print("[yellow]No problems match.[/yellow]")
            return

        table = Table(
            title=f"Problems ({len(result.problems)} of {result.total})",
            show_header=True,
            header_style="bold cyan",
        )
        table.add_column("", style="white")
        table.add_column("ID", style="cyan")
        table.add_column("Title", style="white")
        table.add_column("Difficulty", style="white")
        table.add_column("Acceptance", style="magenta")

        for problem in result.problems:
            title = problem.title + (" [yellow]$[/yellow]" if problem.paid_only else "")
            table.add_row(
                format_status(problem.status),
                problem.frontend_id,
                title,
                format_difficulty(problem.difficulty),
                f"{problem.ac_rate:.1f}%",
            )

        console.print(table)


@cli.command()
@click.argument("problem_id")
@click.option("-o", "--output", type=click.Path(path_type=Path), help="Write starter code to this file")
@click.option(
    "-l",
    "--lang",
    type=click.Choice([lang.value for lang in Language]),
    help="Starter code language (default: from config)",
)
@click.pass_context
def show(ctx: click.Context, problem_id: str, output: Optional[Path], lang: Optional[str]):
    """Show a problem statement."""
    engine = _open_engine(ctx)
    if engine is None:
        return

    with engine:
        problem = engine.find_problem(problem_id)
        if problem is None:
            console.print(f"[red]Unknown problem: {problem_id}[/red]")
            return

        try:
            with console.status("[cyan]Fetching problem...[/cyan]"):
                detail = engine.get_problem_detail(problem.slug)
        except LeetCliError as e:
            console.print(f"[red]Could not fetch problem: {e}[/red]")
            return

        console.print(
            f"\n[bold cyan]{detail.frontend_id}. {detail.title}[/bold cyan]  {format_difficulty(detail.difficulty)}"
        )
        if detail.tags:
            console.print(f"[bold]Tags:[/bold] {', '.join(detail.tags)}")
        console.print()
        console.print(detail.statement, markup=False)

        if detail.sample_cases:
            console.print("\n[bold cyan]Sample input:[/bold cyan]")
            console.print(detail.sample_input, markup=False)

        language = lang or engine.language.value
        code = detail.starter_code(language)
        if output is not None:
            if code is None:
                console.print(f"[yellow]No starter code for {language}[/yellow]")
                return
            output.write_text(code, encoding="utf-8")
            console.print(f"[green]Starter code written to {output}[/green]")


def _print_job(job: SubmissionJob) -> None:
    """Display the verdict of a finished job."""
    result = job.result
    verdict = job.reason or job.state.value
    if job.state == JobState.ACCEPTED:
        verdict = "Accepted"
    console.print(f"\n[bold]Result:[/bold] {format_result_color(verdict)}")

    if result is None:
        return
    if result.runtime:
        console.print(f"[bold]Runtime:[/bold] {result.runtime}")
    if result.memory:
        console.print(f"[bold]Memory:[/bold] {result.memory}")
    if result.total_testcases:
        console.print(f"[bold]Tests passed:[/bold] {result.total_correct or 0}/{result.total_testcases}")
    if result.compile_error:
        console.print("\n[bold red]Compile error:[/bold red]")
        console.print(result.compile_error, markup=False)
    if job.state != JobState.ACCEPTED:
        if result.last_testcase:
            console.print("\n[bold cyan]Last test case:[/bold cyan]")
            console.print(result.last_testcase, markup=False)
        if result.code_output:
            console.print("\n[bold cyan]Your output:[/bold cyan]")
            console.print("\n".join(result.code_output), markup=False)
        if result.expected_output:
            console.print("\n[bold cyan]Expected:[/bold cyan]")
            console.print(result.expected_output, markup=False)


def _judge(ctx: click.Context, file: Path, problem: Optional[str], lang: Optional[str], mode: JobMode):
    engine = _open_engine(ctx)
    if engine is None:
        return

    with engine:
        if problem is None:
            problem = _problem_from_file(engine, file)
            if problem is None:
                console.print(f"[red]Cannot tell the problem from {file.name}; use --problem[/red]")
                return

        if lang is None:
            guessed = Language.from_extension(file.suffix)
            lang = (guessed or engine.language).value

        code = file.read_text(encoding="utf-8")
        try:
            handle = engine.run_or_submit(problem, code, mode, language=lang)
        except KeyError:
            console.print(f"[red]Unknown problem: {problem}[/red]")
            return
        except LeetCliError as e:
            console.print(f"[red]Error: {e}[/red]")
            return

        label = "Running" if mode == JobMode.RUN else "Judging"
        try:
            with console.status(f"[bold green]{label}..."):
                job = handle.wait()
        except KeyboardInterrupt:
            engine.cancel(handle)
            console.print("\n[yellow]Cancelled[/yellow]")
            return

        _print_job(job)


@cli.command()
@click.argument("file", type=click.Path(exists=True, path_type=Path))
@click.option("-p", "--problem", help="Problem number or slug (default: from filename)")
@click.option("-l", "--lang", type=click.Choice([lang.value for lang in Language]), help="Language (default: from extension)")
@click.pass_context
def run(ctx: click.Context, file: Path, problem: Optional[str], lang: Optional[str]):
    """Run a solution against the sample cases."""
    _judge(ctx, file, problem, lang, JobMode.RUN)


@cli.command()
@click.argument("file", type=click.Path(exists=True, path_type=Path))
@click.option("-p", "--problem", help="Problem number or slug (default: from filename)")
@click.option("-l", "--lang", type=click.Choice([lang.value for lang in Language]), help="Language (default: from extension)")
@click.pass_context
def submit(ctx: click.Context, file: Path, problem: Optional[str], lang: Optional[str]):
    """Submit a solution file."""
    _judge(ctx, file, problem, lang, JobMode.SUBMIT)


@cli.command()
@click.pass_context
def stats(ctx: click.Context):
    """Show solved counts per difficulty."""
    engine = _open_engine(ctx)
    if engine is None:
        return

    with engine:
        user_stats = engine.stats()
        if user_stats is None:
            with console.status("[cyan]Fetching stats...[/cyan]"):
                engine.wait_idle(timeout=30)
            user_stats = engine.stats()
        if user_stats is None:
            console.print("[yellow]No stats available yet.[/yellow]")
            return

        table = Table(title=f"Progress of {user_stats.username}", show_header=True, header_style="bold cyan")
        table.add_column("Difficulty", style="white")
        table.add_column("Solved", style="green")
        table.add_column("Total", style="white")

        for name in ("Easy", "Medium", "Hard", "All"):
            if name in user_stats.solved or name in user_stats.totals:
                table.add_row(
                    name,
                    str(user_stats.solved.get(name, 0)),
                    str(user_stats.totals.get(name, "?")),
                )

        console.print(table)


@cli.group()
def lists():
    """Manage personal problem lists."""
    pass


def _wait_for_list_edit(mutation, success: str) -> None:
    try:
        with console.status("[cyan]Saving to LeetCode...[/cyan]"):
            mutation.wait(timeout=60)
    except futures.TimeoutError:
        console.print("[yellow]No answer from LeetCode yet; the change stays local until it confirms.[/yellow]")
        return
    except LeetCliError as e:
        console.print(f"[red]LeetCode rejected the change, reverted: {e}[/red]")
        return
    console.print(f"[green]{success}[/green]")


@lists.command(name="show")
@click.argument("name", required=False)
@click.pass_context
def lists_show(ctx: click.Context, name: Optional[str]):
    """Show all lists, or the problems of one list."""
    engine = _open_engine(ctx)
    if engine is None:
        return

    with engine:
        if name is None:
            table = create_table("Personal Lists", ["ID", "Name", "Problems"])
            for personal_list in _cached_lists(engine):
                table.add_row(personal_list.id, personal_list.name, str(len(personal_list.problem_ids)))
            console.print(table)
            return

        personal_list = _resolve_list(engine, name)
        if personal_list is None:
            return

        table = create_table(personal_list.name, ["", "ID", "Title", "Difficulty"])
        for problem_id in personal_list.problem_ids:
            problem = engine.index.get_by_id(problem_id)
            if problem is None:
                table.add_row("", problem_id, "[dim]not in cache[/dim]", "")
                continue
            table.add_row(
                format_status(problem.status),
                problem.frontend_id,
                problem.title,
                format_difficulty(problem.difficulty),
            )
        console.print(table)


@lists.command(name="create")
@click.argument("name")
@click.pass_context
def lists_create(ctx: click.Context, name: str):
    """Create a personal list."""
    engine = _open_engine(ctx)
    if engine is None:
        return

    with engine:
        try:
            mutation = engine.mutate_list(ListOp.create(name))
        except (ValueError, KeyError) as e:
            console.print(f"[red]{e}[/red]")
            return
        _wait_for_list_edit(mutation, f"Created list {name}")


@lists.command(name="delete")
@click.argument("name")
@click.pass_context
def lists_delete(ctx: click.Context, name: str):
    """Delete a personal list."""
    engine = _open_engine(ctx)
    if engine is None:
        return

    with engine:
        personal_list = _resolve_list(engine, name)
        if personal_list is None:
            return
        if not click.confirm(f"Delete list {personal_list.name}?"):
            return
        mutation = engine.mutate_list(ListOp.delete(personal_list.id))
        _wait_for_list_edit(mutation, f"Deleted list {personal_list.name}")


def _edit_list_membership(ctx: click.Context, name: str, problem_id: str, add: bool) -> None:
    engine = _open_engine(ctx)
    if engine is None:
        return

    with engine:
        personal_list = _resolve_list(engine, name)
        if personal_list is None:
            return
        problem = engine.find_problem(problem_id)
        if problem is None:
            console.print(f"[red]Unknown problem: {problem_id}[/red]")
            return

        op = ListOp.add if add else ListOp.remove
        try:
            mutation = engine.mutate_list(op(personal_list.id, problem.id))
        except (ValueError, KeyError) as e:
            console.print(f"[red]{e}[/red]")
            return
        verb = "Added" if add else "Removed"
        where = "to" if add else "from"
        _wait_for_list_edit(mutation, f"{verb} {problem.title} {where} {personal_list.name}")


@lists.command(name="add")
@click.argument("name")
@click.argument("problem_id")
@click.pass_context
def lists_add(ctx: click.Context, name: str, problem_id: str):
    """Add a problem to a list."""
    _edit_list_membership(ctx, name, problem_id, add=True)


@lists.command(name="remove")
@click.argument("name")
@click.argument("problem_id")
@click.pass_context
def lists_remove(ctx: click.Context, name: str, problem_id: str):
    """Remove a problem from a list."""
    _edit_list_membership(ctx, name, problem_id, add=False)


@cli.command()
def version():
    """Show version information."""
    console.print(f"[bold cyan]leetcli_py[/bold cyan] version [green]{__version__}[/green]")
    console.print("Terminal client for LeetCode")


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
