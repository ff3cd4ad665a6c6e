"""Utility functions for terminal UI and user input."""

from typing import Optional
from rich.console import Console
from rich.table import Table

from ..client.models import Difficulty, ProblemStatus

console = Console()


def choose_index(prompt: str, options: list, max_attempts: int = 3) -> Optional[int]:
    """
    Let user choose an index from a list of options.
    Returns the selected index or None if invalid.
    """
    for _ in range(max_attempts):
        try:
            choice = input(f"{prompt} (0-{len(options) - 1}): ")
            idx = int(choice)
            if 0 <= idx < len(options):
                return idx
            console.print(
                f"[red]Please enter a number between 0 and {len(options) - 1}[/red]"
            )
        except ValueError:
            console.print("[red]Please enter a valid number[/red]")
        except KeyboardInterrupt:
            console.print("\n[yellow]Cancelled[/yellow]")
            return None

    console.print("[red]Too many invalid attempts[/red]")
    return None


def create_table(title: str, headers: list) -> Table:
    """Create a formatted table for display."""
    table = Table(title=title, show_header=True, header_style="bold cyan")
    for header in headers:
        table.add_column(header)
    return table


def format_result_color(result: str) -> str:
    """Format a judge verdict with appropriate color."""
    lowered = result.lower()

    if lowered == "accepted":
        return f"[green]{result}[/green]"
    elif lowered.startswith("wrong") or "error" in lowered:
        return f"[red]{result}[/red]"
    elif "limit exceeded" in lowered:
        return f"[magenta]{result}[/magenta]"
    elif lowered in ["pending", "started", "judging", "timedout", "cancelled"]:
        return f"[yellow]{result}[/yellow]"
    else:
        return result


def format_difficulty(difficulty: Difficulty) -> str:
    color = {
        Difficulty.EASY: "green",
        Difficulty.MEDIUM: "yellow",
        Difficulty.HARD: "red",
    }[difficulty]
    return f"[{color}]{difficulty.value}[/{color}]"


def format_status(status: ProblemStatus) -> str:
    if status == ProblemStatus.SOLVED:
        return "[green]✓[/green]"
    if status == ProblemStatus.ATTEMPTED:
        return "[yellow]~[/yellow]"
    return ""
