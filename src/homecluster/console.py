"""Human-facing progress output shared by all phases."""

from rich.console import Console
from rich.markup import escape

console = Console(highlight=False)


def phase_header(number: int, title: str) -> None:
    console.print(f"\n[bold]Phase {number}: {escape(title)}[/bold]")


def success(message: str) -> None:
    console.print(f"[green]✓[/green] {escape(message)}")


def warning(message: str) -> None:
    console.print(f"[yellow]⚠[/yellow] {escape(message)}")


def failure(message: str) -> None:
    console.print(f"[red]✗[/red] {escape(message)}")


def info(message: str) -> None:
    console.print(f"  {escape(message)}")
