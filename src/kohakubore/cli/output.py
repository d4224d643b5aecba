"""Console output helpers for the CLI."""

from rich.console import Console

console = Console()
err_console = Console(stderr=True)


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[bold green]✓[/bold green] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    err_console.print(f"[bold yellow]![/bold yellow] {message}")


def print_error(message: str) -> None:
    """Print an error message."""
    err_console.print(f"[bold red]Error:[/bold red] {message}")
