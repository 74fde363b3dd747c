import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable controlling CLI output.
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode
    # anything else keeps the current mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_books_result(books: List[Any]) -> None:
    """Print the catalog in the current output mode.
    - plain: 'ID - Title by Author [Category] available/total' lines, or 'No books in library.'
    - json: array of book objects
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict(include_waitlist=False) for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Category", style="cyan")
        table.add_column("Available", justify="right")
        for b in books:
            table.add_row(str(b.id), b.title, b.author, b.category, f"{b.available_copies}/{b.total_copies}")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id} - {b.title} by {b.author} [{b.category}] {b.available_copies}/{b.total_copies}")


def print_borrows_result(borrows: List[Any]) -> None:
    """Print loans in the current output mode."""
    mode = get_output_mode()

    if not borrows:
        print("No active loans.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in borrows], ensure_ascii=False))
        return

    rows = []
    for b in borrows:
        title = b.book.title if b.book else "(deleted book)"
        who = b.student.student_id if b.student else str(b.student_id)
        rows.append((b.token, title, who, b.return_date[:10]))

    if mode == "rich":
        table = Table(title="📖 Active loans", show_lines=True, header_style="bold cyan")
        for column in ("Token", "Book", "Student", "Due"):
            table.add_column(column)
        for row in rows:
            table.add_row(*row)
        _console.print(table)
    else:
        for token, title, who, due in rows:
            print(f"{token} - {title} -> {who} (due {due})")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print dashboard counters in the current output mode."""
    mode = get_output_mode()

    total = stats.get("totalBooks", 0)
    borrowed = stats.get("totalBorrowed", 0)
    returned = stats.get("totalReturned", 0)

    if mode == "json":
        print(json.dumps({"totalBooks": total, "totalBorrowed": borrowed, "totalReturned": returned}))
    elif mode == "rich":
        content = (f"[bold]Total Books:[/] {total}\n"
                   f"[bold]Currently Borrowed:[/] {borrowed}\n"
                   f"[bold]Returned:[/] {returned}")
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        print(f"Total Books: {total}")
        print(f"Currently Borrowed: {borrowed}")
        print(f"Returned: {returned}")
