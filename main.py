import os
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

import database
from book import Category
from config import settings
from errors import LibraryError
from library import Library
from utils.ui_helpers import set_output_mode, print_books_result, print_borrows_result, print_stats_result

APP_NAME = "Library Portal CLI"

console = Console()

app = typer.Typer(help=APP_NAME)


def _library() -> Library:
    return Library(db_file=os.environ.get("LIBRARY_DB_FILE") or database.DATABASE_FILE)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global options for the CLI (e.g. output mode)."""
    if output:
        set_output_mode(output)


@app.command("init-db")
def cli_init_db():
    """Create the database tables."""
    lib = _library()
    print(f"Database ready at {lib.db_file}")


@app.command("seed")
def cli_seed(file_path: str = typer.Argument(database.SEED_FILE, help="JSON array of books")):
    """Import books from a JSON file."""
    if not os.path.exists(file_path):
        print(f"File not found: {file_path}")
        raise typer.Exit(code=1)
    try:
        added, failed = _library().import_books(file_path)
    except ValueError as e:
        print(f"Could not read {file_path}: {e}")
        raise typer.Exit(code=1)
    print(f"Import finished: {added} added, {failed} failed")


@app.command("add-book")
def cli_add_book(
    title: str,
    author: str,
    category: str = typer.Option(..., "--category", "-c", help=f"One of: {', '.join(Category.values())}"),
    description: str = typer.Option(..., "--description", "-d"),
    copies: int = typer.Option(1, "--copies", "-n", help="Total number of copies"),
):
    """Add a book to the catalog."""
    try:
        book = _library().add_book(title, author, category, description, copies)
    except LibraryError as e:
        print(f"Error: {e.message}")
        raise typer.Exit(code=1)
    print(f"Successfully added: {book.title} by {book.author} (id {book.id})")


@app.command("list-books")
def cli_list_books(category: Optional[str] = typer.Option(None, "--category", "-c")):
    """List the catalog, optionally for one category."""
    lib = _library()
    books = lib.list_books_by_category(category) if category else lib.list_books()
    print_books_result(books)


@app.command("borrowed")
def cli_borrowed():
    """Show all active loans."""
    print_borrows_result(_library().list_active_borrows())


@app.command("token")
def cli_token(token: str):
    """Look up a loan by its receipt token."""
    try:
        borrow = _library().get_borrow_by_token(token)
    except LibraryError as e:
        print(e.message)
        raise typer.Exit(code=1)
    title = borrow.book.title if borrow.book else "(deleted book)"
    console.print(Panel.fit(
        f"[bold]{escape(title)}[/]\n"
        f"Student: {escape(borrow.student.name if borrow.student else str(borrow.student_id))}\n"
        f"Issued: {borrow.issue_date[:10]}  Due: {borrow.return_date[:10]}\n"
        f"Status: {borrow.status}",
        title=f"🎫 {borrow.token}",
    ))


@app.command("stats")
def cli_stats():
    """Show dashboard statistics."""
    print_stats_result(_library().get_statistics())


@app.command("serve")
def cli_serve(
    host: str = typer.Option(settings.api_host, "--host"),
    port: int = typer.Option(settings.api_port, "--port"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Start the API with uvicorn."""
    import uvicorn

    print(f"Starting {settings.app_name} on http://{host}:{port}/")
    uvicorn.run("api:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
