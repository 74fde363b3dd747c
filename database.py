import sqlite3
import json
import logging
import os
from typing import List, Dict, Any, Optional

from dotenv import load_dotenv

# Make sure .env is loaded before reading the environment, regardless of the
# order in which modules are imported (e.g. library -> database -> config).
load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_FILE = os.environ.get("LIBRARY_DB_FILE", "library.db")
SEED_FILE = os.environ.get("BOOKS_SEED_FILE", "books.json")

# Largest value an SQLite INTEGER column holds.
MAX_INTEGER = 2**63 - 1

# Seconds a writer waits for another connection's transaction to finish.
BUSY_TIMEOUT = 10.0


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database."""
    conn = sqlite3.connect(db_file or DATABASE_FILE, timeout=BUSY_TIMEOUT, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the tables if they do not exist yet."""
    conn = get_db_connection(db_file)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                category TEXT NOT NULL,
                description TEXT NOT NULL,
                total_copies INTEGER NOT NULL CHECK(total_copies >= 1),
                available_copies INTEGER NOT NULL CHECK(available_copies >= 0),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS students (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                student_id TEXT UNIQUE NOT NULL,
                email TEXT UNIQUE NOT NULL,
                phone TEXT NOT NULL,
                dept TEXT NOT NULL,
                password_hash TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # Loans keep their book reference after the book is deleted, so there
        # is no foreign key on book_id.
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS borrows (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                book_id INTEGER NOT NULL,
                student_id INTEGER NOT NULL,
                token TEXT UNIQUE NOT NULL,
                issue_date TEXT NOT NULL,
                return_date TEXT NOT NULL,
                actual_return_date TEXT,
                status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active', 'returned')),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (student_id) REFERENCES students(id)
            )
        """)

        # Waitlist entries; the autoincrement id gives the queue order.
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS waitlist (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                book_id INTEGER NOT NULL,
                student_id INTEGER NOT NULL,
                added_at TEXT NOT NULL,
                UNIQUE (book_id, student_id),
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE,
                FOREIGN KEY (student_id) REFERENCES students(id)
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_category ON books(category)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrows_status ON borrows(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrows_student ON borrows(student_id, issue_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_waitlist_book ON waitlist(book_id, id)")

        conn.commit()
    finally:
        conn.close()


def load_seed_books(path: str) -> List[Dict[str, Any]]:
    """Read catalog entries from a JSON file, skipping malformed items."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a JSON array of books.")

    required = ("title", "author", "category", "description")
    books = []
    for item in data:
        if isinstance(item, dict) and all(item.get(k) for k in required):
            books.append(item)
        else:
            logger.warning(f"Skipping malformed seed entry: {item!r}")
    return books


def initialize_database(db_file: Optional[str] = None) -> None:
    """Create the tables if needed and switch the file to WAL mode."""
    conn = get_db_connection(db_file)
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
    finally:
        conn.close()
    create_tables(db_file)
