import logging
import os
import secrets
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Dict, Any, Tuple

import database
from auth import hash_password, verify_password
from book import Book, Category, WaitlistEntry
from borrow import Borrow, STATUS_ACTIVE, STATUS_RETURNED
from config import settings
from database import get_db_connection, initialize_database, load_seed_books
from errors import AuthenticationError, ConflictError, LibraryError, NotFoundError, ValidationError
from student import Student
from utils.validators import EmailValidator, PasswordValidator, TextValidator

logger = logging.getLogger(__name__)

RECENT_BORROWS_LIMIT = 5
MAX_COPIES = 10_000


def _now() -> datetime:
    return datetime.now(timezone.utc)


def generate_token() -> str:
    """Return a 16 character receipt token (8 random bytes, upper-case hex)."""
    return secrets.token_hex(8).upper()


class Library:
    """Book catalog, student accounts and the loan ledger, persisted in SQLite.

    Every public method opens its own connection. Operations that touch more
    than one row (borrow, return, waitlist join) run inside a single
    transaction, and copy counts only change through conditional updates, so
    concurrent requests for the last copy cannot both win.
    """

    def __init__(self, db_file: Optional[str] = None, loan_period_days: Optional[int] = None) -> None:
        self.db_file = db_file or os.environ.get("LIBRARY_DB_FILE") or database.DATABASE_FILE
        days = settings.loan_period_days if loan_period_days is None else loan_period_days
        self.loan_period = timedelta(days=days)
        initialize_database(self.db_file)  # make sure the schema exists

    def _connect(self, write: bool = False) -> sqlite3.Connection:
        conn = get_db_connection(self.db_file)
        if write:
            # Take the write lock before the first read.
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error:
                conn.close()
                raise
        return conn

    # ------------------------- Catalog ------------------------- #
    def add_book(self, title: Optional[str], author: Optional[str], category: Optional[str],
                 description: Optional[str], total_copies: Any) -> Book:
        """Create a catalog entry with every copy available."""
        if not TextValidator.validate_title(title):
            raise ValidationError("Please provide a valid title")
        if not TextValidator.validate_author(author):
            raise ValidationError("Please provide a valid author")
        if TextValidator.is_blank(description):
            raise ValidationError("Please provide a description")
        category = self._validate_category(category)
        copies = self._validate_copies(total_copies)

        now = _now().isoformat()
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                INSERT INTO books (title, author, category, description,
                                   total_copies, available_copies, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (title.strip(), author.strip(), category, description.strip(), copies, copies, now, now),
            )
            conn.commit()
            book_id = cursor.lastrowid
        finally:
            conn.close()

        logger.info(f"Book added: id={book_id}, title={title.strip()!r}, copies={copies}")
        return self.get_book(book_id)

    def import_books(self, json_file: str) -> Tuple[int, int]:
        """Add every book listed in a JSON seed file. Returns (added, failed)."""
        added = failed = 0
        for item in load_seed_books(json_file):
            try:
                self.add_book(
                    item.get("title"),
                    item.get("author"),
                    item.get("category"),
                    item.get("description"),
                    item.get("totalCopies", item.get("total_copies", 1)),
                )
                added += 1
            except LibraryError as e:
                logger.warning(f"Could not import {item.get('title')!r}: {e.message}")
                failed += 1
        return added, failed

    def get_book(self, book_id: int, include_waitlist: bool = True) -> Book:
        conn = self._connect()
        try:
            book = self._fetch_book(conn, book_id)
            if book is None:
                raise NotFoundError("Book not found")
            if include_waitlist:
                book.waitlist = self._load_waitlist(conn, book_id)
            return book
        finally:
            conn.close()

    def list_books(self) -> List[Book]:
        """All books, newest first (admin view)."""
        conn = self._connect()
        try:
            rows = conn.execute("SELECT * FROM books ORDER BY created_at DESC, id DESC").fetchall()
            return [Book.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def list_books_by_category(self, category: str) -> List[Book]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM books WHERE category = ? ORDER BY title", (category,)
            ).fetchall()
            return [Book.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def list_categories(self) -> List[str]:
        """Categories that currently have at least one book."""
        conn = self._connect()
        try:
            rows = conn.execute("SELECT DISTINCT category FROM books ORDER BY category").fetchall()
            return [row[0] for row in rows]
        finally:
            conn.close()

    def update_book(self, book_id: int, *, title: Optional[str] = None, author: Optional[str] = None,
                    category: Optional[str] = None, description: Optional[str] = None,
                    total_copies: Any = None) -> Book:
        """Partially update a book.

        Blank values leave a field unchanged. Changing ``total_copies`` shifts
        ``available_copies`` by the same amount, clamped to 0..total_copies.
        """
        if category is not None and category != "":
            category = self._validate_category(category)
        copies = self._validate_copies(total_copies) if total_copies is not None else None

        conn = self._connect(write=True)
        try:
            book = self._fetch_book(conn, book_id)
            if book is None:
                raise NotFoundError("Book not found")

            new_title = title.strip() if not TextValidator.is_blank(title) else book.title
            new_author = author.strip() if not TextValidator.is_blank(author) else book.author
            new_category = category or book.category
            new_description = description.strip() if not TextValidator.is_blank(description) else book.description

            # Copy arithmetic runs against the current row.
            conn.execute(
                """
                UPDATE books
                SET title = ?, author = ?, category = ?, description = ?,
                    available_copies = MAX(0, MIN(COALESCE(?, total_copies),
                                                  available_copies + COALESCE(?, total_copies) - total_copies)),
                    total_copies = COALESCE(?, total_copies),
                    updated_at = ?
                WHERE id = ?
                """,
                (new_title, new_author, new_category, new_description,
                 copies, copies, copies, _now().isoformat(), book_id),
            )
            conn.commit()
        finally:
            conn.close()

        logger.info(f"Book updated: id={book_id}")
        return self.get_book(book_id)

    def delete_book(self, book_id: int) -> bool:
        """Remove a book and its waitlist. Existing loans are kept."""
        conn = self._connect()
        try:
            cursor = conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
            conn.commit()
            deleted = cursor.rowcount > 0
        finally:
            conn.close()
        if deleted:
            logger.info(f"Book deleted: id={book_id}")
        return deleted

    # ------------------------- Students ------------------------- #
    def find_student(self, student_pk: int) -> Optional[Student]:
        conn = self._connect()
        try:
            return self._fetch_student(conn, "id", student_pk)
        finally:
            conn.close()

    def find_student_by_student_id(self, student_id: str) -> Optional[Student]:
        conn = self._connect()
        try:
            return self._fetch_student(conn, "student_id", (student_id or "").strip())
        finally:
            conn.close()

    def find_student_by_email(self, email: str) -> Optional[Student]:
        conn = self._connect()
        try:
            return self._fetch_student(conn, "email", EmailValidator.normalize_email(email))
        finally:
            conn.close()

    def register_student(self, name: Optional[str], student_id: Optional[str], email: Optional[str],
                         password: Optional[str], dept: Optional[str], phone: Optional[str]) -> Student:
        """Create a student account with a password.

        A record created earlier at the borrow desk (same student ID, no
        password) is claimed instead of duplicated.
        """
        if TextValidator.first_missing(name=name, student_id=student_id, email=email,
                                       password=password, dept=dept, phone=phone):
            raise ValidationError("Please provide all required fields")
        self._validate_password(password)
        if not EmailValidator.is_valid_email(email):
            raise ValidationError("Please add a valid email")

        email = EmailValidator.normalize_email(email)
        student_id = student_id.strip()
        password_hash = hash_password(password)
        now = _now().isoformat()

        conn = self._connect(write=True)
        try:
            by_email = self._fetch_student(conn, "email", email)
            by_student_id = self._fetch_student(conn, "student_id", student_id)

            if by_email and (by_email.has_credentials or by_student_id is None or by_email.id != by_student_id.id):
                raise ConflictError("Email already registered", status_code=400)
            if by_student_id and by_student_id.has_credentials:
                raise ConflictError("Student ID already registered", status_code=400)

            try:
                if by_student_id:
                    conn.execute(
                        """
                        UPDATE students
                        SET name = ?, email = ?, phone = ?, dept = ?, password_hash = ?, updated_at = ?
                        WHERE id = ?
                        """,
                        (name.strip(), email, phone.strip(), dept.strip(), password_hash, now, by_student_id.id),
                    )
                    student_pk = by_student_id.id
                else:
                    cursor = conn.execute(
                        """
                        INSERT INTO students (name, student_id, email, phone, dept, password_hash,
                                              is_active, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
                        """,
                        (name.strip(), student_id, email, phone.strip(), dept.strip(), password_hash, now, now),
                    )
                    student_pk = cursor.lastrowid
                conn.commit()
            except sqlite3.IntegrityError as e:
                raise ConflictError("Student already registered", status_code=400) from e
            student = self._fetch_student(conn, "id", student_pk)
        finally:
            conn.close()

        logger.info(f"Student registered: id={student.id}, student_id={student.student_id}")
        return student

    def authenticate_student(self, email: Optional[str], password: Optional[str]) -> Student:
        if TextValidator.is_blank(email) or not password:
            raise ValidationError("Please provide email and password")

        student = self.find_student_by_email(email)
        if student is None or not student.has_credentials:
            logger.warning(f"Failed login for {EmailValidator.normalize_email(email)!r}: unknown account")
            raise AuthenticationError("Invalid email or password")
        if not student.is_active:
            raise AuthenticationError("Account is deactivated. Please contact admin.")
        if not verify_password(password, student.password_hash):
            logger.warning(f"Failed login for student id={student.id}: wrong password")
            raise AuthenticationError("Invalid email or password")
        return student

    def update_profile(self, student_pk: int, *, name: Optional[str] = None, dept: Optional[str] = None,
                       phone: Optional[str] = None, password: Optional[str] = None) -> Student:
        """Update name, department, phone and/or password. Blank values are ignored."""
        student = self.find_student(student_pk)
        if student is None:
            raise NotFoundError("Student not found")
        password_hash = student.password_hash
        if password:
            self._validate_password(password)
            password_hash = hash_password(password)

        conn = self._connect()
        try:
            conn.execute(
                "UPDATE students SET name = ?, dept = ?, phone = ?, password_hash = ?, updated_at = ? WHERE id = ?",
                (
                    name.strip() if not TextValidator.is_blank(name) else student.name,
                    dept.strip() if not TextValidator.is_blank(dept) else student.dept,
                    phone.strip() if not TextValidator.is_blank(phone) else student.phone,
                    password_hash,
                    _now().isoformat(),
                    student_pk,
                ),
            )
            conn.commit()
            return self._fetch_student(conn, "id", student_pk)
        finally:
            conn.close()

    # ------------------------- Borrow / return / waitlist ------------------------- #
    def borrow_book(self, book_id: int, *, name: Optional[str], student_id: Optional[str],
                    dept: Optional[str], email: Optional[str], phone: Optional[str]) -> Borrow:
        """Lend one copy of a book, creating the student record if needed."""
        conn = self._connect(write=True)
        try:
            book = self._fetch_book(conn, book_id)
            if book is None:
                raise NotFoundError("Book not found")
            if not book.is_available:
                raise ConflictError("Book not available. Join waitlist.", status_code=400)

            student = self._resolve_student(conn, name=name, student_id=student_id,
                                             dept=dept, email=email, phone=phone)
            issued = _now()
            cursor = conn.execute(
                """
                UPDATE books SET available_copies = available_copies - 1, updated_at = ?
                WHERE id = ? AND available_copies > 0
                """,
                (issued.isoformat(), book_id),
            )
            if cursor.rowcount == 0:
                # Another borrow took the last copy since we read the book.
                raise ConflictError("Book not available. Join waitlist.", status_code=400)

            cursor = conn.execute(
                """
                INSERT INTO borrows (book_id, student_id, token, issue_date, return_date,
                                     status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (book_id, student.id, generate_token(), issued.isoformat(),
                 (issued + self.loan_period).isoformat(), STATUS_ACTIVE,
                 issued.isoformat(), issued.isoformat()),
            )
            borrow_id = cursor.lastrowid
            # A borrower leaves the waitlist for this book.
            conn.execute("DELETE FROM waitlist WHERE book_id = ? AND student_id = ?", (book_id, student.id))
            conn.commit()
        finally:
            # Closing without a commit discards the whole transaction.
            conn.close()

        logger.info(f"Book borrowed: book_id={book_id}, student={student.student_id}, borrow_id={borrow_id}")
        return self.get_borrow(borrow_id)

    def return_book(self, borrow_id: int, student_pk: int) -> Borrow:
        """Close a loan owned by ``student_pk`` and put the copy back on the shelf."""
        conn = self._connect(write=True)
        try:
            row = conn.execute("SELECT * FROM borrows WHERE id = ?", (borrow_id,)).fetchone()
            if row is None or row["student_id"] != student_pk:
                raise NotFoundError("Borrow record not found")
            if row["status"] == STATUS_RETURNED:
                raise ConflictError("Book already returned")

            returned_at = _now().isoformat()
            cursor = conn.execute(
                """
                UPDATE borrows SET status = ?, actual_return_date = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (STATUS_RETURNED, returned_at, returned_at, borrow_id, STATUS_ACTIVE),
            )
            if cursor.rowcount == 0:
                raise ConflictError("Book already returned")

            conn.execute(
                """
                UPDATE books SET available_copies = MIN(total_copies, available_copies + 1), updated_at = ?
                WHERE id = ?
                """,
                (returned_at, row["book_id"]),
            )
            waiting = conn.execute(
                "SELECT COUNT(*) FROM waitlist WHERE book_id = ?", (row["book_id"],)
            ).fetchone()[0]
            conn.commit()
        finally:
            conn.close()

        logger.info(f"Book returned: borrow_id={borrow_id}, book_id={row['book_id']}")
        if waiting:
            logger.info(f"{waiting} student(s) waiting for book_id={row['book_id']}")
        return self.get_borrow(borrow_id)

    def join_waitlist(self, book_id: int, *, name: Optional[str], student_id: Optional[str],
                      dept: Optional[str], email: Optional[str], phone: Optional[str]) -> int:
        """Queue a student for a book. Returns their 1-based position."""
        conn = self._connect(write=True)
        try:
            if self._fetch_book(conn, book_id) is None:
                raise NotFoundError("Book not found")

            student = self._resolve_student(conn, name=name, student_id=student_id,
                                            dept=dept, email=email, phone=phone)
            already = conn.execute(
                "SELECT 1 FROM waitlist WHERE book_id = ? AND student_id = ?", (book_id, student.id)
            ).fetchone()
            if already:
                raise ConflictError("Already in waitlist", status_code=400)

            try:
                conn.execute(
                    "INSERT INTO waitlist (book_id, student_id, added_at) VALUES (?, ?, ?)",
                    (book_id, student.id, _now().isoformat()),
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError("Already in waitlist", status_code=400) from e
            position = conn.execute(
                "SELECT COUNT(*) FROM waitlist WHERE book_id = ?", (book_id,)
            ).fetchone()[0]
            conn.commit()
        finally:
            conn.close()

        logger.info(f"Waitlist joined: book_id={book_id}, student={student.student_id}, position={position}")
        return position

    def get_waitlist(self, book_id: int) -> List[WaitlistEntry]:
        conn = self._connect()
        try:
            if self._fetch_book(conn, book_id) is None:
                raise NotFoundError("Book not found")
            return self._load_waitlist(conn, book_id)
        finally:
            conn.close()

    # ------------------------- Loan queries ------------------------- #
    def get_borrow(self, borrow_id: int) -> Borrow:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM borrows WHERE id = ?", (borrow_id,)).fetchone()
            if row is None:
                raise NotFoundError("Borrow record not found")
            return self._expand(conn, [row])[0]
        finally:
            conn.close()

    def get_borrow_by_token(self, token: str) -> Borrow:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM borrows WHERE token = ?", ((token or "").strip().upper(),)
            ).fetchone()
            if row is None:
                raise NotFoundError("Token not found")
            return self._expand(conn, [row])[0]
        finally:
            conn.close()

    def list_active_borrows(self, limit: Optional[int] = None) -> List[Borrow]:
        """Active loans, most recently issued first."""
        sql = "SELECT * FROM borrows WHERE status = ? ORDER BY issue_date DESC, id DESC"
        params: Tuple[Any, ...] = (STATUS_ACTIVE,)
        if limit is not None:
            sql += " LIMIT ?"
            params += (limit,)
        conn = self._connect()
        try:
            return self._expand(conn, conn.execute(sql, params).fetchall())
        finally:
            conn.close()

    def list_student_borrows(self, student_pk: int, active_only: bool = False) -> List[Borrow]:
        """A student's loans, newest first; only open ones when ``active_only``."""
        sql = "SELECT * FROM borrows WHERE student_id = ?"
        params: Tuple[Any, ...] = (student_pk,)
        if active_only:
            sql += " AND status = ?"
            params += (STATUS_ACTIVE,)
        sql += " ORDER BY issue_date DESC, id DESC"
        conn = self._connect()
        try:
            return self._expand(conn, conn.execute(sql, params).fetchall())
        finally:
            conn.close()

    def get_statistics(self) -> Dict[str, Any]:
        """Dashboard counters plus the most recent active loans."""
        conn = self._connect()
        try:
            total_books = conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]
            counts = dict(conn.execute("SELECT status, COUNT(*) FROM borrows GROUP BY status").fetchall())
        finally:
            conn.close()
        return {
            "totalBooks": total_books,
            "totalBorrowed": counts.get(STATUS_ACTIVE, 0),
            "totalReturned": counts.get(STATUS_RETURNED, 0),
            "recentBorrows": self.list_active_borrows(limit=RECENT_BORROWS_LIMIT),
        }

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _fetch_book(conn: sqlite3.Connection, book_id: int) -> Optional[Book]:
        row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        return Book.from_dict(dict(row)) if row else None

    @staticmethod
    def _fetch_student(conn: sqlite3.Connection, column: str, value: Any) -> Optional[Student]:
        if column not in ("id", "student_id", "email"):
            raise ValueError(f"Cannot look up students by {column!r}")
        row = conn.execute(f"SELECT * FROM students WHERE {column} = ?", (value,)).fetchone()
        return Student.from_dict(dict(row)) if row else None

    def _resolve_student(self, conn: sqlite3.Connection, *, name: Optional[str], student_id: Optional[str],
                         dept: Optional[str], email: Optional[str], phone: Optional[str]) -> Student:
        """Find a student by student ID or create a record without a password.

        Runs on the caller's connection; an insert here is committed (or
        discarded) together with the rest of the caller's transaction.
        """
        if TextValidator.is_blank(student_id):
            raise ValidationError("Please provide all required fields")
        student = self._fetch_student(conn, "student_id", student_id.strip())
        if student is not None:
            return student

        if TextValidator.first_missing(name=name, dept=dept, email=email, phone=phone):
            raise ValidationError("Please provide all required fields")
        if not EmailValidator.is_valid_email(email):
            raise ValidationError("Please add a valid email")
        email = EmailValidator.normalize_email(email)
        if self._fetch_student(conn, "email", email) is not None:
            raise ConflictError("Email already registered", status_code=400)

        now = _now().isoformat()
        try:
            cursor = conn.execute(
                """
                INSERT INTO students (name, student_id, email, phone, dept, password_hash,
                                      is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, NULL, 1, ?, ?)
                """,
                (name.strip(), student_id.strip(), email, phone.strip(), dept.strip(), now, now),
            )
        except sqlite3.IntegrityError as e:
            raise ConflictError("Student already registered", status_code=400) from e
        logger.info(f"Student record created at the desk: student_id={student_id.strip()}")
        return self._fetch_student(conn, "id", cursor.lastrowid)

    def _load_waitlist(self, conn: sqlite3.Connection, book_id: int) -> List[WaitlistEntry]:
        rows = conn.execute(
            """
            SELECT w.student_id AS waiting_id, w.added_at, s.*
            FROM waitlist w JOIN students s ON s.id = w.student_id
            WHERE w.book_id = ?
            ORDER BY w.id
            """,
            (book_id,),
        ).fetchall()
        return [
            WaitlistEntry(row["waiting_id"], row["added_at"], Student.from_dict(dict(row)).to_dict())
            for row in rows
        ]

    def _expand(self, conn: sqlite3.Connection, rows: List[sqlite3.Row]) -> List[Borrow]:
        """Attach book and student records to raw borrow rows."""
        books: Dict[int, Optional[Book]] = {}
        students: Dict[int, Optional[Student]] = {}
        borrows = []
        for row in rows:
            borrow = Borrow.from_dict(dict(row))
            if borrow.book_id not in books:
                books[borrow.book_id] = self._fetch_book(conn, borrow.book_id)
            if borrow.student_id not in students:
                students[borrow.student_id] = self._fetch_student(conn, "id", borrow.student_id)
            borrow.book = books[borrow.book_id]
            borrow.student = students[borrow.student_id]
            borrows.append(borrow)
        return borrows

    @staticmethod
    def _validate_category(category: Optional[str]) -> str:
        if category not in Category.values():
            raise ValidationError(f"Category must be one of: {', '.join(Category.values())}")
        return category

    @staticmethod
    def _validate_copies(total_copies: Any) -> int:
        if isinstance(total_copies, bool) or not isinstance(total_copies, int) or total_copies < 1:
            raise ValidationError("totalCopies must be a whole number of at least 1")
        if total_copies > MAX_COPIES:
            raise ValidationError(f"totalCopies cannot exceed {MAX_COPIES}")
        return total_copies

    @staticmethod
    def _validate_password(password: Optional[str]) -> None:
        if not PasswordValidator.is_valid_password(password, settings.min_password_length):
            raise ValidationError(f"Password must be at least {settings.min_password_length} characters")
