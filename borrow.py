from __future__ import annotations

from datetime import datetime

from book import Book
from student import Student

STATUS_ACTIVE = "active"
STATUS_RETURNED = "returned"


def parse_timestamp(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class Borrow:
    """A loan of one copy of a book to one student."""

    def __init__(self, book_id: int, student_id: int, token: str, issue_date: str, return_date: str,
                 status: str = STATUS_ACTIVE, actual_return_date: str | None = None, id: int | None = None,
                 created_at: str | None = None, updated_at: str | None = None,
                 book: Book | None = None, student: Student | None = None) -> None:
        self.id = id
        self.book_id = book_id
        self.student_id = student_id
        self.token = token
        self.issue_date = issue_date
        self.return_date = return_date
        self.actual_return_date = actual_return_date
        self.status = status
        self.created_at = created_at
        self.updated_at = updated_at
        # Populated by the library when the loan is read back with its relations.
        self.book = book
        self.student = student

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    @property
    def returned_on_time(self) -> bool | None:
        """True when the book came back on or before its due date; None while still out."""
        if self.actual_return_date is None:
            return None
        return parse_timestamp(self.actual_return_date) <= parse_timestamp(self.return_date)

    def to_dict(self, expand: bool = True) -> dict:
        data = {
            "_id": self.id,
            "bookId": self.book_id,
            "studentId": self.student_id,
            "token": self.token,
            "issueDate": self.issue_date,
            "returnDate": self.return_date,
            "actualReturnDate": self.actual_return_date,
            "status": self.status,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if expand:
            # A deleted book leaves its loans behind with a null reference.
            data["bookId"] = self.book.to_dict(include_waitlist=False) if self.book else None
            if self.student is not None:
                data["studentId"] = self.student.to_dict()
        return data

    @staticmethod
    def from_dict(data: dict) -> "Borrow":
        return Borrow(
            id=data.get("id"),
            book_id=data["book_id"],
            student_id=data["student_id"],
            token=data["token"],
            issue_date=data["issue_date"],
            return_date=data["return_date"],
            actual_return_date=data.get("actual_return_date"),
            status=data.get("status", STATUS_ACTIVE),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
