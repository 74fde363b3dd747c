from __future__ import annotations

from enum import Enum


class Category(str, Enum):
    """Shelf categories a book can be filed under."""

    MECHANICAL = "Mechanical"
    ELECTRICAL = "Electrical"
    BUSINESS = "Business"
    NON_FICTION = "Non-fiction"
    FICTION = "Fiction"
    SCIENCE = "Science"
    TECHNOLOGY = "Technology"

    @classmethod
    def values(cls) -> list[str]:
        return [c.value for c in cls]


class WaitlistEntry:
    """One queued student for a book."""

    def __init__(self, student_id: int, added_at: str, student: dict | None = None) -> None:
        self.student_id = student_id
        self.added_at = added_at
        self.student = student

    def to_dict(self) -> dict:
        return {
            "studentId": self.student if self.student is not None else self.student_id,
            "addedAt": self.added_at,
        }


class Book:
    """Represents a catalog title and its physical copies."""

    def __init__(self, title: str, author: str, category: str, description: str,
                 total_copies: int, available_copies: int | None = None, id: int | None = None,
                 created_at: str | None = None, updated_at: str | None = None,
                 waitlist: list[WaitlistEntry] | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.category = category
        self.description = description
        self.total_copies = total_copies
        self.available_copies = total_copies if available_copies is None else available_copies
        self.created_at = created_at
        self.updated_at = updated_at
        self.waitlist = waitlist or []

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.available_copies}/{self.total_copies} available)"

    @property
    def is_available(self) -> bool:
        return self.available_copies > 0

    def to_dict(self, include_waitlist: bool = True) -> dict:
        data = {
            "_id": self.id,
            "title": self.title,
            "author": self.author,
            "category": self.category,
            "description": self.description,
            "totalCopies": self.total_copies,
            "availableCopies": self.available_copies,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if include_waitlist:
            data["waitlist"] = [entry.to_dict() for entry in self.waitlist]
        return data

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data.get("id"),
            title=data["title"],
            author=data["author"],
            category=data["category"],
            description=data["description"],
            total_copies=data["total_copies"],
            available_copies=data.get("available_copies"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
