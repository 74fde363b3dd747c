from __future__ import annotations


class Student:
    """A library member, either self-registered or created at the borrow desk."""

    def __init__(self, name: str, student_id: str, email: str, phone: str, dept: str,
                 id: int | None = None, password_hash: str | None = None, is_active: bool = True,
                 created_at: str | None = None, updated_at: str | None = None) -> None:
        self.id = id
        self.name = name.strip()
        self.student_id = student_id.strip()
        self.email = email.strip().lower()
        self.phone = phone.strip()
        self.dept = dept.strip()
        self.password_hash = password_hash
        self.is_active = bool(is_active)
        self.created_at = created_at
        self.updated_at = updated_at

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.name} ({self.student_id})"

    @property
    def has_credentials(self) -> bool:
        """Students created implicitly by a borrow have no password and cannot log in."""
        return bool(self.password_hash)

    def to_dict(self) -> dict:
        # The password hash never leaves the store.
        return {
            "_id": self.id,
            "name": self.name,
            "studentId": self.student_id,
            "email": self.email,
            "phone": self.phone,
            "dept": self.dept,
            "isActive": self.is_active,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Student":
        return Student(
            id=data.get("id"),
            name=data["name"],
            student_id=data["student_id"],
            email=data["email"],
            phone=data["phone"],
            dept=data["dept"],
            password_hash=data.get("password_hash"),
            is_active=data.get("is_active", 1),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
