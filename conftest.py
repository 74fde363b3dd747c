import os
import pytest

from library import Library


@pytest.fixture
def lib(tmp_path, request):
    # Unique database file per test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    yield Library(db_file=db_file)
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def student_details():
    """Borrow-desk form data for a student who has never registered."""
    def _make(n: int = 1) -> dict:
        return {
            "name": f"Student {n}",
            "student_id": f"S{n:04d}",
            "dept": "Mechanical",
            "email": f"student{n}@college.edu",
            "phone": f"55500{n:02d}",
        }
    return _make
