import json
import threading
from datetime import datetime, timedelta, timezone

import pytest

import library as library_module
from errors import AuthenticationError, ConflictError, NotFoundError, ValidationError
from library import Library, generate_token


def add_sample_book(lib, copies=1, title="Thermodynamics", category="Mechanical"):
    return lib.add_book(title, "Cengel", category, "Heat and work.", copies)


def test_add_and_get_book(lib):
    book = add_sample_book(lib, copies=3)

    found = lib.get_book(book.id)
    assert found.title == "Thermodynamics"
    assert found.total_copies == 3
    assert found.available_copies == 3
    assert found.waitlist == []


def test_add_book_validation(lib):
    with pytest.raises(ValidationError, match="Category must be one of"):
        lib.add_book("Title", "Author", "Poetry", "desc", 1)
    with pytest.raises(ValidationError, match="at least 1"):
        lib.add_book("Title", "Author", "Fiction", "desc", 0)
    with pytest.raises(ValidationError, match="cannot exceed"):
        lib.add_book("Title", "Author", "Fiction", "desc", 10**20)
    with pytest.raises(ValidationError):
        lib.add_book("   ", "Author", "Fiction", "desc", 1)
    assert lib.list_books() == []


def test_get_missing_book(lib):
    with pytest.raises(NotFoundError, match="Book not found"):
        lib.get_book(999)


def test_categories_and_listing(lib):
    add_sample_book(lib, title="Dune", category="Fiction")
    add_sample_book(lib, title="Circuits", category="Electrical")
    add_sample_book(lib, title="Emma", category="Fiction")

    assert lib.list_categories() == ["Electrical", "Fiction"]
    assert [b.title for b in lib.list_books_by_category("Fiction")] == ["Dune", "Emma"]
    assert lib.list_books_by_category("Business") == []


def test_borrow_last_copy(lib, student_details):
    book = add_sample_book(lib, copies=1)

    borrow = lib.borrow_book(book.id, **student_details(1))

    assert borrow.status == "active"
    assert len(borrow.token) == 16
    assert borrow.book.id == book.id
    assert borrow.student.student_id == "S0001"
    assert lib.get_book(book.id).available_copies == 0
    assert len(lib.list_active_borrows()) == 1


def test_borrow_sets_due_date_from_loan_period(tmp_path, student_details):
    lib = Library(db_file=str(tmp_path / "loan.db"), loan_period_days=7)
    book = add_sample_book(lib)

    borrow = lib.borrow_book(book.id, **student_details(1))

    issued = datetime.fromisoformat(borrow.issue_date)
    due = datetime.fromisoformat(borrow.return_date)
    assert due - issued == timedelta(days=7)


def test_borrow_unavailable_book_fails_without_record(lib, student_details):
    book = add_sample_book(lib, copies=1)
    lib.borrow_book(book.id, **student_details(1))

    with pytest.raises(ConflictError, match="Join waitlist"):
        lib.borrow_book(book.id, **student_details(2))

    assert len(lib.list_active_borrows()) == 1
    assert lib.get_book(book.id).available_copies == 0
    # The rejected request must not leave a student record behind either.
    assert lib.find_student_by_student_id("S0002") is None


def test_borrow_missing_book(lib, student_details):
    with pytest.raises(NotFoundError):
        lib.borrow_book(42, **student_details(1))


def test_borrow_requires_student_details(lib, student_details):
    book = add_sample_book(lib)
    details = student_details(1)
    details["email"] = ""

    with pytest.raises(ValidationError, match="required fields"):
        lib.borrow_book(book.id, **details)
    assert lib.get_book(book.id).available_copies == 1


def test_borrow_creates_student_without_credentials(lib, student_details):
    book = add_sample_book(lib, copies=2)
    borrow = lib.borrow_book(book.id, **student_details(1))

    student = lib.find_student(borrow.student_id)
    assert student is not None
    assert not student.has_credentials
    with pytest.raises(AuthenticationError, match="Invalid email or password"):
        lib.authenticate_student("student1@college.edu", "anything")


def test_borrow_reuses_existing_student(lib, student_details):
    book = add_sample_book(lib, copies=2)
    first = lib.borrow_book(book.id, **student_details(1))
    # Same student ID with different details resolves to the same record.
    details = dict(student_details(1), name="Someone Else")
    second = lib.borrow_book(book.id, **details)

    assert first.student_id == second.student_id
    assert second.student.name == "Student 1"


def test_token_lookup_round_trip(lib, student_details):
    book = add_sample_book(lib)
    borrow = lib.borrow_book(book.id, **student_details(1))

    found = lib.get_borrow_by_token(borrow.token)
    assert found.id == borrow.id
    assert found.book.id == book.id
    assert found.student.student_id == "S0001"
    assert found.issue_date == borrow.issue_date

    assert lib.get_borrow_by_token(borrow.token.lower()).id == borrow.id
    with pytest.raises(NotFoundError, match="Token not found"):
        lib.get_borrow_by_token("0000000000000000")


def test_generate_token_format():
    token = generate_token()
    assert len(token) == 16
    assert token == token.upper()
    int(token, 16)


def test_return_restores_copy(lib, student_details):
    book = add_sample_book(lib)
    borrow = lib.borrow_book(book.id, **student_details(1))

    returned = lib.return_book(borrow.id, borrow.student_id)

    assert returned.status == "returned"
    assert returned.actual_return_date is not None
    assert returned.returned_on_time is True
    assert lib.get_book(book.id).available_copies == 1
    assert lib.list_active_borrows() == []


def test_return_twice_conflicts(lib, student_details):
    book = add_sample_book(lib)
    borrow = lib.borrow_book(book.id, **student_details(1))
    lib.return_book(borrow.id, borrow.student_id)

    with pytest.raises(ConflictError, match="already returned"):
        lib.return_book(borrow.id, borrow.student_id)
    assert lib.get_book(book.id).available_copies == 1


def test_return_someone_elses_borrow(lib, student_details):
    book = add_sample_book(lib, copies=2)
    mine = lib.borrow_book(book.id, **student_details(1))
    theirs = lib.borrow_book(book.id, **student_details(2))

    with pytest.raises(NotFoundError):
        lib.return_book(theirs.id, mine.student_id)
    with pytest.raises(NotFoundError):
        lib.return_book(999, mine.student_id)
    assert lib.get_borrow(theirs.id).status == "active"


def test_return_never_exceeds_total_copies(lib, student_details):
    book = add_sample_book(lib, copies=2)
    first = lib.borrow_book(book.id, **student_details(1))
    second = lib.borrow_book(book.id, **student_details(2))
    # Admin lowers the stock while both copies are out.
    lib.update_book(book.id, total_copies=1)
    assert lib.get_book(book.id).available_copies == 0

    lib.return_book(first.id, first.student_id)
    lib.return_book(second.id, second.student_id)
    refreshed = lib.get_book(book.id)
    assert refreshed.available_copies == refreshed.total_copies == 1


def test_returned_on_time_boundary(lib, student_details, monkeypatch):
    issued = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
    monkeypatch.setattr(library_module, "_now", lambda: issued)
    book = add_sample_book(lib, copies=2)
    borrow = lib.borrow_book(book.id, **student_details(1))
    late = lib.borrow_book(book.id, **student_details(2))

    due = issued + timedelta(days=14)
    monkeypatch.setattr(library_module, "_now", lambda: due)
    assert lib.return_book(borrow.id, borrow.student_id).returned_on_time is True

    monkeypatch.setattr(library_module, "_now", lambda: due + timedelta(seconds=1))
    assert lib.return_book(late.id, late.student_id).returned_on_time is False


def test_waitlist_positions(lib, student_details):
    book = add_sample_book(lib)

    assert lib.join_waitlist(book.id, **student_details(1)) == 1
    assert lib.join_waitlist(book.id, **student_details(2)) == 2
    with pytest.raises(ConflictError, match="Already in waitlist"):
        lib.join_waitlist(book.id, **student_details(1))

    queue = lib.get_waitlist(book.id)
    assert [entry.student["studentId"] for entry in queue] == ["S0001", "S0002"]
    assert len(lib.get_book(book.id).waitlist) == 2


def test_waitlist_missing_book(lib, student_details):
    with pytest.raises(NotFoundError):
        lib.join_waitlist(7, **student_details(1))
    with pytest.raises(NotFoundError):
        lib.get_waitlist(7)


def test_borrowing_removes_waitlist_entry(lib, student_details):
    book = add_sample_book(lib)
    lib.join_waitlist(book.id, **student_details(1))
    lib.join_waitlist(book.id, **student_details(2))

    lib.borrow_book(book.id, **student_details(2))

    assert [e.student["studentId"] for e in lib.get_waitlist(book.id)] == ["S0001"]


def test_concurrent_borrows_of_last_copy(lib, student_details):
    book = add_sample_book(lib, copies=1)
    results = []
    lock = threading.Lock()

    def attempt(n):
        try:
            lib.borrow_book(book.id, **student_details(n))
            outcome = "ok"
        except ConflictError:
            outcome = "conflict"
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=attempt, args=(n,)) for n in range(1, 9)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count("ok") == 1
    assert results.count("conflict") == 7
    assert lib.get_book(book.id).available_copies == 0
    assert len(lib.list_active_borrows()) == 1


def test_update_book_adjusts_available_copies(lib, student_details):
    book = add_sample_book(lib, copies=3)
    lib.borrow_book(book.id, **student_details(1))

    updated = lib.update_book(book.id, title="Thermo II", total_copies=5)
    assert updated.title == "Thermo II"
    assert updated.author == "Cengel"
    assert (updated.total_copies, updated.available_copies) == (5, 4)

    updated = lib.update_book(book.id, total_copies=1)
    assert (updated.total_copies, updated.available_copies) == (1, 0)

    with pytest.raises(NotFoundError):
        lib.update_book(999, title="x")
    with pytest.raises(ValidationError):
        lib.update_book(book.id, category="Cooking")


def test_delete_book_keeps_loans(lib, student_details):
    book = add_sample_book(lib)
    borrow = lib.borrow_book(book.id, **student_details(1))
    lib.join_waitlist(book.id, **student_details(2))

    assert lib.delete_book(book.id) is True
    assert lib.delete_book(book.id) is False

    orphan = lib.get_borrow(borrow.id)
    assert orphan.book is None
    assert orphan.to_dict()["bookId"] is None


def test_register_password_length(lib):
    with pytest.raises(ValidationError, match="at least 6 characters"):
        lib.register_student("Ann", "S1", "ann@college.edu", "12345", "Business", "555")

    student = lib.register_student("Ann", "S1", "ann@college.edu", "123456", "Business", "555")
    assert student.has_credentials
    assert lib.authenticate_student("ANN@college.edu", "123456").id == student.id


def test_register_duplicates(lib):
    lib.register_student("Ann", "S1", "ann@college.edu", "secret1", "Business", "555")

    with pytest.raises(ConflictError, match="Email already registered"):
        lib.register_student("Bob", "S2", "ann@college.edu", "secret1", "Business", "555")
    with pytest.raises(ConflictError, match="Student ID already registered"):
        lib.register_student("Bob", "S1", "bob@college.edu", "secret1", "Business", "555")
    with pytest.raises(ValidationError, match="required fields"):
        lib.register_student("Bob", "S3", "bob@college.edu", "secret1", "", "555")


def test_register_claims_desk_record(lib, student_details):
    book = add_sample_book(lib)
    borrow = lib.borrow_book(book.id, **student_details(1))

    student = lib.register_student("Student One", "S0001", "student1@college.edu", "secret1", "Mechanical", "555")

    assert student.id == borrow.student_id
    assert lib.list_student_borrows(student.id)[0].id == borrow.id


def test_login_failures(lib):
    student = lib.register_student("Ann", "S1", "ann@college.edu", "secret1", "Business", "555")

    with pytest.raises(AuthenticationError, match="Invalid email or password"):
        lib.authenticate_student("ann@college.edu", "wrong-pass")
    with pytest.raises(AuthenticationError, match="Invalid email or password"):
        lib.authenticate_student("nobody@college.edu", "secret1")
    with pytest.raises(ValidationError):
        lib.authenticate_student("", "secret1")
    assert lib.authenticate_student("ann@college.edu", "secret1").id == student.id


def test_update_profile(lib):
    student = lib.register_student("Ann", "S1", "ann@college.edu", "secret1", "Business", "555")

    updated = lib.update_profile(student.id, dept="Science", password="newpass")
    assert updated.dept == "Science"
    assert updated.name == "Ann"
    assert lib.authenticate_student("ann@college.edu", "newpass").id == student.id

    with pytest.raises(ValidationError):
        lib.update_profile(student.id, password="short")


def test_student_borrow_history(lib, student_details):
    book = add_sample_book(lib, copies=2)
    other = add_sample_book(lib, title="Dune", category="Fiction")
    first = lib.borrow_book(book.id, **student_details(1))
    second = lib.borrow_book(other.id, **student_details(1))
    lib.return_book(first.id, first.student_id)

    active = lib.list_student_borrows(first.student_id, active_only=True)
    history = lib.list_student_borrows(first.student_id)
    assert [b.id for b in active] == [second.id]
    assert {b.id for b in history} == {first.id, second.id}


def test_statistics(lib, student_details):
    book = add_sample_book(lib, copies=3)
    a = lib.borrow_book(book.id, **student_details(1))
    lib.borrow_book(book.id, **student_details(2))
    lib.return_book(a.id, a.student_id)

    stats = lib.get_statistics()
    assert stats["totalBooks"] == 1
    assert stats["totalBorrowed"] == 1
    assert stats["totalReturned"] == 1
    assert len(stats["recentBorrows"]) == 1


def test_import_books(lib, tmp_path):
    seed = tmp_path / "books.json"
    seed.write_text(json.dumps([
        {"title": "Dune", "author": "Herbert", "category": "Fiction", "description": "Spice.", "totalCopies": 2},
        {"title": "Bad", "author": "Nobody", "category": "Cooking", "description": "Nope."},
        {"title": "No author"},
    ]), encoding="utf-8")

    added, failed = lib.import_books(str(seed))
    assert (added, failed) == (1, 1)
    assert [b.title for b in lib.list_books()] == ["Dune"]


def test_full_lending_scenario(lib, student_details):
    book = lib.add_book("X", "Author", "Science", "A book.", 1)

    borrow_a = lib.borrow_book(book.id, **student_details(1))
    assert lib.get_book(book.id).available_copies == 0
    assert lib.get_borrow_by_token(borrow_a.token).id == borrow_a.id

    with pytest.raises(ConflictError, match="Join waitlist"):
        lib.borrow_book(book.id, **student_details(2))
    assert lib.join_waitlist(book.id, **student_details(2)) == 1

    returned = lib.return_book(borrow_a.id, borrow_a.student_id)
    assert returned.status == "returned"
    assert lib.get_book(book.id).available_copies == 1
