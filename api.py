import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated, Optional

from fastapi import FastAPI, Path, Request, Security
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import (
    ADMIN_SUBJECT,
    ROLE_ADMIN,
    ROLE_STUDENT,
    check_admin_credentials,
    create_access_token,
    decode_access_token,
)
from config import settings
from database import MAX_INTEGER, get_db_connection
from errors import AuthenticationError, LibraryError, NotFoundError
from library import Library
from student import Student

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)

library = Library()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"{settings.app_name} v{settings.app_version} starting ({settings.environment}), db={library.db_file}")
    yield
    logger.info(f"{settings.app_name} shutting down")

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

# --- Middleware ---
# Compress responses larger than 1KB
app.add_middleware(GZipMiddleware, minimum_size=1000)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    # Loan and account data must not be cached by intermediaries.
    if request.url.path.startswith("/api/"):
        response.headers["Cache-Control"] = "no-store"
    return response


# --- Error handlers ---
def _error_response(status_code: int, message: str, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message}, headers=headers)


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return _error_response(exc.status_code, exc.message, headers)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _error_response(exc.status_code, str(exc.detail), getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        # JSON decode errors locate by character offset, not by field name
        field = ".".join(part for part in errors[0].get("loc", ())[1:] if isinstance(part, str)) or "request"
        message = f"Invalid {field}: {errors[0].get('msg', 'invalid value')}"
    else:
        message = "Invalid request"
    return _error_response(400, message)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    content = {"success": False, "message": "Something went wrong!"}
    if not settings.is_production:
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


# Row ids in paths must fit an SQLite INTEGER
RecordId = Annotated[int, Path(ge=1, le=MAX_INTEGER)]


# --- Security ---
bearer_scheme = HTTPBearer(auto_error=False)


def _token_claims(credentials: Optional[HTTPAuthorizationCredentials], role: str) -> dict:
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Not authorized, no token provided")
    claims = decode_access_token(credentials.credentials)
    if claims.get("role") != role:
        raise AuthenticationError("Invalid token")
    return claims


def get_current_student(credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme)) -> Student:
    """Dependency resolving the bearer token to an active student."""
    claims = _token_claims(credentials, ROLE_STUDENT)
    try:
        student_pk = int(claims.get("sub"))
    except (TypeError, ValueError):
        raise AuthenticationError("Invalid token")

    student = library.find_student(student_pk)
    if student is None:
        raise AuthenticationError("Student not found")
    if not student.is_active:
        raise AuthenticationError("Account is deactivated. Please contact admin.")
    return student


def get_current_admin(credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme)) -> str:
    """Dependency accepting only tokens issued by the admin login."""
    claims = _token_claims(credentials, ROLE_ADMIN)
    if claims.get("sub") != ADMIN_SUBJECT:
        raise AuthenticationError("Invalid token")
    return ADMIN_SUBJECT


# --- Models ---
class RegisterModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = None
    student_id: str | None = Field(default=None, alias="studentId")
    email: str | None = None
    password: str | None = None
    dept: str | None = None
    phone: str | None = None


class LoginModel(BaseModel):
    email: str | None = None
    password: str | None = None


class ProfileUpdateModel(BaseModel):
    name: str | None = None
    dept: str | None = None
    phone: str | None = None
    password: str | None = None


class StudentDetailsModel(BaseModel):
    """Who is borrowing or queueing; unknown student IDs get a new record."""
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = None
    student_id: str | None = Field(default=None, alias="studentId")
    dept: str | None = None
    email: str | None = None
    phone: str | None = None


class AdminLoginModel(BaseModel):
    username: str | None = None
    password: str | None = None


class BookCreateModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str | None = None
    author: str | None = None
    category: str | None = None
    description: str | None = None
    total_copies: int | None = Field(default=None, alias="totalCopies")


class BookUpdateModel(BookCreateModel):
    pass


def _student_token(student: Student) -> str:
    return create_access_token(student.id, role=ROLE_STUDENT)


# --- General ---
@app.get("/")
async def root():
    return {"message": f"{settings.app_name} is running..."}


@app.get("/health")
async def health():
    """Lightweight health check with a quick database ping."""
    db_ok = True
    try:
        conn = get_db_connection(library.db_file)
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
    except Exception as e:
        logger.warning(f"Health check database ping failed: {e}")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
        "version": settings.app_version,
    }


# --- Student accounts ---
@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterModel):
    student = library.register_student(
        payload.name, payload.student_id, payload.email, payload.password, payload.dept, payload.phone
    )
    return {
        "success": True,
        "message": "Registration successful",
        "student": student.to_dict(),
        "token": _student_token(student),
    }


@app.post("/api/auth/login")
def login(payload: LoginModel):
    student = library.authenticate_student(payload.email, payload.password)
    return {
        "success": True,
        "message": "Login successful",
        "student": student.to_dict(),
        "token": _student_token(student),
    }


@app.get("/api/auth/profile")
def get_profile(student: Student = Security(get_current_student)):
    return {"success": True, "student": student.to_dict()}


@app.put("/api/auth/profile")
def update_profile(payload: ProfileUpdateModel, student: Student = Security(get_current_student)):
    updated = library.update_profile(
        student.id, name=payload.name, dept=payload.dept, phone=payload.phone, password=payload.password
    )
    return {
        "success": True,
        "message": "Profile updated successfully",
        "student": updated.to_dict(),
        "token": _student_token(updated),
    }


@app.post("/api/auth/logout")
def logout(student: Student = Security(get_current_student)):
    # Tokens are stateless; the client drops its copy.
    logger.info(f"Student logged out: id={student.id}")
    return {"success": True, "message": "Logout successful"}


# --- Catalog ---
@app.get("/api/categories")
def get_categories():
    return library.list_categories()


@app.get("/api/books/{category}")
def get_books_by_category(category: str):
    return [book.to_dict(include_waitlist=False) for book in library.list_books_by_category(category)]


@app.get("/api/book/{book_id}")
def get_book(book_id: RecordId):
    return library.get_book(book_id).to_dict()


# --- Borrowing ---
@app.post("/api/borrow/{book_id}", status_code=201)
def borrow_book(book_id: RecordId, payload: StudentDetailsModel):
    borrow = library.borrow_book(
        book_id,
        name=payload.name,
        student_id=payload.student_id,
        dept=payload.dept,
        email=payload.email,
        phone=payload.phone,
    )
    return {"success": True, "message": "Book borrowed successfully", "borrow": borrow.to_dict()}


@app.get("/api/token/{token_id}")
def get_token_info(token_id: str):
    return library.get_borrow_by_token(token_id).to_dict()


@app.get("/api/borrowed")
def get_borrowed_books():
    return [borrow.to_dict() for borrow in library.list_active_borrows()]


@app.get("/api/my-borrowed")
def get_my_borrowed_books(student: Student = Security(get_current_student)):
    borrows = library.list_student_borrows(student.id, active_only=True)
    return {"success": True, "count": len(borrows), "data": [b.to_dict() for b in borrows]}


@app.get("/api/my-history")
def get_my_history(student: Student = Security(get_current_student)):
    return [borrow.to_dict() for borrow in library.list_student_borrows(student.id)]


@app.put("/api/return/{borrow_id}")
def return_book(borrow_id: RecordId, student: Student = Security(get_current_student)):
    borrow = library.return_book(borrow_id, student.id)
    return {
        "success": True,
        "message": "Book returned successfully",
        "returnedOnTime": borrow.returned_on_time,
        "borrow": borrow.to_dict(),
    }


@app.post("/api/waitlist/{book_id}")
def join_waitlist(book_id: RecordId, payload: StudentDetailsModel):
    position = library.join_waitlist(
        book_id,
        name=payload.name,
        student_id=payload.student_id,
        dept=payload.dept,
        email=payload.email,
        phone=payload.phone,
    )
    return {"success": True, "message": "Added to waitlist successfully", "position": position}


@app.get("/api/waitlist/{book_id}")
def get_waitlist(book_id: RecordId):
    return [entry.to_dict() for entry in library.get_waitlist(book_id)]


# --- Admin ---
@app.post("/api/admin/login")
def admin_login(payload: AdminLoginModel):
    if not check_admin_credentials(payload.username, payload.password):
        logger.warning("Failed admin login attempt")
        raise AuthenticationError("Invalid credentials")
    return {
        "success": True,
        "message": "Login successful",
        "token": create_access_token(ADMIN_SUBJECT, role=ROLE_ADMIN),
    }


@app.get("/api/admin/stats")
def get_dashboard_stats(admin: str = Security(get_current_admin)):
    stats = library.get_statistics()
    stats["recentBorrows"] = [borrow.to_dict() for borrow in stats["recentBorrows"]]
    return stats


@app.post("/api/admin/book", status_code=201)
def add_book(payload: BookCreateModel, admin: str = Security(get_current_admin)):
    book = library.add_book(payload.title, payload.author, payload.category, payload.description, payload.total_copies)
    return {"success": True, "message": "Book added successfully", "book": book.to_dict()}


@app.get("/api/admin/books")
def get_all_books(admin: str = Security(get_current_admin)):
    return [book.to_dict(include_waitlist=False) for book in library.list_books()]


@app.put("/api/admin/book/{book_id}")
def update_book(book_id: RecordId, payload: BookUpdateModel, admin: str = Security(get_current_admin)):
    book = library.update_book(
        book_id,
        title=payload.title,
        author=payload.author,
        category=payload.category,
        description=payload.description,
        total_copies=payload.total_copies,
    )
    return {"success": True, "message": "Book updated successfully", "book": book.to_dict()}


@app.delete("/api/admin/book/{book_id}")
def delete_book(book_id: RecordId, admin: str = Security(get_current_admin)):
    if not library.delete_book(book_id):
        raise NotFoundError("Book not found")
    return {"success": True, "message": "Book deleted successfully"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
