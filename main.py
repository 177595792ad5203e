import logging
import secrets
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import HTTPException, RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from circulation import CirculationError, issue_book, return_book
from config import settings
from covers import find_cover_image
from database import SessionLocal, init_db
from db_storage import DatabaseStorage
from schemas import (
    BookBorrowCount,
    BookCreate,
    BookOut,
    BookReviewCreate,
    BookReviewOut,
    BookReviewUpdate,
    BookSuggestionCreate,
    BookSuggestionOut,
    BookSuggestionUpdate,
    BookUpdate,
    CategoryCreate,
    CategoryOut,
    CategoryUpdate,
    CirculationCreate,
    CirculationOut,
    CirculationUpdate,
    HealthOut,
    IssuedBook,
    LoginRequest,
    MemberBorrowCount,
    MemberCreate,
    MemberOut,
    MemberUpdate,
)
from storage import DuplicateError, MemStorage, NotFoundError, Storage

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.storage_backend == "memory":
        app.state.memory_storage = MemStorage()
        logger.info("Using in-memory storage")
    else:
        init_db()
    yield


app = FastAPI(title=settings.app_name, debug=settings.debug, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_storage(request: Request):
    if settings.storage_backend == "memory":
        yield request.app.state.memory_storage
        return
    db = SessionLocal()
    try:
        yield DatabaseStorage(db)
    finally:
        db.close()


def _require(entity, message: str):
    if entity is None:
        raise HTTPException(status_code=404, detail=message)
    return entity


# Books

@app.get("/api/books", response_model=List[BookOut])
def get_books(storage: Storage = Depends(get_storage)):
    return storage.get_books()


@app.get("/api/books/search", response_model=List[BookOut])
def search_books(q: Optional[str] = None, storage: Storage = Depends(get_storage)):
    if not q:
        raise HTTPException(status_code=400, detail="Search query is required")
    return storage.search_books(q)


@app.get("/api/books/{book_id}", response_model=BookOut)
def get_book(book_id: int, storage: Storage = Depends(get_storage)):
    return _require(storage.get_book(book_id), "Book not found")


@app.post("/api/books", response_model=BookOut, status_code=201)
async def create_book(payload: BookCreate, storage: Storage = Depends(get_storage)):
    data = payload.model_dump()
    if not data.get("cover_image") and settings.cover_lookup_enabled:
        data["cover_image"] = await find_cover_image(payload.title, timeout=settings.openlibrary_timeout)
    return await run_in_threadpool(storage.create_book, data)


@app.put("/api/books/{book_id}", response_model=BookOut)
def update_book(book_id: int, payload: BookUpdate, storage: Storage = Depends(get_storage)):
    updates = payload.model_dump(exclude_unset=True, exclude_none=True)
    return _require(storage.update_book(book_id, updates), "Book not found")


@app.delete("/api/books/{book_id}", status_code=204)
def delete_book(book_id: int, storage: Storage = Depends(get_storage)):
    if storage.get_active_circulation_for_book(book_id):
        raise HTTPException(status_code=400, detail="Cannot delete book with active loans")
    if not storage.delete_book(book_id):
        raise HTTPException(status_code=404, detail="Book not found")
    return Response(status_code=204)


# Members

@app.get("/api/members", response_model=List[MemberOut])
def get_members(storage: Storage = Depends(get_storage)):
    return storage.get_members()


@app.get("/api/members/search", response_model=List[MemberOut])
def search_members(q: Optional[str] = None, storage: Storage = Depends(get_storage)):
    if not q:
        raise HTTPException(status_code=400, detail="Search query is required")
    return storage.search_members(q)


@app.get("/api/members/{member_id}", response_model=MemberOut)
def get_member(member_id: int, storage: Storage = Depends(get_storage)):
    return _require(storage.get_member(member_id), "Member not found")


@app.post("/api/members", response_model=MemberOut, status_code=201)
def create_member(payload: MemberCreate, storage: Storage = Depends(get_storage)):
    return storage.create_member(payload.model_dump())


@app.put("/api/members/{member_id}", response_model=MemberOut)
def update_member(member_id: int, payload: MemberUpdate, storage: Storage = Depends(get_storage)):
    updates = payload.model_dump(exclude_unset=True, exclude_none=True)
    return _require(storage.update_member(member_id, updates), "Member not found")


@app.delete("/api/members/{member_id}", status_code=204)
def delete_member(member_id: int, storage: Storage = Depends(get_storage)):
    if storage.get_active_circulation_for_member(member_id):
        raise HTTPException(status_code=400, detail="Member still has books on loan")
    if not storage.delete_member(member_id):
        raise HTTPException(status_code=404, detail="Member not found")
    return Response(status_code=204)


# Categories

@app.get("/api/categories", response_model=List[CategoryOut])
def get_categories(storage: Storage = Depends(get_storage)):
    return storage.get_categories()


@app.get("/api/categories/{category_id}", response_model=CategoryOut)
def get_category(category_id: int, storage: Storage = Depends(get_storage)):
    return _require(storage.get_category(category_id), "Category not found")


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def create_category(payload: CategoryCreate, storage: Storage = Depends(get_storage)):
    return storage.create_category(payload.model_dump())


@app.put("/api/categories/{category_id}", response_model=CategoryOut)
def update_category(category_id: int, payload: CategoryUpdate, storage: Storage = Depends(get_storage)):
    updates = payload.model_dump(exclude_unset=True, exclude_none=True)
    return _require(storage.update_category(category_id, updates), "Category not found")


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(category_id: int, storage: Storage = Depends(get_storage)):
    if not storage.delete_category(category_id):
        raise HTTPException(status_code=404, detail="Category not found")
    return Response(status_code=204)


# Book suggestions

@app.get("/api/book-suggestions", response_model=List[BookSuggestionOut])
def get_book_suggestions(storage: Storage = Depends(get_storage)):
    return storage.get_book_suggestions()


@app.get("/api/book-suggestions/{suggestion_id}", response_model=BookSuggestionOut)
def get_book_suggestion(suggestion_id: int, storage: Storage = Depends(get_storage)):
    return _require(storage.get_book_suggestion(suggestion_id), "Suggestion not found")


@app.post("/api/book-suggestions", response_model=BookSuggestionOut, status_code=201)
def create_book_suggestion(payload: BookSuggestionCreate, storage: Storage = Depends(get_storage)):
    _require(storage.get_member(payload.member_id), "Member not found")
    return storage.create_book_suggestion(payload.model_dump())


@app.put("/api/book-suggestions/{suggestion_id}", response_model=BookSuggestionOut)
def update_book_suggestion(
    suggestion_id: int, payload: BookSuggestionUpdate, storage: Storage = Depends(get_storage)
):
    updates = payload.model_dump(exclude_unset=True, exclude_none=True)
    return _require(storage.update_book_suggestion(suggestion_id, updates), "Suggestion not found")


# Book reviews

@app.get("/api/book-reviews", response_model=List[BookReviewOut])
def get_book_reviews(storage: Storage = Depends(get_storage)):
    return storage.get_book_reviews()


@app.get("/api/book-reviews/book/{book_id}", response_model=List[BookReviewOut])
def get_book_reviews_by_book(book_id: int, storage: Storage = Depends(get_storage)):
    return storage.get_book_reviews_by_book(book_id)


@app.get("/api/book-reviews/{review_id}", response_model=BookReviewOut)
def get_book_review(review_id: int, storage: Storage = Depends(get_storage)):
    return _require(storage.get_book_review(review_id), "Review not found")


@app.post("/api/book-reviews", response_model=BookReviewOut, status_code=201)
def create_book_review(payload: BookReviewCreate, storage: Storage = Depends(get_storage)):
    _require(storage.get_book(payload.book_id), "Book not found")
    _require(storage.get_member(payload.member_id), "Member not found")
    return storage.create_book_review(payload.model_dump())


@app.put("/api/book-reviews/{review_id}", response_model=BookReviewOut)
def update_book_review(review_id: int, payload: BookReviewUpdate, storage: Storage = Depends(get_storage)):
    updates = payload.model_dump(exclude_unset=True, exclude_none=True)
    return _require(storage.update_book_review(review_id, updates), "Review not found")


# Circulation

@app.get("/api/circulation", response_model=List[CirculationOut])
def get_circulation(storage: Storage = Depends(get_storage)):
    return storage.get_circulation()


@app.get("/api/circulation/active", response_model=List[CirculationOut])
def get_active_circulation(storage: Storage = Depends(get_storage)):
    return storage.get_active_circulation()


@app.get("/api/circulation/overdue", response_model=List[CirculationOut])
def get_overdue_circulation(storage: Storage = Depends(get_storage)):
    return storage.get_overdue_circulation()


@app.get("/api/circulation/{record_id}", response_model=CirculationOut)
def get_circulation_record(record_id: int, storage: Storage = Depends(get_storage)):
    return _require(storage.get_circulation_record(record_id), "Circulation record not found")


@app.post("/api/circulation", response_model=CirculationOut, status_code=201)
def create_circulation_record(payload: CirculationCreate, storage: Storage = Depends(get_storage)):
    if payload.action == "return":
        return return_book(storage, payload.book_id, member_id=payload.member_id)
    if payload.member_id is None:
        raise HTTPException(status_code=400, detail="memberId is required to borrow a book")
    return issue_book(
        storage,
        payload.book_id,
        payload.member_id,
        loan_days=settings.loan_period_days,
        due_date=payload.due_date,
    )


@app.put("/api/circulation/{record_id}", response_model=CirculationOut)
def update_circulation_record(record_id: int, payload: CirculationUpdate, storage: Storage = Depends(get_storage)):
    updates = payload.model_dump(exclude_unset=True, exclude_none=True)
    return _require(storage.update_circulation_record(record_id, updates), "Circulation record not found")


# Analytics

@app.get("/api/analytics/most-read-books", response_model=List[BookBorrowCount])
def get_most_read_books(storage: Storage = Depends(get_storage)):
    return storage.get_most_read_books()


@app.get("/api/analytics/most-active-readers", response_model=List[MemberBorrowCount])
def get_most_active_readers(storage: Storage = Depends(get_storage)):
    return storage.get_most_active_readers()


@app.get("/api/analytics/issued-books", response_model=List[IssuedBook])
def get_issued_books(storage: Storage = Depends(get_storage)):
    return storage.get_issued_books()


# Admin login

@app.post("/api/auth/login")
def login(payload: LoginRequest):
    username_ok = secrets.compare_digest(payload.username, settings.admin_username)
    password_ok = secrets.compare_digest(payload.password, settings.admin_password)
    if not (username_ok and password_ok):
        logger.warning("Failed admin login for %r", payload.username)
        raise HTTPException(status_code=401, detail="Invalid username or password")
    return JSONResponse(status_code=200, content={"status_code": 200, "message": "Login successful"})


@app.get("/api/health", response_model=HealthOut)
def health(storage: Storage = Depends(get_storage)):
    try:
        return HealthOut(
            status="ok",
            database=True,
            books=len(storage.get_books()),
            members=len(storage.get_members()),
        )
    except SQLAlchemyError:
        logger.exception("Health check could not reach the database")
        return HealthOut(status="degraded", database=False, books=0, members=0)


# Error Handling

@app.exception_handler(StarletteHTTPException)
def http_exception_handler(request, exc):
    return get_default_error_response(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request, exc):
    return get_default_error_response(400, "Invalid request data", details=jsonable_encoder(exc.errors()))


@app.exception_handler(DuplicateError)
def duplicate_exception_handler(request, exc):
    details = [{"loc": ["body", to_camel(exc.field)], "msg": exc.message, "type": "duplicate"}]
    return get_default_error_response(400, exc.message, details=details)


@app.exception_handler(NotFoundError)
def not_found_exception_handler(request, exc):
    return get_default_error_response(404, str(exc))


@app.exception_handler(CirculationError)
def circulation_exception_handler(request, exc):
    return get_default_error_response(400, str(exc))


@app.exception_handler(Exception)
def exception_handler(request, exc):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return get_default_error_response()


def get_default_error_response(status_code=500, message="Internal Server Error", details=None):
    content = {"status_code": status_code, "message": message}
    if details is not None:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=settings.api_host, port=settings.api_port)
