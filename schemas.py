"""
Request and response schemas for the library API.

Python attributes are snake_case; the wire format is camelCase, e.g.
Member.full_name <-> "fullName". Response models read straight from ORM
objects (from_attributes).
"""

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

BookStatus = Literal["available", "issued", "reserved"]
SuggestionStatus = Literal["pending", "approved", "rejected"]
CirculationAction = Literal["borrow", "return"]
CirculationStatus = Literal["active", "returned", "overdue"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


def _as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # stored timestamps are naive UTC, see models.utcnow
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# Books

class BookCreate(CamelModel):
    title: str = Field(..., min_length=1, description="Book title")
    author: str = Field(..., min_length=1, description="Author name")
    category: str = Field(..., min_length=1, description="Category name")
    language: str = Field(..., min_length=1)
    price: int = Field(..., ge=0, description="Price in cents")
    publisher: str = Field(..., min_length=1)
    ddc: str = Field(..., min_length=1, description="Dewey Decimal Classification code")
    cover_image: Optional[str] = Field(None, description="Cover image URL")


class BookUpdate(CamelModel):
    title: Optional[str] = Field(None, min_length=1)
    author: Optional[str] = Field(None, min_length=1)
    category: Optional[str] = Field(None, min_length=1)
    language: Optional[str] = Field(None, min_length=1)
    price: Optional[int] = Field(None, ge=0)
    publisher: Optional[str] = Field(None, min_length=1)
    ddc: Optional[str] = Field(None, min_length=1)
    cover_image: Optional[str] = None


class BookOut(BookCreate):
    id: int
    status: BookStatus
    created_at: Optional[datetime] = None


# Members

class MemberCreate(CamelModel):
    full_name: str = Field(..., min_length=1, description="Full name")
    class_name: str = Field(..., min_length=1, alias="class", description="Class or grade")
    registration_no: str = Field(..., min_length=1, description="Unique registration number")


class MemberUpdate(CamelModel):
    full_name: Optional[str] = Field(None, min_length=1)
    class_name: Optional[str] = Field(None, min_length=1, alias="class")
    registration_no: Optional[str] = Field(None, min_length=1)


class MemberOut(MemberCreate):
    id: int
    created_at: Optional[datetime] = None


# Categories

class CategoryCreate(CamelModel):
    name: str = Field(..., min_length=1, description="Unique category name")


class CategoryUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1)


class CategoryOut(CategoryCreate):
    id: int
    created_at: Optional[datetime] = None


# Suggestions

class BookSuggestionCreate(CamelModel):
    member_id: int = Field(..., description="Suggesting member")
    book_title: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    reason: Optional[str] = None


class BookSuggestionUpdate(CamelModel):
    book_title: Optional[str] = Field(None, min_length=1)
    author: Optional[str] = Field(None, min_length=1)
    reason: Optional[str] = None
    status: Optional[SuggestionStatus] = None


class BookSuggestionOut(BookSuggestionCreate):
    id: int
    status: SuggestionStatus
    created_at: Optional[datetime] = None


# Reviews

class BookReviewCreate(CamelModel):
    book_id: int
    member_id: int
    rating: int = Field(..., ge=1, le=5, description="Star rating from 1 to 5")
    review: str = Field(..., min_length=1)


class BookReviewUpdate(CamelModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    review: Optional[str] = Field(None, min_length=1)


class BookReviewOut(BookReviewCreate):
    id: int
    created_at: Optional[datetime] = None


# Circulation

class CirculationCreate(CamelModel):
    book_id: int
    member_id: Optional[int] = Field(None, description="Borrower; required for borrow")
    action: CirculationAction
    due_date: Optional[datetime] = Field(None, description="Overrides the default loan period")

    @field_validator("due_date")
    @classmethod
    def due_date_to_utc(cls, value):
        return _as_naive_utc(value)


class CirculationUpdate(CamelModel):
    due_date: Optional[datetime] = None
    return_date: Optional[datetime] = None

    @field_validator("due_date", "return_date")
    @classmethod
    def dates_to_utc(cls, value):
        return _as_naive_utc(value)


class CirculationOut(CamelModel):
    id: int
    book_id: int
    member_id: int
    action: CirculationAction
    date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    return_date: Optional[datetime] = None
    status: CirculationStatus
    overdue: bool = False


# Analytics

class BookBorrowCount(CamelModel):
    book: BookOut
    borrow_count: int


class MemberBorrowCount(CamelModel):
    member: MemberOut
    borrow_count: int


class IssuedBook(CamelModel):
    circulation_id: int
    book: BookOut
    member: MemberOut
    due_date: Optional[datetime] = None
    overdue: bool = False


# Misc

class LoginRequest(BaseModel):
    username: str
    password: str


class HealthOut(CamelModel):
    status: str
    database: bool
    books: int
    members: int
