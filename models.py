from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

BOOK_STATUSES = ("available", "issued", "reserved")
SUGGESTION_STATUSES = ("pending", "approved", "rejected")
CIRCULATION_ACTIONS = ("borrow", "return")
CIRCULATION_STATUSES = ("active", "returned", "overdue")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what DateTime columns hand back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Book(Base):
    __tablename__ = "books"
    id = Column(Integer, primary_key=True)
    title = Column(String, nullable=False)
    author = Column(String, nullable=False)
    category = Column(String, nullable=False)
    language = Column(String, nullable=False)
    price = Column(Integer, nullable=False)  # cents
    publisher = Column(String, nullable=False)
    ddc = Column(String, nullable=False)
    cover_image = Column(String)
    status = Column(String, nullable=False, default="available")
    created_at = Column(DateTime, default=utcnow)

    circulation = relationship("Circulation", back_populates="book", cascade="all, delete-orphan")
    reviews = relationship("BookReview", back_populates="book", cascade="all, delete-orphan")


class Member(Base):
    __tablename__ = "members"
    id = Column(Integer, primary_key=True)
    full_name = Column(String, nullable=False)
    class_name = Column("class", String, nullable=False)
    registration_no = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime, default=utcnow)

    circulation = relationship("Circulation", back_populates="member", cascade="all, delete-orphan")
    reviews = relationship("BookReview", back_populates="member", cascade="all, delete-orphan")
    suggestions = relationship("BookSuggestion", back_populates="member", cascade="all, delete-orphan")


class Category(Base):
    __tablename__ = "categories"
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime, default=utcnow)


class BookSuggestion(Base):
    __tablename__ = "book_suggestions"
    id = Column(Integer, primary_key=True)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False)
    book_title = Column(String, nullable=False)
    author = Column(String, nullable=False)
    reason = Column(Text)
    status = Column(String, nullable=False, default="pending")
    created_at = Column(DateTime, default=utcnow)

    member = relationship("Member", back_populates="suggestions")


class BookReview(Base):
    __tablename__ = "book_reviews"
    __table_args__ = (CheckConstraint("rating >= 1 AND rating <= 5", name="ck_book_reviews_rating"),)
    id = Column(Integer, primary_key=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False)
    rating = Column(Integer, nullable=False)
    review = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    book = relationship("Book", back_populates="reviews")
    member = relationship("Member", back_populates="reviews")


class Circulation(Base):
    __tablename__ = "circulation"
    id = Column(Integer, primary_key=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    action = Column(String, nullable=False)
    date = Column(DateTime, default=utcnow)
    due_date = Column(DateTime)
    return_date = Column(DateTime)
    status = Column(String, nullable=False, default="active", index=True)

    book = relationship("Book", back_populates="circulation")
    member = relationship("Member", back_populates="circulation")

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        # Live comparison only; a stored "overdue" status is never consulted.
        now = now or utcnow()
        return self.status == "active" and self.due_date is not None and self.due_date < now

    @property
    def overdue(self) -> bool:
        return self.is_overdue()
