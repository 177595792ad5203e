"""
Entity storage for the library.

``Storage`` defines the named operations the API and the circulation rules
call (``get_books``, ``create_member``, ``get_overdue_circulation`` ...) on
top of a handful of generic primitives that each backend implements:

    list_all, get, create, update, delete, filter_by, search, atomic

``MemStorage`` keeps everything in dictionaries and is used for local runs
(``STORAGE_BACKEND=memory``) and tests; ``DatabaseStorage`` in
``db_storage.py`` goes through a SQLAlchemy session.
"""

from __future__ import annotations

import itertools
from collections import Counter
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from models import Book, BookReview, BookSuggestion, Category, Circulation, Member, utcnow


class StorageError(Exception):
    pass


class NotFoundError(StorageError):
    pass


class DuplicateError(StorageError):
    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field
        self.message = message


BOOK_SEARCH_FIELDS = ("title", "author", "category")
MEMBER_SEARCH_FIELDS = ("full_name", "class_name", "registration_no")


class Storage:
    # ---- primitives, implemented per backend

    def list_all(self, model) -> List[Any]:
        raise NotImplementedError

    def get(self, model, entity_id: int) -> Optional[Any]:
        raise NotImplementedError

    def create(self, model, **fields) -> Any:
        raise NotImplementedError

    def update(self, model, entity_id: int, **changes) -> Optional[Any]:
        raise NotImplementedError

    def delete(self, model, entity_id: int) -> bool:
        raise NotImplementedError

    def filter_by(self, model, **criteria) -> List[Any]:
        raise NotImplementedError

    def search(self, model, query: str, fields: Sequence[str]) -> List[Any]:
        raise NotImplementedError

    def atomic(self):
        """Context manager: everything inside is applied together or not at all."""
        raise NotImplementedError

    # ---- books

    def get_books(self) -> List[Book]:
        return self.list_all(Book)

    def get_book(self, book_id: int) -> Optional[Book]:
        return self.get(Book, book_id)

    def create_book(self, data: Dict[str, Any]) -> Book:
        fields = {**data, "status": "available", "created_at": utcnow()}
        return self.create(Book, **fields)

    def update_book(self, book_id: int, updates: Dict[str, Any]) -> Optional[Book]:
        return self.update(Book, book_id, **updates)

    def delete_book(self, book_id: int) -> bool:
        return self.delete(Book, book_id)

    def search_books(self, query: str) -> List[Book]:
        return self.search(Book, query, BOOK_SEARCH_FIELDS)

    # ---- members

    def get_members(self) -> List[Member]:
        return self.list_all(Member)

    def get_member(self, member_id: int) -> Optional[Member]:
        return self.get(Member, member_id)

    def create_member(self, data: Dict[str, Any]) -> Member:
        self._check_unique(Member, "registration_no", data.get("registration_no"))
        return self.create(Member, **{**data, "created_at": utcnow()})

    def update_member(self, member_id: int, updates: Dict[str, Any]) -> Optional[Member]:
        if "registration_no" in updates:
            self._check_unique(Member, "registration_no", updates["registration_no"], exclude_id=member_id)
        return self.update(Member, member_id, **updates)

    def delete_member(self, member_id: int) -> bool:
        return self.delete(Member, member_id)

    def search_members(self, query: str) -> List[Member]:
        return self.search(Member, query, MEMBER_SEARCH_FIELDS)

    # ---- categories

    def get_categories(self) -> List[Category]:
        return self.list_all(Category)

    def get_category(self, category_id: int) -> Optional[Category]:
        return self.get(Category, category_id)

    def create_category(self, data: Dict[str, Any]) -> Category:
        self._check_unique(Category, "name", data.get("name"))
        return self.create(Category, **{**data, "created_at": utcnow()})

    def update_category(self, category_id: int, updates: Dict[str, Any]) -> Optional[Category]:
        if "name" in updates:
            self._check_unique(Category, "name", updates["name"], exclude_id=category_id)
        return self.update(Category, category_id, **updates)

    def delete_category(self, category_id: int) -> bool:
        return self.delete(Category, category_id)

    # ---- suggestions

    def get_book_suggestions(self) -> List[BookSuggestion]:
        return self.list_all(BookSuggestion)

    def get_book_suggestion(self, suggestion_id: int) -> Optional[BookSuggestion]:
        return self.get(BookSuggestion, suggestion_id)

    def create_book_suggestion(self, data: Dict[str, Any]) -> BookSuggestion:
        fields = {**data, "status": "pending", "created_at": utcnow()}
        return self.create(BookSuggestion, **fields)

    def update_book_suggestion(self, suggestion_id: int, updates: Dict[str, Any]) -> Optional[BookSuggestion]:
        return self.update(BookSuggestion, suggestion_id, **updates)

    # ---- reviews

    def get_book_reviews(self) -> List[BookReview]:
        return self.list_all(BookReview)

    def get_book_review(self, review_id: int) -> Optional[BookReview]:
        return self.get(BookReview, review_id)

    def create_book_review(self, data: Dict[str, Any]) -> BookReview:
        return self.create(BookReview, **{**data, "created_at": utcnow()})

    def update_book_review(self, review_id: int, updates: Dict[str, Any]) -> Optional[BookReview]:
        return self.update(BookReview, review_id, **updates)

    def get_book_reviews_by_book(self, book_id: int) -> List[BookReview]:
        return self.filter_by(BookReview, book_id=book_id)

    # ---- circulation

    def get_circulation(self) -> List[Circulation]:
        return self.list_all(Circulation)

    def get_circulation_record(self, record_id: int) -> Optional[Circulation]:
        return self.get(Circulation, record_id)

    def create_circulation_record(self, data: Dict[str, Any], now: Optional[datetime] = None) -> Circulation:
        status = "returned" if data.get("action") == "return" else "active"
        fields = {**data, "date": now or utcnow(), "status": status}
        return self.create(Circulation, **fields)

    def update_circulation_record(self, record_id: int, updates: Dict[str, Any]) -> Optional[Circulation]:
        return self.update(Circulation, record_id, **updates)

    def get_active_circulation(self) -> List[Circulation]:
        return self.filter_by(Circulation, status="active")

    def get_active_circulation_for_book(self, book_id: int) -> List[Circulation]:
        return self.filter_by(Circulation, book_id=book_id, status="active")

    def get_active_circulation_for_member(self, member_id: int) -> List[Circulation]:
        return self.filter_by(Circulation, member_id=member_id, status="active")

    def get_overdue_circulation(self, now: Optional[datetime] = None) -> List[Circulation]:
        now = now or utcnow()
        return [r for r in self.get_active_circulation() if r.is_overdue(now)]

    # ---- analytics

    def get_most_read_books(self) -> List[Dict[str, Any]]:
        counts = Counter(r.book_id for r in self.filter_by(Circulation, action="borrow"))
        return self._ranked(Book, "book", counts)

    def get_most_active_readers(self) -> List[Dict[str, Any]]:
        counts = Counter(r.member_id for r in self.filter_by(Circulation, action="borrow"))
        return self._ranked(Member, "member", counts)

    def get_issued_books(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or utcnow()
        results = []
        for record in self.get_active_circulation():
            book = self.get_book(record.book_id)
            member = self.get_member(record.member_id)
            if book and member:
                results.append({
                    "circulation_id": record.id,
                    "book": book,
                    "member": member,
                    "due_date": record.due_date,
                    "overdue": record.is_overdue(now),
                })
        results.sort(key=lambda item: (item["due_date"] is None, item["due_date"] or now, item["circulation_id"]))
        return results

    def _ranked(self, model, key: str, counts: Counter) -> List[Dict[str, Any]]:
        results = []
        for entity_id, count in counts.items():
            entity = self.get(model, entity_id)
            if entity is not None:
                results.append({key: entity, "borrow_count": count})
        results.sort(key=lambda item: (-item["borrow_count"], item[key].id))
        return results

    def _check_unique(self, model, field: str, value: Any, exclude_id: Optional[int] = None) -> None:
        if value is None:
            return
        clashes = [e for e in self.filter_by(model, **{field: value}) if e.id != exclude_id]
        if clashes:
            raise DuplicateError(field, f"{model.__name__} with {field} {value!r} already exists")


# Rows removed along with their parent, mirroring the ORM cascades in models.py
_DEPENDENTS = {
    Book: ((Circulation, "book_id"), (BookReview, "book_id")),
    Member: ((Circulation, "member_id"), (BookReview, "member_id"), (BookSuggestion, "member_id")),
}

_MODELS = (Book, Member, Category, BookSuggestion, BookReview, Circulation)


class MemStorage(Storage):
    """Dictionary-backed storage. Not shared between processes."""

    def __init__(self) -> None:
        self._tables: Dict[type, Dict[int, Any]] = {model: {} for model in _MODELS}
        self._ids = {model: itertools.count(1) for model in _MODELS}
        self._undo: Optional[List[Callable[[], None]]] = None

    @contextmanager
    def atomic(self) -> Iterator[None]:
        if self._undo is not None:
            # already inside an outer scope
            yield
            return
        self._undo = []
        try:
            yield
        except Exception:
            for step in reversed(self._undo):
                step()
            raise
        finally:
            self._undo = None

    def _remember(self, step: Callable[[], None]) -> None:
        if self._undo is not None:
            self._undo.append(step)

    def list_all(self, model) -> List[Any]:
        return list(self._tables[model].values())

    def get(self, model, entity_id: int) -> Optional[Any]:
        return self._tables[model].get(entity_id)

    def create(self, model, **fields) -> Any:
        table = self._tables[model]
        entity = model(id=next(self._ids[model]), **fields)
        table[entity.id] = entity
        self._remember(lambda: table.pop(entity.id, None))
        return entity

    def update(self, model, entity_id: int, **changes) -> Optional[Any]:
        entity = self.get(model, entity_id)
        if entity is None:
            return None
        previous = {name: getattr(entity, name) for name in changes}
        for name, value in changes.items():
            setattr(entity, name, value)

        def restore() -> None:
            for name, value in previous.items():
                setattr(entity, name, value)

        self._remember(restore)
        return entity

    def delete(self, model, entity_id: int) -> bool:
        table = self._tables[model]
        entity = table.pop(entity_id, None)
        if entity is None:
            return False
        removed = [(table, entity)]
        for child_model, column in _DEPENDENTS.get(model, ()):
            child_table = self._tables[child_model]
            for child in [c for c in child_table.values() if getattr(c, column) == entity_id]:
                del child_table[child.id]
                removed.append((child_table, child))

        def reinsert() -> None:
            for owner, row in removed:
                owner[row.id] = row

        self._remember(reinsert)
        return True

    def filter_by(self, model, **criteria) -> List[Any]:
        return [
            e for e in self._tables[model].values()
            if all(getattr(e, name) == value for name, value in criteria.items())
        ]

    def search(self, model, query: str, fields: Sequence[str]) -> List[Any]:
        needle = query.lower()
        return [
            e for e in self._tables[model].values()
            if any(needle in (getattr(e, name) or "").lower() for name in fields)
        ]
