from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import Book, Circulation, Member, utcnow
from storage import DuplicateError, Storage


class DatabaseStorage(Storage):
    """Storage on top of a SQLAlchemy session.

    Outside ``atomic()`` every write commits on its own. Inside it writes are
    only flushed, and the whole block commits (or rolls back) once.
    """

    def __init__(self, db: Session) -> None:
        self.db = db
        self._in_transaction = False

    @contextmanager
    def atomic(self) -> Iterator[None]:
        if self._in_transaction:
            yield
            return
        self._in_transaction = True
        try:
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        finally:
            self._in_transaction = False

    def _save(self, model=None) -> None:
        try:
            if self._in_transaction:
                self.db.flush()
            else:
                self.db.commit()
        except IntegrityError as exc:
            if not self._in_transaction:
                self.db.rollback()
            duplicate = _duplicate_from(model, exc)
            if duplicate is None:
                raise
            raise duplicate from exc
        except Exception:
            if not self._in_transaction:
                self.db.rollback()
            raise

    # ---- primitives

    def list_all(self, model) -> List[Any]:
        return self.db.query(model).order_by(model.id).all()

    def get(self, model, entity_id: int) -> Optional[Any]:
        return self.db.get(model, entity_id)

    def create(self, model, **fields) -> Any:
        entity = model(**fields)
        self.db.add(entity)
        self._save(model)
        return entity

    def update(self, model, entity_id: int, **changes) -> Optional[Any]:
        entity = self.get(model, entity_id)
        if entity is None:
            return None
        for name, value in changes.items():
            setattr(entity, name, value)
        self._save(model)
        return entity

    def delete(self, model, entity_id: int) -> bool:
        entity = self.get(model, entity_id)
        if entity is None:
            return False
        self.db.delete(entity)
        self._save()
        return True

    def filter_by(self, model, **criteria) -> List[Any]:
        return self.db.query(model).filter_by(**criteria).order_by(model.id).all()

    def search(self, model, query: str, fields: Sequence[str]) -> List[Any]:
        needle = query.lower()
        clauses = [func.lower(getattr(model, name)).contains(needle, autoescape=True) for name in fields]
        return self.db.query(model).filter(or_(*clauses)).order_by(model.id).all()

    # ---- circulation and analytics as SQL

    def get_overdue_circulation(self, now: Optional[datetime] = None) -> List[Circulation]:
        now = now or utcnow()
        return (
            self.db.query(Circulation)
            .filter(
                Circulation.status == "active",
                Circulation.due_date.isnot(None),
                Circulation.due_date < now,
            )
            .order_by(Circulation.id)
            .all()
        )

    def get_most_read_books(self) -> List[Dict[str, Any]]:
        borrow_count = func.count(Circulation.id).label("borrow_count")
        rows = (
            self.db.query(Book, borrow_count)
            .join(Circulation, Circulation.book_id == Book.id)
            .filter(Circulation.action == "borrow")
            .group_by(Book.id)
            .order_by(borrow_count.desc(), Book.id)
            .all()
        )
        return [{"book": book, "borrow_count": count} for book, count in rows]

    def get_most_active_readers(self) -> List[Dict[str, Any]]:
        borrow_count = func.count(Circulation.id).label("borrow_count")
        rows = (
            self.db.query(Member, borrow_count)
            .join(Circulation, Circulation.member_id == Member.id)
            .filter(Circulation.action == "borrow")
            .group_by(Member.id)
            .order_by(borrow_count.desc(), Member.id)
            .all()
        )
        return [{"member": member, "borrow_count": count} for member, count in rows]

    def get_issued_books(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or utcnow()
        rows = (
            self.db.query(Circulation, Book, Member)
            .join(Book, Circulation.book_id == Book.id)
            .join(Member, Circulation.member_id == Member.id)
            .filter(Circulation.status == "active")
            .order_by(Circulation.due_date.is_(None), Circulation.due_date, Circulation.id)
            .all()
        )
        return [
            {
                "circulation_id": record.id,
                "book": book,
                "member": member,
                "due_date": record.due_date,
                "overdue": record.is_overdue(now),
            }
            for record, book, member in rows
        ]


def _duplicate_from(model, exc: IntegrityError):
    """Map a unique-constraint violation on ``model`` to a DuplicateError, or None."""
    if model is None:
        return None
    text = str(exc.orig)
    if "unique" not in text.lower() and "duplicate" not in text.lower():
        return None
    for column in model.__table__.columns:
        if column.unique and column.name in text:
            return DuplicateError(column.key, f"{model.__name__} with this {column.key} already exists")
    return None
