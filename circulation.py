import logging
from datetime import datetime, timedelta
from typing import Optional

from models import Circulation, utcnow
from storage import NotFoundError, Storage

logger = logging.getLogger(__name__)

DEFAULT_LOAN_DAYS = 14


class CirculationError(Exception):
    pass


def due_date_for(borrowed_at: datetime, loan_days: int = DEFAULT_LOAN_DAYS) -> datetime:
    return borrowed_at + timedelta(days=loan_days)


def issue_book(
    storage: Storage,
    book_id: int,
    member_id: int,
    now: Optional[datetime] = None,
    loan_days: int = DEFAULT_LOAN_DAYS,
    due_date: Optional[datetime] = None,
) -> Circulation:
    """Lend a book to a member and mark it issued.

    The borrow record and the book status change are written in one
    transaction. Raises NotFoundError for an unknown book or member and
    CirculationError if the book is already out.
    """
    now = now or utcnow()
    with storage.atomic():
        book = storage.get_book(book_id)
        if book is None:
            raise NotFoundError("Book not found")
        if storage.get_member(member_id) is None:
            raise NotFoundError("Member not found")
        if book.status == "issued" or storage.get_active_circulation_for_book(book_id):
            raise CirculationError("Book is already issued")

        record = storage.create_circulation_record(
            {
                "book_id": book_id,
                "member_id": member_id,
                "action": "borrow",
                "due_date": due_date or due_date_for(now, loan_days),
            },
            now=now,
        )
        storage.update_book(book_id, {"status": "issued"})

    logger.info("Issued book %s to member %s, due %s", book_id, member_id, record.due_date)
    return record


def return_book(
    storage: Storage,
    book_id: int,
    member_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Circulation:
    """Close the active loan on a book and put it back on the shelf.

    Returns the action=return record. If member_id is given it has to be the
    borrower.
    """
    now = now or utcnow()
    with storage.atomic():
        if storage.get_book(book_id) is None:
            raise NotFoundError("Book not found")
        loans = storage.get_active_circulation_for_book(book_id)
        if not loans:
            raise CirculationError("Book is not currently issued")
        if member_id is not None and all(loan.member_id != member_id for loan in loans):
            raise CirculationError("Book is not borrowed by this member")

        returned = []
        for loan in loans:
            storage.update_circulation_record(loan.id, {"status": "returned", "return_date": now})
            returned.append(
                storage.create_circulation_record(
                    {
                        "book_id": book_id,
                        "member_id": loan.member_id,
                        "action": "return",
                        "return_date": now,
                    },
                    now=now,
                )
            )
        storage.update_book(book_id, {"status": "available"})

    logger.info("Returned book %s (%d loan(s) closed)", book_id, len(returned))
    return returned[0]
