from datetime import datetime, timedelta

import pytest

from circulation import CirculationError, due_date_for, issue_book, return_book
from models import Circulation
from storage import NotFoundError

NOW = datetime(2024, 3, 1, 10, 0, 0)


def test_due_date_is_fourteen_days_out():
    assert due_date_for(NOW) == datetime(2024, 3, 15, 10, 0, 0)


def test_issue_marks_book_issued(storage, make_book, make_member):
    book = make_book()
    member = make_member()

    record = issue_book(storage, book.id, member.id, now=NOW)

    assert storage.get_book(book.id).status == "issued"
    assert record.action == "borrow"
    assert record.status == "active"
    assert record.date == NOW
    assert record.due_date == NOW + timedelta(days=14)
    assert record.member_id == member.id


def test_issue_respects_custom_loan_period_and_due_date(storage, make_book, make_member):
    member = make_member()
    short = issue_book(storage, make_book().id, member.id, now=NOW, loan_days=7)
    fixed = issue_book(storage, make_book().id, member.id, now=NOW, due_date=datetime(2024, 4, 1))
    assert short.due_date == NOW + timedelta(days=7)
    assert fixed.due_date == datetime(2024, 4, 1)


def test_issue_unknown_book_or_member(storage, make_book, make_member):
    book = make_book()
    member = make_member()
    with pytest.raises(NotFoundError, match="Book not found"):
        issue_book(storage, 999, member.id)
    with pytest.raises(NotFoundError, match="Member not found"):
        issue_book(storage, book.id, 999)
    assert storage.get_circulation() == []


def test_issue_twice_is_rejected(storage, make_book, make_member):
    book = make_book()
    issue_book(storage, book.id, make_member().id, now=NOW)
    with pytest.raises(CirculationError, match="already issued"):
        issue_book(storage, book.id, make_member().id, now=NOW)
    assert len(storage.get_active_circulation()) == 1


def test_failed_issue_leaves_nothing_behind(storage, make_book, make_member, monkeypatch):
    book = make_book()
    member = make_member()

    def broken_update(book_id, updates):
        raise RuntimeError("database went away")

    monkeypatch.setattr(storage, "update_book", broken_update)
    with pytest.raises(RuntimeError):
        issue_book(storage, book.id, member.id, now=NOW)
    monkeypatch.undo()

    assert storage.get_circulation() == []
    assert storage.get_book(book.id).status == "available"


def test_return_closes_loan_and_frees_book(storage, make_book, make_member):
    book = make_book()
    member = make_member()
    loan = issue_book(storage, book.id, member.id, now=NOW)
    later = NOW + timedelta(days=3)

    returned = return_book(storage, book.id, now=later)

    assert storage.get_book(book.id).status == "available"
    closed = storage.get_circulation_record(loan.id)
    assert closed.status == "returned"
    assert closed.return_date == later
    assert returned.action == "return"
    assert returned.status == "returned"
    assert returned.member_id == member.id
    assert storage.get_active_circulation() == []
    assert len(storage.get_circulation()) == 2


def test_return_of_book_not_on_loan(storage, make_book):
    book = make_book()
    with pytest.raises(CirculationError, match="not currently issued"):
        return_book(storage, book.id)
    with pytest.raises(NotFoundError):
        return_book(storage, 999)


def test_return_by_wrong_member(storage, make_book, make_member):
    book = make_book()
    borrower = make_member()
    other = make_member()
    issue_book(storage, book.id, borrower.id, now=NOW)

    with pytest.raises(CirculationError, match="not borrowed by this member"):
        return_book(storage, book.id, member_id=other.id)
    assert storage.get_book(book.id).status == "issued"

    return_book(storage, book.id, member_id=borrower.id)
    assert storage.get_book(book.id).status == "available"


def test_book_can_be_reissued_after_return(storage, make_book, make_member):
    book = make_book()
    member = make_member()
    issue_book(storage, book.id, member.id, now=NOW)
    return_book(storage, book.id, now=NOW + timedelta(days=1))
    issue_book(storage, book.id, member.id, now=NOW + timedelta(days=2))
    assert storage.get_book(book.id).status == "issued"


def test_overdue_is_computed_from_due_date(storage, make_book, make_member):
    member = make_member()
    now = datetime(2024, 6, 10, 12, 0, 0)
    late = issue_book(storage, make_book().id, member.id, now=now, due_date=now - timedelta(days=1))
    on_time = issue_book(storage, make_book().id, member.id, now=now, due_date=now + timedelta(days=1))

    overdue = storage.get_overdue_circulation(now=now)

    assert [r.id for r in overdue] == [late.id]
    assert on_time.id not in [r.id for r in overdue]
    assert storage.get_circulation_record(late.id).status == "active"


def test_returned_records_are_never_overdue(storage, make_book, make_member):
    book = make_book()
    issue_book(storage, book.id, make_member().id, now=NOW, due_date=NOW - timedelta(days=5))
    return_book(storage, book.id, now=NOW)
    assert storage.get_overdue_circulation(now=NOW) == []


def test_is_overdue_on_record():
    record = Circulation(status="active", due_date=NOW - timedelta(seconds=1))
    assert record.is_overdue(NOW)
    assert not Circulation(status="active", due_date=None).is_overdue(NOW)
    assert not Circulation(status="returned", due_date=NOW - timedelta(days=1)).is_overdue(NOW)
