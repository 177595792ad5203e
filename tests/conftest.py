import os

# Keep the module-level engine off the developer's library.db
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db_storage import DatabaseStorage
from main import app, get_storage
from models import Base
from storage import MemStorage


@pytest.fixture
def database_storage():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    db = sessionmaker(bind=engine)()
    try:
        yield DatabaseStorage(db)
    finally:
        db.close()
        engine.dispose()


@pytest.fixture(params=["memory", "database"])
def storage(request):
    """Every storage test runs once against each backend."""
    if request.param == "memory":
        return MemStorage()
    return request.getfixturevalue("database_storage")


@pytest.fixture
def client(storage):
    app.dependency_overrides[get_storage] = lambda: storage
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


BOOK_DATA = {
    "title": "The Hobbit",
    "author": "J.R.R. Tolkien",
    "category": "Fiction",
    "language": "English",
    "price": 1500,
    "publisher": "Allen & Unwin",
    "ddc": "823.912",
}


@pytest.fixture
def make_book(storage):
    def _make(**overrides):
        return storage.create_book({**BOOK_DATA, **overrides})
    return _make


@pytest.fixture
def make_member(storage):
    counter = iter(range(1, 1000))

    def _make(**overrides):
        data = {"full_name": "Ali Hassan", "class_name": "10A", "registration_no": f"REG-{next(counter):03}"}
        data.update(overrides)
        return storage.create_member(data)
    return _make
