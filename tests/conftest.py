"""Shared test fixtures for docstore tests."""

from __future__ import annotations

import pytest

from docstore import Engine
from docstore.storage import Repository

# --- Entity definitions ---

BOOK_SCHEME = {
    "attr": [
        {"name": "name", "type": "str", "len": 100, "ind": True},
        {"name": "yr", "type": "int", "ind": True},
    ]
}

SOURCE_SCHEME = {
    "attr": [
        {"name": "name", "type": "str", "len": 100, "ind": True},
    ]
}

ARTICLE_SCHEME = {
    "attr": [
        {"name": "name", "type": "str", "len": 100, "ind": True},
        {"name": "comm", "type": "str"},
    ],
    "rel": [
        {"name": "source", "target": "source", "type": "1"},
    ],
}

PERSON_SCHEME = {
    "attr": [
        {"name": "first_name", "type": "str", "ind": True},
        {"name": "last_name", "type": "str", "ind": True},
    ],
    "header": ["last_name", "first_name"],
}

AUTHORED_BOOK_SCHEME = {
    "attr": [
        {"name": "heading", "type": "str", "ind": True},
        {"name": "yr", "type": "int", "ind": True},
    ],
    "header": ["heading", "yr"],
    "rel": [
        {"name": "author", "target": "person", "type": "0n"},
    ],
}


# --- Fixtures ---


@pytest.fixture
def tmp_db(tmp_path):
    """Create a temporary SQLite database path."""
    return str(tmp_path / "test.db")


@pytest.fixture
def repo(tmp_db):
    """Create a Repository instance with a temporary database."""
    r = Repository(tmp_db)
    yield r
    r.close()


@pytest.fixture
def engine(tmp_db):
    """Create an Engine on a fresh temporary database."""
    e = Engine.open(tmp_db)
    yield e
    e.close()


@pytest.fixture
def books(engine):
    """Book entity with six rows, the last one soft-deleted."""
    book = engine.entity_create("book", BOOK_SCHEME)
    for name, yr in [
        ("Alpha", 1912),
        ("Beta", 2005),
        ("Charlie", 1980),
        ("Delta", 1983),
        ("Echo", 1989),
        ("Foxtrot", 2000),
    ]:
        book.insert({"name": name, "yr": yr})
    book.delete(6)
    return book


@pytest.fixture
def articles(engine):
    """Source and article entities; article has a mandatory relation to source."""
    source = engine.entity_create("source", SOURCE_SCHEME)
    article = engine.entity_create("article", ARTICLE_SCHEME)
    source.insert({"name": "Source"})
    source.insert({"name": "Source 2"})
    article.insert({"name": "Sourced article", "comm": "Blah", "source": 1})
    article.insert({"name": "Another article from Source", "source": 1})
    article.insert({"name": "Article from Source 2", "source": 2})
    return article


@pytest.fixture
def authored(engine):
    """Person and book entities joined by a multi relation."""
    person = engine.entity_create("person", PERSON_SCHEME)
    book = engine.entity_create("book", AUTHORED_BOOK_SCHEME)
    person.insert({"first_name": "John", "last_name": "Smith"})
    person.insert({"first_name": "Bill", "last_name": "Allen"})
    person.insert({"first_name": "William", "last_name": "Harris"})
    return book
