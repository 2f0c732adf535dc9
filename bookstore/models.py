"""Book record model and the sample dataset used to seed an empty collection."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List

from pydantic import BaseModel, ConfigDict

from .model_adapters import pydantic_model_dump, pydantic_model_validate


class Book(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str
    author: str
    genre: str
    published_year: int
    price: float
    in_stock: bool
    pages: int
    publisher: str


SEED_BOOKS: List[Book] = [
    Book(
        title="To Kill a Mockingbird",
        author="Harper Lee",
        genre="Fiction",
        published_year=1960,
        price=12.99,
        in_stock=True,
        pages=336,
        publisher="J. B. Lippincott & Co.",
    ),
    Book(
        title="1984",
        author="George Orwell",
        genre="Dystopian",
        published_year=1949,
        price=10.99,
        in_stock=True,
        pages=328,
        publisher="Secker & Warburg",
    ),
]


def seed_documents() -> List[Dict[str, Any]]:
    """Fresh documents for :data:`SEED_BOOKS`; the driver adds ``_id`` in place."""
    return [pydantic_model_dump(book) for book in SEED_BOOKS]


def load_books(documents: Iterable[Dict[str, Any]]) -> List[Book]:
    # the store's _id is dropped by extra="ignore"
    return [pydantic_model_validate(Book, document) for document in documents]
