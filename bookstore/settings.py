"""Fixed connection and namespace settings for the demo run."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    """Where the demo connects and what it works on.

    :param uri: MongoDB connection string.
    :param database: Database holding the books collection.
    :param collection: Name of the books collection.
    :param page_size: Page size of the pagination query.
    """

    uri: str = "mongodb://localhost:27017"
    database: str = "plp_bookstore"
    collection: str = "books"
    page_size: int = 5


DEFAULT_SETTINGS = Settings()
