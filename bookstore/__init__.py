"""Bookstore demo: seeded CRUD, queries, aggregations and indexes on MongoDB."""

from .connection import connect_fake, connect_mongo
from .fake_mongo import FakeMongoClient, FakeMongoCollection, FakeMongoDB
from .models import SEED_BOOKS, Book, seed_documents
from .runner import main, run_demo
from .settings import DEFAULT_SETTINGS, Settings
from .storage_backends import LocalStorageBackend, StorageBackend

__all__ = [
    "Book",
    "DEFAULT_SETTINGS",
    "FakeMongoClient",
    "FakeMongoCollection",
    "FakeMongoDB",
    "LocalStorageBackend",
    "SEED_BOOKS",
    "Settings",
    "StorageBackend",
    "connect_fake",
    "connect_mongo",
    "main",
    "run_demo",
    "seed_documents",
]
