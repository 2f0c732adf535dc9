"""
bookstore.runner
================

The demo run: seed the books collection when it is empty, then walk through
CRUD operations, advanced queries, aggregation pipelines and indexing,
printing every result. Each phase receives the collection handle explicitly
and returns the values it printed, keyed by their label.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Mapping

from pymongo import ASCENDING, DESCENDING

from .connection import connect_mongo
from .models import seed_documents
from .settings import DEFAULT_SETTINGS, Settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(process)s %(levelname)s %(message)s"

AVERAGE_PRICE_BY_GENRE = [
    {"$group": {"_id": "$genre", "averagePrice": {"$avg": "$price"}}},
]

# ties on count go to the alphabetically first author
MOST_BOOKS_AUTHOR = [
    {"$group": {"_id": "$author", "count": {"$sum": 1}}},
    {"$sort": {"count": DESCENDING, "_id": ASCENDING}},
    {"$limit": 1},
]

BOOKS_BY_DECADE = [
    {
        "$group": {
            "_id": {
                "$subtract": [
                    "$published_year",
                    {"$mod": ["$published_year", 10]},
                ]
            },
            "count": {"$sum": 1},
        }
    },
]


class OutputSection:
    """Print a phase header, then each labeled result shown in the phase."""

    def __init__(self, title: str) -> None:
        self.title = title
        self.results: Dict[str, Any] = {}

    def __enter__(self) -> "OutputSection":
        print(f"=== {self.title} ===")
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc is not None:
            logger.debug("section '%s' interrupted by %r", self.title, exc)

    def show(self, label: str, value: Any) -> Any:
        print(f"{label}:", value)
        self.results[label] = value
        return value

    def note(self, message: str) -> None:
        print(message)


async def seed_if_empty(books) -> int:
    """Insert the sample books when the collection has no documents.

    Returns the number of documents inserted, zero when the collection was
    already populated.
    """
    count = await books.count_documents({})
    if count != 0:
        logger.info("collection already holds %d documents, not seeding", count)
        return 0
    result = await books.insert_many(seed_documents())
    return len(result.inserted_ids)


async def run_crud_operations(books) -> Dict[str, Any]:
    with OutputSection("CRUD Operations") as section:
        inserted = await seed_if_empty(books)
        section.results["Inserted"] = inserted
        if inserted:
            section.note(f"{inserted} books were successfully inserted into the database")

        section.show("Fiction Books", await books.find({"genre": "Fiction"}).to_list())
        section.show(
            "Books Published After 1950",
            await books.find({"published_year": {"$gt": 1950}}).to_list(),
        )
        section.show(
            "Books by George Orwell",
            await books.find({"author": "George Orwell"}).to_list(),
        )

        updated = await books.update_one({"title": "1984"}, {"$set": {"price": 9.99}})
        section.results["Updated"] = updated.modified_count
        section.note("Updated the price of '1984'.")

        deleted = await books.delete_one({"title": "Moby Dick"})
        section.results["Deleted"] = deleted.deleted_count
        section.note("Deleted 'Moby Dick' from the collection.")
    return section.results


async def run_advanced_queries(books, page_size: int = DEFAULT_SETTINGS.page_size) -> Dict[str, Any]:
    with OutputSection("Advanced Queries") as section:
        section.show(
            "In Stock Books Published After 2010",
            await books.find(
                {"in_stock": True, "published_year": {"$gt": 2010}}
            ).to_list(),
        )
        section.show(
            "Projected Books",
            await books.find({}, {"title": 1, "author": 1, "price": 1}).to_list(),
        )
        section.show(
            "Books Sorted by Price Ascending",
            await books.find().sort("price", ASCENDING).to_list(),
        )
        section.show(
            "Books Sorted by Price Descending",
            await books.find().sort("price", DESCENDING).to_list(),
        )

        page = 0
        section.show(
            "Paginated Books",
            await books.find().skip(page * page_size).limit(page_size).to_list(),
        )
    return section.results


async def run_aggregation_pipelines(books) -> Dict[str, Any]:
    with OutputSection("Aggregation Pipelines") as section:
        for label, pipeline in (
            ("Average Price by Genre", AVERAGE_PRICE_BY_GENRE),
            ("Author with Most Books", MOST_BOOKS_AUTHOR),
            ("Books by Publication Decade", BOOKS_BY_DECADE),
        ):
            cursor = await books.aggregate(pipeline)
            section.show(label, await cursor.to_list())
    return section.results


async def explain_find(books, filter: Mapping[str, Any], verbosity: str = "executionStats") -> Dict[str, Any]:
    """Explain ``find(filter)`` on ``books`` at the given verbosity."""
    return await books.database.command(
        {"explain": {"find": books.name, "filter": dict(filter)}, "verbosity": verbosity}
    )


async def run_indexing(books) -> Dict[str, Any]:
    with OutputSection("Indexing") as section:
        section.results["Title Index"] = await books.create_index([("title", ASCENDING)])
        section.note("Index on title created.")

        section.results["Compound Index"] = await books.create_index(
            [("author", ASCENDING), ("published_year", ASCENDING)]
        )
        section.note("Compound index on author and published_year created.")

        section.show("Explain Result", await explain_find(books, {"title": "1984"}))
    return section.results


async def run_demo(books, settings: Settings = DEFAULT_SETTINGS) -> Dict[str, Dict[str, Any]]:
    """Run every phase in order against ``books``."""
    return {
        "crud": await run_crud_operations(books),
        "advanced": await run_advanced_queries(books, settings.page_size),
        "aggregation": await run_aggregation_pipelines(books),
        "indexing": await run_indexing(books),
    }


async def main(
    settings: Settings = DEFAULT_SETTINGS,
    connect: Callable[[Settings], Any] = connect_mongo,
) -> int:
    """Run the demo inside ``connect(settings)`` and return an exit status.

    Any failure, including an unreachable server, is logged once here after
    the connection has been released.
    """
    try:
        async with connect(settings) as books:
            await run_demo(books, settings)
    except Exception:
        logger.exception("demo run failed")
        return 1
    return 0


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")


def cli() -> None:
    configure_logging()
    raise SystemExit(asyncio.run(main()))
