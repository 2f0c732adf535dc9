"""Operações básicas com FakeMongoClient usando dicionários e modelos Book."""

import asyncio
from pathlib import Path

from bookstore import FakeMongoClient, LocalStorageBackend
from bookstore.models import SEED_BOOKS, load_books

DATA_DIR = Path("data/examples/mongo_basic")


async def main() -> None:
    client = FakeMongoClient(LocalStorageBackend(str(DATA_DIR)))
    try:
        books = await client["demo"].get_collection("books")
        if await books.count_documents({}) == 0:
            await books.insert_many(list(SEED_BOOKS))
            await books.insert_one(
                {
                    "title": "Animal Farm",
                    "author": "George Orwell",
                    "genre": "Fiction",
                    "published_year": 1945,
                    "price": 8.5,
                    "in_stock": False,
                    "pages": 112,
                    "publisher": "Secker & Warburg",
                }
            )

        print("Documentos:", await books.find().to_list())

        orwell = await books.find({"author": "George Orwell"}).sort("published_year").to_list()
        print("Orwell:", [book.title for book in load_books(orwell)])

        cursor = await books.aggregate(
            [{"$group": {"_id": "$in_stock", "total": {"$sum": "$price"}}}]
        )
        print("Valor por disponibilidade:", await cursor.to_list())
    finally:
        await client.close()


if __name__ == "__main__":
    asyncio.run(main())
