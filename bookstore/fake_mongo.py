"""
bookstore.fake_mongo
====================

This module provides an asynchronous, file-backed store that speaks the
subset of PyMongo's asyncio collection API used by :mod:`bookstore.runner`,
on top of a :class:`~bookstore.storage_backends.StorageBackend`. It lets the
demo and its tests run when no MongoDB server is available.

Collections are represented as directories inside the database, and each
document is stored as a standalone JSON file whose name starts with the
insertion timestamp, so listing a collection yields insertion order. A
metadata file keeps track of existing collections, their index definitions
and in-flight write operations to coordinate readers and writers.

Locking is implemented via the storage backend's locking mechanism. Writes
(insert, update, delete) acquire a lock on the collection and register an
operation id in the metadata for their duration. Queries wait until there
are no pending write operations as recorded in the metadata.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Tuple

from .aggregation import run_pipeline
from .model_adapters import document_to_dict
from .query import (
    equality_fields,
    match,
    normalize_sort,
    project,
    sort_documents,
)
from .storage_backends import StorageBackend

logger = logging.getLogger(__name__)

EXPLAIN_VERBOSITIES = ("queryPlanner", "executionStats", "allPlansExecution")

# seconds after which a recorded write operation is presumed dead
OPERATION_TTL = 30


def _operation_expired(operation: Any, now: datetime) -> bool:
    """Whether a recorded write operation can no longer be live.

    Entries without a readable timestamp and ttl are treated as expired.
    """
    if not isinstance(operation, Mapping):
        return True
    try:
        started = datetime.fromisoformat(operation["timestamp"])
        return (now - started).total_seconds() > float(operation["ttl"])
    except (KeyError, TypeError, ValueError):
        return True


@dataclass
class InsertOneResult:
    inserted_id: Any
    acknowledged: bool = True


@dataclass
class InsertManyResult:
    inserted_ids: List[Any] = field(default_factory=list)
    acknowledged: bool = True


@dataclass
class UpdateResult:
    matched_count: int
    modified_count: int
    acknowledged: bool = True


@dataclass
class DeleteResult:
    deleted_count: int
    acknowledged: bool = True


def index_name(keys: Sequence[Tuple[str, int]]) -> str:
    """Default index name, e.g. ``author_1_published_year_1``."""
    return "_".join(f"{name}_{direction}" for name, direction in keys)


class FakeMongoClient:
    """Entry point mirroring :class:`pymongo.AsyncMongoClient`.

    :param backend: Storage backend shared by every database of this client.
    """

    def __init__(self, backend: StorageBackend) -> None:
        self.backend = backend
        self._databases: Dict[str, FakeMongoDB] = {}
        self._closed = False

    def get_database(self, name: str) -> "FakeMongoDB":
        if name not in self._databases:
            self._databases[name] = FakeMongoDB(self.backend, name)
        return self._databases[name]

    def __getitem__(self, name: str) -> "FakeMongoDB":
        return self.get_database(name)

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        self._databases.clear()
        self._closed = True


class FakeMongoDB:
    """Asynchronous, file-backed MongoDB-like database.

    :param backend: Storage backend used to persist data.
    :param db_name: Name of the database; this becomes the directory name.
    :param operation_ttl: Seconds a recorded write operation stays live; one
        left behind by a crashed writer stops blocking readers after that.
    """

    def __init__(
        self, backend: StorageBackend, db_name: str, operation_ttl: int = OPERATION_TTL
    ) -> None:
        if not db_name or db_name.strip() == "":
            raise ValueError("db_name must be non-empty")
        self.backend = backend
        self.operation_ttl = operation_ttl
        self.db_name = db_name.rstrip("/")
        self._meta_path = f"{self.db_name}/__METADATA__.json"
        self._metadata: Dict[str, Any] | None = None
        self._meta_lock_key = f"{self.db_name}__meta"

    @property
    def name(self) -> str:
        return self.db_name

    async def _load_metadata(self, refresh: bool = False) -> Dict[str, Any]:
        if self._metadata is not None and not refresh:
            return self._metadata
        exists = await self.backend.exists(self._meta_path)
        if not exists:
            self._metadata = {"collections": {}, "operations": []}
            await self._save_metadata()
            return self._metadata
        data = await self.backend.read_bytes(self._meta_path)
        try:
            self._metadata = json.loads(data.decode("utf-8"))
        except ValueError:
            logger.warning("unreadable metadata in %s, starting over", self._meta_path)
            self._metadata = {"collections": {}, "operations": []}
        return self._metadata

    async def _save_metadata(self) -> None:
        if self._metadata is None:
            return
        data = json.dumps(self._metadata).encode("utf-8")
        await self.backend.write_bytes(self._meta_path, data)

    async def list_collection_names(self) -> List[str]:
        meta = await self._load_metadata(refresh=True)
        return sorted(meta["collections"])

    async def get_collection(self, name: str) -> "FakeMongoCollection":
        if not name or "/" in name or name.startswith("$"):
            raise ValueError(f"invalid collection name '{name}'")
        meta = await self._load_metadata()
        if name not in meta["collections"]:
            async with self.backend.acquire_lock(self._meta_lock_key):
                meta = await self._load_metadata(refresh=True)
                if name not in meta["collections"]:
                    col_dir = f"{self.db_name}/{name}"
                    await self.backend.makedirs(col_dir)
                    meta["collections"][name] = {"indexes": []}
                    await self._save_metadata()
                    logger.debug("created collection %s.%s", self.db_name, name)
        return FakeMongoCollection(self, name)

    async def command(self, command: Any, value: Any = 1) -> Dict[str, Any]:
        """Run a database command.

        Supports ``ping`` and ``explain`` of a ``find``, written either as a
        command name or as a command document whose first key is the name.
        """
        if isinstance(command, str):
            command = {command: value}
        if not isinstance(command, Mapping) or not command:
            raise ValueError("command must be a name or a non-empty mapping")
        name = next(iter(command))
        if name == "ping":
            return {"ok": 1.0}
        if name == "explain":
            explained = command["explain"]
            if not isinstance(explained, Mapping) or "find" not in explained:
                raise ValueError("only find commands can be explained")
            verbosity = command.get("verbosity", "allPlansExecution")
            collection = await self.get_collection(explained["find"])
            cursor = collection.find(
                explained.get("filter"), explained.get("projection")
            )
            if explained.get("sort"):
                cursor.sort(explained["sort"])
            if explained.get("skip"):
                cursor.skip(explained["skip"])
            if explained.get("limit"):
                cursor.limit(explained["limit"])
            return await cursor.explain(verbosity)
        raise ValueError(f"no such command: '{name}'")


class FakeCursor:
    """Lazy result set of :meth:`FakeMongoCollection.find`.

    Modifiers return the cursor so calls chain the way PyMongo's do; nothing
    is read until the cursor is consumed.
    """

    def __init__(
        self,
        collection: "FakeMongoCollection",
        filter: Optional[Mapping[str, Any]] = None,
        projection: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if filter is not None and not isinstance(filter, Mapping):
            raise TypeError("filter must be a mapping")
        if isinstance(projection, (list, tuple)):
            projection = {name: 1 for name in projection}
        self._collection = collection
        self._filter = dict(filter or {})
        self._projection = projection
        self._sort: List[Tuple[str, int]] = []
        self._skip = 0
        self._limit = 0

    def sort(self, key_or_list: Any, direction: Optional[int] = None) -> "FakeCursor":
        self._sort = normalize_sort(key_or_list, direction)
        return self

    def skip(self, skip: int) -> "FakeCursor":
        if not isinstance(skip, int) or isinstance(skip, bool):
            raise TypeError("skip must be an integer")
        if skip < 0:
            raise ValueError("skip must be >= 0")
        self._skip = skip
        return self

    def limit(self, limit: int) -> "FakeCursor":
        if not isinstance(limit, int) or isinstance(limit, bool):
            raise TypeError("limit must be an integer")
        # a zero limit means no limit; a negative one is read as its size
        self._limit = abs(limit)
        return self

    async def _execute(self) -> Tuple[List[Dict[str, Any]], int]:
        stored = await self._collection._documents()
        matched = [doc for doc in stored if match(doc, self._filter)]
        if self._sort:
            matched = sort_documents(matched, self._sort)
        matched = matched[self._skip:]
        if self._limit:
            matched = matched[: self._limit]
        return [project(doc, self._projection) for doc in matched], len(stored)

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        documents, _ = await self._execute()
        if length is not None:
            documents = documents[:length]
        return documents

    async def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        documents, _ = await self._execute()
        for document in documents:
            yield document

    async def explain(self, verbosity: str = "executionStats") -> Dict[str, Any]:
        """Describe how the query is answered, in MongoDB's explain layout."""
        if verbosity not in EXPLAIN_VERBOSITIES:
            raise ValueError(f"unknown explain verbosity '{verbosity}'")
        started = time.perf_counter()
        documents, scanned = await self._execute()
        elapsed_ms = int((time.perf_counter() - started) * 1000)

        index = await self._collection._pick_index(self._filter)
        if index is None:
            plan: Dict[str, Any] = {"stage": "COLLSCAN", "filter": self._filter, "direction": "forward"}
            keys_examined = 0
            docs_examined = scanned
        else:
            leading = index["key"][0][0]
            pinned = {leading: self._filter[leading]}
            hits = [
                doc for doc in await self._collection._documents() if match(doc, pinned)
            ]
            keys_examined = docs_examined = len(hits)
            plan = {
                "stage": "FETCH",
                "inputStage": {
                    "stage": "IXSCAN",
                    "keyPattern": dict(index["key"]),
                    "indexName": index["name"],
                    "direction": "forward",
                },
            }
        if self._sort:
            plan = {"stage": "SORT", "sortPattern": dict(self._sort), "inputStage": plan}
        if self._projection:
            plan = {"stage": "PROJECTION_DEFAULT", "transformBy": dict(self._projection), "inputStage": plan}

        namespace = f"{self._collection.database.name}.{self._collection.name}"
        result: Dict[str, Any] = {
            "queryPlanner": {
                "namespace": namespace,
                "parsedQuery": self._filter,
                "winningPlan": plan,
                "rejectedPlans": [],
            },
            "command": {
                "find": self._collection.name,
                "filter": self._filter,
                "$db": self._collection.database.name,
            },
            "ok": 1.0,
        }
        if verbosity != "queryPlanner":
            result["executionStats"] = {
                "executionSuccess": True,
                "nReturned": len(documents),
                "executionTimeMillis": elapsed_ms,
                "totalKeysExamined": keys_examined,
                "totalDocsExamined": docs_examined,
                "executionStages": plan,
            }
        return result


class FakeCommandCursor:
    """Already-computed results of an aggregation."""

    def __init__(self, documents: List[Dict[str, Any]]) -> None:
        self._documents = documents

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        if length is None:
            return list(self._documents)
        return self._documents[:length]

    async def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        for document in self._documents:
            yield document


class FakeMongoCollection:
    """Represents a collection within a :class:`FakeMongoDB` instance."""

    def __init__(self, db: FakeMongoDB, name: str) -> None:
        self.database = db
        self.backend = db.backend
        self.db_name = db.db_name
        self.name = name
        self._dir = f"{self.db_name}/{self.name}"

    @property
    def full_name(self) -> str:
        return f"{self.db_name}.{self.name}"

    async def _require_collection(self) -> Dict[str, Any]:
        meta = await self.database._load_metadata()
        if self.name not in meta["collections"]:
            raise ValueError(f"collection '{self.name}' does not exist")
        return meta["collections"][self.name]

    async def _wait_for_writers(self) -> None:
        while True:
            meta = await self.database._load_metadata(refresh=True)
            now = datetime.now(timezone.utc)
            live = [op for op in meta["operations"] if not _operation_expired(op, now)]
            if len(live) != len(meta["operations"]):
                logger.warning(
                    "dropping %d expired write operations on %s",
                    len(meta["operations"]) - len(live),
                    self.db_name,
                )
                meta["operations"] = live
                await self.database._save_metadata()
            if not live:
                return
            await asyncio.sleep(0.05)

    async def _scan(self) -> List[Tuple[str, Dict[str, Any]]]:
        entries: List[Tuple[str, Dict[str, Any]]] = []
        for fname in await self.backend.listdir(self._dir):
            if not fname.endswith(".json"):
                continue
            path = f"{self._dir}/{fname}"
            data = await self.backend.read_bytes(path)
            try:
                doc = json.loads(data.decode("utf-8"))
            except ValueError:
                logger.warning("skipping unreadable document %s", path)
                continue
            if isinstance(doc, dict):
                entries.append((path, doc))
        return entries

    async def _documents(self) -> List[Dict[str, Any]]:
        await self._require_collection()
        await self._wait_for_writers()
        return [doc for _, doc in await self._scan()]

    async def _write(self, operation):
        """Run ``operation()`` under the collection write lock.

        The operation id is recorded in the metadata while it runs so that
        readers hold off until it is done.
        """
        await self._require_collection()
        lock_key = f"{self.db_name}/{self.name}__write"
        async with self.backend.acquire_lock(lock_key):
            op_id = str(uuid.uuid4())
            meta = await self.database._load_metadata(refresh=True)
            meta["operations"].append(
                {
                    "id": op_id,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "ttl": self.database.operation_ttl,
                }
            )
            await self.database._save_metadata()
            try:
                return await operation()
            finally:
                meta = await self.database._load_metadata(refresh=True)
                meta["operations"] = [
                    op
                    for op in meta["operations"]
                    if not (isinstance(op, Mapping) and op.get("id") == op_id)
                ]
                await self.database._save_metadata()

    async def insert_one(self, document: Any) -> InsertOneResult:
        """Insert a single document into the collection.

        If ``_id`` is not present in the document, a UUID4 string is generated
        and set on ``document`` itself when it is a dict.
        """
        result = await self.insert_many([document])
        return InsertOneResult(result.inserted_ids[0])

    async def insert_many(self, documents: Sequence[Any]) -> InsertManyResult:
        if not documents:
            raise TypeError("documents must be a non-empty list")
        prepared = []
        for original in documents:
            doc = document_to_dict(original)
            if "_id" not in doc:
                doc["_id"] = str(uuid.uuid4())
                if isinstance(original, dict):
                    original["_id"] = doc["_id"]
            prepared.append(doc)

        async def _insert() -> InsertManyResult:
            existing = {doc.get("_id") for _, doc in await self._scan()}
            seen = set()
            for doc in prepared:
                if doc["_id"] in existing or doc["_id"] in seen:
                    raise ValueError(f"duplicate key error: _id {doc['_id']!r}")
                seen.add(doc["_id"])
            now = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
            for position, doc in enumerate(prepared):
                file_name = f"{now}_{position:06d}_{uuid.uuid4().hex}.json"
                data = json.dumps(doc).encode("utf-8")
                await self.backend.write_bytes(
                    f"{self._dir}/{file_name}", data, if_generation_match=0
                )
            return InsertManyResult([doc["_id"] for doc in prepared])

        return await self._write(_insert)

    async def count_documents(self, filter: Optional[Mapping[str, Any]] = None) -> int:
        documents = await self._documents()
        return sum(1 for doc in documents if match(doc, filter))

    def find(
        self,
        filter: Optional[Mapping[str, Any]] = None,
        projection: Optional[Mapping[str, Any]] = None,
    ) -> FakeCursor:
        return FakeCursor(self, filter, projection)

    async def find_one(
        self,
        filter: Optional[Mapping[str, Any]] = None,
        projection: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        docs = await self.find(filter, projection).limit(1).to_list()
        return docs[0] if docs else None

    async def update_one(
        self, filter: Mapping[str, Any], update: Mapping[str, Any]
    ) -> UpdateResult:
        return await self._update(filter, update, many=False)

    async def update_many(
        self, filter: Mapping[str, Any], update: Mapping[str, Any]
    ) -> UpdateResult:
        return await self._update(filter, update, many=True)

    async def _update(
        self, filter: Mapping[str, Any], update: Mapping[str, Any], many: bool
    ) -> UpdateResult:
        _check_update(update)

        async def _apply() -> UpdateResult:
            matched = modified = 0
            for path, doc in await self._scan():
                if not match(doc, filter):
                    continue
                matched += 1
                changed = _apply_update(doc, update)
                if changed:
                    modified += 1
                    await self.backend.write_bytes(path, json.dumps(doc).encode("utf-8"))
                if not many:
                    break
            return UpdateResult(matched, modified)

        return await self._write(_apply)

    async def delete_one(self, filter: Mapping[str, Any]) -> DeleteResult:
        return await self._delete(filter, many=False)

    async def delete_many(self, filter: Mapping[str, Any]) -> DeleteResult:
        return await self._delete(filter, many=True)

    async def _delete(self, filter: Mapping[str, Any], many: bool) -> DeleteResult:
        if not isinstance(filter, Mapping):
            raise TypeError("filter must be a mapping")

        async def _remove() -> DeleteResult:
            deleted = 0
            for path, doc in await self._scan():
                if match(doc, filter):
                    await self.backend.delete(path)
                    deleted += 1
                    if not many:
                        break
            return DeleteResult(deleted)

        return await self._write(_remove)

    async def aggregate(self, pipeline: Sequence[Mapping[str, Any]]) -> FakeCommandCursor:
        if not isinstance(pipeline, (list, tuple)):
            raise TypeError("pipeline must be a list")
        documents = await self._documents()
        return FakeCommandCursor(run_pipeline(documents, pipeline))

    async def create_index(self, keys: Any, name: Optional[str] = None) -> str:
        """Create an index on ``keys``; creating an identical index is a no-op."""
        spec = normalize_sort(keys)
        if not spec:
            raise ValueError("index keys must not be empty")
        name = name or index_name(spec)
        key = [[field_name, direction] for field_name, direction in spec]
        async with self.backend.acquire_lock(self.database._meta_lock_key):
            meta = await self.database._load_metadata(refresh=True)
            if self.name not in meta["collections"]:
                raise ValueError(f"collection '{self.name}' does not exist")
            indexes = meta["collections"][self.name].setdefault("indexes", [])
            for existing in indexes:
                if existing["name"] == name or existing["key"] == key:
                    if existing["name"] != name or existing["key"] != key:
                        raise ValueError(
                            f"index {existing['name']} already exists with a different definition"
                        )
                    return name
            indexes.append({"name": name, "key": key})
            await self.database._save_metadata()
        logger.debug("created index %s on %s", name, self.full_name)
        return name

    async def index_information(self) -> Dict[str, Dict[str, Any]]:
        meta = await self.database._load_metadata(refresh=True)
        info: Dict[str, Dict[str, Any]] = {"_id_": {"key": [("_id", 1)]}}
        for index in meta["collections"].get(self.name, {}).get("indexes", []):
            info[index["name"]] = {"key": [tuple(pair) for pair in index["key"]]}
        return info

    async def drop_index(self, name: str) -> None:
        if name == "_id_":
            raise ValueError("cannot drop _id index")
        async with self.backend.acquire_lock(self.database._meta_lock_key):
            meta = await self.database._load_metadata(refresh=True)
            indexes = meta["collections"].get(self.name, {}).get("indexes", [])
            remaining = [index for index in indexes if index["name"] != name]
            if len(remaining) == len(indexes):
                raise ValueError(f"index not found with name [{name}]")
            meta["collections"][self.name]["indexes"] = remaining
            await self.database._save_metadata()

    async def _pick_index(self, filter: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        pinned = equality_fields(filter)
        if not pinned:
            return None
        collection_meta = await self._require_collection()
        candidates = [
            index
            for index in collection_meta.get("indexes", [])
            if index["key"][0][0] in pinned
        ]
        if not candidates:
            return None
        # prefer the index covering the most pinned fields, then the narrowest
        return max(
            candidates,
            key=lambda index: (
                sum(1 for field_name, _ in index["key"] if field_name in pinned),
                -len(index["key"]),
            ),
        )


_UPDATE_OPERATORS = ("$set", "$unset", "$inc")


def _check_update(update: Mapping[str, Any]) -> None:
    if not isinstance(update, Mapping) or not update:
        raise ValueError("update must be a non-empty mapping")
    for op, fields in update.items():
        if op not in _UPDATE_OPERATORS:
            raise ValueError(f"unsupported update operator '{op}'")
        if not isinstance(fields, Mapping):
            raise ValueError(f"{op} needs a mapping of fields")
        if "_id" in fields:
            raise ValueError("performing an update on the path '_id' would modify the immutable field '_id'")


def _apply_update(document: Dict[str, Any], update: Mapping[str, Any]) -> bool:
    before = json.dumps(document, sort_keys=True)
    for op, fields in update.items():
        for path, value in fields.items():
            parent, leaf = _parent(document, path, create=op != "$unset")
            if parent is None:
                continue
            if op == "$set":
                parent[leaf] = value
            elif op == "$unset":
                parent.pop(leaf, None)
            else:
                current = parent.get(leaf, 0)
                if isinstance(current, bool) or not isinstance(current, (int, float)):
                    raise ValueError(f"cannot apply $inc to a non-numeric value at '{path}'")
                parent[leaf] = current + value
    return json.dumps(document, sort_keys=True) != before


def _parent(document: Dict[str, Any], path: str, create: bool):
    parts = path.split(".")
    target: Any = document
    for part in parts[:-1]:
        if not isinstance(target, dict):
            return None, parts[-1]
        if part not in target:
            if not create:
                return None, parts[-1]
            target[part] = {}
        target = target[part]
    if not isinstance(target, dict):
        return None, parts[-1]
    return target, parts[-1]
