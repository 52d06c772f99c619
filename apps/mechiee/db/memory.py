"""In-process stand-in for a Mongo database, for dev runs and unit tests.

Implements the subset of the pymongo async collection API the services use.
Every operation runs under a per-collection ``asyncio.Lock`` so single-document
operations are atomic, matching Mongo's guarantees; unique indexes raise
``pymongo.errors.DuplicateKeyError`` exactly like a real server would.
"""

from __future__ import annotations

import asyncio
import copy
from typing import Any, Iterator, Mapping, Sequence

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from pymongo.results import InsertOneResult, UpdateResult

SortPairs = Sequence[tuple[str, int]]

_MISSING = object()


def new_id() -> str:
    return str(ObjectId())


# ------------- filter matching -------------
def _walk(node: Any, parts: Sequence[str]) -> Iterator[Any]:
    if not parts:
        yield node
        return
    if isinstance(node, dict):
        if parts[0] in node:
            yield from _walk(node[parts[0]], parts[1:])
    elif isinstance(node, list):
        # Mongo traverses arrays of sub-documents implicitly.
        for item in node:
            if isinstance(item, dict):
                yield from _walk(item, parts)


def _candidates(doc: Mapping[str, Any], key: str) -> tuple[bool, list[Any]]:
    found = list(_walk(doc, key.split(".")))
    values: list[Any] = []
    for val in found:
        values.append(val)
        if isinstance(val, list):
            values.extend(val)
    return bool(found), values


def _compare(values: list[Any], op: str, target: Any) -> bool:
    for val in values:
        if val is None or isinstance(val, list):
            continue
        try:
            if op == "$gt" and val > target:
                return True
            if op == "$gte" and val >= target:
                return True
            if op == "$lt" and val < target:
                return True
            if op == "$lte" and val <= target:
                return True
        except TypeError:
            continue
    return False


def _match_condition(doc: Mapping[str, Any], key: str, cond: Any) -> bool:
    found, values = _candidates(doc, key)
    if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
        for op, arg in cond.items():
            if op == "$eq":
                if not (arg in values or (arg is None and not found)):
                    return False
            elif op == "$ne":
                if arg in values or (arg is None and not found):
                    return False
            elif op == "$in":
                if not any(v in arg for v in values) and not (None in arg and not found):
                    return False
            elif op == "$nin":
                if any(v in arg for v in values) or (None in arg and not found):
                    return False
            elif op == "$exists":
                if bool(arg) != found:
                    return False
            elif op in {"$gt", "$gte", "$lt", "$lte"}:
                if not _compare(values, op, arg):
                    return False
            else:
                raise ValueError(f"Unsupported query operator: {op}")
        return True
    if cond is None:
        return not found or None in values
    return cond in values


def match_filter(doc: Mapping[str, Any], flt: Mapping[str, Any] | None) -> bool:
    for key, cond in (flt or {}).items():
        if key == "$or":
            if not any(match_filter(doc, sub) for sub in cond):
                return False
        elif key == "$and":
            if not all(match_filter(doc, sub) for sub in cond):
                return False
        elif not _match_condition(doc, key, cond):
            return False
    return True


# ------------- update application -------------
def _parent(doc: dict[str, Any], key: str, *, create: bool) -> tuple[dict[str, Any] | None, str]:
    parts = key.split(".")
    ref: Any = doc
    for p in parts[:-1]:
        if not isinstance(ref, dict):
            return None, parts[-1]
        if p not in ref or not isinstance(ref[p], dict):
            if not create:
                return None, parts[-1]
            ref[p] = {}
        ref = ref[p]
    return ref, parts[-1]


def _each(value: Any) -> list[Any]:
    if isinstance(value, dict) and "$each" in value:
        return list(value["$each"])
    return [value]


def apply_update(doc: dict[str, Any], update: Mapping[str, Any], *, inserting: bool = False) -> int:
    """Apply Mongo update operators in place; returns the number of changed fields."""
    modified = 0
    for op, fields in update.items():
        if op == "$setOnInsert" and not inserting:
            continue
        for key, value in fields.items():
            parent, leaf = _parent(doc, key, create=op != "$unset")
            if parent is None:
                continue
            if op in {"$set", "$setOnInsert"}:
                if parent.get(leaf, _MISSING) != value:
                    modified += 1
                parent[leaf] = copy.deepcopy(value)
            elif op == "$unset":
                if leaf in parent:
                    parent.pop(leaf)
                    modified += 1
            elif op == "$inc":
                parent[leaf] = parent.get(leaf, 0) + value
                modified += 1
            elif op in {"$push", "$addToSet"}:
                arr = parent.get(leaf)
                if not isinstance(arr, list):
                    arr = []
                for item in _each(value):
                    if op == "$addToSet" and item in arr:
                        continue
                    arr.append(copy.deepcopy(item))
                    modified += 1
                parent[leaf] = arr
            else:
                raise ValueError(f"Unsupported update operator: {op}")
    return modified


def _seed_from_filter(flt: Mapping[str, Any]) -> dict[str, Any]:
    base: dict[str, Any] = {}
    for key, cond in flt.items():
        if key.startswith("$"):
            continue
        if isinstance(cond, dict) and any(k.startswith("$") for k in cond):
            continue
        parent, leaf = _parent(base, key, create=True)
        if parent is not None:
            parent[leaf] = copy.deepcopy(cond)
    return base


def _sort_docs(docs: list[dict[str, Any]], sort: SortPairs | None) -> list[dict[str, Any]]:
    if not sort:
        return docs
    for field, direction in reversed(list(sort)):
        reverse = direction < 0

        def _key(d: dict[str, Any], field: str = field) -> tuple[bool, Any]:
            _found, values = _candidates(d, field)
            val = values[0] if values else None
            return (val is not None, val)

        docs.sort(key=_key, reverse=reverse)
    return docs


# ------------- cursor / collection / database -------------
class MemoryCursor:
    """Chainable cursor mirroring the pymongo async cursor surface."""

    def __init__(self, collection: "MemoryCollection", flt: Mapping[str, Any] | None) -> None:
        self._collection = collection
        self._filter = dict(flt or {})
        self._sort: list[tuple[str, int]] = []
        self._skip = 0
        self._limit = 0

    def sort(self, key_or_list: str | SortPairs, direction: int = 1) -> "MemoryCursor":
        if isinstance(key_or_list, str):
            self._sort = [(key_or_list, direction)]
        else:
            self._sort = list(key_or_list)
        return self

    def skip(self, n: int) -> "MemoryCursor":
        self._skip = n
        return self

    def limit(self, n: int) -> "MemoryCursor":
        self._limit = n
        return self

    async def to_list(self, length: int | None = None) -> list[dict[str, Any]]:
        docs = await self._collection._select(self._filter, self._sort)
        docs = docs[self._skip :]
        cap = length or self._limit
        if cap:
            docs = docs[:cap]
        return docs

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for doc in await self.to_list():
            yield doc


class MemoryCollection:
    def __init__(self, name: str) -> None:
        self.name = name
        self._docs: dict[Any, dict[str, Any]] = {}
        self._indexes: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    # ------------- helpers -------------
    def _check_unique(self, doc: Mapping[str, Any]) -> None:
        for index_name, spec in self._indexes.items():
            if not spec.get("unique"):
                continue
            fields = [k for k, _ in spec["keys"]]
            key: list[Any] = []
            present = False
            for field in fields:
                found, values = _candidates(doc, field)
                present = present or found
                key.append(values[0] if values else None)
            if spec.get("sparse") and not present:
                continue
            for other in self._docs.values():
                if other.get("_id") == doc.get("_id"):
                    continue
                other_key: list[Any] = []
                other_present = False
                for field in fields:
                    found, values = _candidates(other, field)
                    other_present = other_present or found
                    other_key.append(values[0] if values else None)
                if spec.get("sparse") and not other_present:
                    continue
                if other_key == key:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error collection: {self.name} "
                        f"index: {index_name} dup key: {dict(zip(fields, key))}",
                        11000,
                    )

    def _first(self, flt: Mapping[str, Any] | None, sort: SortPairs | None = None) -> dict[str, Any] | None:
        matches = [d for d in self._docs.values() if match_filter(d, flt)]
        matches = _sort_docs(matches, sort)
        return matches[0] if matches else None

    def _insert(self, doc: dict[str, Any]) -> Any:
        if "_id" not in doc:
            doc["_id"] = new_id()
        if doc["_id"] in self._docs:
            raise DuplicateKeyError(
                f"E11000 duplicate key error collection: {self.name} index: _id_", 11000
            )
        self._check_unique(doc)
        self._docs[doc["_id"]] = doc
        return doc["_id"]

    def _modify(self, target: dict[str, Any], update: Mapping[str, Any]) -> int:
        candidate = copy.deepcopy(target)
        modified = apply_update(candidate, update)
        self._check_unique(candidate)
        self._docs[candidate["_id"]] = candidate
        return modified

    async def _select(self, flt: Mapping[str, Any], sort: SortPairs | None) -> list[dict[str, Any]]:
        async with self._lock:
            docs = [copy.deepcopy(d) for d in self._docs.values() if match_filter(d, flt)]
        return _sort_docs(docs, sort)

    # ------------- ops -------------
    async def create_index(self, keys: str | SortPairs, **kwargs: Any) -> str:
        pairs = [(keys, 1)] if isinstance(keys, str) else list(keys)
        name = kwargs.get("name") or "_".join(f"{k}_{d}" for k, d in pairs)
        async with self._lock:
            spec = {"keys": pairs, **kwargs}
            if spec.get("unique"):
                previous = dict(self._indexes)
                self._indexes[name] = spec
                try:
                    for doc in list(self._docs.values()):
                        self._check_unique(doc)
                except DuplicateKeyError:
                    self._indexes = previous
                    raise
            else:
                self._indexes[name] = spec
        return name

    def index_information(self) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self._indexes)

    async def insert_one(self, document: Mapping[str, Any]) -> InsertOneResult:
        doc = copy.deepcopy(dict(document))
        async with self._lock:
            inserted_id = self._insert(doc)
        return InsertOneResult(inserted_id, True)

    async def find_one(
        self,
        filter: Mapping[str, Any] | None = None,
        projection: Mapping[str, Any] | None = None,
        *,
        sort: SortPairs | None = None,
    ) -> dict[str, Any] | None:
        async with self._lock:
            doc = self._first(filter, sort)
            return copy.deepcopy(doc) if doc is not None else None

    def find(
        self,
        filter: Mapping[str, Any] | None = None,
        projection: Mapping[str, Any] | None = None,
    ) -> MemoryCursor:
        return MemoryCursor(self, filter)

    async def count_documents(self, filter: Mapping[str, Any]) -> int:
        async with self._lock:
            return sum(1 for d in self._docs.values() if match_filter(d, filter))

    async def update_one(
        self,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        upsert: bool = False,
    ) -> UpdateResult:
        async with self._lock:
            target = self._first(filter)
            if target is None:
                if not upsert:
                    return UpdateResult({"n": 0, "nModified": 0}, True)
                doc = _seed_from_filter(filter)
                apply_update(doc, update, inserting=True)
                inserted_id = self._insert(doc)
                return UpdateResult({"n": 1, "nModified": 0, "upserted": inserted_id}, True)
            modified = self._modify(target, update)
            return UpdateResult({"n": 1, "nModified": 1 if modified else 0}, True)

    async def update_many(
        self,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
    ) -> UpdateResult:
        async with self._lock:
            targets = [d for d in self._docs.values() if match_filter(d, filter)]
            changed = 0
            for target in targets:
                if self._modify(target, update):
                    changed += 1
            return UpdateResult({"n": len(targets), "nModified": changed}, True)

    async def find_one_and_update(
        self,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        projection: Mapping[str, Any] | None = None,
        sort: SortPairs | None = None,
        upsert: bool = False,
        return_document: bool = ReturnDocument.BEFORE,
    ) -> dict[str, Any] | None:
        async with self._lock:
            target = self._first(filter, sort)
            if target is None:
                if not upsert:
                    return None
                doc = _seed_from_filter(filter)
                apply_update(doc, update, inserting=True)
                self._insert(doc)
                return copy.deepcopy(doc) if return_document == ReturnDocument.AFTER else None
            before = copy.deepcopy(target)
            self._modify(target, update)
            if return_document == ReturnDocument.AFTER:
                return copy.deepcopy(self._docs[target["_id"]])
            return before


class MemoryDatabase:
    """Dict of named `MemoryCollection`s, addressable like a pymongo database."""

    def __init__(self, name: str = "mechiee") -> None:
        self.name = name
        self._collections: dict[str, MemoryCollection] = {}

    def get_collection(self, name: str) -> MemoryCollection:
        if name not in self._collections:
            self._collections[name] = MemoryCollection(name)
        return self._collections[name]

    def __getitem__(self, name: str) -> MemoryCollection:
        return self.get_collection(name)

    async def list_collection_names(self) -> list[str]:
        return list(self._collections)
