"""
Storage for hubs, disaster events, donations and victim requests.

Two interchangeable repositories:
- MemoryRepository: dicts guarded by a lock, used when no DATABASE_URL is set
- MongoRepository: one MongoDB collection per model (lowercased class name)

Hub inventory debits are atomic in both: either every item is taken or
nothing changes.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel
from pymongo import DESCENDING, MongoClient, ReturnDocument

from config import Config
from errors import InsufficientInventory, NotFound
from schemas import DisasterEvent, Donation, Hub, VictimRequest, find_item

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

MODELS: List[Type[BaseModel]] = [Hub, DisasterEvent, Donation, VictimRequest]


def collection_name(model_cls: Type[BaseModel]) -> str:
    return model_cls.__name__.lower()


def to_document(model: BaseModel) -> Dict[str, Any]:
    data = model.model_dump(exclude=set(type(model).model_computed_fields))
    data["_id"] = data.pop("id")
    return data


def from_document(model_cls: Type[M], doc: Dict[str, Any]) -> M:
    data = dict(doc)
    data["id"] = str(data.pop("_id"))
    return model_cls.model_validate(data)


def plan_debit(inventory: Dict[str, int], items: Dict[str, int]) -> Tuple[Dict[str, int], Dict[str, Dict[str, int]]]:
    """Map requested items onto inventory keys and collect any shortages."""
    resolved: Dict[str, int] = {}
    shortages: Dict[str, Dict[str, int]] = {}
    for name, qty in items.items():
        key = find_item(inventory, name)
        available = inventory.get(key, 0) if key is not None else 0
        needed = resolved.get(key, 0) + qty if key is not None else qty
        if key is None or available < needed:
            shortages[name] = {"requested": qty, "available": available}
            continue
        resolved[key] = needed
    return resolved, shortages


def _shortage_error(hub_id: str, shortages: Dict[str, Dict[str, int]]) -> InsufficientInventory:
    names = ", ".join(sorted(shortages))
    return InsufficientInventory(
        f"Hub {hub_id} does not hold enough of: {names}", hub_id=hub_id, shortages=shortages
    )


def _matches(value: Any, condition: Any) -> bool:
    if isinstance(condition, dict):
        if "$ne" in condition:
            return value != condition["$ne"]
        if "$in" in condition:
            return value in condition["$in"]
        if "$nin" in condition:
            return value not in condition["$nin"]
        raise ValueError(f"Unsupported filter: {condition}")
    return value == condition


class Repository:
    """Interface shared by the stores. Reads return copies, never live objects."""

    name = "abstract"

    def insert(self, model: M) -> M:
        raise NotImplementedError

    def get(self, model_cls: Type[M], doc_id: str) -> Optional[M]:
        raise NotImplementedError

    def find(self, model_cls: Type[M], filter_dict: Optional[Dict[str, Any]] = None,
             limit: Optional[int] = None) -> List[M]:
        raise NotImplementedError

    def replace(self, model: M) -> M:
        raise NotImplementedError

    def delete(self, model_cls: Type[BaseModel], doc_id: str) -> bool:
        raise NotImplementedError

    def count(self, model_cls: Type[BaseModel], filter_dict: Optional[Dict[str, Any]] = None) -> int:
        raise NotImplementedError

    def debit_inventory(self, hub_id: str, items: Dict[str, int]) -> Hub:
        raise NotImplementedError

    def credit_inventory(self, hub_id: str, items: Dict[str, int]) -> Hub:
        raise NotImplementedError

    def ping(self) -> Dict[str, Any]:
        raise NotImplementedError


class MemoryRepository(Repository):
    name = "memory"

    def __init__(self):
        self._lock = threading.RLock()
        self._data: Dict[str, Dict[str, BaseModel]] = {collection_name(m): {} for m in MODELS}

    def _collection(self, model_cls: Type[BaseModel]) -> Dict[str, BaseModel]:
        return self._data[collection_name(model_cls)]

    def insert(self, model: M) -> M:
        with self._lock:
            coll = self._collection(type(model))
            if model.id in coll:
                raise ValueError(f"Duplicate id {model.id}")
            coll[model.id] = model.model_copy(deep=True)
        return model.model_copy(deep=True)

    def get(self, model_cls: Type[M], doc_id: str) -> Optional[M]:
        with self._lock:
            found = self._collection(model_cls).get(doc_id)
            return found.model_copy(deep=True) if found is not None else None

    def find(self, model_cls, filter_dict=None, limit=None):
        filter_dict = filter_dict or {}
        with self._lock:
            items = [
                m.model_copy(deep=True)
                for m in self._collection(model_cls).values()
                if all(_matches(getattr(m, k), v) for k, v in filter_dict.items())
            ]
        items.sort(key=lambda m: (m.created_at, m.id), reverse=True)
        return items[:limit] if limit else items

    def replace(self, model: M) -> M:
        with self._lock:
            coll = self._collection(type(model))
            if model.id not in coll:
                raise NotFound(f"{type(model).__name__} {model.id} not found", id=model.id)
            coll[model.id] = model.model_copy(deep=True)
        return model.model_copy(deep=True)

    def delete(self, model_cls, doc_id):
        with self._lock:
            return self._collection(model_cls).pop(doc_id, None) is not None

    def count(self, model_cls, filter_dict=None):
        if not filter_dict:
            with self._lock:
                return len(self._collection(model_cls))
        return len(self.find(model_cls, filter_dict))

    def debit_inventory(self, hub_id, items):
        with self._lock:
            hub = self._collection(Hub).get(hub_id)
            if hub is None:
                raise NotFound(f"Hub {hub_id} not found", hub_id=hub_id)
            resolved, shortages = plan_debit(hub.inventory, items)
            if shortages:
                raise _shortage_error(hub_id, shortages)
            inventory = dict(hub.inventory)
            for key, qty in resolved.items():
                inventory[key] -= qty
                if inventory[key] == 0:
                    del inventory[key]
            hub.inventory = inventory
            return hub.model_copy(deep=True)

    def credit_inventory(self, hub_id, items):
        with self._lock:
            hub = self._collection(Hub).get(hub_id)
            if hub is None:
                raise NotFound(f"Hub {hub_id} not found", hub_id=hub_id)
            inventory = dict(hub.inventory)
            for name, qty in items.items():
                key = find_item(inventory, name) or name
                inventory[key] = inventory.get(key, 0) + qty
            hub.inventory = inventory
            return hub.model_copy(deep=True)

    def ping(self):
        with self._lock:
            return {"store": self.name, "collections": sorted(self._data)}


# ------------------ MongoDB ------------------

def create_document(database, name: str, data: Dict[str, Any]) -> str:
    result = database[name].insert_one(data)
    return str(result.inserted_id)


def get_documents(database, name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = database[name].find(filter_dict or {}).sort(
        [("created_at", DESCENDING), ("_id", DESCENDING)]
    )
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


class MongoRepository(Repository):
    name = "mongodb"

    def __init__(self, database):
        self.db = database

    def insert(self, model):
        create_document(self.db, collection_name(type(model)), to_document(model))
        return model.model_copy(deep=True)

    def get(self, model_cls, doc_id):
        doc = self.db[collection_name(model_cls)].find_one({"_id": doc_id})
        return from_document(model_cls, doc) if doc else None

    def find(self, model_cls, filter_dict=None, limit=None):
        docs = get_documents(self.db, collection_name(model_cls), filter_dict, limit)
        return [from_document(model_cls, d) for d in docs]

    def replace(self, model):
        result = self.db[collection_name(type(model))].replace_one({"_id": model.id}, to_document(model))
        if result.matched_count == 0:
            raise NotFound(f"{type(model).__name__} {model.id} not found", id=model.id)
        return model.model_copy(deep=True)

    def delete(self, model_cls, doc_id):
        return self.db[collection_name(model_cls)].delete_one({"_id": doc_id}).deleted_count > 0

    def count(self, model_cls, filter_dict=None):
        return self.db[collection_name(model_cls)].count_documents(filter_dict or {})

    def debit_inventory(self, hub_id, items):
        hub = self.get(Hub, hub_id)
        if hub is None:
            raise NotFound(f"Hub {hub_id} not found", hub_id=hub_id)
        resolved, shortages = plan_debit(hub.inventory, items)
        if shortages:
            raise _shortage_error(hub_id, shortages)
        if not resolved:
            return hub

        # Single conditional update: it only matches while every item is still in stock
        query: Dict[str, Any] = {"_id": hub_id}
        for key, qty in resolved.items():
            query[f"inventory.{key}"] = {"$gte": qty}
        updated = self.db["hub"].find_one_and_update(
            query,
            {"$inc": {f"inventory.{key}": -qty for key, qty in resolved.items()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            current = self.get(Hub, hub_id)
            if current is None:
                raise NotFound(f"Hub {hub_id} not found", hub_id=hub_id)
            _, shortages = plan_debit(current.inventory, items)
            logger.warning("Debit on hub %s lost a race: %s", hub_id, shortages)
            raise _shortage_error(hub_id, shortages or {name: {"requested": qty, "available": 0}
                                                        for name, qty in items.items()})

        for key in resolved:
            if updated.get("inventory", {}).get(key) == 0:
                self.db["hub"].update_one(
                    {"_id": hub_id, f"inventory.{key}": 0}, {"$unset": {f"inventory.{key}": ""}}
                )
        return self.get(Hub, hub_id)

    def credit_inventory(self, hub_id, items):
        hub = self.get(Hub, hub_id)
        if hub is None:
            raise NotFound(f"Hub {hub_id} not found", hub_id=hub_id)
        increments = {}
        for name, qty in items.items():
            key = find_item(hub.inventory, name) or name
            increments[f"inventory.{key}"] = increments.get(f"inventory.{key}", 0) + qty
        if not increments:
            return hub
        result = self.db["hub"].update_one({"_id": hub_id}, {"$inc": increments})
        if result.matched_count == 0:
            raise NotFound(f"Hub {hub_id} not found", hub_id=hub_id)
        return self.get(Hub, hub_id)

    def ping(self):
        self.db.command("ping")
        return {"store": self.name, "database": self.db.name, "collections": self.db.list_collection_names()[:10]}


def get_repository() -> Repository:
    if Config.DATABASE_URL:
        logger.info("Using MongoDB database %s", Config.DATABASE_NAME)
        client = MongoClient(Config.DATABASE_URL, tz_aware=True)
        return MongoRepository(client[Config.DATABASE_NAME])
    logger.info("DATABASE_URL not set, using the in-memory store")
    return MemoryRepository()
