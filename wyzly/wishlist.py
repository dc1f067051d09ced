"""
Per-user wishlists kept as one MongoDB document each.

Every write goes through ``_save_items``: the document carries an integer
``version`` and is replaced only if the version read is still current. On a
lost race the change is recomputed from a fresh read, a bounded number of
times, so concurrent syncs never silently drop each other's items.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError

from .boxes import fetch_boxes, serialize_box
from .database import Database, to_timestamp
from .errors import ConflictError, NotFoundError
from .schemas import PRIORITY_RANK, Priority, WishlistItemCreate, WishlistItemUpdate, WishlistSyncRequest

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 3


def utcnow() -> datetime:
    # BSON dates carry no zone; keep naive UTC so reads compare cleanly
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================
# SERIALIZERS
# ============================================
def serialize_item(item: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "boxId": item["box_id"],
        "addedAt": to_timestamp(item.get("added_at")),
        "priority": item.get("priority") or Priority.MEDIUM.value,
        "notes": item.get("notes"),
        "quantity": item.get("quantity") or 1,
    }


def serialize_wishlist(user_id: int, doc: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    items = doc["items"] if doc else []
    return {
        "userId": user_id,
        "items": [serialize_item(i) for i in items],
        "itemCount": len(items),
        "createdAt": to_timestamp(doc.get("created_at")) if doc else None,
        "updatedAt": to_timestamp(doc.get("updated_at")) if doc else None,
    }


def _new_item(box_id: int, priority, notes, quantity) -> Dict[str, Any]:
    return {
        "box_id": box_id,
        "added_at": utcnow(),
        "priority": Priority(priority or Priority.MEDIUM).value,
        "notes": notes,
        "quantity": quantity or 1,
    }


# ============================================
# VERSIONED WRITES
# ============================================
def _save_items(collection: Collection, user_id: int,
                change: Callable[[List[Dict[str, Any]]], List[Dict[str, Any]]]) -> Dict[str, Any]:
    """Apply ``change`` to the current items and write them back atomically.

    ``change`` receives a copy of the stored items and returns the new list.
    It may raise to abort the write.
    """
    for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
        doc = collection.find_one({"user_id": user_id})
        now = utcnow()

        if doc is None:
            items = change([])
            new_doc = {"user_id": user_id, "items": items, "version": 1, "created_at": now, "updated_at": now}
            try:
                collection.insert_one(new_doc)
                return new_doc
            except DuplicateKeyError:
                logger.warning("Wishlist for user %s created concurrently (attempt %s)", user_id, attempt)
                continue

        version = doc.get("version", 0)
        items = change([dict(i) for i in doc.get("items", [])])
        new_doc = {
            "user_id": user_id,
            "items": items,
            "version": version + 1,
            "created_at": doc.get("created_at", now),
            "updated_at": now,
        }
        version_filter = {"user_id": user_id, "version": version}
        if "version" not in doc:
            version_filter = {"user_id": user_id, "version": {"$exists": False}}
        result = collection.replace_one(version_filter, new_doc)
        if result.matched_count == 1:
            return new_doc

        logger.warning("Wishlist version conflict for user %s (attempt %s)", user_id, attempt)

    raise ConflictError("Wishlist was modified concurrently, please retry")


# ============================================
# OPERATIONS
# ============================================
def get_wishlist(collection: Collection, user_id: int) -> Dict[str, Any]:
    return serialize_wishlist(user_id, collection.find_one({"user_id": user_id}))


def add_item(collection: Collection, user_id: int, data: WishlistItemCreate) -> Dict[str, Any]:
    """Add a box, or refresh it in place if it is already listed"""
    def change(items):
        fresh = _new_item(data.box_id, data.priority, data.notes, data.quantity)
        for index, item in enumerate(items):
            if item["box_id"] == data.box_id:
                items[index] = fresh
                return items
        items.append(fresh)
        return items

    doc = _save_items(collection, user_id, change)
    return {"wishlist": serialize_wishlist(user_id, doc), "message": "Item added to wishlist successfully"}


def update_item(collection: Collection, user_id: int, box_id: int, data: WishlistItemUpdate) -> Dict[str, Any]:
    fields = data.model_dump(exclude_unset=True)

    def change(items):
        for item in items:
            if item["box_id"] == box_id:
                if fields.get("priority") is not None:
                    item["priority"] = Priority(fields["priority"]).value
                if "notes" in fields:
                    item["notes"] = fields["notes"]
                if fields.get("quantity") is not None:
                    item["quantity"] = fields["quantity"]
                return items
        raise NotFoundError("Item not found in wishlist")

    _require_wishlist(collection, user_id)
    doc = _save_items(collection, user_id, change)
    return {"wishlist": serialize_wishlist(user_id, doc), "message": "Wishlist item updated successfully"}


def remove_item(collection: Collection, user_id: int, box_id: int) -> Dict[str, Any]:
    def change(items):
        remaining = [item for item in items if item["box_id"] != box_id]
        if len(remaining) == len(items):
            raise NotFoundError("Item not found in wishlist")
        return remaining

    _require_wishlist(collection, user_id)
    doc = _save_items(collection, user_id, change)
    return {"wishlist": serialize_wishlist(user_id, doc), "message": "Item removed from wishlist successfully"}


def clear_wishlist(collection: Collection, user_id: int) -> Dict[str, Any]:
    doc = collection.find_one({"user_id": user_id})
    if not doc or not doc.get("items"):
        return {"wishlist": serialize_wishlist(user_id, doc), "message": "Wishlist was already empty"}

    doc = _save_items(collection, user_id, lambda items: [])
    return {"wishlist": serialize_wishlist(user_id, doc), "message": "Wishlist cleared successfully"}


def _require_wishlist(collection: Collection, user_id: int):
    if collection.find_one({"user_id": user_id}, {"_id": 1}) is None:
        raise NotFoundError("Wishlist not found")


def sync_wishlist(collection: Collection, user_id: int, request: WishlistSyncRequest) -> Dict[str, Any]:
    """Merge locally kept items into the stored wishlist.

    Local items win: they come first, stamped with a fresh ``added_at``.
    Stored items for boxes not in the local list follow unchanged.
    """
    local_items = request.local_items

    def change(items):
        merged, local_ids = [], set()
        for local in local_items:
            if local.box_id in local_ids:
                continue
            local_ids.add(local.box_id)
            merged.append(_new_item(local.box_id, local.priority, local.notes, local.quantity))
        merged.extend(item for item in items if item["box_id"] not in local_ids)
        return merged

    doc = _save_items(collection, user_id, change)
    logger.info("Synced %s local wishlist item(s) for user %s", len(local_items), user_id)
    return {
        "wishlist": serialize_wishlist(user_id, doc),
        "message": "Wishlist synced successfully",
        "syncedItemsCount": len(local_items),
        "mergedItemsCount": len(doc["items"]),
    }


def get_populated_wishlist(collection: Collection, db: Database, user_id: int) -> Dict[str, Any]:
    """Wishlist items joined with live box data, best first.

    Items whose box no longer exists are left out of the response but stay in
    the stored document.
    """
    doc = collection.find_one({"user_id": user_id})
    items = doc["items"] if doc else []

    boxes = {row["id"]: row for row in fetch_boxes(db, [i["box_id"] for i in items])} if items else {}

    populated = []
    for item in items:
        box = boxes.get(item["box_id"])
        if box is None:
            continue
        entry = serialize_item(item)
        entry["box"] = serialize_box(box)
        entry["_added"] = item.get("added_at") or datetime.min
        populated.append(entry)

    # Newest first, then stable sort by priority rank
    populated.sort(key=lambda e: e["_added"], reverse=True)
    populated.sort(key=lambda e: PRIORITY_RANK.get(e["priority"], 0), reverse=True)

    for entry in populated:
        del entry["_added"]
    available = [e for e in populated if e["box"]["isAvailable"]]
    unavailable = [e for e in populated if not e["box"]["isAvailable"]]

    return {
        "wishlist": {
            "userId": user_id,
            "items": populated,
            "itemCount": len(populated),
            "availableCount": len(available),
            "unavailableCount": len(unavailable),
            "groupedItems": {"available": available, "unavailable": unavailable},
            "createdAt": to_timestamp(doc.get("created_at")) if doc else None,
            "updatedAt": to_timestamp(doc.get("updated_at")) if doc else None,
        }
    }
