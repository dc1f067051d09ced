"""
Client-side wishlist and favorites cache for signed-out visitors.

Values live in a small JSON file keyed the way browser local storage is
(``wyzly_local_wishlist``, ``wyzly_local_favorites``). When the visitor signs
in, ``WishlistReconciler`` pushes the cached wishlist through the sync
operation and clears the cache once the server has accepted it.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .schemas import Priority

logger = logging.getLogger(__name__)

LOCAL_WISHLIST_KEY = "wyzly_local_wishlist"
LOCAL_FAVORITES_KEY = "wyzly_local_favorites"


class LocalStore:
    """A JSON file behaving like a string-keyed local storage area"""

    def __init__(self, path: str):
        self.path = path

    def _read(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable local store %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, Any]):
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(data, f)

    def get(self, key: str):
        return self._read().get(key)

    def set(self, key: str, value):
        data = self._read()
        data[key] = value
        self._write(data)

    def remove(self, key: str):
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _valid_item(item) -> bool:
    return isinstance(item, dict) and isinstance(item.get("boxId"), int)


# ============================================
# WISHLIST
# ============================================
class LocalWishlistStorage:
    def __init__(self, store: LocalStore):
        self.store = store

    def get_items(self) -> List[Dict[str, Any]]:
        items = self.store.get(LOCAL_WISHLIST_KEY)
        if not isinstance(items, list):
            return []
        return [item for item in items if _valid_item(item)]

    def set_items(self, items: List[Dict[str, Any]]):
        self.store.set(LOCAL_WISHLIST_KEY, items)

    def add_item(self, box_id: int, priority=Priority.MEDIUM, notes: str = None, quantity: int = 1):
        """Add or refresh an item; re-adding moves its timestamp forward"""
        items = self.get_items()
        entry = {
            "boxId": box_id,
            "addedAt": _now_iso(),
            "priority": Priority(priority).value,
            "notes": notes,
            "quantity": quantity,
        }
        for index, item in enumerate(items):
            if item["boxId"] == box_id:
                items[index] = entry
                break
        else:
            items.append(entry)
        self.set_items(items)
        return items

    def remove_item(self, box_id: int):
        items = [item for item in self.get_items() if item["boxId"] != box_id]
        self.set_items(items)
        return items

    def update_item(self, box_id: int, **updates):
        items = self.get_items()
        for item in items:
            if item["boxId"] == box_id:
                for key in ("priority", "notes", "quantity"):
                    if key in updates:
                        item[key] = updates[key]
                self.set_items(items)
                break
        return items

    def clear_items(self):
        self.store.remove(LOCAL_WISHLIST_KEY)

    def has_item(self, box_id: int) -> bool:
        return any(item["boxId"] == box_id for item in self.get_items())

    def item_count(self) -> int:
        return len(self.get_items())

    def total_quantity(self) -> int:
        return sum(item.get("quantity") or 1 for item in self.get_items())

    def to_sync_format(self) -> List[Dict[str, Any]]:
        """Items shaped as the body of a wishlist sync request"""
        return [
            {
                "boxId": item["boxId"],
                "priority": item.get("priority") or Priority.MEDIUM.value,
                "notes": item.get("notes"),
                "quantity": item.get("quantity") or 1,
            }
            for item in self.get_items()
        ]

    def import_from_server(self, server_items: List[Dict[str, Any]]):
        self.set_items([
            {
                "boxId": item["boxId"],
                "addedAt": item.get("addedAt"),
                "priority": item.get("priority"),
                "notes": item.get("notes"),
                "quantity": item.get("quantity"),
            }
            for item in server_items
        ])

    def merge_with_server(self, server_items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Union with server items, local entries winning, newest first"""
        local = self.get_items()
        local_ids = {item["boxId"] for item in local}
        merged = local + [
            {
                "boxId": item["boxId"],
                "addedAt": item.get("addedAt"),
                "priority": item.get("priority"),
                "notes": item.get("notes"),
                "quantity": item.get("quantity"),
            }
            for item in server_items
            if item["boxId"] not in local_ids
        ]
        merged.sort(key=lambda item: item.get("addedAt") or "", reverse=True)
        self.set_items(merged)
        return merged


# ============================================
# FAVORITES
# ============================================
class LocalFavoritesStorage:
    def __init__(self, store: LocalStore):
        self.store = store

    def get_favorites(self) -> List[int]:
        favorites = self.store.get(LOCAL_FAVORITES_KEY)
        if not isinstance(favorites, list):
            return []
        return [f for f in favorites if isinstance(f, int)]

    def set_favorites(self, favorites: List[int]):
        self.store.set(LOCAL_FAVORITES_KEY, favorites)

    def add_favorite(self, box_id: int) -> List[int]:
        favorites = self.get_favorites()
        if box_id not in favorites:
            favorites.append(box_id)
            self.set_favorites(favorites)
        return favorites

    def remove_favorite(self, box_id: int) -> List[int]:
        favorites = [f for f in self.get_favorites() if f != box_id]
        self.set_favorites(favorites)
        return favorites

    def toggle_favorite(self, box_id: int) -> Dict[str, Any]:
        if self.is_favorite(box_id):
            return {"isFavorite": False, "favorites": self.remove_favorite(box_id)}
        return {"isFavorite": True, "favorites": self.add_favorite(box_id)}

    def is_favorite(self, box_id: int) -> bool:
        return box_id in self.get_favorites()

    def favorites_count(self) -> int:
        return len(self.get_favorites())

    def clear_favorites(self):
        self.store.remove(LOCAL_FAVORITES_KEY)


# ============================================
# LOGIN RECONCILIATION
# ============================================
class WishlistReconciler:
    """Sync the cached wishlist once, when a visitor becomes signed in.

    ``sync`` receives the items in sync-request form and returns the server's
    response; it should raise on failure. Local items are cleared only after a
    successful sync, so a failed attempt is retried on the next sign-in.
    """

    IDLE = "idle"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"

    def __init__(self, storage: LocalWishlistStorage, sync: Callable[[List[Dict[str, Any]]], Any]):
        self.storage = storage
        self.sync = sync
        self.previous_user = None
        self.status = self.IDLE
        self.error: Optional[str] = None

    def on_auth_change(self, user) -> Optional[Any]:
        """Feed the current user (or None); syncs on signed-out to signed-in"""
        just_logged_in = self.previous_user is None and user is not None
        self.previous_user = user
        if just_logged_in:
            return self.reconcile()
        return None

    def reconcile(self) -> Optional[Any]:
        items = self.storage.to_sync_format()
        if not items:
            return None

        self.status = self.SYNCING
        try:
            result = self.sync(items)
        except Exception as e:
            logger.exception("Wishlist sync failed; keeping %s local item(s)", len(items))
            self.status = self.ERROR
            self.error = str(e) or "Failed to sync wishlist"
            return None

        self.storage.clear_items()
        self.status = self.SYNCED
        self.error = None
        return result
