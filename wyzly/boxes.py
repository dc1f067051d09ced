"""
Box catalogue, restaurant pages and owner-side inventory management.

A box is purchasable when its ``is_available`` flag is set and it has stock.
The stored flag is the owner's listing switch; stock changes adjust it only
through ``availability_after`` so every code path applies the same rule.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from . import config
from .auth import Principal
from .database import Cursor, Database, to_bool, to_money, to_timestamp
from .errors import NotFoundError, ValidationError
from .schemas import BoxCreate, BoxUpdate, FeedCategory, InventoryAdjustment, InventoryType

logger = logging.getLogger(__name__)

OWNED_BOX_MISSING = "Box not found or does not belong to your restaurant"

BOX_SELECT = """
    SELECT b.id, b.title, b.price, b.quantity, b.image, b.is_available,
           b.restaurant_id, b.created_at, b.updated_at,
           r.name AS restaurant_name,
           r.description AS restaurant_description,
           r.phone_number AS restaurant_phone
    FROM boxes b
    LEFT JOIN restaurants r ON r.id = b.restaurant_id
"""

OWNER_BOX_SELECT = """
    SELECT b.*, r.name AS restaurant_name,
           r.description AS restaurant_description,
           r.phone_number AS restaurant_phone,
           (SELECT COUNT(*) FROM orders o WHERE o.box_id = b.id) AS order_count
    FROM boxes b
    JOIN restaurants r ON r.id = b.restaurant_id
"""

PURCHASABLE_SQL = "(b.is_available = TRUE AND b.quantity > 0)"
SOLD_OUT_SQL = "(b.is_available = FALSE OR b.quantity <= 0)"
LIKE_ESCAPE = "ESCAPE '\\'"


# ============================================
# HELPERS
# ============================================
def is_purchasable(box: Dict[str, Any]) -> bool:
    return to_bool(box.get("is_available")) and (box.get("quantity") or 0) > 0


def availability_after(is_available, previous_quantity: int, new_quantity: int) -> bool:
    """Stored availability flag after stock moves from previous to new quantity"""
    is_available = to_bool(is_available)
    if new_quantity < previous_quantity:
        return is_available and new_quantity > 0
    if new_quantity > previous_quantity:
        # A box hidden by selling out comes back once restocked
        return is_available or previous_quantity == 0
    return is_available


def serialize_box(box: Dict[str, Any], with_restaurant: bool = True) -> Dict[str, Any]:
    data = {
        "id": box["id"],
        "title": box["title"],
        "price": float(to_money(box["price"])),
        "quantity": box["quantity"],
        "image": box.get("image"),
        "isAvailable": is_purchasable(box),
        "isListed": to_bool(box.get("is_available")),
        "restaurantId": box.get("restaurant_id"),
        "createdAt": to_timestamp(box.get("created_at")),
        "updatedAt": to_timestamp(box.get("updated_at")),
    }
    if with_restaurant:
        data["restaurant"] = {
            "id": box.get("restaurant_id"),
            "name": box.get("restaurant_name") or "Unknown Restaurant",
            "description": box.get("restaurant_description"),
            "phoneNumber": box.get("restaurant_phone"),
        }
    if "order_count" in box:
        data["orderCount"] = box["order_count"]
    return data


def serialize_inventory_command(command: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": command["id"],
        "type": command["type"],
        "boxId": command["box_id"],
        "quantity": command["quantity"],
        "previousQuantity": command["previous_quantity"],
        "createdAt": to_timestamp(command.get("created_at")),
    }


def record_inventory(cur: Cursor, box_id: int, kind: InventoryType, quantity: int, previous_quantity: int) -> Dict[str, Any]:
    """Append one row to the inventory audit log"""
    command_id = cur.insert("inventory_commands", {
        "type": InventoryType(kind).value,
        "box_id": box_id,
        "quantity": quantity,
        "previous_quantity": previous_quantity,
    })
    return cur.fetch_one("SELECT * FROM inventory_commands WHERE id = %s", (command_id,))


def set_stock(cur: Cursor, box: Dict[str, Any], new_quantity: int, is_available: bool = None):
    """Write a new stock level, deriving availability unless given explicitly"""
    if is_available is None:
        is_available = availability_after(box["is_available"], box["quantity"], new_quantity)
    cur.execute(
        "UPDATE boxes SET quantity = %s, is_available = %s, updated_at = CURRENT_TIMESTAMP WHERE id = %s",
        (new_quantity, is_available, box["id"]),
    )


def _pagination(page: int, limit: int, total: int) -> Dict[str, Any]:
    total_pages = (total + limit - 1) // limit if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": total_pages,
        "hasMore": page * limit < total,
    }


def _clamp_paging(page, limit, max_limit: int):
    page = max(1, int(page or 1))
    limit = min(max_limit, max(1, int(limit or 20)))
    return page, limit


def _like_pattern(text: str) -> str:
    """Substring pattern with LIKE wildcards in the user text escaped"""
    text = text.strip().lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{text}%"


def _filters(search: Optional[str], category: FeedCategory, restaurant: Optional[str]):
    clauses, params = [], []
    if search:
        pattern = _like_pattern(search)
        clauses.append(f"(LOWER(b.title) LIKE %s {LIKE_ESCAPE} OR LOWER(r.name) LIKE %s {LIKE_ESCAPE})")
        params.extend([pattern, pattern])
    if category is FeedCategory.AVAILABLE:
        clauses.append(PURCHASABLE_SQL)
    elif category is FeedCategory.SOLD_OUT:
        clauses.append(SOLD_OUT_SQL)
    if restaurant:
        clauses.append(f"LOWER(r.name) LIKE %s {LIKE_ESCAPE}")
        params.append(_like_pattern(restaurant))
    where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
    return where, params


# ============================================
# PUBLIC READS
# ============================================
def list_boxes(db: Database, page=1, limit=20, search=None, category=FeedCategory.ALL) -> Dict[str, Any]:
    """Paginated catalogue, newest first"""
    page, limit = _clamp_paging(page, limit, 50)
    where, params = _filters(search, FeedCategory(category), None)

    with db.transaction() as cur:
        total = cur.fetch_one(
            "SELECT COUNT(*) AS count FROM boxes b LEFT JOIN restaurants r ON r.id = b.restaurant_id" + where,
            params,
        )["count"]
        rows = cur.fetch_all(
            BOX_SELECT + where + " ORDER BY b.created_at DESC, b.id DESC LIMIT %s OFFSET %s",
            params + [limit, (page - 1) * limit],
        )

    return {"boxes": [serialize_box(r) for r in rows], "pagination": _pagination(page, limit, total)}


def get_feed(db: Database, search=None, category=FeedCategory.ALL, restaurant=None, page=1, limit=20) -> Dict[str, Any]:
    """Customer feed: purchasable boxes first, then by stock and recency"""
    category = FeedCategory(category)
    page, limit = _clamp_paging(page, limit, 100)
    where, params = _filters(search, category, restaurant)

    with db.transaction() as cur:
        total = cur.fetch_one(
            "SELECT COUNT(*) AS count FROM boxes b LEFT JOIN restaurants r ON r.id = b.restaurant_id" + where,
            params,
        )["count"]
        rows = cur.fetch_all(
            BOX_SELECT + where
            + f" ORDER BY CASE WHEN {PURCHASABLE_SQL} THEN 0 ELSE 1 END,"
            + " b.quantity DESC, b.created_at DESC, b.id DESC LIMIT %s OFFSET %s",
            params + [limit, (page - 1) * limit],
        )

    return {
        "boxes": [serialize_box(r) for r in rows],
        "pagination": _pagination(page, limit, total),
        "filters": {"search": search, "category": category.value, "restaurant": restaurant},
    }


def get_boxes_by_ids(db: Database, box_ids: List[int]) -> Dict[str, Any]:
    if len(box_ids) > config.MAX_LOOKUP_IDS:
        raise ValidationError(f"Maximum {config.MAX_LOOKUP_IDS} box IDs allowed per request")
    if not box_ids:
        return {"boxes": [], "requestedCount": 0, "foundCount": 0}

    rows = fetch_boxes(db, box_ids)
    return {
        "boxes": [serialize_box(r) for r in sorted(rows, key=lambda r: r["id"])],
        "requestedCount": len(box_ids),
        "foundCount": len(rows),
    }


def fetch_boxes(db: Database, box_ids: List[int]) -> List[Dict[str, Any]]:
    """Raw box rows (with restaurant columns) for the given ids"""
    ids = sorted(set(box_ids))
    if not ids:
        return []
    placeholders = ", ".join(["%s"] * len(ids))
    return db.execute_query(BOX_SELECT + f" WHERE b.id IN ({placeholders})", ids, fetch_all=True)


def list_restaurants(db: Database) -> List[Dict[str, Any]]:
    rows = db.execute_query("""
        SELECT r.*, u.username AS owner_username, u.email AS owner_email,
               (SELECT COUNT(*) FROM boxes b WHERE b.restaurant_id = r.id) AS box_count
        FROM restaurants r
        LEFT JOIN users u ON u.id = r.owner_id
        ORDER BY r.created_at DESC, r.id DESC
    """, fetch_all=True)
    return [
        {
            **serialize_restaurant(r),
            "owner": {"id": r["owner_id"], "username": r["owner_username"], "email": r["owner_email"]},
            "boxCount": r["box_count"],
        }
        for r in rows
    ]


def serialize_restaurant(restaurant: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": restaurant["id"],
        "name": restaurant["name"],
        "phoneNumber": restaurant.get("phone_number"),
        "description": restaurant.get("description"),
        "ownerId": restaurant.get("owner_id"),
        "createdAt": to_timestamp(restaurant.get("created_at")),
        "updatedAt": to_timestamp(restaurant.get("updated_at")),
    }


def get_restaurant(db: Database, restaurant_id: int) -> Dict[str, Any]:
    with db.transaction() as cur:
        restaurant = cur.fetch_one("SELECT * FROM restaurants WHERE id = %s", (restaurant_id,))
        if not restaurant:
            raise NotFoundError("Restaurant not found")
        boxes = cur.fetch_all(
            BOX_SELECT + " WHERE b.restaurant_id = %s"
            + f" ORDER BY CASE WHEN {PURCHASABLE_SQL} THEN 0 ELSE 1 END, b.created_at DESC, b.id DESC",
            (restaurant_id,),
        )

    data = serialize_restaurant(restaurant)
    data["boxes"] = [serialize_box(b) for b in boxes]
    return data


# ============================================
# OWNER OPERATIONS
# ============================================
def get_owner_restaurant(cur: Cursor, owner_id: int) -> Dict[str, Any]:
    restaurant = cur.fetch_one(
        "SELECT * FROM restaurants WHERE owner_id = %s ORDER BY id LIMIT 1",
        (owner_id,),
    )
    if not restaurant:
        raise NotFoundError("Restaurant not found for this user")
    return restaurant


def get_owned_box(cur: Cursor, owner_id: int, box_id: int, lock: bool = False) -> Dict[str, Any]:
    """Load a box only if ``owner_id`` owns its restaurant.

    A missing box and a box owned by someone else produce the same error, so
    callers cannot tell whether other restaurants' boxes exist.
    """
    query = """
        SELECT b.* FROM boxes b
        JOIN restaurants r ON r.id = b.restaurant_id
        WHERE b.id = %s AND r.owner_id = %s
    """
    if lock:
        query += cur.lock_clause("b")
    box = cur.fetch_one(query, (box_id, owner_id))
    if not box:
        raise NotFoundError(OWNED_BOX_MISSING)
    return box


def _fetch_box(cur: Cursor, box_id: int) -> Dict[str, Any]:
    return cur.fetch_one(BOX_SELECT + " WHERE b.id = %s", (box_id,))


def list_owner_boxes(db: Database, owner: Principal) -> Dict[str, Any]:
    """Owner dashboard: restaurant, its boxes with order counts, and stock summary"""
    with db.transaction() as cur:
        restaurant = get_owner_restaurant(cur, owner.id)
        boxes = cur.fetch_all(
            OWNER_BOX_SELECT + " WHERE b.restaurant_id = %s ORDER BY b.created_at DESC, b.id DESC",
            (restaurant["id"],),
        )

    prices = [to_money(b["price"]) for b in boxes]
    average = (sum(prices, Decimal("0")) / len(prices)) if prices else Decimal("0")
    return {
        "restaurant": serialize_restaurant(restaurant),
        "boxes": [serialize_box(b) for b in boxes],
        "summary": {
            "totalBoxes": len(boxes),
            "availableBoxes": sum(1 for b in boxes if is_purchasable(b)),
            "totalStock": sum(b["quantity"] for b in boxes),
            "averagePrice": float(to_money(average)),
        },
    }


def create_box(db: Database, owner: Principal, data: BoxCreate) -> Dict[str, Any]:
    with db.transaction() as cur:
        restaurant = get_owner_restaurant(cur, owner.id)
        box_id = cur.insert("boxes", {
            "title": data.title,
            "price": to_money(data.price),
            "quantity": data.quantity,
            "image": data.image,
            "is_available": data.is_available,
            "restaurant_id": restaurant["id"],
        })
        if data.quantity > 0:
            record_inventory(cur, box_id, InventoryType.INCREASE, data.quantity, 0)
        box = _fetch_box(cur, box_id)

    logger.info("Restaurant %s created box %s with %s in stock", restaurant["id"], box_id, data.quantity)
    return serialize_box(box)


def update_box(db: Database, owner: Principal, box_id: int, changes: BoxUpdate) -> Dict[str, Any]:
    """Apply owner edits; a quantity change is audited in the same transaction"""
    fields = changes.model_dump(exclude_unset=True)
    if not fields:
        raise ValidationError("No fields to update")

    with db.transaction() as cur:
        box = get_owned_box(cur, owner.id, box_id, lock=True)

        updates: Dict[str, Any] = {}
        for name in ("title", "image"):
            if name in fields:
                updates[name] = fields[name]
        if fields.get("price") is not None:
            updates["price"] = to_money(fields["price"])
        if fields.get("is_available") is not None:
            updates["is_available"] = fields["is_available"]

        new_quantity = fields.get("quantity")
        if new_quantity is not None and new_quantity != box["quantity"]:
            updates["quantity"] = new_quantity
            if "is_available" not in updates:
                updates["is_available"] = availability_after(box["is_available"], box["quantity"], new_quantity)
            kind = InventoryType.INCREASE if new_quantity > box["quantity"] else InventoryType.DECREASE
            record_inventory(cur, box_id, kind, abs(new_quantity - box["quantity"]), box["quantity"])

        if updates:
            assignments = ", ".join(f"{column} = %s" for column in updates)
            cur.execute(
                f"UPDATE boxes SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = %s",
                list(updates.values()) + [box_id],
            )
        updated = _fetch_box(cur, box_id)

    return serialize_box(updated)


def adjust_inventory(db: Database, owner: Principal, box_id: int, change: InventoryAdjustment) -> Dict[str, Any]:
    """Increase or decrease stock by a delta and log the change"""
    with db.transaction() as cur:
        box = get_owned_box(cur, owner.id, box_id, lock=True)
        if change.type is InventoryType.INCREASE:
            new_quantity = box["quantity"] + change.quantity
        else:
            new_quantity = box["quantity"] - change.quantity
        if new_quantity < 0:
            raise ValidationError("Insufficient quantity for decrease operation")

        set_stock(cur, box, new_quantity)
        command = record_inventory(cur, box_id, change.type, change.quantity, box["quantity"])
        updated = _fetch_box(cur, box_id)

    return {"box": serialize_box(updated), "inventoryCommand": serialize_inventory_command(command)}


def inventory_history(db: Database, owner: Principal, box_id: int) -> List[Dict[str, Any]]:
    with db.transaction() as cur:
        get_owned_box(cur, owner.id, box_id)
        rows = cur.fetch_all(
            "SELECT * FROM inventory_commands WHERE box_id = %s ORDER BY created_at DESC, id DESC",
            (box_id,),
        )
    return [serialize_inventory_command(r) for r in rows]


def delete_box(db: Database, owner: Principal, box_id: int):
    """Delete a box unless live orders still reference it"""
    with db.transaction() as cur:
        get_owned_box(cur, owner.id, box_id, lock=True)
        active = cur.fetch_one(
            """SELECT COUNT(*) AS count FROM orders
               WHERE box_id = %s AND is_cancelled = FALSE AND status <> 'completed'""",
            (box_id,),
        )["count"]
        if active > 0:
            raise ValidationError(
                f"Cannot delete box with {active} active order(s). Please complete or cancel them first."
            )
        cur.execute("DELETE FROM boxes WHERE id = %s", (box_id,))

    logger.info("Owner %s deleted box %s", owner.id, box_id)
