"""
Order placement, order history and cancellations.

Every order-creating or order-cancelling call runs in a single relational
transaction: orders, payments, stock changes and inventory audit rows commit
together or not at all.
"""

import logging
from collections import OrderedDict
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .auth import Principal
from .boxes import BOX_SELECT, record_inventory, serialize_inventory_command, set_stock
from .database import Cursor, Database, to_bool, to_money, to_timestamp
from .errors import NotFoundError, PaymentError, ValidationError
from .payments import MockPaymentProcessor
from .schemas import (
    ACTIVE_STATUSES, CUSTOMER_CANCELLABLE, BulkOrderRequest, InventoryType,
    OrderLine, OrderStatus, PaymentMethod, PaymentStatus, Role,
)

logger = logging.getLogger(__name__)

CUSTOMER_CANCEL_REASON = "Cancelled by customer"
ADMIN_CANCEL_REASON = "Cancelled by admin"


# ============================================
# SERIALIZERS
# ============================================
def serialize_order(order: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": order["id"],
        "userId": order["user_id"],
        "boxId": order["box_id"],
        "quantity": order["quantity"],
        "totalPrice": float(to_money(order["total_price"])),
        "status": order["status"],
        "isCancelled": to_bool(order["is_cancelled"]),
        "createdAt": to_timestamp(order.get("created_at")),
        "updatedAt": to_timestamp(order.get("updated_at")),
    }


def serialize_payment(payment: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": payment["id"],
        "orderId": payment["order_id"],
        "amount": float(to_money(payment["amount"])),
        "status": payment["status"],
        "method": payment["method"],
        "transactionId": payment.get("transaction_id"),
        "createdAt": to_timestamp(payment.get("created_at")),
    }


def serialize_cancel_order(cancel: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": cancel["id"],
        "orderId": cancel["order_id"],
        "userId": cancel["user_id"],
        "reason": cancel.get("reason"),
        "isApproved": to_bool(cancel.get("is_approved")),
        "adminId": cancel.get("admin_id"),
        "createdAt": to_timestamp(cancel.get("created_at")),
        "approvedAt": to_timestamp(cancel.get("approved_at")),
    }


def _in_clause(values) -> str:
    return ", ".join(["%s"] * len(values))


def _by_order(rows: List[Dict[str, Any]]) -> Dict[int, List[Dict[str, Any]]]:
    grouped: Dict[int, List[Dict[str, Any]]] = {}
    for row in rows:
        grouped.setdefault(row["order_id"], []).append(row)
    return grouped


# ============================================
# ORDER CREATION
# ============================================
def merge_lines(lines: List[OrderLine]) -> "OrderedDict[int, int]":
    """Collapse repeated box ids into one line, summing quantities"""
    merged: "OrderedDict[int, int]" = OrderedDict()
    for line in lines:
        merged[line.box_id] = merged.get(line.box_id, 0) + line.quantity
    return merged


def _group_by_restaurant(lines, boxes) -> List[Dict[str, Any]]:
    groups: "OrderedDict[Any, Dict[str, Any]]" = OrderedDict()
    for box_id, quantity in lines.items():
        box = boxes[box_id]
        key = box["restaurant_id"]
        if key not in groups:
            groups[key] = {
                "restaurantId": key,
                "restaurantName": box.get("restaurant_name") or "Unknown Restaurant",
                "items": [],
                "subtotal": Decimal("0.00"),
            }
        line_total = to_money(box["price"]) * quantity
        groups[key]["items"].append({
            "boxId": box_id,
            "title": box["title"],
            "quantity": quantity,
            "unitPrice": float(to_money(box["price"])),
            "totalPrice": float(line_total),
        })
        groups[key]["subtotal"] += line_total

    for group in groups.values():
        group["subtotal"] = float(group["subtotal"])
    return list(groups.values())


def create_bulk_orders(db: Database, payments: MockPaymentProcessor, customer: Principal,
                       request: BulkOrderRequest) -> Dict[str, Any]:
    """Place one order per line, all-or-nothing.

    Boxes are loaded (and row-locked on PostgreSQL) up front so that every
    missing box and every stock shortfall is reported in one error. Each line
    then gets a pending order, a charged payment, a stock decrement and an
    inventory audit row; once all lines succeed the orders are confirmed.
    """
    lines = merge_lines(request.items)
    method = PaymentMethod(request.payment_method)
    box_ids = list(lines)

    payments.wait_for_gateway(len(lines))

    with db.transaction() as cur:
        rows = cur.fetch_all(
            BOX_SELECT + f" WHERE b.id IN ({_in_clause(box_ids)}) AND b.is_available = TRUE"
            + cur.lock_clause("b"),
            box_ids,
        )
        boxes = {row["id"]: row for row in rows}

        missing = [str(box_id) for box_id in box_ids if box_id not in boxes]
        if missing:
            raise ValidationError(f"Boxes not found or unavailable: {', '.join(missing)}")

        shortfalls = [
            f"{boxes[box_id]['title']}: requested {quantity}, available {boxes[box_id]['quantity']}"
            for box_id, quantity in lines.items()
            if boxes[box_id]["quantity"] < quantity
        ]
        if shortfalls:
            raise ValidationError(f"Insufficient stock: {'; '.join(shortfalls)}")

        restaurant_groups = _group_by_restaurant(lines, boxes)

        order_ids, payment_ids, commands = [], [], []
        total_amount = Decimal("0.00")
        for box_id, quantity in lines.items():
            box = boxes[box_id]
            total_price = to_money(box["price"]) * quantity

            order_id = cur.insert("orders", {
                "user_id": customer.id,
                "box_id": box_id,
                "quantity": quantity,
                "total_price": total_price,
                "status": OrderStatus.PENDING.value,
                "is_cancelled": False,
            })

            result = payments.process_payment(total_price, method)
            if not result.success:
                raise PaymentError(result.error or "Payment failed")

            payment_ids.append(cur.insert("payments", {
                "order_id": order_id,
                "amount": total_price,
                "status": PaymentStatus.COMPLETED.value,
                "method": method.value,
                "transaction_id": result.transaction_id,
            }))

            new_quantity = box["quantity"] - quantity
            updated = cur.execute(
                """UPDATE boxes SET quantity = quantity - %s, is_available = %s, updated_at = CURRENT_TIMESTAMP
                   WHERE id = %s AND quantity >= %s""",
                (quantity, to_bool(box["is_available"]) and new_quantity > 0, box_id, quantity),
            )
            if updated == 0:
                raise ValidationError(
                    f"Insufficient stock: {box['title']}: requested {quantity}, available {box['quantity']}"
                )
            commands.append(record_inventory(cur, box_id, InventoryType.DECREASE, quantity, box["quantity"]))

            order_ids.append(order_id)
            total_amount += total_price

        cur.execute(
            f"UPDATE orders SET status = %s, updated_at = CURRENT_TIMESTAMP WHERE id IN ({_in_clause(order_ids)})",
            [OrderStatus.CONFIRMED.value] + order_ids,
        )

        orders = cur.fetch_all(
            f"SELECT * FROM orders WHERE id IN ({_in_clause(order_ids)}) ORDER BY id", order_ids
        )
        payment_rows = cur.fetch_all(
            f"SELECT * FROM payments WHERE id IN ({_in_clause(payment_ids)}) ORDER BY id", payment_ids
        )

    logger.info(
        "Customer %s placed %s order(s) totalling %s via %s",
        customer.id, len(order_ids), total_amount, method.value,
    )
    return {
        "orders": [serialize_order(o) for o in orders],
        "payments": [serialize_payment(p) for p in payment_rows],
        "restaurantGroups": restaurant_groups,
        "inventoryCommands": [serialize_inventory_command(c) for c in commands],
        "summary": {
            "totalOrders": len(order_ids),
            "totalAmount": float(total_amount),
            "restaurants": len(restaurant_groups),
            "paymentMethod": method.value,
        },
    }


def create_order(db: Database, payments: MockPaymentProcessor, customer: Principal,
                 box_id: int, quantity: int, payment_method=PaymentMethod.MOCK) -> Dict[str, Any]:
    """Single-item order placement"""
    result = create_bulk_orders(db, payments, customer, BulkOrderRequest(
        items=[OrderLine(box_id=box_id, quantity=quantity)],
        payment_method=payment_method,
    ))
    return {
        "order": result["orders"][0],
        "payment": result["payments"][0],
        "inventoryCommand": result["inventoryCommands"][0],
    }


# ============================================
# ORDER READS
# ============================================
ORDER_SELECT = """
    SELECT o.*, b.title AS box_title, b.image AS box_image, b.price AS box_price,
           r.id AS restaurant_id, r.name AS restaurant_name, r.phone_number AS restaurant_phone,
           r.owner_id AS restaurant_owner_id,
           u.username AS user_username, u.email AS user_email
    FROM orders o
    LEFT JOIN boxes b ON b.id = o.box_id
    LEFT JOIN restaurants r ON r.id = b.restaurant_id
    LEFT JOIN users u ON u.id = o.user_id
"""


def _payments_for(cur: Cursor, order_ids: List[int]) -> Dict[int, List[Dict[str, Any]]]:
    if not order_ids:
        return {}
    rows = cur.fetch_all(
        f"SELECT * FROM payments WHERE order_id IN ({_in_clause(order_ids)}) ORDER BY id", order_ids
    )
    return _by_order(rows)


def _cancellations_for(cur: Cursor, order_ids: List[int]) -> Dict[int, List[Dict[str, Any]]]:
    if not order_ids:
        return {}
    rows = cur.fetch_all(
        f"SELECT * FROM cancel_orders WHERE order_id IN ({_in_clause(order_ids)}) ORDER BY id", order_ids
    )
    return _by_order(rows)


def _detailed(order, payments, cancellations) -> Dict[str, Any]:
    data = serialize_order(order)
    data["user"] = {"id": order["user_id"], "username": order.get("user_username"), "email": order.get("user_email")}
    data["box"] = None
    if order.get("box_title") is not None:
        data["box"] = {
            "id": order["box_id"],
            "title": order["box_title"],
            "image": order.get("box_image"),
            "price": float(to_money(order.get("box_price"))),
            "restaurant": {"id": order.get("restaurant_id"), "name": order.get("restaurant_name")},
        }
    data["payments"] = [serialize_payment(p) for p in payments]
    data["cancelOrders"] = [serialize_cancel_order(c) for c in cancellations]
    return data


def list_my_orders(db: Database, customer: Principal) -> Dict[str, Any]:
    """The caller's orders grouped by restaurant, day, status and cancellation"""
    with db.transaction() as cur:
        orders = cur.fetch_all(
            ORDER_SELECT + " WHERE o.user_id = %s ORDER BY o.created_at DESC, o.id DESC",
            (customer.id,),
        )
        payments = _payments_for(cur, [o["id"] for o in orders])

    groups: "OrderedDict[tuple, Dict[str, Any]]" = OrderedDict()
    for order in orders:
        created_at = to_timestamp(order.get("created_at")) or ""
        order_date = created_at[:10]
        cancelled = to_bool(order["is_cancelled"])
        key = (order.get("restaurant_id"), order_date, order["status"], cancelled)

        if key not in groups:
            groups[key] = {
                "id": f"group_{order_date}_{order.get('restaurant_id')}_{order['status']}_{int(cancelled)}",
                "restaurantId": order.get("restaurant_id"),
                "restaurantName": order.get("restaurant_name") or "Unknown Restaurant",
                "restaurantPhone": order.get("restaurant_phone"),
                "orderDate": order_date,
                "status": order["status"],
                "isCancelled": cancelled,
                "items": [],
                "totalAmount": Decimal("0.00"),
                "createdAt": created_at,
                "updatedAt": to_timestamp(order.get("updated_at")),
            }

        total = to_money(order["total_price"])
        groups[key]["items"].append({
            "id": order["id"],
            "boxId": order["box_id"],
            "boxTitle": order.get("box_title") or "Unknown Item",
            "boxImage": order.get("box_image"),
            "quantity": order["quantity"],
            "unitPrice": float(to_money(total / order["quantity"])),
            "totalPrice": float(total),
            "payments": [serialize_payment(p) for p in payments.get(order["id"], [])],
        })
        groups[key]["totalAmount"] += total

    for group in groups.values():
        group["totalAmount"] = float(group["totalAmount"])

    return {
        "orders": list(groups.values()),
        "summary": {
            "totalOrders": len(orders),
            "activeOrders": sum(
                1 for o in orders if not to_bool(o["is_cancelled"]) and o["status"] in ACTIVE_STATUSES
            ),
            "completedOrders": sum(
                1 for o in orders if not to_bool(o["is_cancelled"]) and o["status"] == OrderStatus.COMPLETED.value
            ),
            "cancelledOrders": sum(1 for o in orders if to_bool(o["is_cancelled"])),
        },
    }


def get_order(db: Database, principal: Principal, order_id: int) -> Dict[str, Any]:
    """One order with its payments and cancellation records.

    Customers see only their own orders, restaurant owners only orders for
    their boxes; anything else is reported as not found.
    """
    with db.transaction() as cur:
        order = cur.fetch_one(ORDER_SELECT + " WHERE o.id = %s", (order_id,))
        visible = order is not None and (
            principal.role is Role.ADMIN
            or (principal.role is Role.CUSTOMER and order["user_id"] == principal.id)
            or (principal.role is Role.RESTAURANT and order.get("restaurant_owner_id") == principal.id)
        )
        if not visible:
            raise NotFoundError("Order not found")
        payments = _payments_for(cur, [order_id])
        cancellations = _cancellations_for(cur, [order_id])

    return _detailed(order, payments.get(order_id, []), cancellations.get(order_id, []))


def list_all_orders(db: Database) -> Dict[str, Any]:
    """Every order with user, box, payments and cancellations plus revenue totals"""
    with db.transaction() as cur:
        orders = cur.fetch_all(ORDER_SELECT + " ORDER BY o.created_at DESC, o.id DESC")
        order_ids = [o["id"] for o in orders]
        payments = _payments_for(cur, order_ids)
        cancellations = _cancellations_for(cur, order_ids)

    live = [o for o in orders if not to_bool(o["is_cancelled"])]
    revenue = sum((to_money(o["total_price"]) for o in live), Decimal("0.00"))
    return {
        "orders": [_detailed(o, payments.get(o["id"], []), cancellations.get(o["id"], [])) for o in orders],
        "totalCount": len(orders),
        "activeCount": len(live),
        "cancelledCount": len(orders) - len(live),
        "totalRevenue": float(revenue),
    }


# ============================================
# CANCELLATION
# ============================================
def _mark_cancelled(cur: Cursor, order_id: int):
    """Flip the order to cancelled unless someone else already did"""
    updated = cur.execute(
        """UPDATE orders SET is_cancelled = TRUE, status = %s, updated_at = CURRENT_TIMESTAMP
           WHERE id = %s AND is_cancelled = FALSE""",
        (OrderStatus.CANCELLED.value, order_id),
    )
    if updated == 0:
        raise ValidationError("Order is already cancelled")


def _restore_stock(cur: Cursor, order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if order["box_id"] is None:
        return None
    box = cur.fetch_one("SELECT * FROM boxes WHERE id = %s" + cur.lock_clause(), (order["box_id"],))
    if not box:
        return None
    set_stock(cur, box, box["quantity"] + order["quantity"])
    return record_inventory(cur, box["id"], InventoryType.INCREASE, order["quantity"], box["quantity"])


def cancel_order_by_customer(db: Database, customer: Principal, order_id: int,
                             reason: Optional[str] = None) -> Dict[str, Any]:
    with db.transaction() as cur:
        order = cur.fetch_one(
            "SELECT * FROM orders WHERE id = %s AND user_id = %s" + cur.lock_clause(),
            (order_id, customer.id),
        )
        if not order:
            raise NotFoundError("Order not found")
        if to_bool(order["is_cancelled"]):
            raise ValidationError("Order is already cancelled")
        if order["status"] not in CUSTOMER_CANCELLABLE:
            raise ValidationError(f"Cannot cancel order with status: {order['status']}")

        _mark_cancelled(cur, order_id)
        cur.insert("cancel_orders", {
            "order_id": order_id,
            "user_id": customer.id,
            "reason": reason or CUSTOMER_CANCEL_REASON,
            "is_approved": False,
        })
        command = _restore_stock(cur, order)
        updated = cur.fetch_one("SELECT * FROM orders WHERE id = %s", (order_id,))

    logger.info("Customer %s cancelled order %s", customer.id, order_id)
    return {
        "order": serialize_order(updated),
        "inventoryCommand": serialize_inventory_command(command) if command else None,
        "message": f"Order #{order_id} has been cancelled and is pending approval",
    }


def cancel_order_by_admin(db: Database, admin: Principal, order_id: int,
                          reason: Optional[str] = None) -> Dict[str, Any]:
    with db.transaction() as cur:
        order = cur.fetch_one("SELECT * FROM orders WHERE id = %s" + cur.lock_clause(), (order_id,))
        if not order:
            raise NotFoundError("Order not found")
        if to_bool(order["is_cancelled"]):
            raise ValidationError("Order is already cancelled")

        _mark_cancelled(cur, order_id)

        existing = cur.fetch_one(
            "SELECT id FROM cancel_orders WHERE order_id = %s ORDER BY id LIMIT 1", (order_id,)
        )
        if existing:
            cur.execute(
                """UPDATE cancel_orders
                   SET is_approved = TRUE, admin_id = %s, approved_at = CURRENT_TIMESTAMP,
                       reason = COALESCE(%s, reason)
                   WHERE id = %s""",
                (admin.id, reason, existing["id"]),
            )
        else:
            cur.execute(
                """INSERT INTO cancel_orders (order_id, user_id, reason, is_approved, admin_id, approved_at)
                   VALUES (%s, %s, %s, TRUE, %s, CURRENT_TIMESTAMP)""",
                (order_id, order["user_id"], reason or ADMIN_CANCEL_REASON, admin.id),
            )

        command = _restore_stock(cur, order)
        updated = cur.fetch_one("SELECT * FROM orders WHERE id = %s", (order_id,))

    logger.info("Admin %s cancelled order %s", admin.id, order_id)
    return {
        "order": serialize_order(updated),
        "inventoryCommand": serialize_inventory_command(command) if command else None,
        "message": f"Order #{order_id} has been cancelled",
    }
