from contextlib import contextmanager

import pytest

from conftest import ScriptedRandom
from wyzly import orders
from wyzly import payments as payments_module
from wyzly.errors import PaymentError, ValidationError
from wyzly.payments import MockPaymentProcessor
from wyzly.schemas import BulkOrderRequest, OrderLine, PaymentMethod


def bulk(*lines, method=PaymentMethod.MOCK):
    return BulkOrderRequest(
        items=[OrderLine(box_id=box_id, quantity=quantity) for box_id, quantity in lines],
        payment_method=method,
    )


def count(db, table):
    return db.execute_query(f"SELECT COUNT(*) AS count FROM {table}", fetch_one=True)["count"]


def test_bulk_order_across_restaurants(db, payments, customer, pasta, sushi, make_box, fetch_box):
    carbonara = make_box(pasta[1], "Carbonara Box", "15.99", 10)
    california = make_box(sushi[1], "California Roll Box", "22.00", 5)

    result = orders.create_bulk_orders(db, payments, customer, bulk((carbonara, 2), (california, 1)))

    assert result["summary"] == {
        "totalOrders": 2,
        "totalAmount": 53.98,
        "restaurants": 2,
        "paymentMethod": "mock",
    }
    assert [o["status"] for o in result["orders"]] == ["confirmed", "confirmed"]
    assert [o["totalPrice"] for o in result["orders"]] == [31.98, 22.0]
    assert all(p["status"] == "completed" for p in result["payments"])
    assert all(p["transactionId"].startswith("mock_txn_") for p in result["payments"])
    assert [g["restaurantName"] for g in result["restaurantGroups"]] == ["Pasta Palace", "Sushi Zen"]

    assert fetch_box(carbonara)["quantity"] == 8
    assert fetch_box(california)["quantity"] == 4

    commands = result["inventoryCommands"]
    assert [(c["type"], c["quantity"], c["previousQuantity"]) for c in commands] == [
        ("decrease", 2, 10),
        ("decrease", 1, 5),
    ]


def test_duplicate_lines_are_merged(db, payments, customer, pasta, make_box, fetch_box):
    box_id = make_box(pasta[1], quantity=10)

    result = orders.create_bulk_orders(db, payments, customer, bulk((box_id, 2), (box_id, 3)))

    assert len(result["orders"]) == 1
    assert result["orders"][0]["quantity"] == 5
    assert fetch_box(box_id)["quantity"] == 5


def test_missing_and_unlisted_boxes_are_reported_together(db, payments, customer, pasta, make_box):
    listed = make_box(pasta[1])
    hidden = make_box(pasta[1], "Hidden Box", is_available=False)

    with pytest.raises(ValidationError) as exc:
        orders.create_bulk_orders(db, payments, customer, bulk((listed, 1), (999, 1), (hidden, 1)))

    assert exc.value.message == f"Boxes not found or unavailable: 999, {hidden}"
    assert count(db, "orders") == 0


def test_stock_shortfalls_are_aggregated(db, payments, customer, pasta, make_box, fetch_box):
    a = make_box(pasta[1], "Lasagna Box", quantity=1)
    b = make_box(pasta[1], "Parmigiana Box", quantity=0)
    c = make_box(pasta[1], "Carbonara Box", quantity=10)

    with pytest.raises(ValidationError) as exc:
        orders.create_bulk_orders(db, payments, customer, bulk((a, 2), (b, 1), (c, 1)))

    assert exc.value.message == (
        "Insufficient stock: Lasagna Box: requested 2, available 1; "
        "Parmigiana Box: requested 1, available 0"
    )
    assert fetch_box(c)["quantity"] == 10
    assert count(db, "orders") == 0
    assert count(db, "payments") == 0


def test_payment_failure_rolls_back_the_whole_batch(db, customer, pasta, make_box, fetch_box):
    first = make_box(pasta[1], "Carbonara Box", quantity=10)
    second = make_box(pasta[1], "Lasagna Box", quantity=10)
    processor = MockPaymentProcessor(latency=0, rng=ScriptedRandom(0.1, 0.99))

    with pytest.raises(PaymentError) as exc:
        orders.create_bulk_orders(db, processor, customer, bulk((first, 1), (second, 1)))

    assert exc.value.status_code == 402
    assert "insufficient funds" in exc.value.message
    assert fetch_box(first)["quantity"] == 10
    assert fetch_box(second)["quantity"] == 10
    for table in ("orders", "payments", "inventory_commands"):
        assert count(db, table) == 0


def test_selling_out_hides_the_box(db, payments, customer, pasta, make_box, fetch_box):
    box_id = make_box(pasta[1], quantity=2)

    orders.create_bulk_orders(db, payments, customer, bulk((box_id, 2)))

    box = fetch_box(box_id)
    assert box["quantity"] == 0
    assert not box["is_available"]


def test_non_mock_method_records_method_transaction_id(db, payments, customer, pasta, make_box):
    box_id = make_box(pasta[1])

    result = orders.create_bulk_orders(db, payments, customer, bulk((box_id, 1), method=PaymentMethod.PAYPAL))

    payment = result["payments"][0]
    assert payment["method"] == "paypal"
    assert payment["transactionId"].startswith("paypal_txn_")


def test_create_order_single_item(db, payments, customer, pasta, make_box, fetch_box):
    box_id = make_box(pasta[1], price="12.50", quantity=3)

    result = orders.create_order(db, payments, customer, box_id, 2)

    assert result["order"]["totalPrice"] == 25.0
    assert result["order"]["status"] == "confirmed"
    assert result["payment"]["amount"] == 25.0
    assert result["inventoryCommand"]["previousQuantity"] == 3
    assert fetch_box(box_id)["quantity"] == 1


def test_my_orders_are_grouped_and_summarised(db, payments, customer, other_customer, pasta, sushi, make_box):
    carbonara = make_box(pasta[1], "Carbonara Box", "10.00")
    lasagna = make_box(pasta[1], "Lasagna Box", "8.00")
    roll = make_box(sushi[1], "California Roll Box", "20.00")

    orders.create_bulk_orders(db, payments, customer, bulk((carbonara, 1), (lasagna, 2), (roll, 1)))
    orders.create_bulk_orders(db, payments, other_customer, bulk((roll, 1)))
    placed = db.execute_query(
        "SELECT id FROM orders WHERE user_id = %s AND box_id = %s", (customer.id, roll), fetch_one=True
    )
    orders.cancel_order_by_customer(db, customer, placed["id"])

    result = orders.list_my_orders(db, customer)

    assert result["summary"] == {
        "totalOrders": 3,
        "activeOrders": 2,
        "completedOrders": 0,
        "cancelledOrders": 1,
    }
    groups = {(g["restaurantName"], g["isCancelled"]): g for g in result["orders"]}
    assert set(groups) == {("Pasta Palace", False), ("Sushi Zen", True)}
    pasta_group = groups[("Pasta Palace", False)]
    assert pasta_group["totalAmount"] == 26.0
    assert sorted(i["boxTitle"] for i in pasta_group["items"]) == ["Carbonara Box", "Lasagna Box"]
    assert all(len(i["payments"]) == 1 for i in pasta_group["items"])


def test_admin_listing_totals_exclude_cancelled(db, payments, customer, admin, pasta, make_box):
    box_id = make_box(pasta[1], price="10.00")
    result = orders.create_bulk_orders(db, payments, customer, bulk((box_id, 1)))
    orders.create_bulk_orders(db, payments, customer, bulk((box_id, 2)))
    orders.cancel_order_by_admin(db, admin, result["orders"][0]["id"])

    listing = orders.list_all_orders(db)

    assert listing["totalCount"] == 2
    assert listing["activeCount"] == 1
    assert listing["cancelledCount"] == 1
    assert listing["totalRevenue"] == 20.0
    cancelled = next(o for o in listing["orders"] if o["isCancelled"])
    assert cancelled["user"]["username"] == "john_doe"
    assert cancelled["box"]["restaurant"]["name"] == "Pasta Palace"
    assert cancelled["cancelOrders"][0]["isApproved"] is True


def test_second_order_beyond_remaining_stock_fails(db, payments, customer, pasta, make_box, fetch_box):
    box_id = make_box(pasta[1], "Carbonara Box", price="10.00", quantity=3)

    first = orders.create_bulk_orders(db, payments, customer, bulk((box_id, 2)))
    assert first["summary"]["totalAmount"] == 20.0
    assert fetch_box(box_id)["quantity"] == 1

    with pytest.raises(ValidationError) as exc:
        orders.create_bulk_orders(db, payments, customer, bulk((box_id, 2)))

    assert exc.value.message == "Insufficient stock: Carbonara Box: requested 2, available 1"
    assert fetch_box(box_id)["quantity"] == 1
    assert count(db, "orders") == 1
    assert count(db, "payments") == 1


def test_gateway_wait_happens_outside_the_transaction(db, customer, pasta, make_box, monkeypatch):
    first = make_box(pasta[1], "Carbonara Box")
    second = make_box(pasta[1], "Lasagna Box")
    processor = MockPaymentProcessor(latency=0.1, rng=ScriptedRandom(0.0))
    events = []

    monkeypatch.setattr(payments_module.time, "sleep", lambda seconds: events.append(("sleep", seconds)))
    transaction = db.transaction

    @contextmanager
    def recording_transaction():
        events.append("begin")
        with transaction() as cur:
            yield cur
        events.append("commit")

    monkeypatch.setattr(db, "transaction", recording_transaction)

    orders.create_bulk_orders(db, processor, customer, bulk((first, 1), (second, 1)))

    assert events == [("sleep", pytest.approx(0.2)), "begin", "commit"]
