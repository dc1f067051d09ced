from decimal import Decimal

import pytest

from wyzly import boxes, orders
from wyzly.errors import NotFoundError, ValidationError
from wyzly.schemas import (
    BoxCreate, BoxUpdate, BulkOrderRequest, FeedCategory, InventoryAdjustment, InventoryType, OrderLine, Role,
)


def audit_rows(db, box_id):
    return db.execute_query(
        "SELECT * FROM inventory_commands WHERE box_id = %s ORDER BY id", (box_id,), fetch_all=True
    )


@pytest.mark.parametrize("listed, previous, new, expected", [
    (True, 5, 3, True),
    (True, 1, 0, False),
    (False, 5, 3, False),
    (True, 0, 4, True),
    (False, 0, 4, True),
    (False, 3, 6, False),
    (True, 3, 3, True),
])
def test_availability_after(listed, previous, new, expected):
    assert boxes.availability_after(listed, previous, new) is expected


def test_foreign_and_missing_boxes_look_the_same(db, pasta, sushi, make_box):
    owner, _ = pasta
    foreign = make_box(sushi[1])

    with db.transaction() as cur:
        with pytest.raises(NotFoundError) as foreign_exc:
            boxes.get_owned_box(cur, owner.id, foreign)
        with pytest.raises(NotFoundError) as missing_exc:
            boxes.get_owned_box(cur, owner.id, 9999)

    assert foreign_exc.value.message == missing_exc.value.message == boxes.OWNED_BOX_MISSING


def test_create_box_logs_initial_stock(db, pasta):
    owner, restaurant_id = pasta

    stocked = boxes.create_box(db, owner, BoxCreate(title="Carbonara Box", price=Decimal("15.99"), quantity=12))
    empty = boxes.create_box(db, owner, BoxCreate(title="Lasagna Box", price=Decimal("9.50"), quantity=0))

    assert stocked["restaurantId"] == restaurant_id
    assert stocked["price"] == 15.99
    assert stocked["isAvailable"] is True
    assert empty["isAvailable"] is False

    [command] = audit_rows(db, stocked["id"])
    assert (command["type"], command["quantity"], command["previous_quantity"]) == ("increase", 12, 0)
    assert audit_rows(db, empty["id"]) == []


def test_create_box_requires_a_restaurant(db, make_user):
    owner = make_user("no_kitchen", Role.RESTAURANT)
    with pytest.raises(NotFoundError):
        boxes.create_box(db, owner, BoxCreate(title="Box", price=Decimal("1.00"), quantity=1))


def test_quantity_update_writes_one_audit_row(db, pasta, make_box):
    owner, restaurant_id = pasta
    box_id = make_box(restaurant_id, quantity=10)

    updated = boxes.update_box(db, owner, box_id, BoxUpdate(quantity=4))

    assert updated["quantity"] == 4
    [command] = audit_rows(db, box_id)
    assert (command["type"], command["quantity"], command["previous_quantity"]) == ("decrease", 6, 10)


def test_non_quantity_update_writes_no_audit_row(db, pasta, make_box):
    owner, restaurant_id = pasta
    box_id = make_box(restaurant_id)

    updated = boxes.update_box(db, owner, box_id, BoxUpdate(title="New Title", price=Decimal("11.00")))

    assert updated["title"] == "New Title"
    assert updated["price"] == 11.0
    assert audit_rows(db, box_id) == []


def test_update_requires_fields(db, pasta, make_box):
    owner, restaurant_id = pasta
    with pytest.raises(ValidationError):
        boxes.update_box(db, owner, make_box(restaurant_id), BoxUpdate())


def test_owner_cannot_update_foreign_box(db, pasta, sushi, make_box):
    owner, _ = pasta
    with pytest.raises(NotFoundError):
        boxes.update_box(db, owner, make_box(sushi[1]), BoxUpdate(quantity=1))


def test_adjust_inventory_rejects_negative_stock(db, pasta, make_box, fetch_box):
    owner, restaurant_id = pasta
    box_id = make_box(restaurant_id, quantity=2)

    with pytest.raises(ValidationError) as exc:
        boxes.adjust_inventory(db, owner, box_id, InventoryAdjustment(type=InventoryType.DECREASE, quantity=3))

    assert exc.value.message == "Insufficient quantity for decrease operation"
    assert fetch_box(box_id)["quantity"] == 2


def test_restock_relists_sold_out_box(db, pasta, make_box):
    owner, restaurant_id = pasta
    box_id = make_box(restaurant_id, quantity=0, is_available=False)

    result = boxes.adjust_inventory(db, owner, box_id, InventoryAdjustment(type=InventoryType.INCREASE, quantity=5))

    assert result["box"]["quantity"] == 5
    assert result["box"]["isAvailable"] is True
    assert result["inventoryCommand"]["previousQuantity"] == 0
    assert [c["type"] for c in boxes.inventory_history(db, owner, box_id)] == ["increase"]


def test_delete_box_refused_with_active_orders(db, payments, customer, pasta, make_box):
    owner, restaurant_id = pasta
    box_id = make_box(restaurant_id)
    placed = orders.create_bulk_orders(db, payments, customer, BulkOrderRequest(
        items=[OrderLine(box_id=box_id, quantity=1)],
    ))

    with pytest.raises(ValidationError) as exc:
        boxes.delete_box(db, owner, box_id)
    assert exc.value.message == (
        "Cannot delete box with 1 active order(s). Please complete or cancel them first."
    )

    orders.cancel_order_by_customer(db, customer, placed["orders"][0]["id"])
    boxes.delete_box(db, owner, box_id)

    assert db.execute_query("SELECT id FROM boxes WHERE id = %s", (box_id,), fetch_one=True) is None


def test_owner_summary(db, pasta, sushi, make_box):
    owner, restaurant_id = pasta
    make_box(restaurant_id, "A", "10.00", 3)
    make_box(restaurant_id, "B", "20.00", 0)
    make_box(restaurant_id, "C", "30.00", 7, is_available=False)
    make_box(sushi[1], "Other", "99.00", 50)

    result = boxes.list_owner_boxes(db, owner)

    assert result["restaurant"]["name"] == "Pasta Palace"
    assert result["summary"] == {
        "totalBoxes": 3,
        "availableBoxes": 1,
        "totalStock": 10,
        "averagePrice": 20.0,
    }
    assert all(b["orderCount"] == 0 for b in result["boxes"])


def test_feed_orders_purchasable_first_and_filters(db, pasta, sushi, make_box):
    sold_out = make_box(pasta[1], "Carbonara Box", quantity=0)
    few = make_box(pasta[1], "Lasagna Box", quantity=2)
    many = make_box(sushi[1], "California Roll Box", quantity=9)

    feed = boxes.get_feed(db)
    assert [b["id"] for b in feed["boxes"]] == [many, few, sold_out]

    available = boxes.get_feed(db, category=FeedCategory.AVAILABLE)
    assert [b["id"] for b in available["boxes"]] == [many, few]

    gone = boxes.get_feed(db, category="sold-out")
    assert [b["id"] for b in gone["boxes"]] == [sold_out]

    by_name = boxes.get_feed(db, search="LASAGNA")
    assert [b["id"] for b in by_name["boxes"]] == [few]

    by_restaurant = boxes.get_feed(db, restaurant="sushi")
    assert [b["id"] for b in by_restaurant["boxes"]] == [many]
    assert by_restaurant["filters"] == {"search": None, "category": "all", "restaurant": "sushi"}


def test_feed_search_treats_wildcards_literally(db, pasta, make_box):
    plain = make_box(pasta[1], "Carbonara Box")
    percent = make_box(pasta[1], "100% Veggie Box")
    underscored = make_box(pasta[1], "Chef_Special Box")

    assert [b["id"] for b in boxes.get_feed(db, search="%")["boxes"]] == [percent]
    assert [b["id"] for b in boxes.get_feed(db, search="_")["boxes"]] == [underscored]
    assert boxes.get_feed(db, search="carbonara")["boxes"][0]["id"] == plain
    assert boxes.get_feed(db, restaurant="%")["boxes"] == []
    assert boxes.list_boxes(db, search="_")["pagination"]["total"] == 1


def test_feed_pagination(db, pasta, make_box):
    for i in range(5):
        make_box(pasta[1], f"Box {i}", quantity=i + 1)

    first = boxes.get_feed(db, page=1, limit=2)
    last = boxes.get_feed(db, page=3, limit=2)

    assert first["pagination"] == {"page": 1, "limit": 2, "total": 5, "totalPages": 3, "hasMore": True}
    assert len(last["boxes"]) == 1
    assert last["pagination"]["hasMore"] is False


def test_boxes_by_ids(db, pasta, make_box):
    ids = [make_box(pasta[1], f"Box {i}") for i in range(3)]

    result = boxes.get_boxes_by_ids(db, [ids[2], ids[0], 12345])

    assert [b["id"] for b in result["boxes"]] == [ids[0], ids[2]]
    assert result["requestedCount"] == 3
    assert result["foundCount"] == 2

    with pytest.raises(ValidationError):
        boxes.get_boxes_by_ids(db, list(range(1, 102)))


def test_restaurant_pages(db, pasta, sushi, make_box):
    make_box(pasta[1], "A", quantity=0)
    make_box(pasta[1], "B", quantity=3)

    listing = boxes.list_restaurants(db)
    counts = {r["name"]: r["boxCount"] for r in listing}
    assert counts == {"Pasta Palace": 2, "Sushi Zen": 0}

    page = boxes.get_restaurant(db, pasta[1])
    assert [b["title"] for b in page["boxes"]] == ["B", "A"]

    with pytest.raises(NotFoundError):
        boxes.get_restaurant(db, 4242)
