"""
OrderStore against a mocked Motor database.
- Eligibility query, oldest-first sort, product name resolution
- Version-checked save and OrderConcurrencyError on conflict
- Pending/status projections
- Lease acquire / takeover / contention
"""
import pytest
from unittest.mock import AsyncMock, MagicMock
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from conftest import make_item, make_order_doc
from models import Order
from services.order_store import NOTIFICATION_ELIGIBLE_QUERY, OrderConcurrencyError, OrderStore


def _cursor(docs):
    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.to_list = AsyncMock(return_value=docs)
    return cursor


def _db(order_docs=None, products=None):
    db = MagicMock()
    db.orders.find.return_value = _cursor(order_docs or [])
    db.products.find.return_value = _cursor(products or [])
    return db


@pytest.mark.asyncio
async def test_find_orders_needing_notification_queries_eligible_oldest_first():
    docs = [make_order_doc("o1", items=[make_item("w1@example.com", product="p1"), make_item("w2@example.com", product="gone")])]
    db = _db(docs, products=[{"_id": "p1", "name": "Rose Quartz"}])

    orders = await OrderStore(db).find_orders_needing_notification()

    db.orders.find.assert_called_once_with(NOTIFICATION_ELIGIBLE_QUERY)
    db.orders.find.return_value.sort.assert_called_once_with("createdAt", 1)
    assert [o.id for o in orders] == ["o1"]
    assert [i.display_name for i in orders[0].items] == ["Rose Quartz", "Unknown Product"]


def _bad_country_doc(order_id):
    doc = make_order_doc(order_id, items=[make_item("w2@example.com")])
    doc["shippingAddress"]["country"] = None
    return doc


@pytest.mark.asyncio
async def test_find_orders_needing_notification_skips_malformed_documents():
    docs = [make_order_doc("o1", items=[make_item("w1@example.com", product="p1")]), _bad_country_doc("o2")]
    db = _db(docs, products=[{"_id": "p1", "name": "Rose Quartz"}])

    orders = await OrderStore(db).find_orders_needing_notification()

    assert [o.id for o in orders] == ["o1"]
    assert orders[0].items[0].display_name == "Rose Quartz"


@pytest.mark.asyncio
async def test_pending_summaries_skip_malformed_documents():
    db = _db([_bad_country_doc("o2"), make_order_doc("o1", items=[make_item("w1@example.com")])])

    summaries = await OrderStore(db).find_pending_summaries()

    assert [s["orderId"] for s in summaries] == ["o1"]


def test_eligibility_query_requires_paid_or_processing_and_an_unnotified_email():
    assert {"payment.status": "paid"} in NOTIFICATION_ELIGIBLE_QUERY["$or"]
    assert {"status": "processing"} in NOTIFICATION_ELIGIBLE_QUERY["$or"]
    match = NOTIFICATION_ELIGIBLE_QUERY["items"]["$elemMatch"]
    assert match["wholesaler.notified"] is False
    assert match["wholesaler.email"] == {"$nin": [None, ""]}


@pytest.mark.asyncio
async def test_find_order_by_id_accepts_object_id_hex():
    oid = ObjectId()
    db = _db()
    db.orders.find_one = AsyncMock(return_value=make_order_doc("x", items=[]) | {"_id": oid})

    order = await OrderStore(db).find_order_by_id(str(oid))

    assert order.id == oid
    db.orders.find_one.assert_awaited_once_with({"_id": {"$in": [oid, str(oid)]}})


@pytest.mark.asyncio
async def test_find_order_by_id_returns_none_for_unknown_or_blank():
    db = _db()
    db.orders.find_one = AsyncMock(return_value=None)
    store = OrderStore(db)

    assert await store.find_order_by_id("missing") is None
    assert await store.find_order_by_id("") is None
    db.orders.find_one.assert_awaited_once_with({"_id": "missing"})


@pytest.mark.asyncio
async def test_save_order_sets_wholesaler_records_and_bumps_version():
    db = _db()
    db.orders.update_one = AsyncMock(return_value=MagicMock(matched_count=1))
    order = Order.model_validate(make_order_doc("o1", items=[make_item("w1@example.com")], version=2))

    saved = await OrderStore(db).save_order(order)

    query, update = db.orders.update_one.await_args.args
    assert query == {"_id": "o1", "__v": 2}
    assert update["$inc"] == {"__v": 1}
    assert update["$set"]["items.0.wholesaler"]["email"] == "w1@example.com"
    assert "updatedAt" in update["$set"]
    assert saved.version == 3


@pytest.mark.asyncio
async def test_save_order_treats_missing_version_as_zero():
    db = _db()
    db.orders.update_one = AsyncMock(return_value=MagicMock(matched_count=1))
    doc = make_order_doc("o1", items=[make_item("w1@example.com")])
    del doc["__v"]

    await OrderStore(db).save_order(Order.model_validate(doc))

    query = db.orders.update_one.await_args.args[0]
    assert query["$or"] == [{"__v": 0}, {"__v": {"$exists": False}}]


@pytest.mark.asyncio
async def test_save_order_raises_on_version_conflict():
    db = _db()
    db.orders.update_one = AsyncMock(return_value=MagicMock(matched_count=0))
    order = Order.model_validate(make_order_doc("o1", items=[make_item("w1@example.com")], version=5))

    with pytest.raises(OrderConcurrencyError):
        await OrderStore(db).save_order(order)
    assert order.version == 5


@pytest.mark.asyncio
async def test_pending_summaries_list_only_outstanding_wholesalers():
    docs = [make_order_doc("o1", items=[
        make_item("w1@example.com", name="One", product_code="A"),
        make_item("w2@example.com", name="Two", product_code="B", notified=True),
    ])]
    db = _db(docs)

    summaries = await OrderStore(db).find_pending_summaries()

    assert summaries == [{
        "orderId": "o1",
        "orderNumber": docs[0]["orderNumber"],
        "orderDate": "2024-03-05T10:30:00+00:00",
        "status": "pending",
        "paymentStatus": "paid",
        "pendingWholesalers": [
            {"wholesalerName": "One", "wholesalerEmail": "w1@example.com", "productCode": "A"},
        ],
    }]


@pytest.mark.asyncio
async def test_order_status_lists_every_item():
    db = _db()
    db.orders.find_one = AsyncMock(return_value=make_order_doc("o1", items=[
        make_item("w1@example.com", name="One", product_code="A", notified=True),
        make_item("w2@example.com", name="Two", product_code="B"),
    ]))

    status = await OrderStore(db).find_order_status("o1")

    assert status["wholesalers"] == [
        {"wholesalerName": "One", "wholesalerEmail": "w1@example.com", "productCode": "A",
         "notified": True, "notifiedAt": "2024-03-05T11:00:00+00:00"},
        {"wholesalerName": "Two", "wholesalerEmail": "w2@example.com", "productCode": "B",
         "notified": False, "notifiedAt": None},
    ]
    db.products.find.assert_not_called()


@pytest.mark.asyncio
async def test_acquire_lease_inserts_when_free():
    db = _db()
    db.wholesaler_notification_leases.find_one_and_update = AsyncMock(return_value=None)
    db.wholesaler_notification_leases.insert_one = AsyncMock()

    assert await OrderStore(db).acquire_order_lease("o1", "worker-a", 60) is True
    doc = db.wholesaler_notification_leases.insert_one.await_args.args[0]
    assert doc["orderId"] == "o1" and doc["owner"] == "worker-a"


@pytest.mark.asyncio
async def test_acquire_lease_takes_over_expired_lease():
    db = _db()
    db.wholesaler_notification_leases.find_one_and_update = AsyncMock(return_value={"owner": "crashed"})
    db.wholesaler_notification_leases.insert_one = AsyncMock()

    assert await OrderStore(db).acquire_order_lease("o1", "worker-a", 60) is True
    db.wholesaler_notification_leases.insert_one.assert_not_awaited()


@pytest.mark.asyncio
async def test_acquire_lease_fails_while_held():
    db = _db()
    db.wholesaler_notification_leases.find_one_and_update = AsyncMock(return_value=None)
    db.wholesaler_notification_leases.insert_one = AsyncMock(side_effect=DuplicateKeyError("dup"))

    assert await OrderStore(db).acquire_order_lease("o1", "worker-b", 60) is False


@pytest.mark.asyncio
async def test_release_lease_only_deletes_own_lease():
    db = _db()
    db.wholesaler_notification_leases.delete_one = AsyncMock()

    await OrderStore(db).release_order_lease("o1", "worker-a")

    db.wholesaler_notification_leases.delete_one.assert_awaited_once_with({"orderId": "o1", "owner": "worker-a"})
