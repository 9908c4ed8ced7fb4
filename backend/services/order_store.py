"""
Order store for the wholesaler notification subsystem.

Reads and writes the `orders` collection. Saves are guarded by the order's
version key (`__v`): a save only applies if nobody else saved the order since
it was loaded. Processing of a single order is additionally serialized with a
short-lived lease in `wholesaler_notification_leases`.
"""
import os
import logging
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pydantic import ValidationError
from pymongo.errors import DuplicateKeyError

from database import database
from models import Order, OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)

LEASE_SECONDS = int(os.getenv("WHOLESALER_LEASE_SECONDS", "300"))

# Paid or processing orders with at least one unnotified item that has a wholesaler email
NOTIFICATION_ELIGIBLE_QUERY = {
    "$or": [
        {"payment.status": PaymentStatus.PAID.value},
        {"status": OrderStatus.PROCESSING.value},
    ],
    "items": {
        "$elemMatch": {
            "wholesaler.notified": False,
            "wholesaler.email": {"$nin": [None, ""]},
        }
    },
}


class OrderConcurrencyError(Exception):
    """The order was saved by someone else after it was loaded."""


def _id_query(order_id: Any) -> Optional[Dict[str, Any]]:
    if order_id is None or order_id == "":
        return None
    if isinstance(order_id, ObjectId):
        return {"_id": order_id}
    order_id = str(order_id)
    if ObjectId.is_valid(order_id):
        return {"_id": {"$in": [ObjectId(order_id), order_id]}}
    return {"_id": order_id}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _decode_orders(docs: List[Dict[str, Any]]) -> List[Order]:
    """Validate each stored order on its own; malformed documents are logged and left out."""
    orders = []
    for doc in docs:
        try:
            orders.append(Order.model_validate(doc))
        except ValidationError as e:
            logger.error(
                f"Skipping malformed order {doc.get('orderNumber') or doc.get('_id')}: "
                f"{e.error_count()} validation error(s): {e}"
            )
    return orders


class OrderStore:
    def __init__(self, db=None):
        self._db = db

    def _get_db(self):
        return self._db if self._db is not None else database.get_db()

    async def _resolve_product_names(self, db, orders: List[Order]) -> None:
        product_ids = {
            item.product
            for order in orders
            for item in order.items
            if item.product is not None
        }
        if not product_ids:
            return
        cursor = db.products.find({"_id": {"$in": list(product_ids)}}, {"name": 1})
        products = await cursor.to_list(length=None)
        names = {p["_id"]: p.get("name") for p in products}
        for order in orders:
            for item in order.items:
                item.product_name = names.get(item.product)

    async def find_orders_needing_notification(self) -> List[Order]:
        """Eligible orders, oldest first, with product names resolved."""
        db = self._get_db()
        cursor = db.orders.find(NOTIFICATION_ELIGIBLE_QUERY).sort("createdAt", 1)
        docs = await cursor.to_list(length=None)
        orders = _decode_orders(docs)
        await self._resolve_product_names(db, orders)
        return orders

    async def find_order_by_id(self, order_id: Any, resolve_products: bool = True) -> Optional[Order]:
        query = _id_query(order_id)
        if query is None:
            return None
        db = self._get_db()
        doc = await db.orders.find_one(query)
        if not doc:
            return None
        order = Order.model_validate(doc)
        if resolve_products:
            await self._resolve_product_names(db, [order])
        return order

    async def save_order(self, order: Order) -> Order:
        """Persist the wholesaler sub-records of every item, checked against the loaded version."""
        db = self._get_db()
        now = datetime.now(timezone.utc)
        updates: Dict[str, Any] = {
            f"items.{index}.wholesaler": item.wholesaler.model_dump(by_alias=True)
            for index, item in enumerate(order.items)
        }
        updates["updatedAt"] = now

        query: Dict[str, Any] = {"_id": order.id}
        if order.version:
            query["__v"] = order.version
        else:
            query["$or"] = [{"__v": 0}, {"__v": {"$exists": False}}]

        result = await db.orders.update_one(query, {"$set": updates, "$inc": {"__v": 1}})
        if result.matched_count == 0:
            raise OrderConcurrencyError(
                f"Order {order.order_number} was modified concurrently (version {order.version})"
            )
        order.version += 1
        order.updated_at = now
        return order

    # ============================================
    # READ-ONLY PROJECTIONS
    # ============================================

    async def find_pending_summaries(self) -> List[Dict[str, Any]]:
        db = self._get_db()
        cursor = db.orders.find(
            NOTIFICATION_ELIGIBLE_QUERY,
            {"orderNumber": 1, "createdAt": 1, "status": 1, "payment.status": 1, "items.wholesaler": 1},
        ).sort("createdAt", 1)
        docs = await cursor.to_list(length=None)

        summaries = []
        for order in _decode_orders(docs):
            summaries.append({
                "orderId": str(order.id),
                "orderNumber": order.order_number,
                "orderDate": _iso(order.created_at),
                "status": order.status.value,
                "paymentStatus": order.payment.status.value,
                "pendingWholesalers": [
                    {
                        "wholesalerName": item.wholesaler.name,
                        "wholesalerEmail": item.wholesaler.email,
                        "productCode": item.wholesaler.product_code,
                    }
                    for item in order.items
                    if item.awaiting_notification
                ],
            })
        return summaries

    async def find_order_status(self, order_id: Any) -> Optional[Dict[str, Any]]:
        order = await self.find_order_by_id(order_id, resolve_products=False)
        if not order:
            return None
        return {
            "orderNumber": order.order_number,
            "wholesalers": [
                {
                    "wholesalerName": item.wholesaler.name,
                    "wholesalerEmail": item.wholesaler.email,
                    "productCode": item.wholesaler.product_code,
                    "notified": item.wholesaler.notified,
                    "notifiedAt": _iso(item.wholesaler.notified_at),
                }
                for item in order.items
            ],
        }

    # ============================================
    # PROCESSING LEASES
    # ============================================

    async def acquire_order_lease(self, order_id: Any, owner: str, ttl_seconds: int = LEASE_SECONDS) -> bool:
        """Take the processing lease for an order. Expired leases are taken over."""
        db = self._get_db()
        key = str(order_id)
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=ttl_seconds)

        taken_over = await db.wholesaler_notification_leases.find_one_and_update(
            {"orderId": key, "expiresAt": {"$lte": now}},
            {"$set": {"owner": owner, "acquiredAt": now, "expiresAt": expires_at}},
        )
        if taken_over:
            logger.warning(f"Took over expired wholesaler notification lease for order {key} from {taken_over.get('owner')}")
            return True

        try:
            await db.wholesaler_notification_leases.insert_one({
                "orderId": key,
                "owner": owner,
                "acquiredAt": now,
                "expiresAt": expires_at,
            })
        except DuplicateKeyError:
            return False
        return True

    async def release_order_lease(self, order_id: Any, owner: str) -> None:
        db = self._get_db()
        await db.wholesaler_notification_leases.delete_one({"orderId": str(order_id), "owner": owner})
