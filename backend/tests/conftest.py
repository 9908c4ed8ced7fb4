"""
Pytest configuration and shared test helpers for backend tests.
"""
import os
import sys
from pathlib import Path

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

import pytest
from datetime import datetime, timezone

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app)."""
    app.dependency_overrides.clear()
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_order_doc(
    order_id="o1",
    items=None,
    payment_status="paid",
    status="pending",
    order_number=None,
    created_at=None,
    version=0,
):
    """Build an `orders` document as stored in MongoDB."""
    return {
        "_id": order_id,
        "orderNumber": order_number or f"ORD-1700000000000-{order_id.upper()[:5]}",
        "items": items if items is not None else [],
        "shippingAddress": {
            "firstName": "Ada",
            "lastName": "Lovelace",
            "street": "1 Analytical Way",
            "city": "London",
            "state": "LDN",
            "zipCode": "N1 1AA",
            "country": "UK",
            "phone": "+44 20 0000 0000",
        },
        "payment": {"method": "card", "status": payment_status},
        "status": status,
        "notes": None,
        "createdAt": created_at or datetime(2024, 3, 5, 10, 30, tzinfo=timezone.utc),
        "__v": version,
    }


def make_item(email, name="Wholesaler", product_code="SKU-1", notified=False, product="p1", quantity=1, price=10.0):
    return {
        "_id": f"item-{email}-{product_code}",
        "product": product,
        "quantity": quantity,
        "price": price,
        "wholesaler": {
            "name": name,
            "email": email,
            "productCode": product_code,
            "notified": notified,
            "notifiedAt": datetime(2024, 3, 5, 11, 0, tzinfo=timezone.utc) if notified else None,
            "notificationAttempts": 1 if notified else 0,
        },
    }
