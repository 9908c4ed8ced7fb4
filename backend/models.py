from pydantic import BaseModel, Field, ConfigDict, field_serializer, field_validator, model_validator
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import random
import string
import time
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"

class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

class UserRole(str, Enum):
    ROLE_CUSTOMER = "ROLE_CUSTOMER"
    ROLE_ADMIN = "ROLE_ADMIN"

class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"

class RecoveryStatus(str, Enum):
    QUEUED_FOR_RETRY = "queued_for_retry"
    ALTERNATIVE_METHOD_ATTEMPTED = "alternative_method_attempted"
    CUSTOMER_NOTIFIED = "customer_notified"
    ESCALATED = "escalated"

class NotificationResultStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"

class AuditAction(str, Enum):
    # Wholesaler notifications
    WHOLESALER_NOTIFICATION_SENT = "WHOLESALER_NOTIFICATION_SENT"
    WHOLESALER_NOTIFICATION_FAILED = "WHOLESALER_NOTIFICATION_FAILED"
    WHOLESALER_NOTIFICATION_SWEEP = "WHOLESALER_NOTIFICATION_SWEEP"

    # Route Guards
    ROUTE_GUARD_REDIRECT = "ROUTE_GUARD_REDIRECT"


UNKNOWN_PRODUCT_NAME = "Unknown Product"


def generate_order_number() -> str:
    """ORD-<epoch ms>-<5 uppercase alphanumerics>, assigned once at creation."""
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=5))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


def format_order_date(value: Optional[datetime]) -> str:
    """Short month/day/year date used in wholesaler emails."""
    if not value:
        return ""
    return f"{value.month}/{value.day}/{value.year}"


# ============================================================================
# ORDER AGGREGATE
# ============================================================================

class WholesalerInfo(BaseModel):
    """Wholesaler notification record, copied from the product at order time."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: Optional[str] = None
    email: Optional[str] = None
    product_code: Optional[str] = Field(default=None, alias="productCode")
    notified: bool = False
    notified_at: Optional[datetime] = Field(default=None, alias="notifiedAt")
    notification_attempts: int = Field(default=0, alias="notificationAttempts")
    last_notification_error: Optional[str] = Field(default=None, alias="lastNotificationError")


class OrderItem(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Optional[Any] = Field(default=None, alias="_id")
    product: Optional[Any] = None
    # Resolved from the products collection; never persisted
    product_name: Optional[str] = Field(default=None, alias="productName", exclude=True)
    quantity: int = 1
    price: float = 0
    wholesaler: WholesalerInfo = Field(default_factory=WholesalerInfo)

    @field_validator("wholesaler", mode="before")
    @classmethod
    def _empty_wholesaler(cls, value):
        return value if value is not None else {}

    @field_serializer("id", "product", when_used="json")
    def _serialize_ref(self, value):
        return str(value) if value is not None else None

    @property
    def awaiting_notification(self) -> bool:
        return not self.wholesaler.notified and bool(self.wholesaler.email)

    @property
    def display_name(self) -> str:
        return self.product_name or UNKNOWN_PRODUCT_NAME

    def to_notification_dict(self) -> Dict[str, Any]:
        return {
            "_id": str(self.id) if self.id is not None else None,
            "product": str(self.product) if self.product is not None else None,
            "productName": self.display_name,
            "quantity": self.quantity,
            "price": self.price,
            "wholesaler": self.wholesaler.model_dump(by_alias=True),
        }


class ShippingAddress(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = Field(default=None, alias="zipCode")
    country: str = "US"
    phone: Optional[str] = None


class OrderPayment(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    method: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    paid_at: Optional[datetime] = Field(default=None, alias="paidAt")


@dataclass
class WholesalerGroup:
    """Unnotified items of one order destined for the same wholesaler email."""
    wholesaler_name: Optional[str]
    items: List[OrderItem] = field(default_factory=list)


class Order(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Optional[Any] = Field(default=None, alias="_id")
    order_number: Optional[str] = Field(default=None, alias="orderNumber")
    items: List[OrderItem] = Field(default_factory=list)
    shipping_address: Optional[ShippingAddress] = Field(default=None, alias="shippingAddress")
    payment: OrderPayment = Field(default_factory=OrderPayment)
    status: OrderStatus = OrderStatus.PENDING
    notes: Optional[str] = None
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")
    # Stored as `__v`; checked and incremented on every save
    version: int = Field(default=0, alias="__v")

    @field_serializer("id", when_used="json")
    def _serialize_id(self, value):
        return str(value) if value is not None else None

    @model_validator(mode="after")
    def _order_number_from_id(self):
        # Stored orders without a number are reported under their id
        if not self.order_number and self.id is not None:
            self.order_number = str(self.id)
        return self

    @classmethod
    def new(cls, **data) -> "Order":
        """Create a not-yet-stored order: number and creation time are assigned here only."""
        data.setdefault("orderNumber", generate_order_number())
        data.setdefault("createdAt", datetime.now(timezone.utc))
        return cls.model_validate(data)

    def has_notifiable_status(self) -> bool:
        return self.payment.status == PaymentStatus.PAID or self.status == OrderStatus.PROCESSING

    def is_eligible_for_notification(self) -> bool:
        return self.has_notifiable_status() and any(i.awaiting_notification for i in self.items)

    def all_wholesalers_notified(self) -> bool:
        return all(item.wholesaler.notified for item in self.items)

    def get_pending_notifications(self) -> List[OrderItem]:
        return [item for item in self.items if not item.wholesaler.notified]

    def pending_wholesaler_groups(self) -> Dict[str, WholesalerGroup]:
        """Group unnotified items by wholesaler email, in item scan order."""
        groups: Dict[str, WholesalerGroup] = {}
        for item in self.items:
            if not item.awaiting_notification:
                continue
            email = item.wholesaler.email
            if email not in groups:
                groups[email] = WholesalerGroup(wholesaler_name=item.wholesaler.name)
            groups[email].items.append(item)
        return groups

    def mark_wholesaler_notified(self, wholesaler_email: str, notified_at: datetime) -> int:
        """Flip every still-unnotified item of this wholesaler to notified. Returns items changed."""
        changed = 0
        for item in self.items:
            wholesaler = item.wholesaler
            if wholesaler.email != wholesaler_email or wholesaler.notified:
                continue
            wholesaler.notified = True
            wholesaler.notified_at = notified_at
            wholesaler.notification_attempts += 1
            wholesaler.last_notification_error = None
            changed += 1
        return changed

    def record_wholesaler_failure(self, wholesaler_email: str, error: str) -> int:
        changed = 0
        for item in self.items:
            wholesaler = item.wholesaler
            if wholesaler.email != wholesaler_email or wholesaler.notified:
                continue
            wholesaler.notification_attempts += 1
            wholesaler.last_notification_error = error
            changed += 1
        return changed

    def build_notification_payload(self, group: WholesalerGroup) -> Dict[str, Any]:
        return {
            "orderNumber": self.order_number,
            "orderDate": format_order_date(self.created_at),
            "shippingAddress": self.shipping_address.model_dump(by_alias=True) if self.shipping_address else None,
            "items": [item.to_notification_dict() for item in group.items],
            "notes": self.notes,
        }

    def to_public_dict(self) -> Dict[str, Any]:
        """Customer-facing view: wholesaler contact details removed."""
        data = self.model_dump(by_alias=True, mode="json")
        for item in data.get("items", []):
            wholesaler = item.get("wholesaler") or {}
            item["wholesaler"] = {
                "notified": wholesaler.get("notified", False),
                "notifiedAt": wholesaler.get("notifiedAt"),
            }
        return data


# ============================================================================
# AUDIT
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class MessageLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    provider_message_id: Optional[str] = None
    recipient: str
    subject: str
    order_number: Optional[str] = None
    tag: str = "wholesaler-order"
    status: str = "queued"
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    provider_error_type: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
