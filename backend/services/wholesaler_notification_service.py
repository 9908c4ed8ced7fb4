"""
Wholesaler Notification Service
Notifies external wholesalers by email when their products are ordered.

Items of one order that share a wholesaler email are sent together in one
message. An item's `wholesaler.notified` flag only ever moves false -> true,
so re-running a sweep never re-sends to a wholesaler that was already told.
Failed groups stay unnotified and are picked up by the next sweep.

Each order is processed under a per-order lease and saved with a version
check, so a scheduled sweep and a manual retry of the same order cannot both
send.
"""
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from models import AuditAction, NotificationResultStatus, Order
from services.error_recovery import CircuitOpenError, NotificationSendError, WholesalerErrorRecovery, error_recovery
from services.order_store import LEASE_SECONDS, OrderConcurrencyError, OrderStore
from services.wholesaler_email_service import wholesaler_email_service
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

MAX_SAVE_ATTEMPTS = 3
ORDER_BUSY_ERROR = "Order is already being processed"


@dataclass
class _GroupOutcome:
    wholesaler_email: str
    success: bool
    at: datetime
    error: Optional[str] = None
    # False when the circuit was open and nothing reached the provider
    attempted: bool = True

    def apply(self, order: Order) -> None:
        if self.success:
            order.mark_wholesaler_notified(self.wholesaler_email, self.at)
        elif self.attempted:
            order.record_wholesaler_failure(self.wholesaler_email, self.error)


class WholesalerNotificationService:
    def __init__(
        self,
        order_store: Optional[OrderStore] = None,
        transport=None,
        recovery: Optional[WholesalerErrorRecovery] = None,
        lease_seconds: int = LEASE_SECONDS,
    ):
        self.order_store = order_store or OrderStore()
        self.transport = transport or wholesaler_email_service
        self.recovery = recovery or error_recovery.wholesaler
        self.lease_seconds = lease_seconds
        self._lease_owner = f"wholesaler-notifier-{uuid.uuid4()}"

    async def process_pending_notifications(self) -> Dict[str, Any]:
        """Sweep every eligible order, oldest first, one wholesaler group at a time."""
        try:
            logger.info("Checking for orders requiring wholesaler notifications...")
            orders = await self.order_store.find_orders_needing_notification()
        except Exception as e:
            logger.error(f"Error in process_pending_notifications: {e}")
            return {"success": False, "error": str(e)}

        if not orders:
            logger.info("No orders requiring wholesaler notifications found.")
            return {"success": True, "processed": 0}

        logger.info(f"Found {len(orders)} orders requiring notifications.")

        success_count = 0
        error_count = 0
        results: List[Dict[str, Any]] = []

        for order in orders:
            try:
                async with self._order_lease(order.id) as acquired:
                    if not acquired:
                        logger.info(f"Skipping order {order.order_number}: {ORDER_BUSY_ERROR.lower()}")
                        results.append({
                            "orderNumber": order.order_number,
                            "status": NotificationResultStatus.SKIPPED.value,
                            "error": ORDER_BUSY_ERROR,
                        })
                        continue

                    # Re-read under the lease; a previous holder may have finished this order
                    current = await self.order_store.find_order_by_id(order.id)
                    if current is None or not current.is_eligible_for_notification():
                        continue

                    order_results = await self._notify_order(
                        current, include_order_number=True, save_each_group=True
                    )
            except Exception as e:
                logger.error(f"Error processing order {order.order_number}: {e}")
                error_count += 1
                results.append({
                    "orderNumber": order.order_number,
                    "status": NotificationResultStatus.ERROR.value,
                    "error": str(e),
                })
                continue

            for entry in order_results:
                if entry["status"] == NotificationResultStatus.SUCCESS.value:
                    success_count += 1
                else:
                    error_count += 1
            results.extend(order_results)

        logger.info(f"Notification processing complete. Success: {success_count}, Errors: {error_count}")
        await create_audit_log(
            action=AuditAction.WHOLESALER_NOTIFICATION_SWEEP,
            actor_id=self._lease_owner,
            metadata={"processed": len(orders), "success_count": success_count, "error_count": error_count},
        )

        return {
            "success": True,
            "processed": len(orders),
            "successCount": success_count,
            "errorCount": error_count,
            "results": results,
        }

    async def process_order_notifications(self, order_id: Any) -> Dict[str, Any]:
        """Send every outstanding wholesaler notification of one order, saving once at the end."""
        try:
            order = await self.order_store.find_order_by_id(order_id)
            if not order:
                return {"success": False, "error": "Order not found"}

            if not order.has_notifiable_status():
                return {
                    "success": False,
                    "error": "Order must be paid or processing to send wholesaler notifications",
                }

            async with self._order_lease(order.id) as acquired:
                if not acquired:
                    return {"success": False, "error": ORDER_BUSY_ERROR}

                order = await self.order_store.find_order_by_id(order.id) or order
                if not order.pending_wholesaler_groups():
                    return {
                        "success": True,
                        "message": "No pending wholesaler notifications for this order",
                        "results": [],
                    }

                results = await self._notify_order(order, include_order_number=False, save_each_group=False)

            return {
                "success": True,
                "orderNumber": order.order_number,
                "results": results,
            }
        except Exception as e:
            logger.error(f"Error processing wholesaler notifications for order {order_id}: {e}")
            return {"success": False, "error": str(e)}

    async def _notify_order(self, order: Order, include_order_number: bool, save_each_group: bool) -> List[Dict[str, Any]]:
        groups = order.pending_wholesaler_groups()
        results: List[Dict[str, Any]] = []
        unsaved: List[_GroupOutcome] = []

        for wholesaler_email, group in groups.items():
            order_data = order.build_notification_payload(group)
            logger.info(f"Sending notification to {wholesaler_email} for order {order.order_number}...")

            entry: Dict[str, Any] = {"orderNumber": order.order_number} if include_order_number else {}
            entry["wholesalerEmail"] = wholesaler_email

            try:
                send_result = await self.recovery.send_notification(
                    self._send_operation(wholesaler_email), order_data
                )
            except Exception as e:
                error = str(e)
                outcome = _GroupOutcome(
                    wholesaler_email,
                    success=False,
                    at=datetime.now(timezone.utc),
                    error=error,
                    attempted=not isinstance(e, CircuitOpenError),
                )
                logger.error(f"Failed to notify {wholesaler_email} for order {order.order_number}: {error}")
                entry.update({
                    "status": NotificationResultStatus.ERROR.value,
                    "error": error,
                    "recovery": self.recovery.handle_notification_failure(
                        e, {"orderNumber": order.order_number, "wholesalerEmail": wholesaler_email}
                    ),
                })
                await create_audit_log(
                    action=AuditAction.WHOLESALER_NOTIFICATION_FAILED,
                    actor_id=self._lease_owner,
                    resource_type="order",
                    resource_id=str(order.id),
                    metadata={"wholesaler_email": wholesaler_email, "error": error},
                )
            else:
                outcome = _GroupOutcome(wholesaler_email, success=True, at=datetime.now(timezone.utc))
                logger.info(f"Successfully notified {wholesaler_email} for order {order.order_number}")
                entry.update({
                    "status": NotificationResultStatus.SUCCESS.value,
                    "messageId": send_result.get("messageId"),
                })
                await create_audit_log(
                    action=AuditAction.WHOLESALER_NOTIFICATION_SENT,
                    actor_id=self._lease_owner,
                    resource_type="order",
                    resource_id=str(order.id),
                    metadata={"wholesaler_email": wholesaler_email, "message_id": send_result.get("messageId")},
                )

            outcome.apply(order)
            unsaved.append(outcome)
            results.append(entry)

            if save_each_group:
                order = await self._save(order, unsaved)
                unsaved = []

        if unsaved:
            await self._save(order, unsaved)
        return results

    def _send_operation(self, wholesaler_email: str):
        async def operation(order_data: Dict[str, Any]) -> Dict[str, Any]:
            result = await self.transport.send_wholesaler_notification(wholesaler_email, order_data)
            if not result.get("success"):
                raise NotificationSendError(result.get("error") or "Wholesaler notification failed")
            return result
        return operation

    async def _save(self, order: Order, outcomes: List[_GroupOutcome]) -> Order:
        """Save, and on a version conflict re-apply this run's outcomes to a fresh copy."""
        for attempt in range(1, MAX_SAVE_ATTEMPTS + 1):
            try:
                return await self.order_store.save_order(order)
            except OrderConcurrencyError as e:
                if attempt >= MAX_SAVE_ATTEMPTS:
                    raise
                logger.warning(f"{e}; reloading and re-applying notification outcomes (attempt {attempt})")
                fresh = await self.order_store.find_order_by_id(order.id)
                if fresh is None:
                    raise
                for outcome in outcomes:
                    outcome.apply(fresh)
                order = fresh
        return order

    @asynccontextmanager
    async def _order_lease(self, order_id: Any):
        acquired = await self.order_store.acquire_order_lease(order_id, self._lease_owner, self.lease_seconds)
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    await self.order_store.release_order_lease(order_id, self._lease_owner)
                except Exception as e:
                    # The lease expires on its own
                    logger.warning(f"Failed to release wholesaler notification lease for order {order_id}: {e}")


wholesaler_notification_service = WholesalerNotificationService()
