from postmarker.core import PostmarkClient
from database import database
from models import MessageLog
from datetime import datetime, timezone
import asyncio
import os
import uuid
import logging
from typing import Optional, Dict, Any, Tuple

logger = logging.getLogger(__name__)

DEFAULT_SENDER = os.getenv("EMAIL_SENDER", "orders@holisticstore.example")
POSTMARK_MESSAGE_STREAM = os.getenv("POSTMARK_MESSAGE_STREAM", "outbound").strip() or "outbound"
STORE_NAME = os.getenv("STORE_NAME", "Holistic Store")


def build_wholesaler_email(order_data: Dict[str, Any]) -> Tuple[str, str]:
    """Return (subject, plain-text body) for a wholesaler fulfillment request."""
    order_number = order_data.get("orderNumber")
    address = order_data.get("shippingAddress") or {}
    notes = order_data.get("notes")

    product_lines = []
    for item in order_data.get("items") or []:
        wholesaler = item.get("wholesaler") or {}
        product_lines.append(
            f"- Product Code: {wholesaler.get('productCode') or 'N/A'}\n"
            f"  Quantity: {item.get('quantity')}\n"
            f"  Product: {item.get('productName') or 'N/A'}"
        )

    address_lines = [
        f"{address.get('firstName') or ''} {address.get('lastName') or ''}".strip(),
        address.get("street") or "",
        f"{address.get('city') or ''}, {address.get('state') or ''} {address.get('zipCode') or ''}".strip(),
        address.get("country") or "",
    ]
    if address.get("phone"):
        address_lines.append(f"Phone: {address['phone']}")

    sections = [
        "Dear Wholesaler,",
        "We have received a new order that requires fulfillment. Please process and ship "
        "the following items directly to the customer.",
        f"ORDER DETAILS:\nOrder Number: {order_number}\nOrder Date: {order_data.get('orderDate')}",
        "SHIPPING ADDRESS:\n" + "\n".join(line for line in address_lines if line and line != ","),
        "PRODUCTS TO SHIP:\n" + "\n\n".join(product_lines),
    ]
    if notes:
        sections.append(f"SPECIAL NOTES:\n{notes}")
    sections.append("Please confirm receipt of this order and provide tracking information once shipped.")
    sections.append(f"Best regards,\n{STORE_NAME} Team")

    return f"New Order - {order_number}", "\n\n".join(sections)


class WholesalerEmailService:
    def __init__(self, server_token: Optional[str] = None):
        postmark_token = server_token or os.getenv("POSTMARK_SERVER_TOKEN")
        if not postmark_token:
            logger.warning("POSTMARK_SERVER_TOKEN not set - wholesaler emails will be logged but not sent")
            self.client = None
        else:
            self.client = PostmarkClient(server_token=postmark_token)
            logger.info("Postmark email client initialized")

    async def send_wholesaler_notification(self, wholesaler_email: str, order_data: Dict[str, Any]) -> Dict[str, Any]:
        """Send one fulfillment email. Returns {success, messageId} or {success: False, error}."""
        subject, text_body = build_wholesaler_email(order_data)
        message_log = MessageLog(
            recipient=wholesaler_email,
            subject=subject,
            order_number=order_data.get("orderNumber"),
        )

        try:
            if self.client:
                # postmarker is synchronous
                response = await asyncio.to_thread(
                    self.client.emails.send,
                    From=DEFAULT_SENDER,
                    To=wholesaler_email,
                    Subject=subject,
                    TextBody=text_body,
                    Tag=message_log.tag,
                    MessageStream=POSTMARK_MESSAGE_STREAM,
                )
                message_log.provider_message_id = response["MessageID"]
                logger.info(f"Wholesaler email sent to {wholesaler_email}: {message_log.provider_message_id}")
            else:
                # Dev mode - just log
                message_log.provider_message_id = f"dev-{uuid.uuid4()}"
                logger.info(f"[DEV MODE] Wholesaler email logged (not sent) to {wholesaler_email}: {subject}")
            message_log.status = "sent"
            message_log.sent_at = datetime.now(timezone.utc)
        except Exception as e:
            message_log.status = "failed"
            message_log.error_message = str(e)[:500]
            message_log.provider_error_type = type(e).__name__
            logger.error(f"Failed to send wholesaler email to {wholesaler_email}: {e}")

        await self._store_message_log(message_log)

        if message_log.status == "sent":
            return {"success": True, "messageId": message_log.provider_message_id}
        return {"success": False, "error": message_log.error_message}

    async def _store_message_log(self, message_log: MessageLog) -> None:
        db = database.get_db()
        if db is None:
            return
        doc = message_log.model_dump()
        for key in ["created_at", "sent_at"]:
            if isinstance(doc.get(key), datetime):
                doc[key] = doc[key].isoformat()
        try:
            await db.message_logs.insert_one(doc)
        except Exception as e:
            logger.warning(f"Failed to write message log for {message_log.recipient}: {e}")


wholesaler_email_service = WholesalerEmailService()
