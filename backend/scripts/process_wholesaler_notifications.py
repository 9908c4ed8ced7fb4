"""
Send outstanding wholesaler notifications (cron / operator use).

Usage (from backend/):
  python -m scripts.process_wholesaler_notifications                  # sweep all eligible orders
  python -m scripts.process_wholesaler_notifications --order-id <id>  # one order only
"""
import asyncio
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from database import database


def print_results(results) -> None:
    for entry in results or []:
        line = f"  [{entry.get('status')}] {entry.get('wholesalerEmail') or '-'}"
        if entry.get("orderNumber"):
            line = f"{line} order={entry['orderNumber']}"
        if entry.get("messageId"):
            line = f"{line} message_id={entry['messageId']}"
        if entry.get("error"):
            line = f"{line} error={entry['error']}"
        print(line)


async def run(order_id: str = None) -> bool:
    from services.wholesaler_notification_service import wholesaler_notification_service

    if order_id:
        result = await wholesaler_notification_service.process_order_notifications(order_id)
        if not result.get("success"):
            print(f"Order {order_id}: {result.get('error')}")
            return False
        print(result.get("message") or f"Order {result.get('orderNumber')} processed")
        print_results(result.get("results"))
        return True

    result = await wholesaler_notification_service.process_pending_notifications()
    if not result.get("success"):
        print(f"Sweep failed: {result.get('error')}")
        return False
    print(
        f"Processed {result.get('processed', 0)} orders: "
        f"{result.get('successCount', 0)} sent, {result.get('errorCount', 0)} failed"
    )
    print_results(result.get("results"))
    return True


def main():
    parser = argparse.ArgumentParser(description="Process pending wholesaler notifications")
    parser.add_argument("--order-id", help="Only process this order")
    args = parser.parse_args()

    async def _():
        await database.connect()
        try:
            return await run(order_id=args.order_id)
        finally:
            await database.close()

    ok = asyncio.run(_())
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
