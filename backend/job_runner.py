"""
Shared job runner for scheduled background jobs.
Used by the server scheduler; the operator script calls the notification service directly.
Each run_* returns a dict with "message" and "count".
"""
import logging

logger = logging.getLogger(__name__)


async def run_wholesaler_notification_sweep():
    try:
        from services.wholesaler_notification_service import wholesaler_notification_service
        result = await wholesaler_notification_service.process_pending_notifications()
        if not result.get("success"):
            raise RuntimeError(result.get("error") or "Wholesaler notification sweep failed")
        count = result.get("successCount", 0)
        errors = result.get("errorCount", 0)
        logger.info(
            f"Wholesaler notification job completed: {result.get('processed', 0)} orders, "
            f"{count} sent, {errors} failed"
        )
        return {
            "message": f"Wholesaler notifications sent: {count} ({errors} failed)",
            "count": count,
        }
    except Exception as e:
        logger.error(f"Wholesaler notification job failed: {e}")
        raise


JOB_RUNNERS = {
    "wholesaler_notification_sweep": run_wholesaler_notification_sweep,
}
