"""
Celery Tasks
Background audit export of committed order transitions.
Workbook IO failures and lock timeouts are retried with backoff.
"""

import logging
import time
from typing import Any

from filelock import Timeout

from backend.celery_worker import celery_app
from backend.models import Order
from backend.services.excel_manager import ExcelManager

logger = logging.getLogger(__name__)


def order_snapshot(order: Order, event: str) -> dict[str, Any]:
    """JSON-safe copy of an order aggregate for the export queue."""
    return {
        "event": event,
        "order_id": order.order_id,
        "user_id": order.user_id,
        "store_id": order.store_id,
        "status": order.status.value,
        "dine_option": order.dine_option.value,
        "order_time": order.order_time.isoformat() if order.order_time else None,
        "notes": order.notes,
        "discount": str(order.discount),
        "total_price": str(order.total_price),
        "user_coupon_id": order.user_coupon_id,
        "details": [
            {
                "detail_id": d.detail_id,
                "item_id": d.item_id,
                "quantity": d.quantity,
                "size": d.size.value,
                "unit_price": str(d.unit_price),
            }
            for d in order.details
        ],
    }


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(OSError, Timeout),
    retry_backoff=True
)
def export_order_event(self, snapshot: dict) -> dict:
    """
    Append an order transition to the audit workbook.

    Args:
        snapshot: Output of order_snapshot()

    Returns:
        dict: Result of the export operation
    """
    task_id = self.request.id
    order_id = snapshot.get('order_id', 'unknown')

    logger.info(f"Task {task_id}: exporting order #{order_id} ({snapshot.get('event')})")
    start_time = time.time()

    result = ExcelManager.export_order_event(snapshot)

    elapsed = round(time.time() - start_time, 3)
    result['task_id'] = task_id
    result['processing_time_seconds'] = elapsed

    if result['success']:
        logger.info(f"Task {task_id}: order #{order_id} exported in {elapsed}s")
    else:
        logger.warning(f"Task {task_id}: order #{order_id} export failed - {result['message']}")

    return result
