"""
Excel Audit Export with Concurrency Control

Appends one row per committed lifecycle transition to an Excel workbook.
Several Celery workers may write at once, so every read-modify-write of
the workbook happens under a file lock.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import pandas as pd
from filelock import FileLock, Timeout

from backend.core.config import get_settings

logger = logging.getLogger(__name__)


class ExcelManager:
    """Thread- and process-safe order audit workbook."""

    AUDIT_COLUMNS = [
        "order_id",
        "event",
        "status",
        "user_id",
        "store_id",
        "dine_option",
        "order_time",
        "items",
        "item_count",
        "discount",
        "total_price",
        "user_coupon_id",
        "notes",
        "exported_at",
    ]

    @classmethod
    def _paths(cls) -> tuple[Path, Path]:
        settings = get_settings()
        workbook = Path(settings.data_directory) / settings.excel_filename
        return workbook, workbook.with_name(workbook.name + ".lock")

    @classmethod
    def _ensure_data_dir(cls, workbook: Path) -> None:
        """Create data directory if needed."""
        if not workbook.parent.exists():
            workbook.parent.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created data directory: {workbook.parent}")

    @classmethod
    def _load_or_create_df(cls, file_path: Path) -> pd.DataFrame:
        if file_path.exists():
            try:
                return pd.read_excel(file_path, engine="openpyxl")
            except Exception as e:
                logger.warning(f"Error reading {file_path}: {e}")
        return pd.DataFrame(columns=cls.AUDIT_COLUMNS)

    @classmethod
    def export_order_event(cls, snapshot: dict[str, Any]) -> dict[str, Any]:
        """
        Append an order snapshot to the audit workbook.

        Args:
            snapshot: Serialized order (see tasks.order_snapshot) plus "event"

        Returns:
            dict with success flag, message and export timestamp

        Raises:
            Timeout: the workbook lock was not acquired in time
            OSError: the data directory or workbook could not be written
        """
        workbook, lock_path = cls._paths()
        cls._ensure_data_dir(workbook)
        lock_timeout = get_settings().excel_lock_timeout

        order_id = snapshot.get("order_id", 0)
        result = {
            "success": False,
            "message": "",
            "order_id": order_id,
            "exported_at": None,
        }

        try:
            with FileLock(str(lock_path), timeout=lock_timeout):
                logger.debug(f"Lock acquired for Order #{order_id}")

                df = cls._load_or_create_df(workbook)

                export_time = datetime.now().isoformat()
                items = snapshot.get("details", [])
                new_row = {
                    "order_id": order_id,
                    "event": snapshot.get("event"),
                    "status": snapshot.get("status"),
                    "user_id": snapshot.get("user_id"),
                    "store_id": snapshot.get("store_id"),
                    "dine_option": snapshot.get("dine_option"),
                    "order_time": snapshot.get("order_time"),
                    "items": "; ".join(
                        f"{d['item_id']}:{d['size']}x{d['quantity']}@{d['unit_price']}"
                        for d in items
                    ),
                    "item_count": sum(d["quantity"] for d in items),
                    "discount": snapshot.get("discount"),
                    "total_price": snapshot.get("total_price"),
                    "user_coupon_id": snapshot.get("user_coupon_id"),
                    "notes": snapshot.get("notes"),
                    "exported_at": export_time,
                }

                df = pd.concat([df, pd.DataFrame([new_row])], ignore_index=True)
                df.to_excel(str(workbook), index=False, engine="openpyxl")

                logger.info(f"Order #{order_id} {new_row['event']} exported to Excel")

                result["success"] = True
                result["message"] = f"Order #{order_id} exported"
                result["exported_at"] = export_time

            logger.debug(f"Lock released for Order #{order_id}")

        except Timeout:
            logger.error(f"Lock timeout ({lock_timeout}s) for Order #{order_id}")
            raise

        except OSError as e:
            logger.error(f"Cannot write audit workbook for Order #{order_id}: {e}")
            raise

        except Exception as e:
            result["message"] = str(e)
            logger.exception(f"Error exporting Order #{order_id}")

        return result

    @classmethod
    def get_all_events(cls) -> list[dict[str, Any]]:
        """Read every audit row."""
        workbook, _ = cls._paths()
        if not workbook.exists():
            return []

        try:
            df = pd.read_excel(workbook, engine="openpyxl")
            return df.to_dict("records")
        except Exception as e:
            logger.error(f"Error reading audit workbook: {e}")
            return []

    @classmethod
    def clear_all(cls) -> bool:
        """Delete the workbook and its lock file."""
        workbook, lock_path = cls._paths()
        try:
            for f in (workbook, lock_path):
                if f.exists():
                    f.unlink()
            logger.info("Audit workbook cleared")
            return True
        except OSError as e:
            logger.error(f"Error clearing files: {e}")
            return False
