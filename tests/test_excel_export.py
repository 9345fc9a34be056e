from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import pandas as pd
import pytest

from backend.core.config import get_settings
from backend.models import DineOption, ItemSize, OrderStatus
from backend.services.excel_manager import ExcelManager
from backend.tasks import export_order_event, order_snapshot


def make_order(status=OrderStatus.IN_PROGRESS):
    detail = SimpleNamespace(
        detail_id=1, item_id=3, quantity=2, size=ItemSize.SMALL, unit_price=Decimal("5.00")
    )
    return SimpleNamespace(
        order_id=7,
        user_id=1,
        store_id=1,
        status=status,
        dine_option=DineOption.TAKEAWAY,
        order_time=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        notes="No onions",
        discount=Decimal("3.00"),
        total_price=Decimal("7.00"),
        user_coupon_id=11,
        details=[detail],
    )


def test_order_snapshot_is_json_safe():
    snapshot = order_snapshot(make_order(), "confirm")

    assert snapshot["event"] == "confirm"
    assert snapshot["status"] == "in_progress"
    assert snapshot["total_price"] == "7.00"
    assert snapshot["details"] == [
        {"detail_id": 1, "item_id": 3, "quantity": 2, "size": "small", "unit_price": "5.00"}
    ]


def test_export_appends_rows(data_dir):
    first = ExcelManager.export_order_event(order_snapshot(make_order(), "confirm"))
    second = ExcelManager.export_order_event(
        order_snapshot(make_order(OrderStatus.CANCELLED), "cancel")
    )

    assert first["success"] and second["success"]
    workbook = data_dir / "order_audit.xlsx"
    assert workbook.exists()

    df = pd.read_excel(workbook, engine="openpyxl")
    assert list(df.columns) == ExcelManager.AUDIT_COLUMNS
    assert list(df["event"]) == ["confirm", "cancel"]
    assert df.loc[0, "items"] == "3:smallx2@5.00"
    assert df.loc[0, "item_count"] == 2


def test_get_all_events_and_clear(data_dir):
    assert ExcelManager.get_all_events() == []

    ExcelManager.export_order_event(order_snapshot(make_order(), "confirm"))
    events = ExcelManager.get_all_events()
    assert len(events) == 1
    assert events[0]["order_id"] == 7

    assert ExcelManager.clear_all()
    assert not (data_dir / "order_audit.xlsx").exists()


def test_export_task_runs_eagerly(data_dir):
    result = export_order_event.apply(args=(order_snapshot(make_order(), "complete"),)).get()

    assert result["success"]
    assert result["order_id"] == 7
    assert "processing_time_seconds" in result


def test_export_raises_when_data_directory_is_a_file(tmp_path, monkeypatch):
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("")
    monkeypatch.setenv("DATA_DIRECTORY", str(blocker))
    monkeypatch.setenv("EXCEL_LOCK_TIMEOUT", "1")
    get_settings.cache_clear()
    try:
        with pytest.raises(OSError):
            ExcelManager.export_order_event(order_snapshot(make_order(), "confirm"))
    finally:
        get_settings.cache_clear()


def test_export_task_retries_io_failures(data_dir, monkeypatch):
    calls = []
    real_export = ExcelManager.export_order_event

    def flaky_export(snapshot):
        calls.append(snapshot["order_id"])
        if len(calls) < 3:
            raise OSError("disk unavailable")
        return real_export(snapshot)

    monkeypatch.setattr(ExcelManager, "export_order_event", flaky_export)

    result = export_order_event.apply(args=(order_snapshot(make_order(), "confirm"),))

    assert result.state == "SUCCESS"
    assert result.get()["success"]
    assert len(calls) == 3
    assert len(ExcelManager.get_all_events()) == 1


def test_export_task_fails_after_exhausting_retries(data_dir, monkeypatch):
    calls = []

    def broken_export(snapshot):
        calls.append(snapshot["order_id"])
        raise OSError("disk unavailable")

    monkeypatch.setattr(ExcelManager, "export_order_event", broken_export)

    result = export_order_event.apply(args=(order_snapshot(make_order(), "confirm"),))

    assert result.state == "FAILURE"
    assert isinstance(result.result, OSError)
    assert len(calls) == 1 + export_order_event.max_retries
