"""
Audit Workbook Verification Script

Checks the Excel audit export written by the Celery worker: required
columns, one confirm per order, and no order confirmed after it was
cancelled or refunded.

Run from project root: python scripts/verify.py
Start a fresh audit run with: python scripts/verify.py --reset

Author: Khalil Bannouri
Version: 4.0.0
"""

import argparse
import os
import sys
from datetime import datetime

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pandas as pd

from backend.core.config import get_settings
from backend.services.excel_manager import ExcelManager

TERMINAL_EVENTS = {"cancel", "refund"}


def verify_excel() -> bool:
    """Verify audit workbook integrity after a simulation."""
    excel_file = get_settings().excel_path

    print("=" * 60)
    print("🔍 AUDIT WORKBOOK VERIFICATION REPORT")
    print("=" * 60)
    print(f"⏰ Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"📄 File: {excel_file}")
    print("=" * 60)

    if not os.path.exists(excel_file):
        print("\n❌ Audit workbook not found!")
        print("   Run the simulation first: python scripts/simulate.py")
        return False

    try:
        df = pd.read_excel(excel_file, engine='openpyxl')
        print(f"\n✅ File loaded successfully!")
    except Exception as e:
        print(f"\n❌ Could not read audit workbook: {e}")
        return False

    ok = True

    print(f"\n📊 STATISTICS:")
    print(f"   Rows: {len(df)}")
    print(f"   Orders: {df['order_id'].nunique() if 'order_id' in df.columns else 0}")

    missing = [col for col in ExcelManager.AUDIT_COLUMNS if col not in df.columns]
    if missing:
        print(f"\n⚠️ Missing Columns: {missing}")
        return False
    print(f"✅ All audit columns present")

    if len(df) > 0:
        print(f"\n📈 EVENTS:")
        for event, count in df['event'].value_counts().items():
            print(f"   {event}: {count}")

    confirms = df[df['event'] == 'confirm']
    double = confirms['order_id'].duplicated().sum()
    if double:
        print(f"\n⚠️ {double} orders confirmed more than once!")
        ok = False
    else:
        print(f"✅ Each order confirmed at most once")

    # Rows for one order must never continue past a terminal event
    late = 0
    for _, events in df.sort_values('exported_at').groupby('order_id')['event']:
        seen_terminal = False
        for event in events:
            if seen_terminal:
                late += 1
            if event in TERMINAL_EVENTS:
                seen_terminal = True
    if late:
        print(f"⚠️ {late} events recorded after a cancel/refund!")
        ok = False
    else:
        print(f"✅ No events after cancel/refund")

    if len(confirms) > 0:
        paid = pd.to_numeric(confirms['total_price'], errors='coerce')
        discount = pd.to_numeric(confirms['discount'], errors='coerce')
        print(f"\n💰 REVENUE ({get_settings().currency}):")
        print(f"   Charged: {paid.sum():.2f}")
        print(f"   Discounts: {discount.sum():.2f}")
        print(f"   Average ticket: {paid.mean():.2f}")

    print(f"\n📋 RECENT EVENTS:")
    print("-" * 60)
    if len(df) > 0:
        cols = ['order_id', 'event', 'status', 'total_price', 'exported_at']
        print(df[cols].tail(5).to_string(index=False))

    print("\n" + "=" * 60)
    print("✅ VERIFICATION COMPLETE" if ok else "❌ VERIFICATION FAILED")
    print("=" * 60)

    return ok


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Verify the order audit workbook")
    parser.add_argument("--reset", action="store_true", help="Delete the workbook and exit")
    args = parser.parse_args()

    if args.reset:
        cleared = ExcelManager.clear_all()
        print("🧹 Audit workbook cleared" if cleared else "❌ Could not clear audit workbook")
        sys.exit(0 if cleared else 1)

    sys.exit(0 if verify_excel() else 1)
