"""
Confirm Storm Simulation

Fires many concurrent order confirmations at a menu item with scarce stock
and checks that the backend never oversells or double-charges.

Run from project root (API must be up and pointed at the same database):
    python scripts/simulate.py --customers 40 --stock 15

Author: Khalil Bannouri
Version: 4.0.0
"""

import argparse
import asyncio
import os
import random
import sys
import time
from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from sqlalchemy import select

from backend.database import get_session_maker, init_db, transaction
from backend.models import MenuItem, User

# Configuration
API_BASE_URL = "http://localhost:8001"
STORE_ID = 1
ITEM_PRICE = Decimal("18.00")
MAX_RETRIES = 3


# =============================================================================
# SEEDING
# =============================================================================

async def seed(customers: int, stock: int) -> tuple[list[int], int]:
    """Create the scarce menu item and one funded user per simulated customer."""
    await init_db()
    async with transaction(get_session_maker()) as session:
        item = MenuItem(
            store_id=STORE_ID,
            name=f"Storm Noodles {datetime.now().strftime('%H%M%S')}",
            category="noodles",
            small_price=ITEM_PRICE,
            large_price=ITEM_PRICE + Decimal("4.00"),
            stock=stock,
        )
        session.add(item)

        suffix = random.randint(1000, 9999)
        users = [
            User(
                name=f"Storm Customer {i}",
                phone=f"139{suffix}{i:04d}",
                balance=Decimal("100.00"),
            )
            for i in range(customers)
        ]
        session.add_all(users)
        await session.flush()
        return [u.user_id for u in users], item.item_id


async def read_state(user_ids: list[int], item_id: int) -> tuple[int, Decimal]:
    async with transaction(get_session_maker()) as session:
        item = await session.get(MenuItem, item_id)
        result = await session.execute(select(User).where(User.user_id.in_(user_ids)))
        balances = sum((u.balance for u in result.scalars()), Decimal("0"))
        return item.stock, balances


# =============================================================================
# ONE CUSTOMER
# =============================================================================

async def place_order(
    client: httpx.AsyncClient,
    user_id: int,
    item_id: int,
) -> dict[str, Any]:
    """Open an order, add one small item and confirm, retrying lost races."""
    headers = {"X-User-Id": str(user_id)}
    start_time = time.time()

    try:
        response = await client.post(
            f"{API_BASE_URL}/api/orders",
            json={"store_id": STORE_ID, "dine_option": "takeaway"},
            headers=headers,
        )
        response.raise_for_status()
        order_id = response.json()["order_id"]

        response = await client.post(
            f"{API_BASE_URL}/api/orders/{order_id}/items",
            json={"item_id": item_id, "quantity": 1, "size": "small"},
            headers=headers,
        )
        if response.status_code != 200:
            return {"user_id": user_id, "success": False, "error": response.json().get("error"),
                    "time": round(time.time() - start_time, 3)}

        for attempt in range(MAX_RETRIES):
            response = await client.put(
                f"{API_BASE_URL}/api/orders/{order_id}/confirm",
                headers=headers,
            )
            body = response.json()
            if response.status_code == 200:
                return {"user_id": user_id, "success": True, "order_id": order_id,
                        "total": Decimal(body["total_price"]), "attempts": attempt + 1,
                        "time": round(time.time() - start_time, 3)}
            if not body.get("retryable"):
                break
            await asyncio.sleep(0.05 * (attempt + 1))

        return {"user_id": user_id, "success": False, "error": body.get("error"),
                "time": round(time.time() - start_time, 3)}

    except Exception as e:
        return {"user_id": user_id, "success": False, "error": str(e)[:100],
                "time": round(time.time() - start_time, 3)}


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(customers: int, stock: int) -> bool:
    print("=" * 70)
    print("🔥 CONFIRM STORM - HIGH CONCURRENCY TEST")
    print("=" * 70)
    print(f"👥 Customers: {customers}")
    print(f"📦 Stock: {stock}")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    user_ids, item_id = await seed(customers, stock)
    _, balance_before = await read_state(user_ids, item_id)

    start_time = time.time()
    async with httpx.AsyncClient(timeout=30.0) as client:
        results = await asyncio.gather(*[place_order(client, uid, item_id) for uid in user_ids])
    total_time = round(time.time() - start_time, 2)

    stock_after, balance_after = await read_state(user_ids, item_id)

    successful = [r for r in results if r["success"]]
    failed = [r for r in results if not r["success"]]
    revenue = sum((r["total"] for r in successful), Decimal("0"))

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    print(f"\n✅ Confirmed: {len(successful)}/{customers}")
    print(f"❌ Rejected: {len(failed)}/{customers}")
    print(f"⏱️  Total Time: {total_time}s")
    print(f"💰 Revenue: {revenue}")

    reasons: dict[str, int] = {}
    for r in failed:
        reasons[r["error"]] = reasons.get(r["error"], 0) + 1
    for reason, count in sorted(reasons.items()):
        print(f"   {reason}: {count}")

    checks = {
        "no oversell": stock_after >= 0,
        "stock matches sales": stock - stock_after == len(successful),
        "sales capped by stock": len(successful) == min(customers, stock),
        "wallets match revenue": balance_before - balance_after == revenue,
    }

    print("\n" + "=" * 70)
    print("🔍 CONSISTENCY CHECKS")
    print("=" * 70)
    for name, ok in checks.items():
        print(f"   {'✅' if ok else '❌'} {name}")
    print("=" * 70)

    return all(checks.values())


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Confirm storm simulation")
    parser.add_argument("--customers", type=int, default=40, help="Concurrent customers")
    parser.add_argument("--stock", type=int, default=15, help="Units of the contended item")
    args = parser.parse_args()

    ok = asyncio.run(run_simulation(args.customers, args.stock))
    sys.exit(0 if ok else 1)
