"""
Concurrency Simulation Script

Fires many simultaneous order creations at a running service and checks
that every order got a distinct order number and that the numbers issued
form one contiguous run.
Run from project root: python scripts/simulate.py --orders 50
"""

import argparse
import asyncio
import os
import random
import re
import sys
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import jwt

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from app.core.config import get_settings
from scripts.seed_menu import seed_menu

# Configuration
API_BASE_URL = "http://localhost:4000"
TOTAL_ORDERS = 50

FIRST_NAMES = ["John", "Jane", "Mike", "Sarah", "Tom", "Emma", "David", "Lisa", "Chris", "Amy"]
REMARKS = [None, None, None, "No onions", "Extra spicy", "Gluten free"]


def staff_token(role: str = "Waiter") -> str:
    """Sign a short-lived staff token with the service's JWT_SECRET."""
    settings = get_settings()
    if not settings.jwt_secret:
        print("JWT_SECRET is not set; cannot sign a staff token")
        sys.exit(1)
    payload = {
        "user": {"id": f"sim-{role.lower()}", "role": role, "username": "simulator"},
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def generate_payload(event_id: str, menu_ids: list[str]) -> dict[str, Any]:
    """Random order for /api/orders."""
    lines = []
    for menu_id in random.sample(menu_ids, k=random.randint(1, min(3, len(menu_ids)))):
        lines.append({
            "menuItem": menu_id,
            "quantity": random.randint(1, 3),
            "remarks": random.choice(REMARKS),
        })
    return {
        "eventId": event_id,
        "tableNumber": str(random.randint(1, 30)),
        "customerName": random.choice(FIRST_NAMES),
        "items": lines,
    }


async def send_order(
    client: httpx.AsyncClient,
    order_num: int,
    payload: dict[str, Any],
    token: str,
) -> dict[str, Any]:
    """POST one order and time it."""
    start_time = time.time()
    try:
        response = await client.post(
            f"{API_BASE_URL}/api/orders",
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
            timeout=30.0,
        )
        elapsed = round(time.time() - start_time, 3)

        if response.status_code == 201:
            return {
                "order_num": order_num,
                "success": True,
                "order_number": response.json().get("orderNumber"),
                "time": elapsed,
            }
        return {
            "order_num": order_num,
            "success": False,
            "error": response.text[:100],
            "time": elapsed,
        }
    except httpx.HTTPError as e:
        return {
            "order_num": order_num,
            "success": False,
            "error": str(e)[:100],
            "time": round(time.time() - start_time, 3),
        }


def check_numbers(numbers: list[str]) -> list[str]:
    """Problems with the issued numbers: duplicates and gaps."""
    problems = []
    if len(set(numbers)) != len(numbers):
        problems.append(f"{len(numbers) - len(set(numbers))} duplicate order numbers")

    by_bucket: dict[str, list[int]] = {}
    for number in numbers:
        match = re.fullmatch(r"([A-Z]+\d{6})(\d+)", number)
        if not match:
            problems.append(f"Malformed order number {number}")
            continue
        by_bucket.setdefault(match.group(1), []).append(int(match.group(2)))

    for bucket, seqs in by_bucket.items():
        seqs.sort()
        expected = list(range(seqs[0], seqs[0] + len(seqs)))
        if seqs != expected:
            problems.append(f"Gaps in {bucket}: {seqs[0]}..{seqs[-1]} for {len(seqs)} orders")
    return problems


async def run_simulation(event_id: str, menu_ids: list[str], num_orders: int = TOTAL_ORDERS) -> bool:
    print("=" * 70)
    print("CONCURRENCY SIMULATION - ORDER NUMBERING")
    print("=" * 70)
    print(f"Total Orders: {num_orders}")
    print(f"Target: {API_BASE_URL}")
    print(f"Event: {event_id}")
    print(f"Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    token = staff_token()
    start_time = time.time()

    async with httpx.AsyncClient() as client:
        health = await client.get(f"{API_BASE_URL}/health")
        print(f"\nHealth: {health.json().get('status')} ({health.json().get('broadcaster')})")

        print("\nFiring orders...\n")
        tasks = [
            send_order(client, i + 1, generate_payload(event_id, menu_ids), token)
            for i in range(num_orders)
        ]
        results = await asyncio.gather(*tasks)

    total_time = round(time.time() - start_time, 2)
    successful = [r for r in results if r["success"]]
    failed = [r for r in results if not r["success"]]

    print("\n" + "=" * 70)
    print("SIMULATION RESULTS")
    print("=" * 70)
    print(f"\nSuccessful Orders: {len(successful)}/{num_orders}")
    print(f"Failed Orders: {len(failed)}/{num_orders}")
    print(f"Total Time: {total_time}s")

    if successful:
        times = [r["time"] for r in successful]
        print("\nPerformance Metrics:")
        print(f"   Average Response: {round(sum(times) / len(times), 3)}s")
        print(f"   Fastest: {min(times)}s")
        print(f"   Slowest: {max(times)}s")

    if failed:
        print("\nFailed Order Details (showing first 5):")
        for f in failed[:5]:
            print(f"   Order #{f['order_num']}: {f.get('error', 'Unknown error')}")

    problems = check_numbers([r["order_number"] for r in successful])
    print("\n" + "=" * 70)
    print("ORDER NUMBER VERIFICATION")
    print("=" * 70)
    if problems:
        for problem in problems:
            print(f"   FAIL: {problem}")
    else:
        numbers = sorted(r["order_number"] for r in successful)
        print(f"   OK: {len(numbers)} distinct, contiguous numbers")
        if numbers:
            print(f"   Range: {numbers[0]} .. {numbers[-1]}")
    print("=" * 70)

    return not problems and not failed


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Concurrency Simulation Script")
    parser.add_argument("--url", default=API_BASE_URL, help="Service base URL")
    parser.add_argument("--orders", type=int, default=TOTAL_ORDERS, help="Number of orders")
    parser.add_argument("--event", default="demo-event", help="Event id")
    parser.add_argument("--item", action="append", default=[], help="Menu item id (repeatable)")
    args = parser.parse_args()

    API_BASE_URL = args.url.rstrip("/")

    menu_ids = args.item
    if not menu_ids:
        # Shares DATABASE_URL with the service
        menu_ids = [item.id for item in asyncio.run(seed_menu(args.event))]

    ok = asyncio.run(run_simulation(args.event, menu_ids, num_orders=args.orders))
    sys.exit(0 if ok else 1)
