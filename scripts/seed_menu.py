"""
Menu Seeding Script

Creates a small demo menu for an event so orders can be placed locally.
Run from project root: python scripts/seed_menu.py --event demo-event
"""

import argparse
import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from sqlalchemy import select

from app.database import async_session_maker, init_db
from app.models import MenuItem

DEMO_MENU = [
    {"name": "Pizza Margherita", "price": 14.99, "category": "Main", "requires_prep": True},
    {"name": "Pasta Carbonara", "price": 13.99, "category": "Main", "requires_prep": True},
    {"name": "Caesar Salad", "price": 8.99, "category": "Starter", "requires_prep": True},
    {"name": "Garlic Bread", "price": 5.99, "category": "Starter", "requires_prep": True},
    {"name": "Tiramisu", "price": 7.99, "category": "Dessert", "requires_prep": False},
    {"name": "Coke", "price": 2.99, "category": "Drinks", "requires_prep": False},
    {"name": "Sparkling Water", "price": 3.49, "category": "Drinks", "requires_prep": False},
]


async def seed_menu(event_id: str) -> list[MenuItem]:
    """Insert the demo menu for ``event_id`` unless it already has items."""
    await init_db()

    async with async_session_maker() as session:
        result = await session.execute(
            select(MenuItem).where(MenuItem.event_id == event_id, MenuItem.is_deleted.is_(False))
        )
        existing = list(result.scalars().all())
        if existing:
            return existing

        items = [MenuItem(event_id=event_id, **entry) for entry in DEMO_MENU]
        session.add_all(items)
        await session.commit()
        return items


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed a demo menu")
    parser.add_argument("--event", default="demo-event", help="Event id")
    args = parser.parse_args()

    menu = asyncio.run(seed_menu(args.event))

    print("=" * 70)
    print(f"MENU FOR EVENT {args.event}")
    print("=" * 70)
    for item in menu:
        prep = "kitchen" if item.requires_prep else "bar"
        print(f"   {item.id}  {item.name:<20} ${item.price:>6.2f}  [{item.category}, {prep}]")
    print("=" * 70)
