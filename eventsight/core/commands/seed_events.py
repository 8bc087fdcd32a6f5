#!/usr/bin/env python3
# eventsight/core/commands/seed_events.py
"""
Seed sample PostHog events for local runs.

Generates a handful of shoppers with browsing, cart and checkout activity
spread over the last few days, so a discovery sweep has something to find.

Usage:
    python -m eventsight.core.commands.seed_events --users 10 --events 12
    python -m eventsight.core.commands.seed_events --users 3 --seed 42
"""

import argparse
import asyncio
import logging
import random
import sys
import uuid
from datetime import timedelta
from typing import List

from eventsight.config import settings
from eventsight.core.database.models import PosthogEvent
from eventsight.core.shared.database_service import DatabaseService
from eventsight.core.utils.time_utils import utc_now

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("eventsight.commands.seed_events")

DEVICES = [
    {"$os": "iOS", "$device_type": "Mobile", "$browser": "Mobile Safari"},
    {"$os": "Android", "$device_type": "Mobile", "$browser": "Chrome"},
    {"$os": "Mac OS X", "$device_type": "Desktop", "$browser": "Safari"},
    {"$os": "Windows", "$device_type": "Desktop", "$browser": "Chrome"},
]

LOCATIONS = [
    {"$geoip_country_name": "United States", "$geoip_city_name": "Austin"},
    {"$geoip_country_name": "Canada", "$geoip_city_name": "Toronto"},
    {"$geoip_country_name": "Germany", "$geoip_city_name": "Berlin"},
]

JOURNEY = ["$pageview", "product_viewed", "add_to_cart", "cart_viewed", "checkout_started", "checkout_completed"]

VENDORS = [("vendor-1", "demo-shop.myshopify.com"), ("vendor-2", "sample-store.myshopify.com")]


def build_sample_events(users: int, events_per_user: int, rng: random.Random) -> List[PosthogEvent]:
    now = utc_now()
    rows = []
    for n in range(users):
        person_id = str(uuid.uuid4())
        device = rng.choice(DEVICES)
        location = rng.choice(LOCATIONS)
        vendor_id, shop_domain = rng.choice(VENDORS)
        # Not every shopper reaches checkout
        depth = rng.randint(2, len(JOURNEY))
        started = now - timedelta(days=rng.randint(0, 5), hours=rng.randint(0, 23))
        person_properties = {"email": f"shopper{n + 1}@example.com", "name": f"Shopper {n + 1}"}

        for i in range(events_per_user):
            at = started + timedelta(minutes=i * rng.randint(1, 20))
            properties = {**device, **location, "$current_url": f"https://{shop_domain}/products/{i}"}
            if JOURNEY[i % depth] in ("add_to_cart", "cart_viewed"):
                properties["cart_total"] = round(rng.uniform(10, 250), 2)
            rows.append(
                PosthogEvent(
                    event=JOURNEY[i % depth],
                    properties=properties,
                    person_properties=person_properties,
                    distinct_id=person_id,
                    person_id=person_id,
                    uuid=str(uuid.uuid4()),
                    timestamp=at,
                    created_at=at,
                    vendor_id=vendor_id,
                    shop_domain=shop_domain,
                )
            )
    return rows


async def seed(users: int, events_per_user: int, seed_value: int) -> int:
    database = DatabaseService(settings.database_url, use_null_pool=True)
    try:
        await database.init_db()
        rows = build_sample_events(users, events_per_user, random.Random(seed_value))
        async with database.get_session() as session:
            session.add_all(rows)
        logger.info("Inserted %d events for %d users", len(rows), users)
        return len(rows)
    finally:
        await database.close()


def main():
    parser = argparse.ArgumentParser(description="Insert sample PostHog events")
    parser.add_argument("--users", type=int, default=5, help="Number of shoppers (default: 5)")
    parser.add_argument("--events", type=int, default=10, help="Events per shopper (default: 10)")
    parser.add_argument("--seed", type=int, default=7, help="Random seed")
    args = parser.parse_args()

    try:
        asyncio.run(seed(args.users, args.events, args.seed))
    except Exception as e:
        logger.error("Seeding failed: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
