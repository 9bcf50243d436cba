#!/usr/bin/env python3
"""
Seed demo workers and job sites for local development
"""
import asyncio
import os
from datetime import datetime, timezone
from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
from pathlib import Path

from geofence import validate_site_radius
from kv_store import JOB_SITES, WORKERS

ROOT_DIR = Path(__file__).parent

# Nashville downtown
NASHVILLE_LAT, NASHVILLE_LNG = 36.1627, -86.7816

DEMO_SITES = [
    {
        "id": "site-broadway",
        "name": "Broadway Renovation",
        "address": "Lower Broadway, Nashville",
        "location": {"lat": NASHVILLE_LAT, "lng": NASHVILLE_LNG},
        "radius": 328.0,
    },
    {
        "id": "site-gulch",
        "name": "Gulch Tower",
        "address": "The Gulch, Nashville",
        "location": {"lat": 36.1512, "lng": -86.7889},
        "radius": 656.0,
    },
]

DEMO_WORKERS = [
    {"id": "worker-1", "first_name": "Sam", "last_name": "Rivera", "email": "sam.rivera@example.com"},
    {"id": "worker-2", "first_name": "Alex", "last_name": "Chen", "email": "alex.chen@example.com"},
]


def build_site_documents(sites=DEMO_SITES):
    """Validate radius bounds and stamp creation time; raises ValueError on a bad site"""
    documents = []
    for site in sites:
        documents.append({
            **site,
            "radius": validate_site_radius(site.get("radius")),
            "active": site.get("active", True),
            "created_at": datetime.now(timezone.utc).isoformat(),
        })
    return documents


async def seed_data(db):
    print("🌱 Starting data seeding...")

    print("\n🏗️  Creating job sites...")
    for site in build_site_documents():
        existing = await db[JOB_SITES].find_one({"_id": site["id"]})
        if not existing:
            await db[JOB_SITES].insert_one({**site, "_id": site["id"]})
            print(f"  ✅ Created site: {site['name']} ({site['radius']}ft)")
        else:
            print(f"  ⏭️  Site {site['name']} already exists")

    print("\n👥 Creating workers...")
    for worker in DEMO_WORKERS:
        existing = await db[WORKERS].find_one({"_id": worker["id"]})
        if not existing:
            await db[WORKERS].insert_one({**worker, "_id": worker["id"]})
            print(f"  ✅ Created worker: {worker['first_name']} {worker['last_name']}")
        else:
            print(f"  ⏭️  Worker {worker['email']} already exists")

    print("\n✅ Data seeding complete!")


def main():
    load_dotenv(ROOT_DIR / '.env')
    client = AsyncIOMotorClient(
        os.environ['MONGO_URL'],
        serverSelectionTimeoutMS=30000,
        connectTimeoutMS=20000,
    )
    try:
        asyncio.run(seed_data(client[os.environ.get('DB_NAME', 'site_time_clock')]))
    finally:
        client.close()


if __name__ == "__main__":
    main()
