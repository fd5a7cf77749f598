#!/usr/bin/env python3
"""
MIGRATION SCRIPT: Tenant-scoped unique identifiers

Creates:
1. Compound unique (tenant_id, identifier) index on every entity collection
2. Listing indexes (tenant_id, date desc)
3. Unique tenant email and fallback sequence index

Identifiers were previously unique across all tenants; two companies can
now both own QUO-001.

Run: python migrations/001_tenant_scoped_indexes.py
"""

import asyncio
import os
import sys
from datetime import datetime

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv

from core.service_registry import BusinessServices

load_dotenv()

MIGRATION_ID = "001_tenant_scoped_indexes"

# Global unique indexes that block per-tenant numbering
LEGACY_INDEXES = {
    "quotation_documents": ["document_number_1", "document_number_1_type_1"],
    "purchase_orders": ["po_id_1"],
    "material_sales": ["invoice_number_1"],
    "job_costs": ["document_id_1"],
    "site_visits": ["visit_id_1"],
    "suppliers": ["name_1"],
    "categories": ["name_1"],
    "customers": ["phone_1"],
}


async def upgrade(db) -> dict:
    """Drop legacy global indexes, then ensure the tenant-scoped ones"""
    dropped = []
    for collection, names in LEGACY_INDEXES.items():
        existing = await db[collection].index_information()
        for name in names:
            if name in existing:
                await db[collection].drop_index(name)
                dropped.append(f"{collection}.{name}")
                print(f"✓ Dropped legacy index {collection}.{name}")

    services = BusinessServices(db, deferred_counters=False)
    await services.ensure_indexes()
    print("✓ Tenant-scoped indexes ensured")

    await db.migrations.update_one(
        {"migration_id": MIGRATION_ID},
        {"$set": {
            "migration_id": MIGRATION_ID,
            "description": "Tenant-scoped unique identifier indexes",
            "indexes_dropped": dropped,
            "executed_at": datetime.utcnow(),
            "status": "success"
        }},
        upsert=True
    )
    return {"status": "success", "dropped": dropped}


async def run_migration():
    mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
    db_name = os.environ.get('DB_NAME', 'tile_business')

    print(f"Connecting to: {mongo_url}")
    print(f"Database: {db_name}")

    client = AsyncIOMotorClient(mongo_url)
    try:
        await client.admin.command('ping')
        print("✓ Connected to MongoDB")
        return await upgrade(client[db_name])
    except Exception as e:
        print(f"\n✗ Migration failed: {str(e)}")
        raise
    finally:
        client.close()


if __name__ == "__main__":
    result = asyncio.run(run_migration())
    print(f"\nResult: {result}")
