#!/usr/bin/env python3
"""
MIGRATION SCRIPT: Repair dashboard counters

1. Reset every negative counter and sequence to 0
2. Recompute each tenant's counters from actual entity counts

Run: python migrations/002_fix_negative_counters.py [--dry-run]
"""

import asyncio
import os
import sys
from datetime import datetime

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv

from core.counter_reconciliation import CounterReconciliationJob

load_dotenv()

MIGRATION_ID = "002_fix_negative_counters"


async def upgrade(db, apply: bool = True) -> dict:
    job = CounterReconciliationJob(db)

    negatives = {"tenants_fixed": 0, "fields_fixed": 0}
    if apply:
        negatives = await job.fix_negative_counters()
        print(f"✓ Reset {negatives['fields_fixed']} negative values on {negatives['tenants_fixed']} tenants")

    reconciled = 0
    tenants = await db.tenants.find({}, {"_id": 1}).to_list(length=None)
    for tenant in tenants:
        report = await job.run(str(tenant["_id"]), apply=apply)
        for mismatch in report["mismatches"]:
            print(
                f"  - tenant:{tenant['_id']} {mismatch['counter']}: "
                f"stored={mismatch['stored']}, actual={mismatch['actual']}"
            )
        reconciled += len(report["mismatches"])

    print(f"✓ {reconciled} counter mismatches {'fixed' if apply else 'found'} across {len(tenants)} tenants")

    if apply:
        await db.migrations.update_one(
            {"migration_id": MIGRATION_ID},
            {"$set": {
                "migration_id": MIGRATION_ID,
                "description": "Reset negative counters and reconcile with entity counts",
                "negative_fields_reset": negatives["fields_fixed"],
                "counters_reconciled": reconciled,
                "executed_at": datetime.utcnow(),
                "status": "success"
            }},
            upsert=True
        )

    return {"status": "success", "negatives": negatives, "reconciled": reconciled, "applied": apply}


async def run_migration(apply: bool = True):
    mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
    db_name = os.environ.get('DB_NAME', 'tile_business')

    client = AsyncIOMotorClient(mongo_url)
    try:
        await client.admin.command('ping')
        print("✓ Connected to MongoDB")
        return await upgrade(client[db_name], apply=apply)
    except Exception as e:
        print(f"\n✗ Migration failed: {str(e)}")
        raise
    finally:
        client.close()


if __name__ == "__main__":
    result = asyncio.run(run_migration(apply="--dry-run" not in sys.argv))
    print(f"\nResult: {result}")
