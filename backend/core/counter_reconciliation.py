"""
COUNTER RECONCILIATION JOB

Counters on the tenant record are maintained best effort and can drift
when a counter write fails. This job recomputes them from the entity
collections.

For each tenant:
1. Count documents per tracked entity type (the true values)
2. Compare with the stored `counters.<name>` values
3. Report mismatches; reset the stored values only when apply=True

Also provides the maintenance pass that resets negative counters and
sequences across every tenant.

Usage:
    job = CounterReconciliationJob(db)
    report = await job.run(tenant_id, apply=True)
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Any, Dict, List
import logging

from core.counter_sync import (
    TOTAL_CATEGORIES,
    TOTAL_INVOICES,
    TOTAL_JOB_COSTS,
    TOTAL_MATERIAL_SALES,
    TOTAL_PURCHASE_ORDERS,
    TOTAL_QUOTATIONS,
    TOTAL_SITE_VISITS,
    TOTAL_SUPPLIERS,
)
from core.errors import NotFoundError
from core.mongo_utils import to_object_id

logger = logging.getLogger(__name__)


# counter name -> (collection, extra filter)
COUNTER_SOURCES = {
    TOTAL_QUOTATIONS: ("quotation_documents", {"type": "quotation"}),
    TOTAL_INVOICES: ("quotation_documents", {"type": "invoice"}),
    TOTAL_PURCHASE_ORDERS: ("purchase_orders", {}),
    TOTAL_MATERIAL_SALES: ("material_sales", {}),
    TOTAL_JOB_COSTS: ("job_costs", {}),
    TOTAL_SITE_VISITS: ("site_visits", {}),
    TOTAL_SUPPLIERS: ("suppliers", {}),
    TOTAL_CATEGORIES: ("categories", {}),
}


class CounterReconciliationJob:
    """
    Recomputes dashboard counters from actual entity counts.

    `recompute` never writes. `run` writes only when asked to.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def recompute(self, tenant_id: str) -> Dict[str, int]:
        """True value of every tracked counter for one tenant"""
        counts = {}
        for counter_name, (collection, extra) in COUNTER_SOURCES.items():
            query = dict(extra, tenant_id=tenant_id)
            counts[counter_name] = await self.db[collection].count_documents(query)
        return counts

    async def run(self, tenant_id: str, apply: bool = False) -> Dict[str, Any]:
        start_time = datetime.utcnow()
        oid = to_object_id(tenant_id)
        tenant = await self.db.tenants.find_one({"_id": oid}, {"counters": 1}) if oid else None
        if not tenant:
            raise NotFoundError("Tenant", tenant_id)

        stored = tenant.get("counters") or {}
        actual = await self.recompute(tenant_id)

        mismatches: List[Dict[str, Any]] = []
        for counter_name, true_value in actual.items():
            current = stored.get(counter_name, 0)
            if current != true_value:
                mismatches.append({
                    "counter": counter_name,
                    "stored": current,
                    "actual": true_value,
                    "difference": true_value - current
                })
                logger.warning(
                    f"[RECONCILE] tenant:{tenant_id} {counter_name}: "
                    f"stored={current}, actual={true_value}"
                )

        if apply and mismatches:
            await self.db.tenants.update_one(
                {"_id": oid},
                {"$set": {f"counters.{m['counter']}": m["actual"] for m in mismatches}}
            )
            logger.info(f"[RECONCILE] Reset {len(mismatches)} counters for tenant:{tenant_id}")
        elif not mismatches:
            logger.info(f"[RECONCILE] All counters consistent for tenant:{tenant_id}")

        return {
            "job_name": "CounterReconciliationJob",
            "tenant_id": tenant_id,
            "started_at": start_time.isoformat(),
            "completed_at": datetime.utcnow().isoformat(),
            "applied": bool(apply and mismatches),
            "counters": actual,
            "mismatches": mismatches
        }

    async def fix_negative_counters(self) -> Dict[str, Any]:
        """Reset every negative counter and sequence to 0, across all tenants"""
        tenants_fixed = 0
        fields_fixed = 0

        cursor = self.db.tenants.find({}, {"counters": 1, "sequences": 1})
        for tenant in await cursor.to_list(length=None):
            resets = {}
            for group in ("counters", "sequences"):
                for name, value in (tenant.get(group) or {}).items():
                    if isinstance(value, (int, float)) and value < 0:
                        resets[f"{group}.{name}"] = 0

            if resets:
                await self.db.tenants.update_one({"_id": tenant["_id"]}, {"$set": resets})
                tenants_fixed += 1
                fields_fixed += len(resets)
                logger.warning(f"[RECONCILE] tenant:{tenant['_id']} reset negative values: {sorted(resets)}")

        logger.info(f"[RECONCILE] Negative counter scan done: {fields_fixed} fields on {tenants_fixed} tenants")
        return {"tenants_fixed": tenants_fixed, "fields_fixed": fields_fixed}
