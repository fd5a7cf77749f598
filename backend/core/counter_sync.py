"""
COUNTER SYNCHRONIZER

Maintains the denormalized dashboard counters stored on the tenant record
(`counters.<name>`), so dashboard reads never scan entity collections.

Provides:
1. Atomic increment ($inc)
2. Clamped decrement (conditional $inc, never below 0)
3. Atomic transfer between two counters (quotation -> invoice conversion)
4. Fire-and-forget scheduling with explicit drain for shutdown and tests

Counters are observational. Every public `safe_*` method catches and logs
its own failure so the triggering business write is never rolled back.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Awaitable, Dict, Optional, Set
import asyncio
import logging

from core.mongo_utils import to_object_id

logger = logging.getLogger(__name__)


# =============================================================================
# COUNTER NAMES
# =============================================================================

TOTAL_QUOTATIONS = "total_quotations_count"
TOTAL_INVOICES = "total_invoices_count"
TOTAL_PURCHASE_ORDERS = "total_purchase_orders_count"
TOTAL_MATERIAL_SALES = "total_material_sales_count"
TOTAL_JOB_COSTS = "total_job_costs_count"
TOTAL_SITE_VISITS = "total_site_visits_count"
TOTAL_SUPPLIERS = "total_suppliers_count"
TOTAL_CATEGORIES = "total_categories_count"

ALL_COUNTERS = [
    TOTAL_QUOTATIONS,
    TOTAL_INVOICES,
    TOTAL_PURCHASE_ORDERS,
    TOTAL_MATERIAL_SALES,
    TOTAL_JOB_COSTS,
    TOTAL_SITE_VISITS,
    TOTAL_SUPPLIERS,
    TOTAL_CATEGORIES,
]


class CounterSynchronizer:
    """
    Race-safe increment/decrement of tenant aggregate counters.

    All writes are single-document atomic operations against `tenants`.
    No read-modify-write is ever performed.
    """

    def __init__(self, db: AsyncIOMotorDatabase, deferred: bool = True):
        self.db = db
        self.deferred = deferred
        self._pending: Set[asyncio.Task] = set()

    # =========================================================================
    # ATOMIC PRIMITIVES (raise on storage failure)
    # =========================================================================

    async def increment(self, tenant_id: str, counter_name: str, delta: int = 1) -> bool:
        """Atomically add `delta` to the counter. Returns False if the tenant is missing."""
        tenant_oid = to_object_id(tenant_id)
        if tenant_oid is None or delta <= 0:
            return False

        result = await self.db.tenants.update_one(
            {"_id": tenant_oid},
            {
                "$inc": {f"counters.{counter_name}": delta},
                "$set": {"updated_at": datetime.utcnow()}
            }
        )
        if result.matched_count == 0:
            logger.warning(f"[COUNTER] Tenant {tenant_id} not found, {counter_name} not incremented")
            return False

        logger.debug(f"[COUNTER] tenant:{tenant_id} {counter_name} +{delta}")
        return True

    async def decrement(self, tenant_id: str, counter_name: str, delta: int = 1) -> bool:
        """
        Atomically subtract `delta`, never letting the counter go below 0.

        1. Conditional $inc guarded by `counter >= delta`
        2. If the counter is positive but smaller than delta, clamp it to 0
        3. If it is already at or below 0, warn and skip the write
        """
        tenant_oid = to_object_id(tenant_id)
        if tenant_oid is None or delta <= 0:
            return False

        field = f"counters.{counter_name}"
        result = await self.db.tenants.update_one(
            {"_id": tenant_oid, field: {"$gte": delta}},
            {
                "$inc": {field: -delta},
                "$set": {"updated_at": datetime.utcnow()}
            }
        )
        if result.modified_count == 1:
            logger.debug(f"[COUNTER] tenant:{tenant_id} {counter_name} -{delta}")
            return True

        clamped = await self.db.tenants.update_one(
            {"_id": tenant_oid, field: {"$gt": 0, "$lt": delta}},
            {"$set": {field: 0, "updated_at": datetime.utcnow()}}
        )
        if clamped.modified_count == 1:
            logger.warning(f"[COUNTER] tenant:{tenant_id} {counter_name} clamped to 0 (decrement by {delta})")
            return True

        logger.warning(
            f"[COUNTER] Skipped decrement of {counter_name} for tenant:{tenant_id}: "
            f"counter already at or below 0 or tenant missing"
        )
        return False

    async def transfer(self, tenant_id: str, from_counter: str, to_counter: str, delta: int = 1) -> bool:
        """
        Move `delta` from one counter to another in a single atomic update.

        When the source counter cannot absorb the decrement, only the
        destination is incremented.
        """
        tenant_oid = to_object_id(tenant_id)
        if tenant_oid is None:
            return False

        source = f"counters.{from_counter}"
        result = await self.db.tenants.update_one(
            {"_id": tenant_oid, source: {"$gte": delta}},
            {
                "$inc": {source: -delta, f"counters.{to_counter}": delta},
                "$set": {"updated_at": datetime.utcnow()}
            }
        )
        if result.modified_count == 1:
            return True

        logger.warning(
            f"[COUNTER] tenant:{tenant_id} {from_counter} below {delta}, "
            f"incrementing {to_counter} only"
        )
        return await self.increment(tenant_id, to_counter, delta)

    async def get_counters(self, tenant_id: str) -> Dict[str, int]:
        """Read every known counter, 0 where absent"""
        tenant_oid = to_object_id(tenant_id)
        tenant = None
        if tenant_oid is not None:
            tenant = await self.db.tenants.find_one({"_id": tenant_oid}, {"counters": 1})
        stored = (tenant or {}).get("counters") or {}
        return {name: stored.get(name, 0) for name in ALL_COUNTERS}

    # =========================================================================
    # BEST-EFFORT WRAPPERS (never raise)
    # =========================================================================

    async def safe_increment(self, tenant_id: str, counter_name: str, delta: int = 1):
        try:
            await self.increment(tenant_id, counter_name, delta)
        except Exception as e:
            logger.error(f"[COUNTER] Failed to increment {counter_name} for tenant:{tenant_id}: {str(e)}")

    async def safe_decrement(self, tenant_id: str, counter_name: str, delta: int = 1):
        try:
            await self.decrement(tenant_id, counter_name, delta)
        except Exception as e:
            logger.error(f"[COUNTER] Failed to decrement {counter_name} for tenant:{tenant_id}: {str(e)}")

    async def safe_transfer(self, tenant_id: str, from_counter: str, to_counter: str):
        try:
            await self.transfer(tenant_id, from_counter, to_counter)
        except Exception as e:
            logger.error(
                f"[COUNTER] Failed to transfer {from_counter} -> {to_counter} "
                f"for tenant:{tenant_id}: {str(e)}"
            )

    # =========================================================================
    # SCHEDULING
    # =========================================================================

    async def run(self, job: Awaitable):
        """
        Run a best-effort counter job.

        Deferred mode schedules it as a task the caller does not await;
        inline mode awaits it before returning.
        """
        if not self.deferred:
            await job
            return None

        task = asyncio.create_task(job)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self, timeout: Optional[float] = None):
        """Wait for every scheduled counter job to finish"""
        if not self._pending:
            return
        pending = list(self._pending)
        logger.info(f"[COUNTER] Draining {len(pending)} pending counter updates")
        await asyncio.wait(pending, timeout=timeout)
