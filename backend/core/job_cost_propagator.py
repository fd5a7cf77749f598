"""
PURCHASE ORDER -> JOB COST PROPAGATOR

Keeps the job cost's embedded copy of a purchase order's items in step
with the purchase order, and back-propagates confirmed unit prices into
the job cost's invoice lines.

Algorithm (idempotent re-sync):
1. Resolve the job cost by normalized quotation id within the tenant.
   No job cost yet -> no-op.
2. $pull every embedded item previously contributed by this po_id.
3. Unless the PO is being deleted, $push one entry per current PO item.
4. Unless the PO is in Draft (or deleted), overwrite the cost price of the
   first invoice line whose trimmed, lower-cased name matches.
5. Recompute derived fields through the version-guarded persist.

Steps 2 and 3 touch one document each; a reader between them may briefly
see this PO's entries missing. Other POs' entries are never touched.

Failures are logged and swallowed. The originating purchase order write
has already succeeded.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from typing import Any, Dict, List, Optional
import logging

from core.cache_service import TenantReadCache
from core.job_cost_repository import JobCostRepository, normalize_quotation_id
from core.mongo_utils import to_object_id

logger = logging.getLogger(__name__)

DRAFT_STATUS = "Draft"
UNKNOWN_SUPPLIER = "Unknown"


def name_key(name: Optional[str]) -> str:
    return (name or "").strip().lower()


class PurchaseOrderJobCostPropagator:

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        job_costs: JobCostRepository,
        cache: Optional[TenantReadCache] = None
    ):
        self.db = db
        self.job_costs = job_costs
        self.cache = cache

    @staticmethod
    def build_entries(purchase_order: Dict[str, Any], supplier_name: str) -> List[Dict[str, Any]]:
        """Embedded copies of the PO's items. Deterministic: same PO state -> same entries."""
        return [
            {
                "po_id": purchase_order.get("po_id"),
                "supplier_name": supplier_name,
                "item_name": item.get("name"),
                "quantity": item.get("quantity", 0),
                "unit": item.get("unit", "units"),
                "unit_price": item.get("unit_price", 0),
                "order_date": purchase_order.get("order_date"),
                "status": purchase_order.get("status", DRAFT_STATUS),
                "purchase_order_id": str(purchase_order.get("_id")),
                "invoice_image_path": purchase_order.get("invoice_image_path"),
            }
            for item in purchase_order.get("items") or []
        ]

    @staticmethod
    def cost_updates(purchase_order: Dict[str, Any], is_deleted: bool = False) -> Dict[str, Any]:
        """name key -> unit price, empty while the PO is Draft"""
        if is_deleted or purchase_order.get("status", DRAFT_STATUS) == DRAFT_STATUS:
            return {}
        updates = {}
        for item in purchase_order.get("items") or []:
            updates[name_key(item.get("name"))] = item.get("unit_price", 0)
        return updates

    @staticmethod
    def apply_cost_updates(invoice_items: List[Dict[str, Any]], updates: Dict[str, Any]) -> int:
        """Overwrite cost price on the first matching invoice line per PO item"""
        changed = 0
        for key, unit_price in updates.items():
            for item in invoice_items:
                if name_key(item.get("name")) == key:
                    item["cost_price"] = unit_price
                    changed += 1
                    break
        return changed

    async def resolve_supplier_name(self, tenant_id: str, supplier_id: Optional[str]) -> str:
        oid = to_object_id(supplier_id)
        if oid is None:
            return UNKNOWN_SUPPLIER
        supplier = await self.db.suppliers.find_one({"_id": oid, "tenant_id": tenant_id}, {"name": 1})
        return (supplier or {}).get("name") or UNKNOWN_SUPPLIER

    async def sync(self, tenant_id: str, purchase_order: Dict[str, Any], is_deleted: bool = False) -> str:
        """
        Run the re-sync for one purchase order.

        Returns an outcome tag (skipped / no_job_cost / synced / failed)
        for logging and tests. Never raises.
        """
        po_id = purchase_order.get("po_id")
        try:
            return await self._sync(tenant_id, purchase_order, is_deleted)
        except Exception:
            logger.exception(f"[SYNC] Failed to sync {po_id} to job cost for tenant:{tenant_id}")
            return "failed"

    async def _sync(self, tenant_id: str, purchase_order: Dict[str, Any], is_deleted: bool) -> str:
        po_id = purchase_order.get("po_id")
        quotation_id = normalize_quotation_id(purchase_order.get("quotation_id"))
        if not quotation_id or not po_id:
            return "skipped"

        job_cost = await self.job_costs.find_raw_by_quotation_id(tenant_id, quotation_id)
        if not job_cost:
            logger.info(f"[SYNC] No job cost for {quotation_id} yet, {po_id} not synced (tenant:{tenant_id})")
            return "no_job_cost"

        scope = {"_id": job_cost["_id"], "tenant_id": tenant_id}

        await self.db.job_costs.update_one(
            scope,
            {"$pull": {"purchase_order_items": {"po_id": po_id}}, "$inc": {"version": 1}}
        )

        entries: List[Dict[str, Any]] = []
        if not is_deleted:
            supplier_name = await self.resolve_supplier_name(tenant_id, purchase_order.get("supplier_id"))
            entries = self.build_entries(purchase_order, supplier_name)
            if entries:
                await self.db.job_costs.update_one(
                    scope,
                    {"$push": {"purchase_order_items": {"$each": entries}}, "$inc": {"version": 1}}
                )

        updates = self.cost_updates(purchase_order, is_deleted)
        changed = []

        def apply(doc):
            items = [dict(item) for item in doc.get("invoice_items") or []]
            changed.append(self.apply_cost_updates(items, updates))
            doc["invoice_items"] = items

        await self.job_costs.mutate(tenant_id, job_cost["_id"], apply)

        if self.cache is not None:
            self.cache.safe_invalidate(tenant_id)

        logger.info(
            f"[SYNC] {po_id} -> job cost {job_cost.get('document_id')}: "
            f"{len(entries)} items embedded, {changed[-1] if changed else 0} cost prices updated"
            f"{' (removed)' if is_deleted else ''}"
        )
        return "synced"
