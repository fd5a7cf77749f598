"""
PURCHASE ORDER REPOSITORY

Purchase orders are editable (and deletable) only while in Draft.
Every create, edit, status change, delivery verification, invoice image
change and delete re-runs the job cost propagator explicitly.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from core.base_repository import EntityRepository, validate_payload
from core.counter_sync import TOTAL_PURCHASE_ORDERS
from core.errors import IllegalStateTransitionError, ValidationFailedError
from core.file_storage import LocalFileStorage
from core.financial_precision import compute_purchase_order_totals
from core.job_cost_propagator import PurchaseOrderJobCostPropagator
from core.job_cost_repository import normalize_quotation_id
from models import (
    DeliveryVerificationItem,
    PurchaseOrderCreate,
    PurchaseOrderUpdate,
    StatusUpdate,
    StoredFile,
)

logger = logging.getLogger(__name__)

PURCHASE_ORDER_STATUSES = ["Draft", "Ordered", "Delivered", "Paid", "Cancelled"]


class PurchaseOrderRepository(EntityRepository):
    entity_name = "Purchase order"
    collection_name = "purchase_orders"
    identifier_field = "po_id"
    sequence_name = "purchase_order"
    identifier_prefix = "PO"
    identifier_width = 3
    counter_name = TOTAL_PURCHASE_ORDERS
    create_model = PurchaseOrderCreate
    update_model = PurchaseOrderUpdate
    statuses = PURCHASE_ORDER_STATUSES
    search_fields = ["po_id", "customer_name", "quotation_id", "notes"]
    date_field = "order_date"
    list_fields = [
        "po_id", "quotation_id", "customer_name", "supplier_id", "order_date",
        "expected_delivery", "status", "total_amount", "items", "image_path",
        "invoice_image_path", "created_at"
    ]

    def __init__(self, db, allocator, counters, cache=None, notifier=None,
                 propagator: Optional[PurchaseOrderJobCostPropagator] = None,
                 file_storage: Optional[LocalFileStorage] = None):
        super().__init__(db, allocator, counters, cache, notifier)
        self.propagator = propagator
        self.file_storage = file_storage or LocalFileStorage()

    async def ensure_indexes(self):
        await super().ensure_indexes()
        await self.collection.create_index(
            [("tenant_id", 1), ("quotation_id", 1)],
            name="idx_tenant_quotation_id"
        )
        await self.collection.create_index(
            [("tenant_id", 1), ("status", 1), ("order_date", -1)],
            name="idx_tenant_status_order_date"
        )

    def derive(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        return compute_purchase_order_totals(doc)

    async def _propagate(self, tenant_id: str, doc: Dict[str, Any], is_deleted: bool = False):
        if self.propagator is not None:
            await self.propagator.sync(tenant_id, doc, is_deleted=is_deleted)

    @staticmethod
    def _require_draft(doc: Dict[str, Any], action: str):
        status = doc.get("status") or "Draft"
        if status != "Draft":
            raise IllegalStateTransitionError(
                f"Only purchase orders in Draft status can be {action} (current: {status})",
                allowed=["Draft"]
            )

    # =========================================================================
    # CREATE / UPDATE / DELETE
    # =========================================================================

    async def _prepare_create(self, tenant_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not payload.get("po_id"):
            payload.pop("po_id", None)
        payload["quotation_id"] = normalize_quotation_id(payload.get("quotation_id"))
        payload["order_date"] = payload.get("order_date") or datetime.utcnow()
        payload["image_id"] = None
        payload["image_path"] = None
        payload["original_image_name"] = None
        payload["invoice_image_path"] = None
        payload["delivery_verification"] = []
        payload["delivery_verified_at"] = None
        payload.update(compute_purchase_order_totals(payload))
        return payload

    async def _after_create(self, tenant_id: str, doc: Dict[str, Any]):
        await self._propagate(tenant_id, doc)

    async def _prepare_update(self, tenant_id: str, existing: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
        self._require_draft(existing, "edited")
        if "quotation_id" in patch:
            patch["quotation_id"] = normalize_quotation_id(patch["quotation_id"])
        if "items" in patch:
            patch.update(compute_purchase_order_totals(patch))
        return patch

    async def _after_update(self, tenant_id: str, before: Dict[str, Any], after: Dict[str, Any]):
        if before.get("quotation_id") and before.get("quotation_id") != after.get("quotation_id"):
            # relinked: withdraw the items from the previous job cost
            await self._propagate(tenant_id, before, is_deleted=True)
        await self._propagate(tenant_id, after)

    async def _check_delete_allowed(self, doc: Dict[str, Any]):
        self._require_draft(doc, "deleted")

    async def _after_delete(self, tenant_id: str, doc: Dict[str, Any]):
        self.file_storage.delete_file(doc.get("image_path"))
        self.file_storage.delete_file(doc.get("invoice_image_path"))
        await self._propagate(tenant_id, doc, is_deleted=True)

    # =========================================================================
    # STATUS & DELIVERY
    # =========================================================================

    async def update_status(self, tenant_id: str, po_id: str, data: Any) -> Dict[str, Any]:
        """
        Direct status change. Bypasses the edit path, so the propagator is
        re-run explicitly: cost back-propagation depends on the status.
        """
        status = validate_payload(StatusUpdate, data if isinstance(data, dict) else {"status": data})["status"]
        self._validate_status(status)

        before = await self.get_raw(tenant_id, po_id)
        updated = await self.apply_changes(tenant_id, po_id, {"status": status})
        logger.info(f"[REPO] {updated.get('po_id')} status {before.get('status')} -> {status} (tenant:{tenant_id})")

        await self._propagate(tenant_id, updated)
        await self._after_write(tenant_id, "status")
        return self.to_detail(updated)

    async def update_delivery_verification(self, tenant_id: str, po_id: str, items: List[Any]) -> Dict[str, Any]:
        if not isinstance(items, list):
            raise ValidationFailedError([{"field": "items", "message": "items must be a list"}])
        verified = [validate_payload(DeliveryVerificationItem, item) for item in items]

        updated = await self.apply_changes(tenant_id, po_id, {
            "delivery_verification": verified,
            "delivery_verified_at": datetime.utcnow()
        })
        await self._propagate(tenant_id, updated)
        await self._after_write(tenant_id, "delivery_verification")
        return self.to_detail(updated)

    # =========================================================================
    # FILES
    # =========================================================================

    async def update_image(self, tenant_id: str, po_id: str, stored_file: Any) -> Dict[str, Any]:
        descriptor = validate_payload(StoredFile, stored_file)
        before = await self.get_raw(tenant_id, po_id)
        updated = await self.apply_changes(tenant_id, po_id, {
            "image_id": descriptor["generated_id"],
            "image_path": descriptor["relative_path"],
            "original_image_name": descriptor["original_name"]
        })
        if before.get("image_path") and before["image_path"] != descriptor["relative_path"]:
            self.file_storage.delete_file(before["image_path"])
        await self._after_write(tenant_id, "image")
        return self.to_detail(updated)

    async def update_invoice_image(self, tenant_id: str, po_id: str, stored_file: Any) -> Dict[str, Any]:
        descriptor = validate_payload(StoredFile, stored_file)
        before = await self.get_raw(tenant_id, po_id)
        updated = await self.apply_changes(tenant_id, po_id, {
            "invoice_image_path": descriptor["relative_path"]
        })
        if before.get("invoice_image_path") and before["invoice_image_path"] != descriptor["relative_path"]:
            self.file_storage.delete_file(before["invoice_image_path"])
        await self._propagate(tenant_id, updated)
        await self._after_write(tenant_id, "invoice_image")
        return self.to_detail(updated)

    # =========================================================================
    # STATS
    # =========================================================================

    async def get_stats(self, tenant_id: str, date_from=None, date_to=None) -> Dict[str, Any]:
        async def compute():
            summary = await self.sum_field(tenant_id, "total_amount", date_from, date_to)
            pipeline = [
                {"$match": self.build_list_query(tenant_id, date_from=date_from, date_to=date_to)},
                {"$group": {"_id": "$status", "count": {"$sum": 1}}}
            ]
            by_status = {status: 0 for status in PURCHASE_ORDER_STATUSES}
            for row in await self.collection.aggregate(pipeline).to_list(length=None):
                by_status[row["_id"]] = row["count"]
            return {
                "total_expenses": summary["total"],
                "count": summary["count"],
                "by_status": by_status
            }

        return await self.cached_read(tenant_id, "stats", compute, (date_from, date_to), date_to)
