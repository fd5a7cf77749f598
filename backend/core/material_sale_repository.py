"""
MATERIAL SALE REPOSITORY

Over-the-counter tile sales. Invoice numbers are MS-nnnn from the tenant's
`material_sale` sequence; status follows the payment history.
"""

from datetime import datetime
from typing import Any, Dict
import logging

from core.base_repository import EntityRepository, validate_payload
from core.counter_sync import TOTAL_MATERIAL_SALES
from core.errors import IllegalStateTransitionError
from core.financial_precision import (
    compute_due_date,
    compute_material_sale_totals,
    material_sale_item_values,
    status_from_payments,
)
from models import MaterialSaleCreate, MaterialSaleUpdate, PaymentCreate, StatusUpdate

logger = logging.getLogger(__name__)

MATERIAL_SALE_STATUSES = ["pending", "partial", "paid", "cancelled"]


class MaterialSaleRepository(EntityRepository):
    entity_name = "Material sale"
    collection_name = "material_sales"
    identifier_field = "invoice_number"
    sequence_name = "material_sale"
    identifier_prefix = "MS"
    identifier_width = 4
    counter_name = TOTAL_MATERIAL_SALES
    create_model = MaterialSaleCreate
    update_model = MaterialSaleUpdate
    statuses = MATERIAL_SALE_STATUSES
    search_fields = ["invoice_number", "customer_name", "customer_phone", "notes"]
    date_field = "sale_date"
    list_fields = [
        "invoice_number", "sale_date", "customer_name", "customer_phone", "due_date",
        "status", "total_amount", "total_cost", "total_profit", "total_paid",
        "amount_due", "created_at"
    ]

    def derive(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        if "items" not in doc:
            return {}
        return compute_material_sale_totals(doc)

    @staticmethod
    def _priced_items(items):
        return [dict(item, **material_sale_item_values(item)) for item in items or []]

    async def _prepare_create(self, tenant_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not payload.get("invoice_number"):
            payload.pop("invoice_number", None)
        payload["sale_date"] = payload.get("sale_date") or datetime.utcnow()
        if not payload.get("due_date"):
            payload["due_date"] = compute_due_date(payload["sale_date"], payload.get("payment_terms", 30))
        payload["items"] = self._priced_items(payload.get("items"))
        for payment in payload.get("payment_history") or []:
            payment["date"] = payment.get("date") or datetime.utcnow()

        totals = compute_material_sale_totals(payload)
        payload["status"] = status_from_payments(totals["total_amount"], totals["total_paid"], payload.get("status"))
        payload.update(totals)
        return payload

    async def _prepare_update(self, tenant_id: str, existing: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
        if "items" in patch:
            patch["items"] = self._priced_items(patch["items"])
        if "due_date" not in patch and ("sale_date" in patch or "payment_terms" in patch):
            merged = dict(existing, **patch)
            patch["due_date"] = compute_due_date(merged.get("sale_date"), merged.get("payment_terms", 30))

        totals = compute_material_sale_totals(dict(existing, **patch))
        patch["status"] = status_from_payments(totals["total_amount"], totals["total_paid"], existing.get("status"))
        patch.update(totals)
        return patch

    async def add_payment(self, tenant_id: str, sale_id: str, data: Any) -> Dict[str, Any]:
        payment = validate_payload(PaymentCreate, data)
        payment["date"] = payment.get("date") or datetime.utcnow()

        existing = await self.get_raw(tenant_id, sale_id)
        if existing.get("status") == "cancelled":
            raise IllegalStateTransitionError("Cannot add a payment to a cancelled sale")

        def recompute(doc):
            totals = compute_material_sale_totals(doc)
            return dict(totals, status=status_from_payments(totals["total_amount"], totals["total_paid"], doc.get("status")))

        updated = await self.push_and_recompute(tenant_id, sale_id, "payment_history", payment, recompute)

        logger.info(f"[REPO] Payment {payment['amount']} on {updated.get('invoice_number')} -> {updated.get('status')}")
        await self._after_write(tenant_id, "payment")
        return self.to_detail(updated)

    async def update_status(self, tenant_id: str, sale_id: str, data: Any) -> Dict[str, Any]:
        status = validate_payload(StatusUpdate, data if isinstance(data, dict) else {"status": data})["status"]
        self._validate_status(status)
        updated = await self.apply_changes(tenant_id, sale_id, {"status": status})
        await self._after_write(tenant_id, "status")
        return self.to_detail(updated)

    async def get_stats(self, tenant_id: str, date_from=None, date_to=None) -> Dict[str, Any]:
        async def compute():
            active = {"status": {"$ne": "cancelled"}}
            revenue = await self.sum_field(tenant_id, "total_amount", date_from, date_to, extra=active)
            profit = await self.sum_field(tenant_id, "total_profit", date_from, date_to, extra=active)
            outstanding = await self.sum_field(tenant_id, "amount_due", date_from, date_to, extra=active)
            return {
                "total_revenue": revenue["total"],
                "total_profit": profit["total"],
                "total_outstanding": outstanding["total"],
                "count": revenue["count"]
            }

        return await self.cached_read(tenant_id, "stats", compute, (date_from, date_to), date_to)
