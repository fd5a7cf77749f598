"""
JOB COST REPOSITORY

The job cost is the per-project ledger. It holds:
1. Its own invoice line items (selling price and, once known, cost price)
2. A repository-owned copy of every linked purchase order's items
3. Other expenses

Derived money fields (material cost, net profit, ...) are recomputed from
the embedded collections on every persist and stored so they can be
sorted and aggregated. They are never adjusted incrementally.

Multi-step edits use optimistic concurrency on the `version` field,
retrying on a lost race.
"""

from bson import ObjectId
from pymongo import ReturnDocument
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging

from core.base_repository import EntityRepository, validate_payload
from core.counter_sync import TOTAL_JOB_COSTS
from core.errors import DependencyUnavailableError, IllegalStateTransitionError, NotFoundError
from core.financial_precision import compute_job_cost_totals, invoice_item_view, to_decimal
from core.mongo_utils import to_object_id
from models import JobCostCreate, JobCostUpdate, OtherExpense, OtherExpenseUpdate

logger = logging.getLogger(__name__)

FINAL_PURCHASE_ORDER_STATUSES = ["Paid", "Cancelled"]


def normalize_quotation_id(value: Optional[str]) -> str:
    """'7' / '007' / 'QUO-007' -> 'QUO-007'; empty stays empty"""
    value = (value or "").strip()
    if not value:
        return ""
    return value if value.upper().startswith("QUO-") else f"QUO-{value}"


def numeric_part(identifier: Optional[str]) -> str:
    """'QUO-007' -> '007', 'INV-12' -> '12', '007' -> '007'"""
    value = (identifier or "").strip()
    return value.split("-", 1)[1] if "-" in value else value


class JobCostRepository(EntityRepository):
    entity_name = "Job cost"
    collection_name = "job_costs"
    identifier_field = "document_id"
    sequence_name = "job_cost"
    identifier_width = 3
    counter_name = TOTAL_JOB_COSTS
    create_model = JobCostCreate
    update_model = JobCostUpdate
    search_fields = ["customer_name", "project_title", "document_id", "quotation_id", "invoice_id"]
    date_field = "created_at"
    list_fields = [
        "document_id", "type", "customer_name", "customer_phone", "project_title",
        "quotation_id", "invoice_id", "net_profit", "material_cost", "total_revenue",
        "total_cost", "profit_margin", "completed", "customer_invoice_status",
        "created_at", "updated_at"
    ]

    MAX_VERSION_RETRIES = 3

    async def ensure_indexes(self):
        await super().ensure_indexes()
        await self.collection.create_index(
            [("tenant_id", 1), ("quotation_id", 1)],
            name="idx_tenant_quotation_id"
        )

    # =========================================================================
    # DERIVED FIELDS
    # =========================================================================

    @staticmethod
    def with_totals(doc: Dict[str, Any]) -> Dict[str, Any]:
        doc.update(compute_job_cost_totals(doc))
        return doc

    def derive(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        prefix = "INV" if doc.get("type") == "invoice" else "QUO"
        derived = compute_job_cost_totals(doc)
        derived["display_document_id"] = f"{prefix}-{doc.get('document_id', '')}"
        if "invoice_items" in doc:
            derived["invoice_items"] = [invoice_item_view(i) for i in doc.get("invoice_items") or []]
        return derived

    def to_list_item(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        view = super().to_list_item(doc)
        for field in ("total_revenue", "material_cost", "net_profit", "total_cost", "profit_margin"):
            view[field] = doc.get(field, 0.0)
        return view

    # =========================================================================
    # CREATE / UPDATE
    # =========================================================================

    async def _prepare_create(self, tenant_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        payload["quotation_id"] = normalize_quotation_id(payload.get("quotation_id"))
        if not payload.get("document_id") and payload["quotation_id"]:
            payload["document_id"] = numeric_part(payload["quotation_id"])
        if not payload.get("document_id"):
            payload.pop("document_id", None)

        payload["type"] = "invoice" if (payload.get("invoice_id") or "").strip() else "quotation"
        payload["invoice_items"] = payload.get("invoice_items") or []
        payload["purchase_order_items"] = []
        payload["other_expenses"] = [
            dict(expense, expense_id=str(ObjectId()), date=expense.get("date") or datetime.utcnow())
            for expense in payload.get("other_expenses") or []
        ]
        payload["completed"] = False
        payload["version"] = 1
        return self.with_totals(payload)

    async def update(self, tenant_id: str, job_cost_id: str, data: Any) -> Dict[str, Any]:
        """
        Apply a patch through the version-guarded mutate so the stored totals
        always come from the document that is actually written.
        """
        patch = validate_payload(self.update_model, data, partial=True)
        if "quotation_id" in patch:
            patch["quotation_id"] = normalize_quotation_id(patch["quotation_id"])

        def apply(doc):
            changes = dict(patch)
            if (changes.get("invoice_id") or "").strip():
                changes["type"] = "invoice"
            elif changes.get("quotation_id") and not (doc.get("invoice_id") or "").strip():
                changes["type"] = "quotation"
            doc.update(changes)
            return {k: v for k, v in changes.items() if k not in ("invoice_items", "other_expenses")}

        updated = await self.mutate(tenant_id, job_cost_id, apply)

        await self._after_write(tenant_id, "update")
        return self.to_detail(updated)

    async def upsert(self, tenant_id: str, id_or_document_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Update by storage id or document id, creating the job cost when neither resolves"""
        existing = None
        oid = to_object_id(id_or_document_id)
        if oid is not None:
            existing = await self.collection.find_one({"_id": oid, "tenant_id": tenant_id})
        if existing is None:
            document_id = (data or {}).get("document_id") or id_or_document_id
            existing = await self.collection.find_one({"tenant_id": tenant_id, "document_id": document_id})

        if existing is not None:
            patch = {k: v for k, v in (data or {}).items() if k not in ("document_id", "other_expenses")}
            return await self.update(tenant_id, str(existing["_id"]), patch)

        payload = dict(data or {})
        if not payload.get("document_id") and oid is None:
            payload["document_id"] = id_or_document_id
        return await self.create(tenant_id, payload)

    # =========================================================================
    # LOOKUPS USED BY THE PROPAGATOR AND QUOTATION SYNC
    # =========================================================================

    async def find_raw_by_quotation_id(self, tenant_id: str, quotation_id: str) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one({
            "tenant_id": tenant_id,
            "quotation_id": normalize_quotation_id(quotation_id)
        })

    # =========================================================================
    # VERSION-GUARDED MUTATION
    # =========================================================================

    async def mutate(
        self,
        tenant_id: str,
        job_cost_id,
        mutator: Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]
    ) -> Dict[str, Any]:
        """
        Read, apply `mutator` to a copy, recompute derived fields and write
        back only if nobody else bumped the version in between.

        `mutator` edits the document in place and may return extra $set
        fields. Raises NotFoundError / DependencyUnavailableError.
        """
        scope = self._scoped(tenant_id, str(job_cost_id))

        for attempt in range(1, self.MAX_VERSION_RETRIES + 1):
            current = await self.collection.find_one(scope)
            if not current:
                raise NotFoundError(self.entity_name, str(job_cost_id))

            working = dict(current)
            extra = mutator(working) or {}

            changes = {
                "invoice_items": working.get("invoice_items") or [],
                "other_expenses": working.get("other_expenses") or [],
                "updated_at": datetime.utcnow(),
            }
            changes.update(compute_job_cost_totals(working))
            changes.update(extra)

            version = current.get("version")
            updated = await self.collection.find_one_and_update(
                dict(scope, version=version),
                {"$set": changes, "$inc": {"version": 1}},
                return_document=ReturnDocument.AFTER
            )
            if updated:
                return updated

            logger.warning(
                f"[REPO] Job cost {job_cost_id} version conflict "
                f"(attempt {attempt}/{self.MAX_VERSION_RETRIES})"
            )

        raise DependencyUnavailableError(
            f"Job cost {job_cost_id} kept changing concurrently; retry the operation"
        )

    async def recalculate(self, tenant_id: str, job_cost_id) -> Dict[str, Any]:
        return await self.mutate(tenant_id, job_cost_id, lambda doc: None)

    # =========================================================================
    # OTHER EXPENSES
    # =========================================================================

    async def add_other_expense(self, tenant_id: str, job_cost_id: str, data: Any) -> Dict[str, Any]:
        expense = validate_payload(OtherExpense, data)
        expense["expense_id"] = str(ObjectId())
        expense["date"] = expense.get("date") or datetime.utcnow()

        def apply(doc):
            doc["other_expenses"] = list(doc.get("other_expenses") or []) + [expense]

        updated = await self.mutate(tenant_id, job_cost_id, apply)
        await self._after_write(tenant_id, "expense_added")
        return self.to_detail(updated)

    async def update_other_expense(self, tenant_id: str, job_cost_id: str, expense_id: str, data: Any) -> Dict[str, Any]:
        patch = validate_payload(OtherExpenseUpdate, data, partial=True)
        found = []

        def apply(doc):
            expenses = []
            for expense in doc.get("other_expenses") or []:
                if expense.get("expense_id") == expense_id:
                    expense = dict(expense, **patch)
                    found.append(expense_id)
                expenses.append(expense)
            doc["other_expenses"] = expenses

        updated = await self.mutate(tenant_id, job_cost_id, apply)
        if not found:
            raise NotFoundError("Expense", expense_id)
        await self._after_write(tenant_id, "expense_updated")
        return self.to_detail(updated)

    async def delete_other_expense(self, tenant_id: str, job_cost_id: str, expense_id: str) -> Dict[str, Any]:
        existing = await self.get_raw(tenant_id, job_cost_id)
        if not any(e.get("expense_id") == expense_id for e in existing.get("other_expenses") or []):
            raise NotFoundError("Expense", expense_id)

        def apply(doc):
            doc["other_expenses"] = [
                e for e in doc.get("other_expenses") or [] if e.get("expense_id") != expense_id
            ]

        updated = await self.mutate(tenant_id, job_cost_id, apply)
        await self._after_write(tenant_id, "expense_deleted")
        return self.to_detail(updated)

    # =========================================================================
    # COMPLETION
    # =========================================================================

    async def complete(self, tenant_id: str, job_cost_id: str) -> Dict[str, Any]:
        """
        Mark a project complete.

        Requires every positively priced line to carry a cost price, the
        customer invoice to be paid, and every linked purchase order to be
        in a final state.
        """
        job_cost = await self.get_raw(tenant_id, job_cost_id)
        if job_cost.get("completed"):
            raise IllegalStateTransitionError("Project is already completed")

        missing_cost = [
            item.get("name") for item in job_cost.get("invoice_items") or []
            if to_decimal(item.get("selling_price")) > 0 and to_decimal(item.get("cost_price")) <= 0
        ]
        if missing_cost:
            raise IllegalStateTransitionError(
                f"All items must have a cost price before completing project: {', '.join(missing_cost)}"
            )

        if job_cost.get("type") != "invoice":
            raise IllegalStateTransitionError("Job must be converted to Invoice and Paid before completion")
        if job_cost.get("customer_invoice_status") != "paid":
            raise IllegalStateTransitionError("Customer Invoice must be fully paid before completing project")

        open_orders = await self.db.purchase_orders.count_documents({
            "tenant_id": tenant_id,
            "quotation_id": job_cost.get("quotation_id"),
            "status": {"$nin": FINAL_PURCHASE_ORDER_STATUSES}
        })
        if job_cost.get("quotation_id") and open_orders:
            raise IllegalStateTransitionError(
                f"All linked Purchase Orders must be {' or '.join(FINAL_PURCHASE_ORDER_STATUSES)} before completion",
                allowed=FINAL_PURCHASE_ORDER_STATUSES
            )

        updated = await self.apply_changes(
            tenant_id, job_cost_id,
            {"completed": True, "completed_at": datetime.utcnow()},
            {"$inc": {"version": 1}}
        )
        logger.info(f"[REPO] Job cost {job_cost.get('document_id')} completed for tenant:{tenant_id}")
        await self._after_write(tenant_id, "completed")
        return self.to_detail(updated)

    async def reopen(self, tenant_id: str, job_cost_id: str) -> Dict[str, Any]:
        job_cost = await self.get_raw(tenant_id, job_cost_id)
        if not job_cost.get("completed"):
            raise IllegalStateTransitionError("Project is not completed")
        updated = await self.apply_changes(
            tenant_id, job_cost_id, {"completed": False}, {"$inc": {"version": 1}}
        )
        await self._after_write(tenant_id, "reopened")
        return self.to_detail(updated)

    # =========================================================================
    # STATS
    # =========================================================================

    async def get_stats(self, tenant_id: str, date_from=None, date_to=None) -> Dict[str, Any]:
        async def compute():
            summary = await self.sum_field(tenant_id, "net_profit", date_from, date_to)
            completed = await self.collection.count_documents(
                self.build_list_query(tenant_id, date_from=date_from, date_to=date_to, extra={"completed": True})
            )
            return {
                "total_net_profit": summary["total"],
                "count": summary["count"],
                "completed_count": completed
            }

        return await self.cached_read(tenant_id, "stats", compute, (date_from, date_to), date_to)
