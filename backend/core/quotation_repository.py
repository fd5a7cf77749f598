"""
QUOTATION / INVOICE REPOSITORY

One collection holds both document types. The numeric document number is
allocated from the tenant's `quotation` sequence and padded with the
tenant's number_padding setting; it is displayed as QUO-nnn or INV-nnn.

Approved quotations keep a job cost in step with their line items.
Conversion and payments push the customer invoice state to that job cost.
"""

from pymongo.errors import DuplicateKeyError
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from core.base_repository import EntityRepository, validate_payload
from core.counter_sync import TOTAL_INVOICES, TOTAL_QUOTATIONS
from core.errors import DuplicateIdentifierError, IllegalStateTransitionError, ValidationFailedError
from core.financial_precision import compute_due_date, compute_quotation_totals, status_from_payments, to_decimal
from core.job_cost_propagator import name_key
from core.job_cost_repository import JobCostRepository
from models import ConvertToInvoiceRequest, PaymentCreate, QuotationCreate, QuotationUpdate

logger = logging.getLogger(__name__)

DOCUMENT_TYPES = ["quotation", "invoice"]
QUOTATION_STATUSES = ["pending", "approved", "partial", "paid", "converted", "rejected"]
PROJECT_STATUSES = ["planning", "active", "on-hold", "completed", "cancelled"]


def display_number(doc: Dict[str, Any]) -> str:
    prefix = "INV" if doc.get("type") == "invoice" else "QUO"
    return f"{prefix}-{doc.get('document_number', '')}"


class QuotationRepository(EntityRepository):
    entity_name = "Quotation"
    collection_name = "quotation_documents"
    identifier_field = "document_number"
    unique_with = ("type",)
    sequence_name = "quotation"
    create_model = QuotationCreate
    update_model = QuotationUpdate
    statuses = QUOTATION_STATUSES
    search_fields = ["document_number", "customer_name", "customer_phone", "project_title"]
    date_field = "invoice_date"
    list_fields = [
        "document_number", "type", "status", "customer_name", "customer_phone",
        "project_title", "invoice_date", "due_date", "project_status",
        "subtotal", "total_paid", "amount_due", "created_at"
    ]

    def __init__(self, db, allocator, counters, cache=None, notifier=None,
                 job_costs: Optional[JobCostRepository] = None):
        super().__init__(db, allocator, counters, cache, notifier)
        self.job_costs = job_costs

    def counter_for(self, doc: Dict[str, Any]) -> Optional[str]:
        return TOTAL_INVOICES if doc.get("type") == "invoice" else TOTAL_QUOTATIONS

    async def generate_identifier(self, tenant_id: str, doc: Dict[str, Any]) -> str:
        width = await self.allocator.get_number_padding(tenant_id)
        return await self.allocator.allocate_identifier(tenant_id, self.sequence_name, "", width)

    def derive(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        derived = compute_quotation_totals(doc) if "line_items" in doc else {}
        derived["display_document_number"] = display_number(doc)
        return derived

    def to_list_item(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        view = super().to_list_item(doc)
        for field in ("subtotal", "total_paid", "amount_due"):
            view[field] = doc.get(field, 0.0)
        return view

    # =========================================================================
    # VALIDATION
    # =========================================================================

    @staticmethod
    def _validate_line_items(line_items: List[Dict[str, Any]]):
        """Negative selling prices are reserved for site visit deductions"""
        errors = []
        for index, item in enumerate(line_items or []):
            if to_decimal(item.get("selling_price")) >= 0:
                continue
            label = f"{item.get('name', '')} {item.get('product_name') or ''}".lower()
            if "site visit" not in label:
                errors.append({
                    "field": f"line_items.{index}.selling_price",
                    "message": "Selling price must be non-negative for regular items"
                })
        if errors:
            raise ValidationFailedError(errors)

    @staticmethod
    def _validate_enums(payload: Dict[str, Any]):
        if "type" in payload and payload["type"] not in DOCUMENT_TYPES:
            raise ValidationFailedError([{"field": "type", "message": f"type must be one of {DOCUMENT_TYPES}"}])
        if payload.get("project_status") is not None and payload["project_status"] not in PROJECT_STATUSES:
            raise IllegalStateTransitionError(
                f"Invalid project status '{payload['project_status']}'",
                allowed=PROJECT_STATUSES
            )

    # =========================================================================
    # CREATE / UPDATE
    # =========================================================================

    async def _prepare_create(self, tenant_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        self._validate_enums(payload)
        self._validate_line_items(payload.get("line_items"))
        if not (payload.get("document_number") or "").strip():
            payload.pop("document_number", None)

        payload["invoice_date"] = payload.get("invoice_date") or datetime.utcnow()
        if not payload.get("due_date"):
            payload["due_date"] = compute_due_date(payload["invoice_date"], payload.get("payment_terms", 30))
        for payment in payload.get("payment_history") or []:
            payment["date"] = payment.get("date") or datetime.utcnow()

        totals = compute_quotation_totals(payload)
        if payload.get("type") == "invoice" and payload.get("payment_history"):
            payload["status"] = status_from_payments(totals["subtotal"], totals["total_paid"])
        payload.update(totals)
        return payload

    async def _after_create(self, tenant_id: str, doc: Dict[str, Any]):
        if doc.get("type") == "quotation" and doc.get("status") == "approved":
            await self.sync_job_cost(tenant_id, doc)

    async def _prepare_update(self, tenant_id: str, existing: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
        self._validate_enums(patch)
        if "line_items" in patch:
            self._validate_line_items(patch["line_items"])

        if existing.get("status") == "rejected" and "status" not in patch:
            patch["status"] = "pending"
            logger.info(f"[REPO] Rejected {display_number(existing)} edited, status reset to pending")

        if "due_date" not in patch and ("invoice_date" in patch or "payment_terms" in patch):
            merged = dict(existing, **patch)
            patch["due_date"] = compute_due_date(merged.get("invoice_date"), merged.get("payment_terms", 30))

        patch.update(compute_quotation_totals(dict(existing, **patch)))
        return patch

    async def _after_update(self, tenant_id: str, before: Dict[str, Any], after: Dict[str, Any]):
        if after.get("type") == "quotation" and after.get("status") == "approved":
            await self.sync_job_cost(tenant_id, after)

    # =========================================================================
    # JOB COST SYNC
    # =========================================================================

    @staticmethod
    def _job_cost_items(line_items: List[Dict[str, Any]], known_costs: Dict[str, Any]) -> List[Dict[str, Any]]:
        items = []
        for line in line_items or []:
            key = name_key(line.get("name"))
            cost = known_costs.get(key, line.get("cost_price"))
            items.append({
                "category": line.get("category", ""),
                "name": line.get("name"),
                "quantity": line.get("quantity", 0),
                "unit": line.get("unit", "units"),
                "selling_price": line.get("selling_price", 0),
                "cost_price": cost,
            })
        return items

    async def sync_job_cost(self, tenant_id: str, quotation: Dict[str, Any]) -> Optional[str]:
        """
        Create the job cost for an approved quotation, or replace its invoice
        items while keeping cost prices already known for the same item names.
        Best effort: failures are logged, never raised.
        """
        if self.job_costs is None:
            return None
        quotation_id = display_number(dict(quotation, type="quotation"))
        try:
            existing = await self.job_costs.find_raw_by_quotation_id(tenant_id, quotation_id)
            if existing is None:
                created = await self.job_costs.create(tenant_id, {
                    "document_id": quotation.get("document_number"),
                    "quotation_id": quotation_id,
                    "customer_name": quotation.get("customer_name", ""),
                    "customer_phone": quotation.get("customer_phone", ""),
                    "project_title": quotation.get("project_title", ""),
                    "invoice_date": quotation.get("invoice_date"),
                    "invoice_items": self._job_cost_items(quotation.get("line_items"), {}),
                })
                logger.info(f"[SYNC] Created job cost {created.get('document_id')} for {quotation_id}")
                return "created"

            known_costs = {
                name_key(item.get("name")): item.get("cost_price")
                for item in existing.get("invoice_items") or []
                if item.get("cost_price") is not None
            }

            def apply(doc):
                doc["invoice_items"] = self._job_cost_items(quotation.get("line_items"), known_costs)
                return {
                    "customer_name": quotation.get("customer_name", ""),
                    "customer_phone": quotation.get("customer_phone", ""),
                    "project_title": quotation.get("project_title", ""),
                }

            await self.job_costs.mutate(tenant_id, existing["_id"], apply)
            logger.info(f"[SYNC] Refreshed job cost {existing.get('document_id')} from {quotation_id}")
            return "updated"
        except Exception:
            logger.exception(f"[SYNC] Failed to sync job cost for {quotation_id} (tenant:{tenant_id})")
            return "failed"

    async def _push_invoice_state(self, tenant_id: str, doc: Dict[str, Any]):
        """Mirror invoice number and payment status on the linked job cost"""
        if self.job_costs is None:
            return
        quotation_id = display_number(dict(doc, type="quotation"))
        try:
            await self.db.job_costs.update_one(
                {"tenant_id": tenant_id, "quotation_id": quotation_id},
                {
                    "$set": {
                        "invoice_id": display_number(dict(doc, type="invoice")),
                        "type": "invoice",
                        "customer_invoice_status": doc.get("status"),
                        "updated_at": datetime.utcnow()
                    },
                    "$inc": {"version": 1}
                }
            )
        except Exception as e:
            logger.error(f"[SYNC] Failed to update job cost invoice state for {quotation_id}: {str(e)}")

    # =========================================================================
    # CONVERSION & PAYMENTS
    # =========================================================================

    async def convert_to_invoice(self, tenant_id: str, quotation_id: str, data: Any = None) -> Dict[str, Any]:
        request = validate_payload(ConvertToInvoiceRequest, data or {})
        existing = await self.get_raw(tenant_id, quotation_id)
        if existing.get("type") != "quotation":
            raise IllegalStateTransitionError("Document is already an invoice")
        if existing.get("status") != "approved":
            raise IllegalStateTransitionError(
                "Only approved quotations can be converted to invoices",
                allowed=["approved"]
            )

        now = datetime.utcnow()
        payments = [dict(p, date=p.get("date") or now) for p in request.get("payments") or []]
        converted = dict(existing, type="invoice", payment_history=payments, invoice_date=now)
        totals = compute_quotation_totals(converted)
        status = status_from_payments(totals["subtotal"], totals["total_paid"]) if payments else "converted"

        changes = {
            "type": "invoice",
            "status": status,
            "invoice_date": now,
            "due_date": request.get("due_date") or compute_due_date(now, existing.get("payment_terms", 30)),
            "payment_history": payments,
        }
        changes.update(totals)

        try:
            updated = await self.apply_changes(tenant_id, quotation_id, changes)
        except DuplicateKeyError:
            raise DuplicateIdentifierError("Invoice", display_number(converted), retryable=False)

        logger.info(f"[REPO] {display_number(existing)} converted to {display_number(updated)} (tenant:{tenant_id})")
        await self.counters.run(self.counters.safe_transfer(tenant_id, TOTAL_QUOTATIONS, TOTAL_INVOICES))
        await self._push_invoice_state(tenant_id, updated)
        await self._after_write(tenant_id, "converted", TOTAL_INVOICES)
        return self.to_detail(updated)

    async def add_payment(self, tenant_id: str, document_id: str, data: Any) -> Dict[str, Any]:
        payment = validate_payload(PaymentCreate, data)
        payment["date"] = payment.get("date") or datetime.utcnow()

        existing = await self.get_raw(tenant_id, document_id)
        if existing.get("type") != "invoice":
            raise IllegalStateTransitionError("Payments can only be added to invoices")

        def recompute(doc):
            totals = compute_quotation_totals(doc)
            return dict(totals, status="paid" if totals["total_paid"] >= totals["subtotal"] else "partial")

        updated = await self.push_and_recompute(tenant_id, document_id, "payment_history", payment, recompute)

        logger.info(f"[REPO] Payment {payment['amount']} on {display_number(updated)} -> {updated.get('status')}")
        await self._push_invoice_state(tenant_id, updated)
        await self._after_write(tenant_id, "payment")
        return self.to_detail(updated)

    # =========================================================================
    # STATS
    # =========================================================================

    async def get_stats(self, tenant_id: str, date_from=None, date_to=None) -> Dict[str, Any]:
        async def compute():
            invoices = await self.sum_field(tenant_id, "subtotal", date_from, date_to, extra={"type": "invoice"})
            outstanding = await self.sum_field(tenant_id, "amount_due", date_from, date_to, extra={"type": "invoice"})
            quotations = await self.collection.count_documents(
                self.build_list_query(tenant_id, date_from=date_from, date_to=date_to, extra={"type": "quotation"})
            )
            pending = await self.collection.count_documents(
                self.build_list_query(tenant_id, status="pending", date_from=date_from, date_to=date_to,
                                      extra={"type": "quotation"})
            )
            return {
                "total_quotations": quotations,
                "pending_quotations": pending,
                "total_invoices": invoices["count"],
                "total_revenue": invoices["total"],
                "total_outstanding": outstanding["total"]
            }

        return await self.cached_read(tenant_id, "stats", compute, (date_from, date_to), date_to)
