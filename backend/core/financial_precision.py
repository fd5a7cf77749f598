"""
DECIMAL PRECISION & DERIVED FINANCIAL FIELDS

This module provides:
1. Decimal precision lock (2-decimal places)
2. Safe arithmetic helpers
3. Pure derived-field calculators for every business document
   (job cost, quotation/invoice, purchase order, material sale)

Every calculator is a pure function of the document's current line items.
Nothing here reads or writes the database, and no total is ever
maintained incrementally.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from datetime import datetime, timedelta
from bson import Decimal128
from typing import Any, Dict, Iterable, Optional, Union
import logging

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')
ZERO = Decimal('0')

Number = Union[float, int, str, Decimal, None]


def to_decimal(value: Number) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    Missing or unparsable values count as 0.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if value is None or isinstance(value, bool):
        return ZERO
    try:
        # Convert via string to avoid float precision issues
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        logger.warning(f"Non-numeric financial value treated as 0: {value!r}")
        return ZERO


def round_financial(value: Number) -> Decimal:
    """
    Round a value to 2 decimal places (half up).
    This should be called ONLY at calculation boundaries.
    """
    return to_decimal(value).quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def to_float(value: Number) -> float:
    """Convert to a rounded float for MongoDB storage / JSON output"""
    return float(round_financial(value))


def safe_multiply(a: Number, b: Number) -> Decimal:
    """Safe multiplication preserving precision"""
    return to_decimal(a) * to_decimal(b)


def safe_divide(numerator: Number, denominator: Number) -> Decimal:
    """Safe division with zero check"""
    denom = to_decimal(denominator)
    if denom == ZERO:
        return ZERO
    return to_decimal(numerator) / denom


def safe_add(*values: Number) -> Decimal:
    """Safe addition of multiple values"""
    result = ZERO
    for v in values:
        result += to_decimal(v)
    return result


def calculate_percentage(part: Number, whole: Number) -> Decimal:
    """
    part as a percentage of whole, 0 when whole is 0.
    Example: calculate_percentage(25, 200) = 12.5
    """
    return safe_divide(safe_multiply(part, 100), whole)


def sum_amounts(entries: Optional[Iterable[Dict[str, Any]]], field: str = "amount") -> Decimal:
    return safe_add(*[(entry or {}).get(field) for entry in (entries or [])])


def compute_due_date(start: Optional[datetime], payment_terms: Number) -> datetime:
    """Due date = start date + payment terms (days)"""
    base = start or datetime.utcnow()
    try:
        days = int(to_decimal(payment_terms))
    except (InvalidOperation, ValueError):
        days = 0
    return base + timedelta(days=days)


def status_from_payments(total: Number, paid: Number, current: Optional[str] = None) -> str:
    """
    Payment-derived status for invoices and material sales.

    paid >= total > 0 -> paid, paid > 0 -> partial, otherwise pending
    (cancelled is sticky).
    """
    if current == "cancelled":
        return current
    total_d = to_decimal(total)
    paid_d = to_decimal(paid)
    if paid_d > ZERO and paid_d >= total_d and total_d > ZERO:
        return "paid"
    if paid_d > ZERO:
        return "partial"
    return "pending"


# =============================================================================
# JOB COST
# =============================================================================

def line_profit(item: Dict[str, Any]) -> Decimal:
    """
    Profit contribution of one invoice line.

    - Deduction lines (selling price < 0) always contribute
      (selling - cost) * qty, with cost defaulting to 0.
    - Other lines contribute only when cost price is known and > 0;
      an uncosted line contributes exactly 0.
    """
    quantity = to_decimal(item.get("quantity"))
    selling = to_decimal(item.get("selling_price"))
    cost = to_decimal(item.get("cost_price"))

    if selling < ZERO:
        return (selling - cost) * quantity
    if cost <= ZERO:
        return ZERO
    return (selling - cost) * quantity


def compute_job_cost_totals(job_cost: Dict[str, Any]) -> Dict[str, float]:
    """
    Recompute every derived JobCost field from its embedded collections.

    Returns rounded floats ready for storage.
    """
    invoice_items = job_cost.get("invoice_items") or []
    po_items = job_cost.get("purchase_order_items") or []

    total_revenue = safe_add(*[
        safe_multiply(i.get("quantity"), i.get("selling_price")) for i in invoice_items
    ])
    material_cost = safe_add(*[
        safe_multiply(i.get("quantity"), i.get("cost_price")) for i in invoice_items
    ])
    purchase_order_cost = safe_add(*[
        safe_multiply(p.get("quantity"), p.get("unit_price")) for p in po_items
    ])
    other_expenses_total = sum_amounts(job_cost.get("other_expenses"))

    net_profit = safe_add(*[line_profit(i) for i in invoice_items]) - other_expenses_total
    total_cost = material_cost + other_expenses_total

    return {
        "total_revenue": to_float(total_revenue),
        "material_cost": to_float(material_cost),
        "purchase_order_cost": to_float(purchase_order_cost),
        "other_expenses_total": to_float(other_expenses_total),
        "total_cost": to_float(total_cost),
        "net_profit": to_float(net_profit),
        "profit_margin": to_float(calculate_percentage(net_profit, total_revenue)),
    }


def invoice_item_view(item: Dict[str, Any]) -> Dict[str, Any]:
    """Per-line derived fields for detail views"""
    view = dict(item)
    view["total_cost_price"] = to_float(safe_multiply(item.get("quantity"), item.get("cost_price")))
    view["total_selling_price"] = to_float(safe_multiply(item.get("quantity"), item.get("selling_price")))
    view["profit"] = to_float(line_profit(item))
    return view


# =============================================================================
# QUOTATION / INVOICE
# =============================================================================

def compute_quotation_totals(doc: Dict[str, Any]) -> Dict[str, float]:
    subtotal = safe_add(*[
        safe_multiply(i.get("quantity"), i.get("selling_price")) for i in (doc.get("line_items") or [])
    ])
    total_paid = sum_amounts(doc.get("payment_history"))
    direct_costs = sum_amounts(doc.get("direct_costs"))
    return {
        "subtotal": to_float(subtotal),
        "total_paid": to_float(total_paid),
        "amount_due": to_float(subtotal - total_paid),
        "net_profit": to_float(subtotal - direct_costs),
    }


# =============================================================================
# PURCHASE ORDER
# =============================================================================

def compute_purchase_order_totals(doc: Dict[str, Any]) -> Dict[str, float]:
    total = safe_add(*[
        safe_multiply(i.get("quantity"), i.get("unit_price")) for i in (doc.get("items") or [])
    ])
    return {"total_amount": to_float(total)}


# =============================================================================
# MATERIAL SALE
# =============================================================================

def compute_material_sale_totals(doc: Dict[str, Any]) -> Dict[str, float]:
    items = doc.get("items") or []
    total_amount = sum_amounts(items, "amount")
    total_cost = sum_amounts(items, "total_cost")
    total_profit = total_amount - total_cost
    total_paid = sum_amounts(doc.get("payment_history"))
    return {
        "total_amount": to_float(total_amount),
        "total_cost": to_float(total_cost),
        "total_profit": to_float(total_profit),
        "profit_percentage": to_float(calculate_percentage(total_profit, total_cost)),
        "total_paid": to_float(total_paid),
        "amount_due": to_float(total_amount - total_paid),
    }


def material_sale_item_values(item: Dict[str, Any]) -> Dict[str, float]:
    """amount = sqft * unit price, total cost = sqft * cost per sqft"""
    total_sqft = to_decimal(item.get("total_sqft"))
    return {
        "amount": to_float(total_sqft * to_decimal(item.get("unit_price"))),
        "total_cost": to_float(total_sqft * to_decimal(item.get("cost_per_sqft"))),
    }
