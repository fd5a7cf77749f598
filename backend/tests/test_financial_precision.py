"""
Money arithmetic and derived totals
"""
from datetime import datetime
from decimal import Decimal

from bson import Decimal128

from core.financial_precision import (
    compute_due_date,
    compute_job_cost_totals,
    compute_material_sale_totals,
    compute_quotation_totals,
    line_profit,
    material_sale_item_values,
    round_financial,
    status_from_payments,
    to_decimal,
)


class TestDecimalHelpers:

    def test_to_decimal_accepts_storage_types(self):
        assert to_decimal(None) == Decimal("0")
        assert to_decimal(Decimal128("12.50")) == Decimal("12.50")
        assert to_decimal(0.1) == Decimal("0.1")

    def test_half_up_rounding(self):
        assert round_financial("2.675") == Decimal("2.68")
        assert round_financial(Decimal("2.665")) == Decimal("2.67")

    def test_due_date(self):
        assert compute_due_date(datetime(2024, 1, 1), 30) == datetime(2024, 1, 31)


class TestLineProfit:
    """Per-line profit rules"""

    def test_costed_line(self):
        assert line_profit({"quantity": 10, "selling_price": 80, "cost_price": 50}) == Decimal("300")

    def test_uncosted_line_contributes_nothing(self):
        assert line_profit({"quantity": 10, "selling_price": 80, "cost_price": None}) == 0
        assert line_profit({"quantity": 10, "selling_price": 80, "cost_price": 0}) == 0

    def test_deduction_line_always_counts(self):
        assert line_profit({"quantity": 1, "selling_price": -500}) == Decimal("-500")
        assert line_profit({"quantity": 1, "selling_price": -500, "cost_price": 100}) == Decimal("-600")


class TestJobCostTotals:

    def test_totals_from_embedded_collections(self):
        totals = compute_job_cost_totals({
            "invoice_items": [
                {"name": "Tile", "quantity": 100, "selling_price": 80, "cost_price": 50},
                {"name": "Labour", "quantity": 1, "selling_price": 2000, "cost_price": None},
                {"name": "Site visit", "quantity": 1, "selling_price": -500},
            ],
            "purchase_order_items": [{"quantity": 100, "unit_price": 50}],
            "other_expenses": [{"amount": 250}],
        })

        assert totals["total_revenue"] == 9500.0
        assert totals["material_cost"] == 5000.0
        assert totals["purchase_order_cost"] == 5000.0
        assert totals["other_expenses_total"] == 250.0
        assert totals["total_cost"] == 5250.0
        assert totals["net_profit"] == 3000.0 - 500.0 - 250.0
        assert totals["profit_margin"] == round(2250 / 9500 * 100, 2)

    def test_empty_job_cost(self):
        totals = compute_job_cost_totals({})
        assert totals["net_profit"] == 0.0
        assert totals["profit_margin"] == 0.0


class TestDocumentTotals:

    def test_quotation_totals(self):
        totals = compute_quotation_totals({
            "line_items": [{"quantity": 2, "selling_price": 150.5}],
            "payment_history": [{"amount": 100}],
            "direct_costs": [{"amount": 50}],
        })
        assert totals == {"subtotal": 301.0, "total_paid": 100.0, "amount_due": 201.0, "net_profit": 251.0}

    def test_material_sale_totals(self):
        item = {"total_sqft": 100, "unit_price": 50, "cost_per_sqft": 30}
        item.update(material_sale_item_values(item))
        totals = compute_material_sale_totals({"items": [item], "payment_history": [{"amount": 1000}]})

        assert item["amount"] == 5000.0
        assert totals["total_profit"] == 2000.0
        assert totals["amount_due"] == 4000.0

    def test_status_from_payments(self):
        assert status_from_payments(100, 0) == "pending"
        assert status_from_payments(100, 40) == "partial"
        assert status_from_payments(100, 100) == "paid"
        assert status_from_payments(100, 100, "cancelled") == "cancelled"
        assert status_from_payments(0, 0) == "pending"
