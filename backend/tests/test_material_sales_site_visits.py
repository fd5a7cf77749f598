"""
Material sales (MS-nnnn) and site visits (SV-nnn)
"""
from datetime import datetime, timedelta

import pytest

from core.counter_sync import TOTAL_MATERIAL_SALES, TOTAL_SITE_VISITS
from core.errors import IllegalStateTransitionError, NotFoundError, ValidationFailedError
from core.site_visit_repository import days_since


def sale():
    return {
        "customer_name": "Meera Shah",
        "customer_phone": "9898989898",
        "sale_date": datetime(2024, 3, 1),
        "items": [
            {"product_name": "Wall tile 300x450", "total_sqft": 200, "unit_price": 40, "cost_per_sqft": 25},
            {"product_name": "Floor tile 600x600", "total_sqft": 100, "unit_price": 60, "cost_per_sqft": 45},
        ],
    }


def visit(**overrides):
    data = {
        "customer_name": "Ravi",
        "project_title": "Villa",
        "contact_no": "9811111111",
        "location": "Pune",
        "site_type": "Residential",
        "charge": 500,
    }
    data.update(overrides)
    return data


class TestMaterialSales:

    async def test_create_prices_items_and_counts(self, services, tenant_id):
        created = await services.material_sales.create(tenant_id, sale())

        assert created["invoice_number"] == "MS-0001"
        assert created["total_amount"] == 14000.0
        assert created["total_cost"] == 9500.0
        assert created["total_profit"] == 4500.0
        assert created["status"] == "pending"
        assert created["due_date"].startswith("2024-03-31")

        counters = await services.tenants.get_counters(tenant_id)
        assert counters[TOTAL_MATERIAL_SALES] == 1

    async def test_payments_move_status(self, services, tenant_id):
        created = await services.material_sales.create(tenant_id, sale())

        partial = await services.material_sales.add_payment(tenant_id, created["id"], {"amount": 4000})
        assert partial["status"] == "partial"
        assert partial["amount_due"] == 10000.0

        paid = await services.material_sales.add_payment(tenant_id, created["id"], {"amount": 10000})
        assert paid["status"] == "paid"
        assert len(paid["payment_history"]) == 2

    async def test_concurrent_payments_both_count(self, services, tenant_id, monkeypatch):
        created = await services.material_sales.create(tenant_id, sale())
        collection = services.material_sales.collection
        find_one_and_update = collection.find_one_and_update
        interleaved = []

        async def push_then_other_payment(filter, update, **kwargs):
            result = await find_one_and_update(filter, update, **kwargs)
            if "$push" in update and not interleaved:
                interleaved.append(1)
                await services.material_sales.add_payment(tenant_id, created["id"], {"amount": 10000})
            return result

        monkeypatch.setattr(collection, "find_one_and_update", push_then_other_payment)
        first = await services.material_sales.add_payment(tenant_id, created["id"], {"amount": 4000})

        assert first["status"] == "paid"
        assert first["total_paid"] == 14000.0
        assert first["amount_due"] == 0.0

    async def test_cancelled_sale_rejects_payments(self, services, tenant_id):
        created = await services.material_sales.create(tenant_id, sale())
        cancelled = await services.material_sales.update_status(tenant_id, created["id"], {"status": "cancelled"})
        assert cancelled["status"] == "cancelled"

        with pytest.raises(IllegalStateTransitionError):
            await services.material_sales.add_payment(tenant_id, created["id"], {"amount": 100})

    async def test_stats_exclude_cancelled(self, services, tenant_id):
        kept = await services.material_sales.create(tenant_id, sale())
        dropped = await services.material_sales.create(tenant_id, sale())
        await services.material_sales.update_status(tenant_id, dropped["id"], "cancelled")

        stats = await services.material_sales.get_stats(tenant_id)
        assert stats["count"] == 1
        assert stats["total_revenue"] == kept["total_amount"]

    async def test_editing_items_recomputes_totals(self, services, tenant_id):
        created = await services.material_sales.create(tenant_id, sale())
        updated = await services.material_sales.update(tenant_id, created["id"], {
            "items": [{"product_name": "Floor tile 600x600", "total_sqft": 10, "unit_price": 60}]
        })
        assert updated["total_amount"] == 600.0
        assert updated["total_profit"] == 600.0


class TestSiteVisits:

    async def test_identifier_and_derived_fields(self, services, tenant_id):
        created = await services.site_visits.create(tenant_id, visit())

        assert created["visit_id"] == "SV-001"
        assert created["is_recent"] is True
        assert created["days_since_visit"] <= 1

        counters = await services.tenants.get_counters(tenant_id)
        assert counters[TOTAL_SITE_VISITS] == 1

    def test_days_since_rounds_up(self):
        now = datetime(2024, 1, 10, 12)
        assert days_since(now - timedelta(days=2, hours=1), now) == 3
        assert days_since(None, now) == 0

    async def test_old_visit_is_not_recent(self, services, tenant_id):
        created = await services.site_visits.create(
            tenant_id, visit(date=datetime.utcnow() - timedelta(days=10))
        )
        assert created["is_recent"] is False

    async def test_required_fields(self, services, tenant_id):
        with pytest.raises(ValidationFailedError) as excinfo:
            await services.site_visits.create(tenant_id, visit(location=""))
        assert [error["field"] for error in excinfo.value.errors] == ["location"]

    async def test_repeated_delete_never_goes_negative(self, services, tenant_id):
        created = await services.site_visits.create(tenant_id, visit())
        await services.site_visits.delete(tenant_id, created["id"])

        with pytest.raises(NotFoundError):
            await services.site_visits.delete(tenant_id, created["id"])

        counters = await services.tenants.get_counters(tenant_id)
        assert counters[TOTAL_SITE_VISITS] == 0

    async def test_status_update(self, services, tenant_id):
        created = await services.site_visits.create(tenant_id, visit())
        updated = await services.site_visits.update_status(tenant_id, created["id"], {"status": "invoiced"})
        assert updated["status"] == "invoiced"

        with pytest.raises(IllegalStateTransitionError):
            await services.site_visits.update_status(tenant_id, created["id"], {"status": "archived"})

    async def test_grouped_by_customer_is_cached(self, services, tenant_id):
        await services.site_visits.create(tenant_id, visit(customer_name="Zoya", charge=300))
        await services.site_visits.create(tenant_id, visit(customer_name="Anil", charge=200))
        await services.site_visits.create(tenant_id, visit(customer_name="Zoya", charge=400))

        grouped = await services.site_visits.get_grouped_by_customer(tenant_id)
        assert grouped["_cached"] is False
        assert [group["customer_name"] for group in grouped["data"]] == ["Anil", "Zoya"]
        zoya = grouped["data"][1]
        assert zoya["total_visits"] == 2
        assert zoya["total_revenue"] == 700.0

        again = await services.site_visits.get_grouped_by_customer(tenant_id)
        assert again["_cached"] is True

    async def test_stats_by_status(self, services, tenant_id):
        first = await services.site_visits.create(tenant_id, visit())
        await services.site_visits.create(tenant_id, visit(charge=250))
        await services.site_visits.update_status(tenant_id, first["id"], "paid")

        stats = await services.site_visits.get_stats(tenant_id)
        assert stats["total_visits"] == 2
        assert stats["total_revenue"] == 750.0
        assert stats["paid_count"] == 1
        assert stats["pending_count"] == 1
