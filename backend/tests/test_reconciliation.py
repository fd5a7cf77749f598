"""
Counter reconciliation, the negative-counter maintenance pass and the
cached dashboard summary
"""
import pytest
from bson import ObjectId

from core.counter_sync import TOTAL_INVOICES, TOTAL_QUOTATIONS, TOTAL_SUPPLIERS
from core.errors import NotFoundError


async def seed_records(services, tenant_id):
    await services.suppliers.create(tenant_id, {"name": "Kajaria"})
    await services.suppliers.create(tenant_id, {"name": "Somany"})
    await services.quotations.create(tenant_id, {"customer_name": "Ravi"})
    await services.quotations.create(tenant_id, {"customer_name": "Meera", "type": "invoice"})


async def overwrite_counter(db, tenant_id, name, value):
    await db.tenants.update_one({"_id": ObjectId(tenant_id)}, {"$set": {f"counters.{name}": value}})


class TestReconciliation:
    """Stored counters compared against real document counts"""

    async def test_consistent_counters_report_no_mismatch(self, services, tenant_id):
        await seed_records(services, tenant_id)

        report = await services.reconciliation.run(tenant_id)

        assert report["mismatches"] == []
        assert report["applied"] is False
        assert report["counters"][TOTAL_SUPPLIERS] == 2
        assert report["counters"][TOTAL_QUOTATIONS] == 1
        assert report["counters"][TOTAL_INVOICES] == 1

    async def test_dry_run_reports_without_writing(self, db, services, tenant_id):
        await seed_records(services, tenant_id)
        await overwrite_counter(db, tenant_id, TOTAL_SUPPLIERS, 7)

        report = await services.reconciliation.run(tenant_id, apply=False)

        assert report["mismatches"] == [
            {"counter": TOTAL_SUPPLIERS, "stored": 7, "actual": 2, "difference": -5}
        ]
        counters = await services.tenants.get_counters(tenant_id)
        assert counters[TOTAL_SUPPLIERS] == 7

    async def test_apply_resets_drifted_counters(self, db, services, tenant_id):
        await seed_records(services, tenant_id)
        await overwrite_counter(db, tenant_id, TOTAL_SUPPLIERS, 7)
        await overwrite_counter(db, tenant_id, TOTAL_INVOICES, -1)

        report = await services.reconciliation.run(tenant_id, apply=True)

        assert report["applied"] is True
        counters = await services.tenants.get_counters(tenant_id)
        assert counters[TOTAL_SUPPLIERS] == 2
        assert counters[TOTAL_INVOICES] == 1

    async def test_other_tenants_records_are_not_counted(self, services, tenant_id, other_tenant_id):
        await seed_records(services, other_tenant_id)
        assert (await services.reconciliation.recompute(tenant_id))[TOTAL_SUPPLIERS] == 0

    async def test_unknown_tenant(self, services):
        with pytest.raises(NotFoundError):
            await services.reconciliation.run(str(ObjectId()))


class TestNegativeCounters:

    async def test_negative_values_reset_across_tenants(self, db, services, tenant_id, other_tenant_id):
        await overwrite_counter(db, tenant_id, TOTAL_SUPPLIERS, -2)
        await overwrite_counter(db, tenant_id, TOTAL_QUOTATIONS, -1)
        await db.tenants.update_one({"_id": ObjectId(other_tenant_id)}, {"$set": {"sequences.quotation": -4}})

        result = await services.reconciliation.fix_negative_counters()

        assert result == {"tenants_fixed": 2, "fields_fixed": 3}
        counters = await services.tenants.get_counters(tenant_id)
        assert counters[TOTAL_SUPPLIERS] == 0
        assert counters[TOTAL_QUOTATIONS] == 0
        assert await services.allocator.allocate(other_tenant_id, "quotation") == 1

    async def test_clean_tenants_untouched(self, services, tenant_id):
        assert await services.reconciliation.fix_negative_counters() == {"tenants_fixed": 0, "fields_fixed": 0}


class TestDashboardSummary:

    async def test_summary_is_cached_until_next_write(self, services, tenant_id):
        await seed_records(services, tenant_id)

        summary = await services.dashboard.get_summary(tenant_id)
        assert summary["_cached"] is False
        assert summary["counters"][TOTAL_SUPPLIERS] == 2
        assert summary["quotations"]["total_quotations"] == 1
        assert "_cached" not in summary["site_visits"]

        assert (await services.dashboard.get_summary(tenant_id))["_cached"] is True

        await services.suppliers.create(tenant_id, {"name": "Nitco"})
        fresh = await services.dashboard.get_summary(tenant_id)
        assert fresh["_cached"] is False
        assert fresh["counters"][TOTAL_SUPPLIERS] == 3

    async def test_summary_is_per_tenant(self, services, tenant_id, other_tenant_id):
        await seed_records(services, tenant_id)
        other = await services.dashboard.get_summary(other_tenant_id)
        assert other["counters"][TOTAL_SUPPLIERS] == 0
