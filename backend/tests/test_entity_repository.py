"""
Generic repository pipeline: identifier allocation with bounded retry,
counter bookkeeping, tenant isolation, listing and bulk delete
"""
import asyncio

import pytest
from bson import ObjectId

from core.counter_sync import TOTAL_MATERIAL_SALES, TOTAL_SUPPLIERS
from core.errors import (
    DuplicateIdentifierError,
    IdentifierCollisionError,
    NotFoundError,
    ValidationFailedError,
)


def sale(**overrides):
    data = {
        "customer_name": "Meera",
        "items": [{"product_name": "Vitrified 600x600", "total_sqft": 100, "unit_price": 50, "cost_per_sqft": 30}],
    }
    data.update(overrides)
    return data


class TestConcurrentCreation:
    """Identifiers stay unique under concurrent creates"""

    async def test_concurrent_creates_get_distinct_identifiers(self, services, tenant_id):
        created = await asyncio.gather(*[
            services.material_sales.create(tenant_id, sale()) for _ in range(20)
        ])

        numbers = [doc["invoice_number"] for doc in created]
        assert len(set(numbers)) == 20
        assert sorted(numbers) == [f"MS-{n:04d}" for n in range(1, 21)]

        counters = await services.tenants.get_counters(tenant_id)
        assert counters[TOTAL_MATERIAL_SALES] == 20


class TestIdentifierCollisions:
    """Bounded retry on generated identifiers, terminal error on supplied ones"""

    async def test_collision_with_manual_number_is_retried(self, services, tenant_id, no_backoff):
        await services.material_sales.create(tenant_id, sale(invoice_number="MS-0001"))

        created = await services.material_sales.create(tenant_id, sale())
        assert created["invoice_number"] == "MS-0002"

    async def test_supplied_duplicate_is_terminal(self, services, tenant_id):
        await services.material_sales.create(tenant_id, sale(invoice_number="MS-0100"))

        with pytest.raises(DuplicateIdentifierError) as excinfo:
            await services.material_sales.create(tenant_id, sale(invoice_number="MS-0100"))
        assert excinfo.value.retryable is False
        assert not isinstance(excinfo.value, IdentifierCollisionError)

    async def test_exhausted_retries_raise_collision_error(self, services, tenant_id, no_backoff, monkeypatch):
        await services.material_sales.create(tenant_id, sale(invoice_number="MS-0001"))
        attempts = []

        async def always_taken(tenant, doc):
            attempts.append(1)
            return "MS-0001"

        monkeypatch.setattr(services.material_sales, "generate_identifier", always_taken)

        with pytest.raises(IdentifierCollisionError) as excinfo:
            await services.material_sales.create(tenant_id, sale())

        assert len(attempts) == services.material_sales.MAX_ATTEMPTS
        assert excinfo.value.status_code == 503
        assert "after 3 attempts" in excinfo.value.message
        assert await services.db.material_sales.count_documents({"tenant_id": tenant_id}) == 1

        counters = await services.tenants.get_counters(tenant_id)
        assert counters[TOTAL_MATERIAL_SALES] == 1

    async def test_same_identifier_allowed_in_another_tenant(self, services, tenant_id, other_tenant_id):
        first = await services.material_sales.create(tenant_id, sale())
        second = await services.material_sales.create(other_tenant_id, sale())
        assert first["invoice_number"] == second["invoice_number"] == "MS-0001"


class TestTenantIsolation:
    """Another tenant's record behaves exactly like a missing one"""

    async def test_get_update_delete_across_tenants(self, services, tenant_id, other_tenant_id):
        created = await services.suppliers.create(tenant_id, {"name": "Kajaria Distributors"})

        with pytest.raises(NotFoundError):
            await services.suppliers.find_by_id(other_tenant_id, created["id"])
        with pytest.raises(NotFoundError):
            await services.suppliers.update(other_tenant_id, created["id"], {"phone": "1"})
        with pytest.raises(NotFoundError):
            await services.suppliers.delete(other_tenant_id, created["id"])

        assert (await services.suppliers.find_by_id(tenant_id, created["id"]))["name"] == "Kajaria Distributors"

    async def test_listing_is_scoped(self, services, tenant_id, other_tenant_id):
        await services.suppliers.create(tenant_id, {"name": "A"})
        await services.suppliers.create(other_tenant_id, {"name": "B"})

        listing = await services.suppliers.list(tenant_id)
        assert [item["name"] for item in listing["items"]] == ["A"]

    async def test_malformed_id_is_not_found(self, services, tenant_id):
        with pytest.raises(NotFoundError):
            await services.suppliers.find_by_id(tenant_id, "not-an-object-id")


class TestListing:

    async def test_pagination_and_search(self, services, tenant_id):
        for name in ["Kajaria", "Somany", "Johnson", "Kajaria Wholesale"]:
            await services.suppliers.create(tenant_id, {"name": name})

        page = await services.suppliers.list(tenant_id, page=1, limit=3)
        assert len(page["items"]) == 3
        assert page["pagination"] == {"page": 1, "limit": 3, "total": 4, "pages": 2, "has_more": True}

        found = await services.suppliers.list(tenant_id, search="kajaria")
        assert found["pagination"]["total"] == 2

    async def test_search_input_is_not_treated_as_regex(self, services, tenant_id):
        await services.suppliers.create(tenant_id, {"name": "Tiles (North)"})
        found = await services.suppliers.list(tenant_id, search="(North)")
        assert found["pagination"]["total"] == 1


class TestValidationAndDelete:

    async def test_invalid_payload_lists_fields(self, services, tenant_id):
        with pytest.raises(ValidationFailedError) as excinfo:
            await services.material_sales.create(tenant_id, {"items": []})
        assert any(error["field"] == "customer_name" for error in excinfo.value.errors)
        assert excinfo.value.status_code == 422

    async def test_bulk_delete_decrements_once_per_deleted_record(self, services, tenant_id):
        ids = [(await services.suppliers.create(tenant_id, {"name": f"S{i}"}))["id"] for i in range(3)]
        missing = str(ObjectId())

        result = await services.suppliers.bulk_delete(tenant_id, ids[:2] + [missing])

        assert result["deleted_count"] == 2
        assert result["not_found"] == [missing]
        counters = await services.tenants.get_counters(tenant_id)
        assert counters[TOTAL_SUPPLIERS] == 1

    async def test_write_emits_dashboard_event(self, services, tenant_id):
        await services.suppliers.create(tenant_id, {"name": "Kajaria"})
        events = await services.notifier.get_recent_events(tenant_id)
        assert events[0]["reason"] == "suppliers:create"
        assert events[0]["counters"] == [TOTAL_SUPPLIERS]
