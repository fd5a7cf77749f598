"""
Suppliers, customers and categories: name/phone keyed records
"""
import pytest

from core.counter_sync import TOTAL_CATEGORIES, TOTAL_SUPPLIERS
from core.customer_repository import normalize_phone
from core.errors import DuplicateIdentifierError, ValidationFailedError


class TestSuppliers:

    async def test_duplicate_name_is_terminal(self, services, tenant_id):
        await services.suppliers.create(tenant_id, {"name": "Kajaria Distributors"})
        with pytest.raises(DuplicateIdentifierError) as excinfo:
            await services.suppliers.create(tenant_id, {"name": " Kajaria Distributors "})
        assert excinfo.value.retryable is False
        assert excinfo.value.status_code == 409

    async def test_bulk_create_reports_duplicates(self, services, tenant_id):
        await services.suppliers.create(tenant_id, {"name": "Somany"})

        result = await services.suppliers.bulk_create(tenant_id, {"suppliers": [
            {"name": "Johnson"},
            {"name": "somany"},
            {"name": "Nitco"},
            {"name": "JOHNSON"},
        ]})

        assert result["created_count"] == 2
        assert [supplier["name"] for supplier in result["created"]] == ["Johnson", "Nitco"]
        assert result["duplicates"] == ["somany", "JOHNSON"]

        counters = await services.tenants.get_counters(tenant_id)
        assert counters[TOTAL_SUPPLIERS] == 3

    async def test_bulk_create_without_skipping_rejects_whole_batch(self, services, tenant_id):
        await services.suppliers.create(tenant_id, {"name": "Somany"})

        with pytest.raises(DuplicateIdentifierError):
            await services.suppliers.bulk_create(tenant_id, {
                "suppliers": [{"name": "Nitco"}, {"name": "Somany"}],
                "skip_duplicates": False
            })
        assert await services.db.suppliers.count_documents({"tenant_id": tenant_id}) == 1

    async def test_bulk_create_requires_rows(self, services, tenant_id):
        with pytest.raises(ValidationFailedError):
            await services.suppliers.bulk_create(tenant_id, {"suppliers": []})


class TestCustomers:

    def test_normalize_phone(self):
        assert normalize_phone("(98) 220-00 000") == "9822000000"
        assert normalize_phone(None) == ""

    async def test_phone_is_unique_per_tenant(self, services, tenant_id, other_tenant_id):
        await services.customers.create(tenant_id, {"name": "Ravi", "phone": "98220 00000"})
        with pytest.raises(DuplicateIdentifierError):
            await services.customers.create(tenant_id, {"name": "Ravi K", "phone": "9822000000"})

        other = await services.customers.create(other_tenant_id, {"name": "Ravi", "phone": "9822000000"})
        assert other["phone"] == "9822000000"

    async def test_search_by_phone_prefix(self, services, tenant_id, other_tenant_id):
        await services.customers.create(tenant_id, {"name": "Ravi", "phone": "9822000000"})
        await services.customers.create(tenant_id, {"name": "Meera", "phone": "9822111111"})
        await services.customers.create(tenant_id, {"name": "Anil", "phone": "9100000000"})
        await services.customers.create(other_tenant_id, {"name": "Zoya", "phone": "9822999999"})

        found = await services.customers.search_by_phone(tenant_id, "98-22")
        assert [customer["name"] for customer in found] == ["Ravi", "Meera"]
        assert await services.customers.search_by_phone(tenant_id, " ") == []


class TestCategories:

    async def test_items_and_counter(self, services, tenant_id):
        category = await services.categories.create(tenant_id, {"name": "Floor Tile"})
        assert category["item_count"] == 0

        updated = await services.categories.add_item(
            tenant_id, category["id"], {"item_name": "GVT 600x1200", "sqft_per_unit": 15.5}
        )
        assert updated["item_count"] == 1

        with pytest.raises(DuplicateIdentifierError):
            await services.categories.add_item(tenant_id, category["id"], {"item_name": "gvt 600x1200"})

        counters = await services.tenants.get_counters(tenant_id)
        assert counters[TOTAL_CATEGORIES] == 1

    async def test_duplicate_category_name(self, services, tenant_id):
        await services.categories.create(tenant_id, {"name": "Wall Tile"})
        with pytest.raises(DuplicateIdentifierError):
            await services.categories.create(tenant_id, {"name": "Wall Tile"})
