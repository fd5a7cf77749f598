"""
Tenant sequence allocation and identifier formatting
"""
import asyncio
import re

import pytest
from bson import ObjectId

from core.atomic_numbering import (
    TenantSequenceAllocator,
    clamp_padding,
    format_identifier,
)
from core.errors import NotFoundError


class TestFormatting:
    """Prefix and zero padding"""

    def test_prefixed_identifier(self):
        assert format_identifier("PO", 7, 3) == "PO-007"
        assert format_identifier("MS", 12, 4) == "MS-0012"

    def test_bare_number_without_prefix(self):
        assert format_identifier("", 7, 3) == "007"

    def test_number_wider_than_padding_is_not_truncated(self):
        assert format_identifier("SV", 12345, 3) == "SV-12345"

    def test_clamp_padding(self):
        assert clamp_padding(0) == 1
        assert clamp_padding(25) == 10
        assert clamp_padding("5") == 5
        assert clamp_padding(None) == 3


class TestAllocate:
    """Atomic $inc on the tenant record"""

    async def test_first_allocation_returns_one(self, services, tenant_id):
        assert await services.allocator.allocate(tenant_id, "purchase_order") == 1
        assert await services.allocator.allocate(tenant_id, "purchase_order") == 2

    async def test_sequences_are_independent_per_counter_and_tenant(self, services, tenant_id, other_tenant_id):
        await services.allocator.allocate(tenant_id, "purchase_order")
        await services.allocator.allocate(tenant_id, "purchase_order")

        assert await services.allocator.allocate(tenant_id, "site_visit") == 1
        assert await services.allocator.allocate(other_tenant_id, "purchase_order") == 1

    async def test_concurrent_allocations_are_unique_and_contiguous(self, services, tenant_id):
        values = await asyncio.gather(*[
            services.allocator.allocate(tenant_id, "material_sale") for _ in range(25)
        ])
        assert sorted(values) == list(range(1, 26))

    async def test_missing_tenant_raises_not_found(self, services):
        with pytest.raises(NotFoundError):
            await services.allocator.allocate(str(ObjectId()), "purchase_order")

    async def test_invalid_tenant_id_raises_not_found(self, services):
        with pytest.raises(NotFoundError):
            await services.allocator.allocate("not-an-id", "purchase_order")

    async def test_padding_follows_tenant_setting(self, services, tenant_id):
        await services.tenants.update_document_settings(tenant_id, {"number_padding": 5})
        assert await services.allocator.get_number_padding(tenant_id) == 5


class TestFallbackChain:
    """Sequence -> fallback counter document -> timestamp id"""

    async def test_primary_path(self, services, tenant_id):
        identifier = await services.allocator.allocate_identifier_with_fallback(tenant_id, "site_visit", "SV", 3)
        assert identifier == "SV-001"

    async def test_fallback_counter_when_tenant_sequence_fails(self, services, tenant_id, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("tenant store down")

        monkeypatch.setattr(services.allocator, "allocate", broken)

        first = await services.allocator.allocate_identifier_with_fallback(tenant_id, "site_visit", "SV", 3)
        second = await services.allocator.allocate_identifier_with_fallback(tenant_id, "site_visit", "SV", 3)
        assert (first, second) == ("SV-F001", "SV-F002")

        fallback = await services.db.sequence_fallbacks.find_one({"_id": f"site_visit_{tenant_id}"})
        assert fallback["sequence"] == 2

    async def test_fallback_ids_do_not_collide_with_primary_ids(self, services, tenant_id, monkeypatch):
        visit = {
            "customer_name": "Ravi", "project_title": "Villa", "contact_no": "9811111111",
            "location": "Pune", "site_type": "Residential", "charge": 500
        }
        primary = await services.site_visits.create(tenant_id, visit)

        async def broken(*args, **kwargs):
            raise RuntimeError("tenant store down")

        monkeypatch.setattr(services.allocator, "allocate", broken)
        inserts = []
        insert_one = services.site_visits.collection.insert_one

        async def counting_insert(doc, *args, **kwargs):
            inserts.append(doc.get("visit_id"))
            return await insert_one(doc, *args, **kwargs)

        monkeypatch.setattr(services.site_visits.collection, "insert_one", counting_insert)
        degraded = await services.site_visits.create(tenant_id, visit)

        assert primary["visit_id"] == "SV-001"
        assert degraded["visit_id"] == "SV-F001"
        assert inserts == ["SV-F001"]

    async def test_timestamp_identifier_as_last_resort(self, services, tenant_id, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("store down")

        monkeypatch.setattr(services.allocator, "allocate", broken)
        monkeypatch.setattr(services.allocator, "allocate_fallback", broken)

        identifier = await services.allocator.allocate_identifier_with_fallback(tenant_id, "site_visit", "SV", 3)
        assert re.fullmatch(r"SV-T\d{6}", identifier)

    async def test_standalone_allocator_shares_tenant_state(self, db, services, tenant_id):
        other = TenantSequenceAllocator(db)
        await services.allocator.allocate(tenant_id, "job_cost")
        assert await other.allocate(tenant_id, "job_cost") == 2
