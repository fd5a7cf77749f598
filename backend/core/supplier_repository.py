"""
SUPPLIER REPOSITORY

Suppliers are keyed by name within a tenant. A duplicate name is a
terminal conflict, never retried.

Provides:
1. Single create / update / delete through the generic pipeline
2. Bulk create with duplicate reporting and a single counter increment
3. Bulk delete, one decrement per deleted document
"""

from pymongo.errors import DuplicateKeyError
from datetime import datetime
from typing import Any, Dict, List
import logging

from core.base_repository import EntityRepository, validate_payload
from core.counter_sync import TOTAL_SUPPLIERS
from core.errors import DuplicateIdentifierError
from models import SupplierBulkCreate, SupplierCreate, SupplierUpdate

logger = logging.getLogger(__name__)


class SupplierRepository(EntityRepository):
    entity_name = "Supplier"
    collection_name = "suppliers"
    identifier_field = "name"
    counter_name = TOTAL_SUPPLIERS
    create_model = SupplierCreate
    update_model = SupplierUpdate
    search_fields = ["name", "phone", "email", "contact_person"]

    async def _prepare_create(self, tenant_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        payload["name"] = payload["name"].strip()
        return payload

    async def _prepare_update(self, tenant_id: str, existing: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
        if patch.get("name"):
            patch["name"] = patch["name"].strip()
        return patch

    async def bulk_create(self, tenant_id: str, data: Any) -> Dict[str, Any]:
        """
        Insert many suppliers.

        Names already present (in the tenant or earlier in the same batch)
        are reported as duplicates. With skip_duplicates=False any duplicate
        rejects the whole batch before anything is written.
        """
        request = validate_payload(SupplierBulkCreate, data)
        existing = {
            doc["name"].lower()
            for doc in await self.collection.find({"tenant_id": tenant_id}, {"name": 1}).to_list(length=None)
            if doc.get("name")
        }

        fresh: List[Dict[str, Any]] = []
        duplicates: List[str] = []
        seen = set(existing)
        for supplier in request["suppliers"]:
            name = supplier["name"].strip()
            if name.lower() in seen:
                duplicates.append(name)
                continue
            seen.add(name.lower())
            fresh.append(dict(supplier, name=name))

        if duplicates and not request["skip_duplicates"]:
            raise DuplicateIdentifierError(self.entity_name, ", ".join(duplicates), retryable=False)

        created = []
        now = datetime.utcnow()
        for supplier in fresh:
            doc = dict(supplier, tenant_id=tenant_id, created_at=now, updated_at=now)
            try:
                result = await self.collection.insert_one(doc)
            except DuplicateKeyError:
                # lost a race with a concurrent create of the same name
                duplicates.append(supplier["name"])
                continue
            doc["_id"] = result.inserted_id
            created.append(doc)

        if created:
            await self.counters.run(self.counters.safe_increment(tenant_id, self.counter_name, len(created)))
            await self._after_write(tenant_id, "bulk_create", self.counter_name)

        logger.info(
            f"[REPO] Bulk supplier import for tenant:{tenant_id}: "
            f"{len(created)} created, {len(duplicates)} duplicates"
        )
        return {
            "created": [self.to_detail(doc) for doc in created],
            "created_count": len(created),
            "duplicates": duplicates,
            "duplicate_count": len(duplicates)
        }
