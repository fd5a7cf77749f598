"""
CATEGORY REPOSITORY

Product categories with embedded items. Names are unique per tenant.
"""

from typing import Any, Dict
import logging

from core.base_repository import EntityRepository, validate_payload
from core.counter_sync import TOTAL_CATEGORIES
from core.errors import DuplicateIdentifierError
from models import CategoryCreate, CategoryItem, CategoryUpdate

logger = logging.getLogger(__name__)


class CategoryRepository(EntityRepository):
    entity_name = "Category"
    collection_name = "categories"
    identifier_field = "name"
    counter_name = TOTAL_CATEGORIES
    create_model = CategoryCreate
    update_model = CategoryUpdate
    search_fields = ["name", "description"]

    def derive(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        return {"item_count": len(doc.get("items") or [])}

    async def _prepare_create(self, tenant_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        payload["name"] = payload["name"].strip()
        return payload

    async def _prepare_update(self, tenant_id: str, existing: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
        if patch.get("name"):
            patch["name"] = patch["name"].strip()
        return patch

    async def add_item(self, tenant_id: str, category_id: str, data: Any) -> Dict[str, Any]:
        item = validate_payload(CategoryItem, data)
        item["item_name"] = item["item_name"].strip()

        existing = await self.get_raw(tenant_id, category_id)
        names = {(i.get("item_name") or "").lower() for i in existing.get("items") or []}
        if item["item_name"].lower() in names:
            raise DuplicateIdentifierError("Category item", item["item_name"], retryable=False)

        updated = await self.apply_changes(tenant_id, category_id, {}, {"$push": {"items": item}})
        logger.info(f"[REPO] Added item {item['item_name']} to category {updated.get('name')}")
        await self._after_write(tenant_id, "add_item")
        return self.to_detail(updated)
